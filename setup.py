"""
Setup configuration for chronos-worker package.
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read the README file
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text() if (this_directory / "README.md").exists() else ""

setup(
    name="chronos-worker",
    version="0.1.0",
    description="Run commands periodically with retries, backoff and a health-check endpoint",
    long_description=long_description,
    long_description_content_type="text/markdown",

    # Package discovery
    packages=find_packages(include=["chronos", "chronos.*"]),

    # Dependencies
    install_requires=[
        "APScheduler>=3.10,<4",
        "tzlocal>=4.0",
        "fastapi>=0.100",
        "uvicorn>=0.23",
        "requests>=2.31.0",
        "PyYAML>=6.0",
        "Jinja2>=3.1",
        "python-dotenv>=1.0",
    ],

    # Optional dependencies
    extras_require={
        "dev": [
            "pytest>=7.4.0,<9",
            "httpx>=0.24",
            "black>=23.0.0",
            "flake8>=6.0.0",
        ],
    },

    # Python version requirement
    python_requires=">=3.11",

    # CLI entry points
    entry_points={
        "console_scripts": [
            "chronos=chronos.cli:main",
        ],
    },

    # Classification
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Systems Administration",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],

    # Keywords
    keywords="cron scheduler worker retry healthcheck",

    include_package_data=True,
)
