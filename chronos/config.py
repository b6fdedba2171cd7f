"""
Worker configuration management.

Handles loading and validating the worker configuration. A configuration
file describes the tasks to run (command, arguments, schedule and retry
policy), the logging level, the time zone schedules are evaluated in and
the optional health-check endpoint.

Supported formats are chosen by file extension: JSON (.json),
YAML (.yml, .yaml) and TOML (.toml).
"""

import json
import logging
import os
import tomllib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, List, Any

import yaml
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

ENV_CONFIG_PATH = "CHRONOS_CONFIG_PATH"

RETRY_LIMIT_NEVER = 0
RETRY_LIMIT_INFINITE = -1

LOG_LEVELS = ("fatal", "error", "warn", "info", "debug")
OVERLAP_POLICIES = ("skip", "parallel")

DEFAULT_HEALTHCHECK_HOST = "localhost"
DEFAULT_HEALTHCHECK_PORT = 8080
DEFAULT_HEALTHCHECK_PATH = "/health"


class ChronosError(Exception):
    """Base error for chronos."""


class ConfigError(ChronosError):
    """Raised when the configuration is missing, malformed or invalid."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = errors or []
        if self.errors:
            message = message + ":\n" + "\n".join(f"  - {e}" for e in self.errors)
        super().__init__(message)


class RetryType(str, Enum):
    """How the wait between retries grows."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class TaskConfig:
    """
    One periodically executed task.

    Instances are immutable and shared read-only by every thread that
    runs the task.
    """
    name: str
    command: str  # Executable to run (no shell)
    schedule: str  # Cron-like expression, see chronos.schedule
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    propagate_env: bool = False
    use_template: bool = False
    timeout: int = 0  # Seconds per attempt, 0 = no timeout
    retry_limit: int = RETRY_LIMIT_NEVER  # 0 = never, -1 = forever, N = up to N retries
    retry_wait: float = 1  # Seconds
    retry_type: RetryType = RetryType.FIXED
    failure_count: int = 0  # Reserved for health sensitivity
    description: Optional[str] = None
    overlap: str = "skip"  # What to do when a firing arrives mid-cycle

    @property
    def is_retryable(self) -> bool:
        return self.retry_limit != RETRY_LIMIT_NEVER

    @property
    def is_infinite_retry(self) -> bool:
        return self.retry_limit == RETRY_LIMIT_INFINITE


@dataclass(frozen=True)
class HealthCheckConfig:
    """Health-check HTTP endpoint settings."""
    host: str = DEFAULT_HEALTHCHECK_HOST
    port: int = DEFAULT_HEALTHCHECK_PORT
    path: str = DEFAULT_HEALTHCHECK_PATH


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration."""
    file: Optional[str] = None


@dataclass
class WorkerConfig:
    """Complete worker configuration."""
    tasks: Dict[str, TaskConfig]
    log_level: str = "info"
    time_zone: Optional[str] = None
    healthcheck: Optional[HealthCheckConfig] = None
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    config_path: Optional[Path] = None

    def get_task(self, name: str) -> Optional[TaskConfig]:
        """Get task configuration by name."""
        return self.tasks.get(name)


def resolve_config_path(config_path: Optional[str] = None) -> Path:
    """
    Resolve the configuration file path.

    Priority:
    1. Explicit config_path argument
    2. CHRONOS_CONFIG_PATH environment variable
    """
    if config_path:
        return Path(config_path).expanduser()
    if os.environ.get(ENV_CONFIG_PATH):
        return Path(os.environ[ENV_CONFIG_PATH]).expanduser()
    raise ConfigError(
        f"No configuration file given and {ENV_CONFIG_PATH} is not set"
    )


def _read_payload(path: Path) -> Dict[str, Any]:
    """Read and decode the raw configuration mapping from a file."""
    extension = path.suffix.lower()
    if extension not in (".json", ".yml", ".yaml", ".toml"):
        raise ConfigError(
            f"Unsupported config file extension '{extension}': "
            "must be one of .json, .yml, .yaml and .toml"
        )

    try:
        if extension == ".toml":
            with open(path, 'rb') as f:
                data = tomllib.load(f)
        else:
            with open(path, 'r', encoding='utf-8') as f:
                if extension == ".json":
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Failed to read config file {path}: {e}") from e
    except (json.JSONDecodeError, yaml.YAMLError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level")
    return data


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _parse_task(name: str, data: Any, errors: List[str]) -> Optional[TaskConfig]:
    """Build a TaskConfig, appending every problem found to errors."""
    prefix = f"Task {name}"
    if not isinstance(data, dict):
        errors.append(f"{prefix}: must be a mapping")
        return None

    command = data.get('command')
    if not isinstance(command, str) or not command.strip():
        errors.append(f"{prefix}: 'command' is required")

    schedule = data.get('schedule')
    if not isinstance(schedule, str) or not schedule.strip():
        errors.append(f"{prefix}: 'schedule' is required")

    args = data.get('args') or []
    if not isinstance(args, list):
        errors.append(f"{prefix}: 'args' must be a list")
        args = []
    args = [str(a) for a in args]

    env = data.get('env') or {}
    if not isinstance(env, dict):
        errors.append(f"{prefix}: 'env' must be a mapping")
        env = {}
    env = {str(k): str(v) for k, v in env.items()}

    timeout = data.get('timeout', 0)
    if not _is_int(timeout) or timeout < 0:
        errors.append(f"{prefix}: 'timeout' must be an integer >= 0")

    retry_limit = data.get('retry_limit', RETRY_LIMIT_NEVER)
    if not _is_int(retry_limit) or retry_limit < RETRY_LIMIT_INFINITE:
        errors.append(f"{prefix}: 'retry_limit' must be -1 (forever), 0 (never) or a positive integer")

    retry_wait = data.get('retry_wait', 1)
    if not _is_number(retry_wait) or retry_wait <= 0:
        errors.append(f"{prefix}: 'retry_wait' must be positive")

    retry_type = data.get('retry_type', RetryType.FIXED.value)
    try:
        retry_type = RetryType(retry_type)
    except ValueError:
        errors.append(f"{prefix}: 'retry_type' must be one of 'fixed' and 'exponential', got {retry_type!r}")

    failure_count = data.get('failure_count', 0)
    if not _is_int(failure_count) or failure_count < 0:
        errors.append(f"{prefix}: 'failure_count' must be an integer >= 0")

    overlap = data.get('overlap', "skip")
    if overlap not in OVERLAP_POLICIES:
        errors.append(f"{prefix}: 'overlap' must be one of {', '.join(OVERLAP_POLICIES)}")

    unknown = set(data) - {
        'command', 'schedule', 'args', 'env', 'propagate_env', 'use_template',
        'timeout', 'retry_limit', 'retry_wait', 'retry_type', 'failure_count',
        'description', 'overlap',
    }
    for key in sorted(unknown):
        logger.warning(f"{prefix}: ignoring unknown key '{key}'")

    if errors:
        return None

    return TaskConfig(
        name=name,
        command=command,
        schedule=schedule,
        args=args,
        env=env,
        propagate_env=bool(data.get('propagate_env', False)),
        use_template=bool(data.get('use_template', False)),
        timeout=timeout,
        retry_limit=retry_limit,
        retry_wait=retry_wait,
        retry_type=retry_type,
        failure_count=failure_count,
        description=data.get('description'),
        overlap=overlap,
    )


def _parse_healthcheck(data: Any, errors: List[str]) -> Optional[HealthCheckConfig]:
    if data is None:
        return None
    if not isinstance(data, dict):
        errors.append("healthcheck: must be a mapping")
        return None

    host = data.get('host', DEFAULT_HEALTHCHECK_HOST)
    if not isinstance(host, str) or not host:
        errors.append("healthcheck: 'host' is required")

    port = data.get('port', DEFAULT_HEALTHCHECK_PORT)
    if not _is_int(port) or not 0 < port <= 65535:
        errors.append("healthcheck: 'port' must be between 1 and 65535")

    path = data.get('path', DEFAULT_HEALTHCHECK_PATH)
    if not isinstance(path, str) or not path.startswith('/'):
        errors.append("healthcheck: 'path' must start with '/'")

    if errors:
        return None
    return HealthCheckConfig(host=host, port=port, path=path)


def parse_config(data: Dict[str, Any], config_path: Optional[Path] = None) -> WorkerConfig:
    """
    Build and validate a WorkerConfig from a decoded mapping.

    Args:
        data: Raw configuration mapping
        config_path: File the mapping was read from (for messages)

    Returns:
        Validated WorkerConfig

    Raises:
        ConfigError: Listing every validation error found
    """
    errors: List[str] = []

    log_level = data.get('log_level') or "info"
    if log_level not in LOG_LEVELS:
        errors.append(f"'log_level' must be one of {', '.join(LOG_LEVELS)}, got {log_level!r}")

    time_zone = data.get('time_zone') or None
    if time_zone is not None and not isinstance(time_zone, str):
        errors.append("'time_zone' must be a string")

    raw_tasks = data.get('tasks')
    tasks: Dict[str, TaskConfig] = {}
    if not raw_tasks or not isinstance(raw_tasks, dict):
        errors.append("'tasks' is required and must map task names to task settings")
    else:
        for name, task_data in raw_tasks.items():
            task_errors: List[str] = []
            task = _parse_task(str(name), task_data, task_errors)
            errors.extend(task_errors)
            if task is not None:
                tasks[task.name] = task

    healthcheck_errors: List[str] = []
    healthcheck = _parse_healthcheck(data.get('healthcheck'), healthcheck_errors)
    errors.extend(healthcheck_errors)

    logging_data = data.get('logging') or {}
    if not isinstance(logging_data, dict):
        errors.append("'logging' must be a mapping")
        logging_data = {}

    if errors:
        source = config_path or "configuration"
        raise ConfigError(f"Invalid configuration in {source}", errors)

    return WorkerConfig(
        tasks=tasks,
        log_level=log_level,
        time_zone=time_zone,
        healthcheck=healthcheck,
        logging=LoggingConfig(file=logging_data.get('file')),
        config_path=config_path,
    )


def load_config(config_path: Optional[str] = None) -> WorkerConfig:
    """
    Load configuration from a JSON, YAML or TOML file.

    Args:
        config_path: Path to the config file. If None, uses CHRONOS_CONFIG_PATH.

    Returns:
        Validated WorkerConfig
    """
    path = resolve_config_path(config_path)
    data = _read_payload(path)
    config = parse_config(data, config_path=path)
    logger.info(f"Loaded {len(config.tasks)} task(s) from {path}")
    return config
