"""
Tests for loading and validating worker configuration files.
"""

import json

import pytest
import yaml

from chronos.config import (
    ConfigError,
    RetryType,
    TaskConfig,
    load_config,
    parse_config,
)


def _write(path, text):
    path.write_text(text, encoding="utf-8")
    return path


def _base_config(**task_overrides):
    task = {"command": "echo", "args": ["hello"], "schedule": "*/5 * * * *"}
    task.update(task_overrides)
    return {"log_level": "debug", "tasks": {"greet": task}}


def test_load_json_config(tmp_path):
    config_path = _write(tmp_path / "chronos.json", json.dumps({
        "log_level": "warn",
        "time_zone": "Asia/Tokyo",
        "tasks": {
            "backup": {
                "command": "rsync",
                "args": ["-a", "/src", "/dst"],
                "schedule": "0 3 * * *",
                "retry_limit": 3,
                "retry_wait": 10,
                "retry_type": "exponential",
                "timeout": 600,
            }
        },
        "healthcheck": {"host": "0.0.0.0", "port": 9000},
    }))

    config = load_config(str(config_path))

    assert config.log_level == "warn"
    assert config.time_zone == "Asia/Tokyo"
    assert config.config_path == config_path
    task = config.get_task("backup")
    assert task.command == "rsync"
    assert task.args == ["-a", "/src", "/dst"]
    assert task.retry_limit == 3
    assert task.retry_type is RetryType.EXPONENTIAL
    assert task.timeout == 600
    assert config.healthcheck.host == "0.0.0.0"
    assert config.healthcheck.port == 9000
    assert config.healthcheck.path == "/health"


def test_load_yaml_config_with_defaults(tmp_path):
    config_path = _write(tmp_path / "chronos.yaml", yaml.safe_dump({
        "tasks": {"greet": {"command": "echo", "schedule": "@hourly"}},
    }))

    config = load_config(str(config_path))

    task = config.tasks["greet"]
    assert task.args == []
    assert task.env == {}
    assert task.propagate_env is False
    assert task.use_template is False
    assert task.timeout == 0
    assert task.retry_limit == 0
    assert task.retry_type is RetryType.FIXED
    assert task.overlap == "skip"
    assert config.log_level == "info"
    assert config.time_zone is None
    assert config.healthcheck is None


def test_load_toml_config(tmp_path):
    config_path = _write(tmp_path / "chronos.toml", """
log_level = "error"

[tasks.report]
command = "make"
args = ["report"]
schedule = "@daily"
use_template = true
env = { OUTPUT = "/tmp/report" }

[healthcheck]
host = "127.0.0.1"
port = 8081
path = "/healthz"
""")

    config = load_config(str(config_path))

    task = config.tasks["report"]
    assert task.use_template is True
    assert task.env == {"OUTPUT": "/tmp/report"}
    assert config.healthcheck.path == "/healthz"


def test_config_path_from_environment(tmp_path, monkeypatch):
    config_path = _write(tmp_path / "chronos.json", json.dumps(_base_config()))
    monkeypatch.setenv("CHRONOS_CONFIG_PATH", str(config_path))

    config = load_config()

    assert "greet" in config.tasks


def test_missing_config_path(monkeypatch):
    monkeypatch.delenv("CHRONOS_CONFIG_PATH", raising=False)
    with pytest.raises(ConfigError, match="CHRONOS_CONFIG_PATH"):
        load_config()


def test_unsupported_extension(tmp_path):
    config_path = _write(tmp_path / "chronos.ini", "[tasks]")
    with pytest.raises(ConfigError, match="extension"):
        load_config(str(config_path))


def test_malformed_file(tmp_path):
    config_path = _write(tmp_path / "chronos.json", "{not json")
    with pytest.raises(ConfigError, match="Failed to parse"):
        load_config(str(config_path))


def test_tasks_required():
    with pytest.raises(ConfigError, match="'tasks' is required"):
        parse_config({"log_level": "info"})


@pytest.mark.parametrize("overrides, message", [
    ({"command": ""}, "'command' is required"),
    ({"schedule": None}, "'schedule' is required"),
    ({"retry_type": "linear"}, "'retry_type'"),
    ({"retry_limit": -2}, "'retry_limit'"),
    ({"retry_wait": 0}, "'retry_wait' must be positive"),
    ({"timeout": -1}, "'timeout'"),
    ({"overlap": "queue"}, "'overlap'"),
    ({"args": "not-a-list"}, "'args' must be a list"),
])
def test_invalid_task_fields(overrides, message):
    with pytest.raises(ConfigError, match=message):
        parse_config(_base_config(**overrides))


def test_all_errors_are_reported():
    data = _base_config(command="", retry_type="linear")
    data["log_level"] = "verbose"

    with pytest.raises(ConfigError) as exc_info:
        parse_config(data)

    assert len(exc_info.value.errors) == 3
    assert "Task greet" in str(exc_info.value)


def test_invalid_healthcheck_port():
    data = _base_config()
    data["healthcheck"] = {"host": "localhost", "port": 70000}
    with pytest.raises(ConfigError, match="'port'"):
        parse_config(data)


def test_retry_flags():
    never = TaskConfig(name="a", command="true", schedule="@hourly", retry_limit=0)
    forever = TaskConfig(name="b", command="true", schedule="@hourly", retry_limit=-1)
    limited = TaskConfig(name="c", command="true", schedule="@hourly", retry_limit=3)

    assert not never.is_retryable and not never.is_infinite_retry
    assert forever.is_retryable and forever.is_infinite_retry
    assert limited.is_retryable and not limited.is_infinite_retry
