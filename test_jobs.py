"""
Tests for single execution attempts and the retry cycle.

Commands are real subprocesses running the current Python interpreter.
"""

import sys
import threading
import time
from datetime import datetime

import pytest

from chronos.config import RetryType, TaskConfig
from chronos.jobs import (
    ExecutionRecord,
    HealthState,
    Job,
    JobCancelledError,
    JobExecutionError,
    JobTimeoutError,
    build_env,
    retry_wait_seconds,
)
from chronos.log import nop_logger

SUCCEED = "import sys; sys.exit(0)"
FAIL = "import sys; sys.exit(1)"
ECHO = "import sys; print(sys.argv[1])"
SLEEP = "import time; time.sleep(30)"

# Fails until it has been run `threshold` times, counting runs in a file
FLAKY = """
import sys
from pathlib import Path
counter = Path(sys.argv[1])
runs = int(counter.read_text()) + 1 if counter.exists() else 1
counter.write_text(str(runs))
sys.exit(0 if runs >= int(sys.argv[2]) else 1)
"""


def make_task(*args, **overrides):
    settings = {
        "name": "sample",
        "command": sys.executable,
        "args": list(args),
        "schedule": "@hourly",
        "propagate_env": True,
        "retry_wait": 0.01,
    }
    settings.update(overrides)
    return TaskConfig(**settings)


def make_job(*args, **overrides):
    return Job(make_task(*args, **overrides), logger=nop_logger())


def flaky_job(tmp_path, succeed_on, **overrides):
    counter = tmp_path / "runs.txt"
    return make_job("-c", FLAKY, str(counter), str(succeed_on), **overrides)


def stop_after(seconds):
    stop_event = threading.Event()
    threading.Timer(seconds, stop_event.set).start()
    return stop_event


# --- execute -----------------------------------------------------------------

def test_execute_success_captures_output():
    job = make_job("-c", "import sys; print('out'); print('err', file=sys.stderr)")

    result = job.execute()

    assert result["returncode"] == 0
    assert result["stdout"] == "out"
    assert result["stderr"] == "err"


def test_execute_nonzero_exit_raises():
    job = make_job("-c", FAIL)
    with pytest.raises(JobExecutionError, match="exited with code 1"):
        job.execute()


def test_execute_missing_command_raises():
    job = make_job(command="/nonexistent/chronos-command")
    with pytest.raises(JobExecutionError, match="failed to start"):
        job.execute()


def test_execute_timeout():
    job = make_job("-c", SLEEP, timeout=1)

    started = time.monotonic()
    with pytest.raises(JobTimeoutError, match="timed out after 1s"):
        job.execute()
    assert time.monotonic() - started < 10


def test_execute_cancelled():
    job = make_job("-c", SLEEP)

    started = time.monotonic()
    with pytest.raises(JobCancelledError, match="cancelled"):
        job.execute(stop_after(0.3))
    assert time.monotonic() - started < 10


def test_execute_renders_env_template():
    job = make_job("-c", ECHO, '{{env "X"}}', env={"X": "v"}, use_template=True)
    assert job.execute()["stdout"] == "v"


def test_execute_without_template_passes_args_verbatim():
    job = make_job("-c", ECHO, '{{env "X"}}', env={"X": "v"})
    assert job.execute()["stdout"] == '{{env "X"}}'


def test_execute_template_error_does_not_run_command(tmp_path):
    marker = tmp_path / "ran"
    job = make_job(
        "-c", "import sys; open(sys.argv[1], 'w').close()", str(marker), "{{nope}}",
        use_template=True
    )

    with pytest.raises(JobExecutionError, match="failed to apply template"):
        job.execute()
    assert not marker.exists()


def test_count_template_counts_only_successes():
    job = make_job("-c", ECHO, "{{count}}", use_template=True)
    now = datetime.now()
    job._record(ExecutionRecord(0, now, True))
    job._record(ExecutionRecord(0, now, False, "boom"))
    job._record(ExecutionRecord(1, now, False, "boom"))
    job._record(ExecutionRecord(2, now, True))

    assert job.execute()["stdout"] == "3"


def test_build_env_overlays_task_entries(monkeypatch):
    monkeypatch.setenv("CHRONOS_TEST_INHERITED", "parent")
    monkeypatch.setenv("CHRONOS_TEST_SHARED", "parent")

    propagated = build_env(make_task(
        env={"CHRONOS_TEST_SHARED": "task"}, propagate_env=True
    ))
    isolated = build_env(make_task(
        env={"CHRONOS_TEST_SHARED": "task"}, propagate_env=False
    ))

    assert propagated["CHRONOS_TEST_INHERITED"] == "parent"
    assert propagated["CHRONOS_TEST_SHARED"] == "task"
    assert isolated == {"CHRONOS_TEST_SHARED": "task"}


# --- backoff -----------------------------------------------------------------

def test_fixed_backoff_is_constant():
    task = make_task(retry_wait=5, retry_type=RetryType.FIXED)
    assert [retry_wait_seconds(task, i) for i in range(4)] == [5, 5, 5, 5]


def test_exponential_backoff_doubles():
    task = make_task(retry_wait=3, retry_type=RetryType.EXPONENTIAL)
    assert [retry_wait_seconds(task, i) for i in range(5)] == [3, 6, 12, 24, 48]


def test_unknown_retry_type_falls_back_to_fixed(caplog):
    task = make_task(retry_wait=2, retry_type="linear")

    with caplog.at_level("WARNING"):
        assert retry_wait_seconds(task, 3) == 2
    assert "unknown retry_type" in caplog.text


def test_invalid_retry_wait_never_busy_loops():
    task = make_task(retry_wait=0)
    assert retry_wait_seconds(task, 0) > 0


# --- run_with_retry ------------------------------------------------------------

@pytest.mark.parametrize("script", [SUCCEED, FAIL])
def test_never_retry_makes_exactly_one_attempt(script):
    job = make_job("-c", script, retry_limit=0)

    job.run_with_retry()

    assert len(job.history()) == 1


def test_never_retry_failure_marks_unhealthy():
    job = make_job("-c", FAIL, retry_limit=0)

    job.run_with_retry()

    assert job.state is HealthState.UNHEALTHY
    assert not job.is_healthy()
    record = job.history()[0]
    assert record.attempt == 0
    assert not record.succeeded
    assert "exited with code 1" in record.error


@pytest.mark.parametrize("limit", [1, 2, 4])
def test_limited_retries_exhaust_after_limit_plus_one(limit):
    job = make_job("-c", FAIL, retry_limit=limit)

    job.run_with_retry()

    history = job.history()
    assert len(history) == limit + 1
    assert [r.attempt for r in history] == list(range(limit + 1))
    assert not any(r.succeeded for r in history)
    assert job.state is HealthState.UNHEALTHY


def test_fixed_retry_recovers(tmp_path):
    job = flaky_job(tmp_path, succeed_on=3, retry_limit=2, retry_type=RetryType.FIXED)

    job.run_with_retry()

    history = job.history()
    assert [r.succeeded for r in history] == [False, False, True]
    assert job.is_healthy()


@pytest.mark.parametrize("succeed_on", [1, 4])
def test_infinite_retry_runs_until_success(tmp_path, succeed_on):
    job = flaky_job(tmp_path, succeed_on=succeed_on, retry_limit=-1)

    job.run_with_retry()

    history = job.history()
    assert len(history) == succeed_on
    assert history[-1].succeeded
    assert job.is_healthy()


def test_success_restores_health(tmp_path):
    job = flaky_job(tmp_path, succeed_on=2, retry_limit=0)

    job.run_with_retry()
    assert job.state is HealthState.UNHEALTHY

    job.run_with_retry()
    assert job.state is HealthState.HEALTHY
    # each cycle restarts its attempt index
    assert [r.attempt for r in job.history()] == [0, 0]


def test_cancelled_backoff_keeps_health():
    job = make_job("-c", FAIL, retry_limit=-1, retry_wait=30)

    started = time.monotonic()
    job.run_with_retry(stop_after(0.5))

    assert time.monotonic() - started < 10
    assert job.state is HealthState.HEALTHY
    assert len(job.history()) == 1


def test_cancelled_attempt_keeps_health():
    job = make_job("-c", SLEEP, retry_limit=3)

    started = time.monotonic()
    job.run_with_retry(stop_after(0.3))

    assert time.monotonic() - started < 10
    assert job.state is HealthState.HEALTHY
    history = job.history()
    assert len(history) == 1
    assert "cancelled" in history[0].error


def test_stopped_event_prevents_new_attempts():
    stop_event = threading.Event()
    stop_event.set()
    job = make_job("-c", SUCCEED)

    job.run_with_retry(stop_event)

    assert job.history() == []


def test_timeouts_are_retried():
    job = make_job("-c", SLEEP, timeout=1, retry_limit=1)

    job.run_with_retry()

    history = job.history()
    assert len(history) == 2
    assert all("timed out" in r.error for r in history)
    assert job.state is HealthState.UNHEALTHY


def test_overlap_skip_allows_one_cycle():
    job = make_job("-c", SUCCEED, overlap="skip")

    assert job.begin_cycle()
    assert not job.begin_cycle()
    job.end_cycle()
    assert job.begin_cycle()


def test_overlap_parallel_allows_many_cycles():
    job = make_job("-c", SUCCEED, overlap="parallel")

    assert job.begin_cycle()
    assert job.begin_cycle()
    assert job.running_cycles == 2
