"""
Task execution and retry engine.

A Job owns one task's configuration, its health state and the history of
its execution attempts. ``Job.execute`` runs the command once;
``Job.run_with_retry`` runs one full cycle (attempt, back off, attempt
again) and settles the job's health at the end of the cycle.

Commands are run directly (no shell) with the task's effective
environment. Both the command wait and the backoff wait observe a
``threading.Event`` so that a stopping worker interrupts them promptly.
"""

import logging
import os
import shlex
import shutil
import subprocess
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Any, Optional, List

from chronos.config import ChronosError, RetryType, TaskConfig
from chronos.template import ArgTemplateEngine, TemplateRenderError

logger = logging.getLogger(__name__)

# How often a running command is checked for timeout and cancellation
POLL_INTERVAL = 0.1

# Upper bound for collecting output after a command was killed
READER_JOIN_TIMEOUT = 5.0

DEFAULT_RETRY_WAIT = 1


class JobExecutionError(ChronosError):
    """Raised when a single execution attempt fails."""
    pass


class JobTimeoutError(JobExecutionError):
    """Raised when an attempt exceeds the task timeout."""
    pass


class JobCancelledError(JobExecutionError):
    """Raised when an attempt is interrupted because the worker is stopping."""
    pass


class HealthState(Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class ExecutionRecord:
    """Outcome of one execution attempt."""
    attempt: int  # 0-based index within its cycle
    started_at: datetime
    succeeded: bool
    error: Optional[str] = None


def build_env(task: TaskConfig) -> Dict[str, str]:
    """
    Build the effective environment for a task's command.

    With propagate_env the worker's own environment is the base and the
    task's entries are laid over it; otherwise only the task's entries
    are passed.
    """
    env: Dict[str, str] = {}
    if task.propagate_env:
        env.update(os.environ)
    env.update(task.env)
    return env


def retry_wait_seconds(
    task: TaskConfig,
    attempt: int,
    log: Optional[logging.Logger] = None
) -> float:
    """
    Compute the wait before retrying after the given failed attempt.

    Fixed waits retry_wait every time; exponential waits
    retry_wait * 2**attempt. An unknown retry type falls back to fixed.
    """
    log = log or logger
    wait = task.retry_wait
    if not isinstance(wait, (int, float)) or isinstance(wait, bool) or wait <= 0:
        log.warning(
            f"Task `{task.name}` has invalid retry_wait {wait!r}, "
            f"using {DEFAULT_RETRY_WAIT}s"
        )
        wait = DEFAULT_RETRY_WAIT

    if task.retry_type == RetryType.EXPONENTIAL:
        return wait * (2 ** attempt)
    if task.retry_type != RetryType.FIXED:
        log.warning(
            f"Task `{task.name}` has unknown retry_type {task.retry_type!r}, "
            "falling back to fixed wait"
        )
    return wait


def _read_stream(stream, output_list: List[str], log_func, prefix: str):
    """Collect lines from a pipe, logging each one as it arrives."""
    for line in stream:
        line = line.rstrip('\n')
        output_list.append(line)
        log_func(f"{prefix}{line}")
    stream.close()


class Job:
    """
    Runtime state of one task.

    Health state and execution history are guarded by a lock owned by
    this job alone; the task configuration is immutable and read without
    locking.
    """

    def __init__(self, task: TaskConfig, logger: Optional[logging.Logger] = None):
        self.task = task
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._state = HealthState.HEALTHY
        self._history: List[ExecutionRecord] = []
        self._running = 0

    @property
    def name(self) -> str:
        return self.task.name

    @property
    def state(self) -> HealthState:
        with self._lock:
            return self._state

    def is_healthy(self) -> bool:
        """Return True if the job's last settled cycle did not fail."""
        with self._lock:
            return self._state == HealthState.HEALTHY

    def history(self) -> List[ExecutionRecord]:
        """Return a copy of the execution history, oldest first."""
        with self._lock:
            return list(self._history)

    def success_count(self) -> int:
        with self._lock:
            return sum(1 for record in self._history if record.succeeded)

    def next_count(self) -> int:
        """Value of the ``count`` template function for the next attempt."""
        return self.success_count() + 1

    @property
    def running_cycles(self) -> int:
        with self._lock:
            return self._running

    def begin_cycle(self) -> bool:
        """
        Reserve a slot for a new cycle.

        Returns False when the task's overlap policy is ``skip`` and a
        cycle is already running.
        """
        with self._lock:
            if self.task.overlap == "skip" and self._running > 0:
                return False
            self._running += 1
            return True

    def end_cycle(self):
        with self._lock:
            self._running = max(0, self._running - 1)

    def _record(self, record: ExecutionRecord):
        with self._lock:
            self._history.append(record)

    def _set_state(self, state: HealthState):
        with self._lock:
            self._state = state

    def _build_args(self, env: Dict[str, str]) -> List[str]:
        args = list(self.task.args)
        if not self.task.use_template:
            return args
        engine = ArgTemplateEngine(self.name, env, self.next_count)
        try:
            return engine.render_args(args)
        except TemplateRenderError as e:
            raise JobExecutionError(f"Task `{self.name}` {e}") from e

    def _kill(self, process: subprocess.Popen):
        try:
            process.kill()
        except OSError:
            pass
        process.wait()

    def _wait(self, process: subprocess.Popen, stop_event: threading.Event):
        """Wait for the process, killing it on timeout or cancellation."""
        timeout = self.task.timeout
        deadline = time.monotonic() + timeout if timeout > 0 else None

        while True:
            try:
                process.wait(timeout=POLL_INTERVAL)
                return
            except subprocess.TimeoutExpired:
                pass

            if stop_event.is_set():
                self._kill(process)
                raise JobCancelledError(
                    f"Task `{self.name}` command cancelled: worker is stopping"
                )
            if deadline is not None and time.monotonic() >= deadline:
                self._kill(process)
                raise JobTimeoutError(
                    f"Task `{self.name}` command timed out after {timeout}s"
                )

    def execute(self, stop_event: Optional[threading.Event] = None) -> Dict[str, Any]:
        """
        Execute the task's command once.

        Args:
            stop_event: Set to interrupt the attempt (the command is killed)

        Returns:
            Dict with stdout, stderr, returncode

        Raises:
            JobExecutionError: If the arguments cannot be rendered, the
                command cannot be started, exits non-zero, times out
                (JobTimeoutError) or is cancelled (JobCancelledError)
        """
        stop_event = stop_event or threading.Event()
        env = build_env(self.task)
        args = self._build_args(env)
        # The effective PATH wins; without one, the worker's PATH is searched
        executable = shutil.which(self.task.command, path=env.get('PATH')) or self.task.command
        command_line = [executable, *args]

        self.logger.info(
            f"Task `{self.name}` started to execute command. "
            f"command: {shlex.join(command_line)}"
        )

        try:
            process = subprocess.Popen(
                command_line,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding='utf-8',
                errors='replace',
                env=env
            )
        except OSError as e:
            raise JobExecutionError(
                f"Task `{self.name}` failed to start command `{self.task.command}`: {e}"
            ) from e

        stdout_lines: List[str] = []
        stderr_lines: List[str] = []
        log_prefix = f"[{self.name}] "
        readers = [
            threading.Thread(
                target=_read_stream,
                args=(process.stdout, stdout_lines, self.logger.info, log_prefix),
                daemon=True
            ),
            threading.Thread(
                target=_read_stream,
                args=(process.stderr, stderr_lines, self.logger.warning, log_prefix + "stderr: "),
                daemon=True
            ),
        ]
        for reader in readers:
            reader.start()

        try:
            self._wait(process, stop_event)
        finally:
            for reader in readers:
                reader.join(timeout=READER_JOIN_TIMEOUT)

        stdout = '\n'.join(stdout_lines)
        stderr = '\n'.join(stderr_lines)

        if process.returncode != 0:
            message = f"Task `{self.name}` command exited with code {process.returncode}"
            if stderr:
                message += f": {stderr}"
            raise JobExecutionError(message)

        return {
            'stdout': stdout,
            'stderr': stderr,
            'returncode': process.returncode
        }

    def run_with_retry(self, stop_event: Optional[threading.Event] = None):
        """
        Run one cycle: execute, and retry on failure per the task's policy.

        The cycle ends healthy on the first success and unhealthy once the
        retry limit is exhausted. If stop_event is set mid-cycle the cycle
        is abandoned and the health state is left as it was.
        """
        stop_event = stop_event or threading.Event()
        task = self.task
        run_id = uuid.uuid4().hex[:8]
        log_prefix = f"[{self.name}:{run_id}]"
        limit = "unlimited" if task.is_infinite_retry else str(task.retry_limit)
        attempt = 0

        self.logger.debug(f"{log_prefix} Starting cycle")

        while True:
            if stop_event.is_set():
                self.logger.info(f"{log_prefix} Cycle abandoned before attempt {attempt}: worker is stopping")
                return

            started_at = datetime.now()
            try:
                self.execute(stop_event)
            except JobCancelledError as e:
                self._record(ExecutionRecord(attempt, started_at, False, str(e)))
                self.logger.info(f"{log_prefix} Cycle abandoned during attempt {attempt}: {e}")
                return
            except JobExecutionError as e:
                self._record(ExecutionRecord(attempt, started_at, False, str(e)))

                exhausted = not task.is_infinite_retry and (
                    not task.is_retryable or attempt >= task.retry_limit
                )
                if exhausted:
                    self.logger.warning(f"{log_prefix} Failed (attempt {attempt} of {limit}): {e}")
                    break

                wait = retry_wait_seconds(task, attempt, self.logger)
                self.logger.warning(
                    f"{log_prefix} Failed (attempt {attempt} of {limit}, will retry in {wait}s): {e}"
                )
                if stop_event.wait(min(wait, threading.TIMEOUT_MAX)):
                    self.logger.info(f"{log_prefix} Cycle abandoned during backoff: worker is stopping")
                    return
                attempt += 1
                continue

            self._record(ExecutionRecord(attempt, started_at, True))
            self._set_state(HealthState.HEALTHY)
            self.logger.info(f"Task `{self.name}` finished to execute command successfully.")
            return

        self.logger.error(f"Task `{self.name}` exceeded retry limit ({limit}).")
        self._set_state(HealthState.UNHEALTHY)

    def __repr__(self):
        return f"Job(name={self.name!r}, state={self.state.value})"
