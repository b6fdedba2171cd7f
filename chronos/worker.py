"""
Worker: runs every configured task on its schedule.

The worker owns one Job per task, an APScheduler BackgroundScheduler that
fires the tasks, and the optional health-check server. Each firing is
dispatched onto its own thread, so a task that is retrying never delays
the firings of any other task.

Lifecycle: INITIALIZING (constructor, all configuration errors surface
here) -> RUNNING (run() blocks) -> TERMINATED, either because stop() was
called or because the health-check server failed. A terminated worker
cannot be restarted.
"""

import logging
import signal
import threading
from enum import Enum
from queue import SimpleQueue
from typing import Any, Dict, List, Optional, Set, Tuple

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_MISSED,
    EVENT_JOB_MAX_INSTANCES,
)
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler

from chronos.config import ChronosError, ConfigError, WorkerConfig
from chronos.health import HealthAggregator, HealthServer, HealthServerError
from chronos.jobs import Job
from chronos.schedule import build_trigger, resolve_timezone

logger = logging.getLogger(__name__)

# Grace period for in-flight cycles after the worker stops
SHUTDOWN_TIMEOUT = 10.0


class WorkerState(Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    TERMINATED = "terminated"


class TerminationReason(Enum):
    CANCELLED = "cancelled"
    HEALTH_SERVER_FAILURE = "health-server-failure"


class Worker:
    """
    Coordinates scheduling, execution and health reporting.

    Args:
        config: Validated worker configuration
        logger: Logger for the worker and its jobs
        max_workers: Threads available to the scheduler for dispatching firings

    Raises:
        ConfigError: If the time zone or any schedule expression is invalid
    """

    def __init__(
        self,
        config: WorkerConfig,
        logger: Optional[logging.Logger] = None,
        max_workers: int = 5
    ):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.state = WorkerState.INITIALIZING
        self.termination_reason: Optional[TerminationReason] = None

        self.jobs: Dict[str, Job] = {
            name: Job(task, logger=logger) for name, task in config.tasks.items()
        }
        self.timezone = resolve_timezone(config.time_zone)

        self._triggers = {}
        for name, job in self.jobs.items():
            try:
                self._triggers[name] = build_trigger(job.task.schedule, self.timezone)
            except ValueError as e:
                raise ConfigError(f"failed to add Task `{name}`. err: {e}") from e

        self.aggregator = HealthAggregator(self.jobs.values())
        self.health_server: Optional[HealthServer] = None
        if config.healthcheck is not None:
            self.health_server = HealthServer(self.aggregator, config.healthcheck)

        # Dispatch returns immediately, so one instance per task is enough
        self.scheduler = BackgroundScheduler(
            timezone=self.timezone,
            executors={'default': ThreadPoolExecutor(max_workers)},
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': 60
            }
        )
        self._setup_event_listeners()

        self._stop_event = threading.Event()
        # Signal handlers call stop() on the main thread, so put() must be reentrant
        self._termination: "SimpleQueue[Tuple[TerminationReason, Optional[ChronosError]]]" = SimpleQueue()
        self._cycles: Set[threading.Thread] = set()
        self._cycles_lock = threading.Lock()

    def _setup_event_listeners(self):
        """Setup APScheduler event listeners for logging."""

        def job_error_listener(event):
            self.logger.error(
                f"Dispatch of task `{event.job_id}` raised exception: {event.exception}",
                exc_info=True
            )

        def job_missed_listener(event):
            self.logger.warning(f"Task `{event.job_id}` missed scheduled run time")

        def job_max_instances_listener(event):
            self.logger.warning(f"Task `{event.job_id}` firing skipped: dispatcher busy")

        self.scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)
        self.scheduler.add_listener(job_missed_listener, EVENT_JOB_MISSED)
        self.scheduler.add_listener(job_max_instances_listener, EVENT_JOB_MAX_INSTANCES)

    def install_signal_handlers(self):
        """Stop the worker on SIGINT and SIGTERM. Must be called from the main thread."""

        def signal_handler(signum, frame):
            self.logger.info(f"Received signal {signum}, shutting down...")
            self.stop()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def dispatch(self, name: str) -> Optional[threading.Thread]:
        """
        Start one cycle of a task on a new thread.

        Returns:
            The thread running the cycle, or None if the firing was skipped
        """
        job = self.jobs[name]
        if self._stop_event.is_set():
            self.logger.debug(f"Task `{name}` firing ignored: worker is stopping")
            return None
        if not job.begin_cycle():
            self.logger.warning(
                f"Task `{name}` is still running from a previous firing, skipping this one"
            )
            return None

        thread = threading.Thread(
            target=self._run_cycle,
            args=(job,),
            name=f"chronos-{name}",
            daemon=True
        )
        with self._cycles_lock:
            self._cycles.add(thread)
        thread.start()
        return thread

    def _run_cycle(self, job: Job):
        try:
            job.run_with_retry(self._stop_event)
        except Exception as e:
            self.logger.error(f"Task `{job.name}` cycle crashed: {e}", exc_info=True)
        finally:
            job.end_cycle()
            with self._cycles_lock:
                self._cycles.discard(threading.current_thread())

    def wait_for_cycles(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the cycles running right now to finish.

        Returns:
            True if all of them finished within the timeout
        """
        with self._cycles_lock:
            threads = list(self._cycles)
        for thread in threads:
            thread.join(timeout=timeout)
        return not any(thread.is_alive() for thread in threads)

    def _on_health_server_exit(self, error: Optional[HealthServerError]):
        if error is not None:
            self._termination.put((TerminationReason.HEALTH_SERVER_FAILURE, error))

    def get_jobs(self) -> List[Dict[str, Any]]:
        """
        Get list of all tasks with their next run time and health.

        Returns:
            List of job information dictionaries
        """
        jobs = []
        for name, job in self.jobs.items():
            scheduled = self.scheduler.get_job(name)
            next_run = getattr(scheduled, 'next_run_time', None) if scheduled else None
            jobs.append({
                'id': name,
                'schedule': job.task.schedule,
                'next_run': next_run.isoformat() if next_run else None,
                'healthy': job.is_healthy(),
                'running': job.running_cycles > 0
            })
        return jobs

    def run(self):
        """
        Run the worker until it is stopped.

        Returns normally after stop(); raises HealthServerError if the
        health-check server fails.
        """
        if self.state is not WorkerState.INITIALIZING:
            raise ChronosError(f"worker cannot be run in state {self.state.value}")
        self.state = WorkerState.RUNNING

        reason = TerminationReason.CANCELLED
        error = None
        try:
            if self.health_server is not None:
                self.health_server.start(self._on_health_server_exit)

            for name, trigger in self._triggers.items():
                self.scheduler.add_job(
                    self.dispatch,
                    trigger,
                    args=[name],
                    id=name,
                    name=name,
                    replace_existing=True
                )
                self.logger.info(
                    f"Task `{name}` has been registered. schedule: {self.jobs[name].task.schedule}"
                )

            self.scheduler.start()
            self.logger.info(f"Worker started with timezone {self.timezone}")
            for info in self.get_jobs():
                self.logger.info(f"Task `{info['id']}` will be executed at {info['next_run']} at first")

            reason, error = self._termination.get()
        finally:
            self._shutdown()
            self.state = WorkerState.TERMINATED
            self.termination_reason = reason

        self.logger.info(f"Worker terminated: {reason.value}")
        if error is not None:
            raise error

    def stop(self):
        """Request termination; run() returns once shutdown completes."""
        self._termination.put((TerminationReason.CANCELLED, None))

    def _shutdown(self):
        self._stop_event.set()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        if self.health_server is not None:
            self.health_server.stop()
        if not self.wait_for_cycles(timeout=SHUTDOWN_TIMEOUT):
            self.logger.warning("Some task cycles did not finish before shutdown")
