"""
chronos - Periodic Command Worker

Runs commands on cron-like schedules, retries failures with fixed or
exponential backoff, and reports per-task health over HTTP.

Features:
- Cron, descriptor (@daily) and interval (@every 5m) schedules
- Per-task retry policy: never, up to N times, or forever
- Per-attempt timeouts and prompt cancellation on shutdown
- Argument templating ({{env "KEY"}}, {{name}}, {{time "%Y"}}, {{count}})
- Health-check endpoint and client
"""

from chronos.config import ChronosError, ConfigError, TaskConfig, WorkerConfig, load_config
from chronos.jobs import ExecutionRecord, HealthState, Job, JobExecutionError
from chronos.health import HealthAggregator, HealthServer
from chronos.client import HealthCheckClient
from chronos.worker import Worker

__version__ = "0.1.0"
__all__ = [
    "ChronosError",
    "ConfigError",
    "TaskConfig",
    "WorkerConfig",
    "load_config",
    "ExecutionRecord",
    "HealthState",
    "Job",
    "JobExecutionError",
    "HealthAggregator",
    "HealthServer",
    "HealthCheckClient",
    "Worker",
]
