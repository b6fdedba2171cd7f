"""
Health reporting for the worker.

HealthAggregator folds the health of every job into one verdict.
HealthServer publishes that verdict over HTTP with a FastAPI application
that belongs to the server instance, served by uvicorn on a background
thread.

The endpoint always answers 200; callers read the ``ok`` field:

    {"ok": true}
    {"ok": false, "failed_jobs": ["backup", "report"]}
"""

import json
import logging
import threading
from typing import Callable, Iterable, List, Optional, Tuple

import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse, Response

from chronos.config import ChronosError, HealthCheckConfig
from chronos.jobs import Job

logger = logging.getLogger(__name__)


class HealthServerError(ChronosError):
    """Raised when the health-check server stops unexpectedly."""
    pass


class HealthAggregator:
    """
    Computes overall health from a fixed set of jobs.

    Each job is read under its own lock, one at a time, so the result is a
    best-effort view rather than a consistent snapshot across jobs.
    """

    def __init__(self, jobs: Iterable[Job]):
        self.jobs = list(jobs)

    def snapshot(self) -> Tuple[bool, List[str]]:
        """
        Returns:
            Tuple of (ok, names of unhealthy jobs)
        """
        failed = [job.name for job in self.jobs if not job.is_healthy()]
        return not failed, failed


def health_payload(ok: bool, failed_jobs: List[str]) -> dict:
    """Response body for a health snapshot."""
    if ok:
        return {'ok': True}
    return {'ok': False, 'failed_jobs': failed_jobs}


def create_app(aggregator: HealthAggregator, path: str = "/health") -> FastAPI:
    """
    Build the FastAPI application serving the health endpoint.

    Every call returns a new application, so several workers can run in
    one process without sharing routes.
    """
    app = FastAPI(title="chronos health check", docs_url=None, redoc_url=None, openapi_url=None)

    def health_check():
        ok, failed_jobs = aggregator.snapshot()
        try:
            body = json.dumps(health_payload(ok, failed_jobs))
        except (TypeError, ValueError) as e:
            logger.error(f"Failed to encode health check response: {e}")
            return PlainTextResponse(f"failed to marshal JSON. err: {e}", status_code=500)
        return Response(content=body, media_type="application/json")

    app.add_api_route(path, health_check, methods=["GET"])
    return app


class HealthServer:
    """
    Serves the health endpoint on a background thread.

    Args:
        aggregator: Source of the health verdict
        config: Host, port and path to serve on
        log_level: uvicorn log level
    """

    def __init__(
        self,
        aggregator: HealthAggregator,
        config: HealthCheckConfig,
        log_level: str = "warning"
    ):
        self.config = config
        self.app = create_app(aggregator, config.path)
        self._server = uvicorn.Server(uvicorn.Config(
            self.app,
            host=config.host,
            port=config.port,
            log_level=log_level,
            log_config=None,
            access_log=False,
        ))
        self._thread: Optional[threading.Thread] = None
        self._stopping = threading.Event()

    @property
    def address(self) -> str:
        return f"{self.config.host}:{self.config.port}"

    @property
    def started(self) -> bool:
        return self._server.started

    def _serve(self, on_exit: Callable[[Optional[HealthServerError]], None]):
        error = None
        try:
            self._server.run()
        except SystemExit:
            # uvicorn exits this way when it cannot bind
            error = HealthServerError(f"health check server failed to start on {self.address}")
        except Exception as e:
            error = HealthServerError(f"an error occurred while serving health checks: {e}")

        if error is None and not self._stopping.is_set():
            error = HealthServerError(f"health check server on {self.address} stopped unexpectedly")

        if error is not None:
            logger.error(f"Healthcheck server stopped. err: {error}")
        else:
            logger.info("Healthcheck server stopped")
        on_exit(error)

    def start(self, on_exit: Callable[[Optional[HealthServerError]], None]):
        """
        Start serving in a background thread.

        Args:
            on_exit: Called once when the server exits, with a
                HealthServerError unless stop() was requested
        """
        if self._thread is not None:
            raise HealthServerError("health check server already started")
        self._thread = threading.Thread(
            target=self._serve,
            args=(on_exit,),
            name="chronos-healthcheck",
            daemon=True
        )
        self._thread.start()
        logger.info(f"Healthcheck server started on {self.address}")

    def stop(self, timeout: Optional[float] = 5.0):
        """Ask the server to shut down and wait for its thread."""
        self._stopping.set()
        self._server.should_exit = True
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
