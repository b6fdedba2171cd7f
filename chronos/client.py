"""
HTTP client for the worker's health-check endpoint.
"""

import logging
from typing import Optional

import requests

from chronos.config import ChronosError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


class HealthCheckError(ChronosError):
    """Raised when the health-check endpoint cannot be queried."""
    pass


class HealthCheckClient:
    """
    Queries a worker's health-check endpoint.

    Args:
        session: requests session to use (a new one if omitted)
    """

    def __init__(self, session: Optional[requests.Session] = None):
        self.session = session or requests.Session()

    def check_health(self, url: str, timeout: float = DEFAULT_TIMEOUT) -> bool:
        """
        Invoke the health-check endpoint.

        Args:
            url: Full URL of the endpoint, e.g. http://localhost:8080/health
            timeout: Request timeout in seconds

        Returns:
            True if the worker reports itself healthy

        Raises:
            HealthCheckError: If the request fails or the body is malformed
        """
        logger.debug(f"Requesting health check: {url}")
        try:
            response = self.session.get(
                url,
                headers={'Accept': 'application/json'},
                timeout=timeout
            )
        except requests.RequestException as e:
            raise HealthCheckError(f"failed to exec a request for health check API: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            raise HealthCheckError(
                f"malformed response (status {response.status_code}): {response.text[:200]}"
            ) from e

        if not isinstance(body, dict) or not isinstance(body.get('ok'), bool):
            raise HealthCheckError(f"malformed response: {body!r}")

        if not body['ok']:
            logger.debug(f"Failed jobs: {body.get('failed_jobs')}")
        return body['ok']
