"""Post-restart readiness checks."""

import time
from dataclasses import dataclass
from enum import Enum

import httpx

from deployctl.config import HealthConfig
from deployctl.core.logging import get_logger
from deployctl.core.utils import backoff_delay, truncate_string
from deployctl.deploy.models import DeploymentTarget

logger = get_logger(__name__)


class HealthStatus(str, Enum):
    """Verdict of a health check."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class HealthCheckResult:
    """Outcome of polling a target's health endpoint."""

    status: HealthStatus
    attempts: int
    detail: str
    duration: float = 0.0

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


class HealthVerifier:
    """Poll a target's health endpoint until it answers successfully."""

    def __init__(self, config: HealthConfig | None = None):
        self._config = config or HealthConfig()

    def check(
        self,
        target: DeploymentTarget,
        attempts: int | None = None,
        interval: float | None = None,
    ) -> HealthCheckResult:
        """Check whether the target serves traffic.

        Short-circuits on the first successful response. Non-2xx statuses,
        an unexpected body status and connection errors all count as a
        failed attempt.

        Args:
            target: Target to probe
            attempts: Maximum requests, defaults to the configured ceiling
            interval: Base delay between requests, grows by backoff_factor

        Returns:
            HealthCheckResult with the verdict and the last probe detail
        """
        cfg = self._config
        max_attempts = attempts if attempts is not None else cfg.attempts
        base_interval = interval if interval is not None else cfg.interval
        started = time.monotonic()

        if cfg.initial_delay:
            time.sleep(cfg.initial_delay)

        detail = "no attempts made"
        with httpx.Client(timeout=cfg.timeout, follow_redirects=True) as client:
            for attempt in range(1, max_attempts + 1):
                ok, detail = self._probe(client, target.health_url)
                if ok:
                    logger.info("Health check passed", target=target.name, attempt=attempt)
                    return HealthCheckResult(
                        status=HealthStatus.HEALTHY,
                        attempts=attempt,
                        detail=detail,
                        duration=time.monotonic() - started,
                    )

                logger.debug("Health check attempt failed", target=target.name, attempt=attempt, detail=detail)
                if attempt < max_attempts:
                    time.sleep(backoff_delay(attempt - 1, base_interval, cfg.backoff_factor, cfg.max_interval))

        logger.warning("Health check failed", target=target.name, attempts=max_attempts, detail=detail)
        return HealthCheckResult(
            status=HealthStatus.UNHEALTHY,
            attempts=max_attempts,
            detail=detail,
            duration=time.monotonic() - started,
        )

    def _probe(self, client: httpx.Client, url: str) -> tuple[bool, str]:
        """Issue a single request. Returns (success, detail)."""
        try:
            response = client.get(url)
        except httpx.RequestError as e:
            return False, f"request failed: {e.__class__.__name__}: {e}"

        if not response.is_success:
            return False, f"HTTP {response.status_code}"

        expected = self._config.expect_status
        if expected is None:
            return True, f"HTTP {response.status_code}"

        try:
            body = response.json()
        except ValueError:
            return False, f"HTTP {response.status_code}, body is not JSON: {truncate_string(response.text, 80)}"

        status = body.get("status") if isinstance(body, dict) else None
        if str(status).lower() != expected.lower():
            return False, f"HTTP {response.status_code}, status={status!r}, expected {expected!r}"
        return True, f"HTTP {response.status_code}, status={status!r}"
