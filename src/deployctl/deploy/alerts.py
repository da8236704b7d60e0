"""Alerting for deployments that need a human."""

from typing import Any

import httpx

from deployctl.config import AlertConfig
from deployctl.core.logging import get_logger
from deployctl.deploy.models import DeploymentAttempt

logger = get_logger(__name__)


class WebhookAlerter:
    """Post a JSON alert to a webhook (Slack incoming-webhook compatible)."""

    def __init__(self, config: AlertConfig | None = None):
        self._config = config or AlertConfig()

    @property
    def enabled(self) -> bool:
        return bool(self._config.get_webhook_url())

    def build_payload(self, attempt: DeploymentAttempt) -> dict[str, Any]:
        return {
            "text": (
                f":rotating_light: Deployment of {attempt.target} at {attempt.revision} "
                f"failed and rollback did not recover it. Manual intervention required. "
                f"({attempt.message})"
            ),
            "attempt": attempt.to_dict(),
        }

    def __call__(self, attempt: DeploymentAttempt) -> bool:
        """Send the alert. Delivery failures are logged, never raised.

        Returns:
            True if the webhook accepted the alert
        """
        url = self._config.get_webhook_url()
        if not url:
            return False

        try:
            response = httpx.post(url, json=self.build_payload(attempt), timeout=self._config.timeout)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Alert delivery failed", target=attempt.target, error=str(e))
            return False

        logger.info("Alert sent", target=attempt.target, attempt=attempt.id)
        return True
