"""Tests for webhook alerts."""

from unittest.mock import patch

import httpx

from deployctl.config import AlertConfig
from deployctl.deploy.alerts import WebhookAlerter
from deployctl.deploy.models import AttemptOutcome, DeploymentAttempt


def failed_attempt() -> DeploymentAttempt:
    return DeploymentAttempt(
        target="production",
        revision="abc1234",
        outcome=AttemptOutcome.FAILED,
        message="restart failed; rollback failed: no previous release recorded",
        alert_raised=True,
    )


class TestWebhookAlerter:
    """Tests for WebhookAlerter."""

    def test_disabled_without_url(self):
        alerter = WebhookAlerter(AlertConfig())
        with patch("deployctl.deploy.alerts.httpx.post") as post:
            assert alerter(failed_attempt()) is False
        assert not alerter.enabled
        post.assert_not_called()

    def test_posts_payload(self):
        alerter = WebhookAlerter(AlertConfig(webhook_url="https://hooks.example.com/abc", timeout=3))
        request = httpx.Request("POST", "https://hooks.example.com/abc")
        with patch("deployctl.deploy.alerts.httpx.post") as post:
            post.return_value = httpx.Response(200, request=request)
            assert alerter(failed_attempt()) is True

        url = post.call_args.args[0]
        payload = post.call_args.kwargs["json"]
        assert url == "https://hooks.example.com/abc"
        assert post.call_args.kwargs["timeout"] == 3
        assert "production" in payload["text"]
        assert "Manual intervention required" in payload["text"]
        assert payload["attempt"]["outcome"] == "failed"

    def test_delivery_failure_is_logged(self):
        alerter = WebhookAlerter(AlertConfig(webhook_url="https://hooks.example.com/abc"))
        request = httpx.Request("POST", "https://hooks.example.com/abc")
        with patch("deployctl.deploy.alerts.httpx.post") as post:
            post.return_value = httpx.Response(500, request=request)
            assert alerter(failed_attempt()) is False

    def test_connection_error_is_logged(self):
        alerter = WebhookAlerter(AlertConfig(webhook_url="https://hooks.example.com/abc"))
        with patch("deployctl.deploy.alerts.httpx.post", side_effect=httpx.ConnectError("refused")):
            assert alerter(failed_attempt()) is False
