"""Tests for the health verifier."""

from unittest.mock import MagicMock, patch

import httpx
import pytest

from deployctl.config import HealthConfig
from deployctl.deploy.health import HealthStatus, HealthVerifier


@pytest.fixture
def mock_http():
    with patch("deployctl.deploy.health.httpx.Client") as client_cls:
        client = MagicMock()
        client_cls.return_value.__enter__.return_value = client
        yield client


@pytest.fixture
def mock_sleep():
    with patch("deployctl.deploy.health.time.sleep") as sleep:
        yield sleep


def verifier(**overrides) -> HealthVerifier:
    settings = {"attempts": 3, "interval": 1, "backoff_factor": 2, "max_interval": 30}
    settings.update(overrides)
    return HealthVerifier(HealthConfig(**settings))


class TestHealthVerifier:
    """Tests for HealthVerifier.check."""

    def test_healthy_first_try(self, production, mock_http, mock_sleep):
        mock_http.get.return_value = httpx.Response(200)

        result = verifier().check(production)

        assert result.healthy
        assert result.status == HealthStatus.HEALTHY
        assert result.attempts == 1
        mock_http.get.assert_called_once_with("http://app.example.com:8000/health")
        mock_sleep.assert_not_called()

    def test_short_circuits_after_recovery(self, production, mock_http, mock_sleep):
        mock_http.get.side_effect = [
            httpx.ConnectError("connection refused"),
            httpx.Response(503),
            httpx.Response(200),
        ]

        result = verifier().check(production)

        assert result.healthy
        assert result.attempts == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1, 2]

    def test_never_healthy(self, production, mock_http, mock_sleep):
        mock_http.get.return_value = httpx.Response(502)

        result = verifier().check(production)

        assert not result.healthy
        assert result.attempts == 3
        assert result.detail == "HTTP 502"
        assert mock_http.get.call_count == 3
        assert mock_sleep.call_count == 2

    def test_connection_errors_count_as_failures(self, production, mock_http, mock_sleep):
        mock_http.get.side_effect = httpx.ConnectError("connection refused")

        result = verifier(attempts=2).check(production)

        assert result.status == HealthStatus.UNHEALTHY
        assert "ConnectError" in result.detail

    def test_attempt_override(self, production, mock_http, mock_sleep):
        mock_http.get.return_value = httpx.Response(500)

        result = verifier().check(production, attempts=5, interval=0)

        assert result.attempts == 5
        assert all(c.args[0] == 0 for c in mock_sleep.call_args_list)

    def test_initial_delay(self, production, mock_http, mock_sleep):
        mock_http.get.return_value = httpx.Response(200)

        verifier(initial_delay=4).check(production)

        mock_sleep.assert_called_once_with(4)

    def test_expected_body_status(self, production, mock_http, mock_sleep):
        mock_http.get.side_effect = [
            httpx.Response(200, json={"status": "starting"}),
            httpx.Response(200, json={"status": "OK"}),
        ]

        result = verifier(expect_status="ok").check(production)

        assert result.healthy
        assert result.attempts == 2

    def test_expected_status_needs_json(self, production, mock_http, mock_sleep):
        mock_http.get.return_value = httpx.Response(200, text="<html>ok</html>")

        result = verifier(attempts=1, expect_status="ok").check(production)

        assert not result.healthy
        assert "not JSON" in result.detail
