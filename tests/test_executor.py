"""Tests for the remote executor."""

import subprocess
from unittest.mock import patch

import pytest

from deployctl.config import RetryConfig
from deployctl.deploy.executor import RemoteExecutor
from deployctl.deploy.models import StepStatus


@pytest.fixture
def executor() -> RemoteExecutor:
    return RemoteExecutor(retry=RetryConfig(max_attempts=3, initial_delay=1, backoff_factor=2, max_delay=30))


@pytest.fixture
def mock_run():
    with patch("deployctl.deploy.executor.subprocess.run") as run:
        yield run


@pytest.fixture
def mock_sleep():
    with patch("deployctl.deploy.executor.time.sleep") as sleep:
        yield sleep


class TestCommandLines:
    """argv construction for ssh and rsync."""

    def test_ssh_command(self, executor, production):
        argv = executor.ssh_command(production, "uptime")
        assert argv == [
            "ssh",
            "-p",
            "22",
            "-o",
            "BatchMode=yes",
            "-o",
            "ConnectTimeout=10",
            "-o",
            "StrictHostKeyChecking=accept-new",
            "deploy@app.example.com",
            "uptime",
        ]

    def test_ssh_identity_file(self, executor, production):
        from dataclasses import replace

        target = replace(production, identity_file="/keys/deploy", ssh_port=2222)
        argv = executor.ssh_command(target, "uptime")
        assert argv[1:3] == ["-p", "2222"]
        assert "-i" in argv
        assert argv[argv.index("-i") + 1] == "/keys/deploy"

    def test_rsync_command(self, executor, production, tmp_path):
        argv = executor.rsync_command(production, tmp_path, [".git", ".env"])
        assert argv[:3] == ["rsync", "-az", "--delete"]
        assert "--exclude=.git" in argv
        assert "--exclude=.env" in argv
        assert argv[argv.index("-e") + 1].startswith("ssh -p 22 -o BatchMode=yes")
        assert "--rsync-path=mkdir -p /srv/app && rsync" in argv
        assert argv[-2] == f"{tmp_path}/"
        assert argv[-1] == "deploy@app.example.com:/srv/app/"


class TestRunCommand:
    """Remote command execution and retry policy."""

    def test_success(self, executor, production, mock_run, completed):
        mock_run.return_value = completed(0, stdout="ok\n")

        result = executor.run_command(production, "uptime", name="restart")

        assert result.ok
        assert result.name == "restart"
        assert result.stdout == "ok\n"
        assert result.attempts == 1
        mock_run.assert_called_once()
        assert mock_run.call_args.kwargs["timeout"] == 600
        assert mock_run.call_args.kwargs["capture_output"] is True

    def test_command_failure_not_retried(self, executor, production, mock_run, mock_sleep, completed):
        mock_run.return_value = completed(1, stderr="pulling image\nno space left on device\n")

        result = executor.run_command(production, "docker compose up -d")

        assert result.status == StepStatus.FATAL_ERROR
        assert result.returncode == 1
        assert result.message == "exit code 1: no space left on device"
        assert mock_run.call_count == 1
        mock_sleep.assert_not_called()

    def test_transient_failure_retried(self, executor, production, mock_run, mock_sleep, completed):
        mock_run.side_effect = [
            completed(255, stderr="Connection reset"),
            completed(255, stderr="Connection reset"),
            completed(0),
        ]
        retries = []

        result = executor.run_command(production, "uptime", on_retry=retries.append)

        assert result.ok
        assert result.attempts == 3
        assert [r.status for r in retries] == [StepStatus.RETRYABLE_ERROR] * 2
        assert [r.attempts for r in retries] == [1, 2]
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1, 2]

    def test_transient_failure_gives_up(self, executor, production, mock_run, mock_sleep, completed):
        mock_run.return_value = completed(255, stderr="Connection refused")

        result = executor.run_command(production, "uptime")

        assert result.status == StepStatus.FATAL_ERROR
        assert "gave up after 3 attempts" in result.message
        assert result.attempts == 3
        assert mock_run.call_count == 3
        assert mock_sleep.call_count == 2

    def test_timeout_is_transient(self, executor, production, mock_run, mock_sleep, completed):
        mock_run.side_effect = [
            subprocess.TimeoutExpired(cmd="ssh", timeout=5),
            completed(0),
        ]

        result = executor.run_command(production, "uptime", timeout=5)

        assert result.ok
        assert result.attempts == 2

    def test_missing_binary(self, executor, production, mock_run):
        mock_run.side_effect = FileNotFoundError("ssh")

        result = executor.run_command(production, "uptime")

        assert result.status == StepStatus.FATAL_ERROR
        assert result.message.startswith("Cannot run ssh")

    def test_backoff_capped(self, production, mock_run, mock_sleep, completed):
        executor = RemoteExecutor(retry=RetryConfig(max_attempts=4, initial_delay=10, backoff_factor=3, max_delay=25))
        mock_run.return_value = completed(255)

        executor.run_command(production, "uptime")

        assert [c.args[0] for c in mock_sleep.call_args_list] == [10, 25, 25]

    def test_dry_run(self, production, mock_run):
        executor = RemoteExecutor(dry_run=True)

        result = executor.run_command(production, "uptime")

        assert result.ok
        assert "would run" in result.message
        assert "uptime" in result.message
        mock_run.assert_not_called()


class TestSyncFiles:
    """File sync over rsync."""

    def test_sync(self, executor, production, mock_run, completed, tmp_path):
        mock_run.return_value = completed(0)

        result = executor.sync_files(production, tmp_path)

        assert result.ok
        argv = mock_run.call_args.args[0]
        assert argv[0] == "rsync"
        assert "--exclude=.env" in argv
        assert mock_run.call_args.kwargs["timeout"] == 300

    def test_sync_is_repeatable(self, executor, production, mock_run, completed, tmp_path):
        mock_run.return_value = completed(0)

        executor.sync_files(production, tmp_path)
        executor.sync_files(production, tmp_path)

        first, second = (c.args[0] for c in mock_run.call_args_list)
        assert first == second

    def test_missing_source(self, executor, production, mock_run, tmp_path):
        result = executor.sync_files(production, tmp_path / "missing")

        assert result.status == StepStatus.FATAL_ERROR
        assert "not found" in result.message
        mock_run.assert_not_called()

    def test_partial_transfer_not_retried(self, executor, production, mock_run, mock_sleep, completed, tmp_path):
        mock_run.return_value = completed(23, stderr="some files vanished")

        result = executor.sync_files(production, tmp_path)

        assert result.status == StepStatus.FATAL_ERROR
        assert mock_run.call_count == 1

    def test_socket_error_retried(self, executor, production, mock_run, mock_sleep, completed, tmp_path):
        mock_run.side_effect = [completed(12, stderr="error in rsync protocol data stream"), completed(0)]

        result = executor.sync_files(production, tmp_path)

        assert result.ok
        assert result.attempts == 2
