"""Pytest fixtures for deployctl tests."""

import os
import subprocess
from typing import Any, Callable, Generator

import pytest
from click.testing import CliRunner

from deployctl.config import DeployCtlConfig, DefaultsConfig, HealthConfig, RetryConfig
from deployctl.core.context import DeployCtlContext
from deployctl.core.output import OutputFormat
from deployctl.deploy.coordinator import DeploymentCoordinator, TargetLocks
from deployctl.deploy.health import HealthCheckResult, HealthStatus
from deployctl.deploy.models import DeploymentTarget, StepResult, StepStatus
from deployctl.deploy.resolver import EnvironmentResolver
from deployctl.deploy.state import DeploymentStateStore


SAMPLE_CONFIG: dict[str, Any] = {
    "version": "1",
    "refs": {
        "main": "production",
        "develop": "staging",
    },
    "defaults": {
        "retry": {"max_attempts": 3, "initial_delay": 0, "max_delay": 0},
        "health": {"attempts": 2, "interval": 0},
    },
    "targets": {
        "production": {
            "host": "deploy@app.example.com",
            "path": "/srv/app",
            "port": 8000,
            "health_url": "http://app.example.com:8000/health",
        },
        "staging": {
            "host": "deploy@app.example.com",
            "path": "/srv/app-staging",
            "port": 8001,
            "health_url": "http://app.example.com:8001/health",
        },
    },
}


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI runner."""
    return CliRunner()


@pytest.fixture
def sample_config() -> DeployCtlConfig:
    """Two targets on one host, mapped from main and develop."""
    return DeployCtlConfig(**SAMPLE_CONFIG)


@pytest.fixture
def production() -> DeploymentTarget:
    return DeploymentTarget(
        name="production",
        host="app.example.com",
        user="deploy",
        path="/srv/app",
        port=8000,
        health_url="http://app.example.com:8000/health",
        exclude=(".git", ".env"),
    )


@pytest.fixture
def staging() -> DeploymentTarget:
    return DeploymentTarget(
        name="staging",
        host="deploy@app.example.com",
        path="/srv/app-staging",
        port=8001,
        health_url="http://app.example.com:8001/health",
    )


@pytest.fixture
def resolver(production: DeploymentTarget, staging: DeploymentTarget) -> EnvironmentResolver:
    return EnvironmentResolver(
        {"main": "production", "develop": "staging"},
        {"production": production, "staging": staging},
    )


@pytest.fixture
def state_store(tmp_path) -> DeploymentStateStore:
    return DeploymentStateStore(tmp_path / "state")


class FakeExecutor:
    """Records remote operations and answers from a per-step script.

    ``outcomes`` maps a step name to a list of statuses consumed in order;
    unscripted steps succeed.
    """

    def __init__(self, outcomes: dict[str, list[StepStatus]] | None = None, dry_run: bool = False):
        self.outcomes = {k: list(v) for k, v in (outcomes or {}).items()}
        self.calls: list[tuple[str, str]] = []
        self.dry_run = dry_run
        self.on_call: Callable[[str], None] | None = None

    def _result(self, name: str, detail: str) -> StepResult:
        self.calls.append((name, detail))
        if self.on_call:
            self.on_call(name)
        queue = self.outcomes.get(name)
        status = queue.pop(0) if queue else StepStatus.OK
        if status == StepStatus.OK:
            return StepResult(name=name, status=status, message="completed", returncode=0)
        return StepResult(name=name, status=status, message="exit code 1: boom", returncode=1, stderr="boom")

    def run_command(self, target, command, timeout=600, name="command", on_retry=None):
        return self._result(name, command)

    def sync_files(self, target, source=None, exclude=None, timeout=300, name="sync", on_retry=None):
        return self._result(name, str(source))

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


class FakeVerifier:
    """Health verifier answering from a list of verdicts."""

    def __init__(self, verdicts: list[bool] | None = None):
        self.verdicts = list(verdicts or [])
        self.checked: list[str] = []

    def check(self, target, attempts=None, interval=None):
        self.checked.append(target.name)
        healthy = self.verdicts.pop(0) if self.verdicts else True
        return HealthCheckResult(
            status=HealthStatus.HEALTHY if healthy else HealthStatus.UNHEALTHY,
            attempts=1 if healthy else 3,
            detail="HTTP 200" if healthy else "HTTP 503",
        )


@pytest.fixture
def make_coordinator(resolver: EnvironmentResolver, state_store: DeploymentStateStore):
    """Build a coordinator around fakes; returns (coordinator, executor, verifier, alerts)."""

    def factory(
        outcomes: dict[str, list[StepStatus]] | None = None,
        verdicts: list[bool] | None = None,
        dry_run: bool = False,
        store: DeploymentStateStore | None = state_store,
        **kwargs: Any,
    ):
        executor = FakeExecutor(outcomes, dry_run=dry_run)
        verifier = FakeVerifier(verdicts)
        alerts: list[Any] = []
        coordinator = DeploymentCoordinator(
            resolver=resolver,
            executor=executor,
            verifier=verifier,
            store=store,
            defaults=DefaultsConfig(
                retry=RetryConfig(initial_delay=0, max_delay=0),
                health=HealthConfig(attempts=2, interval=0),
            ),
            alert=alerts.append,
            locks=kwargs.pop("locks", TargetLocks()),
            **kwargs,
        )
        return coordinator, executor, verifier, alerts

    return factory


@pytest.fixture
def completed() -> Callable[..., subprocess.CompletedProcess]:
    """Build CompletedProcess results for patched subprocess.run calls."""

    def factory(returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
        return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)

    return factory


@pytest.fixture
def mock_context(sample_config: DeployCtlConfig) -> DeployCtlContext:
    """Create a deployctl context."""
    return DeployCtlContext(
        config=sample_config,
        output_format=OutputFormat.TABLE,
        verbose=0,
        quiet=False,
        dry_run=False,
        color=False,
    )


@pytest.fixture(autouse=True)
def clean_env(tmp_path) -> Generator[None, None, None]:
    """Isolate tests from the caller's environment and state directory."""
    env_vars = [
        "DEPLOYCTL_CONFIG",
        "DEPLOYCTL_DRY_RUN",
        "DEPLOYCTL_STATE_DIR",
        "DEPLOYCTL_ALERT_WEBHOOK",
        "DEPLOYCTL_SSH_IDENTITY",
        "GITHUB_REF_NAME",
        "GITHUB_SHA",
    ]

    original = {k: os.environ.get(k) for k in env_vars}

    for k in env_vars:
        os.environ.pop(k, None)
    os.environ["DEPLOYCTL_STATE_DIR"] = str(tmp_path / "state")

    yield

    for k, v in original.items():
        if v is not None:
            os.environ[k] = v
        else:
            os.environ.pop(k, None)


@pytest.fixture
def temp_config_file(tmp_path):
    """Create a temporary config file."""
    config_content = """
version: "1"
global:
  output_format: table
refs:
  main: production
  develop: staging
defaults:
  retry:
    initial_delay: 0
  health:
    attempts: 1
    interval: 0
targets:
  production:
    host: deploy@app.example.com
    path: /srv/app
    port: 8000
    health_url: http://app.example.com:8000/health
  staging:
    host: deploy@app.example.com
    path: /srv/app-staging
    port: 8001
    health_url: http://app.example.com:8001/health
"""
    config_file = tmp_path / "config.yaml"
    config_file.write_text(config_content)
    return str(config_file)
