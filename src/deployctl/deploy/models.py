"""Deployment data models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepStatus(str, Enum):
    """Status of a single recorded step."""

    OK = "ok"
    RETRYABLE_ERROR = "retryable_error"
    FATAL_ERROR = "fatal_error"


class AttemptOutcome(str, Enum):
    """Final outcome of a deployment attempt."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class DeploymentPhase(str, Enum):
    """States of the deployment state machine."""

    RESOLVING = "resolving"
    SYNCING = "syncing"
    CONFIGURING = "configuring"
    RESTARTING = "restarting"
    HEALTH_CHECKING = "health_checking"
    SUCCEEDED = "succeeded"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


TERMINAL_PHASES = (
    DeploymentPhase.SUCCEEDED,
    DeploymentPhase.ROLLED_BACK,
    DeploymentPhase.FAILED,
)


@dataclass(frozen=True)
class DeploymentTarget:
    """A named deployment environment."""

    name: str
    host: str
    path: str
    port: int
    health_url: str
    user: str | None = None
    ssh_port: int = 22
    identity_file: str | None = None
    env_file: str | None = None
    restart_command: str = "docker compose up -d --build"
    source_dir: str = "."
    exclude: tuple[str, ...] = ()

    @property
    def ssh_destination(self) -> str:
        """Destination string for ssh/rsync."""
        if self.user and "@" not in self.host:
            return f"{self.user}@{self.host}"
        return self.host

    @property
    def hostname(self) -> str:
        """Host without any user part."""
        return self.host.split("@", 1)[-1]

    @property
    def remote_path(self) -> str:
        return self.path.rstrip("/") or "/"

    @property
    def releases_path(self) -> str:
        """Remote directory holding release snapshots."""
        return f"{self.remote_path}.releases"

    @property
    def settings_file(self) -> str:
        """Environment-specific settings bundle activated on deploy."""
        return self.env_file or f".env.{self.name}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "host": self.host,
            "path": self.path,
            "port": self.port,
            "health_url": self.health_url,
            "user": self.user,
            "ssh_port": self.ssh_port,
            "env_file": self.settings_file,
            "restart_command": self.restart_command,
            "source_dir": self.source_dir,
            "exclude": list(self.exclude),
        }


@dataclass(frozen=True)
class StepResult:
    """Result of one step of a deployment attempt."""

    name: str
    status: StepStatus
    duration: float = 0.0
    message: str = ""
    stdout: str | None = None
    stderr: str | None = None
    returncode: int | None = None
    attempts: int = 1
    started_at: datetime = field(default_factory=_utcnow)

    @property
    def ok(self) -> bool:
        return self.status == StepStatus.OK

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "status": self.status.value,
            "duration": round(self.duration, 3),
            "message": self.message,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "returncode": self.returncode,
            "attempts": self.attempts,
            "started_at": self.started_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepResult":
        """Create from dictionary."""
        started_at = data.get("started_at")
        return cls(
            name=data["name"],
            status=StepStatus(data["status"]),
            duration=data.get("duration", 0.0),
            message=data.get("message", ""),
            stdout=data.get("stdout"),
            stderr=data.get("stderr"),
            returncode=data.get("returncode"),
            attempts=data.get("attempts", 1),
            started_at=datetime.fromisoformat(started_at) if started_at else _utcnow(),
        )


@dataclass
class DeploymentAttempt:
    """One execution of the deployment state machine for a target."""

    target: str
    revision: str
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    ref: str | None = None
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    phase: DeploymentPhase = DeploymentPhase.RESOLVING
    outcome: AttemptOutcome = AttemptOutcome.PENDING
    message: str = ""
    dry_run: bool = False
    rollback_only: bool = False
    rollback_revision: str | None = None
    alert_raised: bool = False
    steps: list[StepResult] = field(default_factory=list)
    phase_history: list[DeploymentPhase] = field(default_factory=list)

    def record(self, result: StepResult) -> StepResult:
        """Append a step result to the attempt log."""
        self.steps.append(result)
        return result

    def transition(self, phase: DeploymentPhase) -> None:
        """Move the state machine to ``phase``."""
        self.phase = phase
        self.phase_history.append(phase)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def duration_seconds(self) -> float:
        """Attempt duration in seconds, up to now when still running."""
        end = self.completed_at or _utcnow()
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "target": self.target,
            "revision": self.revision,
            "ref": self.ref,
            "phase": self.phase.value,
            "outcome": self.outcome.value,
            "message": self.message,
            "dry_run": self.dry_run,
            "rollback_only": self.rollback_only,
            "rollback_revision": self.rollback_revision,
            "alert_raised": self.alert_raised,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "phase_history": [p.value for p in self.phase_history],
            "steps": [s.to_dict() for s in self.steps],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeploymentAttempt":
        """Create from dictionary."""
        attempt = cls(
            id=data["id"],
            target=data["target"],
            revision=data.get("revision", ""),
            ref=data.get("ref"),
            phase=DeploymentPhase(data.get("phase", "resolving")),
            outcome=AttemptOutcome(data.get("outcome", "pending")),
            message=data.get("message", ""),
            dry_run=data.get("dry_run", False),
            rollback_only=data.get("rollback_only", False),
            rollback_revision=data.get("rollback_revision"),
            alert_raised=data.get("alert_raised", False),
            steps=[StepResult.from_dict(s) for s in data.get("steps", [])],
            phase_history=[DeploymentPhase(p) for p in data.get("phase_history", [])],
        )

        if data.get("started_at"):
            attempt.started_at = datetime.fromisoformat(data["started_at"])
        if data.get("completed_at"):
            attempt.completed_at = datetime.fromisoformat(data["completed_at"])

        return attempt


@dataclass(frozen=True)
class ReleaseRecord:
    """Last successfully deployed revision of a target."""

    target: str
    revision: str
    artifact: str
    attempt_id: str
    deployed_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "target": self.target,
            "revision": self.revision,
            "artifact": self.artifact,
            "attempt_id": self.attempt_id,
            "deployed_at": self.deployed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReleaseRecord":
        """Create from dictionary."""
        return cls(
            target=data["target"],
            revision=data["revision"],
            artifact=data["artifact"],
            attempt_id=data.get("attempt_id", ""),
            deployed_at=datetime.fromisoformat(data["deployed_at"]),
        )
