"""Deployment orchestration module."""

from deployctl.deploy.models import (
    AttemptOutcome,
    DeploymentAttempt,
    DeploymentPhase,
    DeploymentTarget,
    ReleaseRecord,
    StepResult,
    StepStatus,
)
from deployctl.deploy.resolver import EnvironmentResolver
from deployctl.deploy.state import DeploymentStateStore

__all__ = [
    "AttemptOutcome",
    "DeploymentAttempt",
    "DeploymentPhase",
    "DeploymentStateStore",
    "DeploymentTarget",
    "EnvironmentResolver",
    "ReleaseRecord",
    "StepResult",
    "StepStatus",
]
