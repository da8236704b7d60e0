"""Custom exceptions for deployctl."""

from typing import Any


class DeployCtlError(Exception):
    """Base exception for all deployctl errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class ConfigError(DeployCtlError):
    """Configuration-related errors."""

    pass


class StateError(DeployCtlError):
    """Errors reading or writing persisted deployment state."""

    pass


class NotConfiguredError(DeployCtlError):
    """No deployment target is configured for a ref or name."""

    def __init__(
        self,
        message: str,
        ref: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.ref = ref


class TransientTransportError(DeployCtlError):
    """Network-level failure talking to a remote host. Safe to retry."""

    def __init__(
        self,
        message: str,
        host: str | None = None,
        returncode: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.host = host
        self.returncode = returncode


class CommandFailure(DeployCtlError):
    """Remote command exited non-zero."""

    def __init__(
        self,
        message: str,
        step: str | None = None,
        returncode: int | None = None,
        stderr: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.step = step
        self.returncode = returncode
        self.stderr = stderr


class HealthCheckTimeout(DeployCtlError):
    """Service never reported healthy within the attempt ceiling."""

    def __init__(
        self,
        message: str,
        url: str | None = None,
        attempts: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.url = url
        self.attempts = attempts


class RollbackFailure(DeployCtlError):
    """Rollback could not restore the previous release. Needs a human."""

    def __init__(
        self,
        message: str,
        target: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.target = target


class DeploymentCancelled(DeployCtlError):
    """Operator requested cancellation between steps."""

    pass
