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


class ConnectionError(DeployCtlError):
    """Transport to a host could not be established or was lost."""

    def __init__(
        self,
        message: str,
        host: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.host = host


class TransportTimeout(DeployCtlError):
    """A single remote operation exceeded its timeout."""

    def __init__(
        self,
        message: str,
        timeout_seconds: float | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.timeout_seconds = timeout_seconds


class UnreachableHost(DeployCtlError):
    """Connectivity probe failed before any stage ran."""

    def __init__(
        self,
        message: str,
        host: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.host = host


class VcsError(DeployCtlError):
    """Clone or fetch failed (network problem or unknown ref)."""

    def __init__(
        self,
        message: str,
        ref: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.ref = ref


class NoDeploymentDescriptor(DeployCtlError):
    """Project has neither a compose file nor a Dockerfile."""

    pass


class BuildError(DeployCtlError):
    """Container build or start returned a non-zero exit code."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.exit_code = exit_code


class RuntimeSetupError(DeployCtlError):
    """Container runtime or proxy software is missing or not running."""

    pass


class ProxyConfigInvalid(DeployCtlError):
    """Rendered proxy configuration failed validation."""

    pass


class HealthCheckTimeout(DeployCtlError):
    """Health endpoint never reported ready before the deadline."""

    def __init__(
        self,
        message: str,
        timeout_seconds: float | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.timeout_seconds = timeout_seconds


class RollbackFailure(DeployCtlError):
    """A rollback action failed. Recorded, never re-raised by the engine."""

    def __init__(
        self,
        message: str,
        stage: str | None = None,
        step: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.stage = stage
        self.step = step


class DeploymentError(DeployCtlError):
    """Generic deployment errors (state persistence, step failures)."""

    def __init__(
        self,
        message: str,
        deployment_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.deployment_id = deployment_id


class InvalidTransition(DeploymentError):
    """Illegal deployment status transition."""

    pass


class DeploymentCancelled(DeployCtlError):
    """Run was cancelled before the target finished."""

    pass


TRANSIENT_ERRORS = (ConnectionError, TransportTimeout)


def is_transient(error: BaseException) -> bool:
    """Return True for errors a step may retry."""
    return isinstance(error, TRANSIENT_ERRORS)
