"""Error taxonomy shared by the deployment server and the client agent.

Every error carries an application-level ``code`` (rendered in the response
envelope, HTTP status is always 200) and a ``retryable`` flag that the agent
forwards with failed task reports.
"""

from typing import Optional


class DeployerError(Exception):
    """Base class for all deployment errors."""

    code: int = 500
    retryable: bool = False

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable

    def __str__(self) -> str:
        return self.message


class ValidationError(DeployerError):
    """Bad request shape; the caller must fix the request."""

    code = 400


class NoEligibleTargetsError(ValidationError):
    """A deployment request resolved to an empty machine set."""


class NotFoundError(DeployerError):
    """Missing application, package version, machine, manifest or task."""

    code = 404


class InvalidPackageVersionError(NotFoundError):
    """Package version is missing or soft-deactivated."""


class ConflictError(DeployerError):
    """Illegal state transition, e.g. a double claim; re-poll and retry."""

    code = 409


class TaskCancelledError(ConflictError):
    """The owning deployment was cancelled while the task was in flight."""


class ApprovalRequiredError(ConflictError):
    """Deployment is waiting for approval before tasks may be released."""


class IntegrityError(DeployerError):
    """Downloaded package does not match the recorded content hash."""

    code = 422
    retryable = True


class TransientNetworkError(DeployerError):
    """Poll, heartbeat or report call failed at the transport level."""

    code = 503
    retryable = True


class InstallExecutionError(DeployerError):
    """Process stop, file lock or disk space failure during install."""

    code = 500
    retryable = True


class FatalConfigurationError(DeployerError):
    """Missing storage path or corrupt manifest; surfaced, never retried."""

    code = 500
    retryable = False


_ERRORS_BY_NAME = {
    cls.__name__: cls
    for cls in (
        DeployerError,
        ValidationError,
        NoEligibleTargetsError,
        NotFoundError,
        InvalidPackageVersionError,
        ConflictError,
        TaskCancelledError,
        ApprovalRequiredError,
        IntegrityError,
        TransientNetworkError,
        InstallExecutionError,
        FatalConfigurationError,
    )
}

_ERRORS_BY_CODE = {
    400: ValidationError,
    404: NotFoundError,
    409: ConflictError,
    422: IntegrityError,
    503: TransientNetworkError,
}


def to_payload(error: DeployerError) -> dict:
    """Render an error as the response envelope body."""
    return {"code": error.code, "msg": error.message, "error": type(error).__name__}


def from_payload(code: int, msg: str, name: Optional[str] = None) -> DeployerError:
    """Rebuild an error raised on the other side of the wire.

    Args:
        code: Application-level status code from the envelope
        msg: Error message
        name: Error class name, if the server supplied one

    Returns:
        Instance of the matching DeployerError subclass
    """
    cls = _ERRORS_BY_NAME.get(name or "") or _ERRORS_BY_CODE.get(code, DeployerError)
    return cls(msg)
