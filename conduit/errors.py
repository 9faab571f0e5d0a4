"""Error taxonomy for the conduit execution pipeline."""

from __future__ import annotations

from typing import Any, Optional


class ConduitError(Exception):
    """Base class for all pipeline errors.

    Every error carries a machine readable ``code`` that ends up on step logs,
    execution records and dead-lettered jobs.
    """

    code = "CONDUIT_ERROR"

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details is not None:
            data["details"] = self.details
        return data


class WorkflowValidationError(ConduitError):
    """A definition was rejected before it could be scheduled."""

    code = "VALIDATION_FAILED"

    def __init__(self, message: str, result: Any = None) -> None:
        super().__init__(message, details=getattr(result, "errors", None))
        self.result = result


class NotFoundError(ConduitError):
    code = "NOT_FOUND"


class WorkflowNotFoundError(NotFoundError):
    code = "WORKFLOW_NOT_FOUND"


class ActionNotFoundError(NotFoundError):
    code = "ACTION_NOT_FOUND"


class ConnectionNotFoundError(NotFoundError):
    code = "CONNECTION_NOT_FOUND"


class ConnectionExpiredError(ConduitError):
    code = "CONNECTION_EXPIRED"


class ActionError(ConduitError):
    """Failure reported by an integration handler."""

    code = "ACTION_ERROR"

    def __init__(
        self, message: str, *, code: Optional[str] = None, details: Any = None
    ) -> None:
        super().__init__(message, details=details)
        if code:
            self.code = code


class MappingError(ConduitError):
    code = "MAPPING_ERROR"


class PathSyntaxError(MappingError):
    code = "INVALID_PATH"


class InvalidTargetError(MappingError):
    code = "INVALID_TARGET"


class InvalidDateError(MappingError):
    code = "INVALID_DATE"


class InvalidNumberError(MappingError):
    code = "INVALID_NUMBER"


class ExpressionError(MappingError):
    code = "INVALID_EXPRESSION"


class TransientInfraError(ConduitError):
    """A store or collaborator is unavailable; the whole job is retried."""

    code = "TRANSIENT_INFRA_ERROR"


class UnrecoverableError(ConduitError):
    """A malformed definition reached execution; retrying cannot help."""

    code = "UNRECOVERABLE"


class InvalidStatusTransitionError(ConduitError):
    code = "INVALID_STATUS_TRANSITION"


__all__ = [
    "ConduitError",
    "WorkflowValidationError",
    "NotFoundError",
    "WorkflowNotFoundError",
    "ActionNotFoundError",
    "ConnectionNotFoundError",
    "ConnectionExpiredError",
    "ActionError",
    "MappingError",
    "PathSyntaxError",
    "InvalidTargetError",
    "InvalidDateError",
    "InvalidNumberError",
    "ExpressionError",
    "TransientInfraError",
    "UnrecoverableError",
    "InvalidStatusTransitionError",
]
