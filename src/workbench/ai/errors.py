"""Error taxonomy for the agent loop.

Only :class:`ModelPermissionError` and unrecovered :class:`MalformedResponseError`
escape the turn loop. :class:`TurnCancelledError` stops it cleanly, and
:class:`ActionError` subclasses never leave the dispatcher: they are turned
into observation text for the model.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

__all__ = [
    "AgentError",
    "MalformedResponseError",
    "ModelPermissionError",
    "TurnCancelledError",
    "ErrorCode",
    "ActionError",
    "FileNotFoundActionError",
    "FileTooLargeError",
    "MissingParameterError",
    "InvalidSourceError",
    "CollaboratorUnavailableError",
    "GenerationError",
    "MediaError",
    "CalculationError",
    "ScriptError",
]


class AgentError(Exception):
    """Base class for loop-level failures."""


class MalformedResponseError(AgentError):
    """The model's completed stream could not be parsed into a structured response."""

    def __init__(self, message: str, *, raw_text: str | None = None) -> None:
        super().__init__(message)
        self.raw_text = raw_text


class ModelPermissionError(AgentError):
    """The credential may not use the requested model (HTTP 401/403)."""

    def __init__(self, message: str, *, model: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.model = model
        self.status_code = status_code


class TurnCancelledError(AgentError):
    """The run was cancelled cooperatively."""

    def __init__(self, message: str = "Aborted") -> None:
        super().__init__(message)


# -----------------------------------------------------------------------------
# Action errors
# -----------------------------------------------------------------------------


class ErrorCode:
    """Machine-readable codes carried by :class:`ActionError`."""

    FILE_NOT_FOUND = "file_not_found"
    FILE_TOO_LARGE = "file_too_large"
    MISSING_PARAMETER = "missing_parameter"
    INVALID_SOURCE = "invalid_source"
    COLLABORATOR_UNAVAILABLE = "collaborator_unavailable"
    GENERATION_FAILED = "generation_failed"
    CALCULATION_FAILED = "calculation_failed"
    SCRIPT_FAILED = "script_failed"
    INTERNAL_ERROR = "internal_error"


@dataclass
class ActionError(Exception):
    """Failure of a single action; rendered into the observation text.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable reason, phrased for the model.
        details: Additional structured information for logs.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    severity: ClassVar[str] = "error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return self.message


@dataclass
class FileNotFoundActionError(ActionError):
    error_code: str = field(default=ErrorCode.FILE_NOT_FOUND)
    message: str = field(default="File not found.")
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_path(cls, path: str, *, role: str = "File") -> FileNotFoundActionError:
        return cls(message=f"{role} '{path}' not found.", details={"path": path})


@dataclass
class FileTooLargeError(ActionError):
    error_code: str = field(default=ErrorCode.FILE_TOO_LARGE)
    message: str = field(default="File is too large.")
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class MissingParameterError(ActionError):
    error_code: str = field(default=ErrorCode.MISSING_PARAMETER)
    message: str = field(default="A required parameter is missing.")
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class InvalidSourceError(ActionError):
    error_code: str = field(default=ErrorCode.INVALID_SOURCE)
    message: str = field(default="Source file is not usable for this action.")
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class CollaboratorUnavailableError(ActionError):
    error_code: str = field(default=ErrorCode.COLLABORATOR_UNAVAILABLE)
    message: str = field(default="The backend for this action is not configured.")
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class GenerationError(ActionError):
    error_code: str = field(default=ErrorCode.GENERATION_FAILED)
    message: str = field(default="Generation failed.")
    details: dict[str, Any] = field(default_factory=dict)


class MediaError(RuntimeError):
    """A media tool (ffmpeg/ffprobe) failed or produced unusable output."""


class CalculationError(ValueError):
    """Expression could not be evaluated."""


class ScriptError(RuntimeError):
    """Script execution failed inside the sandbox."""

    def __init__(self, message: str, *, logs: list[str] | None = None) -> None:
        super().__init__(message)
        self.logs = list(logs or [])
