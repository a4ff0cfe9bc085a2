"""Error types and result envelopes for Taskweave.

Engine and workspace code raise the exceptions defined here; the task
manager facade converts them into the ``{"success": ..., ...}`` envelopes
returned by the CLI and the MCP tools.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional


INVALID_TASK_ID = "INVALID_TASK_ID"
MISSING_ARGUMENT = "MISSING_ARGUMENT"
INPUT_VALIDATION_ERROR = "INPUT_VALIDATION_ERROR"
DUPLICATE_TASK_ID = "DUPLICATE_TASK_ID"
TASK_NOT_FOUND = "TASK_NOT_FOUND"
SUBTASK_NOT_FOUND = "SUBTASK_NOT_FOUND"
INVALID_TASKS_FILE = "INVALID_TASKS_FILE"
FILE_NOT_FOUND_ERROR = "FILE_NOT_FOUND_ERROR"
TASK_COMPLETED = "TASK_COMPLETED"
DEPENDENCY_CYCLE = "DEPENDENCY_CYCLE"
ID_MAPPING_ERROR = "ID_MAPPING_ERROR"
AI_RESPONSE_INVALID = "AI_RESPONSE_INVALID"
GENERATION_ERROR = "GENERATION_ERROR"
STORE_ERROR = "STORE_ERROR"
INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass(frozen=True)
class ErrorResponse:
    """Serializable error payload returned by CLI commands and MCP tools."""

    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class TaskweaveError(Exception):
    """Base class for errors carrying a structured error code."""

    default_code = INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code or self.default_code
        self.details = dict(details or {})

    @property
    def error(self) -> ErrorResponse:
        return ErrorResponse(code=self.code, message=str(self), details=self.details)


class TaskValidationError(TaskweaveError, ValueError):
    """Recoverable input problem; the operation aborts without mutating anything."""

    default_code = INPUT_VALIDATION_ERROR


class TaskNotFoundError(TaskValidationError):
    """A task or subtask reference does not exist in the document."""

    default_code = TASK_NOT_FOUND


class IdMappingError(TaskweaveError, RuntimeError):
    """Internal invariant violation while remapping ids."""

    default_code = ID_MAPPING_ERROR


class DocumentStoreError(TaskweaveError, RuntimeError):
    """Reading or writing the task document failed."""

    default_code = STORE_ERROR


class GenerationError(TaskweaveError, RuntimeError):
    """The AI collaborator failed or returned an unusable reply."""

    default_code = GENERATION_ERROR


def success_response(data: Dict[str, Any]) -> Dict[str, Any]:
    """Wrap a successful result in the standard envelope."""
    return {"success": True, "data": data}


def error_response(
    code: str, message: str, details: Optional[Mapping[str, Any]] = None
) -> Dict[str, Any]:
    """Wrap an error in the standard envelope."""
    error = ErrorResponse(code=code, message=message, details=dict(details or {}))
    return {"success": False, "error": error.to_dict()}
