"""Exception hierarchy for the scaffolder orchestration core.

Each error carries a machine-readable code, a human-readable message and an
optional recovery suggestion so the HTTP layer and the live status stream can
report the same thing.
"""
from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Dict, List, Optional


class ScaffolderError(Exception):
    """Base exception for all orchestration errors."""

    code: str = "SCAFFOLDER_ERROR"
    status_code: int = 500
    default_suggestion: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        suggestion: Optional[str] = None,
        technical_details: Optional[str] = None,
        phase: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion if suggestion is not None else self.default_suggestion
        self.technical_details = technical_details
        self.phase = phase
        self.timestamp = datetime.now(UTC).isoformat().replace("+00:00", "Z")

    def to_dict(self, include_details: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.suggestion:
            payload["suggestion"] = self.suggestion
        if self.phase:
            payload["phase"] = self.phase
        if include_details and self.technical_details:
            payload["technicalDetails"] = self.technical_details
        return payload


class NotFoundError(ScaffolderError):
    """A conversation or app id could not be resolved."""

    code = "NOT_FOUND"
    status_code = 404
    default_suggestion = "The resource may have been deleted or moved. Please try again."

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(
            f"{resource_type} not found",
            technical_details=f'{resource_type} with ID "{resource_id}" does not exist',
        )


class ValidationError(ScaffolderError):
    """The specification or an answer is malformed or incomplete."""

    code = "VALIDATION_ERROR"
    status_code = 400
    default_suggestion = "Please review and fix the issues before continuing."

    def __init__(self, errors: List[str], warnings: Optional[List[str]] = None, phase: Optional[str] = None) -> None:
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        message = self.errors[0] if len(self.errors) == 1 else f"{len(self.errors)} validation issues found"
        super().__init__(message, technical_details="; ".join(self.errors), phase=phase)

    def to_dict(self, include_details: bool = False) -> Dict[str, Any]:
        payload = super().to_dict(include_details)
        payload["errors"] = list(self.errors)
        if self.warnings:
            payload["warnings"] = list(self.warnings)
        return payload


class StorageError(ScaffolderError):
    """A persistence call failed."""

    code = "DATABASE_ERROR"
    status_code = 503
    default_suggestion = "Please try again. If the problem persists, contact support."

    def __init__(self, operation: str, original: Optional[BaseException] = None) -> None:
        self.operation = operation
        self.original = original
        super().__init__(
            f"Database operation failed: {operation}",
            technical_details=str(original) if original else None,
        )


class ModelFailureError(ScaffolderError):
    """The completion call errored or returned unusable output."""

    code = "MODEL_FAILURE"
    status_code = 502
    default_suggestion = "Using smart fallback generation. Your app will still be created with sensible defaults."

    def __init__(
        self,
        message: str = "AI service temporarily unavailable",
        *,
        original: Optional[BaseException] = None,
        raw_response: Optional[str] = None,
    ) -> None:
        self.original = original
        self.raw_response = raw_response[:500] if raw_response else None
        details = str(original) if original else None
        super().__init__(message, technical_details=details)


class ToolExecutionError(ScaffolderError):
    """A single directive failed to execute."""

    code = "TOOL_EXECUTION_FAILED"
    status_code = 422

    def __init__(self, tool: str, message: str) -> None:
        self.tool = tool
        super().__init__(message, technical_details=f"tool={tool}")


class AbortedError(ScaffolderError):
    """The user or a timeout cancelled the operation."""

    code = "ABORTED"
    status_code = 499

    def __init__(self, message: str = "Operation cancelled") -> None:
        super().__init__(message)


def wrap_error(exc: BaseException, phase: Optional[str] = None) -> ScaffolderError:
    """Map any exception onto the taxonomy."""
    if isinstance(exc, ScaffolderError):
        return exc
    text = str(exc).lower()
    if "not found" in text or "404" in text:
        return NotFoundError("Resource", "unknown")
    if "json" in text or "parse" in text:
        return ModelFailureError("Could not understand AI response", original=exc)
    if "network" in text or "timeout" in text or "connection" in text:
        return ModelFailureError(original=exc)
    return ScaffolderError(
        "Something unexpected went wrong",
        suggestion="Please try again. If the problem persists, try refreshing the page.",
        technical_details=str(exc) or exc.__class__.__name__,
        phase=phase,
    )
