"""Berth error hierarchy.

Every error carries a machine-readable ``code``, an HTTP ``status_code`` and a
human message, so callers can tell "try again later" (429/504) from "this
resource doesn't exist" (404) from "this is a bug" (5xx).
"""

from __future__ import annotations

import math
from typing import Any


class BerthError(Exception):
    """Base class for all Berth errors."""

    code: str = "internal_error"
    status_code: int = 500
    message: str = "Internal error"

    def __init__(
        self,
        message: str | None = None,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self, request_id: str | None = None) -> dict[str, Any]:
        """Render the error for an API response body."""
        error: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "request_id": request_id,
        }
        if self.details:
            error["details"] = self.details
        return {"error": error}


class ValidationError(BerthError):
    """Malformed input to an operation."""

    code = "validation_error"
    status_code = 400
    message = "Validation error"


class InvalidPathError(ValidationError):
    """File path is malformed or escapes the workspace."""

    code = "invalid_path"
    message = "Invalid path"


class NotFoundError(BerthError):
    """Unknown playground id or session id."""

    code = "not_found"
    status_code = 404
    message = "Resource not found"


class ConflictError(BerthError):
    """A live resource already exists for the requested id."""

    code = "conflict"
    status_code = 409
    message = "Resource already exists"


class RateLimitError(BerthError):
    """Admission guard rejected the request."""

    code = "rate_limited"
    status_code = 429
    message = "Rate limit exceeded"

    def __init__(
        self,
        message: str | None = None,
        *,
        retry_after: float,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.retry_after = max(1, math.ceil(retry_after))
        merged = {"retry_after": self.retry_after}
        if details:
            merged.update(details)
        super().__init__(
            message or f"Rate limit exceeded. Try again in {self.retry_after} seconds.",
            details=merged,
        )


class ContainerRuntimeError(BerthError):
    """The underlying container engine call failed."""

    code = "runtime_error"
    status_code = 502
    message = "Container runtime error"


class OperationTimeoutError(BerthError):
    """An operation exceeded its deadline."""

    code = "timeout"
    status_code = 504
    message = "Operation timed out"
