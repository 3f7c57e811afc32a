"""
Domain-specific exception hierarchy for the policy engine.

All engine exceptions inherit from PolicyError so callers can catch
broadly or narrowly as needed.  Each exception carries a stable error
``kind``, the HTTP status it maps to, and structured field-level detail
so a caller can re-render the originating form with inline errors.
"""

from __future__ import annotations

from typing import Any


class PolicyError(Exception):
    """Base exception for all policy engine errors."""

    kind = "InternalError"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        errors: dict[str, str] | None = None,
        warnings: dict[str, str] | None = None,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        self.message = message
        self.errors = errors or {}
        self.warnings = warnings or {}
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialise for API error responses."""
        body: dict[str, Any] = {
            "success": False,
            "error": self.kind,
            "message": self.message,
            "errors": [{"field": field, "message": msg} for field, msg in self.errors.items()],
            "warnings": [{"field": field, "message": msg} for field, msg in self.warnings.items()],
        }
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(PolicyError):
    """A payload broke one or more field or cross-field rules."""

    kind = "ValidationError"
    status_code = 400

    def __init__(
        self,
        errors: dict[str, str],
        *,
        warnings: dict[str, str] | None = None,
        message: str = "Validation failed",
        **kwargs: Any,
    ) -> None:
        super().__init__(message, errors=errors, warnings=warnings, **kwargs)


class ConflictError(PolicyError):
    """A uniqueness rule would be violated (duplicate policy number, etc.)."""

    kind = "Conflict"
    status_code = 409

    def __init__(self, message: str, *, field: str | None = None, **kwargs: Any) -> None:
        self.field = field
        if field and "errors" not in kwargs:
            kwargs["errors"] = {field: message}
        super().__init__(message, **kwargs)


class NotFoundError(PolicyError):
    """A referenced template, instance, client or run does not exist."""

    kind = "NotFound"
    status_code = 404

    def __init__(self, resource: str, identifier: Any, **kwargs: Any) -> None:
        self.resource = resource
        self.identifier = identifier
        kwargs.setdefault("details", {"resource": resource, "id": str(identifier)})
        super().__init__(f"{resource} not found", **kwargs)


class MigrationError(PolicyError):
    """A migration batch (or run) failed. Non-fatal to the overall run."""

    kind = "MigrationError"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        failed_record_ids: list[int] | None = None,
        high_water_mark: int | None = None,
        **kwargs: Any,
    ) -> None:
        self.failed_record_ids = failed_record_ids or []
        self.high_water_mark = high_water_mark
        details = kwargs.pop("details", None) or {}
        if self.failed_record_ids:
            details.setdefault("failedRecordIds", self.failed_record_ids)
        if high_water_mark is not None:
            details.setdefault("highWaterMark", high_water_mark)
        super().__init__(message, details=details, **kwargs)


class MigrationHaltedError(MigrationError):
    """Data-corrupting batch detected while rollback is disabled; the run stops."""
    pass


class InternalError(PolicyError):
    """Unexpected store failure. ``retryable`` marks transient causes."""

    kind = "InternalError"

    def __init__(self, message: str, *, retryable: bool = False, **kwargs: Any) -> None:
        self.retryable = retryable
        kwargs.setdefault("status_code", 503 if retryable else 500)
        super().__init__(message, **kwargs)
