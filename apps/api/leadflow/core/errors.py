from __future__ import annotations

from typing import Any


class LeadFlowError(Exception):
    """Base error for failures surfaced to the caller with an error envelope."""

    code = "error"
    status_code = 500
    default_message = "Request failed"

    def __init__(self, message: str | None = None, details: Any = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class Unauthenticated(LeadFlowError):
    code = "UNAUTHENTICATED"
    status_code = 401
    default_message = "Authentication required"


class RateLimited(LeadFlowError):
    code = "RATE_LIMITED"
    status_code = 429
    default_message = "Too many requests. Please try again later."

    def __init__(self, message: str | None = None, *, retry_after: int = 60) -> None:
        super().__init__(message, details={"retry_after": retry_after})
        self.retry_after = retry_after


class ValidationFailed(LeadFlowError):
    code = "VALIDATION_FAILED"
    status_code = 422
    default_message = "Validation failed"

    def __init__(
        self,
        field_errors: dict[str, list[str]] | None = None,
        *,
        row_errors: list[dict[str, Any]] | None = None,
        message: str | None = None,
    ) -> None:
        self.field_errors = field_errors or {}
        self.row_errors = row_errors or []
        details: dict[str, Any] = {"field_errors": self.field_errors}
        if self.row_errors:
            details["row_errors"] = self.row_errors
        super().__init__(message or self._summarize(), details=details)

    def _summarize(self) -> str:
        if self.row_errors:
            return f"Validation failed for {len(self.row_errors)} rows. Please check your data and try again."
        messages = [message for errors in self.field_errors.values() for message in errors]
        if not messages:
            return self.default_message
        return "; ".join(messages)


class NotFound(LeadFlowError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Buyer not found"


class Forbidden(LeadFlowError):
    code = "FORBIDDEN"
    status_code = 403
    default_message = "Unauthorized to edit this buyer"


class Conflict(LeadFlowError):
    code = "CONFLICT"
    status_code = 409
    default_message = (
        "This record was modified by another user since you started editing. "
        "Please refresh the page and try again."
    )


class PersistenceFailure(LeadFlowError):
    code = "PERSISTENCE_FAILURE"
    status_code = 500
    default_message = "Failed to save changes"
