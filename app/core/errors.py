"""
Error taxonomy for the build service.

Every error carries the HTTP status it maps to and a stable error code.
PipelineError is recorded on the build, never raised to a live caller.
"""
from typing import Any, Optional


class BuildServiceError(Exception):
    """Base class for all service errors."""
    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "error_code": self.error_code}


class ValidationError(BuildServiceError):
    """Malformed or unsafe input. Nothing was allocated."""
    status_code = 400
    error_code = "VALIDATION_ERROR"

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["field"] = self.field
        return data


class AuthError(BuildServiceError):
    """Missing or invalid credential or proof."""
    status_code = 401
    error_code = "AUTH_ERROR"


class OwnershipError(BuildServiceError):
    """Authenticated, but not the owner of the record."""
    status_code = 403
    error_code = "FORBIDDEN"

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class NotFoundError(BuildServiceError):
    """Unknown build id or expired artifact."""
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(BuildServiceError):
    """The record's current state does not allow the operation."""
    status_code = 409
    error_code = "CONFLICT"

    def __init__(self, message: str, status: Optional[str] = None):
        self.status = status
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.status is not None:
            data["status"] = self.status
        return data


class QuotaError(BuildServiceError):
    """Per-identity or global capacity exceeded."""
    status_code = 429
    error_code = "QUOTA_EXCEEDED"

    def __init__(self, message: str, current: int, limit: int):
        self.current = current
        self.limit = limit
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["current"] = self.current
        data["limit"] = self.limit
        return data


class InternalError(BuildServiceError):
    """Unexpected failure."""
    status_code = 500
    error_code = "INTERNAL_ERROR"


class InvalidTransition(InternalError):
    """A build status change that the state machine does not allow."""

    def __init__(self, build_id: str, current: str, target: str):
        self.build_id = build_id
        self.current = current
        self.target = target
        super().__init__(f"Illegal transition {current} -> {target} for build {build_id}")


class PipelineError(BuildServiceError):
    """An external toolchain stage failed or timed out."""
    error_code = "PIPELINE_ERROR"

    # Diagnostic output kept in the error message
    MAX_DIAGNOSTIC_CHARS = 500

    def __init__(self, stage: str, message: str, diagnostic: str = "", timed_out: bool = False):
        self.stage = stage
        self.timed_out = timed_out
        self.diagnostic = diagnostic.strip()[-self.MAX_DIAGNOSTIC_CHARS:]
        full = f"[{stage}] {message}"
        if self.diagnostic:
            full = f"{full}: {self.diagnostic}"
        super().__init__(full)
