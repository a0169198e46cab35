"""
Error taxonomy for the authentication service.

Only ValidationError carries field-level detail to the caller. Every other
category returns a deliberately coarse message; the specifics go to the logs.
"""
from typing import Any, Dict, List, Optional


class AuthServiceError(Exception):
    """Base class for errors surfaced to API callers"""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    default_message: str = "An unexpected error occurred"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": {"code": self.code, "message": self.message}}


class ValidationError(AuthServiceError):
    """Malformed input. Nothing was mutated."""

    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Invalid request"

    def __init__(self, message: Optional[str] = None, details: Optional[List[Dict[str, str]]] = None):
        super().__init__(message)
        self.details = details or []

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(message, details=[{"field": field, "message": message}])

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.details:
            body["error"]["details"] = self.details
        return body


class RateLimitedError(AuthServiceError):
    """Cooldown, send cap or verification block in effect"""

    status_code = 429
    code = "RATE_LIMITED"
    default_message = "Too many requests. Please try again later."

    def __init__(self, message: Optional[str] = None, retry_after: int = 0):
        super().__init__(message)
        self.retry_after = max(0, int(retry_after))

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["error"]["retry_after"] = self.retry_after
        return body


class AuthenticationError(AuthServiceError):
    """Wrong code or credentials. Never says which part was wrong."""

    status_code = 401
    code = "AUTHENTICATION_FAILED"
    default_message = "Invalid credentials"


class ExternalServiceError(AuthServiceError):
    """SMS vendor, customer directory or OAuth provider failure"""

    status_code = 502
    code = "EXTERNAL_SERVICE_ERROR"
    default_message = "A required service is temporarily unavailable. Please try again."


class InternalError(AuthServiceError):
    """Misconfiguration or an unreachable dependency on a fail-closed path"""

    status_code = 500
    code = "INTERNAL_ERROR"
    default_message = "An unexpected error occurred"
