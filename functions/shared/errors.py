"""
Standardized errors for the billing API.
"""

from typing import Optional

from shared.response_utils import error_response


class APIError(Exception):
    """Base class for errors returned directly to an API caller."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> dict:
        """Convert to API Gateway response format."""
        return error_response(self.status_code, self.code, self.message, details=self.details)


class UnauthenticatedError(APIError):
    """Raised when the caller carries no authorizer identity."""

    def __init__(self, message: str = "Auth is required"):
        super().__init__(
            code="unauthenticated",
            message=message,
            status_code=401,
        )


class InvalidArgumentError(APIError):
    """Raised when required request fields are missing or malformed."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(
            code="invalid_argument",
            message=message,
            status_code=400,
            details=details,
        )


class CredentialsMissingError(Exception):
    """App Store Server API credentials are not configured.

    Fatal for the backfill invocation that needs them; batch callers
    record it per item.
    """
