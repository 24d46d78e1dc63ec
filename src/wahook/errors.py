"""Error code catalog and exception hierarchy for the gateway.

Error Code Ranges:
    E01x: Authentication errors (401/403)
    E1xx: Session errors (4xx)
    E2xx: Tenant errors (4xx)
    E3xx: Webhook auth errors (never surfaced over HTTP)
    E9xx: Internal errors (5xx)

Example:
    >>> from wahook.errors import ErrorCode, create_error_response
    >>> response = create_error_response(ErrorCode.CHALLENGE_NOT_FOUND)
    >>> response["code"]
    'E102'
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

__all__ = [
    "ERROR_REGISTRY",
    "AdminTenantError",
    "ChallengeNotFoundError",
    "ErrorCode",
    "GatewayError",
    "InvalidSessionIdError",
    "SessionAlreadyConnectedError",
    "SessionExistsError",
    "SessionForbiddenError",
    "SessionNotFoundError",
    "TenantExistsError",
    "TenantNotFoundError",
    "TokenFetchError",
    "create_error_response",
    "get_error_http_status",
]


class ErrorCode(str, Enum):
    """Standardized gateway error codes."""

    # E01x - Authentication errors
    AUTH_REQUIRED = "E010"
    INVALID_CREDENTIALS = "E011"
    SESSION_FORBIDDEN = "E012"

    # E1xx - Session errors
    SESSION_EXISTS = "E100"
    SESSION_NOT_FOUND = "E101"
    CHALLENGE_NOT_FOUND = "E102"
    SESSION_ALREADY_CONNECTED = "E103"

    # E2xx - Tenant errors
    SESSION_ID_INVALID = "E200"
    TENANT_EXISTS = "E201"
    TENANT_NOT_FOUND = "E202"
    ADMIN_NOT_CONFIGURABLE = "E203"

    # E3xx - Webhook auth errors
    TOKEN_FETCH_FAILED = "E300"

    # E9xx - Internal errors
    INTERNAL_ERROR = "E900"


ERROR_REGISTRY: dict[ErrorCode, dict[str, Any]] = {
    ErrorCode.AUTH_REQUIRED: {
        "error": "auth_required",
        "http_status": 401,
        "recoverable": False,
        "message": "Authentication required",
    },
    ErrorCode.INVALID_CREDENTIALS: {
        "error": "invalid_credentials",
        "http_status": 401,
        "recoverable": False,
        "message": "Invalid credentials",
    },
    ErrorCode.SESSION_FORBIDDEN: {
        "error": "session_forbidden",
        "http_status": 403,
        "recoverable": False,
        "message": "You can only access your own session",
    },
    ErrorCode.SESSION_EXISTS: {
        "error": "session_exists",
        "http_status": 400,
        "recoverable": False,
        "message": "Session already exist",
    },
    ErrorCode.SESSION_NOT_FOUND: {
        "error": "session_not_found",
        "http_status": 404,
        "recoverable": False,
        "message": "Session does not exist",
    },
    ErrorCode.CHALLENGE_NOT_FOUND: {
        "error": "challenge_not_found",
        "http_status": 404,
        "recoverable": True,
        "message": "QR code not found. Session may not be in the process of connecting.",
    },
    ErrorCode.SESSION_ALREADY_CONNECTED: {
        "error": "session_already_connected",
        "http_status": 400,
        "recoverable": False,
        "message": "Session is already connected",
    },
    ErrorCode.SESSION_ID_INVALID: {
        "error": "session_id_invalid",
        "http_status": 400,
        "recoverable": False,
        "message": "Username is not a valid session identifier",
    },
    ErrorCode.TENANT_EXISTS: {
        "error": "tenant_exists",
        "http_status": 409,
        "recoverable": False,
        "message": "A tenant with this username already exists",
    },
    ErrorCode.TENANT_NOT_FOUND: {
        "error": "tenant_not_found",
        "http_status": 404,
        "recoverable": False,
        "message": "Tenant not found",
    },
    ErrorCode.ADMIN_NOT_CONFIGURABLE: {
        "error": "admin_not_configurable",
        "http_status": 400,
        "recoverable": False,
        "message": "Admin users cannot configure webhooks",
    },
    ErrorCode.TOKEN_FETCH_FAILED: {
        "error": "token_fetch_failed",
        "http_status": 502,
        "recoverable": True,
        "message": "Failed to fetch OAuth token",
    },
    ErrorCode.INTERNAL_ERROR: {
        "error": "internal_error",
        "http_status": 500,
        "recoverable": True,
        "message": "Internal server error",
    },
}


def get_error_http_status(code: ErrorCode) -> int:
    """Get the HTTP status code for an error code."""
    entry = ERROR_REGISTRY.get(code)
    if entry is None:
        return 500
    return int(entry["http_status"])


def create_error_response(
    code: ErrorCode,
    message: str | None = None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Create a standardized error response dictionary.

    Args:
        code: The error code from ErrorCode enum.
        message: Optional custom message (uses default if not provided).
        details: Optional additional context.

    Returns:
        Dictionary with code, error, message, recoverable, details and timestamp.
    """
    metadata = ERROR_REGISTRY[code]
    return {
        "code": code.value,
        "error": metadata["error"],
        "message": message or metadata["message"],
        "recoverable": metadata["recoverable"],
        "details": details,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class GatewayError(Exception):
    """Base exception carrying an ErrorCode."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str | None = None) -> None:
        self.message = message or ERROR_REGISTRY[self.code]["message"]
        super().__init__(self.message)

    @property
    def http_status(self) -> int:
        return get_error_http_status(self.code)


class InvalidSessionIdError(GatewayError):
    """Raised when a username cannot serve as a session identifier."""

    code = ErrorCode.SESSION_ID_INVALID


class TenantExistsError(GatewayError):
    code = ErrorCode.TENANT_EXISTS


class TenantNotFoundError(GatewayError):
    code = ErrorCode.TENANT_NOT_FOUND


class SessionExistsError(GatewayError):
    code = ErrorCode.SESSION_EXISTS


class SessionNotFoundError(GatewayError):
    code = ErrorCode.SESSION_NOT_FOUND


class ChallengeNotFoundError(GatewayError):
    code = ErrorCode.CHALLENGE_NOT_FOUND


class SessionAlreadyConnectedError(GatewayError):
    code = ErrorCode.SESSION_ALREADY_CONNECTED


class SessionForbiddenError(GatewayError):
    code = ErrorCode.SESSION_FORBIDDEN


class AdminTenantError(GatewayError):
    """Raised when session or webhook state is written to an admin tenant."""

    code = ErrorCode.ADMIN_NOT_CONFIGURABLE


class TokenFetchError(GatewayError):
    """Raised by the OAuth client; always caught inside the header resolver."""

    code = ErrorCode.TOKEN_FETCH_FAILED
