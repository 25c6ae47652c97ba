"""
Relay error taxonomy and HTTP error response utilities.

Every failure the relay can surface is a RelayError subclass carrying a
machine-readable ``kind``. Errors raised before streaming begins are turned
into JSON bodies by the factories below; errors raised after streaming
begins are reported in-band (see ``services.events``).

Error Body Formats:
    400 (validation):
    {
        "error": "Missing required fields: chatId, userId are required",
        "kind": "missing_fields",
        "fields": ["chatId", "userId"],
        "received": ["message"]
    }

    401 (caller identity):
    {"error": "Caller identity could not be established", "kind": "missing_identity"}

    500 (upstream / stream):
    {
        "error": "Failed to process request",
        "kind": "http_status",
        "details": "Upstream provider error: 503 Service Unavailable"
    }

Last Grunted: 10/17/2026 09:00:00 AM UTC
"""
from typing import Any, Optional, Sequence

from fastapi.responses import JSONResponse


# ============================================================================
# Exception Hierarchy
# ============================================================================

class RelayError(Exception):
    """Base class for all relay failures.

    Attributes:
        kind: Machine-readable failure reason
        message: Human-readable description
    """

    status_code: int = 500

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


class ValidationError(RelayError):
    """Inbound request is malformed (never retried, surfaced as 400)."""

    status_code = 400

    def __init__(
        self,
        kind: str,
        message: str,
        fields: Sequence[str] = (),
        received: Sequence[str] = (),
    ) -> None:
        super().__init__(kind, message)
        self.fields = list(fields)
        self.received = list(received)


class AuthenticationError(RelayError):
    """Caller identity could not be established."""

    status_code = 401


class UpstreamError(RelayError):
    """Provider rejected the request or never started streaming."""

    def __init__(
        self,
        kind: str,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[str] = None,
    ) -> None:
        super().__init__(kind, message)
        self.upstream_status = status_code
        self.details = details or message


class StreamError(RelayError):
    """Transport-level failure while reading the upstream stream."""


class PersistenceError(RelayError):
    """Message store append failed. Logged, never propagated to the client."""

    def __init__(self, kind: str, message: str, chat_id: Optional[str] = None) -> None:
        super().__init__(kind, message)
        self.chat_id = chat_id


# ============================================================================
# Error Response Factory
# ============================================================================

def create_error_response(
    message: str,
    kind: str,
    status_code: int = 400,
    **extra: Any,
) -> JSONResponse:
    """
    Create a relay error response.

    Args:
        message: Human-readable error description
        kind: Machine-readable error kind
        status_code: HTTP status code
        **extra: Additional top-level body fields (fields, received, details)

    Returns:
        JSONResponse with the relay error format

    Example:
        >>> create_error_response(
        ...     message="No user message found in the messages array",
        ...     kind="no_user_message",
        ...     status_code=400,
        ... )
    """
    content: dict[str, Any] = {"error": message, "kind": kind}
    content.update({key: value for key, value in extra.items() if value is not None})
    return JSONResponse(status_code=status_code, content=content)


def validation_error_response(exc: ValidationError) -> JSONResponse:
    """Build the 400 body for a validation failure."""
    return create_error_response(
        message=exc.message,
        kind=exc.kind,
        status_code=exc.status_code,
        fields=exc.fields,
        received=exc.received or None,
    )


def authentication_error_response(exc: AuthenticationError) -> JSONResponse:
    """Build the 401 body for an unidentified caller."""
    return create_error_response(
        message=exc.message,
        kind=exc.kind,
        status_code=exc.status_code,
    )


def upstream_error_response(exc: RelayError) -> JSONResponse:
    """
    Build the 500 body for a failure that happened before streaming began.

    Args:
        exc: UpstreamError or StreamError raised while opening the stream

    Returns:
        JSONResponse with 500 status and provider details
    """
    details = exc.details if isinstance(exc, UpstreamError) else exc.message
    return create_error_response(
        message="Failed to process request",
        kind=exc.kind,
        status_code=exc.status_code,
        details=details,
    )


def internal_error() -> JSONResponse:
    """Build a safe 500 body that leaks no internal details."""
    return create_error_response(
        message="An internal server error occurred",
        kind="internal_error",
        status_code=500,
    )
