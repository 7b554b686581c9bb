"""
Error taxonomy for gateway calls.

Every failure surfaced by the directory or the chat engine is a
RouterChatError subclass with a human-readable message and a short ``kind``
string that UI layers can switch on.
"""

import json
import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class RouterChatError(Exception):
    """Base error with a user-facing message."""

    kind = "error"

    def __init__(self, message: str, original: Exception | None = None):
        self.original = original
        super().__init__(message)

    @property
    def message(self) -> str:
        return str(self)


class AuthError(RouterChatError):
    """No credential present, or the gateway rejected it (HTTP 401)."""

    kind = "auth"


class InvalidCredential(AuthError):
    """A credential check was rejected."""

    kind = "invalid_credential"


class CredentialError(ValueError):
    """An API key could not be stored (e.g. it was empty)."""


class NotFoundError(RouterChatError):
    """The requested model id does not exist in the directory."""

    kind = "not_found"

    def __init__(self, model_id: str):
        self.model_id = model_id
        super().__init__(f"Model '{model_id}' not found in the model directory")


class UnavailableError(RouterChatError):
    """The requested model exists but is marked unavailable."""

    kind = "unavailable"

    def __init__(self, model_id: str, fallback_id: str):
        self.model_id = model_id
        self.fallback_id = fallback_id
        super().__init__(
            f"Model '{model_id}' is currently unavailable; "
            f"selection reset to '{fallback_id}'"
        )


class TransportError(RouterChatError):
    """Network-level failure (DNS, connection reset, timeout)."""

    kind = "transport"


class ProtocolError(RouterChatError):
    """Non-2xx status other than 401, or an undecodable success body."""

    kind = "protocol"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        server_message: str | None = None,
        original: Exception | None = None,
    ):
        self.status_code = status_code
        self.server_message = server_message
        super().__init__(message, original=original)


class StreamCancelled(RouterChatError):
    """A stream was stopped on purpose by the client. Not a failure."""

    kind = "cancelled"

    def __init__(self, message: str = "Stream cancelled"):
        super().__init__(message)


def extract_server_message(body: bytes | str | None) -> str | None:
    """
    Pull ``error.message`` out of a gateway error body.

    The body is expected to look like ``{"error": {"message": ...}}`` but every
    field is optional; anything unparseable yields None.
    """
    if not body:
        return None
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    try:
        data: Any = json.loads(body)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
    elif isinstance(error, str) and error:
        return error
    return None


def error_from_response(
    status_code: int,
    body: bytes | str | None = None,
    reason: str | None = None,
) -> RouterChatError:
    """
    Convert a non-2xx gateway response into a typed error.

    Args:
        status_code: HTTP status of the response
        body: Raw response body, if it was read
        reason: HTTP reason phrase, used when the body carries no message

    Returns:
        AuthError for 401, ProtocolError for everything else
    """
    server_message = extract_server_message(body)

    if status_code == 401:
        detail = server_message or "invalid or expired API key"
        return AuthError(f"Authentication failed: {detail}")

    if server_message:
        message = f"API error ({status_code}): {server_message}"
    else:
        status_text = f"{status_code} {reason}".strip() if reason else str(status_code)
        message = f"API error: HTTP {status_text}"
    return ProtocolError(message, status_code=status_code, server_message=server_message)


def error_from_transport(error: httpx.RequestError, base_url: str) -> TransportError:
    """Wrap an httpx transport failure."""
    if isinstance(error, httpx.TimeoutException):
        return TransportError(f"Request to {base_url} timed out", original=error)
    return TransportError(
        f"Cannot connect to {base_url}. Check your internet connection. ({error})",
        original=error,
    )
