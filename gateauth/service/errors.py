from __future__ import annotations

import json
import re
from typing import Any, Optional

# Fixed user-facing messages, one per situation
SESSION_EXPIRED_MESSAGE = "Your session expired. Please sign in again."
OTP_SESSION_RESET_MESSAGE = "Your session expired. Please request OTP again."
SERVER_UNAVAILABLE_MESSAGE = (
    "Service temporarily unavailable. Please try again in a few minutes."
)
NETWORK_ERROR_MESSAGE = "Unable to reach the server. Check your connection and try again."
PREPARE_LOGIN_FAILED_MESSAGE = "Failed to prepare login"
DEFAULT_FALLBACK_MESSAGE = "Something went wrong. Please try again."

ERROR_CODE_TOKEN_EXPIRED = "TOKEN_EXPIRED"
ERROR_CODE_TOKEN_VERSION_MISMATCH = "TOKEN_VERSION_MISMATCH"
ERROR_CODE_UNAUTHORIZED = "UNAUTHORIZED"

_STATUS_TITLES = {
    400: "Invalid request",
    401: "Session expired",
    403: "Access denied",
    404: "Not found",
    500: "Server error",
}
_DEFAULT_TITLE = "Error"


class GateAuthError(Exception):
    """Base class for session-layer failures.

    Every subclass carries a stable ``error_code`` and a fixed
    ``user_message``; the raw backend message stays in ``message`` for logs
    and is never meant for display.
    """

    status_code: Optional[int] = None
    error_code: str = "error"
    title: str = _DEFAULT_TITLE
    user_message: str = DEFAULT_FALLBACK_MESSAGE

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        detail: Optional[dict] = None,
        user_message: Optional[str] = None,
        title: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        if user_message is not None:
            self.user_message = user_message
        if title is not None:
            self.title = title
        self.detail = detail or {}


class NetworkError(GateAuthError):
    """No response reached the client (connect failure, timeout, reset)."""

    error_code = "network_error"
    title = "Connection problem"
    user_message = NETWORK_ERROR_MESSAGE


class BackendError(GateAuthError):
    """A response was received but the backend rejected the request."""

    error_code = "backend_error"


class ServerUnavailableError(BackendError):
    """5xx status or an HTML gateway page instead of a JSON body."""

    error_code = "server_unavailable"
    title = "Server temporarily unavailable"
    user_message = SERVER_UNAVAILABLE_MESSAGE


class ForbiddenError(BackendError):
    """403: surfaced as a permission error, never as a session invalidation."""

    status_code = 403
    error_code = "forbidden"
    title = "Access denied"


class SessionInvalidError(GateAuthError):
    """The backend declared the credential set dead; the session was reset."""

    status_code = 401
    error_code = "session_invalid"
    title = "Session expired"
    user_message = SESSION_EXPIRED_MESSAGE


class OtpSessionResetError(SessionInvalidError):
    """Any send/verify OTP failure, collapsed into a single reset outcome."""

    error_code = "otp_session_reset"
    user_message = OTP_SESSION_RESET_MESSAGE


class PreconditionError(GateAuthError):
    """Programmer error: an operation was called without its prerequisites."""

    error_code = "precondition_failed"


def title_for_status(status_code: int) -> str:
    return _STATUS_TITLES.get(status_code, _DEFAULT_TITLE)


def is_html_body(text: Optional[str]) -> bool:
    """True if the body looks like a proxy or gateway HTML page."""
    trimmed = (text or "").strip()
    if not trimmed:
        return False
    return bool(re.match(r"^\s*<(!doctype|html)[\s>]", trimmed, re.IGNORECASE))


def extract_message(body: Any) -> str:
    """Pick one safe message out of a backend error payload.

    Handles ``message`` as a string, a nested ``{"message": ...}`` object or a
    list (first element), then falls back to ``error``.
    """
    if not isinstance(body, dict):
        return DEFAULT_FALLBACK_MESSAGE
    msg = body.get("message")
    if isinstance(msg, str) and msg.strip():
        return msg.strip()
    if isinstance(msg, dict):
        nested = msg.get("message")
        if isinstance(nested, str) and nested.strip():
            return nested.strip()
    if isinstance(msg, list) and msg:
        first = msg[0]
        if isinstance(first, str) and first.strip():
            return first.strip()
    err = body.get("error")
    if isinstance(err, str) and err.strip():
        return err.strip()
    return DEFAULT_FALLBACK_MESSAGE


def extract_error_code(body: Any) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    for key in ("errorCode", "code"):
        value = body.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def parse_body(text: Optional[str]) -> Any:
    if not text or not text.strip() or is_html_body(text):
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


def parse_backend_error(status_code: int, text: Optional[str]) -> BackendError:
    """Turn a non-2xx response into the matching ``BackendError`` subclass."""
    if status_code >= 500 or is_html_body(text):
        return ServerUnavailableError(
            "server unavailable",
            status_code=status_code,
            title=None if status_code >= 500 else _DEFAULT_TITLE,
        )
    body = parse_body(text)
    message = extract_message(body)
    if body is None and text and len(text) < 300:
        message = text.strip() or message
    error_code = extract_error_code(body)
    cls = ForbiddenError if status_code == 403 else BackendError
    return cls(
        message,
        status_code=status_code,
        error_code=error_code,
        title=title_for_status(status_code),
        detail={"body": body} if body is not None else None,
    )


def is_token_version_mismatch(exc: BaseException) -> bool:
    code = getattr(exc, "error_code", None)
    if code == ERROR_CODE_TOKEN_VERSION_MISMATCH:
        return True
    message = getattr(exc, "message", None) or str(exc)
    return bool(re.search(r"token version mismatch", message, re.IGNORECASE))


__all__ = [
    "GateAuthError",
    "NetworkError",
    "BackendError",
    "ServerUnavailableError",
    "ForbiddenError",
    "SessionInvalidError",
    "OtpSessionResetError",
    "PreconditionError",
    "parse_backend_error",
    "parse_body",
    "extract_message",
    "extract_error_code",
    "is_html_body",
    "is_token_version_mismatch",
    "title_for_status",
]
