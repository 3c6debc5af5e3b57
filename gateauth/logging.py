from __future__ import annotations

import logging
import os
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

import structlog

# Id of the auth flow (restore, OTP login, one dispatched request) being logged
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Substrings of event keys whose values are credentials
_SECRET_MARKERS = ("token", "authorization", "otp", "secret", "password")
_PHONE_MARKER = "phone"

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    cid = correlation_id or uuid.uuid4().hex[:12]
    correlation_id_var.set(cid)
    return cid


@contextmanager
def auth_flow(name: str) -> Iterator[str]:
    """Tag every log line emitted inside the block with ``flow`` and ``correlation_id``.

    A flow already running in this context keeps its id, so a refresh
    triggered by a dispatched request logs under the request's id.
    """
    outer = correlation_id_var.get()
    cid = outer or uuid.uuid4().hex[:12]
    token = correlation_id_var.set(cid)
    try:
        with structlog.contextvars.bound_contextvars(flow=name):
            yield cid
    finally:
        correlation_id_var.reset(token)


def redact_value(value: str) -> str:
    """Mask a credential, leaving two characters at each end when it is long enough."""
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def mask_phone(value: str) -> str:
    """Show only the last four digits of a phone number."""
    digits = "".join(ch for ch in value if ch.isdigit())
    if len(digits) <= 4:
        return "***"
    return "***" + digits[-4:]


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask tokens, OTP codes and phone numbers before rendering."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or not value:
            continue
        lower_key = key.lower()
        if _PHONE_MARKER in lower_key:
            event_dict[key] = mask_phone(value)
        elif any(marker in lower_key for marker in _SECRET_MARKERS):
            event_dict[key] = redact_value(value)
    return event_dict


def _renderer(json_output: bool, development_mode: bool) -> list:
    if json_output and not development_mode:
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=development_mode)]


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the gateauth processor chain.

    Redaction runs after the context merge so values bound with
    ``bound_contextvars`` are masked as well.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_correlation_id,
            _redact_credentials,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            *_renderer(json_output, development_mode),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
