from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from gateauth.config import Settings, TokenStoreKind, get_settings, reset_settings_cache
from gateauth.logging import get_logger
from gateauth.service.dispatcher import AuthenticatedDispatcher
from gateauth.service.identity import IdentityService
from gateauth.service.otp import OtpLoginController
from gateauth.service.refresh import RefreshCoordinator
from gateauth.service.session import SessionManager
from gateauth.service.transport import HttpxTransport, Transport
from gateauth.storage.redis_cache import RedisTokenStore
from gateauth.storage.token_store import (
    FileTokenStore,
    MemoryTokenStore,
    SessionStore,
    TokenStore,
)

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Wires the token store, transport and session services together."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        transport: Optional[Transport] = None,
        backend: Optional[TokenStore] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            store_kind=self.settings.token_store.value,
            test_mode=self.settings.test_mode,
        )
        self.backend = backend or self._build_backend()
        self.store = SessionStore(
            self.backend,
            record_key=self.settings.auth_storage_key,
            device_id_key=self.settings.device_id_key,
        )
        self.transport = transport or HttpxTransport(
            timeout=self.settings.request_timeout_seconds,
            connect_timeout=self.settings.connect_timeout_seconds,
        )
        self.identity = IdentityService(self.transport, self.settings, self.store)
        self.otp = OtpLoginController(self.transport, self.settings, self.store)
        self.refresher = RefreshCoordinator(self.transport, self.settings)
        self.session = SessionManager(self.store, self.identity, self.otp, self.refresher)
        self.dispatcher = AuthenticatedDispatcher(self.transport, self.session, self.settings)
        logger.info(
            "runtime_init_completed",
            store_backend=type(self.backend).__name__,
            api_base_url=self.settings.api_base_url,
        )

    def _build_backend(self) -> TokenStore:
        kind = self.settings.token_store
        if kind is TokenStoreKind.MEMORY:
            return MemoryTokenStore()
        if kind is TokenStoreKind.FILE:
            return FileTokenStore(self.settings.token_store_path)

        try:
            store = RedisTokenStore(self.settings.redis_url)
            store.verify_connection()
            return store
        except Exception as exc:
            if not self.settings.test_mode:
                raise RuntimeError(
                    "TOKEN_STORE=redis but Redis is unreachable; start Redis or "
                    "choose TOKEN_STORE=file"
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
                mode="TEST_MODE",
            )
            return MemoryTokenStore()

    async def aclose(self) -> None:
        close = getattr(self.transport, "aclose", None)
        if close is not None:
            await close()
        if isinstance(self.backend, RedisTokenStore):
            await self.backend.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh read of the environment.

    Open connections of the previous runtime are not closed here; tests that
    use the real transport call ``aclose`` themselves.
    """
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
