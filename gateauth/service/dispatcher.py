from __future__ import annotations

from typing import Any, Dict, Optional
from urllib.parse import urlparse

from gateauth.config import Settings
from gateauth.logging import auth_flow, get_logger
from gateauth.service.errors import (
    PreconditionError,
    SessionInvalidError,
    parse_backend_error,
)
from gateauth.service.session import SessionManager
from gateauth.service.transport import Response, Transport, bearer

logger = get_logger(__name__)


class AuthenticatedDispatcher:
    """Sends access-token requests and runs the 401 refresh-and-retry protocol.

    Only a 401 carrying one of ``settings.refresh_on_401_codes`` triggers a
    refresh, and each call is retried at most once. Any other 401 ends the
    session. Other failures raise the normalized ``BackendError`` and leave
    the session alone.
    """

    def __init__(
        self, transport: Transport, session: SessionManager, settings: Settings
    ) -> None:
        self.transport = transport
        self.session = session
        self.settings = settings

    def _endpoint(self, path: str) -> str:
        endpoint = urlparse(self.settings.url_for(path)).path
        return endpoint.rstrip("/") or "/"

    def _is_auth_path(self, path: str) -> bool:
        return self._endpoint(path) in {self._endpoint(p) for p in self.settings.auth_paths}

    def _headers(self, access_token: str) -> Dict[str, str]:
        headers = bearer(access_token)
        hub_id = self.session.selected_hub_id
        if hub_id:
            headers["x-hub-id"] = hub_id
        return headers

    async def _send(
        self, method: str, path: str, body: Any, access_token: str
    ) -> Response:
        return await self.transport.request(
            method,
            self.settings.url_for(path),
            headers=self._headers(access_token),
            json_body=body,
        )

    async def dispatch(
        self,
        method: str,
        path: str,
        body: Any = None,
        *,
        access_token: Optional[str] = None,
    ) -> Response:
        if self._is_auth_path(path):
            raise PreconditionError(f"{path} is an auth endpoint and cannot be dispatched")
        token = access_token if access_token is not None else (self.session.access_token or "")
        with auth_flow("dispatch"):
            resp = await self._send(method, path, body, token)
            if resp.status_code == 401:
                resp = await self._retry_after_refresh(method, path, body, token, resp)
        if not resp.ok:
            raise parse_backend_error(resp.status_code, resp.text)
        return resp

    async def _retry_after_refresh(
        self, method: str, path: str, body: Any, token: str, resp: Response
    ) -> Response:
        error = parse_backend_error(resp.status_code, resp.text)
        if error.error_code not in self.settings.refresh_on_401_codes:
            logger.warning("unauthorized_without_expiry", path=path, error_code=error.error_code)
            await self.session.invalidate("unauthorized")
            raise SessionInvalidError(
                error.message, detail={"backend_error_code": error.error_code}
            ) from error

        new_token = await self.session.refresh_access_token(token)
        if not new_token:
            raise SessionInvalidError("refresh rejected", detail={"path": path})

        retry = await self._send(method, path, body, new_token)
        if retry.status_code == 401:
            logger.warning("unauthorized_after_refresh", path=path)
            await self.session.invalidate("unauthorized_after_refresh")
            raise SessionInvalidError(
                "unauthorized after refresh", detail={"path": path}
            )
        return retry

    async def get(self, path: str, **kwargs: Any) -> Response:
        return await self.dispatch("GET", path, **kwargs)

    async def post(self, path: str, body: Any = None, **kwargs: Any) -> Response:
        return await self.dispatch("POST", path, body, **kwargs)


__all__ = ["AuthenticatedDispatcher"]
