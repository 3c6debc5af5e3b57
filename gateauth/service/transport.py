from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import httpx

from gateauth.logging import get_logger
from gateauth.service.errors import NetworkError, parse_body

logger = get_logger(__name__)


@dataclass
class Response:
    status_code: int
    text: str = ""
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        """Decoded JSON body, or ``None`` for empty, HTML or malformed bodies."""
        return parse_body(self.text)


class Transport(Protocol):
    """Request function: returns status + body, raises ``NetworkError``."""

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        json_body: Any = None,
    ) -> Response: ...


class HttpxTransport:
    """``Transport`` on top of a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        connect_timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._timeout = httpx.Timeout(timeout, connect=connect_timeout)
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, follow_redirects=False)
        return self._client

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        json_body: Any = None,
    ) -> Response:
        send_headers = dict(headers or {})
        content = None
        if json_body is not None:
            send_headers.setdefault("Content-Type", "application/json")
            content = json.dumps(json_body)
        client = self._get_client()
        try:
            resp = await client.request(
                method.upper(), url, headers=send_headers, content=content
            )
        except httpx.TimeoutException as exc:
            logger.warning("transport_timeout", method=method, url=url, error=str(exc))
            raise NetworkError(f"request timed out: {method} {url}") from exc
        except httpx.TransportError as exc:
            logger.warning(
                "transport_error",
                method=method,
                url=url,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise NetworkError(f"no response: {method} {url}") from exc
        return Response(
            status_code=resp.status_code,
            text=resp.text,
            headers=dict(resp.headers),
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def bearer(token: Optional[str]) -> Dict[str, str]:
    """Authorization header for a token, or nothing when the token is empty."""
    token = (token or "").strip()
    return {"Authorization": f"Bearer {token}"} if token else {}


__all__ = ["Response", "Transport", "HttpxTransport", "bearer"]
