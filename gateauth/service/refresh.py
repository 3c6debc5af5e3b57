from __future__ import annotations

from typing import Optional

from gateauth.config import Settings
from gateauth.logging import get_logger
from gateauth.service.errors import (
    BackendError,
    PreconditionError,
    is_token_version_mismatch,
    parse_backend_error,
)
from gateauth.service.singleflight import SingleFlight
from gateauth.service.transport import Transport, bearer
from gateauth.storage.models import TokenPair

logger = get_logger(__name__)


class RefreshCoordinator:
    """Mints new access tokens with at most one refresh call in flight.

    ``refresh`` returns ``None`` when the refresh endpoint declares the
    session over (401 or token-version mismatch). Network failures and 5xx
    responses raise so callers can tell "dead session" from "try later".
    """

    def __init__(self, transport: Transport, settings: Settings) -> None:
        self.transport = transport
        self.settings = settings
        self._flight: SingleFlight[Optional[TokenPair]] = SingleFlight()
        self.calls = 0

    @property
    def in_flight(self) -> bool:
        return self._flight.in_flight

    async def refresh(self, refresh_token: str) -> Optional[TokenPair]:
        token = (refresh_token or "").strip()
        if not token:
            raise PreconditionError("refresh requires a refresh token")
        if self._flight.in_flight:
            logger.debug("refresh_joined_in_flight")
        return await self._flight.run(lambda: self._refresh_once(token))

    async def _refresh_once(self, refresh_token: str) -> Optional[TokenPair]:
        self.calls += 1
        resp = await self.transport.request(
            "POST",
            self.settings.url_for(self.settings.refresh_path),
            headers=bearer(refresh_token),
            json_body={"refreshToken": refresh_token, "refresh_token": refresh_token},
        )
        if not resp.ok:
            exc = parse_backend_error(resp.status_code, resp.text)
            if resp.status_code == 401 or is_token_version_mismatch(exc):
                logger.warning(
                    "refresh_rejected",
                    status_code=resp.status_code,
                    error_code=exc.error_code,
                )
                return None
            logger.warning(
                "refresh_failed", status_code=resp.status_code, error_code=exc.error_code
            )
            raise exc

        payload = resp.json()
        data = payload.get("data") if isinstance(payload, dict) else None
        if (
            not isinstance(payload, dict)
            or not payload.get("success")
            or not isinstance(data, dict)
            or not data.get("accessToken")
        ):
            raise BackendError("Invalid refresh response", status_code=resp.status_code)
        access_token = str(data["accessToken"]).strip()
        rotated = str(data.get("refreshToken") or access_token).strip()
        logger.info("refresh_succeeded", rotated=rotated != refresh_token)
        return TokenPair(access_token=access_token, refresh_token=rotated)
