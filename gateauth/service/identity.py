from __future__ import annotations

from typing import Protocol

from gateauth.config import Settings
from gateauth.logging import get_logger
from gateauth.service.errors import BackendError, parse_backend_error
from gateauth.service.transport import Transport
from gateauth.storage.models import IdentityResult

logger = get_logger(__name__)


class DeviceIdSource(Protocol):
    async def device_id(self) -> str: ...


def _or_none(value: str) -> str | None:
    value = (value or "").strip()
    return value or None


class IdentityService:
    """Obtains or revalidates the anonymous guest token."""

    def __init__(
        self, transport: Transport, settings: Settings, devices: DeviceIdSource
    ) -> None:
        self.transport = transport
        self.settings = settings
        self.devices = devices

    async def fetch_identity(
        self,
        *,
        guest_token: str,
        access_token: str,
        refresh_token: str,
        token_version: int,
        last_login_user_id: str = "",
    ) -> IdentityResult:
        """POST the current token triple and return the backend's guest token.

        Empty strings go out as ``null``. Raises ``NetworkError`` when no
        response arrives and ``BackendError`` when one is rejected or the
        envelope lacks a guest token.
        """
        body = {
            "appType": self.settings.identity_app_type,
            "appVersion": self.settings.app_version,
            "lastLoginUserId": _or_none(last_login_user_id),
            "guestToken": _or_none(guest_token),
            "accessToken": _or_none(access_token),
            "refreshToken": _or_none(refresh_token),
            "tokenVersion": token_version or 1,
            "macId": await self.devices.device_id(),
        }
        resp = await self.transport.request(
            "POST",
            self.settings.url_for(self.settings.identity_path),
            json_body=body,
        )
        if not resp.ok:
            exc = parse_backend_error(resp.status_code, resp.text)
            logger.warning(
                "identity_rejected",
                status_code=resp.status_code,
                error_code=exc.error_code,
            )
            raise exc

        payload = resp.json()
        data = payload.get("data") if isinstance(payload, dict) else None
        if (
            not isinstance(payload, dict)
            or not payload.get("success")
            or not isinstance(data, dict)
            or not isinstance(data.get("guestToken"), str)
            or not data["guestToken"].strip()
        ):
            raise BackendError(
                "Invalid identity response", status_code=resp.status_code
            )
        identity_id = data.get("id")
        result = IdentityResult(
            guest_token=data["guestToken"].strip(),
            identity_id=str(identity_id).strip() if identity_id is not None else "",
        )
        logger.info("identity_fetched", identity_id=result.identity_id)
        return result
