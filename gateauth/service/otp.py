from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from gateauth.config import Settings
from gateauth.logging import get_logger
from gateauth.service.errors import BackendError, PreconditionError, parse_backend_error
from gateauth.service.identity import DeviceIdSource
from gateauth.service.transport import Transport, bearer
from gateauth.storage.models import SessionUser, VerifyResult

logger = get_logger(__name__)


class OtpStep(str, Enum):
    """Caller-held login progress; never persisted across restarts."""

    PHONE_ENTRY = "phone_entry"
    OTP_SENT = "otp_sent"
    VERIFIED = "verified"


def _names(items: Any, extract) -> List[str]:
    if not isinstance(items, list):
        return []
    out = []
    for item in items:
        value = extract(item) if isinstance(item, dict) else None
        if isinstance(value, str) and value.strip():
            out.append(value.strip())
    return out


def extract_roles(user: Dict[str, Any]) -> Tuple[str, ...]:
    """Lower-cased role names from ``roles[].name`` or ``userRoles[].role.name``."""
    roles = _names(user.get("roles"), lambda r: r.get("name"))
    if not roles:
        roles = _names(
            user.get("userRoles"),
            lambda r: r.get("role", {}).get("name") if isinstance(r.get("role"), dict) else None,
        )
    return tuple(r.lower() for r in roles)


def _user_hub_id(entry: Dict[str, Any]) -> Optional[str]:
    hub_id = entry.get("hubId")
    if isinstance(hub_id, str) and hub_id.strip():
        return hub_id
    hub = entry.get("hub")
    return hub.get("id") if isinstance(hub, dict) else None


def extract_hub_ids(user: Dict[str, Any]) -> Tuple[str, ...]:
    """Hub ids from ``hubs[].id``, else ``userHubs[].hubId | .hub.id``.

    The two shapes are never merged: the first non-empty one wins.
    """
    hub_ids = _names(user.get("hubs"), lambda h: h.get("id"))
    if not hub_ids:
        hub_ids = _names(user.get("userHubs"), _user_hub_id)
    return tuple(hub_ids)


def _primary_phone(user: Dict[str, Any]) -> str:
    contacts = [c for c in user.get("userContacts") or [] if isinstance(c, dict)]
    for contact in contacts:
        if contact.get("isPrimary") and contact.get("phoneNo"):
            return str(contact["phoneNo"]).strip()
    if contacts and contacts[0].get("phoneNo"):
        return str(contacts[0]["phoneNo"]).strip()
    return str(user.get("name") or "").strip()


def normalize_verify_payload(data: Any) -> VerifyResult:
    """Map the verify-OTP ``data`` object onto the canonical session shape.

    Tokens are read from the top level with ``data.identity`` as fallback.
    Raises ``BackendError`` when the user or either token is missing.
    """
    if not isinstance(data, dict) or not isinstance(data.get("user"), dict):
        raise BackendError("Invalid verify response")
    raw_user = data["user"]
    identity = data.get("identity") if isinstance(data.get("identity"), dict) else {}
    access_token = data.get("accessToken") or identity.get("accessToken") or ""
    refresh_token = data.get("refreshToken") or identity.get("refreshToken") or ""
    if not access_token or not refresh_token:
        raise BackendError("Invalid verify response: missing tokens")

    user_id = str(raw_user.get("id") or "").strip()
    phone = _primary_phone(raw_user)
    # A stored user needs a non-empty name to be read back
    name = str(raw_user.get("name") or "").strip() or phone or user_id
    user_type = raw_user.get("userType")
    user = SessionUser(
        id=user_id,
        name=name,
        phone=phone,
        roles=extract_roles(raw_user),
        # Only the first hub is kept; the selection is fixed for the session
        hub_ids=extract_hub_ids(raw_user)[:1],
        user_type=user_type if isinstance(user_type, str) else None,
    )
    if not user.id:
        raise BackendError("Invalid verify response: missing user id")
    identity_id = identity.get("id")
    return VerifyResult(
        user=user,
        access_token=str(access_token).strip(),
        refresh_token=str(refresh_token).strip(),
        identity_id=str(identity_id).strip() if identity_id else None,
        is_new_user=bool(data.get("isNewUser")),
    )


class OtpLoginController:
    """Phone then OTP login, authenticated only by the guest token.

    Failures are raised untouched; the session manager owns the policy that
    turns any of them into a full reset.
    """

    def __init__(
        self, transport: Transport, settings: Settings, devices: DeviceIdSource
    ) -> None:
        self.transport = transport
        self.settings = settings
        self.devices = devices

    async def _headers(self, guest_token: str) -> Dict[str, str]:
        if not (guest_token or "").strip():
            raise PreconditionError("OTP endpoints require a guest token")
        return {
            "device-id": await self.devices.device_id(),
            "app-type": self.settings.app_type,
            "app-version": str(self.settings.app_version),
            **bearer(guest_token),
        }

    async def send_otp(self, phone: str, guest_token: str) -> None:
        headers = await self._headers(guest_token)
        resp = await self.transport.request(
            "POST",
            self.settings.url_for(self.settings.send_otp_path),
            headers=headers,
            json_body={"phoneNo": str(phone).strip()},
        )
        if not resp.ok:
            raise parse_backend_error(resp.status_code, resp.text)
        logger.info("otp_sent", phone=str(phone).strip())

    async def verify_otp(self, phone: str, otp: str, guest_token: str) -> VerifyResult:
        headers = await self._headers(guest_token)
        resp = await self.transport.request(
            "POST",
            self.settings.url_for(self.settings.verify_otp_path),
            headers=headers,
            json_body={"phoneNo": str(phone).strip(), "otp": str(otp).strip()},
        )
        if not resp.ok:
            raise parse_backend_error(resp.status_code, resp.text)
        payload = resp.json()
        if not isinstance(payload, dict) or not payload.get("success"):
            raise BackendError("Invalid verify response", status_code=resp.status_code)
        result = normalize_verify_payload(payload.get("data"))
        logger.info(
            "otp_verified",
            user_id=result.user.id,
            roles=list(result.user.roles),
            hub_count=len(result.user.hub_ids),
        )
        return result
