from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class SessionPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"


def _clean_str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


@dataclass(frozen=True)
class SessionUser:
    id: str
    name: str
    phone: str
    roles: Tuple[str, ...] = ()
    hub_ids: Tuple[str, ...] = ()
    user_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "userType": self.user_type,
            "roles": list(self.roles),
            "hubIds": list(self.hub_ids),
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional["SessionUser"]:
        if not isinstance(data, dict):
            return None
        user_id = _clean_str(data.get("id"))
        name = _clean_str(data.get("name"))
        if not user_id or not name:
            return None
        roles = data.get("roles")
        hub_ids = data.get("hubIds")
        user_type = data.get("userType")
        return cls(
            id=user_id,
            name=name,
            phone=_clean_str(data.get("phone")),
            roles=tuple(r for r in roles if isinstance(r, str)) if isinstance(roles, list) else (),
            hub_ids=tuple(h for h in hub_ids if isinstance(h, str) and h.strip())
            if isinstance(hub_ids, list)
            else (),
            user_type=user_type if isinstance(user_type, str) else None,
        )


@dataclass(frozen=True)
class SessionRecord:
    """The single persisted session aggregate.

    Instances are immutable; every transition builds a new record so readers
    never observe a half-applied token update.
    """

    guest_token: str = ""
    identity_id: str = ""
    access_token: str = ""
    refresh_token: str = ""
    token_version: int = 1
    user: Optional[SessionUser] = field(default=None)

    @property
    def phase(self) -> SessionPhase:
        if self.access_token and self.refresh_token:
            return SessionPhase.AUTHENTICATED
        if self.guest_token:
            return SessionPhase.ANONYMOUS
        return SessionPhase.UNINITIALIZED

    @property
    def selected_hub_id(self) -> Optional[str]:
        if self.user and self.user.hub_ids:
            return self.user.hub_ids[0]
        return None

    @property
    def has_credentials(self) -> bool:
        return bool(self.guest_token or self.access_token or self.refresh_token)

    def cleared(self) -> "SessionRecord":
        """Logged-out record: everything empty except the identity id."""
        return SessionRecord(identity_id=self.identity_id)

    def with_guest(self, guest_token: str, identity_id: str) -> "SessionRecord":
        return replace(self, guest_token=guest_token, identity_id=identity_id)

    def with_tokens(self, access_token: str, refresh_token: str) -> "SessionRecord":
        return replace(
            self,
            guest_token="",
            access_token=access_token,
            refresh_token=refresh_token,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "guestToken": self.guest_token,
            "identityId": self.identity_id,
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "tokenVersion": self.token_version,
            "user": self.user.to_dict() if self.user else None,
            "selectedHubId": self.selected_hub_id,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "SessionRecord":
        """Rebuild a record from stored JSON, dropping malformed fields.

        ``selectedHubId`` is derived and never read back. An access token
        without its refresh token (or the reverse) is discarded as a pair.
        """
        if not isinstance(data, dict):
            return cls()
        access_token = _clean_str(data.get("accessToken"))
        refresh_token = _clean_str(data.get("refreshToken"))
        if not (access_token and refresh_token):
            access_token = refresh_token = ""
        version = data.get("tokenVersion")
        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            version = 1
        return cls(
            guest_token="" if access_token else _clean_str(data.get("guestToken")),
            identity_id=_clean_str(data.get("identityId")),
            access_token=access_token,
            refresh_token=refresh_token,
            token_version=version,
            user=SessionUser.from_dict(data.get("user")),
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class IdentityResult:
    guest_token: str
    identity_id: str


@dataclass(frozen=True)
class VerifyResult:
    """Normalized verify-OTP payload; raw backend shapes stop here."""

    user: SessionUser
    access_token: str
    refresh_token: str
    identity_id: Optional[str] = None
    is_new_user: bool = False
