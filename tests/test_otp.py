"""Tests for verify-payload normalization and the OTP login controller."""

import json

import httpx
import pytest

from gateauth.config import get_settings
from gateauth.service.errors import BackendError, NetworkError, PreconditionError
from gateauth.service.otp import (
    OtpLoginController,
    extract_hub_ids,
    extract_roles,
    normalize_verify_payload,
)
from gateauth.storage.token_store import MemoryTokenStore, SessionStore


def controller_for(backend):
    devices = SessionStore(MemoryTokenStore({"@entry_app_device_id": "device-1"}))
    return OtpLoginController(backend.transport(), get_settings(), devices)


class TestRoleAndHubExtraction:
    """Both backend payload shapes map onto the same canonical fields."""

    def test_flat_roles(self):
        assert extract_roles({"roles": [{"name": "Guard"}, {"name": "HM"}]}) == ("guard", "hm")

    def test_nested_user_roles(self):
        user = {"userRoles": [{"role": {"name": "Hub_Manager"}}, {"role": None}]}
        assert extract_roles(user) == ("hub_manager",)

    def test_unknown_roles_kept_literally(self):
        assert extract_roles({"roles": [{"name": "Driver"}]}) == ("driver",)

    def test_hubs_shape(self):
        assert extract_hub_ids({"hubs": [{"id": "h1"}, {"id": "h2"}]}) == ("h1", "h2")

    def test_user_hubs_shape(self):
        user = {"userHubs": [{"hubId": "h1"}, {"hub": {"id": "h2"}}]}
        assert extract_hub_ids(user) == ("h1", "h2")

    def test_sources_are_never_merged(self):
        user = {"hubs": [{"id": "h1"}], "userHubs": [{"hubId": "h9"}]}
        assert extract_hub_ids(user) == ("h1",)

    def test_empty_hubs_fall_back_to_user_hubs(self):
        user = {"hubs": [], "userHubs": [{"hub": {"id": "h9"}}]}
        assert extract_hub_ids(user) == ("h9",)


class TestNormalizeVerifyPayload:
    """Verify response normalization."""

    def payload(self, **overrides):
        data = {
            "user": {
                "id": "user-1",
                "name": "  ",
                "userContacts": [
                    {"phoneNo": "111", "isPrimary": False},
                    {"phoneNo": "222", "isPrimary": True},
                ],
                "userHubs": [{"hubId": "hub-a"}, {"hubId": "hub-b"}],
                "userRoles": [{"role": {"name": "GUARD"}}],
            },
            "accessToken": "a",
            "refreshToken": "r",
        }
        data.update(overrides)
        return data

    def test_canonical_shape(self):
        result = normalize_verify_payload(self.payload(isNewUser=True))
        assert result.user.phone == "222"
        assert result.user.name == "222"
        assert result.user.roles == ("guard",)
        assert result.access_token == "a"
        assert result.refresh_token == "r"
        assert result.is_new_user
        assert result.identity_id is None

    @pytest.mark.parametrize(
        "hubs",
        [
            {"hubs": [{"id": "hub-a"}, {"id": "hub-b"}, {"id": "hub-c"}]},
            {"userHubs": [{"hubId": "hub-a"}, {"hub": {"id": "hub-b"}}]},
        ],
    )
    def test_only_first_hub_is_kept(self, hubs):
        data = self.payload()
        data["user"].pop("userHubs")
        data["user"].update(hubs)
        assert normalize_verify_payload(data).user.hub_ids == ("hub-a",)

    def test_tokens_fall_back_to_identity(self):
        data = self.payload(
            accessToken=None,
            refreshToken=None,
            identity={"id": "ident-2", "accessToken": "ia", "refreshToken": "ir"},
        )
        result = normalize_verify_payload(data)
        assert (result.access_token, result.refresh_token) == ("ia", "ir")
        assert result.identity_id == "ident-2"

    def test_missing_tokens_rejected(self):
        with pytest.raises(BackendError):
            normalize_verify_payload(self.payload(refreshToken=""))

    def test_missing_user_rejected(self):
        with pytest.raises(BackendError):
            normalize_verify_payload({"accessToken": "a", "refreshToken": "r"})

    def test_phone_falls_back_to_name(self):
        data = self.payload()
        data["user"]["userContacts"] = []
        data["user"]["name"] = "Desk"
        assert normalize_verify_payload(data).user.phone == "Desk"

    def test_name_falls_back_to_user_id(self):
        data = self.payload()
        data["user"]["userContacts"] = []
        data["user"].pop("name")
        user = normalize_verify_payload(data).user
        assert user.phone == ""
        assert user.name == "user-1"


class TestOtpLoginController:
    """Wire behaviour of send/verify."""

    async def test_send_otp_uses_guest_token_and_device_headers(self, backend):
        backend.on(backend.SEND_OTP, (200, {"success": True}))
        await controller_for(backend).send_otp(" 9876543210 ", "guest-1")

        (request,) = backend.calls(backend.SEND_OTP)
        assert request.headers["Authorization"] == "Bearer guest-1"
        assert request.headers["device-id"] == "device-1"
        assert request.headers["app-type"] == "entry_app"
        assert json.loads(request.content) == {"phoneNo": "9876543210"}

    async def test_empty_guest_token_fails_fast(self, backend):
        with pytest.raises(PreconditionError):
            await controller_for(backend).send_otp("9876543210", "")
        assert backend.requests == []

    async def test_verify_returns_normalized_result(self, backend):
        backend.on(backend.VERIFY_OTP, backend.verify_ok(roles=("HM",), hubs=("hub-7",)))
        result = await controller_for(backend).verify_otp("9876543210", "1234", "guest-1")

        assert result.user.roles == ("hm",)
        assert result.user.hub_ids == ("hub-7",)
        (request,) = backend.calls(backend.VERIFY_OTP)
        assert json.loads(request.content) == {"phoneNo": "9876543210", "otp": "1234"}

    async def test_verify_rejection_raises_backend_error(self, backend):
        backend.on(backend.VERIFY_OTP, backend.error(400, "INVALID_OTP", "Invalid OTP"))
        with pytest.raises(BackendError) as excinfo:
            await controller_for(backend).verify_otp("9876543210", "0000", "guest-1")
        assert excinfo.value.error_code == "INVALID_OTP"

    async def test_verify_without_success_flag_is_invalid(self, backend):
        backend.on(backend.VERIFY_OTP, (200, {"success": False, "data": {}}))
        with pytest.raises(BackendError):
            await controller_for(backend).verify_otp("9876543210", "1234", "guest-1")

    async def test_network_failure_surfaces_as_network_error(self, backend):
        def boom(request):
            raise httpx.ConnectError("connection refused", request=request)

        backend.handle(backend.SEND_OTP, boom)
        with pytest.raises(NetworkError):
            await controller_for(backend).send_otp("9876543210", "guest-1")
