import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure before any imports that might initialize the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("TOKEN_STORE", "memory")
os.environ.setdefault("API_BASE_URL", "http://gate.test")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gateauth.config import get_settings  # noqa: E402
from gateauth.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from gateauth.service.transport import HttpxTransport  # noqa: E402
from gateauth.storage.token_store import MemoryTokenStore  # noqa: E402

IDENTITY = "/api/v1/identity"
SEND_OTP = "/api/v1/users/login/otp"
VERIFY_OTP = "/api/v1/users/login/otp/verify"
REFRESH = "/api/v1/users/login/refresh"


class FakeBackend:
    """Scripted gate backend behind ``httpx.MockTransport``.

    A route is either a list of ``(status, body)`` replies consumed in order
    (the last one repeats) or a callable taking the ``httpx.Request`` that may
    be async.
    """

    IDENTITY = IDENTITY
    SEND_OTP = SEND_OTP
    VERIFY_OTP = VERIFY_OTP
    REFRESH = REFRESH

    def __init__(self):
        self.routes = {}
        self.requests = []

    def on(self, path, *replies):
        self.routes[path] = list(replies)
        return self

    def handle(self, path, fn):
        self.routes[path] = fn
        return self

    def calls(self, path):
        return [r for r in self.requests if r.url.path == path]

    async def _dispatch(self, request):
        self.requests.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, json={"message": "not found"})
        if callable(route):
            reply = route(request)
            if inspect.isawaitable(reply):
                reply = await reply
        else:
            reply = route.pop(0) if len(route) > 1 else route[0]
        if isinstance(reply, httpx.Response):
            return reply
        status, body = reply
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)

    def transport(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(self._dispatch))
        return HttpxTransport(client=client)

    @staticmethod
    def identity_ok(guest_token="guest-1", identity_id="ident-1"):
        return 200, {"success": True, "data": {"guestToken": guest_token, "id": identity_id}}

    @staticmethod
    def verify_ok(
        access_token="access-1",
        refresh_token="refresh-1",
        roles=("guard",),
        hubs=("hub-1",),
        identity_id=None,
    ):
        data = {
            "user": {
                "id": "user-1",
                "name": "Gate Guard",
                "userType": "staff",
                "userContacts": [{"phoneNo": "9876543210", "isPrimary": True}],
                "roles": [{"name": r} for r in roles],
                "hubs": [{"id": h} for h in hubs],
            },
            "accessToken": access_token,
            "refreshToken": refresh_token,
        }
        if identity_id:
            data["identity"] = {"id": identity_id}
        return 200, {"success": True, "data": data}

    @staticmethod
    def refresh_ok(access_token="access-2", refresh_token="refresh-2"):
        return 200, {
            "success": True,
            "data": {"accessToken": access_token, "refreshToken": refresh_token},
        }

    @staticmethod
    def error(status, error_code=None, message="error"):
        body = {"success": False, "message": message}
        if error_code:
            body["errorCode"] = error_code
        return status, body


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def make_runtime(backend):
    """Build a runtime wired to ``backend`` with an in-memory token store."""

    def _make(initial=None):
        return Runtime(
            get_settings(),
            transport=backend.transport(),
            backend=MemoryTokenStore(initial),
        )

    return _make


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
