from __future__ import annotations

import json
import uuid
from typing import Any, Dict, List, Optional

import httpx
import pytest

from app.identity import IdentityProviderClient
from app.session_manager import RecordingNavigator, SessionManager
from app.storage import InMemoryKeyValueStore

T0 = 1_700_000_000_000  # epoch ms
DAY_MS = 24 * 60 * 60 * 1000


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClock:
    def __init__(self, now: int = T0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeGoTrue:
    """
    Just enough of GoTrue + PostgREST for the client: password/OTP sign-in,
    refresh, user lookup, profiles table and the activity RPC.
    """
    OTP_CODE = "123456"
    SERVICE_KEY = "service-key"

    def __init__(self) -> None:
        self.users: Dict[str, Dict[str, Any]] = {}
        self.tokens: Dict[str, str] = {}  # access token -> user id
        self.refresh_tokens: Dict[str, str] = {}
        self.activity_calls: List[str] = []
        self.requests: List[httpx.Request] = []
        self.otp_sent: List[str] = []
        self.fail_activity = False
        self.fail_logout = False
        self.expires_in = 3600
        self.down = False
        self.deleted_users: List[str] = []

    def add_user(self, email: str, password: str = "secret", role: Optional[str] = "customer") -> str:
        uid = str(uuid.uuid4())
        self.users[email] = {"id": uid, "email": email, "password": password, "role": role}
        return uid

    def _user_by_id(self, uid: str) -> Optional[Dict[str, Any]]:
        for u in self.users.values():
            if u["id"] == uid:
                return u
        return None

    def _session(self, user: Dict[str, Any]) -> httpx.Response:
        at = f"at-{uuid.uuid4().hex}"
        rt = f"rt-{uuid.uuid4().hex}"
        self.tokens[at] = user["id"]
        self.refresh_tokens[rt] = user["id"]
        return httpx.Response(200, json={
            "access_token": at,
            "refresh_token": rt,
            "token_type": "bearer",
            "expires_in": self.expires_in,
            "user": {"id": user["id"], "email": user["email"]},
        })

    def _bearer(self, request: httpx.Request) -> Optional[str]:
        h = request.headers.get("authorization", "")
        return h[7:] if h.lower().startswith("bearer ") else None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.down:
            return httpx.Response(503, json={"message": "service unavailable"})
        path = request.url.path
        body = json.loads(request.content) if request.content else {}

        if path == "/auth/v1/token":
            grant = request.url.params.get("grant_type")
            if grant == "password":
                u = self.users.get(body.get("email"))
                if not u or u["password"] != body.get("password"):
                    return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Invalid login credentials"})
                return self._session(u)
            if grant == "refresh_token":
                uid = self.refresh_tokens.pop(body.get("refresh_token"), None)
                if uid is None:
                    return httpx.Response(400, json={"error_description": "Invalid Refresh Token"})
                return self._session(self._user_by_id(uid))
            return httpx.Response(400, json={"msg": "unsupported grant"})

        if path == "/auth/v1/otp":
            self.otp_sent.append(body.get("email"))
            if body.get("email") not in self.users and body.get("create_user"):
                self.add_user(body["email"], password="", role=None)
            return httpx.Response(200, json={})

        if path == "/auth/v1/verify":
            u = self.users.get(body.get("email"))
            if not u or body.get("token") != self.OTP_CODE:
                return httpx.Response(403, json={"msg": "Token has expired or is invalid"})
            return self._session(u)

        if path == "/auth/v1/signup":
            if body.get("email") in self.users:
                return httpx.Response(422, json={"msg": "User already registered"})
            uid = self.add_user(body["email"], body["password"], role="customer")
            return httpx.Response(200, json={"id": uid, "email": body["email"]})

        if path == "/auth/v1/logout":
            if self.fail_logout:
                return httpx.Response(500, json={"msg": "boom"})
            self.tokens.pop(self._bearer(request) or "", None)
            return httpx.Response(204)

        if path == "/auth/v1/user":
            uid = self.tokens.get(self._bearer(request) or "")
            if uid is None:
                return httpx.Response(401, json={"msg": "invalid JWT"})
            u = self._user_by_id(uid)
            return httpx.Response(200, json={"id": u["id"], "email": u["email"]})

        if path == "/auth/v1/recover":
            return httpx.Response(200, json={})

        if path == "/rest/v1/profiles":
            uid = request.url.params.get("id", "").removeprefix("eq.")
            u = self._user_by_id(uid)
            if request.method == "DELETE":
                if u is not None:
                    u["role"] = None
                    u["profile_deleted"] = True
                return httpx.Response(204)
            if u is None:
                return httpx.Response(200, json=[])
            return httpx.Response(200, json=[{"id": uid, "role": u["role"]}])

        if path.startswith("/auth/v1/admin/users/") and request.method == "DELETE":
            if self._bearer(request) != self.SERVICE_KEY:
                return httpx.Response(403, json={"msg": "User not allowed"})
            uid = path.rsplit("/", 1)[-1]
            u = self._user_by_id(uid)
            if u is None:
                return httpx.Response(404, json={"msg": "User not found"})
            del self.users[u["email"]]
            self.tokens = {t: i for t, i in self.tokens.items() if i != uid}
            self.deleted_users.append(uid)
            return httpx.Response(200, json={})

        if path == "/rest/v1/rpc/update_user_activity":
            if self.fail_activity:
                return httpx.Response(503, json={"message": "unavailable"})
            self.activity_calls.append(body.get("user_id"))
            return httpx.Response(204)

        return httpx.Response(404, json={"msg": f"no route {path}"})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryKeyValueStore()


@pytest.fixture
def navigator():
    return RecordingNavigator()


@pytest.fixture
def manager(store, clock, navigator):
    return SessionManager(store, ttl_seconds=24 * 60 * 60, clock=clock, navigator=navigator)


@pytest.fixture
def gotrue():
    return FakeGoTrue()


@pytest.fixture
def idp(gotrue):
    return IdentityProviderClient(
        base_url="http://idp.test",
        api_key="anon-key",
        service_key=FakeGoTrue.SERVICE_KEY,
        transport=httpx.MockTransport(gotrue),
    )
