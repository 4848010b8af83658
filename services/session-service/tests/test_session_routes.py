from __future__ import annotations

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from app.identity import IdentityProviderClient
from app.main import app, build_registry
from app.settings import settings
from app.storage import InMemoryKeyValueStore

pytestmark = pytest.mark.anyio


@pytest.fixture
async def backend(gotrue):
    store = InMemoryKeyValueStore()
    idp = IdentityProviderClient(
        base_url="http://idp.test",
        api_key="anon",
        service_key=gotrue.SERVICE_KEY,
        transport=httpx.MockTransport(gotrue),
    )
    app.state.store = store
    app.state.idp = idp
    app.state.providers = build_registry(store, idp)
    yield store
    await app.state.providers.close_all()


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.fixture
async def client(backend):
    async with _client() as ac:
        yield ac


async def test_health(client):
    res = await client.get("/healthz")
    assert res.status_code == 200
    assert res.json()["ok"] is True
    assert (await client.get("/readyz")).json()["ready"] is True


async def test_device_cookie_issued_once(client, backend):
    first = await client.get("/auth/session")
    assert first.status_code == 401
    assert settings.DEVICE_COOKIE_NAME in first.headers.get("set-cookie", "")

    second = await client.get("/auth/session")
    assert "set-cookie" not in second.headers
    assert len([k for k in backend.keys() if k.endswith("esygrab_device_id")]) == 1


async def test_delivery_partner_end_to_end(client, gotrue):
    gotrue.add_user("dp@b.c", "pw", role="delivery_partner")

    res = await client.post("/auth/sign-in", json={"email": "dp@b.c", "password": "pw"})
    assert res.status_code == 200
    body = res.json()
    assert body["authenticated"] is True
    assert body["role"] == "delivery_partner"

    res = await client.get("/auth/session")
    assert res.json()["role"] == "delivery_partner"

    res = await client.get("/navigate/enforce", params={"path": "/"})
    assert res.status_code == 302
    assert res.headers["location"] == "/delivery-partner/dashboard"

    res = await client.get("/navigate/enforce", params={"path": "/delivery-partner/orders"})
    assert res.status_code == 204

    res = await client.get("/navigate/dashboard")
    assert res.headers["location"] == "/delivery-partner/dashboard"

    assert (await client.get("/auth/session/delivery_partner")).status_code == 200
    assert (await client.get("/auth/session/customer")).status_code == 401
    assert (await client.get("/auth/session/overlord")).status_code == 400


async def test_bad_credentials(client, gotrue):
    gotrue.add_user("a@b.c", "pw")
    res = await client.post("/auth/sign-in", json={"email": "a@b.c", "password": "nope"})
    assert res.status_code == 400
    assert res.json()["detail"] == "Invalid login credentials"


async def test_provider_outage_is_502(client, gotrue):
    gotrue.down = True
    res = await client.post("/auth/otp", json={"email": "a@b.c"})
    assert res.status_code == 502


async def test_otp_sign_in(client, gotrue):
    assert (await client.post("/auth/otp", json={"email": "o@b.c"})).json() == {"ok": True}

    bad = await client.post("/auth/otp/verify", json={"email": "o@b.c", "token": "000000"})
    assert bad.status_code == 403

    ok = await client.post("/auth/otp/verify", json={"email": "o@b.c", "token": gotrue.OTP_CODE})
    assert ok.status_code == 200
    assert ok.json()["role"] == "customer"


async def test_sign_up_and_password_reset(client, gotrue):
    res = await client.post("/auth/sign-up", json={"email": "n@b.c", "password": "secret1"})
    assert res.status_code == 200
    assert res.json()["user"]["email"] == "n@b.c"

    dup = await client.post("/auth/sign-up", json={"email": "n@b.c", "password": "secret1"})
    assert dup.status_code == 422

    res = await client.post("/auth/password/reset", json={"email": "n@b.c"})
    assert res.json() == {"ok": True}
    assert gotrue.requests[-1].url.params["redirect_to"] == settings.password_reset_url


async def test_activity(client, gotrue):
    res = await client.post("/activity", json={"events": ["click"]})
    assert res.json() == {"accepted": 0, "tracking": False}

    gotrue.add_user("a@b.c", "pw")
    await client.post("/auth/sign-in", json={"email": "a@b.c", "password": "pw"})
    res = await client.post("/activity", json={"events": ["click", "resize", "scroll"]})
    assert res.json() == {"accepted": 2, "tracking": True}


async def test_refresh(client, gotrue):
    gotrue.add_user("a@b.c", "pw")
    await client.post("/auth/sign-in", json={"email": "a@b.c", "password": "pw"})
    res = await client.post("/auth/refresh")
    assert res.status_code == 200
    assert res.json()["refreshed"] is False
    assert res.json()["authenticated"] is True


async def test_sign_out(client, gotrue):
    gotrue.add_user("a@b.c", "pw", role="admin")
    await client.post("/auth/sign-in", json={"email": "a@b.c", "password": "pw"})
    assert (await client.get("/navigate/enforce", params={"path": "/"})).headers["location"] == "/admin/dashboard"

    res = await client.post("/auth/sign-out")
    assert res.json() == {"ok": True, "provider_signed_out": True}
    assert (await client.get("/auth/session")).status_code == 401
    assert (await client.get("/navigate/enforce", params={"path": "/"})).status_code == 204
    assert (await client.get("/navigate/dashboard")).headers["location"] == "/"


async def test_sign_out_provider_failure(client, gotrue):
    gotrue.add_user("a@b.c", "pw")
    await client.post("/auth/sign-in", json={"email": "a@b.c", "password": "pw"})
    gotrue.fail_logout = True
    res = await client.post("/auth/sign-out")
    assert res.json() == {"ok": True, "provider_signed_out": False}
    assert (await client.get("/auth/session")).status_code == 401


async def test_guard(client, gotrue):
    res = await client.get("/navigate/guard", params={"roles": ["customer"]})
    assert res.status_code == 302
    assert res.headers["location"] == settings.LOGIN_PATH

    gotrue.add_user("a@b.c", "pw")
    await client.post("/auth/sign-in", json={"email": "a@b.c", "password": "pw"})
    assert (await client.get("/navigate/guard", params={"roles": ["customer", "user"]})).status_code == 204

    res = await client.get("/navigate/guard", params={"roles": ["admin"]})
    assert res.headers["location"] == "/unauthorized"
    assert (await client.get("/navigate/guard", params={"roles": ["nobody"]})).status_code == 400


async def test_devices_are_isolated(client, backend, gotrue):
    gotrue.add_user("a@b.c", "pw")
    await client.post("/auth/sign-in", json={"email": "a@b.c", "password": "pw"})

    async with _client() as other:
        assert (await other.get("/auth/session")).status_code == 401
    assert (await client.get("/auth/session")).status_code == 200


async def test_tampered_device_cookie_gets_a_new_device(client, gotrue):
    gotrue.add_user("a@b.c", "pw")
    await client.post("/auth/sign-in", json={"email": "a@b.c", "password": "pw"})

    async with _client() as forged:
        forged.cookies.set(settings.DEVICE_COOKIE_NAME, "not-a-signed-value")
        res = await forged.get("/auth/session")
        assert res.status_code == 401
        assert settings.DEVICE_COOKIE_NAME in res.headers.get("set-cookie", "")


async def test_delete_account(client, gotrue):
    assert (await client.delete("/auth/account")).status_code == 401

    uid = gotrue.add_user("a@b.c", "pw")
    await client.post("/auth/sign-in", json={"email": "a@b.c", "password": "pw"})
    res = await client.delete("/auth/account")
    assert res.json() == {"ok": True}
    assert gotrue.deleted_users == [uid]
    assert (await client.get("/auth/session")).status_code == 401

    again = await client.post("/auth/sign-in", json={"email": "a@b.c", "password": "pw"})
    assert again.status_code == 400


async def test_idle_anonymous_devices_are_forgotten(client, backend, gotrue):
    providers = app.state.providers
    gotrue.add_user("a@b.c", "pw")
    await client.post("/auth/sign-in", json={"email": "a@b.c", "password": "pw"})
    async with _client() as passer_by:
        await passer_by.get("/auth/session")
    assert len(providers) == 2

    providers.idle_seconds = 0
    await providers.evict_idle()

    assert len(providers) == 1
    device_keys = {k.split(":", 2)[1] for k in backend.keys()}
    assert len(device_keys) == 1
    assert (await client.get("/auth/session")).status_code == 200
