from __future__ import annotations

import logging
import time

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from starlette.responses import Response

from esygrab_common.roles import DEVICE_ID_KEY

from .activity import ActivityTracker
from .auth_provider import AuthProvider, AuthProviderRegistry
from .identity import IdentityProviderClient
from .logger import setup_logging
from .middleware.device import DeviceIdFilter, DeviceIdMiddleware
from .routers.activity_routes import router as activity_router
from .routers.auth_routes import router as auth_router
from .routers.health_routes import router as health_router
from .routers.navigation_routes import router as navigation_router
from .session_manager import SessionManager
from .settings import settings
from .storage import DeviceScopedStore, KeyValueStore, StorageError, build_store

setup_logging()
log = logging.getLogger("esygrab")

_device_filter = DeviceIdFilter()
for logger_name in ("", "uvicorn.access", "uvicorn.error", "esygrab"):
    logging.getLogger(logger_name).addFilter(_device_filter)

app = FastAPI(title="EsyGrab Session Service", default_response_class=ORJSONResponse)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(DeviceIdMiddleware)


# ----------------------------
# Request/Response logging middleware
# ----------------------------
@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    start = time.time()
    path = request.url.path

    log.info(
        "REQ method=%s path=%s query=%s client=%s",
        request.method,
        path,
        str(request.url.query),
        request.client.host if request.client else None,
    )

    try:
        resp: Response = await call_next(request)
        dur_ms = int((time.time() - start) * 1000)
        log.info("RES status=%s dur_ms=%s path=%s", resp.status_code, dur_ms, path)
        return resp
    except Exception:
        dur_ms = int((time.time() - start) * 1000)
        log.exception("ERR dur_ms=%s path=%s", dur_ms, path)
        raise


def build_provider_factory(store: KeyValueStore, idp: IdentityProviderClient):
    def tracker_factory(manager: SessionManager, push) -> ActivityTracker:
        return ActivityTracker(
            manager,
            push,
            debounce_seconds=settings.ACTIVITY_DEBOUNCE_SECONDS,
            heartbeat_seconds=settings.ACTIVITY_HEARTBEAT_SECONDS,
        )

    def factory(device_id: str) -> AuthProvider:
        device_store = DeviceScopedStore(store, device_id, quota_bytes=settings.STORE_QUOTA_BYTES)
        try:
            if device_store.get_item(DEVICE_ID_KEY) is None:
                device_store.set_item(DEVICE_ID_KEY, device_id)
        except StorageError as e:
            log.error("device id not persisted device=%s err=%s", device_id, e)

        manager = SessionManager(
            device_store,
            ttl_seconds=settings.ROLE_SESSION_TTL_SECONDS,
            idle_timeout_seconds=settings.IDLE_TIMEOUT_SECONDS,
        )
        return AuthProvider(
            manager,
            idp.fork(),
            tracker_factory=tracker_factory,
            refresh_margin_seconds=settings.TOKEN_REFRESH_MARGIN_SECONDS,
        )

    return factory


def forget_anonymous_device(store: KeyValueStore):
    """Drop the device id record of an evicted device that never kept anything else."""
    def on_evict(device_id: str, provider: AuthProvider) -> None:
        device_store = DeviceScopedStore(store, device_id)
        try:
            if device_store.keys() == [DEVICE_ID_KEY]:
                device_store.remove_item(DEVICE_ID_KEY)
        except StorageError as e:
            log.error("device record not removed device=%s err=%s", device_id, e)

    return on_evict


def build_registry(store: KeyValueStore, idp: IdentityProviderClient) -> AuthProviderRegistry:
    return AuthProviderRegistry(
        build_provider_factory(store, idp),
        idle_seconds=settings.PROVIDER_IDLE_SECONDS,
        session_idle_seconds=settings.IDLE_TIMEOUT_SECONDS,
        on_evict=forget_anonymous_device(store),
    )


@app.on_event("startup")
async def startup():
    log.info(
        "startup begin store=%s idp=%s ttl=%ss idle=%ss",
        settings.STORE_BACKEND,
        settings.idp_base,
        settings.ROLE_SESSION_TTL_SECONDS,
        settings.IDLE_TIMEOUT_SECONDS,
    )

    store = build_store(settings.STORE_BACKEND, path=settings.STORE_PATH)
    idp = IdentityProviderClient(
        base_url=settings.idp_base,
        api_key=settings.IDP_API_KEY,
        timeout=settings.IDP_TIMEOUT_SECONDS,
        profiles_table=settings.IDP_PROFILES_TABLE,
        activity_rpc=settings.IDP_ACTIVITY_RPC,
        service_key=settings.IDP_SERVICE_ROLE_KEY or None,
    )

    app.state.store = store
    app.state.idp = idp
    app.state.providers = build_registry(store, idp)

    log.info("startup complete")


@app.on_event("shutdown")
async def shutdown():
    providers = getattr(app.state, "providers", None)
    if providers is not None:
        await providers.close_all()


app.include_router(health_router)
app.include_router(auth_router)
app.include_router(activity_router)
app.include_router(navigation_router)


if __name__ == "__main__":
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=settings.PORT,
        reload=True,
    )
