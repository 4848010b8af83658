# app/middleware/device.py
from __future__ import annotations

import contextvars
import logging
import uuid
from typing import Optional

from itsdangerous import BadSignature, URLSafeSerializer
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from ..settings import settings

request_id_var = contextvars.ContextVar("request_id", default=None)
device_id_var = contextvars.ContextVar("device_id", default=None)


class DeviceIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        record.device_id = device_id_var.get()
        return True


def _serializer() -> URLSafeSerializer:
    return URLSafeSerializer(settings.SIGNING_SECRET, salt="esygrab-device")


def read_device_cookie(request: Request) -> Optional[str]:
    raw = request.cookies.get(settings.DEVICE_COOKIE_NAME)
    if not raw:
        return None
    try:
        return _serializer().loads(raw)
    except BadSignature:
        return None


class DeviceIdMiddleware(BaseHTTPMiddleware):
    """
    Every browser gets a signed, long-lived device id cookie; the id
    selects that browser's slice of the key/value store.
    """
    async def dispatch(self, request: Request, call_next):
        req_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        device_id = read_device_cookie(request)
        is_new = device_id is None
        if is_new:
            device_id = uuid.uuid4().hex

        request.state.request_id = req_id
        request.state.device_id = device_id
        request_id_var.set(req_id)
        device_id_var.set(device_id)

        response = await call_next(request)
        response.headers["x-request-id"] = req_id
        if is_new:
            response.set_cookie(
                key=settings.DEVICE_COOKIE_NAME,
                value=_serializer().dumps(device_id),
                httponly=True,
                secure=settings.COOKIE_SECURE,
                samesite=settings.COOKIE_SAMESITE,
                domain=settings.COOKIE_DOMAIN,
                max_age=settings.COOKIE_MAX_AGE_SECONDS,
                path="/",
            )
        return response
