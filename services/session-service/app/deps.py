from __future__ import annotations

import logging

from fastapi import HTTPException, Request

from .auth_provider import AuthProvider
from .identity import IdentityProviderError

log = logging.getLogger("esygrab.deps")

_PASSTHROUGH = {400, 401, 403, 404, 409, 422, 429}


async def get_provider(request: Request) -> AuthProvider:
    return await request.app.state.providers.get(request.state.device_id)


def idp_http_error(e: IdentityProviderError) -> HTTPException:
    """Identity-provider failures become user-facing 4xx, outages 502."""
    status = e.status_code if e.status_code in _PASSTHROUGH else 502
    return HTTPException(status_code=status, detail=e.message)
