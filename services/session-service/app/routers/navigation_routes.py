from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from starlette.responses import Response

from esygrab_common.roles import HOME, UnknownRoleError

from ..auth_provider import AuthProvider
from ..deps import get_provider
from ..guards import guard_redirect
from ..settings import settings

router = APIRouter(prefix="/navigate", tags=["navigation"])

# Role changes must reload the whole app, so these are plain 302s.


@router.get("/dashboard")
async def dashboard(provider: AuthProvider = Depends(get_provider)) -> Response:
    manager = provider.manager
    current = manager.get_current_session()
    if current is None:
        return RedirectResponse(HOME, status_code=302)
    return RedirectResponse(manager.redirect_to_role_dashboard(current.role), status_code=302)


@router.get("/enforce")
async def enforce(path: str = Query(default="/"), provider: AuthProvider = Depends(get_provider)) -> Response:
    target = provider.manager.enforce_role_routing(path)
    if target is None:
        return Response(status_code=204)
    return RedirectResponse(target, status_code=302)


@router.get("/guard")
async def guard(
    roles: List[str] = Query(..., min_length=1),
    provider: AuthProvider = Depends(get_provider),
) -> Response:
    try:
        target = guard_redirect(
            provider.manager.get_current_session(),
            roles,
            login_path=settings.LOGIN_PATH,
        )
    except UnknownRoleError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if target is None:
        return Response(status_code=204)
    return RedirectResponse(target, status_code=302)
