from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import ORJSONResponse

from esygrab_common.roles import UnknownRoleError, parse_role

from ..auth_provider import AuthProvider
from ..deps import get_provider, idp_http_error
from ..identity import IdentityProviderError
from ..models import (
    OtpRequest,
    OtpVerify,
    PasswordResetRequest,
    PasswordSignIn,
    SessionOut,
    SignUpRequest,
)
from ..settings import settings

router = APIRouter(prefix="/auth", tags=["auth"])
log = logging.getLogger("esygrab.auth.routes")


def _session_response(provider: AuthProvider) -> ORJSONResponse:
    out = SessionOut.from_session(provider.manager.get_current_session())
    status = 200 if out.authenticated else 401
    return ORJSONResponse(out.model_dump(mode="json"), status_code=status)


# ---------------------------------------------------------------------
# Sign-in / sign-up
# ---------------------------------------------------------------------

@router.post("/sign-in")
async def sign_in(body: PasswordSignIn, provider: AuthProvider = Depends(get_provider)):
    try:
        await provider.sign_in_with_password(body.email, body.password)
    except IdentityProviderError as e:
        raise idp_http_error(e)
    return _session_response(provider)


@router.post("/sign-up")
async def sign_up(body: SignUpRequest, provider: AuthProvider = Depends(get_provider)):
    try:
        user = await provider.sign_up(body.email, body.password, body.data)
    except IdentityProviderError as e:
        raise idp_http_error(e)
    return {"user": user.model_dump(mode="json"), "authenticated": provider.is_authenticated}


@router.post("/otp")
async def send_otp(body: OtpRequest, provider: AuthProvider = Depends(get_provider)):
    try:
        await provider.send_otp(body.email)
    except IdentityProviderError as e:
        raise idp_http_error(e)
    return {"ok": True}


@router.post("/otp/verify")
async def verify_otp(body: OtpVerify, provider: AuthProvider = Depends(get_provider)):
    try:
        await provider.verify_otp(body.email, body.token)
    except IdentityProviderError as e:
        raise idp_http_error(e)
    return _session_response(provider)


@router.post("/password/reset")
async def reset_password(body: PasswordResetRequest, provider: AuthProvider = Depends(get_provider)):
    try:
        await provider.reset_password(body.email, redirect_to=settings.password_reset_url)
    except IdentityProviderError as e:
        raise idp_http_error(e)
    return {"ok": True}


# ---------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------

@router.get("/session")
async def session(provider: AuthProvider = Depends(get_provider)):
    return _session_response(provider)


@router.get("/session/{role}")
async def role_session(role: str, provider: AuthProvider = Depends(get_provider)):
    try:
        expected = parse_role(role)
    except UnknownRoleError as e:
        raise HTTPException(status_code=400, detail=str(e))
    out = SessionOut.from_session(provider.manager.validate_role_session(expected))
    return ORJSONResponse(out.model_dump(mode="json"), status_code=200 if out.authenticated else 401)


@router.post("/refresh")
async def refresh(provider: AuthProvider = Depends(get_provider)):
    try:
        refreshed = await provider.refresh_if_expiring()
    except IdentityProviderError as e:
        raise idp_http_error(e)
    return {"refreshed": refreshed, **SessionOut.from_session(provider.manager.get_current_session()).model_dump(mode="json")}


# ---------------------------------------------------------------------
# Sign-out
# ---------------------------------------------------------------------

@router.post("/sign-out")
async def sign_out(provider: AuthProvider = Depends(get_provider)):
    remote_ok = True
    try:
        await provider.sign_out()
    except IdentityProviderError as e:
        # local sessions are already gone; the provider token just lives on until it expires
        log.warning("provider sign-out failed status=%s err=%s", e.status_code, e.message)
        remote_ok = False
    return {"ok": True, "provider_signed_out": remote_ok}


# ---------------------------------------------------------------------
# Account
# ---------------------------------------------------------------------

@router.delete("/account")
async def delete_account(provider: AuthProvider = Depends(get_provider)):
    try:
        deleted = await provider.delete_account()
    except IdentityProviderError as e:
        raise idp_http_error(e)
    if not deleted:
        raise HTTPException(status_code=401, detail="not signed in")
    return {"ok": True}
