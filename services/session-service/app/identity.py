from __future__ import annotations

import inspect
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import ValidationError

from .models import AuthEvent, AuthUser, ProviderSession

log = logging.getLogger("esygrab.idp")

AuthListener = Callable[[AuthEvent, Optional[ProviderSession]], Any]


class IdentityProviderError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class Subscription:
    def __init__(self, listeners: List[AuthListener], callback: AuthListener) -> None:
        self._listeners = listeners
        self._callback = callback

    def unsubscribe(self) -> None:
        try:
            self._listeners.remove(self._callback)
        except ValueError:
            pass


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    if isinstance(body, dict):
        for k in ("error_description", "msg", "message", "error"):
            if body.get(k):
                return str(body[k])
    return f"HTTP {resp.status_code}"


class IdentityProviderClient:
    """
    Async client for a GoTrue (auth) + PostgREST (tables/rpc) backend.

    The client keeps no session of its own; callers pass tokens in. Auth state
    listeners are notified after sign-in, refresh and sign-out calls.
    """

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        profiles_table: str = "profiles",
        activity_rpc: str = "update_user_activity",
        service_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.profiles_table = profiles_table
        self.activity_rpc = activity_rpc
        self.service_key = service_key
        self._transport = transport
        self._listeners: List[AuthListener] = []

    def fork(self) -> "IdentityProviderClient":
        """Same backend, own listener list (one per device)."""
        return IdentityProviderClient(
            base_url=self.base_url,
            api_key=self.api_key,
            timeout=self.timeout,
            profiles_table=self.profiles_table,
            activity_rpc=self.activity_rpc,
            service_key=self.service_key,
            transport=self._transport,
        )

    # ------------------------------------------------------------------
    # Auth state events
    # ------------------------------------------------------------------

    def on_auth_state_change(self, callback: AuthListener) -> Subscription:
        self._listeners.append(callback)
        return Subscription(self._listeners, callback)

    async def _emit(self, event: AuthEvent, session: Optional[ProviderSession]) -> None:
        for cb in list(self._listeners):
            try:
                result = cb(event, session)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                log.exception("auth listener failed event=%s", event.value)

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _headers(self, access_token: Optional[str] = None) -> Dict[str, str]:
        h = {"apikey": self.api_key, "Content-Type": "application/json"}
        h["Authorization"] = f"Bearer {access_token or self.api_key}"
        return h

    async def _request(
        self,
        method: str,
        path: str,
        *,
        access_token: Optional[str] = None,
        json: Any = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.request(
                    method, url, headers=self._headers(access_token), json=json, params=params
                )
        except httpx.HTTPError as e:
            log.error("idp request failed method=%s path=%s err=%s", method, path, e)
            raise IdentityProviderError(f"identity provider unreachable: {e}") from e

        log.debug("idp http method=%s path=%s status=%s", method, path, resp.status_code)
        if resp.status_code >= 400:
            msg = _error_message(resp)
            log.warning("idp error method=%s path=%s status=%s msg=%s", method, path, resp.status_code, msg)
            raise IdentityProviderError(msg, status_code=resp.status_code)

        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise IdentityProviderError("identity provider returned invalid JSON", resp.status_code) from e

    @staticmethod
    def _session_from(data: Any) -> ProviderSession:
        if isinstance(data, dict) and data.get("expires_at") is None and data.get("expires_in"):
            data = {**data, "expires_at": int(time.time()) + int(data["expires_in"])}
        try:
            return ProviderSession.model_validate(data)
        except ValidationError as e:
            raise IdentityProviderError(f"unexpected session payload: {e.error_count()} error(s)") from e

    # ------------------------------------------------------------------
    # Auth operations
    # ------------------------------------------------------------------

    async def sign_in_with_password(self, email: str, password: str) -> ProviderSession:
        data = await self._request(
            "POST", "/auth/v1/token", params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        session = self._session_from(data)
        log.info("signed in user_id=%s", session.user.id)
        await self._emit(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_up(self, email: str, password: str, data: Optional[Dict[str, Any]] = None) -> AuthUser:
        body = await self._request(
            "POST", "/auth/v1/signup",
            json={"email": email, "password": password, "data": data or {}},
        )
        # With email confirmation on, the user comes back bare; otherwise wrapped in a session.
        if isinstance(body, dict) and "access_token" in body:
            session = self._session_from(body)
            await self._emit(AuthEvent.SIGNED_IN, session)
            return session.user
        if isinstance(body, dict) and isinstance(body.get("user"), dict):
            body = body["user"]
        try:
            return AuthUser.model_validate(body)
        except ValidationError as e:
            raise IdentityProviderError(f"unexpected sign-up payload: {e.error_count()} error(s)") from e

    async def send_otp(self, email: str, *, create_user: bool = True) -> None:
        await self._request("POST", "/auth/v1/otp", json={"email": email, "create_user": create_user})
        log.info("otp sent")

    async def verify_otp(self, email: str, token: str) -> ProviderSession:
        data = await self._request(
            "POST", "/auth/v1/verify", json={"type": "email", "email": email, "token": token}
        )
        session = self._session_from(data)
        log.info("otp verified user_id=%s", session.user.id)
        await self._emit(AuthEvent.SIGNED_IN, session)
        return session

    async def refresh_session(self, refresh_token: str) -> ProviderSession:
        data = await self._request(
            "POST", "/auth/v1/token", params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
        )
        session = self._session_from(data)
        await self._emit(AuthEvent.TOKEN_REFRESHED, session)
        return session

    async def sign_out(self, access_token: Optional[str]) -> None:
        try:
            if access_token:
                await self._request("POST", "/auth/v1/logout", access_token=access_token)
        finally:
            await self._emit(AuthEvent.SIGNED_OUT, None)

    async def sign_out_local(self) -> None:
        """Forget the session on this side only; the provider is not called."""
        await self._emit(AuthEvent.SIGNED_OUT, None)

    async def get_user(self, access_token: str) -> AuthUser:
        data = await self._request("GET", "/auth/v1/user", access_token=access_token)
        try:
            return AuthUser.model_validate(data)
        except ValidationError as e:
            raise IdentityProviderError(f"unexpected user payload: {e.error_count()} error(s)") from e

    async def reset_password(self, email: str, *, redirect_to: Optional[str] = None) -> None:
        params = {"redirect_to": redirect_to} if redirect_to else None
        await self._request("POST", "/auth/v1/recover", json={"email": email}, params=params)

    # ------------------------------------------------------------------
    # Tables / RPC
    # ------------------------------------------------------------------

    async def fetch_profile_role(self, user_id: str, access_token: str) -> Optional[str]:
        rows = await self._request(
            "GET", f"/rest/v1/{self.profiles_table}",
            access_token=access_token,
            params={"id": f"eq.{user_id}", "select": "id,role"},
        )
        if not rows:
            return None
        return (rows[0] or {}).get("role")

    async def update_user_activity(self, user_id: str, access_token: Optional[str] = None) -> None:
        await self._request(
            "POST", f"/rest/v1/rpc/{self.activity_rpc}",
            access_token=access_token,
            json={"user_id": user_id},
        )

    async def delete_profile(self, user_id: str, access_token: str) -> None:
        await self._request(
            "DELETE", f"/rest/v1/{self.profiles_table}",
            access_token=access_token,
            params={"id": f"eq.{user_id}"},
        )

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    async def delete_user(self, user_id: str) -> None:
        """Needs the service-role key; with only the anon key the provider refuses."""
        if not self.service_key:
            log.warning("delete_user without a service key user_id=%s", user_id)
        await self._request("DELETE", f"/auth/v1/admin/users/{user_id}", access_token=self.service_key)
        log.info("deleted user user_id=%s", user_id)
