from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from esygrab_common.roles import Role, UnknownRoleError, parse_role

from .activity import ActivityTracker, Push
from .identity import IdentityProviderClient, IdentityProviderError, Subscription
from .models import AuthEvent, AuthUser, ProviderSession, SessionUser
from .session_manager import SessionManager

log = logging.getLogger("esygrab.auth")

TrackerFactory = Callable[[SessionManager, Push], ActivityTracker]

DEFAULT_ROLE = Role.CUSTOMER


class AuthProvider:
    """
    Auth state for one device.

    Identity-provider calls are delegated to `idp`; every SIGNED_IN /
    TOKEN_REFRESHED event resolves the user's role and writes a role
    session, SIGNED_OUT wipes local sessions. Errors from the identity
    provider propagate to the caller.
    """

    def __init__(
        self,
        manager: SessionManager,
        idp: IdentityProviderClient,
        *,
        tracker_factory: Optional[TrackerFactory] = None,
        refresh_margin_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.manager = manager
        self.idp = idp
        self.tracker_factory = tracker_factory or (lambda m, push: ActivityTracker(m, push))
        self.refresh_margin_seconds = refresh_margin_seconds
        self.clock = clock

        self.user: Optional[SessionUser] = None
        self.provider_session: Optional[ProviderSession] = None
        self.loading = True
        self.tracker: Optional[ActivityTracker] = None
        # token of a session restored from storage, until the provider issues a new one
        self._stored_token: Optional[str] = None

        self._alive = True
        self._subscription: Subscription = idp.on_auth_state_change(self._on_auth_event)

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    @property
    def access_token(self) -> Optional[str]:
        if self.provider_session is not None:
            return self.provider_session.access_token
        return self._stored_token

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Restore a stored session, confirming its token with the provider."""
        try:
            session = self.manager.get_current_session()
            if session is None:
                return
            if not session.token:
                self.user = session.user
                await self._start_tracker()
                return
            try:
                auth_user = await self.idp.get_user(session.token)
            except IdentityProviderError as e:
                log.warning("stored session rejected by provider status=%s err=%s", e.status_code, e.message)
                self.manager.clear_all_sessions()
                return
            if not self._alive:
                return
            if auth_user.id != session.user.id:
                log.warning("stored session belongs to another user; clearing")
                self.manager.clear_all_sessions()
                return
            self.user = session.user
            self._stored_token = session.token
            await self._start_tracker()
        finally:
            self.loading = False

    async def close(self) -> None:
        self._alive = False
        self._subscription.unsubscribe()
        await self._stop_tracker()

    # ------------------------------------------------------------------
    # Auth operations
    # ------------------------------------------------------------------

    async def sign_in_with_password(self, email: str, password: str) -> SessionUser:
        self.manager.clear_all_sessions()
        await self.idp.sign_in_with_password(email, password)
        return self._require_user()

    async def send_otp(self, email: str) -> None:
        await self.idp.send_otp(email, create_user=True)

    async def verify_otp(self, email: str, token: str) -> SessionUser:
        self.manager.clear_all_sessions()
        await self.idp.verify_otp(email, token)
        return self._require_user()

    async def sign_up(self, email: str, password: str, data: Optional[Dict[str, Any]] = None) -> AuthUser:
        self.manager.clear_all_sessions()
        return await self.idp.sign_up(email, password, data)

    async def reset_password(self, email: str, redirect_to: Optional[str] = None) -> None:
        await self.idp.reset_password(email, redirect_to=redirect_to)

    async def sign_out(self) -> None:
        token = self.access_token
        await self._stop_tracker()
        await self.idp.sign_out(token)

    async def delete_account(self) -> bool:
        """
        Delete the profile row, then the auth user, then forget the device's
        sessions. Returns False when nobody is signed in. If either provider
        call fails the error propagates and local state is left as it was.
        """
        user, token = self.user, self.access_token
        if user is None or not token:
            return False
        self.loading = True
        try:
            await self.idp.delete_profile(user.id, token)
            await self.idp.delete_user(user.id)
            log.info("account deleted user_id=%s", user.id)
            await self.idp.sign_out_local()
        finally:
            self.loading = False
        return True

    async def refresh_if_expiring(self) -> bool:
        """Refresh the provider token when it expires within the margin."""
        ps = self.provider_session
        if ps is None or not ps.refresh_token:
            return False
        remaining = (ps.expires_at or 0) - int(self.clock())
        if remaining >= self.refresh_margin_seconds:
            return False
        log.info("token expiring in %ss, refreshing", remaining)
        await self.idp.refresh_session(ps.refresh_token)
        return True

    async def record_activity(self, event_type: str) -> bool:
        if self.tracker is None:
            return False
        return self.tracker.record_interaction(event_type)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_user(self) -> SessionUser:
        if self.user is None:
            raise IdentityProviderError("signed in, but the user profile could not be loaded", status_code=403)
        return self.user

    async def _on_auth_event(self, event: AuthEvent, session: Optional[ProviderSession]) -> None:
        if not self._alive:
            log.debug("dropping auth event=%s after close", event.value)
            return
        log.info("auth state change event=%s", event.value)
        if event in (AuthEvent.SIGNED_IN, AuthEvent.TOKEN_REFRESHED) and session is not None:
            await self._set_auth_user(session)
        elif event is AuthEvent.SIGNED_OUT:
            await self._stop_tracker()
            self.manager.clear_all_sessions()
            self.user = None
            self.provider_session = None
            self._stored_token = None

    async def _set_auth_user(self, session: ProviderSession) -> None:
        try:
            raw_role = await self.idp.fetch_profile_role(session.user.id, session.access_token)
        except IdentityProviderError as e:
            log.error("profile fetch failed user_id=%s err=%s", session.user.id, e.message)
            self.user = None
            return
        if not self._alive:
            return

        try:
            role = parse_role(raw_role) if raw_role else DEFAULT_ROLE
        except UnknownRoleError as e:
            log.error("rejecting sign-in user_id=%s err=%s", session.user.id, e)
            self.user = None
            return

        self.user = SessionUser(id=session.user.id, email=session.user.email or "", role=role, is_verified=True)
        self.provider_session = session
        self._stored_token = None
        self.manager.store_session(self.user, role, token=session.access_token)
        await self._start_tracker()

    async def _push_activity(self) -> None:
        user = self.user
        if user is None:
            return
        await self.idp.update_user_activity(user.id, self.access_token)

    async def _start_tracker(self) -> None:
        if self.tracker is not None:
            return
        tracker = self.tracker_factory(self.manager, self._push_activity)
        self.tracker = tracker
        await tracker.start()

    async def _stop_tracker(self) -> None:
        tracker, self.tracker = self.tracker, None
        if tracker is not None:
            await tracker.stop()


class _Entry:
    __slots__ = ("provider", "ready", "last_used")

    def __init__(self, provider: AuthProvider, ready: "asyncio.Future[None]", last_used: float) -> None:
        self.provider = provider
        self.ready = ready
        self.last_used = last_used


class AuthProviderRegistry:
    """
    One AuthProvider per device id, created on first use.

    Initialization (an identity-provider round trip) runs as a task outside
    the registry's bookkeeping; concurrent callers for the same device await
    the same task, other devices never wait on it.

    Devices with nobody signed in are evicted after `idle_seconds` without a
    request, signed-in ones after `session_idle_seconds`. `on_evict` runs for
    evicted devices after their provider is closed.
    """

    def __init__(
        self,
        factory: Callable[[str], AuthProvider],
        *,
        idle_seconds: float = 15 * 60,
        session_idle_seconds: float = 24 * 60 * 60,
        sweep_every_seconds: float = 60.0,
        on_evict: Optional[Callable[[str, AuthProvider], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._factory = factory
        self.idle_seconds = idle_seconds
        self.session_idle_seconds = session_idle_seconds
        self.sweep_every_seconds = sweep_every_seconds
        self._on_evict = on_evict
        self._clock = clock
        self._providers: Dict[str, _Entry] = {}
        self._last_sweep = clock()

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._providers

    def __len__(self) -> int:
        return len(self._providers)

    async def get(self, device_id: str) -> AuthProvider:
        now = self._clock()
        entry = self._providers.get(device_id)
        if entry is None:
            provider = self._factory(device_id)
            entry = _Entry(provider, asyncio.ensure_future(provider.initialize()), now)
            self._providers[device_id] = entry
        entry.last_used = now

        if now - self._last_sweep >= self.sweep_every_seconds:
            self._last_sweep = now
            await self.evict_idle(keep=device_id)

        await asyncio.shield(entry.ready)
        return entry.provider

    async def evict_idle(self, *, keep: Optional[str] = None) -> List[str]:
        now = self._clock()
        stale: List[str] = []
        for device_id, entry in self._providers.items():
            if device_id == keep or not entry.ready.done():
                continue
            limit = self.session_idle_seconds if entry.provider.is_authenticated else self.idle_seconds
            if now - entry.last_used >= limit:
                stale.append(device_id)

        for device_id in stale:
            entry = self._providers.pop(device_id)
            await self._close(entry)
            if self._on_evict is not None:
                try:
                    self._on_evict(device_id, entry.provider)
                except Exception:
                    log.exception("on_evict failed device=%s", device_id)
        if stale:
            log.info("evicted idle providers count=%d remaining=%d", len(stale), len(self._providers))
        return stale

    async def release(self, device_id: str) -> None:
        entry = self._providers.pop(device_id, None)
        if entry is not None:
            await self._close(entry)

    async def close_all(self) -> None:
        entries = list(self._providers.values())
        self._providers.clear()
        for entry in entries:
            await self._close(entry)

    @staticmethod
    async def _close(entry: _Entry) -> None:
        if not entry.ready.done():
            entry.ready.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await entry.ready
        await entry.provider.close()
