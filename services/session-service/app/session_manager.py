from __future__ import annotations

import logging
import time
from typing import Any, Callable, List, Mapping, Optional

import orjson
from pydantic import ValidationError

from esygrab_common.roles import (
    ADMIN_ROLES,
    LEGACY_KEYS,
    SCAN_ORDER,
    SHOPPER_ROLES,
    Role,
    all_session_keys,
    dashboard_path_for,
    parse_role,
    session_key_for,
)

from .models import RoleSession, SessionUser
from .storage import KeyValueStore, StorageError

log = logging.getLogger("esygrab.session")

Clock = Callable[[], int]

ADMIN_PREFIXES = ("/admin",)
DELIVERY_PREFIXES = ("/delivery-partner", "/delivery")


def system_clock() -> int:
    return int(time.time() * 1000)


class Navigator:
    """Full-page navigation target (window.location.href in a browser)."""

    def assign(self, path: str) -> None:
        raise NotImplementedError


class RecordingNavigator(Navigator):
    """Remembers recent navigations so the web layer can answer with a redirect."""

    def __init__(self, max_history: int = 20) -> None:
        self.max_history = max_history
        self.history: List[str] = []

    def assign(self, path: str) -> None:
        self.history.append(path)
        del self.history[:-self.max_history]

    @property
    def location(self) -> Optional[str]:
        return self.history[-1] if self.history else None


def _starts_with_any(path: str, prefixes: tuple[str, ...]) -> bool:
    return any(path.startswith(p) for p in prefixes)


def path_allowed_for(role: Role, path: str) -> bool:
    if role in ADMIN_ROLES:
        return _starts_with_any(path, ADMIN_PREFIXES)
    if role is Role.DELIVERY_PARTNER:
        return _starts_with_any(path, DELIVERY_PREFIXES)
    if role in SHOPPER_ROLES:
        return not (_starts_with_any(path, ADMIN_PREFIXES) or _starts_with_any(path, DELIVERY_PREFIXES))
    raise AssertionError(f"unhandled role {role!r}")


class SessionManager:
    """
    Role-partitioned session cache on top of a device KeyValueStore.

    - storing a session clears every role first (one active role per device)
    - reads enforce expiry lazily and delete stale/corrupt records
    - storage failures are logged and treated as "no session"
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        ttl_seconds: int = 24 * 60 * 60,
        idle_timeout_seconds: Optional[int] = None,
        clock: Clock = system_clock,
        navigator: Optional[Navigator] = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.store = store
        self.ttl_ms = ttl_seconds * 1000
        self.idle_timeout_ms = idle_timeout_seconds * 1000 if idle_timeout_seconds else None
        self.clock = clock
        self.navigator = navigator or RecordingNavigator()

    # ------------------------------------------------------------------
    # Storage helpers
    # ------------------------------------------------------------------

    def _remove(self, key: str) -> None:
        try:
            self.store.remove_item(key)
        except StorageError as e:
            log.error("remove failed key=%s err=%s", key, e)

    def _write(self, key: str, session: RoleSession) -> bool:
        try:
            self.store.set_item(key, orjson.dumps(session.to_record()).decode("utf-8"))
            return True
        except StorageError as e:
            log.error("write failed key=%s role=%s err=%s", key, session.role.value, e)
            return False

    def _read(self, key: str) -> Optional[RoleSession]:
        try:
            raw = self.store.get_item(key)
        except StorageError as e:
            log.error("read failed key=%s err=%s", key, e)
            return None
        if raw is None:
            return None
        try:
            return RoleSession.model_validate(orjson.loads(raw))
        except (orjson.JSONDecodeError, ValidationError) as e:
            log.error("corrupt session dropped key=%s err=%s", key, e)
            self._remove(key)
            return None

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def clear_all_sessions(self) -> None:
        for key in all_session_keys():
            self._remove(key)
        for key in LEGACY_KEYS:
            self._remove(key)

    def store_session(self, user: Any, role: "Role | str", token: Optional[str] = None) -> None:
        """
        `user` is anything with `id` and `email` (attribute or mapping).
        """
        role = parse_role(role)
        log.info("storing session role=%s", role.value)

        self.clear_all_sessions()

        now = self.clock()
        session = RoleSession(
            user=SessionUser(
                id=str(_field(user, "id")),
                email=_field(user, "email") or "",
                role=role,
                is_verified=True,
            ),
            role=role,
            expires_at=now + self.ttl_ms,
            last_activity=now,
            token=token,
        )
        key = session_key_for(role)
        if self._write(key, session):
            log.info("session stored key=%s expires_at=%s", key, session.expires_at)

    def get_session(self, role: "Role | str") -> Optional[RoleSession]:
        key = session_key_for(role)
        session = self._read(key)
        if session is None:
            return None

        now = self.clock()
        if session.is_expired(now):
            log.info("session expired key=%s expires_at=%s now=%s", key, session.expires_at, now)
            self._remove(key)
            return None
        if self.idle_timeout_ms is not None and now - session.last_activity > self.idle_timeout_ms:
            log.info("session idle key=%s last_activity=%s now=%s", key, session.last_activity, now)
            self._remove(key)
            return None

        session.last_activity = max(session.last_activity, now)
        self._write(key, session)
        return session

    def has_valid_session(self, role: "Role | str") -> bool:
        return self.get_session(role) is not None

    def get_current_session(self) -> Optional[RoleSession]:
        visited = set()
        for role in SCAN_ORDER:
            key = session_key_for(role)
            if key in visited:
                continue
            visited.add(key)
            session = self.get_session(role)
            if session is not None:
                return session
        return None

    def validate_role_session(self, expected_role: "Role | str") -> Optional[RoleSession]:
        expected = parse_role(expected_role)
        session = self.get_session(expected)
        if session is None or session.role is not expected:
            log.warning("role mismatch or no session expected=%s", expected.value)
            return None
        return session

    def touch_activity(self) -> Optional[RoleSession]:
        """Refresh lastActivity of the active session (interaction / heartbeat)."""
        return self.get_current_session()

    def redirect_to_role_dashboard(self, role: "Role | str") -> str:
        path = dashboard_path_for(role)
        log.info("redirecting role=%s to=%s", parse_role(role).value, path)
        self.navigator.assign(path)
        return path

    def enforce_role_routing(self, current_path: str) -> Optional[str]:
        session = self.get_current_session()
        if session is None:
            return None
        if path_allowed_for(session.role, current_path or "/"):
            return None
        return self.redirect_to_role_dashboard(session.role)


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)
