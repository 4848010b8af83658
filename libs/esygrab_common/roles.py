# libs/esygrab_common/roles.py
from __future__ import annotations

from enum import Enum
from typing import Dict, Tuple


class Role(str, Enum):
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"
    DELIVERY_PARTNER = "delivery_partner"
    CUSTOMER = "customer"
    USER = "user"


class UnknownRoleError(ValueError):
    pass


# Storage keys (one per access tier; customer/user share a key)
ADMIN_SESSION_KEY = "esygrab_admin_session"
DELIVERY_SESSION_KEY = "esygrab_delivery_session"
USER_SESSION_KEY = "esygrab_user_session"

_SESSION_KEYS: Dict[Role, str] = {
    Role.ADMIN: ADMIN_SESSION_KEY,
    Role.SUPER_ADMIN: ADMIN_SESSION_KEY,
    Role.DELIVERY_PARTNER: DELIVERY_SESSION_KEY,
    Role.CUSTOMER: USER_SESSION_KEY,
    Role.USER: USER_SESSION_KEY,
}

ADMIN_DASHBOARD = "/admin/dashboard"
DELIVERY_DASHBOARD = "/delivery-partner/dashboard"
HOME = "/"

_DASHBOARDS: Dict[Role, str] = {
    Role.ADMIN: ADMIN_DASHBOARD,
    Role.SUPER_ADMIN: ADMIN_DASHBOARD,
    Role.DELIVERY_PARTNER: DELIVERY_DASHBOARD,
    Role.CUSTOMER: HOME,
    Role.USER: HOME,
}

# getCurrentSession priority: first valid match wins
SCAN_ORDER: Tuple[Role, ...] = (
    Role.SUPER_ADMIN,
    Role.ADMIN,
    Role.DELIVERY_PARTNER,
    Role.CUSTOMER,
    Role.USER,
)

ADMIN_ROLES = frozenset({Role.ADMIN, Role.SUPER_ADMIN})
SHOPPER_ROLES = frozenset({Role.CUSTOMER, Role.USER})

# Keys written by older builds of the storefront; cleared together with role sessions
LEGACY_KEYS: Tuple[str, ...] = (
    "esygrab_session",
    "esygrab_auth_user",
    "user",
    "lastActivity",
    "guest_cart",
    "auth_redirect_url",
)

DEVICE_ID_KEY = "esygrab_device_id"


for _table_name, _table in (("session key", _SESSION_KEYS), ("dashboard", _DASHBOARDS)):
    _missing = [r.value for r in Role if r not in _table]
    if _missing:
        raise RuntimeError(f"no {_table_name} mapping for roles: {_missing}")
if set(SCAN_ORDER) != set(Role):
    raise RuntimeError("SCAN_ORDER must list every role exactly once")


def parse_role(value: "Role | str") -> Role:
    """
    Strict conversion from a stored/remote role string.

    Unknown values raise instead of silently collapsing to a default tier.
    """
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value).strip().lower())
    except ValueError:
        raise UnknownRoleError(f"unknown role: {value!r}") from None


def session_key_for(role: "Role | str") -> str:
    return _SESSION_KEYS[parse_role(role)]


def dashboard_path_for(role: "Role | str") -> str:
    return _DASHBOARDS[parse_role(role)]


def all_session_keys() -> Tuple[str, ...]:
    """Distinct role-session keys, in scan order."""
    seen: list[str] = []
    for role in SCAN_ORDER:
        key = _SESSION_KEYS[role]
        if key not in seen:
            seen.append(key)
    return tuple(seen)
