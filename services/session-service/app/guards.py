from __future__ import annotations

import logging
from typing import Iterable, Optional

from esygrab_common.roles import ADMIN_ROLES, Role, dashboard_path_for, parse_role

from .models import RoleSession

log = logging.getLogger("esygrab.guards")

UNAUTHORIZED_PATH = "/unauthorized"


def guard_redirect(
    session: Optional[RoleSession],
    allowed_roles: Iterable["Role | str"],
    *,
    login_path: str = "/auth",
) -> Optional[str]:
    """
    Where a protected page should send the visitor, or None to let them in.

    Staff (admins, delivery partners) land on their own dashboard;
    shoppers without access get the unauthorized page.
    """
    if session is None:
        return login_path

    allowed = {parse_role(r) for r in allowed_roles}
    role = session.role
    if role in allowed:
        return None

    log.info("access denied role=%s allowed=%s", role.value, sorted(r.value for r in allowed))
    if role in ADMIN_ROLES or role is Role.DELIVERY_PARTNER:
        return dashboard_path_for(role)
    return UNAUTHORIZED_PATH
