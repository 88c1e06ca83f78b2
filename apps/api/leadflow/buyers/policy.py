from __future__ import annotations

from dataclasses import dataclass

from leadflow.core.auth import AuthUser
from leadflow.core.errors import Unauthenticated

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Caller:
    """Identity of the user behind one request, with the admin decision already made."""

    user_id: str
    email: str | None
    is_admin: bool
    correlation_id: str | None = None


def resolve_is_admin(auth_user: AuthUser, admin_email: str | None) -> bool:
    if auth_user.user_role == ADMIN_ROLE or auth_user.app_role == ADMIN_ROLE:
        return True
    if admin_email and auth_user.email:
        return auth_user.email.strip().lower() == admin_email.strip().lower()
    return False


def resolve_caller(
    auth_user: AuthUser | None,
    *,
    admin_email: str | None,
    correlation_id: str | None = None,
) -> Caller:
    if auth_user is None or not auth_user.sub:
        raise Unauthenticated()
    return Caller(
        user_id=auth_user.sub,
        email=auth_user.email,
        is_admin=resolve_is_admin(auth_user, admin_email),
        correlation_id=correlation_id,
    )


def is_admin(caller: Caller) -> bool:
    return caller.is_admin


def can_edit_buyer(caller: Caller, owner_id: str) -> bool:
    return is_admin(caller) or caller.user_id == owner_id


def can_view_all_buyers(caller: Caller) -> bool:
    return is_admin(caller)


def can_view_buyer(caller: Caller, owner_id: str) -> bool:
    return can_view_all_buyers(caller) or caller.user_id == owner_id
