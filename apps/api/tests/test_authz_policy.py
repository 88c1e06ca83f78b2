from __future__ import annotations

import pytest
from jose import jwt

from leadflow.buyers.policy import Caller, can_edit_buyer, can_view_all_buyers, can_view_buyer, resolve_caller
from leadflow.core.auth import AuthUser, decode_token
from leadflow.core.config import get_settings
from leadflow.core.errors import Unauthenticated

ADMIN_EMAIL = "admin@leadflow.com"


def test_role_claims_grant_admin() -> None:
    via_user_metadata = resolve_caller(AuthUser(sub="u1", user_role="admin"), admin_email=ADMIN_EMAIL)
    via_app_metadata = resolve_caller(AuthUser(sub="u2", app_role="admin"), admin_email=ADMIN_EMAIL)

    assert via_user_metadata.is_admin
    assert via_app_metadata.is_admin


def test_demo_admin_email_grants_admin_case_insensitively() -> None:
    caller = resolve_caller(AuthUser(sub="u1", email="Admin@LeadFlow.com"), admin_email=ADMIN_EMAIL)
    assert caller.is_admin


def test_regular_user_is_not_admin() -> None:
    caller = resolve_caller(
        AuthUser(sub="u1", email="agent@leadflow.com", user_role="agent"),
        admin_email=ADMIN_EMAIL,
        correlation_id="corr-1",
    )

    assert caller == Caller(user_id="u1", email="agent@leadflow.com", is_admin=False, correlation_id="corr-1")


def test_missing_identity_is_unauthenticated() -> None:
    with pytest.raises(Unauthenticated):
        resolve_caller(None, admin_email=ADMIN_EMAIL)
    with pytest.raises(Unauthenticated):
        resolve_caller(AuthUser(sub=""), admin_email=ADMIN_EMAIL)


def test_edit_and_view_rules() -> None:
    owner = Caller(user_id="owner", email=None, is_admin=False)
    stranger = Caller(user_id="stranger", email=None, is_admin=False)
    admin = Caller(user_id="admin", email=None, is_admin=True)

    assert can_edit_buyer(owner, "owner")
    assert not can_edit_buyer(stranger, "owner")
    assert can_edit_buyer(admin, "owner")

    assert can_view_buyer(owner, "owner")
    assert not can_view_buyer(stranger, "owner")
    assert can_view_all_buyers(admin)
    assert not can_view_all_buyers(owner)


def test_decode_token_reads_role_claims() -> None:
    settings = get_settings()
    token = jwt.encode(
        {
            "sub": "user-42",
            "email": "agent@leadflow.com",
            "user_metadata": {"role": "agent"},
            "app_metadata": {"role": "admin"},
        },
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )

    user = decode_token(token)

    assert user == AuthUser(sub="user-42", email="agent@leadflow.com", user_role="agent", app_role="admin")


def test_decode_token_rejects_bad_signature_and_missing_subject() -> None:
    settings = get_settings()
    forged = jwt.encode({"sub": "user-42"}, "not-the-secret", algorithm=settings.jwt_algorithm)
    anonymous = jwt.encode({"email": "x@leadflow.com"}, settings.jwt_secret, algorithm=settings.jwt_algorithm)

    with pytest.raises(Unauthenticated):
        decode_token(forged)
    with pytest.raises(Unauthenticated):
        decode_token(anonymous)
