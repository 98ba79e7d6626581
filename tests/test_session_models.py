import dataclasses

import pytest

from auth import InvalidCredentials
from use_cases.session_models import (
    Authenticated,
    AuthSnapshot,
    PendingVerification,
    RawIdentity,
    Unauthenticated,
    Unknown,
    UserProfile,
    is_active,
    is_admin,
    is_staff,
)


def _profile(role="staff", active=True):
    return UserProfile(id="u-1", name="Alice", email="alice@x.com", role=role, active=active)


def test_state_status_tags():
    assert Unknown().status == "unknown"
    assert Unauthenticated().status == "unauthenticated"
    assert PendingVerification(email="bob@x.com").status == "pending_verification"
    assert Authenticated(profile=_profile()).status == "authenticated"


def test_snapshot_derived_flags():
    snapshot = AuthSnapshot(state=Authenticated(profile=_profile("admin")))
    assert snapshot.is_authenticated is True
    assert snapshot.is_admin is True
    assert snapshot.is_staff is False
    assert snapshot.user.email == "alice@x.com"


@pytest.mark.parametrize("state", [Unknown(), Unauthenticated(), PendingVerification(email="bob@x.com")])
def test_user_only_exists_when_authenticated(state):
    snapshot = AuthSnapshot(state=state, error=InvalidCredentials("nope"))
    assert snapshot.user is None
    assert snapshot.is_authenticated is False
    assert snapshot.is_admin is False
    assert snapshot.is_staff is False


def test_models_are_immutable():
    with pytest.raises(dataclasses.FrozenInstanceError):
        _profile().role = "admin"
    with pytest.raises(dataclasses.FrozenInstanceError):
        AuthSnapshot(state=Unknown()).state = Unauthenticated()


def test_role_helpers():
    assert is_admin(_profile("admin")) is True
    assert is_staff(_profile("staff")) is True
    assert is_active(_profile(active=False)) is False


def test_identity_expiry():
    identity = RawIdentity(id="u-1", email="a@x.com", email_verified=True,
                           access_token="a", refresh_token="r", expires_at=100.0)
    assert identity.is_expired(now=99.0) is False
    assert identity.is_expired(now=100.0) is True
