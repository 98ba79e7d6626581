"""Session DTOs shared across application layers."""

import time
from dataclasses import dataclass
from typing import ClassVar, Literal, Optional, Union

from auth import AuthError

Role = Literal["admin", "staff"]
SessionStatus = Literal["unknown", "unauthenticated", "pending_verification", "authenticated"]


@dataclass(frozen=True)
class RawIdentity:
    """Identity returned by the credential gateway. Knows nothing about roles."""

    id: str
    email: str
    email_verified: bool
    access_token: str
    refresh_token: str
    expires_at: float

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (time.time() if now is None else now) >= self.expires_at


@dataclass(frozen=True)
class UserProfile:
    id: str
    name: str
    email: str
    role: Role
    active: bool
    photo_url: Optional[str] = None
    username: Optional[str] = None
    phone: Optional[str] = None


@dataclass(frozen=True)
class LoginRecord:
    """Username lookup result used to turn a username into a sign-in email."""

    email: str
    active: bool


@dataclass(frozen=True)
class Unknown:
    status: ClassVar[SessionStatus] = "unknown"


@dataclass(frozen=True)
class Unauthenticated:
    status: ClassVar[SessionStatus] = "unauthenticated"


@dataclass(frozen=True)
class PendingVerification:
    email: str
    status: ClassVar[SessionStatus] = "pending_verification"


@dataclass(frozen=True)
class Authenticated:
    profile: UserProfile
    status: ClassVar[SessionStatus] = "authenticated"


SessionState = Union[Unknown, Unauthenticated, PendingVerification, Authenticated]


@dataclass(frozen=True)
class AuthSnapshot:
    """The single published value: one state variant plus the error, if any,
    raised by the operation that produced it."""

    state: SessionState
    error: Optional[AuthError] = None

    @property
    def status(self) -> SessionStatus:
        return self.state.status

    @property
    def user(self) -> Optional[UserProfile]:
        if isinstance(self.state, Authenticated):
            return self.state.profile
        return None

    @property
    def is_authenticated(self) -> bool:
        return isinstance(self.state, Authenticated)

    @property
    def is_admin(self) -> bool:
        return self.user is not None and is_admin(self.user)

    @property
    def is_staff(self) -> bool:
        return self.user is not None and is_staff(self.user)


def is_admin(user: UserProfile) -> bool:
    return user.role == "admin"


def is_staff(user: UserProfile) -> bool:
    return user.role == "staff"


def is_active(user: UserProfile) -> bool:
    return user.active is True
