"""Application layer contracts for the authentication and session lifecycle."""

from .auth_flow import AuthStateMachine
from .bootstrap import StartupResult, StartupStatus, build_auth_machine, run_startup
from .navigation import NavigationGuard, Route, destination_for, guard_screen
from .session_models import (
    Authenticated,
    AuthSnapshot,
    LoginRecord,
    PendingVerification,
    RawIdentity,
    Role,
    SessionState,
    Unauthenticated,
    Unknown,
    UserProfile,
    is_active,
    is_admin,
    is_staff,
)

__all__ = [
    "AuthSnapshot",
    "AuthStateMachine",
    "Authenticated",
    "LoginRecord",
    "NavigationGuard",
    "PendingVerification",
    "RawIdentity",
    "Role",
    "Route",
    "SessionState",
    "StartupResult",
    "StartupStatus",
    "Unauthenticated",
    "Unknown",
    "UserProfile",
    "build_auth_machine",
    "destination_for",
    "guard_screen",
    "is_active",
    "is_admin",
    "is_staff",
    "run_startup",
]
