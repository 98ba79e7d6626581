"""Maps session state to the entry screen the app should show."""

import logging
from dataclasses import dataclass, field
from typing import Dict, Literal, Optional, Protocol

from use_cases.session_models import (
    Authenticated,
    AuthSnapshot,
    PendingVerification,
    Role,
    SessionState,
    Unauthenticated,
    Unknown,
)

log = logging.getLogger(__name__)

Destination = Literal["splash", "login_chooser", "otp_verification", "staff_home", "admin_dashboard"]

SPLASH = "splash"
LOGIN_CHOOSER = "login_chooser"
OTP_VERIFICATION = "otp_verification"
STAFF_HOME = "staff_home"
ADMIN_DASHBOARD = "admin_dashboard"


@dataclass(frozen=True)
class Route:
    destination: Destination
    params: Dict[str, str] = field(default_factory=dict)
    reset_stack: bool = True


class Navigator(Protocol):
    def reset(self, route: Route) -> None:
        """Replace the whole screen stack with `route`."""


def destination_for(state: SessionState) -> Route:
    if isinstance(state, Unknown):
        return Route(SPLASH)
    if isinstance(state, Unauthenticated):
        return Route(LOGIN_CHOOSER)
    if isinstance(state, PendingVerification):
        return Route(OTP_VERIFICATION, params={"email": state.email})
    if isinstance(state, Authenticated):
        if state.profile.role == "admin":
            return Route(ADMIN_DASHBOARD)
        return Route(STAFF_HOME)
    raise TypeError(f"Unsupported session state: {state!r}")


def guard_screen(state: SessionState, required_role: Optional[Role] = None) -> Optional[Route]:
    """Redirect for a screen that needs a session (and maybe a role); None means allowed."""
    if isinstance(state, Unknown):
        return None
    if not isinstance(state, Authenticated):
        return Route(LOGIN_CHOOSER)
    if required_role == "admin" and state.profile.role != "admin":
        return Route(STAFF_HOME, reset_stack=False)
    return None


class NavigationGuard:
    """The one subscriber that turns session changes into navigation."""

    def __init__(self, navigator: Navigator):
        self._navigator = navigator
        self._current: Optional[Route] = None
        self._user_id: Optional[str] = None

    @property
    def current(self) -> Optional[Route]:
        return self._current

    def __call__(self, snapshot: AuthSnapshot) -> None:
        route = destination_for(snapshot.state)
        user_id = snapshot.user.id if snapshot.user else None
        # A different user on the same route still gets a fresh stack
        if route == self._current and user_id == self._user_id:
            return
        log.info(f"Navigating to {route.destination}")
        self._current = route
        self._user_id = user_id
        self._navigator.reset(route)
