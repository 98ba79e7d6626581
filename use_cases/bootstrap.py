"""Startup orchestration: wiring, observability and session restore."""

from dataclasses import dataclass
from typing import Literal, Optional, Tuple

import auth
from use_cases.auth_flow import AuthStateMachine
from use_cases.navigation import NavigationGuard, Navigator
from use_cases.session_models import AuthSnapshot

StartupStatus = Literal["CONTINUE", "STOP"]


@dataclass(frozen=True)
class StartupResult:
    """Result contract for startup orchestration.

    CONTINUE means a session was restored and the app can open its home
    screen; STOP means the user has to sign in first.
    """

    status: StartupStatus
    planned_steps: Tuple[str, ...]
    snapshot: AuthSnapshot


def build_auth_machine(settings: Optional[auth.AuthSettings] = None) -> AuthStateMachine:
    """Wire the hosted-backend collaborators into one AuthStateMachine."""
    from infrastructure.identity.hosted_gateway import HostedCredentialGateway
    from infrastructure.identity.otp_codes import OtpCodeBook
    from infrastructure.repositories.rest_profile_repository import RestProfileRepository
    from infrastructure.repositories.sqlite_audit_repository import SQLiteAuditRepository
    from infrastructure.repositories.sqlite_session_repository import SQLiteSessionRepository
    from utils.session_manager import SessionStore

    settings = settings or auth.load_settings()

    session_repo = SQLiteSessionRepository(settings.db_path)
    session_repo.init_session_db()
    audit_repo = SQLiteAuditRepository(settings.db_path)
    audit_repo.init_audit_db()

    codes = OtpCodeBook(
        ttl_seconds=settings.otp_ttl_seconds,
        max_attempts=settings.otp_max_attempts,
        code_length=auth.OTP_CODE_LENGTH,
    )
    gateway = HostedCredentialGateway(
        settings.supabase_url, settings.anon_key, codes=codes, timeout=settings.http_timeout_seconds
    )
    profiles = RestProfileRepository(settings.supabase_url, settings.anon_key, timeout=settings.http_timeout_seconds)
    store = SessionStore(session_repo, restore_timeout=settings.restore_timeout_seconds)
    return AuthStateMachine(gateway, profiles, store, audit=audit_repo)


async def run_startup(machine: AuthStateMachine, navigator: Navigator, configure_logging: bool = True) -> StartupResult:
    """Run startup side-effects and restore any persisted session."""
    executed_steps = []

    if configure_logging:
        from infrastructure.observability import bind_sentry_user, setup_observability
        sentry_enabled = setup_observability()
        executed_steps.append("setup_observability")
        if sentry_enabled:
            machine.subscribe(bind_sentry_user)
            executed_steps.append("subscribe_sentry_user")

    # Subscribe before restoring so the splash -> first screen hop is routed too
    machine.subscribe(NavigationGuard(navigator))
    executed_steps.append("subscribe_navigation_guard")

    snapshot = await machine.start()
    executed_steps.append("restore_session")

    status: StartupStatus = "CONTINUE" if snapshot.is_authenticated else "STOP"
    return StartupResult(status=status, planned_steps=tuple(executed_steps), snapshot=snapshot)
