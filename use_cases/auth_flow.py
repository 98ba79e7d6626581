"""Authentication flow orchestration (application layer).

AuthStateMachine owns the one published AuthSnapshot. Screens call its
coroutines and read the snapshot; only the machine replaces it.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

import auth
from auth import (
    AccountAlreadyExists,
    AccountInactive,
    AuthError,
    EmailUnverified,
    InvalidCredentials,
    PermissionDenied,
    ProfileNotProvisioned,
    TransientGatewayError,
)
from infrastructure.repositories.sqlite_audit_repository import AuditAction
from use_cases import rbac_policy
from use_cases.session_models import (
    Authenticated,
    AuthSnapshot,
    LoginRecord,
    PendingVerification,
    RawIdentity,
    SessionState,
    Unauthenticated,
    Unknown,
    UserProfile,
    is_active,
)

log = logging.getLogger(__name__)

Listener = Callable[[AuthSnapshot], None]

# Operations whose commit a later logout must override
CREDENTIAL_OPERATIONS = ("start", "sign_in_with_password", "verify_otp", "refresh_session", "provision_staff")


class CredentialGateway(Protocol):
    def sign_in_with_password(self, email: str, password: str) -> RawIdentity: ...
    def request_otp(self, email: str) -> None: ...
    def verify_otp(self, email: str, code: str) -> RawIdentity: ...
    def refresh(self, refresh_token: str) -> RawIdentity: ...
    def change_password(self, access_token: str, new_password: str) -> None: ...
    def sign_out(self, access_token: Optional[str]) -> None: ...
    def create_identity(self, email: str, password: str, name: Optional[str] = None) -> str: ...
    def confirm_email(self, email: str) -> bool: ...


class ProfileResolver(Protocol):
    def resolve(self, identity_id: str, access_token: Optional[str] = None) -> Optional[UserProfile]: ...
    def find_login(self, identifier: str) -> Optional[LoginRecord]: ...
    def create_profile(self, profile: UserProfile, access_token: Optional[str] = None) -> UserProfile: ...


class SessionPersistence(Protocol):
    async def restore(self) -> Optional[RawIdentity]: ...
    async def save(self, identity: RawIdentity) -> None: ...
    async def clear(self) -> None: ...


class AuthStateMachine:
    def __init__(self, gateway: CredentialGateway, profiles: ProfileResolver, store: SessionPersistence, audit=None):
        self._gateway = gateway
        self._profiles = profiles
        self._store = store
        self._audit = audit
        self._snapshot = AuthSnapshot(state=Unknown())
        self._identity: Optional[RawIdentity] = None
        self._listeners: List[Listener] = []
        self._in_flight: Dict[Tuple, "asyncio.Task[AuthSnapshot]"] = {}

    # --- read side ---

    @property
    def snapshot(self) -> AuthSnapshot:
        return self._snapshot

    @property
    def state(self) -> SessionState:
        return self._snapshot.state

    @property
    def is_authenticated(self) -> bool:
        return self._snapshot.is_authenticated

    @property
    def is_admin(self) -> bool:
        return self._snapshot.is_admin

    @property
    def is_staff(self) -> bool:
        return self._snapshot.is_staff

    @property
    def access_token(self) -> Optional[str]:
        """Bearer token for data-store calls made on behalf of the current user."""
        if self._identity is None or not self.is_authenticated:
            return None
        return self._identity.access_token

    def subscribe(self, listener: Listener, replay: bool = True) -> Callable[[], None]:
        self._listeners.append(listener)
        if replay:
            listener(self._snapshot)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # --- public operations ---

    async def start(self) -> AuthSnapshot:
        """Restore a persisted session once at launch."""
        return await self._single_flight(("start",), self._start)

    async def sign_in_with_password(self, identifier: str, password: str) -> AuthSnapshot:
        identifier = (identifier or "").strip()
        return await self._single_flight(
            ("sign_in_with_password", identifier.lower(), password),
            lambda: self._sign_in_with_password(identifier, password),
        )

    async def sign_in_with_otp(self, email: str) -> AuthSnapshot:
        email = (email or "").strip()
        return await self._single_flight(("sign_in_with_otp", email.lower()), lambda: self._sign_in_with_otp(email))

    async def verify_otp(self, email: str, code: str) -> AuthSnapshot:
        email = (email or "").strip()
        code = (code or "").strip()
        return await self._single_flight(("verify_otp", email.lower(), code), lambda: self._verify_otp(email, code))

    async def logout(self) -> AuthSnapshot:
        return await self._single_flight(("logout",), self._logout)

    async def change_password(self, new_password: str) -> AuthSnapshot:
        return await self._single_flight(("change_password", new_password), lambda: self._change_password(new_password))

    async def refresh_session(self) -> AuthSnapshot:
        return await self._single_flight(("refresh_session",), self._refresh_session)

    async def provision_staff(self, email: str, password: str, name: Optional[str] = None, role: str = "staff",
                              phone: Optional[str] = None, auto_sign_in: bool = False) -> AuthSnapshot:
        """Admin-only: create the identity and the `users` row for a new team member.

        With auto_sign_in the new account replaces the current session on this device.
        """
        if role not in ("admin", "staff"):
            raise ValueError(f"Unsupported role: {role!r}")
        email = (email or "").strip()
        return await self._single_flight(
            ("provision_staff", email.lower()),
            lambda: self._provision_staff(email, password, name, role, phone, auto_sign_in),
        )

    async def handle_session_expired(self) -> AuthSnapshot:
        """Called when the backend rejects the current token."""
        identity, self._identity = self._identity, None
        await self._store.clear()
        self._audit_event(AuditAction.SESSION_EXPIRED, email=identity.email if identity else None, result="expired")
        return self._commit(Unauthenticated())

    # --- flows ---

    async def _start(self) -> AuthSnapshot:
        if not isinstance(self.state, Unknown):
            return self._snapshot

        identity = await self._store.restore()
        if identity is None:
            return self._commit(Unauthenticated())
        if not identity.email_verified:
            await self._store.clear()
            return self._commit(Unauthenticated())

        try:
            snapshot = await self._establish(identity, method="restore")
        except TransientGatewayError as e:
            # Keep the persisted blob so the next launch can try again
            log.warning(f"⚠️ Could not resolve profile for restored session: {e}")
            return self._commit(Unauthenticated(), e)
        if snapshot.is_authenticated:
            self._audit_event(AuditAction.SESSION_RESTORED, profile=snapshot.user)
        return snapshot

    async def _sign_in_with_password(self, identifier: str, password: str) -> AuthSnapshot:
        try:
            email = await self._email_for(identifier)
            identity = await asyncio.to_thread(self._gateway.sign_in_with_password, email, password)
        except EmailUnverified as e:
            return await self._pending_verification(e)
        except TransientGatewayError as e:
            return self._keep_state(e, AuditAction.LOGIN_FAIL, identifier, method="password")
        except (InvalidCredentials, AccountInactive) as e:
            await self._drop_session()
            self._audit_event(AuditAction.LOGIN_FAIL, email=identifier, result="deny", method="password", error_code=e.code)
            return self._commit(Unauthenticated(), e)

        if not identity.email_verified:
            await self._sign_out_quietly(identity)
            return await self._pending_verification(EmailUnverified(identity.email))

        return await self._establish_or_keep(identity, method="password")

    async def _sign_in_with_otp(self, email: str) -> AuthSnapshot:
        try:
            await asyncio.to_thread(self._gateway.request_otp, email)
        except TransientGatewayError as e:
            return self._keep_state(e, AuditAction.OTP_FAIL, email, method="otp_request")
        self._audit_event(AuditAction.OTP_REQUESTED, email=email)
        return self._commit(self.state)

    async def _verify_otp(self, email: str, code: str) -> AuthSnapshot:
        try:
            identity = await asyncio.to_thread(self._gateway.verify_otp, email, code)
        except AuthError as e:
            return self._keep_state(e, AuditAction.OTP_FAIL, email, method="otp")
        self._audit_event(AuditAction.OTP_VERIFIED, email=email)
        return await self._establish_or_keep(identity, method="otp")

    async def _logout(self) -> AuthSnapshot:
        pending = [t for key, t in self._in_flight.items() if key[0] in CREDENTIAL_OPERATIONS]
        if pending:
            # Let pending sign-ins land first so this teardown is the last write
            await asyncio.wait(pending)

        identity, self._identity = self._identity, None
        profile = self._snapshot.user
        if identity is not None:
            await self._sign_out_quietly(identity)
        await self._store.clear()
        self._audit_event(AuditAction.LOGOUT, profile=profile, email=identity.email if identity else None)
        return self._commit(Unauthenticated())

    async def _change_password(self, new_password: str) -> AuthSnapshot:
        identity = self._identity
        if identity is None or not self.is_authenticated:
            return self._commit(self.state, InvalidCredentials("You must be logged in to change your password."))
        try:
            await asyncio.to_thread(self._gateway.change_password, identity.access_token, new_password)
        except AuthError as e:
            self._audit_event(AuditAction.PASSWORD_CHANGE, profile=self._snapshot.user, result="deny", error_code=e.code)
            return self._commit(self.state, e)
        self._audit_event(AuditAction.PASSWORD_CHANGE, profile=self._snapshot.user)
        return self._commit(self.state)

    async def _refresh_session(self) -> AuthSnapshot:
        identity = self._identity
        if identity is None:
            return self._snapshot
        try:
            fresh = await asyncio.to_thread(self._gateway.refresh, identity.refresh_token)
        except InvalidCredentials:
            return await self.handle_session_expired()
        except TransientGatewayError as e:
            return self._commit(self.state, e)
        try:
            return await self._establish(fresh, method="refresh")
        except TransientGatewayError as e:
            self._identity = fresh
            await self._store.save(fresh)
            return self._commit(self.state, e)

    async def _provision_staff(self, email: str, password: str, name: Optional[str], role: str,
                               phone: Optional[str], auto_sign_in: bool) -> AuthSnapshot:
        admin = self._snapshot.user
        if not rbac_policy.enforce(admin, "MANAGE_STAFF"):
            return self._commit(self.state, PermissionDenied("Only administrators can create staff accounts."))

        name = name or email.split("@")[0]
        try:
            identity_id = await asyncio.to_thread(self._gateway.create_identity, email, password, name)
            profile = UserProfile(id=identity_id, name=name, email=email, role=role, active=True,
                                  username=name, phone=phone)
            await asyncio.to_thread(self._profiles.create_profile, profile, access_token=self.access_token)
        except AccountAlreadyExists as e:
            if auto_sign_in:
                return await self._sign_in_with_password(email, password)
            return self._keep_state(e, AuditAction.STAFF_PROVISIONED, email, method="sign_up")
        except AuthError as e:
            return self._keep_state(e, AuditAction.STAFF_PROVISIONED, email, method="sign_up")

        # Staff created by an admin skip the first-login code
        await asyncio.to_thread(self._gateway.confirm_email, email)
        self._audit_event(AuditAction.STAFF_PROVISIONED, profile=admin, email=email, method="sign_up", role=role)
        if auto_sign_in:
            return await self._sign_in_with_password(email, password)
        return self._commit(self.state)

    # --- helpers ---

    async def _email_for(self, identifier: str) -> str:
        record = await asyncio.to_thread(self._profiles.find_login, identifier)
        if "@" in identifier:
            # No row yet: the gateway still decides, and the profile check fails it as unprovisioned
            if record is not None and not record.active:
                raise AccountInactive("Your account is deactivated. Please contact an administrator.")
            return identifier
        if record is None:
            raise InvalidCredentials("Username not found. Please check your username or contact admin.")
        if not record.active:
            raise AccountInactive("Your account is deactivated. Please contact an administrator.")
        return record.email

    async def _pending_verification(self, error: EmailUnverified) -> AuthSnapshot:
        await self._drop_session()
        self._audit_event(AuditAction.LOGIN_PENDING_VERIFICATION, email=error.email, result="pending", method="password")
        return self._commit(PendingVerification(email=error.email), error)

    async def _establish_or_keep(self, identity: RawIdentity, method: str) -> AuthSnapshot:
        try:
            return await self._establish(identity, method=method)
        except TransientGatewayError as e:
            await self._sign_out_quietly(identity)
            return self._keep_state(e, AuditAction.LOGIN_FAIL, identity.email, method=method)

    async def _establish(self, identity: RawIdentity, method: str) -> AuthSnapshot:
        """Resolve the profile for a fresh identity and commit the outcome.

        The Authenticated commit already carries the profile. A missing or
        inactive profile fails closed. TransientGatewayError propagates.
        """
        profile = await asyncio.to_thread(self._profiles.resolve, identity.id, access_token=identity.access_token)

        failure: Optional[AuthError] = None
        if profile is None:
            failure = ProfileNotProvisioned("Your account has not been set up yet. Please contact an administrator.")
        elif not is_active(profile):
            failure = AccountInactive("Your account is deactivated. Please contact an administrator.")

        if failure is not None:
            await self._sign_out_quietly(identity)
            await self._drop_session()
            self._audit_event(AuditAction.LOGIN_FAIL, email=identity.email, result="deny", method=method, error_code=failure.code)
            return self._commit(Unauthenticated(), failure)

        previous = self._identity
        if previous is not None and previous.id != identity.id:
            await self._sign_out_quietly(previous)
        self._identity = identity
        await self._store.save(identity)
        if method != "restore":
            self._audit_event(AuditAction.LOGIN_SUCCESS, profile=profile, method=method)
        return self._commit(Authenticated(profile=profile))

    async def _drop_session(self):
        identity, self._identity = self._identity, None
        if identity is not None:
            await self._sign_out_quietly(identity)
        await self._store.clear()

    async def _sign_out_quietly(self, identity: RawIdentity):
        try:
            await asyncio.to_thread(self._gateway.sign_out, identity.access_token)
        except AuthError as e:
            log.warning(f"Remote sign-out for {identity.email} failed: {e}")

    def _keep_state(self, error: AuthError, action: AuditAction, email: str, method: str) -> AuthSnapshot:
        self._audit_event(action, email=email, result="error" if error.kind == "transient" else "deny",
                          method=method, error_code=error.code)
        return self._commit(self.state, error)

    async def _single_flight(self, key: Tuple, factory: Callable[[], Awaitable[AuthSnapshot]]) -> AuthSnapshot:
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._in_flight[key] = task

            def _forget(done):
                if self._in_flight.get(key) is done:
                    del self._in_flight[key]

            task.add_done_callback(_forget)
        else:
            log.debug(f"Joining in-flight {key[0]}")
        # Callers may go away; the operation itself always runs to completion
        return await asyncio.shield(task)

    def _commit(self, state: SessionState, error: Optional[AuthError] = None) -> AuthSnapshot:
        previous = self._snapshot
        snapshot = AuthSnapshot(state=state, error=error)
        self._snapshot = snapshot
        if previous.status != snapshot.status:
            log.info(f"Session state {previous.status} -> {snapshot.status}")
        if error is not None:
            log.info(f"Auth operation surfaced {error.code}: {error}")
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                # A broken subscriber must not undo a committed session change
                log.error(f"Session listener {listener!r} failed: {e}", exc_info=True)
        return snapshot

    def _audit_event(self, action: AuditAction, profile: Optional[UserProfile] = None,
                     email: Optional[str] = None, result: str = "success", **metadata):
        audit = self._audit if self._audit is not None else auth.get_audit_repo()
        audit.log_action(
            action,
            actor_id=profile.id if profile else None,
            actor_role=profile.role if profile else None,
            target_email=email or (profile.email if profile else None),
            metadata=metadata or None,
            result=result,
        )
