import threading
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from auth import (
    AccountAlreadyExists,
    AccountInactive,
    EmailUnverified,
    InvalidCredentials,
    InvalidOrExpiredCode,
    MIN_PASSWORD_LENGTH,
    TransientGatewayError,
    WeakPassword,
)
from infrastructure.identity.otp_codes import OtpCodeBook
from use_cases.auth_flow import AuthStateMachine
from use_cases.session_models import LoginRecord, RawIdentity, UserProfile
from utils.session_manager import SessionStore

FAR_FUTURE = 4102444800.0  # 2100-01-01


class FakeAccount:
    def __init__(self, id, email, password, role="staff", active=True, verified=True, username=None,
                 banned=False, provisioned=True, name=None):
        self.id = id
        self.email = email
        self.password = password
        self.role = role
        self.active = active
        self.verified = verified
        self.username = username
        self.banned = banned
        self.provisioned = provisioned
        self.name = name or email.split("@")[0].title()

    def profile(self) -> UserProfile:
        return UserProfile(id=self.id, name=self.name, email=self.email, role=self.role,
                           active=self.active, username=self.username)


class FakeGateway:
    """In-process identity provider. Records every call that reaches it."""

    def __init__(self, accounts: List[FakeAccount], codes: Optional[OtpCodeBook] = None):
        self.roster = accounts
        self.accounts: Dict[str, FakeAccount] = {a.email: a for a in accounts}
        self.codes = codes or OtpCodeBook(code_factory=lambda n: "482910")
        self.calls: List[tuple] = []
        self.release = threading.Event()
        self.release.set()
        self.fail_sign_out = False
        self._serial = 0

    def _identity(self, account: FakeAccount) -> RawIdentity:
        self._serial += 1
        return RawIdentity(id=account.id, email=account.email, email_verified=account.verified,
                           access_token=f"access-{account.id}-{self._serial}",
                           refresh_token=f"refresh-{account.id}", expires_at=FAR_FUTURE)

    def sign_in_with_password(self, email, password):
        self.calls.append(("sign_in_with_password", email))
        self.release.wait(5)
        account = self.accounts.get(email)
        if account is None or account.password != password:
            raise InvalidCredentials("Invalid username or password.")
        if account.banned:
            raise AccountInactive("Your account is deactivated.")
        if not account.verified:
            raise EmailUnverified(email)
        return self._identity(account)

    def request_otp(self, email):
        self.calls.append(("request_otp", email))
        self.codes.issue(email)

    def verify_otp(self, email, code):
        self.calls.append(("verify_otp", email))
        if not self.codes.verify(email, code):
            raise InvalidOrExpiredCode(attempts_left=self.codes.remaining_attempts(email))
        account = self.accounts[email]
        account.verified = True
        return self._identity(account)

    def refresh(self, refresh_token):
        self.calls.append(("refresh", refresh_token))
        for account in self.accounts.values():
            if refresh_token == f"refresh-{account.id}":
                return self._identity(account)
        raise InvalidCredentials("Session expired. Please log in again.")

    def change_password(self, access_token, new_password):
        self.calls.append(("change_password", access_token))
        if len(new_password) < MIN_PASSWORD_LENGTH:
            raise WeakPassword("too short")

    def sign_out(self, access_token):
        self.calls.append(("sign_out", access_token))
        if self.fail_sign_out:
            raise TransientGatewayError("revoke failed")

    def create_identity(self, email, password, name=None):
        self.calls.append(("create_identity", email))
        if email in self.accounts:
            raise AccountAlreadyExists(f"An account for {email} already exists.")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise WeakPassword("too short")
        account = FakeAccount(f"u-{email.split('@')[0]}", email, password, verified=False,
                              provisioned=False, name=name)
        self.accounts[email] = account
        self.roster.append(account)
        return account.id

    def confirm_email(self, email):
        self.calls.append(("confirm_email", email))
        self.accounts[email].verified = True
        return True

    def count(self, name):
        return sum(1 for c in self.calls if c[0] == name)


class FakeProfiles:
    def __init__(self, accounts: List[FakeAccount]):
        self.accounts = accounts
        self.calls: List[tuple] = []

    def resolve(self, identity_id, access_token=None):
        self.calls.append(("resolve", identity_id))
        for account in self.accounts:
            if account.id == identity_id and account.provisioned:
                return account.profile()
        return None

    def find_login(self, identifier):
        self.calls.append(("find_login", identifier))
        for account in self.accounts:
            if not account.provisioned:
                continue
            if "@" in identifier:
                matched = account.email == identifier
            else:
                matched = bool(account.username) and account.username.lower() == identifier.lower()
            if matched:
                return LoginRecord(email=account.email, active=account.active)
        return None

    def create_profile(self, profile, access_token=None):
        self.calls.append(("create_profile", profile.email, access_token))
        for account in self.accounts:
            if account.email == profile.email:
                account.provisioned = True
                account.role = profile.role
                account.username = account.username or profile.username
                return account.profile()
        raise AssertionError(f"no identity for {profile.email}")


class MemoryBlobRepo:
    def __init__(self):
        self.blobs: Dict[str, str] = {}

    def get_blob(self, key):
        return self.blobs.get(key)

    def set_blob(self, key, value):
        self.blobs[key] = value

    def delete_blob(self, key):
        self.blobs.pop(key, None)


@pytest.fixture
def accounts():
    return [
        FakeAccount("u-alice", "alice@x.com", "Secret1", role="staff", username="alice"),
        FakeAccount("u-dave", "dave@x.com", "AdminPass", role="admin", username="dave"),
        FakeAccount("u-bob", "bob@x.com", "BobPass1", role="staff", verified=False),
        FakeAccount("u-carol", "carol@x.com", "CarolPass", role="staff", active=False, username="carol"),
        FakeAccount("u-erin", "erin@x.com", "ErinPass", role="staff", provisioned=False),
        FakeAccount("u-frank", "frank@x.com", "FrankPass", role="staff", active=False, verified=False,
                    username="frank"),
        FakeAccount("u-gina", "gina@x.com", "GinaPass", role="staff", username="gina"),
    ]


@pytest.fixture
def gateway(accounts):
    return FakeGateway(accounts)


@pytest.fixture
def profiles(accounts):
    return FakeProfiles(accounts)


@pytest.fixture
def blob_repo():
    return MemoryBlobRepo()


@pytest.fixture
def audit():
    return MagicMock()


@pytest.fixture
def machine(gateway, profiles, blob_repo, audit):
    return AuthStateMachine(gateway, profiles, SessionStore(blob_repo), audit=audit)
