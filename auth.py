from infrastructure.repositories.sqlite_audit_repository import SQLiteAuditRepository
from dataclasses import dataclass
from typing import Literal, Optional
import os

ErrorKind = Literal["redirect", "transient", "hard"]


class AuthError(Exception):
    """Base class for every failure the auth core can surface to a screen."""

    code = "AuthError"
    kind: ErrorKind = "hard"


class InvalidCredentials(AuthError):
    code = "InvalidCredentials"


class AccountInactive(AuthError):
    code = "AccountInactive"


class EmailUnverified(AuthError):
    """Password matched but the email was never confirmed. Carries the email
    so the caller can route to the OTP screen without parsing the message."""

    code = "EmailUnverified"
    kind: ErrorKind = "redirect"

    def __init__(self, email: str, message: Optional[str] = None):
        self.email = email
        super().__init__(message or f"Email {email} is not verified")


class InvalidOrExpiredCode(AuthError):
    code = "InvalidOrExpiredCode"

    def __init__(self, message: str = "Invalid or expired verification code", attempts_left: Optional[int] = None):
        # 0 means the code is gone and a new one has to be requested
        self.attempts_left = attempts_left
        super().__init__(message)


class ProfileNotProvisioned(AuthError):
    code = "ProfileNotProvisioned"


class TransientGatewayError(AuthError):
    code = "TransientGatewayError"
    kind: ErrorKind = "transient"


class WeakPassword(AuthError):
    code = "WeakPassword"


class AccountAlreadyExists(AuthError):
    code = "AccountAlreadyExists"


class PermissionDenied(AuthError):
    code = "PermissionDenied"


AUTH_DB = "auth.db"
SESSION_STORAGE_KEY = "pos.auth.session"
MIN_PASSWORD_LENGTH = 6
OTP_CODE_LENGTH = 6


def get_secret(key, default=None):
    value = os.getenv(key)
    if value is None or value == "":
        return default
    return value


@dataclass(frozen=True)
class AuthSettings:
    supabase_url: str
    anon_key: str
    db_path: str = AUTH_DB
    otp_ttl_seconds: int = 600
    otp_max_attempts: int = 3
    restore_timeout_seconds: float = 0.3
    http_timeout_seconds: float = 10.0


def load_settings() -> AuthSettings:
    url = get_secret("SUPABASE_URL")
    anon_key = get_secret("SUPABASE_ANON_KEY")
    if not url or not anon_key:
        raise RuntimeError("SUPABASE_URL and SUPABASE_ANON_KEY must be set")
    return AuthSettings(
        supabase_url=url.rstrip("/"),
        anon_key=anon_key,
        db_path=get_secret("AUTH_DB", AUTH_DB),
        otp_ttl_seconds=int(get_secret("OTP_TTL_SECONDS", "600")),
        otp_max_attempts=int(get_secret("OTP_MAX_ATTEMPTS", "3")),
        restore_timeout_seconds=float(get_secret("RESTORE_TIMEOUT_SECONDS", "0.3")),
        http_timeout_seconds=float(get_secret("HTTP_TIMEOUT_SECONDS", "10")),
    )


_audit_repo = None


def get_audit_repo() -> SQLiteAuditRepository:
    global _audit_repo
    db_path = get_secret("AUTH_DB", AUTH_DB)
    if _audit_repo is None or _audit_repo.db_path != db_path:
        _audit_repo = SQLiteAuditRepository(db_path)
    return _audit_repo
