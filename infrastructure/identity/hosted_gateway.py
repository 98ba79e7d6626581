import requests
import logging
import time
from typing import Optional

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
from use_cases.session_models import RawIdentity

log = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME = 3600
OTP_SUBJECT = "Your Login Verification Code"


def _error_text(resp) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or ""
    if not isinstance(body, dict):
        return str(body)
    parts = [
        str(body.get(k)) for k in ("error_code", "error", "error_description", "msg", "message")
        if body.get(k)
    ]
    return " ".join(parts)


def _identity_from_session(data: dict, fallback_email: Optional[str] = None) -> RawIdentity:
    user = data.get("user") or {}
    expires_at = data.get("expires_at")
    if expires_at is None:
        expires_at = time.time() + int(data.get("expires_in") or DEFAULT_TOKEN_LIFETIME)
    return RawIdentity(
        id=str(user.get("id", "")),
        email=user.get("email") or fallback_email or "",
        email_verified=bool(user.get("email_confirmed_at") or user.get("confirmed_at")),
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token", ""),
        expires_at=float(expires_at),
    )


class HostedCredentialGateway:
    """Credential primitives of the hosted identity service.

    Password sign-in, refresh, password update and sign-out go to the identity
    REST API. One-time codes are issued locally, mailed through the backend
    mail function and exchanged for a session through the admin auth function.
    """

    def __init__(self, base_url: str, anon_key: str, codes: Optional[OtpCodeBook] = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.anon_key = anon_key
        self.codes = codes or OtpCodeBook()
        self.timeout = timeout

    def _headers(self, access_token: Optional[str] = None):
        return {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {access_token or self.anon_key}",
            "Content-Type": "application/json",
        }

    def _call(self, method: str, path: str, json_body: dict, access_token: Optional[str] = None, params=None):
        url = f"{self.base_url}{path}"
        try:
            resp = getattr(requests, method)(
                url,
                headers=self._headers(access_token),
                json=json_body,
                params=params,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            log.error(f"❌ Network error calling {path}: {e}")
            raise TransientGatewayError(f"Identity service unreachable: {e}") from e
        if resp.status_code >= 500 or resp.status_code == 429:
            log.error(f"❌ Identity service error on {path}: {resp.status_code} {resp.text}")
            raise TransientGatewayError(f"Identity service error: HTTP {resp.status_code}")
        return resp

    def sign_in_with_password(self, email: str, password: str) -> RawIdentity:
        resp = self._call(
            "post", "/auth/v1/token", {"email": email, "password": password},
            params={"grant_type": "password"},
        )
        if resp.status_code == 200:
            identity = _identity_from_session(resp.json(), fallback_email=email)
            log.info(f"✅ Password sign-in accepted for {email}")
            return identity

        detail = _error_text(resp).lower()
        if "email_not_confirmed" in detail or "email not confirmed" in detail:
            raise EmailUnverified(email)
        if "banned" in detail or "disabled" in detail:
            raise AccountInactive("Your account is deactivated. Please contact an administrator.")
        log.info(f"⚠️ Password sign-in rejected for {email}: {resp.status_code}")
        raise InvalidCredentials("Invalid username or password.")

    def request_otp(self, email: str) -> None:
        issued = self.codes.issue(email)
        body = {
            "email": email,
            "code": issued.code,
            "subject": OTP_SUBJECT,
            "message": (
                f"Your verification code is: {issued.code}\n\n"
                f"This code will expire in {self.codes.ttl_seconds // 60} minutes.\n\n"
                "If you didn't request this code, please ignore this email."
            ),
        }
        try:
            resp = self._call("post", "/functions/v1/send-otp-email", body)
        except TransientGatewayError:
            self.codes.withdraw(email, issued)
            raise
        if resp.status_code not in (200, 201, 202):
            self.codes.withdraw(email, issued)
            log.error(f"❌ Mail function refused one-time code for {email}: {resp.status_code}")
            raise TransientGatewayError("Failed to send verification code. Please try again.")
        log.info(f"One-time code sent to {email}")

    def verify_otp(self, email: str, code: str) -> RawIdentity:
        if not self.codes.verify(email, code):
            raise InvalidOrExpiredCode(attempts_left=self.codes.remaining_attempts(email))

        # Confirming the email lets the next password sign-in skip the code
        self.confirm_email(email)

        resp = self._call("post", "/functions/v1/admin-auth-utils", {"email": email, "action": "create_session"})
        data = resp.json() if resp.status_code == 200 else {}
        if not data.get("success") or not data.get("access_token"):
            log.error(f"❌ Session creation after one-time code failed for {email}: {resp.status_code}")
            raise TransientGatewayError("Failed to create session. Please request a new code.")

        identity = _identity_from_session(data, fallback_email=email)
        return RawIdentity(
            id=identity.id,
            email=identity.email,
            email_verified=True,
            access_token=identity.access_token,
            refresh_token=identity.refresh_token,
            expires_at=identity.expires_at,
        )

    def confirm_email(self, email: str) -> bool:
        """Mark the email confirmed through the admin function. Failures are logged, not raised."""
        try:
            resp = self._call("post", "/functions/v1/admin-auth-utils", {"email": email, "action": "confirm_email"})
        except TransientGatewayError as e:
            log.warning(f"Email confirmation for {email} failed, continuing: {e}")
            return False
        if resp.status_code != 200:
            log.warning(f"Email confirmation for {email} returned {resp.status_code}: {_error_text(resp)}")
            return False
        return True

    def create_identity(self, email: str, password: str, name: Optional[str] = None) -> str:
        """Register a new identity and return its id. Any session issued for it is revoked."""
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise WeakPassword(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        resp = self._call(
            "post", "/auth/v1/signup",
            {"email": email, "password": password, "data": {"full_name": name or email.split("@")[0]}},
        )
        if resp.status_code != 200:
            detail = _error_text(resp).lower()
            if "already registered" in detail or "user_already_exists" in detail:
                raise AccountAlreadyExists(f"An account for {email} already exists.")
            if "weak_password" in detail or resp.status_code == 422:
                raise WeakPassword(_error_text(resp) or "Password does not meet the policy")
            log.error(f"❌ Sign-up for {email} rejected: {resp.status_code} {resp.text}")
            raise TransientGatewayError(f"Could not create account: HTTP {resp.status_code}")

        data = resp.json() or {}
        user = data.get("user") or data
        if not user.get("id"):
            raise TransientGatewayError("Sign-up response carried no user id")
        # The admin stays signed in; the new user signs in on their own device
        self.sign_out(data.get("access_token"))
        log.info(f"✅ Identity created for {email}")
        return str(user["id"])

    def refresh(self, refresh_token: str) -> RawIdentity:
        resp = self._call(
            "post", "/auth/v1/token", {"refresh_token": refresh_token},
            params={"grant_type": "refresh_token"},
        )
        if resp.status_code != 200:
            log.info(f"Refresh token rejected: {resp.status_code}")
            raise InvalidCredentials("Session expired. Please log in again.")
        return _identity_from_session(resp.json())

    def change_password(self, access_token: str, new_password: str) -> None:
        if len(new_password or "") < MIN_PASSWORD_LENGTH:
            raise WeakPassword(f"New password must be at least {MIN_PASSWORD_LENGTH} characters")
        resp = self._call("put", "/auth/v1/user", {"password": new_password}, access_token=access_token)
        if resp.status_code == 200:
            return
        detail = _error_text(resp).lower()
        if "weak_password" in detail or resp.status_code == 422:
            raise WeakPassword(_error_text(resp) or "Password does not meet the policy")
        raise InvalidCredentials("Session expired. Please log in again.")

    def sign_out(self, access_token: Optional[str]) -> None:
        if not access_token:
            return
        try:
            resp = self._call("post", "/auth/v1/logout", {}, access_token=access_token)
            if resp.status_code not in (200, 204):
                log.warning(f"Remote sign-out returned {resp.status_code}")
        except TransientGatewayError as e:
            log.warning(f"Remote sign-out failed, local session still cleared: {e}")
