import requests
import logging
from typing import Optional

from auth import PermissionDenied, TransientGatewayError
from use_cases.session_models import LoginRecord, UserProfile

log = logging.getLogger(__name__)

PROFILE_COLUMNS = "id,name,email,username,role,status,phone,photo_url"


def _row_to_profile(row: dict) -> UserProfile:
    role = row.get("role")
    if role not in ("admin", "staff"):
        # Unknown roles never get admin rights
        log.warning(f"Profile {row.get('id')} has unexpected role {role!r}; treating as staff")
        role = "staff"
    return UserProfile(
        id=str(row["id"]),
        name=row.get("name") or row.get("username") or (row.get("email") or "").split("@")[0],
        email=row.get("email") or "",
        role=role,
        active=row.get("status", "active") == "active",
        photo_url=row.get("photo_url") or None,
        username=row.get("username") or None,
        phone=row.get("phone") or None,
    )


class RestProfileRepository:
    """Reads application profiles from the hosted `users` table."""

    def __init__(self, base_url: str, anon_key: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.anon_key = anon_key
        self.timeout = timeout

    def _headers(self, access_token: Optional[str] = None):
        return {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {access_token or self.anon_key}",
            "Accept": "application/json",
        }

    def _select(self, params: dict, access_token: Optional[str] = None) -> list:
        try:
            resp = requests.get(
                f"{self.base_url}/rest/v1/users",
                headers=self._headers(access_token),
                params=params,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            log.error(f"❌ Network error while reading users table: {e}")
            raise TransientGatewayError(f"Profile store unreachable: {e}") from e

        if resp.status_code >= 500:
            log.error(f"❌ Profile store error: {resp.status_code} {resp.text}")
            raise TransientGatewayError(f"Profile store error: HTTP {resp.status_code}")
        if resp.status_code != 200:
            # Row level security hides rows instead of failing; anything else is unexpected
            log.error(f"❌ Profile query rejected: {resp.status_code} {resp.text}")
            raise TransientGatewayError(f"Profile query rejected: HTTP {resp.status_code}")
        return resp.json() or []

    def resolve(self, identity_id: str, access_token: Optional[str] = None) -> Optional[UserProfile]:
        # Row level security only shows a user their own row when the call carries their token
        rows = self._select(
            {"select": PROFILE_COLUMNS, "id": f"eq.{identity_id}", "limit": 1}, access_token=access_token
        )
        if not rows:
            log.info(f"⚠️ No profile provisioned for identity {identity_id}")
            return None
        return _row_to_profile(rows[0])

    def find_login(self, identifier: str) -> Optional[LoginRecord]:
        """Look up sign-in email and status by username, or by email when the identifier has an @."""
        if "@" in identifier:
            match = {"email": f"eq.{identifier}"}
        else:
            match = {"username": f"ilike.{identifier}"}
        rows = self._select({"select": "email,status", **match, "limit": 1})
        if not rows or not rows[0].get("email"):
            return None
        return LoginRecord(email=rows[0]["email"], active=rows[0].get("status", "active") == "active")

    def create_profile(self, profile: UserProfile, access_token: Optional[str] = None) -> UserProfile:
        """Insert the `users` row for a freshly created identity.

        An existing row for the same email keeps its data and only takes the new role.
        """
        row = {
            "id": profile.id,
            "email": profile.email,
            "name": profile.name,
            "username": profile.username or profile.name,
            "phone": profile.phone,
            "role": profile.role,
            "status": "active" if profile.active else "inactive",
        }
        resp = self._write("post", {}, row, access_token)
        if resp.status_code == 409:
            log.info(f"Profile for {profile.email} already exists; updating role to {profile.role}")
            resp = self._write("patch", {"email": f"eq.{profile.email}"}, {"role": profile.role}, access_token)

        if resp.status_code in (401, 403):
            raise PermissionDenied("You are not allowed to create staff accounts.")
        if resp.status_code not in (200, 201):
            log.error(f"❌ Profile insert for {profile.email} failed: {resp.status_code} {resp.text}")
            raise TransientGatewayError(f"Profile store error: HTTP {resp.status_code}")
        rows = resp.json() or []
        if not rows:
            raise TransientGatewayError("Profile store returned no row")
        log.info(f"✅ Profile provisioned for {profile.email} ({profile.role})")
        return _row_to_profile(rows[0])

    def _write(self, method: str, params: dict, body: dict, access_token: Optional[str]):
        headers = dict(self._headers(access_token), **{"Content-Type": "application/json", "Prefer": "return=representation"})
        try:
            resp = getattr(requests, method)(
                f"{self.base_url}/rest/v1/users",
                headers=headers,
                params=params,
                json=body,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            log.error(f"❌ Network error while writing users table: {e}")
            raise TransientGatewayError(f"Profile store unreachable: {e}") from e
        if resp.status_code >= 500:
            log.error(f"❌ Profile store error: {resp.status_code} {resp.text}")
            raise TransientGatewayError(f"Profile store error: HTTP {resp.status_code}")
        return resp
