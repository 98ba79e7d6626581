import asyncio
import json
import logging
import sqlite3
import time
from dataclasses import asdict
from typing import Callable, Optional

from auth import SESSION_STORAGE_KEY
from use_cases.session_models import RawIdentity

"""
SESSION STORE CONTRACT

One serialized RawIdentity blob lives under SESSION_STORAGE_KEY in the local
key/value store.

restore()
    reads the blob at process start, drops it when corrupt or expired,
    gives up after restore_timeout seconds and returns None instead of hanging
save(identity) / clear()
    idempotent; queued behind an in-flight restore() through the store lock
"""

log = logging.getLogger(__name__)

RESTORE_TIMEOUT_SECONDS = 0.3


def serialize_identity(identity: RawIdentity) -> str:
    return json.dumps(asdict(identity))


def deserialize_identity(blob: str) -> RawIdentity:
    data = json.loads(blob)
    return RawIdentity(
        id=str(data["id"]),
        email=str(data["email"]),
        email_verified=bool(data["email_verified"]),
        access_token=str(data["access_token"]),
        refresh_token=str(data.get("refresh_token") or ""),
        expires_at=float(data["expires_at"]),
    )


class SessionStore:
    def __init__(
        self,
        repo,
        key: str = SESSION_STORAGE_KEY,
        restore_timeout: float = RESTORE_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._repo = repo
        self._key = key
        self._restore_timeout = restore_timeout
        self._clock = clock
        self._lock = asyncio.Lock()

    async def restore(self) -> Optional[RawIdentity]:
        try:
            return await asyncio.wait_for(self._restore(), timeout=self._restore_timeout)
        except asyncio.TimeoutError:
            log.warning(f"⚠️ Session restore timed out after {self._restore_timeout}s; starting signed out")
            return None

    async def _restore(self) -> Optional[RawIdentity]:
        async with self._lock:
            try:
                blob = await asyncio.to_thread(self._repo.get_blob, self._key)
            except sqlite3.Error as e:
                log.error(f"❌ Session store unreadable: {e}")
                return None
            if blob is None:
                return None

            try:
                identity = deserialize_identity(blob)
            except (ValueError, KeyError, TypeError) as e:
                log.warning(f"⚠️ Discarding corrupt session blob: {e}")
                await asyncio.to_thread(self._repo.delete_blob, self._key)
                return None

            if identity.is_expired(self._clock()):
                log.info(f"Persisted session for {identity.email} has expired")
                await asyncio.to_thread(self._repo.delete_blob, self._key)
                return None
            return identity

    async def save(self, identity: RawIdentity):
        async with self._lock:
            try:
                await asyncio.to_thread(self._repo.set_blob, self._key, serialize_identity(identity))
            except sqlite3.Error as e:
                # The live session still works; it just won't survive a restart
                log.error(f"❌ Failed to persist session for {identity.email}: {e}", exc_info=True)

    async def clear(self):
        async with self._lock:
            try:
                await asyncio.to_thread(self._repo.delete_blob, self._key)
            except sqlite3.Error as e:
                log.error(f"❌ Failed to erase persisted session: {e}", exc_info=True)
