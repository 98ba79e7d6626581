import hmac
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

log = logging.getLogger(__name__)


@dataclass
class IssuedCode:
    email: str
    code: str
    expires_at: float
    attempts: int = 0


def generate_code(length: int = 6) -> str:
    # Leading digit is never zero so the code always has `length` digits
    first = str(secrets.randbelow(9) + 1)
    rest = "".join(str(secrets.randbelow(10)) for _ in range(length - 1))
    return first + rest


class OtpCodeBook:
    """Keeps the most recently issued one-time code per email.

    Issuing a new code for an email replaces the previous one, so only the
    latest code can ever verify. A code is consumed on success and dropped
    once it expires or its attempt budget is spent.
    """

    def __init__(
        self,
        ttl_seconds: int = 600,
        max_attempts: int = 3,
        code_length: int = 6,
        clock: Callable[[], float] = time.time,
        code_factory: Optional[Callable[[int], str]] = None,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_attempts = max_attempts
        self.code_length = code_length
        self._clock = clock
        self._code_factory = code_factory or generate_code
        self._codes: Dict[str, IssuedCode] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(email: str) -> str:
        return email.strip().lower()

    def issue(self, email: str) -> IssuedCode:
        with self._lock:
            self._purge_expired()
            issued = IssuedCode(
                email=email,
                code=self._code_factory(self.code_length),
                expires_at=self._clock() + self.ttl_seconds,
            )
            self._codes[self._key(email)] = issued
            log.info(f"Issued one-time code for {email} (expires in {self.ttl_seconds}s)")
            return issued

    def withdraw(self, email: str, issued: Optional[IssuedCode] = None):
        with self._lock:
            current = self._codes.get(self._key(email))
            if current is not None and (issued is None or current is issued):
                del self._codes[self._key(email)]

    def verify(self, email: str, code: str) -> bool:
        key = self._key(email)
        with self._lock:
            issued = self._codes.get(key)
            if issued is None:
                log.info(f"No one-time code on record for {email}")
                return False
            if self._clock() > issued.expires_at:
                log.info(f"One-time code for {email} expired")
                del self._codes[key]
                return False
            if issued.attempts >= self.max_attempts:
                log.info(f"Too many one-time code attempts for {email}")
                del self._codes[key]
                return False

            issued.attempts += 1
            if hmac.compare_digest(issued.code, (code or "").strip()):
                del self._codes[key]
                return True

            log.info(f"Wrong one-time code for {email} (attempt {issued.attempts}/{self.max_attempts})")
            if issued.attempts >= self.max_attempts:
                del self._codes[key]
            return False

    def remaining_attempts(self, email: str) -> int:
        with self._lock:
            issued = self._codes.get(self._key(email))
            if issued is None:
                return 0
            return max(0, self.max_attempts - issued.attempts)

    def _purge_expired(self):
        now = self._clock()
        for key in [k for k, v in self._codes.items() if now > v.expires_at]:
            del self._codes[key]
