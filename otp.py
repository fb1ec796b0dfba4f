"""
Email OTP verification gate.

Codes live in a process-local backend: they do not survive a restart and are
not shared between instances. Swap `MemoryOtpBackend` for an external store
when running more than one process.
"""
import logging
import secrets
import threading
import time
from typing import Callable, Dict, Optional, Set

logger = logging.getLogger(__name__)

OTP_LENGTH = 6
OTP_TTL_SECONDS = 10 * 60
MAX_ATTEMPTS = 5
SWEEP_INTERVAL_SECONDS = 10 * 60


class OtpError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class MemoryOtpBackend:
    """Dict-backed storage for OTP records plus the verified-email set."""

    def __init__(self):
        self._records: Dict[str, dict] = {}
        self._verified: Set[str] = set()

    def put(self, email: str, record: dict) -> None:
        self._records[email] = record

    def get(self, email: str) -> Optional[dict]:
        return self._records.get(email)

    def delete(self, email: str) -> None:
        self._records.pop(email, None)

    def sweep(self, now: float) -> int:
        expired = [email for email, record in self._records.items() if record["expires"] < now]
        for email in expired:
            del self._records[email]
        return len(expired)

    def add_verified(self, email: str) -> None:
        self._verified.add(email)

    def pop_verified(self, email: str) -> bool:
        if email in self._verified:
            self._verified.discard(email)
            return True
        return False


def generate_code(length: int = OTP_LENGTH) -> str:
    return f"{secrets.randbelow(10 ** length):0{length}d}"


class OtpStore:
    def __init__(self, backend=None, clock: Callable[[], float] = time.time,
                 ttl: int = OTP_TTL_SECONDS, max_attempts: int = MAX_ATTEMPTS):
        self.backend = backend if backend is not None else MemoryOtpBackend()
        self.clock = clock
        self.ttl = ttl
        self.max_attempts = max_attempts
        self._lock = threading.Lock()

    def issue(self, email: str) -> str:
        code = generate_code()
        with self._lock:
            self.backend.put(email, {"otp": code, "expires": self.clock() + self.ttl, "attempts": 0})
        return code

    def verify(self, email: str, code: str) -> None:
        """Consume a code. Raises OtpError on every failure."""
        with self._lock:
            record = self.backend.get(email)
            if record is None:
                raise OtpError("OTP not found or expired")

            if self.clock() > record["expires"]:
                self.backend.delete(email)
                raise OtpError("OTP has expired")

            record["attempts"] += 1
            if record["attempts"] > self.max_attempts:
                self.backend.delete(email)
                raise OtpError("Too many OTP verification attempts. Please request a new OTP.")
            self.backend.put(email, record)

            if not secrets.compare_digest(record["otp"], str(code)):
                raise OtpError("Invalid OTP")

            self.backend.add_verified(email)
            self.backend.delete(email)

    def consume_verified(self, email: str) -> bool:
        with self._lock:
            return self.backend.pop_verified(email)

    def sweep(self) -> int:
        with self._lock:
            removed = self.backend.sweep(self.clock())
        if removed:
            logger.info("Removed %d expired OTP records", removed)
        return removed
