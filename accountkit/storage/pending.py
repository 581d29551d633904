from __future__ import annotations

import hmac
import threading
from typing import Dict, Optional, Tuple

from accountkit.logging import get_logger, hash_identifier
from accountkit.storage.models import PendingRegistration, utcnow

CONSUME_OK = "ok"
CONSUME_MISSING = "missing"
CONSUME_MISMATCH = "mismatch"

ConsumeResult = Tuple[str, Optional[PendingRegistration]]


class MemoryPendingStore:
    """Process-local registry of unverified registrations, one per email.

    Expired entries are treated as absent and dropped the next time they are
    touched; nothing sweeps them in the background.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self._entries: Dict[str, PendingRegistration] = {}
        self._lock = threading.Lock()

    def _live(self, email: str) -> Optional[PendingRegistration]:
        entry = self._entries.get(email)
        if entry is not None and entry.is_expired(utcnow()):
            self._entries.pop(email, None)
            self.logger.info("pending_registration_expired", email_hash=hash_identifier(email))
            return None
        return entry

    async def put(self, pending: PendingRegistration) -> None:
        with self._lock:
            self._entries[pending.email] = pending

    async def get(self, email: str) -> Optional[PendingRegistration]:
        with self._lock:
            return self._live(email)

    async def consume(self, email: str, otp: str) -> ConsumeResult:
        """Remove and return the entry only when ``otp`` matches.

        The lookup, comparison and removal happen under one lock so two
        concurrent correct submissions cannot both succeed.
        """
        with self._lock:
            entry = self._live(email)
            if entry is None:
                return CONSUME_MISSING, None
            if not hmac.compare_digest(entry.otp.encode(), otp.encode()):
                return CONSUME_MISMATCH, None
            del self._entries[email]
            return CONSUME_OK, entry

    async def close(self) -> None:
        return None


__all__ = [
    "CONSUME_OK",
    "CONSUME_MISSING",
    "CONSUME_MISMATCH",
    "ConsumeResult",
    "MemoryPendingStore",
]
