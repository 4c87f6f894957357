"""
One-time code store. Issues, expires and consumes numeric OTPs keyed by subject (document number).
At most one live code per subject; a new code replaces the previous one.
Expiry is lazy: validate/peek evict a stale record, and every generate sweeps the others.
"""
import hmac
import logging
import secrets
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterator, Protocol

from otp_gate.config import OTP_LENGTH, OTP_TTL_SECONDS
from otp_gate.errors import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OtpRecord:
    subject_id: str
    code: str
    issued_at: datetime
    expires_at: datetime

    def expired(self, now: datetime) -> bool:
        return now > self.expires_at


class OtpStore(Protocol):
    def generate(self, subject_id: str) -> str:
        ...

    def validate(self, subject_id: str, code: str) -> bool:
        ...

    def peek(self, subject_id: str) -> OtpRecord | None:
        ...

    def purge_expired(self) -> int:
        ...


class _SubjectLocks:
    """
    One lock per subject, created on demand and dropped when nobody holds or waits on it.
    Different subjects never share a lock; the guard is only held for table bookkeeping.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, list] = {}  # subject_id -> [lock, holders]

    @contextmanager
    def hold(self, subject_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(subject_id)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._entries[subject_id] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._entries[subject_id]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


class InMemoryOtpStore:
    """
    Process-local OTP store. Safe for concurrent use from the request threadpool:
    validate is a single check-and-remove under the subject's lock, so a code can be redeemed once.
    None of the operations raise for absent, expired or mismatched codes.
    """

    def __init__(
        self,
        *,
        ttl: timedelta = timedelta(seconds=OTP_TTL_SECONDS),
        length: int = OTP_LENGTH,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if length < 1:
            raise ValueError("OTP length must be at least 1")
        self._ttl = ttl
        self._length = length
        self._clock = clock
        self._records: dict[str, OtpRecord] = {}
        self._locks = _SubjectLocks()

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def _new_code(self) -> str:
        # Uniform over the full fixed-length range, e.g. 100000-999999 for 6 digits
        low = 10 ** (self._length - 1) if self._length > 1 else 0
        high = 10 ** self._length
        return str(low + secrets.randbelow(high - low))

    def generate(self, subject_id: str) -> str:
        """Issue a fresh code for subject_id, replacing any unconsumed one. Returns the code."""
        if not subject_id:
            raise ValueError("subject_id must be non-empty")
        issued_at = self._clock()
        record = OtpRecord(
            subject_id=subject_id,
            code=self._new_code(),
            issued_at=issued_at,
            expires_at=issued_at + self._ttl,
        )
        self.purge_expired()
        with self._locks.hold(subject_id):
            replaced = subject_id in self._records
            self._records[subject_id] = record
        logger.info("OTP issued for subject %s (expires %s, replaced=%s)", subject_id, record.expires_at, replaced)
        return record.code

    def validate(self, subject_id: str, code: str) -> bool:
        """
        True exactly once per issued code. Absent or expired -> False (expired records are evicted).
        Mismatch -> False and the record stays, so the subject may retry within the window.
        """
        with self._locks.hold(subject_id):
            record = self._records.get(subject_id)
            if record is None:
                logger.info("OTP validation for subject %s: no code on record", subject_id)
                return False
            if record.expired(self._clock()):
                del self._records[subject_id]
                logger.info("OTP validation for subject %s: code expired at %s", subject_id, record.expires_at)
                return False
            if not hmac.compare_digest(record.code.encode("utf-8"), (code or "").encode("utf-8")):
                logger.info("OTP validation for subject %s: mismatch", subject_id)
                return False
            del self._records[subject_id]
        logger.info("OTP validation for subject %s: accepted", subject_id)
        return True

    def peek(self, subject_id: str) -> OtpRecord | None:
        """Current record for subject_id without consuming it; evicts it if expired."""
        with self._locks.hold(subject_id):
            record = self._records.get(subject_id)
            if record is not None and record.expired(self._clock()):
                del self._records[subject_id]
                return None
            return record

    def purge_expired(self) -> int:
        """Drop every expired record. Returns the number removed."""
        now = self._clock()
        removed = 0
        for subject_id in list(self._records):
            with self._locks.hold(subject_id):
                record = self._records.get(subject_id)
                # Re-read under the lock: the subject may have been re-issued meanwhile
                if record is not None and record.expired(now):
                    del self._records[subject_id]
                    removed += 1
        if removed:
            logger.debug("Purged %s expired OTP records", removed)
        return removed

    def __len__(self) -> int:
        return len(self._records)
