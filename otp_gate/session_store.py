"""
Session persistence: the get/create/save/invalidate contract the auth flow relies on,
with an in-memory backend (single process, tests) and a SQLAlchemy backend.
TTL is sliding: every successful get or save pushes expiry to now + ttl.
Backends raise SessionStoreError when the underlying store fails; absence is never an error.
"""
import logging
import secrets
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from otp_gate.config import SESSION_TTL_SECONDS
from otp_gate.errors import SessionStoreError, utc_now
from otp_gate.models import WebSessionRecord
from otp_gate.session_state import SessionState, WebSession

logger = logging.getLogger(__name__)


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


class SessionStore(Protocol):
    def create(self) -> WebSession:
        ...

    def get(self, session_id: str) -> WebSession | None:
        ...

    def save(self, session: WebSession) -> None:
        ...

    def invalidate(self, session_id: str) -> None:
        ...

    def purge_expired(self) -> int:
        ...


class InMemorySessionStore:
    """Dict-backed store for a single process. Entries are copied in and out so callers never share state."""

    def __init__(
        self,
        *,
        ttl: timedelta = timedelta(seconds=SESSION_TTL_SECONDS),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[WebSession, datetime]] = {}  # id -> (snapshot, expires_at)

    def create(self) -> WebSession:
        now = self._clock()
        return WebSession(id=new_session_id(), created_at=now, last_accessed_at=now)

    def get(self, session_id: str) -> WebSession | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None:
                return None
            snapshot, expires_at = entry
            if now > expires_at:
                del self._entries[session_id]
                return None
            snapshot.last_accessed_at = now
            self._entries[session_id] = (snapshot, now + self._ttl)
            return _copy(snapshot)

    def save(self, session: WebSession) -> None:
        now = self._clock()
        session.last_accessed_at = now
        session.is_new = False
        with self._lock:
            self._entries[session.id] = (_copy(session), now + self._ttl)

    def invalidate(self, session_id: str) -> None:
        with self._lock:
            self._entries.pop(session_id, None)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [sid for sid, (_, expires_at) in self._entries.items() if now > expires_at]
            for sid in expired:
                del self._entries[sid]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _copy(session: WebSession) -> WebSession:
    return WebSession(
        id=session.id,
        created_at=session.created_at,
        last_accessed_at=session.last_accessed_at,
        attributes=dict(session.attributes),
        is_new=session.is_new,
    )


def _naive_utc(value: datetime) -> datetime:
    # Columns hold naive UTC (SQLite drops tzinfo anyway)
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlSessionStore:
    """Sessions in the web_sessions table. Each call uses its own short DB session."""

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        ttl: timedelta = timedelta(seconds=SESSION_TTL_SECONDS),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._ttl = ttl
        self._clock = clock

    def create(self) -> WebSession:
        now = self._clock()
        return WebSession(id=new_session_id(), created_at=now, last_accessed_at=now)

    def get(self, session_id: str) -> WebSession | None:
        now = self._clock()
        try:
            with self._session_factory() as db:
                row = db.get(WebSessionRecord, session_id)
                if row is None:
                    return None
                if _naive_utc(now) > row.expires_at:
                    db.delete(row)
                    db.commit()
                    logger.debug("Session expired and removed")
                    return None
                attributes = row.get_attributes()
                SessionState.from_attributes(attributes)
                row.last_accessed_at = _naive_utc(now)
                row.expires_at = _naive_utc(now + self._ttl)
                db.commit()
                return WebSession(
                    id=row.session_id,
                    created_at=_aware_utc(row.created_at),
                    last_accessed_at=now,
                    attributes=attributes,
                    is_new=False,
                )
        except (SQLAlchemyError, ValueError) as e:
            # ValueError: attribute column is not valid JSON, or holds an unreadable timestamp
            raise SessionStoreError("session lookup failed") from e

    def save(self, session: WebSession) -> None:
        now = self._clock()
        try:
            with self._session_factory() as db:
                row = db.get(WebSessionRecord, session.id)
                if row is None:
                    row = WebSessionRecord(session_id=session.id, created_at=_naive_utc(session.created_at))
                    db.add(row)
                row.set_attributes(session.attributes)
                row.last_accessed_at = _naive_utc(now)
                row.expires_at = _naive_utc(now + self._ttl)
                db.commit()
        except SQLAlchemyError as e:
            raise SessionStoreError("session save failed") from e
        session.last_accessed_at = now
        session.is_new = False

    def invalidate(self, session_id: str) -> None:
        try:
            with self._session_factory() as db:
                db.execute(delete(WebSessionRecord).where(WebSessionRecord.session_id == session_id))
                db.commit()
        except SQLAlchemyError as e:
            raise SessionStoreError("session invalidate failed") from e

    def purge_expired(self) -> int:
        """Delete rows past their expiry. Returns the number removed."""
        try:
            with self._session_factory() as db:
                result = db.execute(
                    delete(WebSessionRecord).where(WebSessionRecord.expires_at < _naive_utc(self._clock()))
                )
                db.commit()
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise SessionStoreError("session purge failed") from e


def session_store_from_config(backend: str, session_factory: sessionmaker | None = None) -> SessionStore:
    """Build the configured backend ("sql" or "memory")."""
    if backend == "memory":
        return InMemorySessionStore()
    if backend == "sql":
        if session_factory is None:
            raise ValueError("sql session backend requires a session factory")
        return SqlSessionStore(session_factory)
    raise ValueError(f"Unknown session backend: {backend!r}")
