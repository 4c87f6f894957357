"""
SQLAlchemy models for the OTP gate: persisted web sessions and the security audit log.
"""
import json
from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from otp_gate.errors import utc_now


class Base(DeclarativeBase):
    pass


class WebSessionRecord(Base):
    __tablename__ = "web_sessions"

    session_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    # Attribute bag stored as a JSON object string
    attributes: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    last_accessed_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    # Naive UTC. last_accessed_at + sliding TTL; rows past this are treated as absent and deleted
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    def get_attributes(self) -> dict:
        return json.loads(self.attributes or "{}")

    def set_attributes(self, attributes: dict) -> None:
        self.attributes = json.dumps(attributes, sort_keys=True)


class AuditLog(Base):
    """Security-relevant events. No OTP codes or session ids stored."""
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    subject_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)  # None = anonymous
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)  # success | fail
