"""
Audit logging. Security-relevant events only; never OTP codes, session ids or request bodies.
GET /audit lists recent events (guarded by the access gate).
"""
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from otp_gate.database import get_db
from otp_gate.models import AuditLog

logger = logging.getLogger(__name__)

EVENT_LOGIN_OK = "login_ok"
EVENT_LOGIN_FAIL = "login_fail"
EVENT_OTP_VALIDATED = "otp_validated"
EVENT_OTP_REJECTED = "otp_rejected"
EVENT_ACCESS_DENIED = "access_denied"
EVENT_LOGOUT = "logout"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"

MAX_AUDIT_LIMIT = 500


def get_client_ip(request: Request | None) -> str | None:
    """Client IP if available (request.client.host). Forwarding headers are not trusted."""
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


def log_audit(
    db: Session,
    event_type: str,
    *,
    subject_id: str | None = None,
    ip: str | None = None,
    outcome: str = OUTCOME_SUCCESS,
) -> None:
    """
    Append one audit record. Best effort: the event being recorded has already happened,
    so a failed write is logged and the request carries on.
    """
    try:
        db.add(
            AuditLog(
                event_type=event_type,
                subject_id=subject_id,
                ip=ip,
                outcome=outcome,
            )
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("Audit write failed for %s (subject %s): %s", event_type, subject_id, e)


router = APIRouter(tags=["audit"])


def query_audit_logs(
    db: Session,
    *,
    limit: int = 100,
    event_type: str | None = None,
    outcome: str | None = None,
    subject_id: str | None = None,
) -> list[dict]:
    """Audit rows with optional filters, most recent first."""
    q = db.query(AuditLog).order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    if event_type:
        q = q.filter(AuditLog.event_type == event_type)
    if outcome:
        q = q.filter(AuditLog.outcome == outcome)
    if subject_id:
        q = q.filter(AuditLog.subject_id == subject_id)
    rows = q.limit(min(max(1, limit), MAX_AUDIT_LIMIT)).all()
    return [
        {
            "created_at": r.created_at.isoformat() if r.created_at else None,
            "event_type": r.event_type,
            "subject_id": r.subject_id,
            "ip": r.ip,
            "outcome": r.outcome,
        }
        for r in rows
    ]


@router.get("/audit")
def list_audit_logs(
    limit: int = 100,
    event_type: str | None = None,
    outcome: str | None = None,
    subject_id: str | None = None,
    db: Session = Depends(get_db),
):
    """List recent audit events. Requires an authenticated session."""
    return query_audit_logs(
        db, limit=limit, event_type=event_type, outcome=outcome, subject_id=subject_id
    )
