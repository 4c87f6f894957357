"""
FastAPI dependencies: session loading, the application-wide access gate, current principal.
Blocking store work runs in the threadpool; nothing here blocks the event loop.
"""
import logging

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from otp_gate.access_gate import AccessGate, GateDecision, Principal
from otp_gate.audit import (
    EVENT_ACCESS_DENIED,
    EVENT_OTP_REJECTED,
    EVENT_OTP_VALIDATED,
    get_client_ip,
    log_audit,
    OUTCOME_FAIL,
    OUTCOME_SUCCESS,
)
from otp_gate.auth_flow import AuthStateMachine
from otp_gate.config import SESSION_COOKIE_NAME
from otp_gate.database import get_db
from otp_gate.errors import ErrorKind, GateRejection, structured_error, timestamp
from otp_gate.session_state import WebSession

logger = logging.getLogger(__name__)

# Wire contract: the OTP is read from this query parameter, or the same-named form field
OTP_PARAM = "otp"

_FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


def get_auth_machine(request: Request) -> AuthStateMachine:
    return request.app.state.auth_machine


def get_access_gate(request: Request) -> AccessGate:
    return request.app.state.access_gate


def load_web_session(
    request: Request,
    machine: AuthStateMachine = Depends(get_auth_machine),
) -> WebSession:
    """
    Session for this request: the stored one named by the session cookie, or a fresh
    unsaved one when the cookie is missing, unknown or expired.
    """
    store = machine.session_store
    session_id = request.cookies.get(SESSION_COOKIE_NAME)
    session = store.get(session_id) if session_id else None
    if session is None:
        session = store.create()
    return session


async def _presented_code(request: Request) -> str | None:
    code = request.query_params.get(OTP_PARAM)
    if code is not None:
        return code
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(_FORM_CONTENT_TYPES):
        form = await request.form()
        value = form.get(OTP_PARAM)
        return value if isinstance(value, str) else None
    return None


def rejection_body(kind: ErrorKind) -> dict:
    if kind is ErrorKind.NO_ACTIVE_SESSION:
        return {"error": "no active session", "timestamp": timestamp()}
    if kind is ErrorKind.MISSING_CREDENTIALS:
        return {"error": "otp is required", "timestamp": timestamp()}
    if kind is ErrorKind.INVALID_OR_EXPIRED_OTP:
        return {"message": "invalid or expired", "authenticated": False, "timestamp": timestamp()}
    return structured_error(
        status.HTTP_401_UNAUTHORIZED,
        "Unauthorized",
        "AUTHENTICATION_ERROR",
        "Authentication required",
        "Log in and validate the one-time code to access this resource.",
    )


def _check_and_audit(
    gate: AccessGate,
    path: str,
    session: WebSession,
    presented_code: str | None,
    db: Session,
    ip: str | None,
) -> GateDecision:
    decision = gate.check(path, session, presented_code)
    subject_id = session.state.subject_id
    if path == gate.otp_path:
        if decision.allowed:
            log_audit(db, EVENT_OTP_VALIDATED, subject_id=subject_id, ip=ip, outcome=OUTCOME_SUCCESS)
        else:
            log_audit(db, EVENT_OTP_REJECTED, subject_id=subject_id, ip=ip, outcome=OUTCOME_FAIL)
    elif not decision.allowed:
        log_audit(db, EVENT_ACCESS_DENIED, subject_id=subject_id, ip=ip, outcome=OUTCOME_FAIL)
    return decision


async def enforce_access_gate(
    request: Request,
    session: WebSession = Depends(load_web_session),
    gate: AccessGate = Depends(get_access_gate),
    db: Session = Depends(get_db),
) -> None:
    """Application-wide dependency: every request passes the gate before its handler runs."""
    path = request.url.path
    presented = await _presented_code(request) if path == gate.otp_path else None
    decision = await run_in_threadpool(
        _check_and_audit, gate, path, session, presented, db, get_client_ip(request)
    )
    if not decision.allowed:
        raise GateRejection(decision.error, rejection_body(decision.error))
    request.state.principal = decision.principal


def current_principal(request: Request) -> Principal:
    """Principal attached by the gate. Only meaningful on guarded routes."""
    principal = getattr(request.state, "principal", None)
    if principal is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=rejection_body(ErrorKind.UNAUTHENTICATED),
        )
    return principal
