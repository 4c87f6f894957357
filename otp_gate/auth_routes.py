"""
/auth endpoints: login (issue OTP), validate (gate already redeemed the code), status, logout.
Response field names are the wire contract (camelCase).
"""
import logging

from fastapi import APIRouter, Depends, Form, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from otp_gate.access_gate import Principal
from otp_gate.audit import (
    EVENT_LOGIN_FAIL,
    EVENT_LOGIN_OK,
    EVENT_LOGOUT,
    get_client_ip,
    log_audit,
    OUTCOME_FAIL,
    OUTCOME_SUCCESS,
)
from otp_gate.auth_flow import AuthStateMachine
from otp_gate.config import OTP_EXPIRES_IN_LABEL, SESSION_COOKIE_NAME, SESSION_COOKIE_SECURE
from otp_gate.database import get_db
from otp_gate.dependencies import current_principal, get_auth_machine, load_web_session
from otp_gate.errors import timestamp
from otp_gate.session_state import WebSession

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])


def _set_session_cookie(response: Response, session: WebSession) -> None:
    response.set_cookie(
        SESSION_COOKIE_NAME,
        session.id,
        httponly=True,
        samesite="lax",
        secure=SESSION_COOKIE_SECURE,
        path="/",
    )


@router.post("/login")
def login(
    request: Request,
    response: Response,
    subject_id: str = Form(..., alias="subjectId"),
    contact_address: str = Form(..., alias="contactAddress"),
    session: WebSession = Depends(load_web_session),
    machine: AuthStateMachine = Depends(get_auth_machine),
    db: Session = Depends(get_db),
):
    """
    Bind subject and contact address to the session and issue an OTP.
    The code is returned in the body: there is no out-of-band delivery channel.
    """
    outcome = machine.login(subject_id, contact_address, session)
    if not outcome.ok:
        log_audit(db, EVENT_LOGIN_FAIL, ip=get_client_ip(request), outcome=OUTCOME_FAIL)
        return JSONResponse(
            status_code=outcome.error.status_code,
            content={"error": "subjectId is required", "timestamp": timestamp()},
        )

    log_audit(db, EVENT_LOGIN_OK, subject_id=outcome.state.subject_id, ip=get_client_ip(request), outcome=OUTCOME_SUCCESS)
    _set_session_cookie(response, session)
    return {
        "message": "OTP generated",
        "code": outcome.code,
        "subjectId": outcome.state.subject_id,
        "contactAddress": outcome.state.contact_address,
        "expiresIn": OTP_EXPIRES_IN_LABEL,
        "timestamp": timestamp(),
    }


@router.post("/validate")
def validate_otp(
    response: Response,
    principal: Principal = Depends(current_principal),
    session: WebSession = Depends(load_web_session),
):
    """
    OTP submission (query parameter or form field "otp"). The access gate has already
    redeemed the code and saved the session, authenticated, under a new id; failures never reach here.
    """
    _set_session_cookie(response, session)
    return {
        "message": "authentication successful",
        "authenticated": True,
        "subjectId": principal.subject_id,
        "timestamp": timestamp(),
    }


@router.api_route("/status", methods=["GET", "POST"])
def auth_status(
    session: WebSession = Depends(load_web_session),
    machine: AuthStateMachine = Depends(get_auth_machine),
):
    """Authentication state of the current session."""
    state = machine.status(session)
    if state is None:
        return {"authenticated": False, "message": "no active session", "timestamp": timestamp()}
    body = state.as_dict()
    body["sessionId"] = session.id
    body["timestamp"] = timestamp()
    return body


@router.post("/logout")
def logout(
    request: Request,
    response: Response,
    session: WebSession = Depends(load_web_session),
    machine: AuthStateMachine = Depends(get_auth_machine),
    db: Session = Depends(get_db),
):
    """Destroy the session; the next request starts a fresh anonymous one."""
    had_session = not session.is_new
    state = machine.logout(session)
    if had_session:
        log_audit(db, EVENT_LOGOUT, subject_id=state.subject_id, ip=get_client_ip(request), outcome=OUTCOME_SUCCESS)
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return {"message": "session closed", "timestamp": timestamp()}
