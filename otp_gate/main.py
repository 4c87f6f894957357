"""
OTP Gate service.
Session-bound one-time-code login: /auth/login, /auth/validate, /auth/status, /auth/logout,
guarded demo resource /api/hello and guarded /audit. Port 8080.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from otp_gate.access_gate import DEFAULT_RULES, AccessGate, PathRule, Principal
from otp_gate.audit import router as audit_router
from otp_gate.auth_flow import AuthStateMachine
from otp_gate.auth_routes import router as auth_router
from otp_gate.config import LOG_LEVEL, SESSION_BACKEND
from otp_gate.database import SessionLocal, init_db
from otp_gate.dependencies import current_principal, enforce_access_gate
from otp_gate.errors import GateRejection, SessionStoreError, structured_error
from otp_gate.otp_store import InMemoryOtpStore, OtpStore
from otp_gate.session_store import SessionStore, session_store_from_config

logger = logging.getLogger(__name__)


def _internal_error_response() -> JSONResponse:
    """Generic 500 body; backend details stay in the log."""
    return JSONResponse(
        status_code=500,
        content=structured_error(
            500,
            "Internal Server Error",
            "GENERAL_ERROR",
            "Internal server error",
            "An unexpected error occurred. Please try again.",
        ),
    )


def create_app(
    *,
    otp_store: OtpStore | None = None,
    session_store: SessionStore | None = None,
    rules: tuple[PathRule, ...] = DEFAULT_RULES,
) -> FastAPI:
    """Build the app. Stores are owned by the app instance; pass fakes in tests."""
    if otp_store is None:
        otp_store = InMemoryOtpStore()
    if session_store is None:
        session_store = session_store_from_config(SESSION_BACKEND, SessionLocal)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Create tables and drop sessions that expired while the service was down."""
        init_db()
        purged = session_store.purge_expired()
        if purged:
            logger.info("Purged %s expired sessions", purged)
        yield

    app = FastAPI(
        title="OTP Gate",
        version="0.1.0",
        lifespan=lifespan,
        dependencies=[Depends(enforce_access_gate)],
    )
    machine = AuthStateMachine(otp_store, session_store)
    app.state.auth_machine = machine
    app.state.access_gate = AccessGate(machine, rules)

    app.include_router(auth_router)
    app.include_router(audit_router)

    @app.exception_handler(GateRejection)
    async def gate_rejection_handler(request: Request, exc: GateRejection):
        return JSONResponse(status_code=exc.status_code, content=exc.body)

    @app.exception_handler(SessionStoreError)
    async def session_store_error_handler(request: Request, exc: SessionStoreError):
        logger.error("Session store failure on %s", request.url.path, exc_info=exc)
        return _internal_error_response()

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError):
        logger.error("Database failure on %s", request.url.path, exc_info=exc)
        return _internal_error_response()

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok", "service": "otp_gate"}

    @app.get("/api/hello")
    def hello(principal: Principal = Depends(current_principal)):
        """Guarded demo resource; needs a validated session."""
        return {"message": "Hello World", "subjectId": principal.subject_id}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(
        "otp_gate.main:app",
        host="127.0.0.1",
        port=8080,
        reload=True,
    )
