"""
Session-bound OTP authentication flow.
ANONYMOUS --login--> PENDING_OTP --validate(ok)--> AUTHENTICATED --logout--> ANONYMOUS.
Expected failures come back as AuthOutcome.error; only SessionStoreError is raised.
A transition counts only once the session save has returned.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from otp_gate.errors import ErrorKind, SessionStoreError, utc_now
from otp_gate.otp_store import OtpStore
from otp_gate.session_state import SessionState, WebSession
from otp_gate.session_store import SessionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthOutcome:
    state: SessionState
    error: ErrorKind | None = None
    # Issued OTP (login only)
    code: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class AuthStateMachine:
    def __init__(
        self,
        otp_store: OtpStore,
        session_store: SessionStore,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.otp_store = otp_store
        self.session_store = session_store
        self._clock = clock

    def login(self, subject_id: str, contact_address: str | None, session: WebSession) -> AuthOutcome:
        """
        Bind subject_id to the session, persist it, then issue an OTP.
        The session is saved before the code exists, so a failed save leaves no orphan code.
        A login on an authenticated session drops it back to PENDING_OTP.
        """
        subject_id = (subject_id or "").strip()
        if not subject_id:
            return AuthOutcome(state=session.state, error=ErrorKind.MISSING_CREDENTIALS)
        contact_address = (contact_address or "").strip() or None

        state = session.state.with_login(subject_id, contact_address, self._clock())
        self._commit(session, state)

        code = self.otp_store.generate(subject_id)
        logger.info("Login for subject %s: OTP issued, session pending", subject_id)
        return AuthOutcome(state=state, code=code)

    def validate(self, code: str | None, session: WebSession) -> AuthOutcome:
        """
        Redeem code for the session's subject. On success the session is marked authenticated
        and saved under a fresh id (session.id changes; the caller re-issues the cookie).
        """
        state = session.state
        if session.is_new or state.subject_id is None:
            logger.info("OTP submitted without a login session")
            return AuthOutcome(state=state, error=ErrorKind.NO_ACTIVE_SESSION)

        code = (code or "").strip()
        if not code:
            logger.info("OTP submitted empty for subject %s", state.subject_id)
            return AuthOutcome(state=state, error=ErrorKind.MISSING_CREDENTIALS)

        if not self.otp_store.validate(state.subject_id, code):
            logger.info("Authentication failed for subject %s", state.subject_id)
            return AuthOutcome(state=state, error=ErrorKind.INVALID_OR_EXPIRED_OTP)

        # Fresh id on privilege change (session fixation)
        previous_id = session.id
        state = state.with_authentication(self._clock())
        self._commit(session, state, new_id=self.session_store.create().id)
        try:
            self.session_store.invalidate(previous_id)
        except SessionStoreError:
            # The old id still holds only the pending state and lapses with its TTL
            logger.warning("Could not drop pre-authentication session for subject %s", state.subject_id)
        logger.info("Authentication succeeded for subject %s", state.subject_id)
        return AuthOutcome(state=state)

    def _commit(self, session: WebSession, state: SessionState, *, new_id: str | None = None) -> None:
        """Write state into the session and save it. On SessionStoreError the handle is left as it was."""
        previous_id, previous_attributes = session.id, dict(session.attributes)
        session.set_state(state)
        if new_id is not None:
            session.id = new_id
        try:
            self.session_store.save(session)
        except SessionStoreError:
            session.id, session.attributes = previous_id, previous_attributes
            raise

    def status(self, session: WebSession) -> SessionState | None:
        """Current state, or None when the session was never persisted."""
        if session.is_new:
            return None
        return session.state

    def logout(self, session: WebSession) -> SessionState:
        """Destroy the session. Returns the state it held (for logging and audit)."""
        state = session.state
        if not session.is_new:
            self.session_store.invalidate(session.id)
        session.attributes.clear()
        session.is_new = True
        logger.info("Logout for subject %s", state.subject_id)
        return state
