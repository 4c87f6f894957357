"""
Error kinds for the OTP gate and the one hard failure (session store unavailable).
Expected credential failures are returned as ErrorKind values, not raised.
"""
from datetime import datetime, timezone
from enum import Enum


class ErrorKind(str, Enum):
    NO_ACTIVE_SESSION = "no_active_session"
    MISSING_CREDENTIALS = "missing_credentials"
    INVALID_OR_EXPIRED_OTP = "invalid_or_expired_otp"
    UNAUTHENTICATED = "unauthenticated"
    INTERNAL = "internal"

    @property
    def status_code(self) -> int:
        """HTTP status used by the transport for this kind."""
        if self is ErrorKind.MISSING_CREDENTIALS:
            return 400
        if self is ErrorKind.INTERNAL:
            return 500
        return 401


class SessionStoreError(Exception):
    """Session backend failed (unavailable, timeout, corrupt row). Maps to ErrorKind.INTERNAL."""

    kind = ErrorKind.INTERNAL


class GateRejection(Exception):
    """Raised at the transport boundary when the access gate denies a request."""

    def __init__(self, kind: ErrorKind, body: dict) -> None:
        super().__init__(kind.value)
        self.kind = kind
        self.body = body

    @property
    def status_code(self) -> int:
        return self.kind.status_code


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def timestamp() -> str:
    """ISO-8601 UTC timestamp for response bodies."""
    return utc_now().isoformat()


def structured_error(status: int, error: str, type_: str, title: str, message: str) -> dict:
    """Error body for access denials and internal faults."""
    return {
        "timestamp": timestamp(),
        "status": status,
        "error": error,
        "type": type_,
        "title": title,
        "message": message,
    }
