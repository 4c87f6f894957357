"""
Typed view of the authentication data carried in a web session.
The session store keeps an attribute bag; only this module reads or writes its keys.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

# Attribute bag keys (also the JSON field names in /auth/status)
ATTR_SUBJECT_ID = "subjectId"
ATTR_CONTACT_ADDRESS = "contactAddress"
ATTR_LOGIN_AT = "loginAt"
ATTR_AUTHENTICATED = "authenticated"
ATTR_AUTH_AT = "authAt"

_ALL_ATTRS = (ATTR_SUBJECT_ID, ATTR_CONTACT_ADDRESS, ATTR_LOGIN_AT, ATTR_AUTHENTICATED, ATTR_AUTH_AT)


class AuthPhase(str, Enum):
    ANONYMOUS = "anonymous"
    PENDING_OTP = "pending_otp"
    AUTHENTICATED = "authenticated"


def _parse_dt(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _format_dt(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class SessionState:
    subject_id: str | None = None
    contact_address: str | None = None
    login_at: datetime | None = None
    authenticated: bool = False
    auth_at: datetime | None = None

    @property
    def phase(self) -> AuthPhase:
        if self.subject_id is None:
            return AuthPhase.ANONYMOUS
        if self.authenticated:
            return AuthPhase.AUTHENTICATED
        return AuthPhase.PENDING_OTP

    @classmethod
    def from_attributes(cls, attributes: dict[str, Any]) -> "SessionState":
        subject_id = attributes.get(ATTR_SUBJECT_ID) or None
        # authenticated without a subject is not a valid state; read it as not authenticated
        authenticated = bool(attributes.get(ATTR_AUTHENTICATED)) and subject_id is not None
        return cls(
            subject_id=subject_id,
            contact_address=attributes.get(ATTR_CONTACT_ADDRESS) or None,
            login_at=_parse_dt(attributes.get(ATTR_LOGIN_AT)),
            authenticated=authenticated,
            auth_at=_parse_dt(attributes.get(ATTR_AUTH_AT)),
        )

    def apply_to(self, attributes: dict[str, Any]) -> None:
        """Write this state into a session attribute bag (other attributes are left alone)."""
        if self.authenticated and self.subject_id is None:
            raise ValueError("authenticated session requires a subject_id")
        values = {
            ATTR_SUBJECT_ID: self.subject_id,
            ATTR_CONTACT_ADDRESS: self.contact_address,
            ATTR_LOGIN_AT: _format_dt(self.login_at),
            ATTR_AUTHENTICATED: self.authenticated,
            ATTR_AUTH_AT: _format_dt(self.auth_at),
        }
        for key in _ALL_ATTRS:
            value = values[key]
            if value is None:
                attributes.pop(key, None)
            else:
                attributes[key] = value

    def with_login(self, subject_id: str, contact_address: str | None, at: datetime) -> "SessionState":
        return replace(
            self,
            subject_id=subject_id,
            contact_address=contact_address,
            login_at=at,
            authenticated=False,
            auth_at=None,
        )

    def with_authentication(self, at: datetime) -> "SessionState":
        return replace(self, authenticated=True, auth_at=at)

    def as_dict(self) -> dict[str, Any]:
        """JSON-ready fields for status responses."""
        return {
            ATTR_AUTHENTICATED: self.authenticated,
            ATTR_SUBJECT_ID: self.subject_id,
            ATTR_CONTACT_ADDRESS: self.contact_address,
            ATTR_LOGIN_AT: _format_dt(self.login_at),
            ATTR_AUTH_AT: _format_dt(self.auth_at),
        }


@dataclass
class WebSession:
    """
    Handle to one server-side session. is_new means it has never been saved
    (an anonymous session created for the current request).
    """

    id: str
    created_at: datetime
    last_accessed_at: datetime
    attributes: dict[str, Any] = field(default_factory=dict)
    is_new: bool = True

    @property
    def state(self) -> SessionState:
        return SessionState.from_attributes(self.attributes)

    def set_state(self, state: SessionState) -> None:
        state.apply_to(self.attributes)
