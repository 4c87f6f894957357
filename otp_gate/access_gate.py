"""
Access gate: decides per request whether a path may proceed and which principal is attached.
Rules are an ordered table of path globs; the first match wins and unmatched paths are public.
The OTP submission path is guarded and drives AuthStateMachine.validate itself.
"""
import logging
import re
from dataclasses import dataclass
from enum import Enum

from otp_gate.auth_flow import AuthStateMachine
from otp_gate.errors import ErrorKind
from otp_gate.session_state import WebSession

logger = logging.getLogger(__name__)

ROLE_USER = "USER"
OTP_SUBMISSION_PATH = "/auth/validate"


class Access(str, Enum):
    PUBLIC = "public"
    GUARDED = "guarded"


def _glob_to_regex(pattern: str) -> re.Pattern:
    """'*' matches within one path segment, '**' across segments ('/a/**' also matches '/a')."""
    out = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("/**", i) and i + 3 == len(pattern):
            out.append("(?:/.*)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(out) + "$")


@dataclass(frozen=True)
class PathRule:
    pattern: str
    access: Access

    def __post_init__(self) -> None:
        object.__setattr__(self, "_regex", _glob_to_regex(self.pattern))

    def matches(self, path: str) -> bool:
        return self._regex.match(path) is not None


DEFAULT_RULES: tuple[PathRule, ...] = (
    PathRule(OTP_SUBMISSION_PATH, Access.GUARDED),
    PathRule("/auth/**", Access.PUBLIC),
    PathRule("/session/**", Access.PUBLIC),
    PathRule("/api/session/**", Access.PUBLIC),
    PathRule("/health", Access.PUBLIC),
    PathRule("/api/hello", Access.GUARDED),
    PathRule("/audit", Access.GUARDED),
)


@dataclass(frozen=True)
class Principal:
    subject_id: str
    roles: tuple[str, ...] = (ROLE_USER,)


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    principal: Principal | None = None
    error: ErrorKind | None = None

    @classmethod
    def allow(cls, principal: Principal | None = None) -> "GateDecision":
        return cls(allowed=True, principal=principal)

    @classmethod
    def deny(cls, error: ErrorKind) -> "GateDecision":
        return cls(allowed=False, error=error)


class AccessGate:
    def __init__(
        self,
        machine: AuthStateMachine,
        rules: tuple[PathRule, ...] = DEFAULT_RULES,
        *,
        otp_path: str = OTP_SUBMISSION_PATH,
    ) -> None:
        self.machine = machine
        self.rules = tuple(rules)
        self.otp_path = otp_path

    def access_for(self, path: str) -> Access:
        for rule in self.rules:
            if rule.matches(path):
                return rule.access
        return Access.PUBLIC

    def check(self, path: str, session: WebSession, presented_code: str | None = None) -> GateDecision:
        """
        Single interception point.
        Public -> allow. OTP path -> validate the presented code, principal on success.
        Other guarded -> principal from an authenticated session, else UNAUTHENTICATED.
        May raise SessionStoreError (from the validate transition's save).
        """
        if self.access_for(path) is Access.PUBLIC:
            return GateDecision.allow()

        if path == self.otp_path:
            outcome = self.machine.validate(presented_code, session)
            if not outcome.ok:
                return GateDecision.deny(outcome.error)
            return GateDecision.allow(Principal(subject_id=outcome.state.subject_id))

        state = session.state
        if state.authenticated and state.subject_id is not None:
            logger.debug("Authenticated subject %s accessing %s", state.subject_id, path)
            return GateDecision.allow(Principal(subject_id=state.subject_id))

        logger.info("Unauthenticated access to %s denied", path)
        return GateDecision.deny(ErrorKind.UNAUTHENTICATED)
