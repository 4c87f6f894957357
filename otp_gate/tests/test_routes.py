"""End-to-end tests for the HTTP surface: login, validate, status, logout, guarded resources, audit."""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from otp_gate.config import SESSION_COOKIE_NAME
from otp_gate.database import get_db
from otp_gate.errors import SessionStoreError
from otp_gate.main import create_app
from otp_gate.otp_store import InMemoryOtpStore
from otp_gate.session_store import InMemorySessionStore


class BrokenSessionStore(InMemorySessionStore):
    def save(self, session):
        raise SessionStoreError("connection refused by session backend")


class SaveFailsOnDemandStore(InMemorySessionStore):
    fail_saves = False

    def save(self, session):
        if self.fail_saves:
            raise SessionStoreError("connection refused by session backend")
        super().save(session)


class UnavailableAuditDb:
    """DB session whose reads and writes all fail."""

    def add(self, row):
        pass

    def commit(self):
        raise OperationalError("INSERT INTO audit_log", {}, Exception("disk I/O error"))

    def rollback(self):
        pass

    def query(self, *entities):
        raise OperationalError("SELECT FROM audit_log", {}, Exception("disk I/O error"))

    def close(self):
        pass


def _unavailable_db():
    yield UnavailableAuditDb()


@pytest.fixture
def otp_store(clock):
    return InMemoryOtpStore(clock=clock)


@pytest.fixture
def client(otp_store):
    app = create_app(otp_store=otp_store)
    with TestClient(app) as c:
        yield c


def _login(client, subject="DOC1", contact="a@x.com"):
    r = client.post("/auth/login", data={"subjectId": subject, "contactAddress": contact})
    assert r.status_code == 200
    return r.json()


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "service": "otp_gate"}


def test_login_response_shape(client):
    body = _login(client)
    assert body["subjectId"] == "DOC1"
    assert body["contactAddress"] == "a@x.com"
    assert body["expiresIn"] == "5 minutes"
    assert len(body["code"]) == 6 and body["code"].isdigit()
    assert body["message"]
    assert body["timestamp"]
    assert client.cookies.get(SESSION_COOKIE_NAME)


def test_login_then_status_is_pending(client):
    _login(client)
    r = client.get("/auth/status")
    assert r.status_code == 200
    body = r.json()
    assert body["authenticated"] is False
    assert body["subjectId"] == "DOC1"
    assert body["contactAddress"] == "a@x.com"
    assert body["loginAt"] is not None
    assert body["authAt"] is None
    assert body["sessionId"] == client.cookies.get(SESSION_COOKIE_NAME)


def test_status_post_is_accepted(client):
    _login(client)
    assert client.post("/auth/status").json()["subjectId"] == "DOC1"


def test_validate_with_query_param(client):
    code = _login(client)["code"]
    r = client.post("/auth/validate", params={"otp": code})
    assert r.status_code == 200
    body = r.json()
    assert body["authenticated"] is True
    assert body["subjectId"] == "DOC1"

    status = client.get("/auth/status").json()
    assert status["authenticated"] is True
    assert status["authAt"] is not None


def test_validate_with_form_field(client):
    code = _login(client)["code"]
    r = client.post("/auth/validate", data={"otp": code})
    assert r.status_code == 200
    assert r.json()["authenticated"] is True


def test_code_cannot_be_reused(client):
    code = _login(client)["code"]
    assert client.post("/auth/validate", params={"otp": code}).status_code == 200
    r = client.post("/auth/validate", params={"otp": code})
    assert r.status_code == 401
    assert r.json()["message"] == "invalid or expired"


def test_validate_wrong_code(client):
    _login(client)
    r = client.post("/auth/validate", params={"otp": "000000"})
    assert r.status_code == 401
    body = r.json()
    assert body["message"] == "invalid or expired"
    assert body["authenticated"] is False
    assert body["timestamp"]
    assert client.get("/auth/status").json()["authenticated"] is False


def test_validate_expired_code(client, clock):
    code = _login(client)["code"]
    clock.advance(301)
    r = client.post("/auth/validate", params={"otp": code})
    assert r.status_code == 401
    assert r.json()["authenticated"] is False


def test_validate_without_session(client):
    r = client.post("/auth/validate", params={"otp": "123456"})
    assert r.status_code == 401
    assert r.json()["error"] == "no active session"


def test_validate_missing_code(client):
    _login(client)
    r = client.post("/auth/validate")
    assert r.status_code == 400
    assert r.json()["error"] == "otp is required"


def test_login_blank_subject(client):
    r = client.post("/auth/login", data={"subjectId": "  ", "contactAddress": "a@x.com"})
    assert r.status_code == 400
    assert "subjectId" in r.json()["error"]


def test_login_missing_field(client):
    r = client.post("/auth/login", data={"contactAddress": "a@x.com"})
    assert r.status_code == 422


def test_guarded_resource_requires_validation(client):
    r = client.get("/api/hello")
    assert r.status_code == 401
    assert r.json()["type"] == "AUTHENTICATION_ERROR"

    code = _login(client, subject="DOC7")["code"]
    assert client.get("/api/hello").status_code == 401

    client.post("/auth/validate", params={"otp": code})
    r = client.get("/api/hello")
    assert r.status_code == 200
    assert r.json() == {"message": "Hello World", "subjectId": "DOC7"}


def test_logout_then_status(client):
    code = _login(client)["code"]
    client.post("/auth/validate", params={"otp": code})

    r = client.post("/auth/logout")
    assert r.status_code == 200
    assert r.json()["message"]

    status = client.get("/auth/status").json()
    assert status["authenticated"] is False
    assert status.get("subjectId") is None
    assert status["message"] == "no active session"
    assert client.get("/api/hello").status_code == 401


def test_stale_cookie_after_logout_is_anonymous(client):
    _login(client)
    old_session_id = client.cookies.get(SESSION_COOKIE_NAME)
    client.post("/auth/logout")
    client.cookies.clear()
    r = client.get("/auth/status", headers={"Cookie": f"{SESSION_COOKIE_NAME}={old_session_id}"})
    assert r.json()["message"] == "no active session"


def test_session_store_failure_is_internal_error(otp_store):
    app = create_app(otp_store=otp_store, session_store=BrokenSessionStore())
    with TestClient(app) as c:
        r = c.post("/auth/login", data={"subjectId": "DOC9", "contactAddress": "a@x.com"})
    assert r.status_code == 500
    body = r.json()
    assert body["type"] == "GENERAL_ERROR"
    assert "connection refused" not in r.text
    # Session save failed before issuance: no code exists
    assert otp_store.peek("DOC9") is None


def test_audit_requires_authentication(client):
    assert client.get("/audit").status_code == 401


def test_audit_records_flow_without_codes(client):
    _login(client, subject="AUDIT1")
    client.post("/auth/validate", params={"otp": "000000"})
    code = _login(client, subject="AUDIT1")["code"]
    client.post("/auth/validate", params={"otp": code})

    r = client.get("/audit", params={"subject_id": "AUDIT1"})
    assert r.status_code == 200
    events = r.json()
    types = {e["event_type"] for e in events}
    assert {"login_ok", "otp_rejected", "otp_validated"} <= types
    assert all(e["subject_id"] == "AUDIT1" for e in events)
    assert all("code" not in e for e in events)


def test_validate_issues_a_new_session_cookie(client):
    code = _login(client)["code"]
    pending_id = client.cookies.get(SESSION_COOKIE_NAME)

    assert client.post("/auth/validate", params={"otp": code}).status_code == 200
    authenticated_id = client.cookies.get(SESSION_COOKIE_NAME)
    assert authenticated_id != pending_id
    assert client.get("/api/hello").status_code == 200

    client.cookies.clear()
    r = client.get("/api/hello", headers={"Cookie": f"{SESSION_COOKIE_NAME}={pending_id}"})
    assert r.status_code == 401


def test_session_save_failure_on_validate_is_internal_error(otp_store):
    store = SaveFailsOnDemandStore()
    with TestClient(create_app(otp_store=otp_store, session_store=store)) as c:
        code = c.post("/auth/login", data={"subjectId": "DOC9", "contactAddress": "a@x.com"}).json()["code"]
        store.fail_saves = True
        r = c.post("/auth/validate", params={"otp": code})
        assert r.status_code == 500
        assert r.json()["type"] == "GENERAL_ERROR"
        assert "connection refused" not in r.text

        store.fail_saves = False
        assert c.get("/auth/status").json()["authenticated"] is False
        assert c.get("/api/hello").status_code == 401


def test_audit_write_failure_does_not_fail_validate(otp_store):
    app = create_app(otp_store=otp_store, session_store=InMemorySessionStore())
    app.dependency_overrides[get_db] = _unavailable_db
    with TestClient(app) as c:
        code = c.post("/auth/login", data={"subjectId": "DOC9", "contactAddress": "a@x.com"}).json()["code"]
        r = c.post("/auth/validate", params={"otp": code})
        assert r.status_code == 200
        assert r.json()["authenticated"] is True
        assert c.get("/auth/status").json()["authenticated"] is True

        r = c.get("/audit")
    assert r.status_code == 500
    assert r.json()["type"] == "GENERAL_ERROR"
    assert "disk I/O" not in r.text
