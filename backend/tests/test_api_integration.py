from collections.abc import Generator
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from osnovci.core.kv_store import InMemoryStore, get_kv_store
from osnovci.core.mailer import get_mailer
from osnovci.core.security import access_token_for, hash_password
from osnovci.db import models  # noqa: F401
from osnovci.db.base import Base
from osnovci.db.models.consent_audit_log import ConsentAuditLog
from osnovci.db.models.family_link import FamilyLink
from osnovci.db.models.link_request import LinkRequest
from osnovci.db.models.login_history import LoginHistory
from osnovci.db.models.user import User
from osnovci.db.session import get_db
from osnovci.main import app


class FakeMailer:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def send(self, to: str, subject: str, body: str) -> bool:
        self.sent.append((to, subject, body))
        return True


@dataclass
class Api:
    client: TestClient
    SessionLocal: sessionmaker
    store: InMemoryStore
    mailer: FakeMailer
    tokens: dict[str, str] = field(default_factory=dict)

    def add_user(self, email: str, role: str, password: str = "correct-horse") -> User:
        with self.SessionLocal() as db:
            user = User(
                email=email,
                hashed_password=hash_password(password),
                display_name=email.split("@")[0],
                role=role,
                is_active=True,
                token_version=0,
            )
            db.add(user)
            db.commit()
            db.refresh(user)
            self.tokens[email] = access_token_for(user)
            db.expunge(user)
            return user

    def headers(self, email: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.tokens[email]}"}


def _override_get_db(session_factory):
    def _get_db() -> Generator[Session, None, None]:
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    return _get_db


def _extract_error_payload(response):
    payload = response.json()
    assert payload["success"] is False
    assert "error" in payload
    assert "request_id" in payload
    return payload


def _extract_success_data(response):
    payload = response.json()
    assert payload["success"] is True
    assert "data" in payload
    assert "request_id" in payload
    return payload["data"]


def _code_from_email(body: str) -> str:
    return body.split("or enter this code: ")[1].split()[0]


@pytest.fixture()
def api() -> Generator[Api, None, None]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    store = InMemoryStore()
    mailer = FakeMailer()
    app.dependency_overrides[get_db] = _override_get_db(SessionLocal)
    app.dependency_overrides[get_kv_store] = lambda: store
    app.dependency_overrides[get_mailer] = lambda: mailer
    try:
        yield Api(client=TestClient(app), SessionLocal=SessionLocal, store=store, mailer=mailer)
    finally:
        app.dependency_overrides.clear()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


def test_register_and_me(api):
    response = api.client.post(
        "/auth/register",
        json={"email": "Kid@School.ru", "password": "long-enough", "display_name": "Masha", "role": "student"},
    )
    assert response.status_code == 201
    user = _extract_success_data(response)
    assert user["email"] == "kid@school.ru"

    duplicate = api.client.post(
        "/auth/register",
        json={"email": "kid@school.ru", "password": "long-enough", "role": "guardian"},
    )
    assert duplicate.status_code == 409
    assert _extract_error_payload(duplicate)["error"]["code"] == "conflict"

    login = api.client.post("/auth/login", json={"email": "kid@school.ru", "password": "long-enough"})
    token = _extract_success_data(login)["access_token"]
    me = api.client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert _extract_success_data(me)["role"] == "student"


def test_register_cannot_pick_admin_role(api):
    response = api.client.post(
        "/auth/register",
        json={"email": "sneaky@school.ru", "password": "long-enough", "role": "admin"},
    )
    assert response.status_code == 400
    assert _extract_error_payload(response)["error"]["code"] == "validation_error"


def test_me_requires_token(api):
    response = api.client.get("/auth/me")
    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Bearer"
    assert _extract_error_payload(response)["error"]["code"] == "unauthenticated"


def test_login_lockout_after_five_failures(api):
    api.add_user("kid@school.ru", "student")

    for expected_remaining in (4, 3, 2, 1):
        response = api.client.post("/auth/login", json={"email": "kid@school.ru", "password": "wrong"})
        assert response.status_code == 401
        payload = _extract_error_payload(response)
        assert payload["error"]["details"]["attempts_remaining"] == expected_remaining

    fifth = api.client.post("/auth/login", json={"email": "kid@school.ru", "password": "wrong"})
    assert fifth.status_code == 403
    payload = _extract_error_payload(fifth)
    assert payload["error"]["code"] == "account_locked"
    assert "30 minutes" in payload["error"]["message"]
    assert int(fifth.headers["Retry-After"]) > 1700

    correct = api.client.post("/auth/login", json={"email": "KID@school.ru", "password": "correct-horse"})
    assert correct.status_code == 403
    assert _extract_error_payload(correct)["error"]["code"] == "account_locked"

    with api.SessionLocal() as db:
        results = [row.result for row in db.query(LoginHistory).order_by(LoginHistory.id)]
    assert results == ["invalid_credentials"] * 4 + ["locked_now", "locked"]


def test_unknown_email_is_counted_like_a_wrong_password(api):
    response = api.client.post("/auth/login", json={"email": "ghost@school.ru", "password": "x"})
    assert response.status_code == 401
    payload = _extract_error_payload(response)
    assert payload["error"]["message"] == "Invalid email or password"
    assert payload["error"]["details"]["attempts_remaining"] == 4


def test_admin_can_inspect_and_unlock(api):
    api.add_user("root@osnovci.ru", "admin")
    api.add_user("kid@school.ru", "student")
    for _ in range(5):
        api.client.post("/auth/login", json={"email": "kid@school.ru", "password": "wrong"})

    status = api.client.get("/admin/lockouts/kid@school.ru", headers=api.headers("root@osnovci.ru"))
    data = _extract_success_data(status)
    assert data["locked"] is True
    assert data["failed_attempts"] == 5

    forbidden = api.client.post(
        "/admin/lockouts/unlock",
        json={"email": "kid@school.ru"},
        headers=api.headers("kid@school.ru"),
    )
    assert forbidden.status_code == 403
    assert _extract_error_payload(forbidden)["error"]["code"] == "forbidden"

    unlocked = api.client.post(
        "/admin/lockouts/unlock",
        json={"email": "kid@school.ru"},
        headers=api.headers("root@osnovci.ru"),
    )
    assert _extract_success_data(unlocked)["locked"] is False

    login = api.client.post("/auth/login", json={"email": "kid@school.ru", "password": "correct-horse"})
    assert login.status_code == 200

    audit = api.client.get("/admin/consent-audit?action=account.unlocked", headers=api.headers("root@osnovci.ru"))
    assert len(_extract_success_data(audit)) == 1
    assert audit.json()["meta"]["total"] == 1


def test_full_family_link_flow(api):
    student = api.add_user("kid@school.ru", "student")
    api.add_user("mom@mail.ru", "guardian")

    qr = _extract_success_data(api.client.post("/family/qr", headers=api.headers("kid@school.ru")))
    assert qr["qr_data"].startswith(f"OSNOVCI:{student.id}:")

    initiated = api.client.post(
        "/family/links/initiate",
        json={"qr_data": qr["qr_data"], "relation": "MOTHER"},
        headers=api.headers("mom@mail.ru"),
    )
    assert initiated.status_code == 201
    link_code = _extract_success_data(initiated)["link_code"]

    pending = _extract_success_data(api.client.get("/family/links/pending", headers=api.headers("kid@school.ru")))
    assert [item["link_code"] for item in pending] == [link_code]
    assert pending[0]["guardian"]["email"] == "mom@mail.ru"

    guardian_cannot_approve = api.client.post(
        f"/family/links/{link_code}/approve",
        headers=api.headers("mom@mail.ru"),
    )
    assert guardian_cannot_approve.status_code == 403

    approved = api.client.post(f"/family/links/{link_code}/approve", headers=api.headers("kid@school.ru"))
    assert _extract_success_data(approved)["status"] == "CHILD_APPROVED"
    assert len(api.mailer.sent) == 1
    to, _, body = api.mailer.sent[0]
    assert to == "mom@mail.ru"

    wrong = api.client.post("/family/links/verify", json={"link_code": link_code, "code": "WRONG123"})
    assert wrong.status_code == 400
    assert _extract_error_payload(wrong)["error"]["message"] == "Invalid verification code"

    verified = api.client.post(
        "/family/links/verify",
        json={"link_code": link_code.lower(), "code": _code_from_email(body).lower()},
    )
    link = _extract_success_data(verified)
    assert link["is_active"] is True
    assert link["relation"] == "MOTHER"

    links = api.client.get("/family/links", headers=api.headers("mom@mail.ru"))
    items = _extract_success_data(links)
    assert [item["counterpart"]["email"] for item in items] == ["kid@school.ru"]
    assert links.json()["meta"]["total"] == 1

    updated = api.client.put(
        f"/family/links/{link['id']}/permissions",
        json={"permissions": ["VIEW_GRADES"]},
        headers=api.headers("kid@school.ru"),
    )
    assert _extract_success_data(updated)["permissions"] == ["VIEW_GRADES"]

    revoked = api.client.delete(f"/family/links/{link['id']}", headers=api.headers("kid@school.ru"))
    assert _extract_success_data(revoked)["is_active"] is False

    with api.SessionLocal() as db:
        assert db.query(FamilyLink).filter(FamilyLink.is_active.is_(True)).count() == 0
        actions = {row.action for row in db.query(ConsentAuditLog)}
    assert {"link.initiated", "link.child_approved", "link.guardian_verified", "link.revoked"} <= actions


def test_expired_link_code_returns_expired(api):
    api.add_user("kid@school.ru", "student")
    api.add_user("mom@mail.ru", "guardian")
    qr = _extract_success_data(api.client.post("/family/qr", headers=api.headers("kid@school.ru")))
    link_code = _extract_success_data(
        api.client.post(
            "/family/links/initiate",
            json={"qr_data": qr["qr_data"]},
            headers=api.headers("mom@mail.ru"),
        )
    )["link_code"]
    with api.SessionLocal() as db:
        req = db.query(LinkRequest).filter(LinkRequest.link_code == link_code).one()
        req.expires_at = datetime.utcnow() - timedelta(seconds=1)
        db.commit()

    response = api.client.post(f"/family/links/{link_code}/approve", headers=api.headers("kid@school.ru"))
    assert response.status_code == 400
    assert _extract_error_payload(response)["error"]["code"] == "expired"
    assert api.mailer.sent == []


def test_invalid_qr_is_not_found_for_guardian(api):
    api.add_user("mom@mail.ru", "guardian")
    response = api.client.post(
        "/family/links/initiate",
        json={"qr_data": "OSNOVCI:999:ABCDEFGH23"},
        headers=api.headers("mom@mail.ru"),
    )
    assert response.status_code == 404
    assert _extract_error_payload(response)["error"]["message"] == "Invalid or expired QR code"


def test_qr_generation_is_rate_limited(api):
    api.add_user("kid@school.ru", "student")
    statuses = [api.client.post("/family/qr", headers=api.headers("kid@school.ru")).status_code for _ in range(6)]

    assert statuses == [200] * 5 + [429]


def test_parent_pin_endpoints(api):
    api.add_user("mom@mail.ru", "guardian")

    before = api.client.post("/family/pin/verify", json={"pin": "0000"}, headers=api.headers("mom@mail.ru"))
    assert _extract_success_data(before) == {"valid": False, "has_pin": False}

    bad = api.client.post("/family/pin", json={"pin": "12"}, headers=api.headers("mom@mail.ru"))
    assert bad.status_code == 400

    assert api.client.post("/family/pin", json={"pin": "4821"}, headers=api.headers("mom@mail.ru")).status_code == 200
    ok = api.client.post(
        "/family/pin/verify",
        json={"pin": "4821", "action": "delete_account"},
        headers=api.headers("mom@mail.ru"),
    )
    assert _extract_success_data(ok) == {"valid": True, "has_pin": True, "requires_approval": True}


def test_events_feed_and_read(api):
    api.add_user("kid@school.ru", "student")
    api.add_user("mom@mail.ru", "guardian")
    qr = _extract_success_data(api.client.post("/family/qr", headers=api.headers("kid@school.ru")))
    api.client.post("/family/links/initiate", json={"qr_data": qr["qr_data"]}, headers=api.headers("mom@mail.ru"))

    feed = api.client.get("/events", headers=api.headers("kid@school.ru"))
    items = _extract_success_data(feed)
    assert [item["event_type"] for item in items] == ["family.link_requested"]
    assert feed.json()["meta"]["unread"] == 1

    read = api.client.post(f"/events/{items[0]['id']}/read", headers=api.headers("kid@school.ru"))
    assert _extract_success_data(read) == {"is_read": True}
    assert api.client.get("/events", headers=api.headers("kid@school.ru")).json()["meta"]["unread"] == 0

    foreign = api.client.post(f"/events/{items[0]['id']}/read", headers=api.headers("mom@mail.ru"))
    assert foreign.status_code == 404
    assert _extract_error_payload(foreign)["error"]["message"] == "Event not found"


def test_health_and_prometheus(api):
    health = api.client.get("/health", headers={"X-Request-ID": "req-123"})
    assert health.json()["request_id"] == "req-123"
    assert health.headers["X-Request-ID"] == "req-123"

    metrics = api.client.get("/metrics/prometheus")
    assert metrics.status_code == 200
    assert "http_requests_total" in metrics.text


def test_forwarded_for_header_does_not_reset_verify_limit(api):
    statuses = [
        api.client.post(
            "/family/links/verify",
            json={"link_code": "ABCD2345", "code": "WXYZ6789"},
            headers={"X-Forwarded-For": f"10.0.0.{i}"},
        ).status_code
        for i in range(12)
    ]

    assert statuses == [404] * 10 + [429] * 2
