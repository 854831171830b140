from datetime import datetime, timedelta

import pytest

from osnovci.core.errors import AuthorizationError, ConflictError, ExpiredError, NotFoundError, ValidationError
from osnovci.db.models.consent_audit_log import ConsentAuditLog
from osnovci.db.models.event_feed import EventFeed
from osnovci.db.models.family_link import FamilyLink
from osnovci.db.models.link_request import LinkRequest
from osnovci.services import stranger_danger
from osnovci.services.stranger_danger import (
    child_approves,
    child_rejects,
    expire_stale_link_requests,
    generate_student_qr,
    guardian_verifies,
    initiate_link,
    list_pending_for_student,
    parse_qr_payload,
)


def _code_from_email(body: str) -> str:
    return body.split("or enter this code: ")[1].split()[0]


@pytest.fixture()
def family(db_session, store, make_user):
    student = make_user("kid@school.ru", role="student", display_name="Masha")
    guardian = make_user("mom@mail.ru", role="guardian", display_name="Anna")
    qr = generate_student_qr(store, student)
    return student, guardian, qr


def _initiate(db_session, store, guardian, qr, **kwargs):
    return initiate_link(db_session, store, qr_data=qr["qr_data"], guardian=guardian, **kwargs)


def _age(db_session, req: LinkRequest) -> None:
    req.expires_at = datetime.utcnow() - timedelta(minutes=1)
    db_session.commit()


def test_qr_payload_format_and_reuse(store, make_user):
    student = make_user("kid@school.ru")
    first = generate_student_qr(store, student)
    second = generate_student_qr(store, student)

    assert first["qr_data"] == f"OSNOVCI:{student.id}:{first['qr_token']}"
    assert second["qr_token"] == first["qr_token"]
    assert parse_qr_payload(first["qr_data"]) == (student.id, first["qr_token"])


def test_only_students_generate_qr(store, make_user):
    guardian = make_user("mom@mail.ru", role="guardian")
    with pytest.raises(AuthorizationError):
        generate_student_qr(store, guardian)


def test_malformed_qr_payload_is_rejected():
    with pytest.raises(ValidationError):
        parse_qr_payload("https://example.com/not-a-code")


def test_full_two_party_flow_creates_link(db_session, store, family):
    student, guardian, qr = family

    req = _initiate(db_session, store, guardian, qr, relation="MOTHER")
    assert req.status == "INITIATED"
    assert req.permissions == ["VIEW_GRADES", "VIEW_HOMEWORK", "VIEW_SCHEDULE"]
    assert db_session.query(FamilyLink).count() == 0

    pending = list_pending_for_student(db_session, student.id)
    assert [(r.link_code, g.email) for r, g in pending] == [(req.link_code, "mom@mail.ru")]

    outcome = child_approves(db_session, req.link_code, student.id)
    assert outcome.link_request.status == "CHILD_APPROVED"
    assert outcome.guardian_email.to == "mom@mail.ru"
    assert req.link_code in outcome.guardian_email.body
    assert db_session.query(FamilyLink).count() == 0

    link = guardian_verifies(db_session, req.link_code, _code_from_email(outcome.guardian_email.body))
    assert link.is_active is True
    assert (link.guardian_id, link.student_id) == (guardian.id, student.id)
    assert link.relation == "MOTHER"

    db_session.refresh(req)
    assert req.status == "GUARDIAN_VERIFIED"
    assert req.email_code_hash is None

    actions = [row.action for row in db_session.query(ConsentAuditLog).order_by(ConsentAuditLog.id)]
    assert actions == ["link.initiated", "link.child_approved", "link.guardian_verified"]
    student_events = [e.event_type for e in db_session.query(EventFeed).filter(EventFeed.target_user_id == student.id)]
    assert "family.link_requested" in student_events
    assert "family.link_active" in student_events


def test_initiate_with_unknown_token_or_student_is_indistinguishable(db_session, store, family):
    student, guardian, qr = family

    with pytest.raises(NotFoundError) as unknown_token:
        initiate_link(db_session, store, qr_data=f"OSNOVCI:{student.id}:ZZZZZZZZZZ", guardian=guardian)
    with pytest.raises(NotFoundError) as wrong_student:
        initiate_link(db_session, store, qr_data=f"OSNOVCI:{student.id + 100}:{qr['qr_token']}", guardian=guardian)

    assert unknown_token.value.message == wrong_student.value.message == stranger_danger.INVALID_QR_MESSAGE


def test_student_cannot_initiate(db_session, store, family, make_user):
    _, _, qr = family
    other_student = make_user("other@school.ru", role="student")
    with pytest.raises(AuthorizationError):
        initiate_link(db_session, store, qr_data=qr["qr_data"], guardian=other_student)


def test_new_request_supersedes_open_one(db_session, store, family):
    student, guardian, qr = family
    first = _initiate(db_session, store, guardian, qr)
    second = _initiate(db_session, store, guardian, qr)

    db_session.refresh(first)
    assert first.status == "EXPIRED"
    assert second.status == "INITIATED"
    assert [r.link_code for r, _ in list_pending_for_student(db_session, student.id)] == [second.link_code]


def test_approving_expired_request_raises_expired(db_session, store, family):
    student, guardian, qr = family
    req = _initiate(db_session, store, guardian, qr)
    _age(db_session, req)

    with pytest.raises(ExpiredError):
        child_approves(db_session, req.link_code, student.id)
    db_session.refresh(req)
    assert req.status == "EXPIRED"
    with pytest.raises(ExpiredError):
        child_rejects(db_session, req.link_code, student.id)


def test_other_student_cannot_approve(db_session, store, family, make_user):
    _, guardian, qr = family
    intruder = make_user("intruder@school.ru", role="student")
    req = _initiate(db_session, store, guardian, qr)

    with pytest.raises(AuthorizationError):
        child_approves(db_session, req.link_code, intruder.id)


def test_unknown_link_code_is_not_found(db_session, family):
    student, _, _ = family
    with pytest.raises(NotFoundError):
        child_approves(db_session, "NOPE1234", student.id)


def test_second_decision_conflicts(db_session, store, family):
    student, guardian, qr = family
    req = _initiate(db_session, store, guardian, qr)
    child_approves(db_session, req.link_code, student.id)

    with pytest.raises(ConflictError):
        child_approves(db_session, req.link_code, student.id)
    with pytest.raises(ConflictError):
        child_rejects(db_session, req.link_code, student.id)


def test_rejected_request_never_links(db_session, store, family):
    student, guardian, qr = family
    req = _initiate(db_session, store, guardian, qr)
    rejected = child_rejects(db_session, req.link_code, student.id)

    assert rejected.status == "REJECTED"
    with pytest.raises(NotFoundError):
        guardian_verifies(db_session, req.link_code, "ANYCODE1")
    assert db_session.query(FamilyLink).count() == 0


def test_guardian_cannot_verify_before_child_approves(db_session, store, family):
    _, guardian, qr = family
    req = _initiate(db_session, store, guardian, qr)

    with pytest.raises(NotFoundError):
        guardian_verifies(db_session, req.link_code, "ANYCODE1")


def test_verify_after_expiry_raises_expired(db_session, store, family):
    student, guardian, qr = family
    req = _initiate(db_session, store, guardian, qr)
    outcome = child_approves(db_session, req.link_code, student.id)
    _age(db_session, req)

    with pytest.raises(ExpiredError):
        guardian_verifies(db_session, req.link_code, _code_from_email(outcome.guardian_email.body))
    assert db_session.query(FamilyLink).count() == 0


def test_wrong_codes_cancel_request_at_cap(db_session, store, family, monkeypatch):
    monkeypatch.setattr(stranger_danger, "LINK_VERIFY_MAX_ATTEMPTS", 3)
    student, guardian, qr = family
    req = _initiate(db_session, store, guardian, qr)
    outcome = child_approves(db_session, req.link_code, student.id)

    for _ in range(2):
        with pytest.raises(ValidationError) as exc_info:
            guardian_verifies(db_session, req.link_code, "WRONG123")
        assert exc_info.value.message == "Invalid verification code"
    with pytest.raises(ValidationError) as exc_info:
        guardian_verifies(db_session, req.link_code, "WRONG123")
    assert "cancelled" in exc_info.value.message

    db_session.refresh(req)
    assert req.status == "REJECTED"
    with pytest.raises(NotFoundError):
        guardian_verifies(db_session, req.link_code, _code_from_email(outcome.guardian_email.body))


def test_code_is_single_use(db_session, store, family):
    student, guardian, qr = family
    req = _initiate(db_session, store, guardian, qr)
    code = _code_from_email(child_approves(db_session, req.link_code, student.id).guardian_email.body)
    guardian_verifies(db_session, req.link_code, code)

    with pytest.raises(NotFoundError):
        guardian_verifies(db_session, req.link_code, code)
    assert db_session.query(FamilyLink).count() == 1


def test_already_linked_guardian_conflicts(db_session, store, family):
    student, guardian, qr = family
    req = _initiate(db_session, store, guardian, qr)
    code = _code_from_email(child_approves(db_session, req.link_code, student.id).guardian_email.body)
    guardian_verifies(db_session, req.link_code, code)

    with pytest.raises(ConflictError):
        _initiate(db_session, store, guardian, qr)


def test_revoked_link_is_reactivated_by_new_handshake(db_session, store, family):
    student, guardian, qr = family
    req = _initiate(db_session, store, guardian, qr)
    code = _code_from_email(child_approves(db_session, req.link_code, student.id).guardian_email.body)
    link = guardian_verifies(db_session, req.link_code, code)
    link.is_active = False
    link.revoked_at = datetime.utcnow()
    db_session.commit()

    again = _initiate(db_session, store, guardian, qr, permissions=["VIEW_ATTENDANCE"])
    code = _code_from_email(child_approves(db_session, again.link_code, student.id).guardian_email.body)
    relinked = guardian_verifies(db_session, again.link_code, code)

    assert relinked.id == link.id
    assert relinked.is_active is True
    assert relinked.revoked_at is None
    assert relinked.permissions == ["VIEW_ATTENDANCE"]


def test_sweeper_expires_stale_open_requests(db_session, store, family, make_user):
    student, guardian, qr = family
    stale = _initiate(db_session, store, guardian, qr)
    _age(db_session, stale)
    other_guardian = make_user("dad@mail.ru", role="guardian")
    fresh = _initiate(db_session, store, other_guardian, qr)

    assert expire_stale_link_requests(db_session) == 1
    assert expire_stale_link_requests(db_session) == 0
    db_session.refresh(stale)
    db_session.refresh(fresh)
    assert stale.status == "EXPIRED"
    assert fresh.status == "INITIATED"


def test_get_link_request_is_limited_to_parties(db_session, store, family, make_user):
    student, guardian, qr = family
    outsider = make_user("outsider@mail.ru", role="guardian")
    req = _initiate(db_session, store, guardian, qr)

    assert stranger_danger.get_link_request(db_session, req.link_code, student).id == req.id
    assert stranger_danger.get_link_request(db_session, req.link_code.lower(), guardian).id == req.id
    with pytest.raises(NotFoundError):
        stranger_danger.get_link_request(db_session, req.link_code, outsider)
