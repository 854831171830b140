"""Two-party guardian/student linking ("stranger danger" protection).

A guardian scans the QR code shown on the student's device, the student
explicitly approves the request in the app, and the guardian then proves
ownership of their email address with a code sent to it. Only after both
confirmations does a ``FamilyLink`` exist.

Failures never reveal whether a given student account exists: an unknown QR
token, an unknown student and a non-student account all produce the same
error.
"""

import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import update
from sqlalchemy.orm import Session

from osnovci.core.audit import (
    AUDIT_CHILD_APPROVED,
    AUDIT_CHILD_REJECTED,
    AUDIT_GUARDIAN_VERIFIED,
    AUDIT_GUARDIAN_VERIFY_FAILED,
    AUDIT_LINK_EXPIRED,
    AUDIT_LINK_INITIATED,
    AUDIT_LINK_SUPERSEDED,
    record_consent_event,
)
from osnovci.core.errors import (
    AuthorizationError,
    ConflictError,
    ExpiredError,
    NotFoundError,
    ValidationError,
)
from osnovci.core.events import (
    EVENT_LINK_ACTIVE,
    EVENT_LINK_CHILD_APPROVED,
    EVENT_LINK_CHILD_REJECTED,
    EVENT_LINK_REQUESTED,
    EVENT_SEVERITY_WARNING,
    emit_event,
)
from osnovci.core.kv_store import KeyValueStore
from osnovci.core.mailer import OutgoingEmail
from osnovci.core.permissions import ROLE_GUARDIAN, ROLE_STUDENT, normalize_permissions
from osnovci.core.security import generate_code, hash_code, verify_code
from osnovci.db.models.family_link import FamilyLink
from osnovci.db.models.link_request import (
    LINK_STATUS_CHILD_APPROVED,
    LINK_STATUS_EXPIRED,
    LINK_STATUS_GUARDIAN_VERIFIED,
    LINK_STATUS_INITIATED,
    LINK_STATUS_REJECTED,
    OPEN_LINK_STATUSES,
    LinkRequest,
)
from osnovci.db.models.user import User

logger = logging.getLogger(__name__)

LINK_REQUEST_TTL_MINUTES = int(os.getenv("LINK_REQUEST_TTL_MINUTES", "30"))
LINK_QR_TTL_HOURS = int(os.getenv("LINK_QR_TTL_HOURS", "24"))
LINK_VERIFY_MAX_ATTEMPTS = int(os.getenv("LINK_VERIFY_MAX_ATTEMPTS", "5"))
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:3000").rstrip("/")

LINK_CODE_LENGTH = 8
EMAIL_CODE_LENGTH = 8
QR_TOKEN_LENGTH = 10
QR_PREFIX = "OSNOVCI"

INVALID_QR_MESSAGE = "Invalid or expired QR code"
INVALID_LINK_MESSAGE = "Invalid or unknown link code"

_QR_RE = re.compile(r"^OSNOVCI:(\d{1,18}):([A-Z0-9]{6,32})$")


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _qr_key(token: str) -> str:
    return f"link-qr:{token}"


def _qr_student_key(student_id: int) -> str:
    return f"link-qr-student:{student_id}"


def normalize_link_code(link_code: str) -> str:
    return (link_code or "").strip().upper()


@dataclass
class ApprovalOutcome:
    link_request: LinkRequest
    guardian_email: OutgoingEmail


def generate_student_qr(store: KeyValueStore, student: User) -> dict:
    """Issue (or reuse) the QR token a guardian scans to start linking."""
    if normalize_role_of(student) != ROLE_STUDENT:
        raise AuthorizationError("Only students can generate a link code")

    ttl_seconds = LINK_QR_TTL_HOURS * 3600
    token = store.get(_qr_student_key(student.id))
    remaining = store.ttl(_qr_key(token)) if token else None
    if not token or store.get(_qr_key(token)) != str(student.id) or not remaining:
        token = generate_code(QR_TOKEN_LENGTH)
        store.set(_qr_key(token), str(student.id), ttl_seconds=ttl_seconds)
        store.set(_qr_student_key(student.id), token, ttl_seconds=ttl_seconds)
        remaining = ttl_seconds
        logger.info("Issued link QR token student_id=%s", student.id)

    expires_at = _utc_now_naive() + timedelta(seconds=remaining)
    return {
        "qr_token": token,
        "qr_data": f"{QR_PREFIX}:{student.id}:{token}",
        "expires_at": expires_at.isoformat(),
    }


def normalize_role_of(user: User | None) -> str | None:
    if user is None:
        return None
    return (user.role or "").strip().lower()


def parse_qr_payload(raw: str) -> tuple[int, str]:
    match = _QR_RE.match((raw or "").strip().upper())
    if not match:
        raise ValidationError("Malformed QR payload")
    return int(match.group(1)), match.group(2)


def _new_link_code(db: Session) -> str:
    for _ in range(5):
        code = generate_code(LINK_CODE_LENGTH)
        if not db.query(LinkRequest.id).filter(LinkRequest.link_code == code).first():
            return code
    raise RuntimeError("Could not allocate a unique link code")


def _active_link(db: Session, guardian_id: int, student_id: int) -> FamilyLink | None:
    return (
        db.query(FamilyLink)
        .filter(FamilyLink.guardian_id == guardian_id, FamilyLink.student_id == student_id)
        .first()
    )


def _transition(db: Session, req: LinkRequest, from_statuses: tuple[str, ...], **values) -> bool:
    """Compare-and-set on status so that a transition is applied at most once."""
    result = db.execute(
        update(LinkRequest)
        .where(LinkRequest.id == req.id, LinkRequest.status.in_(from_statuses))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _load_request(db: Session, link_code: str) -> LinkRequest | None:
    code = normalize_link_code(link_code)
    if not code:
        return None
    return db.query(LinkRequest).filter(LinkRequest.link_code == code).first()


def _expire(db: Session, req: LinkRequest, *, reason: str) -> None:
    if _transition(db, req, OPEN_LINK_STATUSES, status=LINK_STATUS_EXPIRED):
        record_consent_event(
            db,
            action=AUDIT_LINK_EXPIRED,
            student_id=req.student_id,
            guardian_id=req.guardian_id,
            link_request_id=req.id,
            meta={"reason": reason},
        )
    db.commit()
    db.refresh(req)


def _ensure_not_expired(db: Session, req: LinkRequest) -> None:
    if req.status == LINK_STATUS_EXPIRED:
        raise ExpiredError()
    if req.is_open and req.expires_at <= _utc_now_naive():
        _expire(db, req, reason="ttl")
        raise ExpiredError()


def initiate_link(
    db: Session,
    store: KeyValueStore,
    *,
    qr_data: str,
    guardian: User | None,
    relation: str = "OTHER",
    permissions: list[str] | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
) -> LinkRequest:
    if guardian is None or not guardian.is_active or normalize_role_of(guardian) != ROLE_GUARDIAN:
        raise AuthorizationError("Only guardian accounts can link to a student")

    student_id, token = parse_qr_payload(qr_data)
    if store.get(_qr_key(token)) != str(student_id):
        raise NotFoundError(INVALID_QR_MESSAGE)
    student = db.get(User, student_id)
    if student is None or not student.is_active or normalize_role_of(student) != ROLE_STUDENT:
        raise NotFoundError(INVALID_QR_MESSAGE)

    existing = _active_link(db, guardian.id, student.id)
    if existing is not None and existing.is_active:
        raise ConflictError("You are already linked to this student")

    now = _utc_now_naive()
    open_requests = (
        db.query(LinkRequest)
        .filter(
            LinkRequest.guardian_id == guardian.id,
            LinkRequest.student_id == student.id,
            LinkRequest.status.in_(OPEN_LINK_STATUSES),
        )
        .all()
    )
    for previous in open_requests:
        if _transition(db, previous, OPEN_LINK_STATUSES, status=LINK_STATUS_EXPIRED):
            record_consent_event(
                db,
                action=AUDIT_LINK_SUPERSEDED,
                actor_user_id=guardian.id,
                student_id=student.id,
                guardian_id=guardian.id,
                link_request_id=previous.id,
            )

    req = LinkRequest(
        link_code=_new_link_code(db),
        student_id=student.id,
        guardian_id=guardian.id,
        status=LINK_STATUS_INITIATED,
        relation=relation,
        permissions=normalize_permissions(permissions),
        email_code_hash=None,
        verify_attempts=0,
        expires_at=now + timedelta(minutes=LINK_REQUEST_TTL_MINUTES),
        created_at=now,
    )
    db.add(req)
    db.flush()

    record_consent_event(
        db,
        action=AUDIT_LINK_INITIATED,
        actor_user_id=guardian.id,
        student_id=student.id,
        guardian_id=guardian.id,
        link_request_id=req.id,
        meta={"relation": relation, "permissions": req.permissions},
        ip=ip,
        user_agent=user_agent,
    )
    emit_event(
        db,
        event_type=EVENT_LINK_REQUESTED,
        target_user_id=student.id,
        actor_user_id=guardian.id,
        severity=EVENT_SEVERITY_WARNING,
        title="Someone wants to link to your account",
        body=(
            f"{guardian.display_name or guardian.email} scanned your QR code. "
            "Approve only if this is really your parent or guardian."
        ),
        target_ref=f"link_request:{req.link_code}",
        meta_json={"link_code": req.link_code, "guardian_email": guardian.email},
    )
    db.commit()
    db.refresh(req)
    logger.info(
        "Link initiated, awaiting child approval request_id=%s student_id=%s guardian_id=%s",
        req.id,
        student.id,
        guardian.id,
    )
    return req


def _guardian_email_for(req: LinkRequest, guardian: User, student: User | None, email_code: str) -> OutgoingEmail:
    student_name = (student.display_name if student else "") or "your child"
    verify_url = f"{PUBLIC_BASE_URL}/family/verify?link_code={req.link_code}&code={email_code}"
    return OutgoingEmail(
        to=guardian.email,
        subject="Confirm the link to your child's Osnovci account",
        body=(
            f"{student_name} approved your request to link accounts.\n\n"
            f"To finish linking, open this link:\n{verify_url}\n\n"
            f"or enter this code: {email_code}\n\n"
            f"The code expires at {req.expires_at.isoformat()} UTC. "
            "If you did not request this, ignore this email."
        ),
    )


def _decide_as_child(db: Session, link_code: str, student_id: int) -> LinkRequest:
    req = _load_request(db, link_code)
    if req is None:
        raise NotFoundError(INVALID_LINK_MESSAGE)
    _ensure_not_expired(db, req)
    if req.student_id != student_id:
        raise AuthorizationError("Not allowed to act on this link request")
    if req.status != LINK_STATUS_INITIATED:
        raise ConflictError("Link request is already finalized")
    return req


def child_approves(
    db: Session,
    link_code: str,
    student_id: int,
    *,
    ip: str | None = None,
    user_agent: str | None = None,
) -> ApprovalOutcome:
    req = _decide_as_child(db, link_code, student_id)

    email_code = generate_code(EMAIL_CODE_LENGTH)
    now = _utc_now_naive()
    applied = _transition(
        db,
        req,
        (LINK_STATUS_INITIATED,),
        status=LINK_STATUS_CHILD_APPROVED,
        email_code_hash=hash_code(email_code),
        child_decided_at=now,
    )
    if not applied:
        db.rollback()
        raise ConflictError("Link request is already finalized")

    record_consent_event(
        db,
        action=AUDIT_CHILD_APPROVED,
        actor_user_id=student_id,
        student_id=req.student_id,
        guardian_id=req.guardian_id,
        link_request_id=req.id,
        ip=ip,
        user_agent=user_agent,
    )
    student = db.get(User, req.student_id)
    guardian = db.get(User, req.guardian_id)
    emit_event(
        db,
        event_type=EVENT_LINK_CHILD_APPROVED,
        target_user_id=req.guardian_id,
        actor_user_id=student_id,
        title="Your link request was approved",
        body="Check your email for the verification link to finish linking.",
        target_ref=f"link_request:{req.link_code}",
    )
    db.commit()
    db.refresh(req)
    logger.info("Child approved link request_id=%s student_id=%s", req.id, student_id)
    return ApprovalOutcome(link_request=req, guardian_email=_guardian_email_for(req, guardian, student, email_code))


def child_rejects(
    db: Session,
    link_code: str,
    student_id: int,
    *,
    ip: str | None = None,
    user_agent: str | None = None,
) -> LinkRequest:
    req = _decide_as_child(db, link_code, student_id)

    applied = _transition(
        db,
        req,
        (LINK_STATUS_INITIATED,),
        status=LINK_STATUS_REJECTED,
        child_decided_at=_utc_now_naive(),
    )
    if not applied:
        db.rollback()
        raise ConflictError("Link request is already finalized")

    record_consent_event(
        db,
        action=AUDIT_CHILD_REJECTED,
        actor_user_id=student_id,
        student_id=req.student_id,
        guardian_id=req.guardian_id,
        link_request_id=req.id,
        ip=ip,
        user_agent=user_agent,
    )
    emit_event(
        db,
        event_type=EVENT_LINK_CHILD_REJECTED,
        target_user_id=req.guardian_id,
        actor_user_id=student_id,
        title="Your link request was declined",
        target_ref=f"link_request:{req.link_code}",
    )
    db.commit()
    db.refresh(req)
    logger.info("Child rejected link request_id=%s student_id=%s", req.id, student_id)
    return req


def guardian_verifies(
    db: Session,
    link_code: str,
    email_code: str,
    *,
    ip: str | None = None,
    user_agent: str | None = None,
) -> FamilyLink:
    req = _load_request(db, link_code)
    if req is None or not req.is_open:
        raise NotFoundError(INVALID_LINK_MESSAGE)
    _ensure_not_expired(db, req)
    if req.status != LINK_STATUS_CHILD_APPROVED:
        # The child has not approved yet; indistinguishable from an unknown code.
        raise NotFoundError(INVALID_LINK_MESSAGE)

    if not verify_code(email_code or "", req.email_code_hash):
        db.execute(
            update(LinkRequest)
            .where(LinkRequest.id == req.id)
            .values(verify_attempts=LinkRequest.verify_attempts + 1)
            .execution_options(synchronize_session=False)
        )
        db.flush()
        db.refresh(req)
        rejected = False
        if req.verify_attempts >= LINK_VERIFY_MAX_ATTEMPTS:
            rejected = _transition(db, req, (LINK_STATUS_CHILD_APPROVED,), status=LINK_STATUS_REJECTED)
        record_consent_event(
            db,
            action=AUDIT_GUARDIAN_VERIFY_FAILED,
            guardian_id=req.guardian_id,
            student_id=req.student_id,
            link_request_id=req.id,
            meta={"attempts": req.verify_attempts, "rejected": rejected},
            ip=ip,
            user_agent=user_agent,
        )
        db.commit()
        logger.warning(
            "Guardian verification failed request_id=%s attempts=%s rejected=%s",
            req.id,
            req.verify_attempts,
            rejected,
        )
        if rejected:
            raise ValidationError("Too many invalid codes. The link request was cancelled.")
        raise ValidationError("Invalid verification code")

    now = _utc_now_naive()
    applied = _transition(
        db,
        req,
        (LINK_STATUS_CHILD_APPROVED,),
        status=LINK_STATUS_GUARDIAN_VERIFIED,
        email_code_hash=None,
        verified_at=now,
    )
    if not applied:
        db.rollback()
        raise NotFoundError(INVALID_LINK_MESSAGE)
    db.refresh(req)

    link = _active_link(db, req.guardian_id, req.student_id)
    if link is None:
        link = FamilyLink(
            guardian_id=req.guardian_id,
            student_id=req.student_id,
            created_at=now,
        )
        db.add(link)
    link.link_request_id = req.id
    link.relation = req.relation
    link.permissions = list(req.permissions or [])
    link.is_active = True
    link.revoked_at = None
    link.revoked_by_user_id = None
    db.flush()

    record_consent_event(
        db,
        action=AUDIT_GUARDIAN_VERIFIED,
        actor_user_id=req.guardian_id,
        student_id=req.student_id,
        guardian_id=req.guardian_id,
        link_request_id=req.id,
        meta={"family_link_id": link.id, "permissions": link.permissions},
        ip=ip,
        user_agent=user_agent,
    )
    for target in (req.student_id, req.guardian_id):
        emit_event(
            db,
            event_type=EVENT_LINK_ACTIVE,
            target_user_id=target,
            actor_user_id=req.guardian_id,
            title="Family link is active",
            target_ref=f"family_link:{link.id}",
        )
    db.commit()
    db.refresh(link)
    logger.info(
        "Link created after two-party verification link_id=%s student_id=%s guardian_id=%s",
        link.id,
        link.student_id,
        link.guardian_id,
    )
    return link


def get_link_request(db: Session, link_code: str, user: User) -> LinkRequest:
    req = _load_request(db, link_code)
    if req is None or user.id not in (req.student_id, req.guardian_id):
        raise NotFoundError(INVALID_LINK_MESSAGE)
    if req.is_open and req.expires_at <= _utc_now_naive():
        _expire(db, req, reason="ttl")
    return req


def list_pending_for_student(db: Session, student_id: int) -> list[tuple[LinkRequest, User]]:
    return (
        db.query(LinkRequest, User)
        .join(User, User.id == LinkRequest.guardian_id)
        .filter(
            LinkRequest.student_id == student_id,
            LinkRequest.status == LINK_STATUS_INITIATED,
            LinkRequest.expires_at > _utc_now_naive(),
        )
        .order_by(LinkRequest.created_at.desc())
        .all()
    )


def expire_stale_link_requests(db: Session) -> int:
    stale = (
        db.query(LinkRequest)
        .filter(LinkRequest.status.in_(OPEN_LINK_STATUSES), LinkRequest.expires_at <= _utc_now_naive())
        .all()
    )
    expired = 0
    for req in stale:
        if _transition(db, req, OPEN_LINK_STATUSES, status=LINK_STATUS_EXPIRED):
            record_consent_event(
                db,
                action=AUDIT_LINK_EXPIRED,
                student_id=req.student_id,
                guardian_id=req.guardian_id,
                link_request_id=req.id,
                meta={"reason": "sweep"},
            )
            expired += 1
    db.commit()
    if expired:
        logger.info("Expired stale link requests count=%s", expired)
    return expired


def serialize_link_request(req: LinkRequest, *, guardian: User | None = None) -> dict:
    payload = {
        "link_code": req.link_code,
        "status": req.status,
        "student_id": req.student_id,
        "guardian_id": req.guardian_id,
        "relation": req.relation,
        "permissions": list(req.permissions or []),
        "expires_at": req.expires_at.isoformat(),
        "created_at": req.created_at.isoformat(),
    }
    if guardian is not None:
        payload["guardian"] = {"display_name": guardian.display_name, "email": guardian.email}
    return payload
