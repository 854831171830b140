import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from osnovci.core.audit import AUDIT_LINK_REVOKED, AUDIT_PERMISSIONS_UPDATED, record_consent_event
from osnovci.core.errors import ConflictError, NotFoundError, ValidationError
from osnovci.core.events import EVENT_LINK_REVOKED, EVENT_SEVERITY_WARNING, emit_event
from osnovci.core.paging import Page, paginate_query
from osnovci.core.permissions import ROLE_GUARDIAN, ROLE_STUDENT, normalize_permissions, normalize_role
from osnovci.db.models.family_link import FamilyLink
from osnovci.db.models.user import User

logger = logging.getLogger(__name__)


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def serialize_family_link(link: FamilyLink, counterpart: User | None = None) -> dict:
    payload = {
        "id": link.id,
        "guardian_id": link.guardian_id,
        "student_id": link.student_id,
        "relation": link.relation,
        "permissions": list(link.permissions or []),
        "is_active": bool(link.is_active),
        "created_at": link.created_at.isoformat(),
        "revoked_at": link.revoked_at.isoformat() if link.revoked_at else None,
    }
    if counterpart is not None:
        payload["counterpart"] = {
            "id": counterpart.id,
            "display_name": counterpart.display_name,
            "email": counterpart.email,
            "role": counterpart.role,
        }
    return payload


def list_links(
    db: Session,
    user: User,
    *,
    page: int = 1,
    page_size: int = 20,
    include_revoked: bool = False,
) -> Page:
    """Links of ``user`` paired with the account on the other side."""
    if normalize_role(user.role) == ROLE_GUARDIAN:
        query = db.query(FamilyLink, User).join(User, User.id == FamilyLink.student_id)
        query = query.filter(FamilyLink.guardian_id == user.id)
    else:
        query = db.query(FamilyLink, User).join(User, User.id == FamilyLink.guardian_id)
        query = query.filter(FamilyLink.student_id == user.id)
    if not include_revoked:
        query = query.filter(FamilyLink.is_active.is_(True))
    query = query.order_by(FamilyLink.created_at.desc(), FamilyLink.id.desc())
    return paginate_query(query, page=page, page_size=page_size)


def _load_for_party(db: Session, link_id: int, user: User) -> FamilyLink:
    link = db.get(FamilyLink, link_id)
    if link is None or user.id not in (link.guardian_id, link.student_id):
        raise NotFoundError("Link not found")
    return link


def revoke_link(
    db: Session,
    link_id: int,
    user: User,
    *,
    ip: str | None = None,
    user_agent: str | None = None,
) -> FamilyLink:
    link = _load_for_party(db, link_id, user)
    if not link.is_active:
        raise ConflictError("Link is already revoked")

    now = _utc_now_naive()
    link.is_active = False
    link.revoked_at = now
    link.revoked_by_user_id = user.id
    record_consent_event(
        db,
        action=AUDIT_LINK_REVOKED,
        actor_user_id=user.id,
        student_id=link.student_id,
        guardian_id=link.guardian_id,
        meta={"family_link_id": link.id},
        ip=ip,
        user_agent=user_agent,
    )
    other_party = link.student_id if user.id == link.guardian_id else link.guardian_id
    emit_event(
        db,
        event_type=EVENT_LINK_REVOKED,
        target_user_id=other_party,
        actor_user_id=user.id,
        severity=EVENT_SEVERITY_WARNING,
        title="Family link was removed",
        body=f"{user.display_name or user.email} removed the family link.",
        target_ref=f"family_link:{link.id}",
    )
    db.commit()
    db.refresh(link)
    logger.info("Family link revoked link_id=%s by_user_id=%s", link.id, user.id)
    return link


def update_permissions(
    db: Session,
    link_id: int,
    student: User,
    permissions: list[str],
) -> FamilyLink:
    link = _load_for_party(db, link_id, student)
    if normalize_role(student.role) != ROLE_STUDENT or link.student_id != student.id:
        raise NotFoundError("Link not found")
    if not link.is_active:
        raise ConflictError("Link is revoked")

    normalized = normalize_permissions(permissions)
    if not normalized:
        raise ValidationError("At least one permission is required")

    previous = list(link.permissions or [])
    link.permissions = normalized
    record_consent_event(
        db,
        action=AUDIT_PERMISSIONS_UPDATED,
        actor_user_id=student.id,
        student_id=link.student_id,
        guardian_id=link.guardian_id,
        meta={"family_link_id": link.id, "before": previous, "after": normalized},
    )
    db.commit()
    db.refresh(link)
    return link


def guardian_has_permission(db: Session, guardian_id: int, student_id: int, permission: str) -> bool:
    link = (
        db.query(FamilyLink)
        .filter(
            FamilyLink.guardian_id == guardian_id,
            FamilyLink.student_id == student_id,
            FamilyLink.is_active.is_(True),
        )
        .first()
    )
    if link is None:
        return False
    return permission.strip().upper() in set(link.permissions or [])
