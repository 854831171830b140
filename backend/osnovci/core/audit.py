from datetime import datetime, timezone

from sqlalchemy.orm import Session

from osnovci.db.models.consent_audit_log import ConsentAuditLog

AUDIT_LINK_INITIATED = "link.initiated"
AUDIT_LINK_SUPERSEDED = "link.superseded"
AUDIT_CHILD_APPROVED = "link.child_approved"
AUDIT_CHILD_REJECTED = "link.child_rejected"
AUDIT_GUARDIAN_VERIFY_FAILED = "link.guardian_verify_failed"
AUDIT_GUARDIAN_VERIFIED = "link.guardian_verified"
AUDIT_LINK_EXPIRED = "link.expired"
AUDIT_LINK_REVOKED = "link.revoked"
AUDIT_PERMISSIONS_UPDATED = "link.permissions_updated"
AUDIT_ACCOUNT_UNLOCKED = "account.unlocked"
AUDIT_PIN_SET = "guardian.pin_set"


def record_consent_event(
    db: Session,
    *,
    action: str,
    actor_user_id: int | None = None,
    student_id: int | None = None,
    guardian_id: int | None = None,
    link_request_id: int | None = None,
    meta: dict | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
) -> ConsentAuditLog:
    """Add an audit row to the current transaction; the caller commits."""
    row = ConsentAuditLog(
        actor_user_id=actor_user_id,
        student_id=student_id,
        guardian_id=guardian_id,
        link_request_id=link_request_id,
        action=action,
        meta_json=meta or None,
        ip=ip,
        user_agent=user_agent,
        created_at=datetime.now(timezone.utc).replace(tzinfo=None),
    )
    db.add(row)
    return row
