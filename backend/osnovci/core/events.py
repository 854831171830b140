from datetime import datetime, timezone

from sqlalchemy.orm import Session

from osnovci.db.models.event_feed import EventFeed

EVENT_SEVERITY_INFO = "info"
EVENT_SEVERITY_WARNING = "warning"

EVENT_LINK_REQUESTED = "family.link_requested"
EVENT_LINK_CHILD_APPROVED = "family.child_approved"
EVENT_LINK_CHILD_REJECTED = "family.child_rejected"
EVENT_LINK_ACTIVE = "family.link_active"
EVENT_LINK_REVOKED = "family.link_revoked"


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def emit_event(
    db: Session,
    *,
    event_type: str,
    target_user_id: int,
    title: str,
    body: str | None = None,
    severity: str = EVENT_SEVERITY_INFO,
    target_ref: str | None = None,
    actor_user_id: int | None = None,
    meta_json: dict | None = None,
) -> EventFeed:
    event = EventFeed(
        event_type=event_type,
        severity=severity,
        title=title,
        body=body,
        target_ref=target_ref,
        actor_user_id=actor_user_id,
        target_user_id=target_user_id,
        meta_json=meta_json,
        is_read=False,
        read_at=None,
        created_at=utc_now_naive(),
    )
    db.add(event)
    db.flush()
    return event


def mark_event_read(db: Session, *, user_id: int, event_id: int) -> EventFeed | None:
    event = db.get(EventFeed, event_id)
    if not event or event.target_user_id != user_id:
        return None
    if not event.is_read:
        event.is_read = True
        event.read_at = utc_now_naive()
        db.flush()
    return event


def count_unread_events(db: Session, *, user_id: int) -> int:
    return (
        db.query(EventFeed)
        .filter(EventFeed.target_user_id == user_id, EventFeed.is_read.is_(False))
        .count()
    )
