import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from osnovci.core.api_response import iso_or_none, paged_response_payload, success_response_payload
from osnovci.core.errors import NotFoundError
from osnovci.core.events import count_unread_events, mark_event_read
from osnovci.core.metrics import increment_counter
from osnovci.core.observability import log_business_event
from osnovci.core.paging import paginate_query
from osnovci.core.security import SessionContext, get_session_context
from osnovci.db.models.event_feed import EventFeed
from osnovci.db.session import get_db

router = APIRouter(prefix="/events", tags=["events"])
logger = logging.getLogger(__name__)


def _serialize_event(event: EventFeed) -> dict:
    return {
        "id": event.id,
        "event_type": event.event_type,
        "severity": event.severity,
        "title": event.title,
        "body": event.body,
        "target_ref": event.target_ref,
        "actor_user_id": event.actor_user_id,
        "meta": event.meta_json,
        "created_at": iso_or_none(event.created_at),
        "is_read": bool(event.is_read),
        "read_at": iso_or_none(event.read_at),
    }


@router.get("")
def get_events_feed(
    request: Request,
    only_unread: bool = False,
    page: int = 1,
    page_size: int = 30,
    db: Session = Depends(get_db),
    ctx: SessionContext = Depends(get_session_context),
):
    increment_counter("events_feed_total", only_unread=str(only_unread).lower())
    q = db.query(EventFeed).filter(EventFeed.target_user_id == ctx.user_id)
    if only_unread:
        q = q.filter(EventFeed.is_read.is_(False))
    q = q.order_by(EventFeed.created_at.desc(), EventFeed.id.desc())
    paged = paginate_query(q, page=page, page_size=page_size)
    unread = count_unread_events(db, user_id=ctx.user_id)
    return paged_response_payload(request, paged, _serialize_event, extra_meta={"unread": unread})


@router.post("/{event_id}/read")
def set_read(
    event_id: int,
    request: Request,
    db: Session = Depends(get_db),
    ctx: SessionContext = Depends(get_session_context),
):
    event = mark_event_read(db, user_id=ctx.user_id, event_id=event_id)
    if not event:
        raise NotFoundError("Event not found")
    db.commit()
    increment_counter("events_read_total")
    log_business_event(logger, request, event="events.read", event_id=event_id)
    return success_response_payload(request, data={"is_read": True})
