import logging
import os

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session

from osnovci.core.api_response import paged_response_payload, success_response_payload
from osnovci.core.kv_store import KeyValueStore, get_kv_store
from osnovci.core.mailer import Mailer, deliver_email, get_mailer
from osnovci.core.metrics import increment_counter
from osnovci.core.observability import client_ip, log_business_event, user_agent
from osnovci.core.permissions import link_permissions_catalog_payload
from osnovci.core.rate_limit import check_rate_limit
from osnovci.core.security import get_current_user, require_role
from osnovci.db.models.user import User
from osnovci.db.session import get_db
from osnovci.schemas.family import InitiateLinkIn, SetPinIn, UpdatePermissionsIn, VerifyLinkIn, VerifyPinIn
from osnovci.services import family_links, parental_lock, stranger_danger

router = APIRouter(prefix="/family", tags=["family"])
logger = logging.getLogger(__name__)

QR_GENERATE_LIMIT = int(os.getenv("QR_GENERATE_LIMIT", "5"))
QR_GENERATE_WINDOW_SECONDS = int(os.getenv("QR_GENERATE_WINDOW_SECONDS", "3600"))
LINK_INITIATE_LIMIT = int(os.getenv("LINK_INITIATE_LIMIT", "10"))
LINK_INITIATE_WINDOW_SECONDS = int(os.getenv("LINK_INITIATE_WINDOW_SECONDS", "3600"))
LINK_VERIFY_LIMIT = int(os.getenv("LINK_VERIFY_LIMIT", "10"))
LINK_VERIFY_WINDOW_SECONDS = int(os.getenv("LINK_VERIFY_WINDOW_SECONDS", "900"))
PIN_VERIFY_LIMIT = int(os.getenv("PIN_VERIFY_LIMIT", "5"))
PIN_VERIFY_WINDOW_SECONDS = int(os.getenv("PIN_VERIFY_WINDOW_SECONDS", "900"))


@router.get("/permissions-catalog")
def permissions_catalog(request: Request, _: User = Depends(get_current_user)):
    return success_response_payload(request, data=link_permissions_catalog_payload())


@router.post("/qr")
def generate_qr(
    request: Request,
    store: KeyValueStore = Depends(get_kv_store),
    current_user: User = Depends(require_role("student")),
):
    check_rate_limit(
        store,
        f"user:{current_user.id}",
        "family_qr",
        limit=QR_GENERATE_LIMIT,
        window_seconds=QR_GENERATE_WINDOW_SECONDS,
    )
    data = stranger_danger.generate_student_qr(store, current_user)
    log_business_event(logger, request, event="family.qr", student_id=current_user.id)
    return success_response_payload(request, data=data)


@router.post("/links/initiate", status_code=201)
def initiate_link(
    payload: InitiateLinkIn,
    request: Request,
    db: Session = Depends(get_db),
    store: KeyValueStore = Depends(get_kv_store),
    current_user: User = Depends(require_role("guardian")),
):
    check_rate_limit(
        store,
        f"user:{current_user.id}",
        "family_initiate",
        limit=LINK_INITIATE_LIMIT,
        window_seconds=LINK_INITIATE_WINDOW_SECONDS,
    )
    req = stranger_danger.initiate_link(
        db,
        store,
        qr_data=payload.qr_data,
        guardian=current_user,
        relation=payload.relation,
        permissions=list(payload.permissions) if payload.permissions is not None else None,
        ip=client_ip(request),
        user_agent=user_agent(request),
    )
    increment_counter("family_link_total", step="initiate", result="ok")
    log_business_event(
        logger,
        request,
        event="family.initiate",
        guardian_id=current_user.id,
        student_id=req.student_id,
        link_code=req.link_code,
    )
    data = stranger_danger.serialize_link_request(req)
    data["message"] = "QR code scanned. The student must now approve the link on their device."
    return success_response_payload(request, data=data)


@router.get("/links/pending")
def pending_requests(
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_role("student")),
):
    rows = stranger_danger.list_pending_for_student(db, current_user.id)
    items = [stranger_danger.serialize_link_request(req, guardian=guardian) for req, guardian in rows]
    return success_response_payload(request, data=items, meta={"total": len(items)})


@router.get("/links/requests/{link_code}")
def get_link_request(
    link_code: str,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    req = stranger_danger.get_link_request(db, link_code, current_user)
    return success_response_payload(request, data=stranger_danger.serialize_link_request(req))


@router.post("/links/{link_code}/approve")
def approve_link(
    link_code: str,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
    current_user: User = Depends(require_role("student")),
):
    outcome = stranger_danger.child_approves(
        db,
        link_code,
        current_user.id,
        ip=client_ip(request),
        user_agent=user_agent(request),
    )
    background_tasks.add_task(deliver_email, mailer, outcome.guardian_email)
    increment_counter("family_link_total", step="child_approve", result="ok")
    log_business_event(logger, request, event="family.child_approve", student_id=current_user.id, link_code=link_code)
    data = stranger_danger.serialize_link_request(outcome.link_request)
    data["message"] = "Approved. Your guardian will receive an email to finish linking."
    return success_response_payload(request, data=data)


@router.post("/links/{link_code}/reject")
def reject_link(
    link_code: str,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_role("student")),
):
    req = stranger_danger.child_rejects(
        db,
        link_code,
        current_user.id,
        ip=client_ip(request),
        user_agent=user_agent(request),
    )
    increment_counter("family_link_total", step="child_reject", result="ok")
    log_business_event(logger, request, event="family.child_reject", student_id=current_user.id, link_code=link_code)
    return success_response_payload(request, data=stranger_danger.serialize_link_request(req))


@router.post("/links/verify")
def verify_link(
    payload: VerifyLinkIn,
    request: Request,
    db: Session = Depends(get_db),
    store: KeyValueStore = Depends(get_kv_store),
):
    check_rate_limit(
        store,
        client_ip(request) or "unknown",
        "family_verify",
        limit=LINK_VERIFY_LIMIT,
        window_seconds=LINK_VERIFY_WINDOW_SECONDS,
    )
    link = stranger_danger.guardian_verifies(
        db,
        payload.link_code,
        payload.code,
        ip=client_ip(request),
        user_agent=user_agent(request),
    )
    increment_counter("family_link_total", step="guardian_verify", result="ok")
    log_business_event(logger, request, event="family.guardian_verify", link_id=link.id, link_code=payload.link_code)
    data = family_links.serialize_family_link(link)
    data["message"] = "Linked. You can now follow your child's progress."
    return success_response_payload(request, data=data)


@router.get("/links")
def list_links(
    request: Request,
    page: int = 1,
    page_size: int = 20,
    include_revoked: bool = False,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    paged = family_links.list_links(
        db,
        current_user,
        page=page,
        page_size=page_size,
        include_revoked=include_revoked,
    )
    return paged_response_payload(request, paged, lambda row: family_links.serialize_family_link(*row))


@router.delete("/links/{link_id}")
def revoke_link(
    link_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    link = family_links.revoke_link(
        db,
        link_id,
        current_user,
        ip=client_ip(request),
        user_agent=user_agent(request),
    )
    log_business_event(logger, request, event="family.revoke", link_id=link.id, by_user_id=current_user.id)
    return success_response_payload(request, data=family_links.serialize_family_link(link))


@router.put("/links/{link_id}/permissions")
def update_link_permissions(
    link_id: int,
    payload: UpdatePermissionsIn,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_role("student")),
):
    link = family_links.update_permissions(db, link_id, current_user, list(payload.permissions))
    return success_response_payload(request, data=family_links.serialize_family_link(link))


@router.post("/pin")
def set_pin(
    payload: SetPinIn,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_role("guardian")),
):
    parental_lock.set_parent_pin(db, current_user, payload.pin)
    return success_response_payload(request, data={"has_pin": True})


@router.post("/pin/verify")
def verify_pin(
    payload: VerifyPinIn,
    request: Request,
    store: KeyValueStore = Depends(get_kv_store),
    current_user: User = Depends(require_role("guardian")),
):
    check_rate_limit(
        store,
        f"user:{current_user.id}",
        "parent_pin",
        limit=PIN_VERIFY_LIMIT,
        window_seconds=PIN_VERIFY_WINDOW_SECONDS,
    )
    valid = parental_lock.verify_parent_pin(current_user, payload.pin)
    data = {"valid": valid, "has_pin": parental_lock.has_parent_pin(current_user)}
    if payload.action is not None:
        data["requires_approval"] = parental_lock.requires_parental_approval(payload.action)
    return success_response_payload(request, data=data)
