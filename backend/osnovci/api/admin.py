import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from osnovci.core.api_response import iso_or_none, paged_response_payload, success_response_payload
from osnovci.core.audit import AUDIT_ACCOUNT_UNLOCKED, record_consent_event
from osnovci.core.kv_store import KeyValueStore, get_kv_store
from osnovci.core.lockout import AccountLockout, normalize_email
from osnovci.core.observability import client_ip, log_business_event, user_agent
from osnovci.core.paging import paginate_query
from osnovci.core.security import require_role
from osnovci.db.models.consent_audit_log import ConsentAuditLog
from osnovci.db.models.user import User
from osnovci.db.session import get_db
from osnovci.schemas.auth import UnlockIn

router = APIRouter(prefix="/admin", tags=["admin"])
logger = logging.getLogger(__name__)


def _serialize_audit(row: ConsentAuditLog) -> dict:
    return {
        "id": row.id,
        "action": row.action,
        "actor_user_id": row.actor_user_id,
        "student_id": row.student_id,
        "guardian_id": row.guardian_id,
        "link_request_id": row.link_request_id,
        "meta": row.meta_json,
        "ip": row.ip,
        "created_at": iso_or_none(row.created_at),
    }


@router.get("/lockouts/{email}")
def get_lockout(
    email: str,
    request: Request,
    store: KeyValueStore = Depends(get_kv_store),
    _: User = Depends(require_role("admin")),
):
    lockout = AccountLockout(store)
    status = lockout.is_account_locked(email)
    data = status.to_dict()
    data["email"] = normalize_email(email)
    data["failed_attempts"] = lockout.get_failed_attempts(email)
    return success_response_payload(request, data=data)


@router.post("/lockouts/unlock")
def unlock(
    payload: UnlockIn,
    request: Request,
    db: Session = Depends(get_db),
    store: KeyValueStore = Depends(get_kv_store),
    current_user: User = Depends(require_role("admin")),
):
    email = normalize_email(payload.email)
    AccountLockout(store).unlock_account(email)
    target = db.query(User).filter(User.email == email).first()
    record_consent_event(
        db,
        action=AUDIT_ACCOUNT_UNLOCKED,
        actor_user_id=current_user.id,
        student_id=target.id if target and target.role == "student" else None,
        guardian_id=target.id if target and target.role == "guardian" else None,
        meta={"email": email},
        ip=client_ip(request),
        user_agent=user_agent(request),
    )
    db.commit()
    log_business_event(logger, request, event="admin.unlock", email=email, actor_user_id=current_user.id)
    return success_response_payload(request, data={"email": email, "locked": False})


@router.get("/consent-audit")
def consent_audit(
    request: Request,
    student_id: int | None = None,
    guardian_id: int | None = None,
    action: str | None = None,
    page: int = 1,
    page_size: int = 50,
    db: Session = Depends(get_db),
    _: User = Depends(require_role("admin")),
):
    query = db.query(ConsentAuditLog)
    if student_id is not None:
        query = query.filter(ConsentAuditLog.student_id == student_id)
    if guardian_id is not None:
        query = query.filter(ConsentAuditLog.guardian_id == guardian_id)
    if action:
        query = query.filter(ConsentAuditLog.action == action.strip())
    query = query.order_by(ConsentAuditLog.created_at.desc(), ConsentAuditLog.id.desc())
    paged = paginate_query(query, page=page, page_size=page_size)
    return paged_response_payload(request, paged, _serialize_audit)
