import os
import re
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from osnovci.core.api_response import success_response_payload
from osnovci.core.errors import AuthenticationError, ConflictError, LockedError, ValidationError
from osnovci.core.kv_store import KeyValueStore, get_kv_store
from osnovci.core.lockout import AccountLockout, LockoutStatus, normalize_email
from osnovci.core.metrics import increment_counter
from osnovci.core.observability import client_ip, log_business_event, user_agent
from osnovci.core.permissions import normalize_role
from osnovci.core.rate_limit import check_rate_limit
from osnovci.core.security import access_token_for, get_current_user, hash_password, verify_password
from osnovci.db.models.login_history import (
    LOGIN_RESULT_INVALID,
    LOGIN_RESULT_LOCKED,
    LOGIN_RESULT_LOCKED_NOW,
    LOGIN_RESULT_SUCCESS,
    LoginHistory,
)
from osnovci.db.models.user import User
from osnovci.db.session import get_db
from osnovci.schemas.auth import LoginIn, RegisterIn

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)

LOGIN_IP_LIMIT = int(os.getenv("LOGIN_IP_LIMIT", "30"))
LOGIN_IP_WINDOW_SECONDS = int(os.getenv("LOGIN_IP_WINDOW_SECONDS", "60"))
REGISTER_IP_LIMIT = int(os.getenv("REGISTER_IP_LIMIT", "10"))
REGISTER_IP_WINDOW_SECONDS = int(os.getenv("REGISTER_IP_WINDOW_SECONDS", "3600"))

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _validate_email(email: str) -> None:
    if not EMAIL_RE.match(email):
        raise ValidationError("Invalid email format")


def _write_login_history(
    db: Session,
    request: Request,
    *,
    email: str,
    result: str,
    user: User | None = None,
    status: LockoutStatus | None = None,
) -> None:
    db.add(
        LoginHistory(
            user_id=user.id if user else None,
            email=email,
            ip=client_ip(request),
            user_agent=user_agent(request),
            result=result,
            attempts_remaining=status.attempts_remaining if status else None,
            locked_until=status.locked_until if status else None,
            created_at=_utc_now_naive(),
        )
    )
    db.commit()


def _locked_error(status: LockoutStatus, lockout: AccountLockout) -> LockedError:
    return LockedError(
        status.message,
        locked_until=status.locked_until,
        retry_after_seconds=status.retry_after_seconds(lockout.now()),
    )


def _serialize_user(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "display_name": user.display_name,
        "role": normalize_role(user.role),
    }


@router.post("/register", status_code=201)
def register(
    payload: RegisterIn,
    request: Request,
    db: Session = Depends(get_db),
    store: KeyValueStore = Depends(get_kv_store),
):
    email = normalize_email(payload.email)
    _validate_email(email)
    check_rate_limit(
        store,
        client_ip(request) or "unknown",
        "register",
        limit=REGISTER_IP_LIMIT,
        window_seconds=REGISTER_IP_WINDOW_SECONDS,
    )

    if db.query(User.id).filter(User.email == email).first():
        raise ConflictError("Email already registered")

    user = User(
        email=email,
        hashed_password=hash_password(payload.password),
        display_name=payload.display_name.strip(),
        role=payload.role,
        is_active=True,
        token_version=0,
        created_at=_utc_now_naive(),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    log_business_event(logger, request, event="auth.register", user_id=user.id, role=user.role)
    return success_response_payload(request, data=_serialize_user(user))


@router.post("/login")
def login(
    payload: LoginIn,
    request: Request,
    db: Session = Depends(get_db),
    store: KeyValueStore = Depends(get_kv_store),
):
    increment_counter("auth_login_total")
    email = normalize_email(payload.email)
    _validate_email(email)
    check_rate_limit(
        store,
        client_ip(request) or "unknown",
        "login",
        limit=LOGIN_IP_LIMIT,
        window_seconds=LOGIN_IP_WINDOW_SECONDS,
    )

    lockout = AccountLockout(store)
    status = lockout.is_account_locked(email)
    if status.locked:
        increment_counter("auth_login_result_total", result="locked")
        _write_login_history(db, request, email=email, result=LOGIN_RESULT_LOCKED, status=status)
        log_business_event(logger, request, event="auth.login", result="locked", email=email)
        raise _locked_error(status, lockout)

    user = db.query(User).filter(User.email == email).first()
    if user is None or not user.is_active or not verify_password(payload.password, user.hashed_password):
        status = lockout.record_login_attempt(email, success=False)
        _write_login_history(
            db,
            request,
            email=email,
            result=LOGIN_RESULT_LOCKED_NOW if status.locked else LOGIN_RESULT_INVALID,
            user=user,
            status=status,
        )
        if status.locked:
            increment_counter("auth_login_result_total", result="locked_now")
            increment_counter("lockout_total")
            log_business_event(logger, request, event="auth.login", result="locked_now", email=email)
            raise _locked_error(status, lockout)
        increment_counter("auth_login_result_total", result="invalid_credentials")
        log_business_event(
            logger,
            request,
            event="auth.login",
            result="invalid_credentials",
            email=email,
            attempts_remaining=status.attempts_remaining,
        )
        raise AuthenticationError(
            "Invalid email or password",
            details={"attempts_remaining": status.attempts_remaining},
        )

    lockout.record_login_attempt(email, success=True)
    _write_login_history(db, request, email=email, result=LOGIN_RESULT_SUCCESS, user=user)
    increment_counter("auth_login_result_total", result="success")
    log_business_event(logger, request, event="auth.login", result="success", email=email)
    return success_response_payload(
        request,
        data={
            "access_token": access_token_for(user),
            "token_type": "bearer",
            "user": _serialize_user(user),
        },
    )


@router.get("/me")
def me(request: Request, current_user: User = Depends(get_current_user)):
    return success_response_payload(request, data=_serialize_user(current_user))
