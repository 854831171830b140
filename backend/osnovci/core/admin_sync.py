import logging
import os
import re
from dataclasses import dataclass

from sqlalchemy.orm import Session

from osnovci.core.lockout import normalize_email
from osnovci.core.permissions import ROLE_ADMIN, ROLE_STUDENT
from osnovci.core.security import hash_password
from osnovci.db.models.user import User

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def parse_admin_emails(raw: str) -> list[str]:
    emails = [normalize_email(x) for x in raw.split(",") if x.strip()]
    invalid = [email for email in emails if not EMAIL_RE.match(email)]
    if invalid:
        raise ValueError(f"Invalid emails: {', '.join(invalid)}")
    return sorted(set(emails))


def get_runtime_admin_emails() -> list[str]:
    return parse_admin_emails(os.getenv("ADMIN_EMAILS", ""))


@dataclass
class AdminSyncResult:
    created: int = 0
    promoted: int = 0
    demoted: int = 0
    skipped_create_without_password: int = 0


def sync_admin_users(db: Session, admin_emails: list[str], admin_password: str | None) -> AdminSyncResult:
    """Make the admin role match ADMIN_EMAILS exactly.

    Admins missing from the list fall back to the student role and have their
    tokens invalidated. Listed emails without an account are created only
    when a bootstrap password is configured.
    """
    result = AdminSyncResult()
    target = set(admin_emails)

    all_users = db.query(User).all()
    by_email = {u.email.lower(): u for u in all_users}

    for user in all_users:
        if user.role == ROLE_ADMIN and user.email.lower() not in target:
            user.role = ROLE_STUDENT
            user.token_version = (user.token_version or 0) + 1
            result.demoted += 1

    for email in admin_emails:
        existing = by_email.get(email)
        if existing:
            if existing.role != ROLE_ADMIN or not existing.is_active:
                existing.role = ROLE_ADMIN
                existing.is_active = True
                existing.token_version = (existing.token_version or 0) + 1
                result.promoted += 1
            continue

        if not admin_password:
            result.skipped_create_without_password += 1
            continue

        db.add(
            User(
                email=email,
                hashed_password=hash_password(admin_password),
                display_name="Administrator",
                role=ROLE_ADMIN,
                is_active=True,
                token_version=0,
            )
        )
        result.created += 1

    db.commit()
    logger.info(
        "Admin sync created=%s promoted=%s demoted=%s skipped=%s",
        result.created,
        result.promoted,
        result.demoted,
        result.skipped_create_without_password,
    )
    return result
