"""Parental PIN guarding sensitive student actions.

There is no default PIN: a guardian who never set one cannot approve
anything until they do.
"""

import logging
import re

from sqlalchemy.orm import Session

from osnovci.core.audit import AUDIT_PIN_SET, record_consent_event
from osnovci.core.errors import AuthorizationError, ValidationError
from osnovci.core.permissions import ROLE_GUARDIAN, normalize_role
from osnovci.core.security import hash_password, verify_password
from osnovci.db.models.user import User

logger = logging.getLogger(__name__)

PIN_RE = re.compile(r"^\d{4,6}$")

ACTIONS_REQUIRING_APPROVAL = frozenset(
    {
        "delete_homework",
        "change_password",
        "remove_parent",
        "delete_account",
        "change_email",
    }
)


def requires_parental_approval(action: str) -> bool:
    return (action or "").strip().lower() in ACTIONS_REQUIRING_APPROVAL


def _ensure_guardian(user: User) -> None:
    if normalize_role(user.role) != ROLE_GUARDIAN:
        raise AuthorizationError("Only guardians have a parental PIN")


def set_parent_pin(db: Session, guardian: User, pin: str) -> None:
    _ensure_guardian(guardian)
    if not isinstance(pin, str) or not PIN_RE.match(pin):
        raise ValidationError("PIN must be 4 to 6 digits")
    guardian.pin_hash = hash_password(pin)
    record_consent_event(db, action=AUDIT_PIN_SET, actor_user_id=guardian.id, guardian_id=guardian.id)
    db.commit()
    logger.info("Parental PIN set guardian_id=%s", guardian.id)


def has_parent_pin(guardian: User) -> bool:
    return bool(guardian.pin_hash)


def verify_parent_pin(guardian: User, pin: str) -> bool:
    _ensure_guardian(guardian)
    if not guardian.pin_hash:
        logger.warning("Parental PIN check without a PIN set guardian_id=%s", guardian.id)
        return False
    valid = verify_password(pin or "", guardian.pin_hash)
    if valid:
        logger.info("Parental PIN verified guardian_id=%s", guardian.id)
    else:
        logger.warning("Parental PIN rejected guardian_id=%s", guardian.id)
    return valid
