from osnovci.db.models.consent_audit_log import ConsentAuditLog
from osnovci.db.models.event_feed import EventFeed
from osnovci.db.models.family_link import FamilyLink
from osnovci.db.models.link_request import LinkRequest
from osnovci.db.models.login_history import LoginHistory
from osnovci.db.models.user import User

__all__ = [
    "ConsentAuditLog",
    "EventFeed",
    "FamilyLink",
    "LinkRequest",
    "LoginHistory",
    "User",
]
