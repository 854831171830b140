from typing import Literal

ROLE_STUDENT = "student"
ROLE_GUARDIAN = "guardian"
ROLE_ADMIN = "admin"

ROLES = (ROLE_STUDENT, ROLE_GUARDIAN, ROLE_ADMIN)

LinkPermission = Literal[
    "VIEW_GRADES",
    "VIEW_HOMEWORK",
    "VIEW_SCHEDULE",
    "VIEW_ATTENDANCE",
    "SEND_MESSAGES",
    "VIEW_ACTIVITIES",
    "EDIT_PROFILE",
    "APPROVE_ACTIVITIES",
]

Relation = Literal["MOTHER", "FATHER", "GRANDMOTHER", "GRANDFATHER", "OTHER"]

LINK_PERMISSION_LABELS: dict[str, str] = {
    "VIEW_GRADES": "View grades",
    "VIEW_HOMEWORK": "View homework",
    "VIEW_SCHEDULE": "View schedule",
    "VIEW_ATTENDANCE": "View attendance",
    "SEND_MESSAGES": "Send messages",
    "VIEW_ACTIVITIES": "View activity log",
    "EDIT_PROFILE": "Edit profile",
    "APPROVE_ACTIVITIES": "Approve activities",
}

DEFAULT_LINK_PERMISSIONS: list[str] = ["VIEW_GRADES", "VIEW_HOMEWORK", "VIEW_SCHEDULE"]


def normalize_role(role: str | None) -> str:
    value = (role or "").strip().lower()
    if value in ROLES:
        return value
    return ROLE_STUDENT


def normalize_permissions(permissions: list[str] | None) -> list[str]:
    """Deduplicate while keeping catalog order; unknown names are dropped."""
    if permissions is None:
        return list(DEFAULT_LINK_PERMISSIONS)
    requested = {p.strip().upper() for p in permissions if isinstance(p, str)}
    return [p for p in LINK_PERMISSION_LABELS if p in requested]


def link_permissions_catalog_payload() -> dict:
    return {
        "permissions": [
            {"permission": permission, "label": label, "default": permission in DEFAULT_LINK_PERMISSIONS}
            for permission, label in LINK_PERMISSION_LABELS.items()
        ],
        "relations": ["MOTHER", "FATHER", "GRANDMOTHER", "GRANDFATHER", "OTHER"],
    }
