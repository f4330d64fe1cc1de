from __future__ import annotations

from enum import Enum


class Permission(str, Enum):
    VIEW_ALL_ORGANISATIONS = "view_all_organisations"
    EDIT_ALL_ORGANISATIONS = "edit_all_organisations"
    VIEW_ALL_USERS = "view_all_users"
    EDIT_ALL_USERS = "edit_all_users"
    VIEW_ALL_REPORTS = "view_all_reports"
    EDIT_ALL_REPORTS = "edit_all_reports"
    VIEW_ALL_TEMPLATES = "view_all_templates"
    EDIT_ALL_TEMPLATES = "edit_all_templates"
    VIEW_ALL_RECORDS = "view_all_records"
    EDIT_ALL_RECORDS = "edit_all_records"
    IMPERSONATE_USERS = "impersonate_users"
    MANAGE_SUPER_ADMINS = "manage_super_admins"
    VIEW_AUDIT_LOGS = "view_audit_logs"
    SEND_NOTIFICATIONS = "send_notifications"


PERMISSION_TOKENS: frozenset[str] = frozenset(permission.value for permission in Permission)

_READONLY: tuple[Permission, ...] = (
    Permission.VIEW_ALL_ORGANISATIONS,
    Permission.VIEW_ALL_USERS,
    Permission.VIEW_ALL_REPORTS,
    Permission.VIEW_ALL_TEMPLATES,
    Permission.VIEW_ALL_RECORDS,
    Permission.VIEW_AUDIT_LOGS,
)

# Preset bundles operators apply instead of granting tokens one by one.
PERMISSION_GROUPS: dict[str, tuple[Permission, ...]] = {
    "readonly": _READONLY,
    "support": _READONLY + (Permission.IMPERSONATE_USERS,),
    "full_access": tuple(Permission),
}


def parse_permission(token: str) -> Permission | None:
    # Unknown tokens are never granted.
    try:
        return Permission(token)
    except ValueError:
        return None
