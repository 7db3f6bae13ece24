"""Permission catalogue and wildcard matching.

Permissions are ``resource:action`` strings. ``*:*`` grants everything,
``resource:*`` grants every action on one resource and ``*:action`` grants one
action on every resource. The resolved set is embedded in each session token,
so changing a role's defaults only takes effect at the next sign-in.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Sequence, Union

from tenantcrm.storage.models import Role

ADMIN_ALL = "*:*"

DEAL_CREATE = "deal:create"
DEAL_READ = "deal:read"
DEAL_UPDATE = "deal:update"
DEAL_EXPORT = "deal:export"
DEAL_ALL = "deal:*"

CONTACT_CREATE = "contact:create"
CONTACT_READ = "contact:read"
CONTACT_UPDATE = "contact:update"
CONTACT_EXPORT = "contact:export"
CONTACT_ALL = "contact:*"

ACTIVITY_CREATE = "activity:create"
ACTIVITY_READ = "activity:read"
ACTIVITY_UPDATE = "activity:update"
ACTIVITY_ALL = "activity:*"

COMPANY_READ = "company:read"
COMPANY_UPDATE = "company:update"

USER_READ = "user:read"
USER_INVITE = "user:invite"

COMMENT_CREATE = "comment:create"
COMMENT_READ = "comment:read"
COMMENT_ALL = "comment:*"

ANALYTICS_READ = "analytics:read"
DATA_EXPORT = "data:export"
DATA_IMPORT = "data:import"
AUDIT_READ = "audit:read"

EMAIL_SEND = "email:send"
EMAIL_SEND_BULK = "email:send:bulk"
EMAIL_VIEW = "email:view"

ATTACHMENT_CREATE = "attachment:create"
ATTACHMENT_READ = "attachment:read"
ATTACHMENT_DELETE = "attachment:delete"
ATTACHMENT_ALL = "attachment:*"

NOTIFICATION_READ = "notification:read"
NOTIFICATION_UPDATE = "notification:update"

SEARCH_ALL = "search:all"
SEARCH_CONTACTS = "search:contacts"
SEARCH_DEALS = "search:deals"
SEARCH_COMPANIES = "search:companies"


DEFAULT_ROLE_PERMISSIONS: Dict[str, List[str]] = {
    Role.ADMIN.value: [ADMIN_ALL],
    Role.MANAGER.value: [
        DEAL_ALL,
        CONTACT_ALL,
        ACTIVITY_ALL,
        COMPANY_READ,
        COMPANY_UPDATE,
        USER_READ,
        USER_INVITE,
        COMMENT_ALL,
        ANALYTICS_READ,
        DATA_EXPORT,
        DATA_IMPORT,
        AUDIT_READ,
        EMAIL_SEND,
        EMAIL_SEND_BULK,
        EMAIL_VIEW,
        ATTACHMENT_ALL,
        NOTIFICATION_READ,
        NOTIFICATION_UPDATE,
        SEARCH_ALL,
    ],
    Role.SALES.value: [
        DEAL_CREATE,
        DEAL_READ,
        DEAL_UPDATE,
        DEAL_EXPORT,
        CONTACT_CREATE,
        CONTACT_READ,
        CONTACT_UPDATE,
        CONTACT_EXPORT,
        ACTIVITY_ALL,
        COMPANY_READ,
        USER_READ,
        COMMENT_ALL,
        ANALYTICS_READ,
        DATA_EXPORT,
        DATA_IMPORT,
        EMAIL_SEND,
        EMAIL_VIEW,
        ATTACHMENT_CREATE,
        ATTACHMENT_READ,
        ATTACHMENT_DELETE,
        NOTIFICATION_READ,
        NOTIFICATION_UPDATE,
        SEARCH_ALL,
    ],
    Role.EMPLOYEE.value: [
        DEAL_READ,
        DEAL_CREATE,
        CONTACT_READ,
        ACTIVITY_CREATE,
        ACTIVITY_READ,
        ACTIVITY_UPDATE,
        COMPANY_READ,
        USER_READ,
        COMMENT_CREATE,
        COMMENT_READ,
        DATA_IMPORT,
        EMAIL_SEND,
        ATTACHMENT_CREATE,
        ATTACHMENT_READ,
        NOTIFICATION_READ,
        NOTIFICATION_UPDATE,
        SEARCH_CONTACTS,
        SEARCH_DEALS,
        SEARCH_COMPANIES,
    ],
    Role.MEMBER.value: [
        DEAL_READ,
        CONTACT_READ,
        ACTIVITY_READ,
        COMPANY_READ,
        COMMENT_READ,
        NOTIFICATION_READ,
    ],
}


def resolve_permissions(role: str) -> List[str]:
    """Return the permission set for ``role``; unknown roles get an empty list."""
    return list(DEFAULT_ROLE_PERMISSIONS.get(str(role).upper(), []))


def _split(permission: str) -> tuple[str, str]:
    parts = permission.split(":")
    resource = parts[0]
    action = parts[1] if len(parts) > 1 else ""
    return resource, action


def permission_matches(granted: str, required: str) -> bool:
    if granted == required or granted == ADMIN_ALL:
        return True
    granted_resource, granted_action = _split(granted)
    required_resource, required_action = _split(required)
    if granted_resource == required_resource and granted_action == "*":
        return True
    if granted_resource == "*" and granted_action == required_action:
        return True
    return False


def has_permission(
    granted: Iterable[str], required: Union[str, Sequence[str]]
) -> bool:
    """True when any granted permission satisfies any of ``required``."""
    required_list = [required] if isinstance(required, str) else list(required)
    granted_list = list(granted)
    return any(
        permission_matches(have, need) for need in required_list for have in granted_list
    )
