"""
Role definitions: which bundles of permissions each party holds.

Agency roles are hierarchical:

    MEMBER < ADMIN < OWNER

Client contacts are not a role but a party of their own; they read project
content, talk in messages and answer approvals, and never mutate
workspace, client, project or invoice records.
"""

from enum import Enum

from portivo.auth.permissions import Permission


class WorkspaceRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


# ── Member: day-to-day client and project work ──
_MEMBER_PERMS: set[Permission] = {
    Permission.WORKSPACE_READ,
    Permission.TEAM_READ,
    Permission.CLIENTS_READ,
    Permission.CLIENTS_WRITE,
    Permission.PROJECTS_READ,
    Permission.PROJECTS_WRITE,
    Permission.UPDATES_READ,
    Permission.UPDATES_POST,
    Permission.FILES_READ,
    Permission.FILES_UPLOAD,
    Permission.FILES_DELETE,
    Permission.MESSAGES_READ,
    Permission.MESSAGES_POST,
    Permission.APPROVALS_READ,
    Permission.APPROVALS_REQUEST,
    Permission.INVOICES_READ,
    Permission.INVOICES_WRITE,
    Permission.ACTIVITY_READ,
    Permission.SEARCH,
    Permission.DASHBOARD_VIEW,
    Permission.REPORTS_VIEW,
}

# ── Admin: member + destructive operations, team and workspace settings ──
_ADMIN_PERMS: set[Permission] = {
    *_MEMBER_PERMS,
    Permission.WORKSPACE_MANAGE,
    Permission.TEAM_MANAGE,
    Permission.CLIENTS_DELETE,
    Permission.PROJECTS_DELETE,
    Permission.INVOICES_DELETE,
}

# ── Owner: admin + role changes and workspace deletion ──
_OWNER_PERMS: set[Permission] = {
    *_ADMIN_PERMS,
    Permission.TEAM_ROLES,
    Permission.WORKSPACE_DELETE,
}

ROLE_PERMISSIONS: dict[WorkspaceRole, frozenset[Permission]] = {
    WorkspaceRole.MEMBER: frozenset(_MEMBER_PERMS),
    WorkspaceRole.ADMIN: frozenset(_ADMIN_PERMS),
    WorkspaceRole.OWNER: frozenset(_OWNER_PERMS),
}

# ── Client contact: read and respond ──
CLIENT_CONTACT_PERMISSIONS: frozenset[Permission] = frozenset({
    Permission.PROJECTS_READ,
    Permission.UPDATES_READ,
    Permission.FILES_READ,
    Permission.MESSAGES_READ,
    Permission.MESSAGES_POST,
    Permission.APPROVALS_READ,
    Permission.APPROVALS_RESPOND,
    Permission.INVOICES_READ,
})
