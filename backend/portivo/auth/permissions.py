"""
Permission constants: the exhaustive list of actions in the portal.

Each permission follows the pattern `resource:action`. Agency roles and the
client-contact party both map to a set of these via `portivo.auth.roles`.
"""

from enum import Enum


class Permission(str, Enum):
    # ── Workspace ──
    WORKSPACE_READ = "workspace:read"
    WORKSPACE_MANAGE = "workspace:manage"        # rename, branding, contact details
    WORKSPACE_DELETE = "workspace:delete"

    # ── Team ──
    TEAM_READ = "team:read"
    TEAM_MANAGE = "team:manage"                  # invite, remove
    TEAM_ROLES = "team:roles"                    # change member roles

    # ── Clients ──
    CLIENTS_READ = "clients:read"
    CLIENTS_WRITE = "clients:write"              # create, edit, contacts
    CLIENTS_DELETE = "clients:delete"

    # ── Projects ──
    PROJECTS_READ = "projects:read"
    PROJECTS_WRITE = "projects:write"
    PROJECTS_DELETE = "projects:delete"

    # ── Project content ──
    UPDATES_READ = "updates:read"
    UPDATES_POST = "updates:post"
    FILES_READ = "files:read"
    FILES_UPLOAD = "files:upload"
    FILES_DELETE = "files:delete"
    MESSAGES_READ = "messages:read"
    MESSAGES_POST = "messages:post"

    # ── Approvals ──
    APPROVALS_READ = "approvals:read"
    APPROVALS_REQUEST = "approvals:request"
    APPROVALS_RESPOND = "approvals:respond"

    # ── Invoices ──
    INVOICES_READ = "invoices:read"
    INVOICES_WRITE = "invoices:write"            # create, edit, send, mark paid, cancel
    INVOICES_DELETE = "invoices:delete"

    # ── Insight ──
    ACTIVITY_READ = "activity:read"
    SEARCH = "search:run"
    DASHBOARD_VIEW = "dashboard:view"
    REPORTS_VIEW = "reports:view"
