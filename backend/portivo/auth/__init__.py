from portivo.auth.permissions import Permission
from portivo.auth.roles import WorkspaceRole, ROLE_PERMISSIONS, CLIENT_CONTACT_PERMISSIONS
from portivo.auth.context import RequestContext
from portivo.auth.access import (
    Access, AccessResolver, Disclosure, Party, ResourceKind, ResourceRef,
    contact_client_ids, member_workspace_ids,
)

__all__ = [
    "Permission", "WorkspaceRole", "ROLE_PERMISSIONS", "CLIENT_CONTACT_PERMISSIONS",
    "RequestContext", "Access", "AccessResolver", "Disclosure", "Party",
    "ResourceKind", "ResourceRef", "contact_client_ids", "member_workspace_ids",
]
