"""
Authorization resolver: given a user and a resource, decide which party the
user acts as and what they may do.

    agency: the user holds the WorkspaceMember row of the workspace that
            owns the resource (directly or through Client / Project).
            Permissions follow the member's role.
    client: the user holds a ClientContact row for the client that owns
            the resource (directly or through Project).
    none: neither.

A single user may be agency-side for one workspace and client-side for a
client of an unrelated workspace; the answer is always per resource.

Listing code must not fetch-then-filter. It scopes the query itself with
`member_workspace_ids()` / `contact_client_ids()` as sub-selects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy import Select, null, select
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.auth.permissions import Permission
from portivo.auth.roles import CLIENT_CONTACT_PERMISSIONS, ROLE_PERMISSIONS, WorkspaceRole
from portivo.errors import ForbiddenError, NotFoundError
from portivo.models import (
    ApprovalRequest,
    Client,
    ClientContact,
    File,
    Invoice,
    Message,
    Project,
    ProjectUpdate,
    Workspace,
    WorkspaceMember,
)


class Party(str, Enum):
    AGENCY = "agency"
    CLIENT = "client"
    NONE = "none"


class ResourceKind(str, Enum):
    WORKSPACE = "workspace"
    CLIENT = "client"
    PROJECT = "project"
    APPROVAL = "approval"
    INVOICE = "invoice"
    FILE = "file"
    MESSAGE = "message"
    UPDATE = "update"


class Disclosure(str, Enum):
    """How a `none` answer is surfaced.

    HIDE: as 404, indistinguishable from a missing resource.
    DENY: as 403, for routes whose URL already implies the resource exists
          (direct approval links, project message threads).
    """

    HIDE = "hide"
    DENY = "deny"


@dataclass(frozen=True)
class ResourceRef:
    kind: ResourceKind
    id: str

    @classmethod
    def workspace(cls, id: str) -> ResourceRef:
        return cls(ResourceKind.WORKSPACE, id)

    @classmethod
    def client(cls, id: str) -> ResourceRef:
        return cls(ResourceKind.CLIENT, id)

    @classmethod
    def project(cls, id: str) -> ResourceRef:
        return cls(ResourceKind.PROJECT, id)

    @classmethod
    def approval(cls, id: str) -> ResourceRef:
        return cls(ResourceKind.APPROVAL, id)

    @classmethod
    def invoice(cls, id: str) -> ResourceRef:
        return cls(ResourceKind.INVOICE, id)

    @classmethod
    def file(cls, id: str) -> ResourceRef:
        return cls(ResourceKind.FILE, id)


@dataclass(frozen=True)
class Access:
    party: Party
    role: WorkspaceRole | None = None
    workspace_id: str | None = None
    client_id: str | None = None
    project_id: str | None = None
    permissions: frozenset[Permission] = field(default_factory=frozenset)

    @property
    def is_agency(self) -> bool:
        return self.party == Party.AGENCY

    @property
    def is_client(self) -> bool:
        return self.party == Party.CLIENT

    def has_permission(self, perm: Permission) -> bool:
        return perm in self.permissions

    def require_permission(self, perm: Permission) -> None:
        """Raise Forbidden if the resolved party lacks the given permission."""
        if not self.has_permission(perm):
            raise ForbiddenError(f"Insufficient permissions: requires {perm.value}")


_NO_ACCESS = Access(party=Party.NONE)

_RESOURCE_NAMES: dict[ResourceKind, str] = {
    ResourceKind.WORKSPACE: "Workspace",
    ResourceKind.CLIENT: "Client",
    ResourceKind.PROJECT: "Project",
    ResourceKind.APPROVAL: "Approval",
    ResourceKind.INVOICE: "Invoice",
    ResourceKind.FILE: "File",
    ResourceKind.MESSAGE: "Message",
    ResourceKind.UPDATE: "Update",
}


# ── Scoping sub-selects (WHERE-clause filters for list queries) ──────────────

def member_workspace_ids(user_id: str) -> Select:
    """Workspaces in which the user is agency-side."""
    return select(WorkspaceMember.workspace_id).where(WorkspaceMember.user_id == user_id)


def contact_client_ids(user_id: str) -> Select:
    """Clients for which the user is client-side."""
    return select(ClientContact.client_id).where(ClientContact.user_id == user_id)


def _project_content_owner(model) -> Select:
    return (
        select(Client.workspace_id, Project.client_id, Project.id)
        .select_from(model)
        .join(Project, Project.id == model.project_id)
        .join(Client, Client.id == Project.client_id)
    )


def _owner_query(ref: ResourceRef) -> Select:
    """(workspace_id, client_id, project_id) owning the referenced resource."""
    kind = ref.kind
    if kind == ResourceKind.WORKSPACE:
        return select(Workspace.id, null(), null()).where(
            Workspace.id == ref.id
        )
    if kind == ResourceKind.CLIENT:
        return select(Client.workspace_id, Client.id, null()).where(Client.id == ref.id)
    if kind == ResourceKind.PROJECT:
        return (
            select(Client.workspace_id, Project.client_id, Project.id)
            .join(Client, Client.id == Project.client_id)
            .where(Project.id == ref.id)
        )
    if kind == ResourceKind.INVOICE:
        return (
            select(Client.workspace_id, Invoice.client_id, null())
            .join(Client, Client.id == Invoice.client_id)
            .where(Invoice.id == ref.id)
        )
    models = {
        ResourceKind.APPROVAL: ApprovalRequest,
        ResourceKind.FILE: File,
        ResourceKind.MESSAGE: Message,
        ResourceKind.UPDATE: ProjectUpdate,
    }
    model = models[kind]
    return _project_content_owner(model).where(model.id == ref.id)


class AccessResolver:
    """Resolves the party and permissions of a user for a resource."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _owner(self, ref: ResourceRef) -> tuple[str, str | None, str | None] | None:
        row = (await self.session.execute(_owner_query(ref))).first()
        if row is None:
            return None
        workspace_id, client_id, project_id = row
        return workspace_id, client_id, project_id

    async def membership(self, user_id: str, workspace_id: str | None = None) -> WorkspaceMember | None:
        query = select(WorkspaceMember).where(WorkspaceMember.user_id == user_id)
        if workspace_id is not None:
            query = query.where(WorkspaceMember.workspace_id == workspace_id)
        return (await self.session.execute(query.limit(1))).scalar_one_or_none()

    async def is_contact(self, user_id: str, client_id: str) -> bool:
        result = await self.session.execute(
            select(ClientContact.id)
            .where(ClientContact.user_id == user_id, ClientContact.client_id == client_id)
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def resolve(
        self,
        user_id: str,
        ref: ResourceRef,
        *,
        as_party: Party | None = None,
    ) -> Access | None:
        """
        Resolve access, or return None when the resource does not exist.

        Agency-side wins when the user holds both a membership and a contact
        for the same resource; pass ``as_party`` to consider one side only.
        """
        owner = await self._owner(ref)
        if owner is None:
            return None
        workspace_id, client_id, project_id = owner

        if as_party in (None, Party.AGENCY):
            member = await self.membership(user_id, workspace_id)
            if member is not None:
                role = WorkspaceRole(member.role)
                return Access(
                    party=Party.AGENCY,
                    role=role,
                    workspace_id=workspace_id,
                    client_id=client_id,
                    project_id=project_id,
                    permissions=ROLE_PERMISSIONS[role],
                )

        if as_party in (None, Party.CLIENT) and client_id is not None:
            if await self.is_contact(user_id, client_id):
                return Access(
                    party=Party.CLIENT,
                    workspace_id=workspace_id,
                    client_id=client_id,
                    project_id=project_id,
                    permissions=CLIENT_CONTACT_PERMISSIONS,
                )

        return _NO_ACCESS

    async def require(
        self,
        user_id: str,
        ref: ResourceRef,
        *perms: Permission,
        disclosure: Disclosure = Disclosure.HIDE,
        as_party: Party | None = None,
    ) -> Access:
        """
        Resolve access and enforce it.

        Missing resource -> NotFound. No party -> NotFound or Forbidden per
        ``disclosure``. Party without every listed permission -> Forbidden.
        """
        name = _RESOURCE_NAMES[ref.kind]
        access = await self.resolve(user_id, ref, as_party=as_party)
        if access is None:
            raise NotFoundError(name)
        if access.party == Party.NONE:
            if disclosure == Disclosure.DENY:
                raise ForbiddenError(f"You do not have access to this {name.lower()}")
            raise NotFoundError(name)
        for perm in perms:
            access.require_permission(perm)
        return access

    async def require_workspace(self, user_id: str, *perms: Permission) -> Access:
        """
        Agency-side access to the caller's own workspace, for workspace-wide
        listings. Callers without a membership get NotFound.
        """
        member = await self.membership(user_id)
        if member is None:
            raise NotFoundError("Workspace")
        role = WorkspaceRole(member.role)
        access = Access(
            party=Party.AGENCY,
            role=role,
            workspace_id=member.workspace_id,
            permissions=ROLE_PERMISSIONS[role],
        )
        for perm in perms:
            access.require_permission(perm)
        return access
