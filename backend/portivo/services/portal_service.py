"""
Client portal reads.

Everything here is client-side: the caller must hold a ClientContact for a
client of the workspace named by the slug. Unknown slugs and callers with no
contact in that workspace both get NotFound.
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.auth.access import AccessResolver, Party, ResourceRef, contact_client_ids
from portivo.auth.permissions import Permission
from portivo.errors import NotFoundError
from portivo.models import ApprovalRequest, Client, File, Invoice, InvoiceItem, Message, Project, ProjectUpdate, User, Workspace
from portivo.services.invoice_service import InvoiceService, InvoiceStatus
from portivo.services.workspace_service import WorkspaceService


class PortalService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.resolver = AccessResolver(session)

    async def _workspace_clients(self, user_id: str, slug: str) -> tuple[Workspace, list[Client]]:
        workspace = await WorkspaceService(self.session).get_by_slug(slug)
        result = await self.session.execute(
            select(Client)
            .where(Client.workspace_id == workspace.id, Client.id.in_(contact_client_ids(user_id)))
            .order_by(Client.name)
        )
        clients = list(result.scalars())
        if not clients:
            raise NotFoundError("Workspace")
        return workspace, clients

    async def home(self, user_id: str, slug: str) -> dict:
        """Branding plus the caller's clients and their projects with pending approval counts."""
        workspace, clients = await self._workspace_clients(user_id, slug)
        client_ids = [c.id for c in clients]

        projects = list(
            (
                await self.session.execute(
                    select(Project)
                    .where(Project.client_id.in_(client_ids))
                    .order_by(Project.updated_at.desc())
                )
            ).scalars()
        )
        pending: dict[str, int] = {}
        if projects:
            rows = await self.session.execute(
                select(ApprovalRequest.project_id, func.count())
                .where(
                    ApprovalRequest.project_id.in_([p.id for p in projects]),
                    ApprovalRequest.status == "pending",
                )
                .group_by(ApprovalRequest.project_id)
            )
            pending = dict(rows.all())

        outstanding = dict(
            (
                await self.session.execute(
                    select(Invoice.client_id, func.count())
                    .where(
                        Invoice.client_id.in_(client_ids),
                        Invoice.status.in_([InvoiceStatus.SENT.value, InvoiceStatus.OVERDUE.value]),
                    )
                    .group_by(Invoice.client_id)
                )
            ).all()
        )

        return {
            "workspace": workspace,
            "clients": [
                {
                    "client": client,
                    "outstanding_invoices": outstanding.get(client.id, 0),
                    "projects": [
                        {"project": p, "pending_approvals": pending.get(p.id, 0)}
                        for p in projects
                        if p.client_id == client.id
                    ],
                }
                for client in clients
            ],
        }

    async def project(self, user_id: str, slug: str, project_id: str) -> dict:
        workspace, _ = await self._workspace_clients(user_id, slug)
        access = await self.resolver.require(
            user_id, ResourceRef.project(project_id), Permission.PROJECTS_READ, as_party=Party.CLIENT
        )
        if access.workspace_id != workspace.id:
            raise NotFoundError("Project")

        project = await self.session.get(Project, project_id)
        updates = (
            await self.session.execute(
                select(ProjectUpdate, User)
                .join(User, User.id == ProjectUpdate.author_id)
                .where(ProjectUpdate.project_id == project_id)
                .order_by(ProjectUpdate.created_at.desc())
            )
        ).all()
        approvals = list(
            (
                await self.session.execute(
                    select(ApprovalRequest)
                    .where(ApprovalRequest.project_id == project_id)
                    .order_by(ApprovalRequest.created_at.desc())
                )
            ).scalars()
        )
        files = (
            await self.session.execute(
                select(File, User)
                .join(User, User.id == File.uploaded_by_id)
                .where(File.project_id == project_id)
                .order_by(File.created_at.desc())
            )
        ).all()
        message_count = (
            await self.session.execute(
                select(func.count()).select_from(Message).where(Message.project_id == project_id)
            )
        ).scalar_one()
        return {
            "workspace": workspace,
            "project": project,
            "updates": updates,
            "approvals": approvals,
            "files": files,
            "message_count": message_count,
        }

    async def invoices(self, user_id: str, slug: str, status: str | None = None) -> list[tuple[Invoice, Client]]:
        workspace, _ = await self._workspace_clients(user_id, slug)
        return await InvoiceService(self.session).list_client_invoices(user_id, workspace.id, status=status)

    async def invoice(self, user_id: str, slug: str, invoice_id: str) -> tuple[Invoice, list[InvoiceItem], Client]:
        workspace, _ = await self._workspace_clients(user_id, slug)
        access = await self.resolver.require(
            user_id, ResourceRef.invoice(invoice_id), Permission.INVOICES_READ, as_party=Party.CLIENT
        )
        if access.workspace_id != workspace.id:
            raise NotFoundError("Invoice")
        invoice, items, client = await InvoiceService(self.session).get_invoice(user_id, invoice_id)
        if invoice.status == InvoiceStatus.DRAFT.value:
            raise NotFoundError("Invoice")
        return invoice, items, client
