"""
Report Service

Workspace reports for the agency side: summary, revenue by client, projects
and clients. Each report is limited to records created inside an optional
date period (both ends inclusive, whole days). Money is grouped per currency
in integer minor units, as on the dashboard.

Revenue is paid invoices; outstanding is sent invoices, overdue included.
Drafts and cancelled invoices carry no money in any report.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.auth.access import AccessResolver
from portivo.auth.permissions import Permission
from portivo.database import utcnow
from portivo.errors import ValidationFailedError
from portivo.models import (
    ApprovalRequest,
    Client,
    ClientContact,
    File,
    Invoice,
    Message,
    Project,
    ProjectUpdate,
    User,
    Workspace,
)
from portivo.services.invoice_service import InvoiceStatus, effective_status
from portivo.services.project_service import ProjectStatus

OUTSTANDING_STATUSES = (InvoiceStatus.SENT.value, InvoiceStatus.OVERDUE.value)


class ReportType(str, Enum):
    SUMMARY = "summary"
    REVENUE = "revenue"
    PROJECTS = "projects"
    CLIENTS = "clients"


@dataclass(frozen=True)
class ReportPeriod:
    start: date | None = None
    end: date | None = None

    def __post_init__(self):
        if self.start and self.end and self.end < self.start:
            raise ValidationFailedError.for_field("end_date", "End date is before start date")

    def filters(self, column) -> list:
        clauses = []
        if self.start:
            clauses.append(column >= datetime.combine(self.start, time.min))
        if self.end:
            clauses.append(column < datetime.combine(self.end + timedelta(days=1), time.min))
        return clauses


def _add(bucket: dict[str, int], currency: str, amount: int) -> None:
    bucket[currency] = bucket.get(currency, 0) + amount


class _Money:
    """Paid and outstanding totals per currency for a group of invoices."""

    def __init__(self):
        self.paid: dict[str, int] = {}
        self.outstanding: dict[str, int] = {}
        self.paid_count: dict[str, int] = {}

    def add(self, invoice: Invoice, status: str) -> None:
        if status == InvoiceStatus.PAID.value:
            _add(self.paid, invoice.currency, invoice.total)
            _add(self.paid_count, invoice.currency, 1)
        elif status in OUTSTANDING_STATUSES:
            _add(self.outstanding, invoice.currency, invoice.total)

    @property
    def invoiced(self) -> dict[str, int]:
        totals = dict(self.paid)
        for currency, amount in self.outstanding.items():
            _add(totals, currency, amount)
        return totals

    @property
    def average_paid(self) -> dict[str, int]:
        return {c: round(amount / self.paid_count[c]) for c, amount in self.paid.items()}


def _content_count(model):
    return (
        select(func.count())
        .select_from(model)
        .where(model.project_id == Project.id)
        .correlate(Project)
        .scalar_subquery()
    )


class ReportService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.resolver = AccessResolver(session)

    async def generate(
        self,
        user_id: str,
        report_type: ReportType,
        period: ReportPeriod,
        now: datetime | None = None,
    ) -> dict:
        access = await self.resolver.require_workspace(user_id, Permission.REPORTS_VIEW)
        workspace = await self.session.get(Workspace, access.workspace_id)
        now = now or utcnow()

        builders = {
            ReportType.SUMMARY: self._summary,
            ReportType.REVENUE: self._revenue,
            ReportType.PROJECTS: self._projects,
            ReportType.CLIENTS: self._clients,
        }
        data = await builders[report_type](workspace.id, period, now)
        return {
            "type": report_type.value,
            "workspace": workspace.name,
            "generated_at": now,
            "period": {"start": period.start, "end": period.end},
            "data": data,
        }

    async def _invoices(self, workspace_id: str, period: ReportPeriod) -> list[tuple[Invoice, str, str]]:
        rows = await self.session.execute(
            select(Invoice, Client.id, Client.name)
            .join(Client, Client.id == Invoice.client_id)
            .where(Client.workspace_id == workspace_id, *period.filters(Invoice.created_at))
            .order_by(Invoice.created_at.desc(), Invoice.number.desc())
        )
        return [(invoice, client_id, client_name) for invoice, client_id, client_name in rows]

    async def _summary(self, workspace_id: str, period: ReportPeriod, now: datetime) -> dict:
        total_clients = (
            await self.session.execute(
                select(func.count())
                .select_from(Client)
                .where(Client.workspace_id == workspace_id, *period.filters(Client.created_at))
            )
        ).scalar_one()

        project_counts: dict[str, int] = {}
        rows = await self.session.execute(
            select(Project.status, func.count())
            .join(Client, Client.id == Project.client_id)
            .where(Client.workspace_id == workspace_id, *period.filters(Project.created_at))
            .group_by(Project.status)
        )
        for status, count in rows:
            project_counts[status] = count

        money = _Money()
        invoices = await self._invoices(workspace_id, period)
        paid_invoices = 0
        for invoice, _, _ in invoices:
            status = effective_status(invoice, now)
            money.add(invoice, status)
            if status == InvoiceStatus.PAID.value:
                paid_invoices += 1

        return {
            "overview": {
                "total_clients": total_clients,
                "total_projects": sum(project_counts.values()),
                "active_projects": project_counts.get(ProjectStatus.ACTIVE.value, 0),
                "completed_projects": project_counts.get(ProjectStatus.COMPLETED.value, 0),
                "total_invoices": len(invoices),
                "paid_invoices": paid_invoices,
            },
            "financial": {
                "total_revenue": money.paid,
                "outstanding": money.outstanding,
                "average_paid_invoice": money.average_paid,
            },
        }

    async def _revenue(self, workspace_id: str, period: ReportPeriod, now: datetime) -> dict:
        overall = _Money()
        by_client: dict[str, _Money] = defaultdict(_Money)
        client_names: dict[str, str] = {}
        invoice_counts: dict[str, int] = defaultdict(int)
        lines = []

        for invoice, client_id, client_name in await self._invoices(workspace_id, period):
            status = effective_status(invoice, now)
            if status in (InvoiceStatus.DRAFT.value, InvoiceStatus.CANCELLED.value):
                continue
            overall.add(invoice, status)
            by_client[client_id].add(invoice, status)
            client_names[client_id] = client_name
            invoice_counts[client_id] += 1
            lines.append({
                "id": invoice.id,
                "number": invoice.number,
                "client": client_name,
                "amount": invoice.total,
                "currency": invoice.currency,
                "status": status,
                "created_at": invoice.created_at,
                "paid_at": invoice.paid_at,
            })

        return {
            "invoices": lines,
            "by_client": [
                {
                    "client_id": client_id,
                    "client": client_names[client_id],
                    "count": invoice_counts[client_id],
                    "total": money.invoiced,
                    "paid": money.paid,
                    "pending": money.outstanding,
                }
                for client_id, money in sorted(by_client.items(), key=lambda item: client_names[item[0]])
            ],
            "totals": {"total": overall.invoiced, "paid": overall.paid, "pending": overall.outstanding},
        }

    async def _projects(self, workspace_id: str, period: ReportPeriod, now: datetime) -> dict:
        rows = await self.session.execute(
            select(
                Project,
                Client.name,
                _content_count(ProjectUpdate),
                _content_count(File),
                _content_count(ApprovalRequest),
                _content_count(Message),
            )
            .join(Client, Client.id == Project.client_id)
            .where(Client.workspace_id == workspace_id, *period.filters(Project.created_at))
            .order_by(Project.created_at.desc(), Project.name)
        )

        by_status = {status.value: 0 for status in ProjectStatus}
        projects = []
        for project, client_name, updates, files, approvals, messages in rows:
            by_status[project.status] = by_status.get(project.status, 0) + 1
            projects.append({
                "id": project.id,
                "name": project.name,
                "client": client_name,
                "status": project.status,
                "start_date": project.start_date,
                "due_date": project.due_date,
                "updates": updates,
                "files": files,
                "approvals": approvals,
                "messages": messages,
            })

        return {
            "projects": projects,
            "by_status": by_status,
            "totals": {
                "total": len(projects),
                "active": by_status[ProjectStatus.ACTIVE.value],
                "completed": by_status[ProjectStatus.COMPLETED.value],
                "on_hold": by_status[ProjectStatus.ON_HOLD.value],
            },
        }

    async def _clients(self, workspace_id: str, period: ReportPeriod, now: datetime) -> dict:
        clients = list(
            (
                await self.session.execute(
                    select(Client)
                    .where(Client.workspace_id == workspace_id, *period.filters(Client.created_at))
                    .order_by(Client.created_at.desc(), Client.name)
                )
            ).scalars()
        )
        client_ids = [client.id for client in clients]

        primary_emails: dict[str, str] = {}
        project_totals: dict[str, int] = defaultdict(int)
        active_projects: dict[str, int] = defaultdict(int)
        money: dict[str, _Money] = defaultdict(_Money)
        if client_ids:
            contact_rows = await self.session.execute(
                select(ClientContact.client_id, User.email)
                .join(User, User.id == ClientContact.user_id)
                .where(ClientContact.client_id.in_(client_ids), ClientContact.is_primary.is_(True))
            )
            for client_id, email in contact_rows:
                primary_emails[client_id] = email

            project_rows = await self.session.execute(
                select(Project.client_id, Project.status, func.count())
                .where(Project.client_id.in_(client_ids))
                .group_by(Project.client_id, Project.status)
            )
            for client_id, status, count in project_rows:
                project_totals[client_id] += count
                if status == ProjectStatus.ACTIVE.value:
                    active_projects[client_id] += count

            invoices = await self.session.execute(select(Invoice).where(Invoice.client_id.in_(client_ids)))
            for invoice in invoices.scalars():
                money[invoice.client_id].add(invoice, effective_status(invoice, now))

        revenue: dict[str, int] = {}
        entries = []
        for client in clients:
            client_money = money[client.id]
            for currency, amount in client_money.paid.items():
                _add(revenue, currency, amount)
            entries.append({
                "id": client.id,
                "name": client.name,
                "primary_contact": primary_emails.get(client.id),
                "total_projects": project_totals[client.id],
                "active_projects": active_projects[client.id],
                "total_revenue": client_money.paid,
                "outstanding": client_money.outstanding,
                "created_at": client.created_at,
            })

        return {
            "clients": entries,
            "totals": {
                "total_clients": len(clients),
                "total_projects": sum(project_totals.values()),
                "total_revenue": revenue,
            },
        }
