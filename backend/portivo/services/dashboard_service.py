"""
Dashboard Service

Headline numbers for the agency dashboard. Money is summed per currency in
integer minor units; invoices in different currencies are never added
together.
"""

from collections import defaultdict
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.auth.access import AccessResolver
from portivo.auth.permissions import Permission
from portivo.database import utcnow
from portivo.models import ApprovalRequest, Client, File, Invoice, Message, Project
from portivo.services.invoice_service import InvoiceStatus, effective_status
from portivo.services.project_service import ProjectStatus

OPEN_PROJECT_STATUSES = (
    ProjectStatus.NOT_STARTED.value,
    ProjectStatus.ACTIVE.value,
    ProjectStatus.ON_HOLD.value,
)


def _month_start(moment: datetime, months_back: int = 0) -> datetime:
    month_index = moment.year * 12 + (moment.month - 1) - months_back
    return datetime(month_index // 12, month_index % 12 + 1, 1)


def _add(bucket: dict[str, int], currency: str, amount: int) -> None:
    bucket[currency] = bucket.get(currency, 0) + amount


class DashboardService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.resolver = AccessResolver(session)

    async def _count(self, query) -> int:
        return (await self.session.execute(query)).scalar_one()

    async def stats(self, user_id: str, now: datetime | None = None) -> dict:
        access = await self.resolver.require_workspace(user_id, Permission.DASHBOARD_VIEW)
        workspace_id = access.workspace_id
        now = now or utcnow()
        this_month = _month_start(now)
        last_month = _month_start(now, 1)
        this_year = datetime(now.year, 1, 1)

        in_workspace = Client.workspace_id == workspace_id
        project_scope = select(Project.id).join(Client, Client.id == Project.client_id).where(in_workspace)

        total_clients = await self._count(select(func.count()).select_from(Client).where(in_workspace))
        new_clients = await self._count(
            select(func.count()).select_from(Client).where(in_workspace, Client.created_at >= this_month)
        )

        by_status_rows = await self.session.execute(
            select(Project.status, func.count())
            .join(Client, Client.id == Project.client_id)
            .where(in_workspace)
            .group_by(Project.status)
        )
        projects_by_status = {status.value: 0 for status in ProjectStatus}
        projects_by_status.update(dict(by_status_rows.all()))

        overdue_projects = await self._count(
            select(func.count())
            .select_from(Project)
            .join(Client, Client.id == Project.client_id)
            .where(
                in_workspace,
                Project.status.in_(OPEN_PROJECT_STATUSES),
                Project.due_date.is_not(None),
                Project.due_date < now,
            )
        )
        upcoming = (
            await self.session.execute(
                select(Project, Client.name)
                .join(Client, Client.id == Project.client_id)
                .where(
                    in_workspace,
                    Project.status.in_(OPEN_PROJECT_STATUSES),
                    Project.due_date.is_not(None),
                    Project.due_date >= now,
                )
                .order_by(Project.due_date)
                .limit(5)
            )
        ).all()

        pending_approvals = await self._count(
            select(func.count())
            .select_from(ApprovalRequest)
            .where(
                ApprovalRequest.project_id.in_(project_scope),
                ApprovalRequest.status == "pending",
            )
        )
        total_files = await self._count(
            select(func.count()).select_from(File).where(File.project_id.in_(project_scope))
        )
        total_messages = await self._count(
            select(func.count()).select_from(Message).where(Message.project_id.in_(project_scope))
        )

        invoices = list(
            (
                await self.session.execute(
                    select(Invoice).join(Client, Client.id == Invoice.client_id).where(in_workspace)
                )
            ).scalars()
        )
        invoice_counts = {status.value: 0 for status in InvoiceStatus}
        revenue_total: dict[str, int] = {}
        revenue_this_month: dict[str, int] = {}
        revenue_last_month: dict[str, int] = {}
        revenue_this_year: dict[str, int] = {}
        outstanding: dict[str, int] = {}
        overdue_amount: dict[str, int] = {}
        monthly = [_month_start(now, back) for back in range(5, -1, -1)]
        monthly_revenue: dict[datetime, dict[str, int]] = defaultdict(dict)

        for invoice in invoices:
            status = effective_status(invoice, now)
            invoice_counts[status] += 1
            if status == InvoiceStatus.PAID.value:
                paid_on = invoice.paid_at or invoice.created_at
                _add(revenue_total, invoice.currency, invoice.total)
                if paid_on >= this_month:
                    _add(revenue_this_month, invoice.currency, invoice.total)
                elif paid_on >= last_month:
                    _add(revenue_last_month, invoice.currency, invoice.total)
                if paid_on >= this_year:
                    _add(revenue_this_year, invoice.currency, invoice.total)
                paid_month = datetime(paid_on.year, paid_on.month, 1)
                if paid_month in monthly:
                    _add(monthly_revenue[paid_month], invoice.currency, invoice.total)
            elif status in (InvoiceStatus.SENT.value, InvoiceStatus.OVERDUE.value):
                _add(outstanding, invoice.currency, invoice.total)
                if status == InvoiceStatus.OVERDUE.value:
                    _add(overdue_amount, invoice.currency, invoice.total)

        return {
            "clients": {"total": total_clients, "new_this_month": new_clients},
            "projects": {
                "total": sum(projects_by_status.values()),
                "by_status": projects_by_status,
                "overdue": overdue_projects,
            },
            "invoices": {
                "total": len(invoices),
                "by_status": invoice_counts,
                "outstanding_amount": outstanding,
                "overdue_amount": overdue_amount,
            },
            "revenue": {
                "total": revenue_total,
                "this_month": revenue_this_month,
                "last_month": revenue_last_month,
                "this_year": revenue_this_year,
                "monthly": [
                    {"month": month.strftime("%b"), "year": month.year, "revenue": monthly_revenue.get(month, {})}
                    for month in monthly
                ],
            },
            "approvals": {"pending": pending_approvals},
            "files": {"total": total_files},
            "messages": {"total": total_messages},
            "upcoming_due": [
                {"id": project.id, "name": project.name, "client_name": client_name, "due_date": project.due_date}
                for project, client_name in upcoming
            ],
        }
