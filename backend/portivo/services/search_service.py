"""
Search Service

Agency-side search across clients, projects, files and invoices of the
caller's workspace. Each type is queried on its own, scoped in SQL to the
workspace, capped, and mapped to one result envelope:

    {id, type, title, subtitle, description, meta, url}

A failing type degrades to an empty list; the other types still return.
"""

import logging
from typing import Any, Awaitable, Callable

from sqlalchemy import exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.auth.access import AccessResolver
from portivo.auth.permissions import Permission
from portivo.config import settings
from portivo.errors import ValidationFailedError
from portivo.middleware.metrics import search_failures_total
from portivo.models import Client, ClientContact, File, Invoice, Project, User
from portivo.services.invoice_service import effective_status
from portivo.services.money import format_money

logger = logging.getLogger(__name__)

SEARCH_TYPES = ("clients", "projects", "files", "invoices")


def empty_results() -> dict[str, Any]:
    return {"clients": [], "projects": [], "files": [], "invoices": [], "total": 0}


def format_file_size(size: int) -> str:
    if size <= 0:
        return "0 B"
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            break
        value /= 1024
    text = f"{value:.1f}".rstrip("0").rstrip(".")
    return f"{text} {unit}"


def _pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class SearchService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.resolver = AccessResolver(session)

    async def search(self, user_id: str, query: str | None, type_filter: str | None = None) -> dict[str, Any]:
        query = (query or "").strip()
        type_filter = type_filter or "all"
        if type_filter != "all" and type_filter not in SEARCH_TYPES:
            raise ValidationFailedError.for_field(
                "type", f"Type must be one of: all, {', '.join(SEARCH_TYPES)}"
            )
        if len(query) < settings.search_min_query_length:
            return empty_results()

        access = await self.resolver.require_workspace(user_id, Permission.SEARCH)
        workspace_id = access.workspace_id
        pattern = _pattern(query)
        limit = settings.search_results_per_type

        searches: dict[str, Callable[[str, str, int], Awaitable[list[dict]]]] = {
            "clients": self._clients,
            "projects": self._projects,
            "files": self._files,
            "invoices": self._invoices,
        }
        results = empty_results()
        for name, run in searches.items():
            if type_filter not in ("all", name):
                continue
            results[name] = await self._guarded(name, run, workspace_id, pattern, limit)
        results["total"] = sum(len(results[name]) for name in SEARCH_TYPES)
        return results

    async def _guarded(self, name, run, workspace_id: str, pattern: str, limit: int) -> list[dict]:
        """Run one type's search in a savepoint so its failure cannot poison the others."""
        try:
            async with self.session.begin_nested():
                return await run(workspace_id, pattern, limit)
        except Exception:
            search_failures_total.labels(type=name).inc()
            logger.exception("Search over %s failed; returning no %s", name, name)
            return []

    async def _clients(self, workspace_id: str, pattern: str, limit: int) -> list[dict]:
        contact_match = exists(
            select(ClientContact.id)
            .join(User, User.id == ClientContact.user_id)
            .where(
                ClientContact.client_id == Client.id,
                or_(User.email.ilike(pattern, escape="\\"), User.name.ilike(pattern, escape="\\")),
            )
        )
        clients = list(
            (
                await self.session.execute(
                    select(Client)
                    .where(
                        Client.workspace_id == workspace_id,
                        or_(
                            Client.name.ilike(pattern, escape="\\"),
                            Client.notes.ilike(pattern, escape="\\"),
                            contact_match,
                        ),
                    )
                    .order_by(Client.updated_at.desc())
                    .limit(limit)
                )
            ).scalars()
        )
        if not clients:
            return []
        ids = [c.id for c in clients]
        primary_emails = dict(
            (
                await self.session.execute(
                    select(ClientContact.client_id, User.email)
                    .join(User, User.id == ClientContact.user_id)
                    .where(ClientContact.client_id.in_(ids), ClientContact.is_primary.is_(True))
                )
            ).all()
        )
        project_counts = dict(
            (
                await self.session.execute(
                    select(Project.client_id, func.count())
                    .where(Project.client_id.in_(ids))
                    .group_by(Project.client_id)
                )
            ).all()
        )
        results = []
        for client in clients:
            count = project_counts.get(client.id, 0)
            results.append({
                "id": client.id,
                "type": "client",
                "title": client.name,
                "subtitle": primary_emails.get(client.id, ""),
                "description": client.notes or "",
                "meta": f"{count} project{'' if count == 1 else 's'}",
                "url": f"/dashboard/clients/{client.id}",
            })
        return results

    async def _projects(self, workspace_id: str, pattern: str, limit: int) -> list[dict]:
        rows = await self.session.execute(
            select(Project, Client.name)
            .join(Client, Client.id == Project.client_id)
            .where(
                Client.workspace_id == workspace_id,
                or_(
                    Project.name.ilike(pattern, escape="\\"),
                    Project.description.ilike(pattern, escape="\\"),
                ),
            )
            .order_by(Project.updated_at.desc())
            .limit(limit)
        )
        return [
            {
                "id": project.id,
                "type": "project",
                "title": project.name,
                "subtitle": client_name,
                "description": project.description or "",
                "meta": project.status,
                "url": f"/dashboard/projects/{project.id}",
            }
            for project, client_name in rows.all()
        ]

    async def _files(self, workspace_id: str, pattern: str, limit: int) -> list[dict]:
        rows = await self.session.execute(
            select(File, Project.name, User.name, User.email)
            .join(Project, Project.id == File.project_id)
            .join(Client, Client.id == Project.client_id)
            .join(User, User.id == File.uploaded_by_id)
            .where(Client.workspace_id == workspace_id, File.name.ilike(pattern, escape="\\"))
            .order_by(File.created_at.desc())
            .limit(limit)
        )
        return [
            {
                "id": f.id,
                "type": "file",
                "title": f.name,
                "subtitle": project_name,
                "description": f"Uploaded by {uploader_name or uploader_email}",
                "meta": format_file_size(f.size),
                "url": f"/dashboard/projects/{f.project_id}?tab=files",
                "file_url": f.url,
            }
            for f, project_name, uploader_name, uploader_email in rows.all()
        ]

    async def _invoices(self, workspace_id: str, pattern: str, limit: int) -> list[dict]:
        rows = await self.session.execute(
            select(Invoice, Client.name)
            .join(Client, Client.id == Invoice.client_id)
            .where(
                Client.workspace_id == workspace_id,
                or_(
                    Invoice.number.ilike(pattern, escape="\\"),
                    Client.name.ilike(pattern, escape="\\"),
                ),
            )
            .order_by(Invoice.updated_at.desc())
            .limit(limit)
        )
        return [
            {
                "id": invoice.id,
                "type": "invoice",
                "title": invoice.number,
                "subtitle": client_name,
                "description": format_money(invoice.total, invoice.currency),
                "meta": effective_status(invoice),
                "url": f"/dashboard/invoices/{invoice.id}",
            }
            for invoice, client_name in rows.all()
        ]
