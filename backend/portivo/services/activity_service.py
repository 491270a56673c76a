"""
Activity log: append-only record of every mutating action in a workspace.

Writes are fire-and-forget. `ActivityService.record` runs inside a savepoint
so a failed insert is rolled back on its own, logged, counted in
`activity_log_failures_total`, and never aborts the operation it annotates.
"""

import logging
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.auth.access import AccessResolver, Party, ResourceRef
from portivo.auth.permissions import Permission
from portivo.config import settings
from portivo.errors import NotFoundError
from portivo.middleware.metrics import activity_log_failures_total
from portivo.models import ActivityLog, Client, Project, User

logger = logging.getLogger(__name__)

MAX_ACTIVITY_LIMIT = 200
_DESCRIPTION_MAX = 500


class EntityType(str, Enum):
    WORKSPACE = "workspace"
    CLIENT = "client"
    PROJECT = "project"
    UPDATE = "update"
    FILE = "file"
    APPROVAL = "approval"
    MESSAGE = "message"
    INVOICE = "invoice"
    MEMBER = "member"


class ActivityAction(Enum):
    """Closed set of action codes, each bound to the entity type it describes."""

    WORKSPACE_CREATED = ("workspace.created", EntityType.WORKSPACE)
    WORKSPACE_UPDATED = ("workspace.updated", EntityType.WORKSPACE)

    CLIENT_CREATED = ("client.created", EntityType.CLIENT)
    CLIENT_UPDATED = ("client.updated", EntityType.CLIENT)
    CLIENT_DELETED = ("client.deleted", EntityType.CLIENT)

    PROJECT_CREATED = ("project.created", EntityType.PROJECT)
    PROJECT_UPDATED = ("project.updated", EntityType.PROJECT)
    PROJECT_STATUS_CHANGED = ("project.status_changed", EntityType.PROJECT)
    PROJECT_DELETED = ("project.deleted", EntityType.PROJECT)

    UPDATE_POSTED = ("update.posted", EntityType.UPDATE)

    FILE_UPLOADED = ("file.uploaded", EntityType.FILE)
    FILE_DELETED = ("file.deleted", EntityType.FILE)

    APPROVAL_REQUESTED = ("approval.requested", EntityType.APPROVAL)
    APPROVAL_APPROVED = ("approval.approved", EntityType.APPROVAL)
    APPROVAL_REJECTED = ("approval.rejected", EntityType.APPROVAL)
    APPROVAL_CHANGES_REQUESTED = ("approval.changes_requested", EntityType.APPROVAL)

    MESSAGE_SENT = ("message.sent", EntityType.MESSAGE)

    INVOICE_CREATED = ("invoice.created", EntityType.INVOICE)
    INVOICE_UPDATED = ("invoice.updated", EntityType.INVOICE)
    INVOICE_SENT = ("invoice.sent", EntityType.INVOICE)
    INVOICE_PAID = ("invoice.paid", EntityType.INVOICE)
    INVOICE_CANCELLED = ("invoice.cancelled", EntityType.INVOICE)
    INVOICE_DELETED = ("invoice.deleted", EntityType.INVOICE)

    MEMBER_INVITED = ("member.invited", EntityType.MEMBER)
    MEMBER_REMOVED = ("member.removed", EntityType.MEMBER)
    MEMBER_ROLE_CHANGED = ("member.role_changed", EntityType.MEMBER)

    def __init__(self, code: str, entity_type: EntityType):
        self.code = code
        self.entity_type = entity_type

    @classmethod
    def from_code(cls, code: str) -> "ActivityAction":
        for action in cls:
            if action.code == code:
                return action
        raise ValueError(f"Unknown activity action: {code}")


class ActivityService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(
        self,
        workspace_id: str,
        user_id: str,
        action: ActivityAction,
        description: str,
        *,
        entity_id: str | None = None,
        project_id: str | None = None,
        client_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ActivityLog | None:
        """
        Append an entry. Returns None (after logging) if the write failed.

        Pending changes of the primary operation are flushed first, outside
        the guarded block, so their errors still reach the caller.
        """
        await self.session.flush()

        entry = ActivityLog(
            workspace_id=workspace_id,
            user_id=user_id,
            action=action.code,
            entity_type=action.entity_type.value,
            entity_id=entity_id,
            description=description[:_DESCRIPTION_MAX],
            project_id=project_id,
            client_id=client_id,
            details=metadata,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(entry)
        except SQLAlchemyError:
            logger.warning(
                "Failed to record activity %s in workspace %s",
                action.code,
                workspace_id,
                exc_info=True,
                extra={"workspace_id": workspace_id, "action": action.code},
            )
            activity_log_failures_total.labels(action=action.code).inc()
            return None
        return entry

    async def list_activity(
        self,
        user_id: str,
        *,
        project_id: str | None = None,
        workspace_id: str | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        """Newest-first feed for a project, a workspace, or the caller's own workspace."""
        limit = min(max(limit or settings.activity_default_limit, 1), MAX_ACTIVITY_LIMIT)
        resolver = AccessResolver(self.session)

        query = select(ActivityLog)
        if project_id:
            await resolver.require(
                user_id, ResourceRef.project(project_id), Permission.ACTIVITY_READ,
                as_party=Party.AGENCY,
            )
            query = query.where(ActivityLog.project_id == project_id)
        elif workspace_id:
            if await resolver.membership(user_id, workspace_id) is None:
                raise NotFoundError("Workspace")
            query = query.where(ActivityLog.workspace_id == workspace_id)
        else:
            access = await resolver.require_workspace(user_id, Permission.ACTIVITY_READ)
            query = query.where(ActivityLog.workspace_id == access.workspace_id)

        result = await self.session.execute(
            query.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).limit(limit)
        )
        entries = list(result.scalars().all())
        return await self._with_details(entries)

    async def _with_details(self, entries: list[ActivityLog]) -> list[dict]:
        """Attach actor, project and client summaries with one query per table."""
        user_ids = {e.user_id for e in entries}
        project_ids = {e.project_id for e in entries if e.project_id}
        client_ids = {e.client_id for e in entries if e.client_id}

        users: dict[str, User] = {}
        if user_ids:
            rows = await self.session.execute(select(User).where(User.id.in_(user_ids)))
            users = {u.id: u for u in rows.scalars()}
        projects: dict[str, str] = {}
        if project_ids:
            rows = await self.session.execute(
                select(Project.id, Project.name).where(Project.id.in_(project_ids))
            )
            projects = dict(rows.all())
        clients: dict[str, str] = {}
        if client_ids:
            rows = await self.session.execute(
                select(Client.id, Client.name).where(Client.id.in_(client_ids))
            )
            clients = dict(rows.all())

        feed = []
        for entry in entries:
            user = users.get(entry.user_id)
            feed.append({
                "id": entry.id,
                "action": entry.action,
                "entity_type": entry.entity_type,
                "entity_id": entry.entity_id,
                "description": entry.description,
                "metadata": entry.details,
                "created_at": entry.created_at,
                "user": {
                    "id": user.id,
                    "name": user.name,
                    "email": user.email,
                    "avatar": user.avatar,
                } if user else None,
                # linked rows may since have been deleted
                "project": (
                    {"id": entry.project_id, "name": projects[entry.project_id]}
                    if entry.project_id in projects else None
                ),
                "client": (
                    {"id": entry.client_id, "name": clients[entry.client_id]}
                    if entry.client_id in clients else None
                ),
            })
        return feed
