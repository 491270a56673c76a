"""
Project Service

Projects of a client, and the progress updates the agency posts on them.
Any project status may move to any other; a status change is recorded as
``project.status_changed`` so the feed can show it separately from edits.
"""

import logging
from datetime import datetime
from enum import Enum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.auth.access import AccessResolver, ResourceRef
from portivo.auth.permissions import Permission
from portivo.errors import NotFoundError, ValidationFailedError
from portivo.middleware.metrics import state_transitions_total
from portivo.models import Client, ClientContact, Project, ProjectUpdate, User, Workspace, WorkspaceMember
from portivo.services.activity_service import ActivityAction, ActivityService
from portivo.services.notifications import NotificationKind, NotificationOutbox, portal_url

logger = logging.getLogger(__name__)


class ProjectStatus(str, Enum):
    NOT_STARTED = "not-started"
    ACTIVE = "active"
    ON_HOLD = "on-hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


_UNSET = object()


def parse_project_status(value: str) -> ProjectStatus:
    try:
        return ProjectStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in ProjectStatus)
        raise ValidationFailedError.for_field("status", f"Status must be one of: {allowed}")


# ── Shared lookups for project-scoped content ────────────────────────────────

async def load_project_context(session: AsyncSession, project_id: str) -> tuple[Project, Client, Workspace]:
    row = (
        await session.execute(
            select(Project, Client, Workspace)
            .join(Client, Client.id == Project.client_id)
            .join(Workspace, Workspace.id == Client.workspace_id)
            .where(Project.id == project_id)
        )
    ).first()
    if row is None:
        raise NotFoundError("Project")
    return row[0], row[1], row[2]


async def client_contact_users(session: AsyncSession, client_id: str) -> list[User]:
    result = await session.execute(
        select(User)
        .join(ClientContact, ClientContact.user_id == User.id)
        .where(ClientContact.client_id == client_id)
        .order_by(ClientContact.is_primary.desc(), ClientContact.created_at)
    )
    return list(result.scalars())


async def workspace_member_users(session: AsyncSession, workspace_id: str) -> list[User]:
    result = await session.execute(
        select(User)
        .join(WorkspaceMember, WorkspaceMember.user_id == User.id)
        .where(WorkspaceMember.workspace_id == workspace_id)
        .order_by(WorkspaceMember.created_at)
    )
    return list(result.scalars())


class ProjectService:
    def __init__(self, session: AsyncSession, outbox: NotificationOutbox | None = None):
        self.session = session
        self.outbox = outbox if outbox is not None else NotificationOutbox()
        self.resolver = AccessResolver(session)
        self.activity = ActivityService(session)

    # ── Projects ─────────────────────────────────────────────────────────

    async def create_project(
        self,
        user_id: str,
        client_id: str,
        name: str,
        description: str | None = None,
        status: str | None = None,
        start_date: datetime | None = None,
        due_date: datetime | None = None,
    ) -> Project:
        access = await self.resolver.require(
            user_id, ResourceRef.client(client_id), Permission.PROJECTS_WRITE
        )
        name = (name or "").strip()
        if not 1 <= len(name) <= 200:
            raise ValidationFailedError.for_field("name", "Name must be 1-200 characters")
        project_status = parse_project_status(status) if status else ProjectStatus.ACTIVE

        project = Project(
            client_id=client_id,
            name=name,
            description=description or None,
            status=project_status.value,
            start_date=start_date,
            due_date=due_date,
        )
        self.session.add(project)
        await self.session.flush()

        await self.activity.record(
            access.workspace_id, user_id, ActivityAction.PROJECT_CREATED,
            f'Created project "{project.name}"', entity_id=project.id,
            project_id=project.id, client_id=client_id,
        )
        return project

    async def list_projects(
        self, user_id: str, *, client_id: str | None = None, status: str | None = None
    ) -> list[tuple[Project, Client]]:
        access = await self.resolver.require_workspace(user_id, Permission.PROJECTS_READ)
        query = (
            select(Project, Client)
            .join(Client, Client.id == Project.client_id)
            .where(Client.workspace_id == access.workspace_id)
        )
        if client_id:
            query = query.where(Project.client_id == client_id)
        if status:
            query = query.where(Project.status == parse_project_status(status).value)
        result = await self.session.execute(query.order_by(Project.updated_at.desc()))
        return [(project, client) for project, client in result.all()]

    async def get_project(self, user_id: str, project_id: str) -> tuple[Project, Client]:
        await self.resolver.require(user_id, ResourceRef.project(project_id), Permission.PROJECTS_READ)
        project, client, _ = await load_project_context(self.session, project_id)
        return project, client

    async def update_project(
        self,
        user_id: str,
        project_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        status: str | None = None,
        start_date=_UNSET,
        due_date=_UNSET,
    ) -> Project:
        access = await self.resolver.require(
            user_id, ResourceRef.project(project_id), Permission.PROJECTS_WRITE
        )
        project = await self.session.get(Project, project_id)
        old_status = project.status

        if name is not None:
            name = name.strip()
            if not 1 <= len(name) <= 200:
                raise ValidationFailedError.for_field("name", "Name must be 1-200 characters")
            project.name = name
        if description is not None:
            project.description = description or None
        if status is not None:
            project.status = parse_project_status(status).value
        if start_date is not _UNSET:
            project.start_date = start_date
        if due_date is not _UNSET:
            project.due_date = due_date
        await self.session.flush()

        if project.status != old_status:
            state_transitions_total.labels(
                machine="project", from_status=old_status, to_status=project.status
            ).inc()
            await self.activity.record(
                access.workspace_id, user_id, ActivityAction.PROJECT_STATUS_CHANGED,
                f'Changed status of "{project.name}" from "{old_status}" to "{project.status}"',
                entity_id=project.id, project_id=project.id, client_id=project.client_id,
                metadata={"old_status": old_status, "new_status": project.status},
            )
        else:
            await self.activity.record(
                access.workspace_id, user_id, ActivityAction.PROJECT_UPDATED,
                f'Updated project "{project.name}"', entity_id=project.id,
                project_id=project.id, client_id=project.client_id,
            )
        return project

    async def delete_project(self, user_id: str, project_id: str) -> None:
        access = await self.resolver.require(
            user_id, ResourceRef.project(project_id), Permission.PROJECTS_DELETE
        )
        project = await self.session.get(Project, project_id)
        name, client_id = project.name, project.client_id
        await self.session.delete(project)
        await self.session.flush()
        await self.activity.record(
            access.workspace_id, user_id, ActivityAction.PROJECT_DELETED,
            f'Deleted project "{name}"', entity_id=project_id,
            project_id=project_id, client_id=client_id,
        )

    # ── Updates ──────────────────────────────────────────────────────────

    async def post_update(self, user_id: str, project_id: str, content: str) -> ProjectUpdate:
        """Agency-side progress note; every client contact is notified."""
        access = await self.resolver.require(
            user_id, ResourceRef.project(project_id), Permission.UPDATES_POST
        )
        content = (content or "").strip()
        if not content:
            raise ValidationFailedError.for_field("content", "Content is required")

        project, client, workspace = await load_project_context(self.session, project_id)
        update = ProjectUpdate(project_id=project_id, author_id=user_id, content=content)
        self.session.add(update)
        await self.session.flush()

        await self.activity.record(
            access.workspace_id, user_id, ActivityAction.UPDATE_POSTED,
            f'Posted an update on "{project.name}"', entity_id=update.id,
            project_id=project_id, client_id=client.id,
        )
        url = portal_url(workspace.slug, "projects", project_id)
        for contact in await client_contact_users(self.session, client.id):
            self.outbox.add(
                NotificationKind.PROJECT_UPDATE_POSTED,
                contact.email,
                {
                    "recipient_name": contact.name,
                    "workspace_name": workspace.name,
                    "project_name": project.name,
                    "update_content": content,
                    "portal_url": url,
                },
            )
        return update

    async def list_updates(self, user_id: str, project_id: str) -> list[tuple[ProjectUpdate, User]]:
        await self.resolver.require(user_id, ResourceRef.project(project_id), Permission.UPDATES_READ)
        result = await self.session.execute(
            select(ProjectUpdate, User)
            .join(User, User.id == ProjectUpdate.author_id)
            .where(ProjectUpdate.project_id == project_id)
            .order_by(ProjectUpdate.created_at.desc())
        )
        return [(update, author) for update, author in result.all()]
