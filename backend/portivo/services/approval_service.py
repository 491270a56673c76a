"""
Approval Service

Approval requests follow a one-shot state machine:

    pending -> approved | changes-requested | rejected   (all terminal)

The agency requests, a client contact of the owning client responds. The
response is applied with a conditional UPDATE on ``status = 'pending'`` so
two concurrent responses cannot both succeed; the loser gets Conflict and
the stored response is left untouched.
"""

import logging
from enum import Enum

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.auth.access import AccessResolver, Disclosure, Party, ResourceRef
from portivo.auth.permissions import Permission
from portivo.database import utcnow
from portivo.errors import ConflictError, ValidationFailedError
from portivo.middleware.metrics import state_transitions_total
from portivo.models import ApprovalRequest, User
from portivo.services.activity_service import ActivityAction, ActivityService
from portivo.services.notifications import NotificationKind, NotificationOutbox, dashboard_url, portal_url
from portivo.services.project_service import client_contact_users, load_project_context

logger = logging.getLogger(__name__)


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes-requested"
    REJECTED = "rejected"


VALID_TRANSITIONS: dict[ApprovalStatus, set[ApprovalStatus]] = {
    ApprovalStatus.PENDING: {
        ApprovalStatus.APPROVED,
        ApprovalStatus.CHANGES_REQUESTED,
        ApprovalStatus.REJECTED,
    },
    ApprovalStatus.APPROVED: set(),
    ApprovalStatus.CHANGES_REQUESTED: set(),
    ApprovalStatus.REJECTED: set(),
}

RESPONSE_ACTIONS: dict[ApprovalStatus, ActivityAction] = {
    ApprovalStatus.APPROVED: ActivityAction.APPROVAL_APPROVED,
    ApprovalStatus.CHANGES_REQUESTED: ActivityAction.APPROVAL_CHANGES_REQUESTED,
    ApprovalStatus.REJECTED: ActivityAction.APPROVAL_REJECTED,
}

_RESPONSE_VERBS = {
    ApprovalStatus.APPROVED: "Approved",
    ApprovalStatus.CHANGES_REQUESTED: "Requested changes on",
    ApprovalStatus.REJECTED: "Rejected",
}


def parse_response_status(value: str) -> ApprovalStatus:
    try:
        status = ApprovalStatus(value)
    except ValueError:
        status = None
    if status is None or status not in VALID_TRANSITIONS[ApprovalStatus.PENDING]:
        raise ValidationFailedError.for_field(
            "status", "Status must be one of: approved, changes-requested, rejected"
        )
    return status


class ApprovalService:
    def __init__(self, session: AsyncSession, outbox: NotificationOutbox | None = None):
        self.session = session
        self.outbox = outbox if outbox is not None else NotificationOutbox()
        self.resolver = AccessResolver(session)
        self.activity = ActivityService(session)

    async def request(
        self,
        user_id: str,
        project_id: str,
        title: str,
        description: str | None = None,
    ) -> ApprovalRequest:
        """Agency-side. Creates a pending request and notifies every client contact."""
        access = await self.resolver.require(
            user_id, ResourceRef.project(project_id), Permission.APPROVALS_REQUEST
        )
        title = (title or "").strip()
        if not 1 <= len(title) <= 200:
            raise ValidationFailedError.for_field("title", "Title must be 1-200 characters")

        project, client, workspace = await load_project_context(self.session, project_id)
        approval = ApprovalRequest(
            project_id=project_id,
            requested_by_id=user_id,
            title=title,
            description=description or None,
            status=ApprovalStatus.PENDING.value,
        )
        self.session.add(approval)
        await self.session.flush()

        await self.activity.record(
            access.workspace_id, user_id, ActivityAction.APPROVAL_REQUESTED,
            f'Requested approval for "{title}"', entity_id=approval.id,
            project_id=project_id, client_id=client.id,
        )

        url = portal_url(workspace.slug, "projects", project_id, "approvals", approval.id)
        for contact in await client_contact_users(self.session, client.id):
            self.outbox.add(
                NotificationKind.APPROVAL_REQUESTED,
                contact.email,
                {
                    "recipient_name": contact.name,
                    "workspace_name": workspace.name,
                    "project_name": project.name,
                    "approval_title": title,
                    "approval_description": approval.description,
                    "portal_url": url,
                },
            )
        return approval

    async def respond(
        self,
        user_id: str,
        approval_id: str,
        status: str,
        note: str | None = None,
    ) -> ApprovalRequest:
        """
        Client-side. Access is resolved now, against the approval's current
        project and client, never reused from request time.
        """
        new_status = parse_response_status(status)
        access = await self.resolver.require(
            user_id, ResourceRef.approval(approval_id), Permission.APPROVALS_RESPOND,
            disclosure=Disclosure.DENY, as_party=Party.CLIENT,
        )

        now = utcnow()
        result = await self.session.execute(
            update(ApprovalRequest)
            .where(
                ApprovalRequest.id == approval_id,
                ApprovalRequest.status == ApprovalStatus.PENDING.value,
            )
            .values(
                status=new_status.value,
                response_note=note or None,
                responded_by_id=user_id,
                responded_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConflictError("This approval has already been responded to")

        state_transitions_total.labels(
            machine="approval", from_status=ApprovalStatus.PENDING.value, to_status=new_status.value
        ).inc()
        approval = await self.session.get(ApprovalRequest, approval_id, populate_existing=True)
        project, client, workspace = await load_project_context(self.session, approval.project_id)

        await self.activity.record(
            access.workspace_id, user_id, RESPONSE_ACTIONS[new_status],
            f'{_RESPONSE_VERBS[new_status]} "{approval.title}"', entity_id=approval.id,
            project_id=project.id, client_id=client.id,
            metadata={"status": new_status.value, "note": approval.response_note},
        )

        requester = await self.session.get(User, approval.requested_by_id)
        responder = await self.session.get(User, user_id)
        if requester is not None:
            self.outbox.add(
                NotificationKind.APPROVAL_RESPONDED,
                requester.email,
                {
                    "recipient_name": requester.name,
                    "responder_name": responder.name or responder.email,
                    "project_name": project.name,
                    "approval_title": approval.title,
                    "status": new_status.value,
                    "response_note": approval.response_note,
                    "dashboard_url": dashboard_url("projects", project.id),
                },
            )
        logger.info("Approval %s -> %s by %s", approval_id, new_status.value, user_id)
        return approval

    async def get_approval(self, user_id: str, approval_id: str) -> tuple[ApprovalRequest, dict]:
        """Either party. Non-parties get Forbidden: the link names the approval."""
        await self.resolver.require(
            user_id, ResourceRef.approval(approval_id), Permission.APPROVALS_READ,
            disclosure=Disclosure.DENY,
        )
        approval = await self.session.get(ApprovalRequest, approval_id)
        project, client, workspace = await load_project_context(self.session, approval.project_id)
        people = await self._people([approval.requested_by_id, approval.responded_by_id])
        return approval, {
            "project": {"id": project.id, "name": project.name},
            "client": {"id": client.id, "name": client.name},
            "workspace": {"id": workspace.id, "name": workspace.name, "slug": workspace.slug},
            "requested_by": people.get(approval.requested_by_id),
            "responded_by": people.get(approval.responded_by_id),
        }

    async def list_approvals(
        self, user_id: str, project_id: str, *, status: str | None = None
    ) -> list[ApprovalRequest]:
        await self.resolver.require(user_id, ResourceRef.project(project_id), Permission.APPROVALS_READ)
        query = select(ApprovalRequest).where(ApprovalRequest.project_id == project_id)
        if status:
            try:
                query = query.where(ApprovalRequest.status == ApprovalStatus(status).value)
            except ValueError:
                raise ValidationFailedError.for_field("status", f"Unknown approval status: {status}")
        result = await self.session.execute(query.order_by(ApprovalRequest.created_at.desc()))
        return list(result.scalars())

    async def _people(self, user_ids: list[str | None]) -> dict[str, dict]:
        ids = {uid for uid in user_ids if uid}
        if not ids:
            return {}
        rows = await self.session.execute(select(User).where(User.id.in_(ids)))
        return {
            u.id: {"id": u.id, "name": u.name, "email": u.email, "avatar": u.avatar}
            for u in rows.scalars()
        }
