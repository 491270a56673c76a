"""
Workspace Service

Agency tenants and their team:
- Workspace creation together with its owner membership (one transaction)
- Workspace settings and deletion
- Team invites, removals and role changes under the last-owner rule
- Plan limits for clients and members
"""

import logging
import re
import secrets
from datetime import timedelta

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.auth.access import Access, AccessResolver
from portivo.auth.permissions import Permission
from portivo.auth.roles import WorkspaceRole
from portivo.config import settings
from portivo.database import utcnow
from portivo.errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailedError
from portivo.models import Client, User, Workspace, WorkspaceMember
from portivo.services.activity_service import ActivityAction, ActivityService
from portivo.services.notifications import NotificationKind, NotificationOutbox
from portivo.services.user_service import UserService

logger = logging.getLogger(__name__)

# plan -> (max clients, max members); None means unlimited
PLAN_LIMITS: dict[str, tuple[int | None, int | None]] = {
    "trial": (20, 10),
    "starter": (5, 3),
    "professional": (20, 10),
    "agency": (None, None),
}

_SLUG_RE = re.compile(r"^[a-z0-9-]{2,100}$")
_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")
INVITABLE_ROLES = {WorkspaceRole.ADMIN.value, WorkspaceRole.MEMBER.value}


def validate_brand_color(color: str) -> str:
    if not _COLOR_RE.match(color):
        raise ValidationFailedError.for_field("brand_color", "Brand color must be a hex value like #0066FF")
    return color.upper()


class WorkspaceService:
    def __init__(self, session: AsyncSession, outbox: NotificationOutbox | None = None):
        self.session = session
        self.outbox = outbox if outbox is not None else NotificationOutbox()
        self.resolver = AccessResolver(session)
        self.activity = ActivityService(session)
        self.users = UserService(session)

    # ── Workspace ────────────────────────────────────────────────────────

    async def _slug_taken(self, slug: str) -> bool:
        result = await self.session.execute(select(Workspace.id).where(Workspace.slug == slug))
        return result.scalar_one_or_none() is not None

    async def create_workspace(
        self,
        user_id: str,
        name: str,
        slug: str,
        brand_color: str | None = None,
    ) -> Workspace:
        """
        Create a workspace with the caller as its owner. Both rows are flushed
        together; a caller who already belongs to a workspace gets Conflict,
        whether found by the check or by the unique constraint on
        ``workspace_members.user_id``.
        """
        name = (name or "").strip()
        if not 2 <= len(name) <= 100:
            raise ValidationFailedError.for_field("name", "Name must be 2-100 characters")
        slug = (slug or "").strip().lower()
        if not _SLUG_RE.match(slug):
            raise ValidationFailedError.for_field(
                "slug", "Slug must be 2-100 characters of lowercase letters, digits and hyphens"
            )
        color = validate_brand_color(brand_color) if brand_color else settings.default_brand_color

        if await self.resolver.membership(user_id) is not None:
            raise ConflictError("You already have a workspace")

        if await self._slug_taken(slug):
            slug = f"{slug[:95]}-{secrets.token_hex(2)}"

        workspace = Workspace(
            name=name,
            slug=slug,
            brand_color=color,
            plan="trial",
            trial_ends_at=utcnow() + timedelta(days=settings.trial_days),
        )
        self.session.add(workspace)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            # a concurrent request took the slug after the check above
            raise ConflictError("That workspace address was just taken, please try again") from exc
        self.session.add(
            WorkspaceMember(workspace_id=workspace.id, user_id=user_id, role=WorkspaceRole.OWNER.value)
        )
        try:
            await self.session.flush()
        except IntegrityError as exc:
            raise ConflictError("You already have a workspace") from exc

        await self.activity.record(
            workspace.id, user_id, ActivityAction.WORKSPACE_CREATED,
            f"Created workspace {workspace.name}", entity_id=workspace.id,
        )
        logger.info("Workspace %s created by %s", workspace.slug, user_id)
        return workspace

    async def get_workspace(self, user_id: str) -> tuple[Workspace, Access]:
        access = await self.resolver.require_workspace(user_id, Permission.WORKSPACE_READ)
        workspace = await self.session.get(Workspace, access.workspace_id)
        return workspace, access

    async def get_by_slug(self, slug: str) -> Workspace:
        result = await self.session.execute(select(Workspace).where(Workspace.slug == slug))
        workspace = result.scalar_one_or_none()
        if workspace is None:
            raise NotFoundError("Workspace")
        return workspace

    async def update_workspace(self, user_id: str, **changes) -> Workspace:
        access = await self.resolver.require_workspace(user_id, Permission.WORKSPACE_MANAGE)
        workspace = await self.session.get(Workspace, access.workspace_id)

        if "name" in changes and changes["name"] is not None:
            name = changes["name"].strip()
            if not 2 <= len(name) <= 100:
                raise ValidationFailedError.for_field("name", "Name must be 2-100 characters")
            workspace.name = name
        if changes.get("brand_color") is not None:
            workspace.brand_color = validate_brand_color(changes["brand_color"])
        for field in ("logo", "website", "address", "phone"):
            if field in changes and changes[field] is not None:
                setattr(workspace, field, changes[field] or None)

        await self.session.flush()
        await self.activity.record(
            workspace.id, user_id, ActivityAction.WORKSPACE_UPDATED,
            "Updated workspace settings", entity_id=workspace.id,
            metadata={"fields": sorted(k for k, v in changes.items() if v is not None)},
        )
        return workspace

    async def delete_workspace(self, user_id: str) -> None:
        """Owner only. Cascades to every client, project and invoice."""
        access = await self.resolver.require_workspace(user_id, Permission.WORKSPACE_DELETE)
        workspace = await self.session.get(Workspace, access.workspace_id)
        await self.session.delete(workspace)
        await self.session.flush()
        logger.info("Workspace %s deleted by %s", access.workspace_id, user_id)

    # ── Plan limits ──────────────────────────────────────────────────────

    async def check_plan_limit(self, workspace_id: str, resource: str) -> None:
        """Raise Conflict when adding one more client/member would exceed the plan."""
        workspace = await self.session.get(Workspace, workspace_id)
        max_clients, max_members = PLAN_LIMITS.get(workspace.plan, PLAN_LIMITS["trial"])
        if resource == "clients":
            limit, model = max_clients, Client
        else:
            limit, model = max_members, WorkspaceMember
        if limit is None:
            return
        count = (
            await self.session.execute(
                select(func.count()).select_from(model).where(model.workspace_id == workspace_id)
            )
        ).scalar_one()
        if count >= limit:
            raise ConflictError(
                f"Your {workspace.plan} plan allows at most {limit} {resource}. Upgrade to add more."
            )

    # ── Team ─────────────────────────────────────────────────────────────

    async def list_members(self, user_id: str) -> list[tuple[WorkspaceMember, User]]:
        access = await self.resolver.require_workspace(user_id, Permission.TEAM_READ)
        result = await self.session.execute(
            select(WorkspaceMember, User)
            .join(User, User.id == WorkspaceMember.user_id)
            .where(WorkspaceMember.workspace_id == access.workspace_id)
            .order_by(WorkspaceMember.created_at)
        )
        return [(member, user) for member, user in result.all()]

    async def invite_member(self, user_id: str, email: str, role: str) -> tuple[WorkspaceMember, User]:
        access = await self.resolver.require_workspace(user_id, Permission.TEAM_MANAGE)
        if role not in INVITABLE_ROLES:
            raise ValidationFailedError.for_field("role", "Role must be admin or member")

        await self.check_plan_limit(access.workspace_id, "members")
        invited = await self.users.find_or_create(email)

        existing = await self.resolver.membership(invited.id)
        if existing is not None:
            if existing.workspace_id == access.workspace_id:
                raise ConflictError("This user is already a team member")
            raise ConflictError("This user already belongs to another workspace")

        member = WorkspaceMember(workspace_id=access.workspace_id, user_id=invited.id, role=role)
        self.session.add(member)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            raise ConflictError("This user already belongs to a workspace") from exc

        workspace = await self.session.get(Workspace, access.workspace_id)
        inviter = await self.session.get(User, user_id)
        await self.activity.record(
            access.workspace_id, user_id, ActivityAction.MEMBER_INVITED,
            f"Invited {invited.email} as {role}", entity_id=member.id,
            metadata={"email": invited.email, "role": role},
        )
        self.outbox.add(
            NotificationKind.MEMBER_INVITED,
            invited.email,
            {
                "recipient_name": invited.name,
                "inviter_name": inviter.name or inviter.email if inviter else None,
                "workspace_name": workspace.name,
                "role": role,
                "login_url": f"{settings.app_url}/login",
            },
        )
        return member, invited

    async def _member_in_workspace(self, workspace_id: str, member_id: str) -> WorkspaceMember:
        member = await self.session.get(WorkspaceMember, member_id)
        if member is None or member.workspace_id != workspace_id:
            raise NotFoundError("Member")
        return member

    async def _owner_count(self, workspace_id: str) -> int:
        return (
            await self.session.execute(
                select(func.count()).select_from(WorkspaceMember).where(
                    WorkspaceMember.workspace_id == workspace_id,
                    WorkspaceMember.role == WorkspaceRole.OWNER.value,
                )
            )
        ).scalar_one()

    async def remove_member(self, user_id: str, member_id: str) -> None:
        access = await self.resolver.require_workspace(user_id, Permission.TEAM_MANAGE)
        member = await self._member_in_workspace(access.workspace_id, member_id)

        if member.role == WorkspaceRole.OWNER.value:
            if access.role != WorkspaceRole.OWNER:
                raise ForbiddenError("Only an owner can remove another owner")
            if await self._owner_count(access.workspace_id) <= 1:
                raise ConflictError("A workspace must keep at least one owner")

        removed = await self.session.get(User, member.user_id)
        await self.session.delete(member)
        await self.session.flush()
        await self.activity.record(
            access.workspace_id, user_id, ActivityAction.MEMBER_REMOVED,
            f"Removed {removed.email if removed else 'a member'} from the team",
            entity_id=member_id,
            metadata={"email": removed.email if removed else None, "role": member.role},
        )

    async def change_member_role(self, user_id: str, member_id: str, role: str) -> WorkspaceMember:
        access = await self.resolver.require_workspace(user_id, Permission.TEAM_ROLES)
        try:
            new_role = WorkspaceRole(role)
        except ValueError:
            raise ValidationFailedError.for_field("role", "Role must be owner, admin or member")
        member = await self._member_in_workspace(access.workspace_id, member_id)

        old_role = member.role
        if old_role == new_role.value:
            return member
        if old_role == WorkspaceRole.OWNER.value and await self._owner_count(access.workspace_id) <= 1:
            raise ConflictError("A workspace must keep at least one owner")

        member.role = new_role.value
        await self.session.flush()
        await self.activity.record(
            access.workspace_id, user_id, ActivityAction.MEMBER_ROLE_CHANGED,
            f"Changed role from {old_role} to {new_role.value}", entity_id=member.id,
            metadata={"old_role": old_role, "new_role": new_role.value},
        )
        return member
