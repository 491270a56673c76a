"""Team API: workspace members, invitations and roles."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.api.deps import get_db, get_outbox, get_request_context
from portivo.api.serializers import member_to_dict
from portivo.auth.context import RequestContext
from portivo.models import User
from portivo.schemas.schemas import InviteRequest, MemberSchema, RoleChange
from portivo.services.notifications import NotificationOutbox
from portivo.services.workspace_service import WorkspaceService

router = APIRouter(prefix="/api/team", tags=["team"])


@router.get("", response_model=list[MemberSchema])
async def list_members(ctx: RequestContext = Depends(get_request_context), db: AsyncSession = Depends(get_db)):
    members = await WorkspaceService(db).list_members(ctx.user_id)
    return [member_to_dict(member, user) for member, user in members]


@router.post("/invite", response_model=MemberSchema, status_code=201)
async def invite_member(
    body: InviteRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    outbox: NotificationOutbox = Depends(get_outbox),
):
    member, user = await WorkspaceService(db, outbox=outbox).invite_member(ctx.user_id, body.email, body.role)
    return member_to_dict(member, user)


@router.patch("/{member_id}", response_model=MemberSchema)
async def change_member_role(
    member_id: str,
    body: RoleChange,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    member = await WorkspaceService(db).change_member_role(ctx.user_id, member_id, body.role)
    user = await db.get(User, member.user_id)
    return member_to_dict(member, user)


@router.delete("/{member_id}", status_code=204)
async def remove_member(
    member_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    await WorkspaceService(db).remove_member(ctx.user_id, member_id)
