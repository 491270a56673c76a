"""
Approvals API: the agency asks, a client contact answers exactly once.

A second answer, or a race between two contacts, gets 409.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.api.deps import get_db, get_outbox, get_request_context
from portivo.api.serializers import approval_to_dict
from portivo.auth.context import RequestContext
from portivo.schemas.schemas import ApprovalCreate, ApprovalDetail, ApprovalRespond, ApprovalSchema
from portivo.services.approval_service import ApprovalService
from portivo.services.notifications import NotificationOutbox

router = APIRouter(prefix="/api/approvals", tags=["approvals"])


@router.get("", response_model=list[ApprovalSchema])
async def list_approvals(
    project_id: str = Query(...),
    status: str | None = Query(None),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    approvals = await ApprovalService(db).list_approvals(ctx.user_id, project_id, status=status)
    return [approval_to_dict(a) for a in approvals]


@router.post("", response_model=ApprovalSchema, status_code=201)
async def request_approval(
    body: ApprovalCreate,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    outbox: NotificationOutbox = Depends(get_outbox),
):
    approval = await ApprovalService(db, outbox=outbox).request(
        ctx.user_id, body.project_id, body.title, body.description
    )
    return approval_to_dict(approval)


@router.get("/{approval_id}", response_model=ApprovalDetail)
async def get_approval(
    approval_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    approval, related = await ApprovalService(db).get_approval(ctx.user_id, approval_id)
    return {**approval_to_dict(approval), **related}


@router.post("/{approval_id}/respond", response_model=ApprovalSchema)
async def respond_to_approval(
    approval_id: str,
    body: ApprovalRespond,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    outbox: NotificationOutbox = Depends(get_outbox),
):
    approval = await ApprovalService(db, outbox=outbox).respond(
        ctx.user_id, approval_id, body.status, body.response_note
    )
    return approval_to_dict(approval)
