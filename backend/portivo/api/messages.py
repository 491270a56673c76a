"""Messages API: the per-project thread between agency and client."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.api.deps import get_db, get_outbox, get_request_context
from portivo.api.serializers import message_to_dict
from portivo.auth.context import RequestContext
from portivo.schemas.schemas import MessageCreate, MessageSchema
from portivo.services.message_service import MessageService
from portivo.services.notifications import NotificationOutbox

router = APIRouter(prefix="/api/messages", tags=["messages"])


@router.get("", response_model=list[MessageSchema])
async def list_messages(
    project_id: str = Query(...),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    rows = await MessageService(db).list_messages(ctx.user_id, project_id)
    return [message_to_dict(message, author) for message, author in rows]


@router.post("", response_model=MessageSchema, status_code=201)
async def post_message(
    body: MessageCreate,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    outbox: NotificationOutbox = Depends(get_outbox),
):
    message, author = await MessageService(db, outbox=outbox).post_message(
        ctx.user_id, body.project_id, body.content
    )
    return message_to_dict(message, author)
