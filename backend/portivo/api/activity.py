"""Activity API: newest-first feed for a project or the caller's workspace."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.api.deps import get_db, get_request_context
from portivo.auth.context import RequestContext
from portivo.schemas.schemas import ActivityEntry
from portivo.services.activity_service import MAX_ACTIVITY_LIMIT, ActivityService

router = APIRouter(prefix="/api/activity", tags=["activity"])


@router.get("", response_model=list[ActivityEntry])
async def list_activity(
    project_id: str | None = Query(None),
    workspace_id: str | None = Query(None),
    limit: int | None = Query(None, ge=1, le=MAX_ACTIVITY_LIMIT),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    return await ActivityService(db).list_activity(
        ctx.user_id, project_id=project_id, workspace_id=workspace_id, limit=limit
    )
