"""Search API: one query across clients, projects, files and invoices."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.api.deps import get_db, get_request_context
from portivo.auth.context import RequestContext
from portivo.schemas.schemas import SearchResponse
from portivo.services.search_service import SearchService

router = APIRouter(prefix="/api/search", tags=["search"])


@router.get("", response_model=SearchResponse)
async def search(
    q: str | None = Query(None),
    type: str = Query("all"),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    return await SearchService(db).search(ctx.user_id, q, type)
