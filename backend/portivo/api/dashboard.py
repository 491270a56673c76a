"""
Dashboard API: agency headline numbers.

Money figures are objects keyed by currency code, values in minor units.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.api.deps import get_db, get_request_context
from portivo.auth.context import RequestContext
from portivo.schemas.schemas import DashboardStats
from portivo.services.dashboard_service import DashboardService

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


@router.get("/stats", response_model=DashboardStats)
async def get_stats(ctx: RequestContext = Depends(get_request_context), db: AsyncSession = Depends(get_db)):
    return await DashboardService(db).stats(ctx.user_id)
