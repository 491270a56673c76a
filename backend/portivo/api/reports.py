"""
Reports API: workspace reports filtered by creation date.

``start_date`` and ``end_date`` are inclusive calendar days; either may be
omitted for an open-ended period.
"""

from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.api.deps import get_db, get_request_context
from portivo.auth.context import RequestContext
from portivo.schemas.schemas import ReportResponse
from portivo.services.report_service import ReportPeriod, ReportService, ReportType

router = APIRouter(prefix="/api/reports", tags=["reports"])


@router.get("", response_model=ReportResponse)
async def get_report(
    type: ReportType = Query(ReportType.SUMMARY),
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    period = ReportPeriod(start=start_date, end=end_date)
    return await ReportService(db).generate(ctx.user_id, type, period)
