"""
Portal API: what a client contact sees under ``/api/portal/{slug}``.

Unknown slugs and callers without a contact in that workspace are both 404.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.api.deps import get_db, get_request_context
from portivo.api.serializers import (
    approval_to_dict,
    file_to_dict,
    invoice_to_dict,
    project_to_dict,
    update_to_dict,
)
from portivo.auth.context import RequestContext
from portivo.schemas.schemas import InvoiceSchema, PortalBranding, PortalHome, PortalProjectDetail
from portivo.services.portal_service import PortalService

router = APIRouter(prefix="/api/portal", tags=["portal"])


@router.get("/{slug}", response_model=PortalHome)
async def portal_home(slug: str, ctx: RequestContext = Depends(get_request_context), db: AsyncSession = Depends(get_db)):
    home = await PortalService(db).home(ctx.user_id, slug)
    return {
        "workspace": PortalBranding.model_validate(home["workspace"]),
        "clients": [
            {
                "id": entry["client"].id,
                "name": entry["client"].name,
                "outstanding_invoices": entry["outstanding_invoices"],
                "projects": [
                    {**project_to_dict(p["project"], entry["client"]), "pending_approvals": p["pending_approvals"]}
                    for p in entry["projects"]
                ],
            }
            for entry in home["clients"]
        ],
    }


@router.get("/{slug}/projects/{project_id}", response_model=PortalProjectDetail)
async def portal_project(
    slug: str,
    project_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    detail = await PortalService(db).project(ctx.user_id, slug, project_id)
    return {
        "workspace": PortalBranding.model_validate(detail["workspace"]),
        "project": project_to_dict(detail["project"]),
        "updates": [update_to_dict(u, author) for u, author in detail["updates"]],
        "approvals": [approval_to_dict(a) for a in detail["approvals"]],
        "files": [file_to_dict(f, uploader) for f, uploader in detail["files"]],
        "message_count": detail["message_count"],
    }


@router.get("/{slug}/invoices", response_model=list[InvoiceSchema])
async def portal_invoices(
    slug: str,
    status: str | None = Query(None),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    rows = await PortalService(db).invoices(ctx.user_id, slug, status)
    return [invoice_to_dict(invoice, client) for invoice, client in rows]


@router.get("/{slug}/invoices/{invoice_id}", response_model=InvoiceSchema)
async def portal_invoice(
    slug: str,
    invoice_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    invoice, items, client = await PortalService(db).invoice(ctx.user_id, slug, invoice_id)
    return invoice_to_dict(invoice, client, items)
