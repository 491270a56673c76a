"""
Invoices API: drafts, line items and the send / pay / cancel lifecycle.

Amounts in and out are integers in the currency's minor unit. Responses
carry the persisted ``status`` and the derived ``effective_status`` (a sent
invoice past its due date reads as ``overdue``).
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.api.deps import get_db, get_outbox, get_request_context
from portivo.api.serializers import invoice_to_dict
from portivo.auth.context import RequestContext
from portivo.models import Client
from portivo.schemas.schemas import InvoiceCreate, InvoiceItemInput, InvoiceSchema, InvoiceUpdate
from portivo.services.invoice_service import InvoiceService
from portivo.services.money import LineItem
from portivo.services.notifications import NotificationOutbox

router = APIRouter(prefix="/api/invoices", tags=["invoices"])


def _line_items(items: list[InvoiceItemInput]) -> list[LineItem]:
    return [LineItem(i.description, i.quantity, i.unit_price) for i in items]


async def _invoice_response(service: InvoiceService, user_id: str, invoice_id: str) -> dict:
    invoice, items, client = await service.get_invoice(user_id, invoice_id)
    return invoice_to_dict(invoice, client, items)


@router.get("", response_model=list[InvoiceSchema])
async def list_invoices(
    client_id: str | None = Query(None),
    status: str | None = Query(None),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    rows = await InvoiceService(db).list_invoices(ctx.user_id, client_id=client_id, status=status)
    return [invoice_to_dict(invoice, client) for invoice, client in rows]


@router.post("", response_model=InvoiceSchema, status_code=201)
async def create_invoice(
    body: InvoiceCreate,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    service = InvoiceService(db)
    invoice = await service.create_invoice(
        ctx.user_id,
        body.client_id,
        _line_items(body.items),
        due_date=body.due_date,
        tax=body.tax,
        currency=body.currency,
        notes=body.notes,
    )
    return await _invoice_response(service, ctx.user_id, invoice.id)


@router.get("/{invoice_id}", response_model=InvoiceSchema)
async def get_invoice(
    invoice_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    return await _invoice_response(InvoiceService(db), ctx.user_id, invoice_id)


@router.patch("/{invoice_id}", response_model=InvoiceSchema)
async def update_invoice(
    invoice_id: str,
    body: InvoiceUpdate,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    outbox: NotificationOutbox = Depends(get_outbox),
):
    changes = body.model_dump(exclude_unset=True, exclude={"items"})
    if body.items is not None:
        changes["items"] = _line_items(body.items)
    service = InvoiceService(db, outbox=outbox)
    await service.update_invoice(ctx.user_id, invoice_id, **changes)
    return await _invoice_response(service, ctx.user_id, invoice_id)


@router.delete("/{invoice_id}", status_code=204)
async def delete_invoice(
    invoice_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    await InvoiceService(db).delete_invoice(ctx.user_id, invoice_id)


# ── Transitions ──

@router.post("/{invoice_id}/send", response_model=InvoiceSchema)
async def send_invoice(
    invoice_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    outbox: NotificationOutbox = Depends(get_outbox),
):
    invoice = await InvoiceService(db, outbox=outbox).send(ctx.user_id, invoice_id)
    return invoice_to_dict(invoice, await db.get(Client, invoice.client_id))


@router.post("/{invoice_id}/mark-paid", response_model=InvoiceSchema)
async def mark_invoice_paid(
    invoice_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    invoice = await InvoiceService(db).mark_paid(ctx.user_id, invoice_id)
    return invoice_to_dict(invoice, await db.get(Client, invoice.client_id))


@router.post("/{invoice_id}/cancel", response_model=InvoiceSchema)
async def cancel_invoice(
    invoice_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    invoice = await InvoiceService(db).cancel(ctx.user_id, invoice_id)
    return invoice_to_dict(invoice, await db.get(Client, invoice.client_id))
