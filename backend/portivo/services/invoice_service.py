"""
Invoice Service

Lifecycle:

    draft -> sent -> paid
    draft -> cancelled
    sent  -> cancelled

``paid`` and ``cancelled`` are terminal. ``overdue`` is not something any
operation writes: an invoice is overdue when it is ``sent`` and its due date
has passed, computed at read time by `effective_status` (and by
`overdue_clause` in SQL). Rows persisted as ``overdue`` by older data are
treated like ``sent``.

Every transition is a conditional UPDATE on the expected source status, so
a concurrent transition makes the second caller fail with Conflict instead
of overwriting. Item edits replace the whole item set and recompute the
totals in the same transaction.
"""

import logging
import secrets
from datetime import datetime
from enum import Enum
from typing import Iterable, Sequence

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.auth.access import AccessResolver, ResourceRef, contact_client_ids
from portivo.auth.permissions import Permission
from portivo.database import utcnow
from portivo.errors import ConflictError, NotFoundError, ValidationFailedError
from portivo.middleware.metrics import state_transitions_total
from portivo.models import Client, Invoice, InvoiceItem, Workspace
from portivo.services.activity_service import ActivityAction, ActivityService
from portivo.services.money import (
    DEFAULT_CURRENCY,
    LineItem,
    compute_totals,
    currency_info,
    format_money,
)
from portivo.services.notifications import NotificationKind, NotificationOutbox, portal_url
from portivo.services.project_service import client_contact_users

logger = logging.getLogger(__name__)


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


VALID_TRANSITIONS: dict[InvoiceStatus, set[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: {InvoiceStatus.SENT, InvoiceStatus.CANCELLED},
    InvoiceStatus.SENT: {InvoiceStatus.PAID, InvoiceStatus.CANCELLED},
    InvoiceStatus.OVERDUE: {InvoiceStatus.PAID, InvoiceStatus.CANCELLED},
    InvoiceStatus.PAID: set(),
    InvoiceStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = {InvoiceStatus.PAID.value, InvoiceStatus.CANCELLED.value}

_UNSET = object()
_NUMBER_ATTEMPTS = 5


def sources_for(target: InvoiceStatus) -> list[str]:
    return [src.value for src, targets in VALID_TRANSITIONS.items() if target in targets]


def effective_status(invoice: Invoice, now: datetime | None = None) -> str:
    """The status a reader sees: ``sent`` past its due date reads as ``overdue``."""
    now = now or utcnow()
    if (
        invoice.status == InvoiceStatus.SENT.value
        and invoice.due_date is not None
        and invoice.due_date < now
    ):
        return InvoiceStatus.OVERDUE.value
    return invoice.status


def overdue_clause(now: datetime | None = None):
    now = now or utcnow()
    return or_(
        Invoice.status == InvoiceStatus.OVERDUE.value,
        and_(
            Invoice.status == InvoiceStatus.SENT.value,
            Invoice.due_date.is_not(None),
            Invoice.due_date < now,
        ),
    )


def status_filter_clause(status: str, now: datetime | None = None):
    """WHERE clause matching invoices whose effective status is ``status``."""
    try:
        wanted = InvoiceStatus(status)
    except ValueError:
        raise ValidationFailedError.for_field("status", f"Unknown invoice status: {status}")
    if wanted == InvoiceStatus.OVERDUE:
        return overdue_clause(now)
    if wanted == InvoiceStatus.SENT:
        return and_(Invoice.status == InvoiceStatus.SENT.value, ~overdue_clause(now))
    return Invoice.status == wanted.value


def generate_invoice_number(now: datetime | None = None) -> str:
    now = now or utcnow()
    return f"INV-{now:%Y%m}-{secrets.token_hex(3).upper()}"


class InvoiceService:
    def __init__(self, session: AsyncSession, outbox: NotificationOutbox | None = None):
        self.session = session
        self.outbox = outbox if outbox is not None else NotificationOutbox()
        self.resolver = AccessResolver(session)
        self.activity = ActivityService(session)

    # ── Helpers ──────────────────────────────────────────────────────────

    async def _unique_number(self) -> str:
        for _ in range(_NUMBER_ATTEMPTS):
            number = generate_invoice_number()
            taken = await self.session.execute(select(Invoice.id).where(Invoice.number == number))
            if taken.scalar_one_or_none() is None:
                return number
        raise ConflictError("Could not allocate an invoice number, please retry")

    async def _items(self, invoice_id: str) -> list[InvoiceItem]:
        result = await self.session.execute(
            select(InvoiceItem)
            .where(InvoiceItem.invoice_id == invoice_id)
            .order_by(InvoiceItem.position, InvoiceItem.id)
        )
        return list(result.scalars())

    def _add_items(self, invoice_id: str, items: Sequence[LineItem]) -> None:
        self.session.add_all([
            InvoiceItem(
                invoice_id=invoice_id,
                position=position,
                description=item.description.strip(),
                quantity=item.quantity,
                unit_price=item.unit_price,
                total=item.total,
            )
            for position, item in enumerate(items)
        ])

    async def _transition(
        self,
        invoice_id: str,
        target: InvoiceStatus,
        **values,
    ) -> Invoice:
        """Move the invoice to ``target`` if its current status allows it."""
        invoice = await self.session.get(Invoice, invoice_id)
        from_status = invoice.status
        result = await self.session.execute(
            update(Invoice)
            .where(Invoice.id == invoice_id, Invoice.status.in_(sources_for(target)))
            .values(status=target.value, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            current = await self.session.get(Invoice, invoice_id, populate_existing=True)
            raise ConflictError(
                f"Invoice {current.number} is {current.status} and cannot be marked {target.value}"
            )
        state_transitions_total.labels(
            machine="invoice", from_status=from_status, to_status=target.value
        ).inc()
        return await self.session.get(Invoice, invoice_id, populate_existing=True)

    # ── Commands ─────────────────────────────────────────────────────────

    async def create_invoice(
        self,
        user_id: str,
        client_id: str,
        items: Iterable[LineItem],
        *,
        due_date: datetime | None = None,
        tax: int = 0,
        currency: str = DEFAULT_CURRENCY,
        notes: str | None = None,
    ) -> Invoice:
        access = await self.resolver.require(user_id, ResourceRef.client(client_id), Permission.INVOICES_WRITE)
        items = list(items)
        totals = compute_totals(items, tax)
        currency = currency_info(currency).code

        invoice = Invoice(
            client_id=client_id,
            number=await self._unique_number(),
            status=InvoiceStatus.DRAFT.value,
            currency=currency,
            subtotal=totals.subtotal,
            tax=totals.tax,
            total=totals.total,
            notes=notes or None,
            due_date=due_date,
        )
        self.session.add(invoice)
        await self.session.flush()
        self._add_items(invoice.id, items)
        await self.session.flush()

        await self.activity.record(
            access.workspace_id, user_id, ActivityAction.INVOICE_CREATED,
            f"Created invoice {invoice.number} for {format_money(invoice.total, currency)}",
            entity_id=invoice.id, client_id=client_id,
            metadata={"number": invoice.number, "total": invoice.total, "currency": currency},
        )
        return invoice

    async def update_invoice(
        self,
        user_id: str,
        invoice_id: str,
        *,
        items: Iterable[LineItem] | None = None,
        tax: int | None = None,
        due_date=_UNSET,
        notes: str | None = None,
        status: str | None = None,
    ) -> Invoice:
        """
        Edit an invoice. Items and tax may only change while it is a draft;
        the item set is replaced wholesale and totals recomputed in the same
        transaction. ``status`` is routed through send / mark_paid / cancel.
        """
        access = await self.resolver.require(user_id, ResourceRef.invoice(invoice_id), Permission.INVOICES_WRITE)
        target = None
        if status is not None:
            try:
                target = InvoiceStatus(status)
            except ValueError:
                raise ValidationFailedError.for_field("status", f"Unknown invoice status: {status}")
            if target in (InvoiceStatus.DRAFT, InvoiceStatus.OVERDUE):
                raise ValidationFailedError.for_field(
                    "status", f"Status cannot be set to {target.value} directly"
                )

        invoice = await self.session.get(Invoice, invoice_id)
        changed: list[str] = []

        if items is not None or tax is not None:
            new_items = list(items) if items is not None else [
                LineItem(i.description, i.quantity, i.unit_price) for i in await self._items(invoice_id)
            ]
            totals = compute_totals(new_items, invoice.tax if tax is None else tax)
            result = await self.session.execute(
                update(Invoice)
                .where(Invoice.id == invoice_id, Invoice.status == InvoiceStatus.DRAFT.value)
                .values(
                    subtotal=totals.subtotal,
                    tax=totals.tax,
                    total=totals.total,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise ConflictError("Only draft invoices can have their items or tax changed")
            if items is not None:
                await self.session.execute(delete(InvoiceItem).where(InvoiceItem.invoice_id == invoice_id))
                self._add_items(invoice_id, new_items)
                changed.append("items")
            if tax is not None:
                changed.append("tax")
            await self.session.flush()
            invoice = await self.session.get(Invoice, invoice_id, populate_existing=True)

        if due_date is not _UNSET or notes is not None:
            if invoice.status in TERMINAL_STATUSES:
                raise ConflictError(f"Invoice {invoice.number} is {invoice.status} and can no longer be edited")
            if due_date is not _UNSET:
                invoice.due_date = due_date
                changed.append("due_date")
            if notes is not None:
                invoice.notes = notes or None
                changed.append("notes")
            await self.session.flush()

        if changed:
            await self.activity.record(
                access.workspace_id, user_id, ActivityAction.INVOICE_UPDATED,
                f"Updated invoice {invoice.number}", entity_id=invoice.id, client_id=invoice.client_id,
                metadata={"fields": changed, "total": invoice.total},
            )

        if target == InvoiceStatus.SENT:
            invoice = await self.send(user_id, invoice_id)
        elif target == InvoiceStatus.PAID:
            invoice = await self.mark_paid(user_id, invoice_id)
        elif target == InvoiceStatus.CANCELLED:
            invoice = await self.cancel(user_id, invoice_id)
        return invoice

    async def send(self, user_id: str, invoice_id: str) -> Invoice:
        """draft -> sent. Notifies the client's primary contact."""
        access = await self.resolver.require(user_id, ResourceRef.invoice(invoice_id), Permission.INVOICES_WRITE)
        current = await self.session.get(Invoice, invoice_id)
        if current.status != InvoiceStatus.DRAFT.value:
            raise ConflictError(f"Invoice {current.number} is {current.status}; only drafts can be sent")
        invoice = await self._transition(invoice_id, InvoiceStatus.SENT, sent_at=utcnow())

        client = await self.session.get(Client, invoice.client_id)
        workspace = await self.session.get(Workspace, client.workspace_id)
        amount = format_money(invoice.total, invoice.currency)
        await self.activity.record(
            access.workspace_id, user_id, ActivityAction.INVOICE_SENT,
            f"Sent invoice {invoice.number} ({amount}) to {client.name}",
            entity_id=invoice.id, client_id=client.id,
            metadata={"number": invoice.number, "total": invoice.total},
        )

        contacts = await client_contact_users(self.session, client.id)
        if contacts:
            primary = contacts[0]
            self.outbox.add(
                NotificationKind.INVOICE_SENT,
                primary.email,
                {
                    "recipient_name": primary.name or client.name,
                    "workspace_name": workspace.name,
                    "invoice_number": invoice.number,
                    "amount": amount,
                    "due_date": invoice.due_date.strftime("%B %d, %Y") if invoice.due_date else None,
                    "portal_url": portal_url(workspace.slug, "invoices", invoice.id),
                },
            )
        return invoice

    async def mark_paid(self, user_id: str, invoice_id: str) -> Invoice:
        """sent (or legacy overdue) -> paid."""
        access = await self.resolver.require(user_id, ResourceRef.invoice(invoice_id), Permission.INVOICES_WRITE)
        invoice = await self._transition(invoice_id, InvoiceStatus.PAID, paid_at=utcnow())
        await self.activity.record(
            access.workspace_id, user_id, ActivityAction.INVOICE_PAID,
            f"Marked invoice {invoice.number} as paid", entity_id=invoice.id, client_id=invoice.client_id,
            metadata={"number": invoice.number, "total": invoice.total},
        )
        return invoice

    async def cancel(self, user_id: str, invoice_id: str) -> Invoice:
        access = await self.resolver.require(user_id, ResourceRef.invoice(invoice_id), Permission.INVOICES_WRITE)
        invoice = await self._transition(invoice_id, InvoiceStatus.CANCELLED, cancelled_at=utcnow())
        await self.activity.record(
            access.workspace_id, user_id, ActivityAction.INVOICE_CANCELLED,
            f"Cancelled invoice {invoice.number}", entity_id=invoice.id, client_id=invoice.client_id,
            metadata={"number": invoice.number},
        )
        return invoice

    async def delete_invoice(self, user_id: str, invoice_id: str) -> None:
        access = await self.resolver.require(user_id, ResourceRef.invoice(invoice_id), Permission.INVOICES_DELETE)
        invoice = await self.session.get(Invoice, invoice_id)
        number, client_id = invoice.number, invoice.client_id
        await self.session.delete(invoice)
        await self.session.flush()
        await self.activity.record(
            access.workspace_id, user_id, ActivityAction.INVOICE_DELETED,
            f"Deleted invoice {number}", entity_id=invoice_id, client_id=client_id,
            metadata={"number": number},
        )

    # ── Queries ──────────────────────────────────────────────────────────

    async def get_invoice(self, user_id: str, invoice_id: str) -> tuple[Invoice, list[InvoiceItem], Client]:
        """Either party; client contacts never see drafts."""
        access = await self.resolver.require(user_id, ResourceRef.invoice(invoice_id), Permission.INVOICES_READ)
        invoice = await self.session.get(Invoice, invoice_id)
        if access.is_client and invoice.status == InvoiceStatus.DRAFT.value:
            raise NotFoundError("Invoice")
        client = await self.session.get(Client, invoice.client_id)
        return invoice, await self._items(invoice_id), client

    async def list_invoices(
        self, user_id: str, *, client_id: str | None = None, status: str | None = None
    ) -> list[tuple[Invoice, Client]]:
        access = await self.resolver.require_workspace(user_id, Permission.INVOICES_READ)
        query = (
            select(Invoice, Client)
            .join(Client, Client.id == Invoice.client_id)
            .where(Client.workspace_id == access.workspace_id)
        )
        if client_id:
            query = query.where(Invoice.client_id == client_id)
        if status:
            query = query.where(status_filter_clause(status))
        result = await self.session.execute(query.order_by(Invoice.created_at.desc()))
        return [(invoice, client) for invoice, client in result.all()]

    async def list_client_invoices(
        self, user_id: str, workspace_id: str, *, status: str | None = None
    ) -> list[tuple[Invoice, Client]]:
        """Portal listing: non-draft invoices of the clients the caller is a contact of."""
        query = (
            select(Invoice, Client)
            .join(Client, Client.id == Invoice.client_id)
            .where(
                Client.workspace_id == workspace_id,
                Invoice.client_id.in_(contact_client_ids(user_id)),
                Invoice.status != InvoiceStatus.DRAFT.value,
            )
        )
        if status:
            query = query.where(status_filter_clause(status))
        result = await self.session.execute(query.order_by(Invoice.created_at.desc()))
        return [(invoice, client) for invoice, client in result.all()]
