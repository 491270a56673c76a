"""
Clients API: agency-side client accounts and their contacts.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.api.deps import get_db, get_request_context
from portivo.api.serializers import client_to_dict, contact_to_dict, project_to_dict
from portivo.auth.context import RequestContext
from portivo.models import User
from portivo.schemas.schemas import (
    ClientCreate,
    ClientDetail,
    ClientSchema,
    ClientSummary,
    ClientUpdate,
    ContactCreate,
    ContactSchema,
)
from portivo.services.client_service import ClientService

router = APIRouter(prefix="/api/clients", tags=["clients"])


# ── Clients ──

@router.get("", response_model=list[ClientSummary])
async def list_clients(ctx: RequestContext = Depends(get_request_context), db: AsyncSession = Depends(get_db)):
    rows = await ClientService(db).list_clients(ctx.user_id)
    return [
        {
            **client_to_dict(row["client"]),
            "contacts": [contact_to_dict(c, u) for c, u in row["contacts"]],
            "project_count": row["project_count"],
        }
        for row in rows
    ]


@router.post("", response_model=ClientSchema, status_code=201)
async def create_client(
    body: ClientCreate,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    client = await ClientService(db).create_client(
        ctx.user_id, body.name, body.email, notes=body.notes, contact_name=body.contact_name
    )
    return client_to_dict(client)


@router.get("/{client_id}", response_model=ClientDetail)
async def get_client(
    client_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    detail = await ClientService(db).get_client(ctx.user_id, client_id)
    client = detail["client"]
    return {
        **client_to_dict(client),
        "contacts": [contact_to_dict(c, u) for c, u in detail["contacts"]],
        "projects": [project_to_dict(p, client) for p in detail["projects"]],
    }


@router.patch("/{client_id}", response_model=ClientSchema)
async def update_client(
    client_id: str,
    body: ClientUpdate,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    client = await ClientService(db).update_client(ctx.user_id, client_id, name=body.name, notes=body.notes)
    return client_to_dict(client)


@router.delete("/{client_id}", status_code=204)
async def delete_client(
    client_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    await ClientService(db).delete_client(ctx.user_id, client_id)


# ── Contacts ──

@router.post("/{client_id}/contacts", response_model=ContactSchema, status_code=201)
async def add_contact(
    client_id: str,
    body: ContactCreate,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    contact, user = await ClientService(db).add_contact(
        ctx.user_id, client_id, body.email, name=body.name, is_primary=body.is_primary
    )
    return contact_to_dict(contact, user)


@router.put("/{client_id}/contacts/{contact_id}/primary", response_model=ContactSchema)
async def set_primary_contact(
    client_id: str,
    contact_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    contact = await ClientService(db).set_primary_contact(ctx.user_id, client_id, contact_id)
    return contact_to_dict(contact, await db.get(User, contact.user_id))


@router.delete("/{client_id}/contacts/{contact_id}", status_code=204)
async def remove_contact(
    client_id: str,
    contact_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    await ClientService(db).remove_contact(ctx.user_id, client_id, contact_id)
