"""
Client Service

A client is created together with its primary contact; afterwards the
contact set may grow or shrink but never to zero, and at most one contact
is primary at any time.
"""

import logging

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.auth.access import AccessResolver, ResourceRef
from portivo.auth.permissions import Permission
from portivo.errors import ConflictError, NotFoundError, ValidationFailedError
from portivo.models import Client, ClientContact, Project, User
from portivo.services.activity_service import ActivityAction, ActivityService
from portivo.services.user_service import UserService
from portivo.services.workspace_service import WorkspaceService

logger = logging.getLogger(__name__)


def _validate_name(name: str | None) -> str:
    name = (name or "").strip()
    if not 1 <= len(name) <= 100:
        raise ValidationFailedError.for_field("name", "Name must be 1-100 characters")
    return name


class ClientService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.resolver = AccessResolver(session)
        self.activity = ActivityService(session)
        self.users = UserService(session)

    async def create_client(
        self,
        user_id: str,
        name: str,
        email: str,
        notes: str | None = None,
        contact_name: str | None = None,
    ) -> Client:
        access = await self.resolver.require_workspace(user_id, Permission.CLIENTS_WRITE)
        name = _validate_name(name)
        await WorkspaceService(self.session).check_plan_limit(access.workspace_id, "clients")

        contact_user = await self.users.find_or_create(email, name=contact_name)

        client = Client(workspace_id=access.workspace_id, name=name, notes=notes or None)
        self.session.add(client)
        await self.session.flush()
        self.session.add(ClientContact(client_id=client.id, user_id=contact_user.id, is_primary=True))
        await self.session.flush()

        await self.activity.record(
            access.workspace_id, user_id, ActivityAction.CLIENT_CREATED,
            f"Added client {client.name}", entity_id=client.id, client_id=client.id,
            metadata={"contact_email": contact_user.email},
        )
        return client

    async def list_clients(self, user_id: str) -> list[dict]:
        """Clients of the caller's workspace, newest first, with contacts and project counts."""
        access = await self.resolver.require_workspace(user_id, Permission.CLIENTS_READ)
        clients = list(
            (
                await self.session.execute(
                    select(Client)
                    .where(Client.workspace_id == access.workspace_id)
                    .order_by(Client.created_at.desc())
                )
            ).scalars()
        )
        ids = [c.id for c in clients]
        contacts = await self._contacts_for(ids)
        counts: dict[str, int] = {}
        if ids:
            rows = await self.session.execute(
                select(Project.client_id, func.count())
                .where(Project.client_id.in_(ids))
                .group_by(Project.client_id)
            )
            counts = dict(rows.all())
        return [
            {"client": c, "contacts": contacts.get(c.id, []), "project_count": counts.get(c.id, 0)}
            for c in clients
        ]

    async def _contacts_for(self, client_ids: list[str]) -> dict[str, list[tuple[ClientContact, User]]]:
        if not client_ids:
            return {}
        rows = await self.session.execute(
            select(ClientContact, User)
            .join(User, User.id == ClientContact.user_id)
            .where(ClientContact.client_id.in_(client_ids))
            .order_by(ClientContact.created_at, ClientContact.id)
        )
        grouped: dict[str, list[tuple[ClientContact, User]]] = {}
        for contact, user in rows.all():
            grouped.setdefault(contact.client_id, []).append((contact, user))
        return grouped

    async def get_client(self, user_id: str, client_id: str) -> dict:
        await self.resolver.require(user_id, ResourceRef.client(client_id), Permission.CLIENTS_READ)
        client = await self.session.get(Client, client_id)
        contacts = await self._contacts_for([client_id])
        projects = list(
            (
                await self.session.execute(
                    select(Project).where(Project.client_id == client_id).order_by(Project.created_at.desc())
                )
            ).scalars()
        )
        return {"client": client, "contacts": contacts.get(client_id, []), "projects": projects}

    async def update_client(
        self, user_id: str, client_id: str, *, name: str | None = None, notes: str | None = None
    ) -> Client:
        access = await self.resolver.require(user_id, ResourceRef.client(client_id), Permission.CLIENTS_WRITE)
        client = await self.session.get(Client, client_id)
        if name is not None:
            client.name = _validate_name(name)
        if notes is not None:
            client.notes = notes or None
        await self.session.flush()
        await self.activity.record(
            access.workspace_id, user_id, ActivityAction.CLIENT_UPDATED,
            f"Updated client {client.name}", entity_id=client.id, client_id=client.id,
        )
        return client

    async def delete_client(self, user_id: str, client_id: str) -> None:
        """Owner/admin only. Projects, invoices and contacts go with the client."""
        access = await self.resolver.require(user_id, ResourceRef.client(client_id), Permission.CLIENTS_DELETE)
        client = await self.session.get(Client, client_id)
        name = client.name
        await self.session.delete(client)
        await self.session.flush()
        await self.activity.record(
            access.workspace_id, user_id, ActivityAction.CLIENT_DELETED,
            f"Deleted client {name}", entity_id=client_id, client_id=client_id,
        )

    # ── Contacts ─────────────────────────────────────────────────────────

    async def _contact(self, client_id: str, contact_id: str) -> ClientContact:
        contact = await self.session.get(ClientContact, contact_id)
        if contact is None or contact.client_id != client_id:
            raise NotFoundError("Contact")
        return contact

    async def _demote_primary(self, client_id: str) -> None:
        await self.session.execute(
            update(ClientContact)
            .where(ClientContact.client_id == client_id, ClientContact.is_primary.is_(True))
            .values(is_primary=False)
            .execution_options(synchronize_session="fetch")
        )

    async def add_contact(
        self,
        user_id: str,
        client_id: str,
        email: str,
        *,
        name: str | None = None,
        is_primary: bool = False,
    ) -> tuple[ClientContact, User]:
        access = await self.resolver.require(user_id, ResourceRef.client(client_id), Permission.CLIENTS_WRITE)
        contact_user = await self.users.find_or_create(email, name=name)

        existing = await self.session.execute(
            select(ClientContact.id).where(
                ClientContact.client_id == client_id, ClientContact.user_id == contact_user.id
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise ConflictError("This person is already a contact for the client")

        if is_primary:
            await self._demote_primary(client_id)
        contact = ClientContact(client_id=client_id, user_id=contact_user.id, is_primary=is_primary)
        self.session.add(contact)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            raise ConflictError("This person is already a contact for the client") from exc

        await self.activity.record(
            access.workspace_id, user_id, ActivityAction.CLIENT_UPDATED,
            f"Added contact {contact_user.email}", entity_id=client_id, client_id=client_id,
            metadata={"contact_email": contact_user.email, "is_primary": is_primary},
        )
        return contact, contact_user

    async def set_primary_contact(self, user_id: str, client_id: str, contact_id: str) -> ClientContact:
        access = await self.resolver.require(user_id, ResourceRef.client(client_id), Permission.CLIENTS_WRITE)
        contact = await self._contact(client_id, contact_id)
        if contact.is_primary:
            return contact
        await self._demote_primary(client_id)
        contact.is_primary = True
        try:
            await self.session.flush()
        except IntegrityError as exc:
            raise ConflictError("The primary contact was changed by someone else, please retry") from exc

        contact_user = await self.session.get(User, contact.user_id)
        await self.activity.record(
            access.workspace_id, user_id, ActivityAction.CLIENT_UPDATED,
            f"Made {contact_user.email} the primary contact", entity_id=client_id, client_id=client_id,
            metadata={"contact_email": contact_user.email, "is_primary": True},
        )
        return contact

    async def remove_contact(self, user_id: str, client_id: str, contact_id: str) -> None:
        access = await self.resolver.require(user_id, ResourceRef.client(client_id), Permission.CLIENTS_WRITE)
        contact = await self._contact(client_id, contact_id)

        remaining = list(
            (
                await self.session.execute(
                    select(ClientContact)
                    .where(ClientContact.client_id == client_id, ClientContact.id != contact_id)
                    .order_by(ClientContact.created_at, ClientContact.id)
                )
            ).scalars()
        )
        if not remaining:
            raise ConflictError("A client must keep at least one contact")

        was_primary = contact.is_primary
        removed_user = await self.session.get(User, contact.user_id)
        await self.session.delete(contact)
        await self.session.flush()
        if was_primary:
            remaining[0].is_primary = True
            await self.session.flush()

        await self.activity.record(
            access.workspace_id, user_id, ActivityAction.CLIENT_UPDATED,
            f"Removed contact {removed_user.email if removed_user else ''}".strip(),
            entity_id=client_id, client_id=client_id,
        )
