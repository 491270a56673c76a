"""Users are shared by both parties and created on first reference."""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.errors import NotFoundError, ValidationFailedError
from portivo.models import Client, ClientContact, User, Workspace, WorkspaceMember


def normalize_email(email: str) -> str:
    email = (email or "").strip().lower()
    if "@" not in email or email.startswith("@") or email.endswith("@"):
        raise ValidationFailedError.for_field("email", "Invalid email address")
    return email


class UserService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, user_id: str) -> User:
        user = await self.session.get(User, user_id)
        if user is None:
            raise NotFoundError("User")
        return user

    async def find_by_email(self, email: str) -> User | None:
        result = await self.session.execute(select(User).where(User.email == normalize_email(email)))
        return result.scalar_one_or_none()

    async def find_or_create(self, email: str, name: str | None = None) -> User:
        """
        Look the user up by e-mail, creating the row if needed. A concurrent
        insert of the same address loses on the unique constraint and re-reads.
        """
        email = normalize_email(email)
        user = await self.find_by_email(email)
        if user is not None:
            return user

        user = User(email=email, name=name)
        try:
            async with self.session.begin_nested():
                self.session.add(user)
        except IntegrityError:
            existing = await self.find_by_email(email)
            if existing is None:
                raise
            return existing
        return user

    async def update_profile(self, user_id: str, *, name: str | None = None, avatar: str | None = None) -> User:
        user = await self.get(user_id)
        if name is not None:
            name = name.strip()
            if not name or len(name) > 100:
                raise ValidationFailedError.for_field("name", "Name must be 1-100 characters")
            user.name = name
        if avatar is not None:
            user.avatar = avatar or None
        await self.session.flush()
        return user

    async def profile(self, user_id: str) -> dict:
        """The user plus both sides of their identity: membership and client contacts."""
        user = await self.get(user_id)

        membership = None
        row = (
            await self.session.execute(
                select(WorkspaceMember, Workspace)
                .join(Workspace, Workspace.id == WorkspaceMember.workspace_id)
                .where(WorkspaceMember.user_id == user_id)
            )
        ).first()
        if row is not None:
            member, workspace = row
            membership = {
                "id": member.id,
                "role": member.role,
                "workspace": {"id": workspace.id, "name": workspace.name, "slug": workspace.slug},
            }

        contacts = (
            await self.session.execute(
                select(ClientContact, Client, Workspace)
                .join(Client, Client.id == ClientContact.client_id)
                .join(Workspace, Workspace.id == Client.workspace_id)
                .where(ClientContact.user_id == user_id)
                .order_by(ClientContact.created_at)
            )
        ).all()

        return {
            "user": user,
            "membership": membership,
            "client_contacts": [
                {
                    "id": contact.id,
                    "is_primary": contact.is_primary,
                    "client": {"id": client.id, "name": client.name},
                    "workspace": {"id": workspace.id, "name": workspace.name, "slug": workspace.slug},
                }
                for contact, client, workspace in contacts
            ],
        }
