"""Project message threads, shared by both parties."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.auth.access import AccessResolver, Disclosure, ResourceRef
from portivo.auth.permissions import Permission
from portivo.errors import ValidationFailedError
from portivo.models import Message, User
from portivo.services.activity_service import ActivityAction, ActivityService
from portivo.services.notifications import NotificationKind, NotificationOutbox, dashboard_url, portal_url
from portivo.services.project_service import client_contact_users, load_project_context, workspace_member_users

MAX_MESSAGE_LENGTH = 5000
_PREVIEW_LENGTH = 200


class MessageService:
    def __init__(self, session: AsyncSession, outbox: NotificationOutbox | None = None):
        self.session = session
        self.outbox = outbox if outbox is not None else NotificationOutbox()
        self.resolver = AccessResolver(session)
        self.activity = ActivityService(session)

    async def list_messages(self, user_id: str, project_id: str) -> list[tuple[Message, User]]:
        """Oldest first. Non-parties get Forbidden: the thread URL names the project."""
        await self.resolver.require(
            user_id, ResourceRef.project(project_id), Permission.MESSAGES_READ,
            disclosure=Disclosure.DENY,
        )
        result = await self.session.execute(
            select(Message, User)
            .join(User, User.id == Message.author_id)
            .where(Message.project_id == project_id)
            .order_by(Message.created_at, Message.id)
        )
        return [(message, author) for message, author in result.all()]

    async def post_message(self, user_id: str, project_id: str, content: str) -> tuple[Message, User]:
        access = await self.resolver.require(
            user_id, ResourceRef.project(project_id), Permission.MESSAGES_POST,
            disclosure=Disclosure.DENY,
        )
        content = (content or "").strip()
        if not content:
            raise ValidationFailedError.for_field("content", "Message cannot be empty")
        if len(content) > MAX_MESSAGE_LENGTH:
            raise ValidationFailedError.for_field(
                "content", f"Message must be at most {MAX_MESSAGE_LENGTH} characters"
            )

        project, client, workspace = await load_project_context(self.session, project_id)
        author = await self.session.get(User, user_id)
        message = Message(project_id=project_id, author_id=user_id, content=content)
        self.session.add(message)
        await self.session.flush()

        await self.activity.record(
            workspace.id, user_id, ActivityAction.MESSAGE_SENT,
            f'Sent a message on "{project.name}"', entity_id=message.id,
            project_id=project_id, client_id=client.id,
            metadata={"party": access.party.value},
        )

        # the other side of the conversation is notified
        if access.is_agency:
            recipients = await client_contact_users(self.session, client.id)
            url = portal_url(workspace.slug, "projects", project_id)
        else:
            recipients = await workspace_member_users(self.session, workspace.id)
            url = dashboard_url("projects", project_id)
        preview = content if len(content) <= _PREVIEW_LENGTH else content[:_PREVIEW_LENGTH] + "..."
        for recipient in recipients:
            if recipient.id == user_id:
                continue
            self.outbox.add(
                NotificationKind.MESSAGE_POSTED,
                recipient.email,
                {
                    "recipient_name": recipient.name,
                    "sender_name": author.name or author.email,
                    "project_name": project.name,
                    "message_preview": preview,
                    "url": url,
                },
            )
        return message, author
