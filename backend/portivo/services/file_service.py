"""
File Service

Project files live in blob storage; the database keeps the key, public URL
and metadata. Only the agency uploads or deletes; both parties list.

Storage follows the request transaction through the outbox: an upload is
removed again if the transaction rolls back, and a deleted file leaves the
bucket only after the row deletion has committed.
"""

import logging
from functools import partial

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.auth.access import AccessResolver, ResourceRef
from portivo.auth.permissions import Permission
from portivo.errors import ValidationFailedError
from portivo.models import File, User
from portivo.services.activity_service import ActivityAction, ActivityService
from portivo.services.notifications import NotificationOutbox
from portivo.services.project_service import load_project_context
from portivo.services.storage import MAX_FILE_SIZE, BlobStorage, build_file_key, get_storage

logger = logging.getLogger(__name__)


class FileService:
    def __init__(
        self,
        session: AsyncSession,
        storage: BlobStorage | None = None,
        outbox: NotificationOutbox | None = None,
    ):
        self.session = session
        self.storage = storage or get_storage()
        self.outbox = outbox if outbox is not None else NotificationOutbox()
        self.resolver = AccessResolver(session)
        self.activity = ActivityService(session)

    async def upload_file(
        self,
        user_id: str,
        project_id: str,
        filename: str,
        content_type: str | None,
        data: bytes,
    ) -> File:
        access = await self.resolver.require(user_id, ResourceRef.project(project_id), Permission.FILES_UPLOAD)
        if not filename:
            raise ValidationFailedError.for_field("file", "A file name is required")
        if not data:
            raise ValidationFailedError.for_field("file", "File is empty")
        if len(data) > MAX_FILE_SIZE:
            raise ValidationFailedError.for_field(
                "file", f"File exceeds the {MAX_FILE_SIZE // (1024 * 1024)} MB limit"
            )

        project, client, workspace = await load_project_context(self.session, project_id)
        key = build_file_key(workspace.id, project_id, filename)
        content_type = content_type or "application/octet-stream"
        url = await self.storage.put(data, key, content_type)
        self.outbox.on_rollback(partial(self.storage.delete, key))

        record = File(
            project_id=project_id,
            uploaded_by_id=user_id,
            name=filename[:255],
            key=key,
            url=url,
            size=len(data),
            content_type=content_type,
        )
        self.session.add(record)
        await self.session.flush()

        await self.activity.record(
            access.workspace_id, user_id, ActivityAction.FILE_UPLOADED,
            f'Uploaded "{record.name}" to "{project.name}"', entity_id=record.id,
            project_id=project_id, client_id=client.id,
            metadata={"size": record.size, "content_type": content_type},
        )
        return record

    async def list_files(self, user_id: str, project_id: str) -> list[tuple[File, User]]:
        await self.resolver.require(user_id, ResourceRef.project(project_id), Permission.FILES_READ)
        result = await self.session.execute(
            select(File, User)
            .join(User, User.id == File.uploaded_by_id)
            .where(File.project_id == project_id)
            .order_by(File.created_at.desc())
        )
        return [(f, uploader) for f, uploader in result.all()]

    async def delete_file(self, user_id: str, file_id: str) -> None:
        access = await self.resolver.require(user_id, ResourceRef.file(file_id), Permission.FILES_DELETE)
        record = await self.session.get(File, file_id)
        name, key, project_id = record.name, record.key, record.project_id

        await self.session.delete(record)
        await self.session.flush()
        self.outbox.after_commit(partial(self.storage.delete, key))

        await self.activity.record(
            access.workspace_id, user_id, ActivityAction.FILE_DELETED,
            f'Deleted "{name}"', entity_id=file_id,
            project_id=project_id, client_id=access.client_id,
        )
