"""
Files API: project attachments stored in the S3-compatible bucket.

Uploads are multipart (``project_id`` form field plus ``file``); the bytes are
read into memory, so the size cap is enforced by the service.
"""

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.api.deps import get_blob_storage, get_db, get_outbox, get_request_context
from portivo.api.serializers import file_to_dict
from portivo.auth.context import RequestContext
from portivo.models import User
from portivo.schemas.schemas import FileSchema
from portivo.services.file_service import FileService
from portivo.services.notifications import NotificationOutbox
from portivo.services.storage import BlobStorage

router = APIRouter(prefix="/api/files", tags=["files"])


@router.get("", response_model=list[FileSchema])
async def list_files(
    project_id: str = Query(...),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    storage: BlobStorage = Depends(get_blob_storage),
):
    rows = await FileService(db, storage=storage).list_files(ctx.user_id, project_id)
    return [file_to_dict(f, uploader) for f, uploader in rows]


@router.post("", response_model=FileSchema, status_code=201)
async def upload_file(
    project_id: str = Form(...),
    file: UploadFile = File(...),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    storage: BlobStorage = Depends(get_blob_storage),
    outbox: NotificationOutbox = Depends(get_outbox),
):
    data = await file.read()
    record = await FileService(db, storage=storage, outbox=outbox).upload_file(
        ctx.user_id, project_id, file.filename or "", file.content_type, data
    )
    return file_to_dict(record, await db.get(User, ctx.user_id))


@router.delete("/{file_id}", status_code=204)
async def delete_file(
    file_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    storage: BlobStorage = Depends(get_blob_storage),
    outbox: NotificationOutbox = Depends(get_outbox),
):
    await FileService(db, storage=storage, outbox=outbox).delete_file(ctx.user_id, file_id)
