"""
Projects API: client projects and the progress updates posted on them.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.api.deps import get_db, get_outbox, get_request_context
from portivo.api.serializers import project_to_dict, update_to_dict
from portivo.auth.context import RequestContext
from portivo.models import User
from portivo.schemas.schemas import (
    ProjectCreate,
    ProjectSchema,
    ProjectUpdateRequest,
    UpdateCreate,
    UpdateSchema,
)
from portivo.services.notifications import NotificationOutbox
from portivo.services.project_service import ProjectService

router = APIRouter(prefix="/api/projects", tags=["projects"])


# ── Projects ──

@router.get("", response_model=list[ProjectSchema])
async def list_projects(
    client_id: str | None = Query(None),
    status: str | None = Query(None),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    rows = await ProjectService(db).list_projects(ctx.user_id, client_id=client_id, status=status)
    return [project_to_dict(project, client) for project, client in rows]


@router.post("", response_model=ProjectSchema, status_code=201)
async def create_project(
    body: ProjectCreate,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    project = await ProjectService(db).create_project(
        ctx.user_id,
        body.client_id,
        body.name,
        description=body.description,
        status=body.status,
        start_date=body.start_date,
        due_date=body.due_date,
    )
    return project_to_dict(project)


@router.get("/{project_id}", response_model=ProjectSchema)
async def get_project(
    project_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    project, client = await ProjectService(db).get_project(ctx.user_id, project_id)
    return project_to_dict(project, client)


@router.patch("/{project_id}", response_model=ProjectSchema)
async def update_project(
    project_id: str,
    body: ProjectUpdateRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    # explicit nulls clear the dates; omitted fields are left alone
    project = await ProjectService(db).update_project(
        ctx.user_id, project_id, **body.model_dump(exclude_unset=True)
    )
    return project_to_dict(project)


@router.delete("/{project_id}", status_code=204)
async def delete_project(
    project_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    await ProjectService(db).delete_project(ctx.user_id, project_id)


# ── Updates ──

@router.get("/{project_id}/updates", response_model=list[UpdateSchema])
async def list_updates(
    project_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    rows = await ProjectService(db).list_updates(ctx.user_id, project_id)
    return [update_to_dict(update, author) for update, author in rows]


@router.post("/{project_id}/updates", response_model=UpdateSchema, status_code=201)
async def post_update(
    project_id: str,
    body: UpdateCreate,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    outbox: NotificationOutbox = Depends(get_outbox),
):
    update = await ProjectService(db, outbox=outbox).post_update(ctx.user_id, project_id, body.content)
    return update_to_dict(update, await db.get(User, ctx.user_id))
