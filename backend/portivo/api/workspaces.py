"""
Workspaces API: create the caller's agency workspace and manage its settings.

A user belongs to at most one workspace, so everything after creation
addresses it as ``/current``.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.api.deps import get_db, get_request_context
from portivo.auth.context import RequestContext
from portivo.auth.roles import WorkspaceRole
from portivo.models import Workspace
from portivo.schemas.schemas import WorkspaceCreate, WorkspaceDetail, WorkspaceSchema, WorkspaceUpdate
from portivo.services.workspace_service import WorkspaceService

router = APIRouter(prefix="/api/workspaces", tags=["workspaces"])


def _workspace_response(workspace: Workspace, role: str | None) -> dict:
    return {**WorkspaceSchema.model_validate(workspace).model_dump(), "role": role}


@router.post("", response_model=WorkspaceDetail, status_code=201)
async def create_workspace(
    body: WorkspaceCreate,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    workspace = await WorkspaceService(db).create_workspace(
        ctx.user_id, body.name, body.slug, body.brand_color
    )
    return _workspace_response(workspace, WorkspaceRole.OWNER.value)


@router.get("/current", response_model=WorkspaceDetail)
async def get_current_workspace(
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    workspace, access = await WorkspaceService(db).get_workspace(ctx.user_id)
    return _workspace_response(workspace, access.role.value if access.role else None)


@router.patch("/current", response_model=WorkspaceDetail)
async def update_current_workspace(
    body: WorkspaceUpdate,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    service = WorkspaceService(db)
    workspace = await service.update_workspace(ctx.user_id, **body.model_dump(exclude_unset=True))
    _, access = await service.get_workspace(ctx.user_id)
    return _workspace_response(workspace, access.role.value if access.role else None)


@router.delete("/current", status_code=204)
async def delete_current_workspace(
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    await WorkspaceService(db).delete_workspace(ctx.user_id)
