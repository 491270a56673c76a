"""
Auth API: magic-link sign-in and the caller's own profile.

POST /api/auth/magic-link always answers 202 with the same body, whether or
not the address was known, so it cannot be used to discover accounts.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.api.deps import get_db, get_link_store, get_outbox, get_request_context
from portivo.api.serializers import user_to_dict
from portivo.auth.context import RequestContext
from portivo.schemas.schemas import (
    MagicLinkRequest,
    MagicLinkResponse,
    MeResponse,
    ProfileUpdate,
    TokenResponse,
    UserSchema,
    VerifyRequest,
)
from portivo.services.auth_service import AuthService, MagicLinkStore
from portivo.services.notifications import NotificationOutbox
from portivo.services.user_service import UserService

router = APIRouter(prefix="/api/auth", tags=["auth"])
user_router = APIRouter(prefix="/api/user", tags=["auth"])


@router.post("/magic-link", response_model=MagicLinkResponse, status_code=202)
async def request_magic_link(
    body: MagicLinkRequest,
    db: AsyncSession = Depends(get_db),
    outbox: NotificationOutbox = Depends(get_outbox),
    store: MagicLinkStore = Depends(get_link_store),
):
    await AuthService(db, store=store, outbox=outbox).request_magic_link(body.email, body.redirect_path)
    return MagicLinkResponse()


@router.post("/verify", response_model=TokenResponse)
async def verify_magic_link(
    body: VerifyRequest,
    db: AsyncSession = Depends(get_db),
    store: MagicLinkStore = Depends(get_link_store),
):
    access_token, user = await AuthService(db, store=store).verify(body.token)
    return {"access_token": access_token, "user": user_to_dict(user)}


@router.get("/me", response_model=MeResponse)
async def me(ctx: RequestContext = Depends(get_request_context), db: AsyncSession = Depends(get_db)):
    """Current user, their workspace membership and client contacts."""
    profile = await UserService(db).profile(ctx.user_id)
    profile["user"] = user_to_dict(profile["user"])
    return profile


@user_router.patch("/profile", response_model=UserSchema)
async def update_profile(
    body: ProfileUpdate,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    user = await UserService(db).update_profile(ctx.user_id, name=body.name, avatar=body.avatar)
    return user_to_dict(user)
