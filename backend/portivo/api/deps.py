"""
API Dependencies: DB session, notification outbox, auth context, adapters.

Each request runs in one transaction: `get_db` commits when the handler
returns and rolls back when it raises. Notifications staged by services go
into a per-request `NotificationOutbox`, which is pushed to the queue only
after that commit, so a rolled-back request never e-mails anyone.

`get_db` depends on `get_outbox`, which makes FastAPI enter the outbox
first and leave it last: commit, then dispatch.
"""

import logging
from typing import AsyncGenerator

from fastapi import Depends, Request
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.auth.context import RequestContext
from portivo.auth.jwt import decode_access_token
from portivo.database import async_session
from portivo.errors import UnauthenticatedError
from portivo.middleware.request_context import bind_user
from portivo.services.auth_service import MagicLinkStore, get_magic_link_store
from portivo.services.notifications import NotificationOutbox, NotificationQueue, get_notification_queue
from portivo.services.storage import BlobStorage, get_storage

logger = logging.getLogger(__name__)


# ── Adapters (overridden in tests) ───────────────────────────────────────────

def get_queue() -> NotificationQueue:
    return get_notification_queue()


def get_blob_storage() -> BlobStorage:
    return get_storage()


def get_link_store() -> MagicLinkStore:
    return get_magic_link_store()


# ── Notification outbox ──────────────────────────────────────────────────────

async def get_outbox(
    queue: NotificationQueue = Depends(get_queue),
) -> AsyncGenerator[NotificationOutbox, None]:
    """Yield a request-scoped outbox; flush it only if the request succeeded."""
    outbox = NotificationOutbox()
    yield outbox
    await outbox.flush(queue)


# ── Database session ─────────────────────────────────────────────────────────

async def get_db(
    outbox: NotificationOutbox = Depends(get_outbox),
) -> AsyncGenerator[AsyncSession, None]:
    """Yield a DB session per request, commit on success, rollback on error."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            await outbox.rollback()
            raise


# ── Request context (JWT authentication) ──────────────────────────────────────

async def get_request_context(request: Request) -> RequestContext:
    """Decode the bearer token. Missing or invalid tokens are Unauthenticated."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise UnauthenticatedError("Missing or invalid Authorization header")

    token = auth_header[7:]  # strip "Bearer "
    try:
        claims = decode_access_token(token)
    except JWTError as e:
        logger.debug("JWT decode failed: %s", e)
        raise UnauthenticatedError("Invalid or expired token")

    bind_user(request, claims["sub"])
    return RequestContext(user_id=claims["sub"], email=claims.get("email"))
