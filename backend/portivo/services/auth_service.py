"""
Passwordless sign-in.

A magic link carries an opaque token stored in Redis with a TTL. Verifying
consumes the token (GETDEL, so it works once) and exchanges it for a JWT
access token. Users are found or created by e-mail when the link is
requested.
"""

import logging
from urllib.parse import urlencode

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from portivo.auth.jwt import create_access_token, create_magic_link_token
from portivo.config import settings
from portivo.database import utcnow
from portivo.errors import UnauthenticatedError
from portivo.models import User
from portivo.schemas.schemas import is_local_path
from portivo.services.notifications import NotificationKind, NotificationOutbox
from portivo.services.user_service import UserService

logger = logging.getLogger(__name__)

MAGIC_LINK_PREFIX = "portivo:magic-link:"


class MagicLinkStore:
    """Single-use token -> user id mapping. Subclassed by test doubles."""

    async def save(self, token: str, user_id: str, ttl_seconds: int) -> None:
        raise NotImplementedError

    async def consume(self, token: str) -> str | None:
        raise NotImplementedError


class RedisMagicLinkStore(MagicLinkStore):
    def __init__(self, redis_url: str | None = None):
        self.redis_url = redis_url or settings.redis_url
        self._redis: aioredis.Redis | None = None

    def _client(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    async def save(self, token: str, user_id: str, ttl_seconds: int) -> None:
        await self._client().set(f"{MAGIC_LINK_PREFIX}{token}", user_id, ex=ttl_seconds)

    async def consume(self, token: str) -> str | None:
        return await self._client().getdel(f"{MAGIC_LINK_PREFIX}{token}")


_store: MagicLinkStore | None = None


def get_magic_link_store() -> MagicLinkStore:
    global _store
    if _store is None:
        _store = RedisMagicLinkStore()
    return _store


class AuthService:
    def __init__(
        self,
        session: AsyncSession,
        store: MagicLinkStore | None = None,
        outbox: NotificationOutbox | None = None,
    ):
        self.session = session
        self.store = store or get_magic_link_store()
        self.outbox = outbox if outbox is not None else NotificationOutbox()
        self.users = UserService(session)

    async def request_magic_link(self, email: str, redirect_path: str | None = None) -> User:
        user = await self.users.find_or_create(email)
        token = create_magic_link_token()
        await self.store.save(token, user.id, settings.magic_link_expire_minutes * 60)

        query = {"token": token}
        if redirect_path and is_local_path(redirect_path):
            query["next"] = redirect_path
        url = f"{settings.app_url.rstrip('/')}/auth/verify?{urlencode(query, safe='/')}"
        self.outbox.add(
            NotificationKind.SIGN_IN,
            user.email,
            {"magic_link_url": url, "expires_minutes": settings.magic_link_expire_minutes},
        )
        logger.info("Magic link issued for user %s", user.id)
        return user

    async def verify(self, token: str) -> tuple[str, User]:
        """Consume a magic-link token; returns (access_token, user)."""
        if not token:
            raise UnauthenticatedError("Invalid or expired sign-in link")
        user_id = await self.store.consume(token)
        if not user_id:
            raise UnauthenticatedError("Invalid or expired sign-in link")
        user = await self.session.get(User, user_id)
        if user is None:
            raise UnauthenticatedError("Invalid or expired sign-in link")
        if user.email_verified_at is None:
            user.email_verified_at = utcnow()
            await self.session.flush()
        return create_access_token(user.id, user.email), user
