"""
Access tokens and magic-link tokens.

Access tokens are HS256 JWTs. ``sub`` is the opaque user id and ``iss`` names
this service; nothing about roles goes in the token, since what a user may do
is resolved per resource on every request. Magic-link tokens are opaque random
strings whose only state lives in Redis.
"""

import secrets
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from portivo.config import settings

ALGORITHM = "HS256"
ISSUER = "portivo"
ACCESS_TOKEN_TYPE = "access"


def create_access_token(user_id: str, email: str) -> str:
    issued_at = datetime.now(timezone.utc)
    claims = {
        "iss": ISSUER,
        "sub": user_id,
        "email": email,
        "type": ACCESS_TOKEN_TYPE,
        "iat": issued_at,
        "exp": issued_at + timedelta(minutes=settings.access_token_expire_minutes),
    }
    return jwt.encode(claims, settings.secret_key, algorithm=ALGORITHM)


def create_magic_link_token() -> str:
    return secrets.token_urlsafe(32)


def decode_access_token(token: str) -> dict:
    """Raises JWTError for a bad signature, expiry, foreign issuer, wrong type or missing subject."""
    claims = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM], issuer=ISSUER)
    if claims.get("type") != ACCESS_TOKEN_TYPE:
        raise JWTError("Not an access token")
    if not claims.get("sub"):
        raise JWTError("Token has no subject")
    return claims
