"""
RequestContext: "who is asking".

Every authenticated request carries the opaque user id taken from the
bearer token. What that user may do is never stored here; it is decided
per resource by `portivo.auth.access.AccessResolver`, because the same user
can be agency-side for one workspace and client-side for another.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class RequestContext:
    user_id: str
    email: str | None = None
