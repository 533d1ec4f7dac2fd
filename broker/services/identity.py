"""
Resolve the internal user identity behind an inbound request.

Chat clients open connect links without an interactive login, so identity is
derived from what the request carries. Resolution is a pure function of a
:class:`RequestContext`; routes build the context and pass it in.
"""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from typing import Mapping, Optional

from broker.core.errors import IdentityUnresolvedError

# Headers carrying a user identifier chosen by the calling client.
EXPLICIT_USER_HEADERS = ("x-user-id", "x-openai-user-id", "x-openai-sub")

# Headers carrying a conversation or session token; stable per calling context.
SESSION_TOKEN_HEADERS = (
    "x-openai-conversation-id",
    "x-openai-session",
    "mcp-session-id",
)

_PSEUDO_NAMESPACE = "broker-session"


@dataclass(frozen=True)
class RequestContext:
    """Identity-relevant slice of an HTTP request."""

    headers: Mapping[str, str] = field(default_factory=dict)
    explicit_user_id: Optional[str] = None
    session_subject: Optional[str] = None

    def header(self, name: str) -> Optional[str]:
        value = self.headers.get(name)
        if value is None:
            # Mappings from tests or plain dicts are not case-insensitive.
            value = self.headers.get(name.lower())
        if value is None:
            return None
        value = value.strip()
        return value or None


def coerce_user_id_to_uuid(raw: str) -> str:
    """Map any identifier onto a UUID string, deterministically.

    Valid UUIDs are returned in canonical form; anything else is hashed and
    shaped as a version-4 UUID so storage keys stay uniform.
    """
    try:
        return str(uuid.UUID(raw))
    except ValueError:
        pass
    digest = bytearray(hashlib.sha256(raw.encode("utf-8")).digest()[:16])
    digest[6] = (digest[6] & 0x0F) | 0x40
    digest[8] = (digest[8] & 0x3F) | 0x80
    return str(uuid.UUID(bytes=bytes(digest)))


def resolve_user_id(context: RequestContext) -> str:
    """Return the stable user id for ``context``.

    Order: interactive session subject, explicit ``user_id`` parameter,
    client-supplied user headers, then a pseudo-identity derived from a
    conversation or session token. Network fingerprints (address, user agent)
    are never used. Raises :class:`IdentityUnresolvedError` when nothing
    usable is present.
    """
    if context.session_subject:
        return context.session_subject

    explicit = (context.explicit_user_id or "").strip()
    if explicit:
        return coerce_user_id_to_uuid(explicit)

    for name in EXPLICIT_USER_HEADERS:
        value = context.header(name)
        if value:
            return coerce_user_id_to_uuid(value)

    for name in SESSION_TOKEN_HEADERS:
        value = context.header(name)
        if value:
            return coerce_user_id_to_uuid(f"{_PSEUDO_NAMESPACE}:{value}")

    raise IdentityUnresolvedError(
        "A user_id parameter or a client session header is required."
    )


__all__ = [
    "EXPLICIT_USER_HEADERS",
    "RequestContext",
    "SESSION_TOKEN_HEADERS",
    "coerce_user_id_to_uuid",
    "resolve_user_id",
]
