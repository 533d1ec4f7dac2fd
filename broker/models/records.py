"""
Domain models for records persisted in the broker store.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PlatformCategory(str, Enum):
    """Grouping used by the tool layer when presenting connections."""

    MEETINGS = "meetings"
    TASKS = "tasks"
    EMAIL = "email"


class StoredRecord(BaseModel):
    """Base for models round-tripped through the (pk, sk) record store."""

    model_config = ConfigDict(extra="ignore")

    version: int = Field(0, exclude=True)

    def keys(self) -> tuple[str, str]:  # pragma: no cover - overridden
        raise NotImplementedError

    def purge_after(self) -> Optional[datetime]:
        """Moment after which the store may drop this record, if any."""
        return None

    def to_item(self) -> Dict[str, Any]:
        pk, sk = self.keys()
        item = self.model_dump(mode="json")
        item.update({"pk": pk, "sk": sk})
        purge_after = self.purge_after()
        if purge_after is not None:
            item["ttl"] = int(purge_after.timestamp())
        return item

    @classmethod
    def from_item(cls, item: Dict[str, Any]):
        return cls.model_validate(item)


class User(StoredRecord):
    """Internal identity every connection and broker token hangs off."""

    id: str
    email: str
    name: Optional[str] = None
    email_verified: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    def keys(self) -> tuple[str, str]:
        return f"user#{self.id}", "profile"


class PlatformConnection(StoredRecord):
    """One user's link to one upstream platform, with encrypted credentials."""

    user_id: str
    platform: str
    category: PlatformCategory
    platform_user_id: Optional[str] = None
    platform_email: Optional[str] = None
    platform_display_name: Optional[str] = None
    access_token_encrypted: str
    refresh_token_encrypted: Optional[str] = None
    token_type: str = "Bearer"
    scopes: list[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None
    is_active: bool = True
    is_default: bool = False
    connected_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    refresh_lease_until: Optional[datetime] = None

    def keys(self) -> tuple[str, str]:
        return connection_keys(self.user_id, self.platform)


class RegisteredClient(StoredRecord):
    """A calling client known to the broker's own authorization server."""

    client_id: str
    client_name: str
    redirect_uris: list[str]
    client_type: str = "public"
    token_endpoint_auth_method: str = "none"
    grant_types: list[str] = Field(
        default_factory=lambda: ["authorization_code", "refresh_token"]
    )
    allowed_scopes: list[str] = Field(default_factory=list)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    def keys(self) -> tuple[str, str]:
        return f"client#{self.client_id}", "registration"


class AuthorizationGrant(StoredRecord):
    """Authorization code issued to a calling client, redeemable once."""

    code: str
    client_id: str
    user_id: str
    redirect_uri: str
    scopes: list[str]
    code_challenge: str
    code_challenge_method: str = "S256"
    nonce: Optional[str] = None
    expires_at: datetime
    used_at: Optional[datetime] = None

    def keys(self) -> tuple[str, str]:
        return f"authcode#{self.code}", "grant"

    def purge_after(self) -> Optional[datetime]:
        return self.expires_at


class AuthorizationServerSession(StoredRecord):
    """Revocation anchor for a broker-issued access or refresh token."""

    jti: str
    kind: str
    client_id: str
    subject: str
    scopes: list[str]
    issued_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    parent_jti: Optional[str] = None

    def keys(self) -> tuple[str, str]:
        return f"session#{self.jti}", self.kind

    def purge_after(self) -> Optional[datetime]:
        return self.expires_at

    def is_live(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now


class AuditEvent(BaseModel):
    """Settings-change event recorded for a user."""

    user_id: str
    event_type: str
    description: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


def connection_keys(user_id: str, platform: str) -> tuple[str, str]:
    return f"user#{user_id}", f"connection#{platform}"


__all__ = [
    "AuditEvent",
    "AuthorizationGrant",
    "AuthorizationServerSession",
    "PlatformCategory",
    "PlatformConnection",
    "RegisteredClient",
    "StoredRecord",
    "User",
    "connection_keys",
    "utcnow",
]
