"""Schemas for the connect and connection-management endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field

from broker.models.records import PlatformConnection, User


class ConnectResponse(BaseModel):
    """Returned to API callers that do not follow the redirect themselves."""

    authorization_url: str = Field(..., description="Platform consent URL to open.")
    platform: str


class ConnectionSummary(BaseModel):
    platform: str
    category: str
    platform_email: Optional[str] = None
    platform_display_name: Optional[str] = None
    is_active: bool
    is_default: bool
    connected_at: datetime
    expires_at: Optional[datetime] = None
    scopes: list[str] = Field(default_factory=list)

    @classmethod
    def from_connection(cls, connection: PlatformConnection) -> "ConnectionSummary":
        return cls(
            platform=connection.platform,
            category=connection.category.value,
            platform_email=connection.platform_email,
            platform_display_name=connection.platform_display_name,
            is_active=connection.is_active,
            is_default=connection.is_default,
            connected_at=connection.connected_at,
            expires_at=connection.expires_at,
            scopes=connection.scopes,
        )


class UserSummary(BaseModel):
    id: str
    email: str
    name: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserSummary":
        return cls(id=user.id, email=user.email, name=user.name)


class ConnectionsResponse(BaseModel):
    user: UserSummary
    connections: Dict[str, list[ConnectionSummary]] = Field(
        default_factory=dict, description="Active connections keyed by category."
    )


class DisconnectResponse(BaseModel):
    success: bool = True
    platform: str


__all__ = [
    "ConnectResponse",
    "ConnectionSummary",
    "ConnectionsResponse",
    "DisconnectResponse",
    "UserSummary",
]
