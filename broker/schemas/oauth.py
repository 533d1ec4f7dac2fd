"""Schemas for the broker's own OAuth 2.1 / OpenID Connect endpoints."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class AuthorizationRequest(BaseModel):
    """Query parameters accepted by the authorization endpoint."""

    model_config = ConfigDict(extra="ignore")

    response_type: Optional[str] = None
    client_id: Optional[str] = None
    redirect_uri: Optional[str] = None
    scope: Optional[str] = None
    state: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    nonce: Optional[str] = None
    resource: Optional[str] = None


class TokenRequest(BaseModel):
    """Token endpoint parameters, sent form-encoded or as JSON."""

    model_config = ConfigDict(extra="ignore")

    grant_type: Optional[str] = None
    code: Optional[str] = None
    redirect_uri: Optional[str] = None
    client_id: Optional[str] = None
    code_verifier: Optional[str] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    scope: str
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None


class ClientRegistrationRequest(BaseModel):
    """Subset of RFC 7591 client metadata."""

    model_config = ConfigDict(extra="ignore")

    client_name: Optional[str] = None
    redirect_uris: list[str] = Field(default_factory=list)
    grant_types: list[str] = Field(
        default_factory=lambda: ["authorization_code", "refresh_token"]
    )
    response_types: list[str] = Field(default_factory=lambda: ["code"])
    token_endpoint_auth_method: str = "none"
    scope: Optional[str] = None


class ClientRegistrationResponse(BaseModel):
    client_id: str
    client_id_issued_at: int
    client_name: str
    redirect_uris: list[str]
    grant_types: list[str]
    response_types: list[str]
    token_endpoint_auth_method: str
    scope: str


class RevocationRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    token: Optional[str] = None
    token_type_hint: Optional[str] = None
    client_id: Optional[str] = None


__all__ = [
    "AuthorizationRequest",
    "ClientRegistrationRequest",
    "ClientRegistrationResponse",
    "RevocationRequest",
    "TokenRequest",
    "TokenResponse",
]
