"""Public schema exports."""

from .connections import (
    ConnectResponse,
    ConnectionSummary,
    ConnectionsResponse,
    DisconnectResponse,
    UserSummary,
)
from .oauth import (
    AuthorizationRequest,
    ClientRegistrationRequest,
    ClientRegistrationResponse,
    RevocationRequest,
    TokenRequest,
    TokenResponse,
)

__all__ = [
    "AuthorizationRequest",
    "ClientRegistrationRequest",
    "ClientRegistrationResponse",
    "ConnectResponse",
    "ConnectionSummary",
    "ConnectionsResponse",
    "DisconnectResponse",
    "RevocationRequest",
    "TokenRequest",
    "TokenResponse",
    "UserSummary",
]
