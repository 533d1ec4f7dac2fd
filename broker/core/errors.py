"""
Error taxonomy shared by the broker services and the HTTP layer.

Every class carries the HTTP status and machine-readable code it maps to, so
route handlers can let service errors propagate to a single handler.
"""

from __future__ import annotations

from http import HTTPStatus


class BrokerError(Exception):
    """Base class for all per-request broker failures."""

    status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR
    error_code: str = "server_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.error_code)

    @property
    def description(self) -> str:
        return str(self)


class ConfigurationError(BrokerError):
    """Signing keys or platform credentials are missing or malformed."""

    status_code = HTTPStatus.INTERNAL_SERVER_ERROR
    error_code = "configuration_error"


class IdentityUnresolvedError(BrokerError):
    """No usable identity signal was present on the request."""

    status_code = HTTPStatus.BAD_REQUEST
    error_code = "missing_identity"


class TransactionMissingError(BrokerError):
    """The pending authorization transaction is absent, expired or already used."""

    status_code = HTTPStatus.BAD_REQUEST
    error_code = "missing_session"


class StateMismatchError(BrokerError):
    """The state returned by the platform does not match the pending transaction."""

    status_code = HTTPStatus.BAD_REQUEST
    error_code = "state_mismatch"


class UnsupportedPlatformError(BrokerError):
    """The requested platform is not in the registry."""

    status_code = HTTPStatus.BAD_REQUEST
    error_code = "unsupported_platform"


class UpstreamAccessDeniedError(BrokerError):
    """The user or platform declined the authorization request."""

    status_code = HTTPStatus.BAD_REQUEST
    error_code = "access_denied"


class UpstreamExchangeError(BrokerError):
    """The platform token endpoint rejected an authorization-code exchange."""

    status_code = HTTPStatus.BAD_GATEWAY
    error_code = "exchange_failed"

    def __init__(
        self,
        platform: str,
        *,
        upstream_status: int | None = None,
        upstream_error: str | None = None,
        upstream_description: str | None = None,
    ) -> None:
        self.platform = platform
        self.upstream_status = upstream_status
        self.upstream_error = upstream_error
        self.upstream_description = upstream_description
        detail = upstream_error or "unknown_error"
        if upstream_description:
            detail = f"{detail}: {upstream_description}"
        status = f" ({upstream_status})" if upstream_status else ""
        super().__init__(f"{platform} token request failed{status}: {detail}")


class UpstreamRefreshError(UpstreamExchangeError):
    """The platform token endpoint rejected a refresh-token grant."""

    error_code = "refresh_failed"


class ReauthorizationRequiredError(BrokerError):
    """The stored credentials expired and cannot be refreshed."""

    status_code = HTTPStatus.UNAUTHORIZED
    error_code = "reauthorization_required"


class InvalidTokenError(BrokerError):
    """A presented bearer token is malformed, expired, revoked or badly signed."""

    status_code = HTTPStatus.UNAUTHORIZED
    error_code = "invalid_token"


class AudienceMismatchError(InvalidTokenError):
    """A well-formed token was issued for a different audience."""

    error_code = "invalid_token"


class InsufficientScopeError(BrokerError):
    """The presented token does not cover the requested capability."""

    status_code = HTTPStatus.FORBIDDEN
    error_code = "insufficient_scope"


class ConnectionNotFoundError(BrokerError):
    """No active connection exists for the user and platform."""

    status_code = HTTPStatus.NOT_FOUND
    error_code = "connection_not_found"


class UserNotFoundError(BrokerError):
    """The user identifier is not known to the broker."""

    status_code = HTTPStatus.NOT_FOUND
    error_code = "user_not_found"


class StaleRecordError(BrokerError):
    """A conditional write lost a race with a concurrent writer."""

    status_code = HTTPStatus.CONFLICT
    error_code = "conflict"


class OAuthProtocolError(BrokerError):
    """An RFC 6749 error raised by the broker's own authorization server."""

    def __init__(
        self,
        error: str,
        description: str,
        *,
        status_code: int = HTTPStatus.BAD_REQUEST,
    ) -> None:
        self.error_code = error
        self.status_code = status_code
        super().__init__(description)


__all__ = [
    "AudienceMismatchError",
    "BrokerError",
    "ConfigurationError",
    "ConnectionNotFoundError",
    "IdentityUnresolvedError",
    "InsufficientScopeError",
    "InvalidTokenError",
    "OAuthProtocolError",
    "ReauthorizationRequiredError",
    "StaleRecordError",
    "StateMismatchError",
    "TransactionMissingError",
    "UnsupportedPlatformError",
    "UpstreamAccessDeniedError",
    "UpstreamExchangeError",
    "UpstreamRefreshError",
    "UserNotFoundError",
]
