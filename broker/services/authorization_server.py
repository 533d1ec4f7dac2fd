"""
The broker's own OAuth 2.1 authorization server.

Issues authorization codes (PKCE S256 only) and broker-signed tokens to the
calling chat client, verifies bearer tokens on protected calls and publishes
static discovery metadata. Every issued token is anchored by a session record
so it can be revoked before it expires.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from broker.clients.sqlite_store import SQLiteStore
from broker.core.config import OAuthSettings
from broker.core.errors import (
    InsufficientScopeError,
    InvalidTokenError,
    OAuthProtocolError,
    StaleRecordError,
    UserNotFoundError,
)
from broker.models.records import (
    AuthorizationGrant,
    AuthorizationServerSession,
    RegisteredClient,
)
from broker.schemas.oauth import (
    AuthorizationRequest,
    ClientRegistrationRequest,
    ClientRegistrationResponse,
    TokenRequest,
)
from broker.services.credential_vault import CredentialVault
from broker.services.signing_keys import SIGNING_ALGORITHM
from broker.services.token_codec import TokenCodec
from broker.services.transactions import verify_code_challenge

logger = logging.getLogger(__name__)

ACCESS = "access"
REFRESH = "refresh"
ID = "id"

_LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}


def _host_matches(host: str, trusted: Iterable[str]) -> bool:
    host = host.lower()
    return any(host == entry or host.endswith(f".{entry}") for entry in trusted)


def _is_acceptable_redirect(uri: str) -> bool:
    parts = urlsplit(uri)
    if parts.fragment or not parts.hostname:
        return False
    if parts.scheme == "https":
        return True
    return parts.scheme == "http" and parts.hostname in _LOOPBACK_HOSTS


def _append_query(uri: str, params: Dict[str, Optional[str]]) -> str:
    parts = urlsplit(uri)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((key, value) for key, value in params.items() if value is not None)
    return urlunsplit(parts._replace(query=urlencode(query)))


@dataclass(frozen=True)
class Principal:
    """Authenticated caller of a protected resource."""

    user_id: str
    client_id: Optional[str]
    scopes: list[str]
    jti: Optional[str]

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes


class ClientRegistry:
    """Minimal registry of public clients allowed to request broker tokens."""

    def __init__(
        self,
        store: SQLiteStore,
        *,
        supported_scopes: Iterable[str],
        trusted_redirect_hosts: Iterable[str],
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._supported_scopes = tuple(supported_scopes)
        self._trusted_hosts = tuple(host.lower() for host in trusted_redirect_hosts)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def get(self, client_id: str) -> Optional[RegisteredClient]:
        item = self._store.get_item(
            partition_key=f"client#{client_id}", sort_key="registration"
        )
        return RegisteredClient.from_item(item) if item else None

    def register(self, request: ClientRegistrationRequest) -> ClientRegistrationResponse:
        """Dynamic client registration for public clients."""
        if not request.redirect_uris:
            raise OAuthProtocolError(
                "invalid_redirect_uri", "At least one redirect_uri is required."
            )
        for uri in request.redirect_uris:
            if not _is_acceptable_redirect(uri):
                raise OAuthProtocolError(
                    "invalid_redirect_uri", f"Redirect URI '{uri}' is not allowed."
                )
        if request.token_endpoint_auth_method != "none":
            raise OAuthProtocolError(
                "invalid_client_metadata",
                "Only public clients (token_endpoint_auth_method=none) are supported.",
            )
        unsupported = set(request.grant_types) - {"authorization_code", "refresh_token"}
        if unsupported:
            raise OAuthProtocolError(
                "invalid_client_metadata",
                f"Unsupported grant types: {', '.join(sorted(unsupported))}.",
            )

        requested = request.scope.split() if request.scope else list(self._supported_scopes)
        unknown = [scope for scope in requested if scope not in self._supported_scopes]
        if unknown:
            raise OAuthProtocolError(
                "invalid_client_metadata", f"Unsupported scopes: {' '.join(unknown)}."
            )

        client = RegisteredClient(
            client_id=f"client_{secrets.token_urlsafe(16)}",
            client_name=request.client_name or "Unnamed client",
            redirect_uris=request.redirect_uris,
            grant_types=request.grant_types,
            allowed_scopes=requested,
            created_at=self._clock(),
        )
        self._store.put_item(client.to_item())
        logger.info("Registered OAuth client %s (%s)", client.client_id, client.client_name)
        return ClientRegistrationResponse(
            client_id=client.client_id,
            client_id_issued_at=int(client.created_at.timestamp()),
            client_name=client.client_name,
            redirect_uris=client.redirect_uris,
            grant_types=client.grant_types,
            response_types=request.response_types,
            token_endpoint_auth_method=client.token_endpoint_auth_method,
            scope=" ".join(client.allowed_scopes),
        )

    def resolve(self, client_id: str, redirect_uri: Optional[str]) -> RegisteredClient:
        """Look up ``client_id``, registering it on first use from a trusted host."""
        client = self.get(client_id)
        if client is not None:
            if not client.is_active:
                raise OAuthProtocolError("invalid_client", "Client is disabled.")
            return client

        host = urlsplit(redirect_uri).hostname if redirect_uri else None
        if not host or not _is_acceptable_redirect(redirect_uri or "") or not _host_matches(
            host, self._trusted_hosts
        ):
            raise OAuthProtocolError("invalid_client", "Unknown client_id.")

        client = RegisteredClient(
            client_id=client_id,
            client_name=f"Auto-registered client for {host}",
            redirect_uris=[redirect_uri or ""],
            allowed_scopes=list(self._supported_scopes),
            created_at=self._clock(),
        )
        if not self._store.put_item_if_absent(client.to_item()):
            return self.get(client_id) or client
        logger.info("Auto-registered OAuth client %s for %s", client_id, host)
        return client


class AuthorizationServer:
    """Authorization-code + PKCE issuance and bearer verification."""

    def __init__(
        self,
        *,
        codec: TokenCodec,
        store: SQLiteStore,
        clients: ClientRegistry,
        vault: CredentialVault,
        settings: OAuthSettings,
        resource_url: str,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._codec = codec
        self._store = store
        self._clients = clients
        self._vault = vault
        self._settings = settings
        self._issuer = codec.issuer
        self._resource_url = resource_url
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._openid_configuration = self._build_openid_configuration()
        self._protected_resource = self._build_protected_resource()

    @property
    def issuer(self) -> str:
        return self._issuer

    @property
    def resource_url(self) -> str:
        return self._resource_url

    @property
    def clients(self) -> ClientRegistry:
        return self._clients

    # -- discovery ---------------------------------------------------------------

    def _build_openid_configuration(self) -> Dict[str, Any]:
        issuer = self._issuer
        return {
            "issuer": issuer,
            "authorization_endpoint": f"{issuer}/oauth/authorize",
            "token_endpoint": f"{issuer}/oauth/token",
            "userinfo_endpoint": f"{issuer}/oauth/userinfo",
            "jwks_uri": f"{issuer}/oauth/jwks",
            "registration_endpoint": f"{issuer}/oauth/register",
            "revocation_endpoint": f"{issuer}/oauth/revoke",
            "scopes_supported": list(self._settings.supported_scopes),
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "code_challenge_methods_supported": ["S256"],
            "token_endpoint_auth_methods_supported": ["none"],
            "revocation_endpoint_auth_methods_supported": ["none"],
            "subject_types_supported": ["public"],
            "id_token_signing_alg_values_supported": [SIGNING_ALGORITHM],
            "claims_supported": ["sub", "iss", "aud", "exp", "iat", "nonce", "email", "name"],
        }

    def _build_protected_resource(self) -> Dict[str, Any]:
        return {
            "resource": self._resource_url,
            "authorization_servers": [self._issuer],
            "scopes_supported": list(self._settings.supported_scopes),
            "bearer_methods_supported": ["header"],
            "resource_signing_alg_values_supported": [SIGNING_ALGORITHM],
        }

    def openid_configuration(self) -> Dict[str, Any]:
        return dict(self._openid_configuration)

    def protected_resource_metadata(self) -> Dict[str, Any]:
        return dict(self._protected_resource)

    # -- authorization endpoint ----------------------------------------------------

    def authorize(self, request: AuthorizationRequest, user_id: str) -> str:
        """Validate an authorization request and return the client redirect URL.

        Problems with the client or its redirect URI raise
        :class:`OAuthProtocolError` (never redirected); every other problem is
        reported to the client through the redirect.
        """
        if not request.client_id:
            raise OAuthProtocolError("invalid_request", "client_id is required.")
        client = self._clients.resolve(request.client_id, request.redirect_uri)

        redirect_uri = request.redirect_uri
        if not redirect_uri:
            if len(client.redirect_uris) != 1:
                raise OAuthProtocolError("invalid_request", "redirect_uri is required.")
            redirect_uri = client.redirect_uris[0]
        if redirect_uri not in client.redirect_uris:
            raise OAuthProtocolError(
                "invalid_request", "redirect_uri does not match a registered URI."
            )

        def fail(error: str, description: str) -> str:
            logger.info("Authorization request rejected: %s (%s)", error, description)
            return _append_query(
                redirect_uri,
                {"error": error, "error_description": description, "state": request.state},
            )

        if request.response_type != "code":
            return fail("unsupported_response_type", "Only response_type=code is supported.")
        if not request.code_challenge:
            return fail("invalid_request", "PKCE code_challenge is required.")
        if (request.code_challenge_method or "plain") != "S256":
            return fail("invalid_request", "code_challenge_method must be S256.")

        try:
            scopes = self._granted_scopes(request.scope, client)
        except OAuthProtocolError as exc:
            return fail(exc.error_code, exc.description)

        self._vault.ensure_user(user_id)
        grant = AuthorizationGrant(
            code=secrets.token_urlsafe(32),
            client_id=client.client_id,
            user_id=user_id,
            redirect_uri=redirect_uri,
            scopes=scopes,
            code_challenge=request.code_challenge,
            code_challenge_method="S256",
            nonce=request.nonce,
            expires_at=self._clock() + timedelta(seconds=self._settings.auth_code_ttl_seconds),
        )
        self._store.put_item_if_absent(grant.to_item())
        logger.info("Issued authorization code to client %s for user %s", client.client_id, user_id)
        return _append_query(redirect_uri, {"code": grant.code, "state": request.state})

    def _granted_scopes(
        self, requested: Optional[str], client: RegisteredClient
    ) -> list[str]:
        allowed = client.allowed_scopes or list(self._settings.supported_scopes)
        if not requested:
            return list(allowed)
        scopes = list(dict.fromkeys(requested.split()))
        invalid = [scope for scope in scopes if scope not in allowed]
        if invalid:
            raise OAuthProtocolError("invalid_scope", f"Scope not allowed: {' '.join(invalid)}.")
        return scopes

    # -- token endpoint ------------------------------------------------------------

    def token(self, request: TokenRequest) -> Dict[str, Any]:
        if request.grant_type == "authorization_code":
            return self.exchange_code(request)
        if request.grant_type == "refresh_token":
            return self.refresh(request)
        raise OAuthProtocolError(
            "unsupported_grant_type", f"Unsupported grant_type '{request.grant_type}'."
        )

    def exchange_code(self, request: TokenRequest) -> Dict[str, Any]:
        """Redeem an authorization code exactly once."""
        if not request.code or not request.code_verifier:
            raise OAuthProtocolError("invalid_request", "code and code_verifier are required.")
        item = self._store.get_item(partition_key=f"authcode#{request.code}", sort_key="grant")
        if not item:
            raise OAuthProtocolError("invalid_grant", "Authorization code is invalid.")
        grant = AuthorizationGrant.from_item(item)
        now = self._clock()
        if grant.used_at is not None:
            logger.warning("Authorization code replay for client %s", grant.client_id)
            raise OAuthProtocolError("invalid_grant", "Authorization code was already used.")

        grant.used_at = now
        try:
            self._store.put_item(grant.to_item(), expected_version=grant.version)
        except StaleRecordError as exc:
            raise OAuthProtocolError(
                "invalid_grant", "Authorization code was already used."
            ) from exc

        if grant.expires_at <= now:
            raise OAuthProtocolError("invalid_grant", "Authorization code has expired.")
        if request.client_id and request.client_id != grant.client_id:
            raise OAuthProtocolError("invalid_grant", "Code was issued to another client.")
        if request.redirect_uri and request.redirect_uri != grant.redirect_uri:
            raise OAuthProtocolError("invalid_grant", "redirect_uri does not match.")
        if not verify_code_challenge(request.code_verifier, grant.code_challenge):
            raise OAuthProtocolError("invalid_grant", "PKCE verification failed.")

        return self._issue_tokens(
            client_id=grant.client_id,
            subject=grant.user_id,
            scopes=grant.scopes,
            nonce=grant.nonce,
        )

    def refresh(self, request: TokenRequest) -> Dict[str, Any]:
        """Rotate a refresh token; the requested scope may narrow the grant."""
        if not request.refresh_token:
            raise OAuthProtocolError("invalid_request", "refresh_token is required.")
        try:
            verified = self._codec.verify(
                request.refresh_token, audience=self._issuer, token_type=REFRESH
            )
        except InvalidTokenError as exc:
            raise OAuthProtocolError("invalid_grant", "Refresh token is invalid.") from exc

        session = self._get_session(verified.jti, REFRESH)
        if session is None or not session.is_live(self._clock()):
            raise OAuthProtocolError("invalid_grant", "Refresh token was revoked.")
        if request.client_id and request.client_id != session.client_id:
            raise OAuthProtocolError("invalid_grant", "Refresh token belongs to another client.")

        scopes = session.scopes
        if request.scope:
            narrowed = list(dict.fromkeys(request.scope.split()))
            if not set(narrowed) <= set(session.scopes):
                raise OAuthProtocolError("invalid_scope", "Requested scope exceeds the grant.")
            scopes = narrowed

        session.revoked_at = self._clock()
        try:
            self._store.put_item(session.to_item(), expected_version=session.version)
        except StaleRecordError as exc:
            raise OAuthProtocolError("invalid_grant", "Refresh token was already used.") from exc

        return self._issue_tokens(
            client_id=session.client_id, subject=session.subject, scopes=scopes
        )

    def _issue_tokens(
        self,
        *,
        client_id: str,
        subject: str,
        scopes: list[str],
        nonce: Optional[str] = None,
    ) -> Dict[str, Any]:
        settings = self._settings
        purged = self._store.purge_expired(self._clock())
        if purged:
            logger.debug("Purged %s expired grants and sessions", purged)
        access = self._codec.issue(
            subject,
            scopes,
            self._resource_url,
            settings.access_token_ttl_seconds,
            client_id=client_id,
            token_type=ACCESS,
        )
        refresh = self._codec.issue(
            subject,
            scopes,
            self._issuer,
            settings.refresh_token_ttl_seconds,
            client_id=client_id,
            token_type=REFRESH,
        )
        self._record_session(access.jti, ACCESS, client_id, subject, scopes, access.expires_at)
        self._record_session(
            refresh.jti,
            REFRESH,
            client_id,
            subject,
            scopes,
            refresh.expires_at,
            parent_jti=access.jti,
        )

        response: Dict[str, Any] = {
            "access_token": access.token,
            "token_type": "Bearer",
            "expires_in": settings.access_token_ttl_seconds,
            "scope": " ".join(scopes),
            "refresh_token": refresh.token,
        }
        if "openid" in scopes:
            response["id_token"] = self._codec.issue(
                subject,
                scopes,
                client_id,
                settings.access_token_ttl_seconds,
                nonce=nonce,
                token_type=ID,
                extra=self._identity_claims(subject, scopes),
            ).token
        logger.info("Issued tokens to client %s for user %s", client_id, subject)
        return response

    def _record_session(
        self,
        jti: str,
        kind: str,
        client_id: str,
        subject: str,
        scopes: list[str],
        expires_at: datetime,
        *,
        parent_jti: Optional[str] = None,
    ) -> None:
        session = AuthorizationServerSession(
            jti=jti,
            kind=kind,
            client_id=client_id,
            subject=subject,
            scopes=scopes,
            issued_at=self._clock(),
            expires_at=expires_at,
            parent_jti=parent_jti,
        )
        self._store.put_item(session.to_item())

    def _get_session(
        self, jti: Optional[str], kind: str
    ) -> Optional[AuthorizationServerSession]:
        if not jti:
            return None
        item = self._store.get_item(partition_key=f"session#{jti}", sort_key=kind)
        return AuthorizationServerSession.from_item(item) if item else None

    # -- protected resources -------------------------------------------------------

    def authenticate(self, token: Optional[str], required_scope: str | None = None) -> Principal:
        """Verify a bearer token, its session and (optionally) a scope."""
        if not token:
            raise InvalidTokenError("Bearer token is required.")
        verified = self._codec.verify(token, audience=self._resource_url, token_type=ACCESS)
        session = self._get_session(verified.jti, ACCESS)
        if session is None or not session.is_live(self._clock()):
            raise InvalidTokenError("Token has been revoked.")
        principal = Principal(
            user_id=verified.subject,
            client_id=verified.client_id,
            scopes=verified.scopes,
            jti=verified.jti,
        )
        if required_scope and not principal.has_scope(required_scope):
            raise InsufficientScopeError(f"Scope '{required_scope}' is required.")
        return principal

    def userinfo(self, principal: Principal) -> Dict[str, Any]:
        claims = self._identity_claims(principal.user_id, principal.scopes)
        claims["sub"] = principal.user_id
        return claims

    def _identity_claims(self, subject: str, scopes: list[str]) -> Dict[str, Any]:
        user = self._vault.get_user(subject)
        if user is None:
            raise UserNotFoundError()
        claims: Dict[str, Any] = {}
        if "profile" in scopes and user.name:
            claims["name"] = user.name
        if "email" in scopes:
            claims["email"] = user.email
            claims["email_verified"] = user.email_verified
        return claims

    # -- revocation ---------------------------------------------------------------

    def revoke(self, token: Optional[str], token_type_hint: Optional[str] = None) -> None:
        """RFC 7009 revocation; unknown or invalid tokens are silently ignored."""
        if not token:
            return
        order = [(REFRESH, self._issuer), (ACCESS, self._resource_url)]
        if token_type_hint == "access_token":
            order.reverse()
        for kind, audience in order:
            try:
                verified = self._codec.verify(token, audience=audience, token_type=kind)
            except InvalidTokenError:
                continue
            session = self._revoke_session(verified.jti, kind)
            if kind == REFRESH and session is not None and session.parent_jti:
                self._revoke_session(session.parent_jti, ACCESS)
            return
        logger.info("Ignored revocation request for an unrecognised token")

    def _revoke_session(
        self, jti: Optional[str], kind: str
    ) -> Optional[AuthorizationServerSession]:
        session = self._get_session(jti, kind)
        if session is None or session.revoked_at is not None:
            return session
        session.revoked_at = self._clock()
        try:
            self._store.put_item(session.to_item(), expected_version=session.version)
        except StaleRecordError:
            # A concurrent rotation or revocation already closed it.
            return session
        logger.info("Revoked %s token %s", kind, jti)
        return session


__all__ = ["AuthorizationServer", "ClientRegistry", "Principal"]
