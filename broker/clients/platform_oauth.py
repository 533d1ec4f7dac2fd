"""
OAuth client behaviour toward upstream productivity platforms.

Every platform is described by a :class:`PlatformConfig` entry; a single
:class:`PlatformOAuthClient` implementation drives the authorization-code,
refresh and user-info calls for any entry. Adding a platform means adding a
definition and its settings group, not new control flow.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict

from broker.core.config import AppSettings, PlatformCredentials
from broker.core.errors import (
    ConfigurationError,
    UnsupportedPlatformError,
    UpstreamExchangeError,
    UpstreamRefreshError,
)
from broker.models.records import PlatformCategory
from broker.utils.http import RetryConfig, request_with_retry

logger = logging.getLogger(__name__)

CLIENT_AUTH_BASIC = "client_secret_basic"
CLIENT_AUTH_POST = "client_secret_post"


@dataclass(frozen=True)
class PlatformUserInfo:
    id: Optional[str]
    email: Optional[str]
    display_name: Optional[str] = None


def _zoom_user(data: Dict[str, Any]) -> PlatformUserInfo:
    name = f"{data.get('first_name') or ''} {data.get('last_name') or ''}".strip()
    return PlatformUserInfo(
        id=data.get("id"), email=data.get("email"), display_name=name or None
    )


def _asana_user(data: Dict[str, Any]) -> PlatformUserInfo:
    user = data.get("data") or {}
    return PlatformUserInfo(
        id=user.get("gid"), email=user.get("email"), display_name=user.get("name")
    )


def _microsoft_user(data: Dict[str, Any]) -> PlatformUserInfo:
    return PlatformUserInfo(
        id=data.get("id"),
        email=data.get("mail") or data.get("userPrincipalName"),
        display_name=data.get("displayName"),
    )


def _generic_user(data: Dict[str, Any]) -> PlatformUserInfo:
    return PlatformUserInfo(
        id=data.get("id"),
        email=data.get("email"),
        display_name=data.get("name") or data.get("displayName"),
    )


@dataclass(frozen=True)
class PlatformConfig:
    """Static description of one upstream platform plus its client credentials."""

    name: str
    display_name: str
    category: PlatformCategory
    authorization_url: str
    token_url: str
    user_info_url: Optional[str] = None
    scopes: tuple[str, ...] = ()
    pkce_required: bool = True
    client_auth: str = CLIENT_AUTH_POST
    extra_authorize_params: Mapping[str, str] = field(default_factory=dict)
    user_info_parser: Callable[[Dict[str, Any]], PlatformUserInfo] = _generic_user
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_uri: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    def with_credentials(self, credentials: PlatformCredentials) -> "PlatformConfig":
        return replace(
            self,
            client_id=credentials.client_id,
            client_secret=credentials.client_secret,
            redirect_uri=str(credentials.redirect_uri) if credentials.redirect_uri else None,
        )


PLATFORM_DEFINITIONS: Dict[str, PlatformConfig] = {
    "zoom": PlatformConfig(
        name="zoom",
        display_name="Zoom",
        category=PlatformCategory.MEETINGS,
        authorization_url="https://zoom.us/oauth/authorize",
        token_url="https://zoom.us/oauth/token",
        user_info_url="https://api.zoom.us/v2/users/me",
        scopes=(
            "meeting:read:meeting",
            "cloud_recording:read:list_user_recordings",
            "cloud_recording:read:recording",
            "user:read:user",
        ),
        client_auth=CLIENT_AUTH_BASIC,
        user_info_parser=_zoom_user,
    ),
    "asana": PlatformConfig(
        name="asana",
        display_name="Asana",
        category=PlatformCategory.TASKS,
        authorization_url="https://app.asana.com/-/oauth_authorize",
        token_url="https://app.asana.com/-/oauth_token",
        user_info_url="https://app.asana.com/api/1.0/users/me",
        # Asana grants app-level permissions; no scope parameter is sent.
        scopes=(),
        user_info_parser=_asana_user,
    ),
    "teams": PlatformConfig(
        name="teams",
        display_name="Microsoft Teams",
        category=PlatformCategory.MEETINGS,
        authorization_url="https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        token_url="https://login.microsoftonline.com/common/oauth2/v2.0/token",
        user_info_url="https://graph.microsoft.com/v1.0/me",
        scopes=(
            "openid",
            "profile",
            "email",
            "offline_access",
            "User.Read",
            "OnlineMeetings.Read",
            "Calendars.Read",
        ),
        extra_authorize_params={"response_mode": "query"},
        user_info_parser=_microsoft_user,
    ),
}


class TokenSet(BaseModel):
    """Credential set returned by an upstream token endpoint."""

    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    scope: Optional[str] = None

    @property
    def scopes(self) -> list[str]:
        if not self.scope:
            return []
        return self.scope.replace(",", " ").split()


class PlatformOAuthClient:
    """Authorization-code + PKCE client for one configured platform."""

    def __init__(
        self,
        config: PlatformConfig,
        *,
        timeout_seconds: float = 10.0,
        retry_config: RetryConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._timeout = timeout_seconds
        self._retry = retry_config or RetryConfig()
        self._transport = transport

    @property
    def config(self) -> PlatformConfig:
        return self._config

    @property
    def platform(self) -> str:
        return self._config.name

    def build_authorization_url(self, *, state: str, code_challenge: str) -> str:
        """Construct the platform consent URL; carries no client secret."""
        params: Dict[str, str] = {
            "client_id": self._config.client_id or "",
            "redirect_uri": self._config.redirect_uri or "",
            "response_type": "code",
            "state": state,
        }
        if self._config.scopes:
            params["scope"] = " ".join(self._config.scopes)
        if self._config.pkce_required:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        params.update(self._config.extra_authorize_params)
        return f"{self._config.authorization_url}?{urlencode(params)}"

    async def exchange_authorization_code(self, code: str, code_verifier: str) -> TokenSet:
        """Exchange an authorization code for the platform's credential set."""
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._config.redirect_uri or "",
        }
        if self._config.pkce_required:
            payload["code_verifier"] = code_verifier
        return await self._token_request(payload, UpstreamExchangeError)

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        """Redeem a refresh token; the result may carry a rotated refresh token."""
        payload = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        return await self._token_request(payload, UpstreamRefreshError)

    async def fetch_user_info(self, access_token: str) -> Optional[PlatformUserInfo]:
        """Best-effort lookup of the remote account; ``None`` on any failure."""
        if not self._config.user_info_url:
            return None
        try:
            async with self._client() as client:
                response = await request_with_retry(
                    client.get,
                    self._config.user_info_url,
                    headers={"Authorization": f"Bearer {access_token}"},
                    retry_config=self._retry,
                )
            if response.status_code != httpx.codes.OK:
                logger.warning(
                    "%s user info lookup returned %s", self.platform, response.status_code
                )
                return None
            return self._config.user_info_parser(response.json())
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("%s user info lookup failed: %s", self.platform, exc)
            return None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _token_request(
        self,
        payload: Dict[str, str],
        error_cls: type[UpstreamExchangeError],
    ) -> TokenSet:
        auth: Optional[httpx.BasicAuth] = None
        if self._config.client_auth == CLIENT_AUTH_BASIC:
            auth = httpx.BasicAuth(
                self._config.client_id or "", self._config.client_secret or ""
            )
        else:
            payload = {
                **payload,
                "client_id": self._config.client_id or "",
                "client_secret": self._config.client_secret or "",
            }

        try:
            async with self._client() as client:
                response = await request_with_retry(
                    client.post,
                    self._config.token_url,
                    data=payload,
                    auth=auth,
                    headers={"Accept": "application/json"},
                    retry_config=self._retry,
                )
        except httpx.TransportError as exc:
            logger.error(
                "%s token endpoint unreachable: %s",
                self.platform,
                exc.__class__.__name__,
            )
            raise error_cls(
                self.platform,
                upstream_error="network_error",
                upstream_description=exc.__class__.__name__,
            ) from exc

        body = self._json_body(response)
        if response.status_code != httpx.codes.OK:
            upstream_error = body.get("error") or body.get("reason")
            upstream_description = body.get("error_description") or body.get("message")
            logger.error(
                "%s token request failed: status=%s error=%s description=%s",
                self.platform,
                response.status_code,
                upstream_error,
                upstream_description,
            )
            raise error_cls(
                self.platform,
                upstream_status=response.status_code,
                upstream_error=str(upstream_error) if upstream_error else None,
                upstream_description=str(upstream_description) if upstream_description else None,
            )

        if not body.get("access_token"):
            raise error_cls(
                self.platform,
                upstream_status=response.status_code,
                upstream_error="invalid_response",
                upstream_description="Token response did not include an access token.",
            )
        return TokenSet.model_validate(body)

    @staticmethod
    def _json_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}


class PlatformRegistry:
    """Platform-keyed lookup of configured OAuth clients."""

    def __init__(
        self,
        clients: Mapping[str, PlatformOAuthClient],
        *,
        known: Mapping[str, PlatformConfig],
    ) -> None:
        self._clients = dict(clients)
        self._known = dict(known)

    @classmethod
    def from_settings(
        cls,
        settings: AppSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "PlatformRegistry":
        credentials: Dict[str, PlatformCredentials] = {
            "zoom": settings.zoom,
            "asana": settings.asana,
            "teams": settings.microsoft,
        }
        retry = RetryConfig(attempts=settings.upstream.retry_attempts)
        known: Dict[str, PlatformConfig] = {}
        clients: Dict[str, PlatformOAuthClient] = {}
        for name, definition in PLATFORM_DEFINITIONS.items():
            config = definition.with_credentials(credentials[name])
            known[name] = config
            if config.is_configured:
                clients[name] = PlatformOAuthClient(
                    config,
                    timeout_seconds=settings.upstream.timeout_seconds,
                    retry_config=retry,
                    transport=transport,
                )
        return cls(clients, known=known)

    def definition(self, platform: str) -> PlatformConfig:
        key = (platform or "").lower()
        if key not in self._known:
            raise UnsupportedPlatformError(f"Platform '{platform}' is not supported.")
        return self._known[key]

    def get(self, platform: str) -> PlatformOAuthClient:
        config = self.definition(platform)
        client = self._clients.get(config.name)
        if client is None:
            raise ConfigurationError(
                f"{config.display_name} OAuth credentials are not configured."
            )
        return client

    def configured_platforms(self) -> list[str]:
        return sorted(self._clients)

    def supported_platforms(self) -> list[str]:
        return sorted(self._known)


__all__ = [
    "PLATFORM_DEFINITIONS",
    "PlatformConfig",
    "PlatformOAuthClient",
    "PlatformRegistry",
    "PlatformUserInfo",
    "TokenSet",
]
