"""
Application configuration models and helpers.

Centralizes settings management so the FastAPI app, the operator scripts and
the test-suite share one configuration surface.
"""

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Optional

import os

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _load_env_file(path: str = ".env") -> None:
    """Best-effort load key=value pairs from a .env file without extra deps."""
    env_path = Path(path)
    if not env_path.exists():
        return
    for raw_line in env_path.read_text().splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        if not key or key in os.environ:
            continue
        cleaned = value.strip().strip('"').strip("'")
        os.environ[key] = cleaned


_load_env_file()


def _split_csv(value: str | tuple[str, ...] | list[str]) -> tuple[str, ...]:
    if isinstance(value, tuple):
        return value
    if isinstance(value, list):
        return tuple(value)
    return tuple(item.strip() for item in value.split(",") if item.strip())


class SecuritySettings(BaseSettings):
    """Secrets protecting credentials at rest and in transit through the browser."""

    token_encryption_secret: str = Field(
        ...,
        alias="TOKEN_ENCRYPTION_SECRET",
        description="Secret used to derive the symmetric key for encrypting stored tokens.",
    )
    previous_encryption_secrets: Annotated[tuple[str, ...], NoDecode] = Field(
        (),
        alias="TOKEN_ENCRYPTION_PREVIOUS_SECRETS",
        description="Retired secrets that may still decrypt older records.",
    )
    transaction_secret: Optional[str] = Field(
        None,
        alias="TRANSACTION_SECRET",
        description="Seals pending connect transactions; defaults to the encryption secret.",
    )

    @field_validator("previous_encryption_secrets", mode="before")
    @classmethod
    def _split_secrets(cls, value: str | tuple[str, ...] | list[str]) -> tuple[str, ...]:
        return _split_csv(value)


class SigningSettings(BaseSettings):
    """RSA key material used to sign broker-issued tokens."""

    private_key_pem: Optional[str] = Field(None, alias="JWT_PRIVATE_KEY")
    public_key_pem: Optional[str] = Field(None, alias="JWT_PUBLIC_KEY")
    key_id: str = Field("broker-key-1", alias="JWT_KEY_ID")


class OAuthSettings(BaseSettings):
    """Lifetimes and vocabulary for both OAuth roles of the broker."""

    state_ttl_seconds: int = Field(600, alias="OAUTH_STATE_TTL")
    auth_code_ttl_seconds: int = Field(600, alias="OAUTH_AUTH_CODE_TTL")
    access_token_ttl_seconds: int = Field(3600, alias="OAUTH_ACCESS_TOKEN_TTL")
    refresh_token_ttl_seconds: int = Field(
        30 * 24 * 3600, alias="OAUTH_REFRESH_TOKEN_TTL"
    )
    supported_scopes: Annotated[tuple[str, ...], NoDecode] = Field(
        (
            "openid",
            "profile",
            "email",
            "offline_access",
            "meetings:read",
            "meetings:summary",
            "tasks:write",
            "email:draft",
        ),
        alias="OAUTH_SUPPORTED_SCOPES",
    )
    trusted_redirect_hosts: Annotated[tuple[str, ...], NoDecode] = Field(
        ("chatgpt.com", "openai.com"),
        alias="OAUTH_TRUSTED_REDIRECT_HOSTS",
        description="Public clients redirecting to these hosts are registered on first use.",
    )

    @field_validator("supported_scopes", "trusted_redirect_hosts", mode="before")
    @classmethod
    def _split_lists(
        cls, value: str | tuple[str, ...] | list[str]
    ) -> tuple[str, ...]:
        """Support providing lists as a comma-separated string."""
        return _split_csv(value)


class PlatformCredentials(BaseSettings):
    """Client registration the broker holds with one upstream platform."""

    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_uri: Optional[AnyHttpUrl] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)


class ZoomSettings(PlatformCredentials):
    model_config = SettingsConfigDict(env_prefix="ZOOM_")


class AsanaSettings(PlatformCredentials):
    model_config = SettingsConfigDict(env_prefix="ASANA_")


class MicrosoftSettings(PlatformCredentials):
    model_config = SettingsConfigDict(env_prefix="MICROSOFT_")


class UpstreamSettings(BaseSettings):
    """HTTP behaviour for calls to upstream token endpoints."""

    timeout_seconds: float = Field(10.0, alias="UPSTREAM_TIMEOUT_SECONDS")
    retry_attempts: int = Field(
        2,
        alias="UPSTREAM_RETRY_ATTEMPTS",
        description="Total attempts for transient network failures (2 = one retry).",
    )


class AppSettings(BaseSettings):
    """Root settings object for the FastAPI application."""

    environment: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="APP_LOG_LEVEL")
    base_url: AnyHttpUrl = Field(
        "http://localhost:8000",
        alias="BROKER_BASE_URL",
        description="Public base URL; doubles as the token issuer.",
    )
    database_path: str = Field("data/broker.db", alias="BROKER_DATABASE_PATH")
    frontend_base_url: Optional[AnyHttpUrl] = Field(
        None,
        alias="FRONTEND_BASE_URL",
        description="Optional URL hosting the success and error pages.",
    )
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    signing: SigningSettings = Field(default_factory=SigningSettings)
    oauth: OAuthSettings = Field(default_factory=OAuthSettings)
    upstream: UpstreamSettings = Field(default_factory=UpstreamSettings)
    zoom: ZoomSettings = Field(default_factory=ZoomSettings)
    asana: AsanaSettings = Field(default_factory=AsanaSettings)
    microsoft: MicrosoftSettings = Field(default_factory=MicrosoftSettings)

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @property
    def issuer(self) -> str:
        return str(self.base_url).rstrip("/")

    @property
    def resource_url(self) -> str:
        return f"{self.issuer}/mcp"

    @property
    def pages_base_url(self) -> str:
        return str(self.frontend_base_url or self.base_url).rstrip("/")


@lru_cache()
def get_settings() -> AppSettings:
    """Return a cached settings object."""
    return AppSettings()  # type: ignore[call-arg]


__all__ = [
    "AppSettings",
    "AsanaSettings",
    "MicrosoftSettings",
    "OAuthSettings",
    "PlatformCredentials",
    "SecuritySettings",
    "SigningSettings",
    "UpstreamSettings",
    "ZoomSettings",
    "get_settings",
]
