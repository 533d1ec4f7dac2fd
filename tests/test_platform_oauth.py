try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

import base64
from dataclasses import replace
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from broker.clients.platform_oauth import (
    PLATFORM_DEFINITIONS,
    PlatformOAuthClient,
    PlatformRegistry,
)
from broker.core.config import AppSettings
from broker.core.errors import (
    ConfigurationError,
    UnsupportedPlatformError,
    UpstreamExchangeError,
    UpstreamRefreshError,
)
from broker.models.records import PlatformCategory
from broker.utils.http import RetryConfig

try:
    from ._fakes import ZOOM_REDIRECT_URI, FakeZoomUpstream, build_registry
except Exception:  # pragma: no cover - fallback for direct execution
    from _fakes import ZOOM_REDIRECT_URI, FakeZoomUpstream, build_registry  # type: ignore


@pytest.fixture()
def upstream() -> FakeZoomUpstream:
    return FakeZoomUpstream()


@pytest.fixture()
def zoom(upstream: FakeZoomUpstream) -> PlatformOAuthClient:
    return build_registry(upstream).get("zoom")


def test_authorization_url_carries_pkce_but_no_secret(zoom: PlatformOAuthClient) -> None:
    url = zoom.build_authorization_url(state="state-123", code_challenge="challenge-abc")

    parsed = urlparse(url)
    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == "https://zoom.us/oauth/authorize"
    params = parse_qs(parsed.query)
    assert params["client_id"] == ["zoom-client-id"]
    assert params["redirect_uri"] == [ZOOM_REDIRECT_URI]
    assert params["response_type"] == ["code"]
    assert params["state"] == ["state-123"]
    assert params["code_challenge"] == ["challenge-abc"]
    assert params["code_challenge_method"] == ["S256"]
    assert "meeting:read:meeting" in params["scope"][0].split()
    assert "zoom-client-secret" not in url
    assert "client_secret" not in params


def test_asana_omits_scope_and_teams_requests_query_mode() -> None:
    asana = PlatformOAuthClient(
        replace(
            PLATFORM_DEFINITIONS["asana"],
            client_id="asana-id",
            client_secret="asana-secret",
            redirect_uri="https://broker.test/api/auth/asana/callback",
        )
    )
    asana_params = parse_qs(
        urlparse(asana.build_authorization_url(state="s", code_challenge="c")).query
    )
    assert "scope" not in asana_params
    assert asana_params["code_challenge_method"] == ["S256"]

    teams = PlatformOAuthClient(
        replace(
            PLATFORM_DEFINITIONS["teams"],
            client_id="teams-id",
            client_secret="teams-secret",
            redirect_uri="https://broker.test/api/auth/teams/callback",
        )
    )
    teams_params = parse_qs(
        urlparse(teams.build_authorization_url(state="s", code_challenge="c")).query
    )
    assert teams_params["response_mode"] == ["query"]
    assert "offline_access" in teams_params["scope"][0].split()


@pytest.mark.asyncio
async def test_exchange_uses_basic_auth_and_sends_verifier(
    zoom: PlatformOAuthClient, upstream: FakeZoomUpstream
) -> None:
    tokens = await zoom.exchange_authorization_code("code-1", "verifier-1")

    assert tokens.access_token == "zoom-access-1"
    assert tokens.refresh_token == "zoom-refresh-1"
    assert tokens.expires_in == 3600
    assert tokens.scopes == ["meeting:read:meeting", "user:read:user"]

    call = upstream.token_calls[0]
    assert call["grant_type"] == "authorization_code"
    assert call["code"] == "code-1"
    assert call["code_verifier"] == "verifier-1"
    assert call["redirect_uri"] == ZOOM_REDIRECT_URI
    assert "client_secret" not in call

    expected = base64.b64encode(b"zoom-client-id:zoom-client-secret").decode()
    assert upstream.authorization_headers[0] == f"Basic {expected}"


@pytest.mark.asyncio
async def test_post_body_credentials_for_platforms_without_basic_auth() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(
            {
                "form": parse_qs(request.content.decode()),
                "auth": request.headers.get("authorization"),
            }
        )
        return httpx.Response(200, json={"access_token": "asana-access", "expires_in": 3600})

    asana = PlatformOAuthClient(
        replace(
            PLATFORM_DEFINITIONS["asana"],
            client_id="asana-id",
            client_secret="asana-secret",
            redirect_uri="https://broker.test/api/auth/asana/callback",
        ),
        transport=httpx.MockTransport(handler),
    )
    tokens = await asana.exchange_authorization_code("code", "verifier")

    assert tokens.access_token == "asana-access"
    assert tokens.refresh_token is None
    assert seen[0]["form"]["client_id"] == ["asana-id"]
    assert seen[0]["form"]["client_secret"] == ["asana-secret"]
    assert seen[0]["auth"] is None


@pytest.mark.asyncio
async def test_upstream_rejection_carries_error_and_description(
    zoom: PlatformOAuthClient, upstream: FakeZoomUpstream
) -> None:
    upstream.exchange_error = (
        400,
        {"error": "invalid_grant", "error_description": "Authorization code expired"},
    )

    with pytest.raises(UpstreamExchangeError) as excinfo:
        await zoom.exchange_authorization_code("stale-code", "verifier")

    error = excinfo.value
    assert error.platform == "zoom"
    assert error.upstream_status == 400
    assert error.upstream_error == "invalid_grant"
    assert error.upstream_description == "Authorization code expired"
    # A definitive answer from the platform is never retried.
    assert len(upstream.token_calls) == 1


@pytest.mark.asyncio
async def test_zoom_style_reason_message_body_is_understood(
    zoom: PlatformOAuthClient, upstream: FakeZoomUpstream
) -> None:
    upstream.refresh_error = (401, {"reason": "Invalid Token!", "message": "refresh revoked"})

    with pytest.raises(UpstreamRefreshError) as excinfo:
        await zoom.refresh_token("zoom-refresh-1")

    assert excinfo.value.error_code == "refresh_failed"
    assert excinfo.value.upstream_error == "Invalid Token!"
    assert excinfo.value.upstream_description == "refresh revoked"


@pytest.mark.asyncio
async def test_transient_network_failure_is_retried_once(
    zoom: PlatformOAuthClient, upstream: FakeZoomUpstream
) -> None:
    upstream.transport_failures = 1

    tokens = await zoom.refresh_token("zoom-refresh-1")

    assert tokens.access_token == "zoom-access-refreshed-1"
    assert tokens.refresh_token == "zoom-refresh-rotated-1"


@pytest.mark.asyncio
async def test_persistent_network_failure_becomes_upstream_error(
    zoom: PlatformOAuthClient, upstream: FakeZoomUpstream
) -> None:
    upstream.transport_failures = 5

    with pytest.raises(UpstreamExchangeError) as excinfo:
        await zoom.exchange_authorization_code("code", "verifier")

    assert excinfo.value.upstream_error == "network_error"
    assert upstream.transport_failures == 3


@pytest.mark.asyncio
async def test_missing_access_token_is_an_invalid_response() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"token_type": "bearer"}))
    client = PlatformOAuthClient(
        replace(
            PLATFORM_DEFINITIONS["zoom"],
            client_id="id",
            client_secret="secret",
            redirect_uri=ZOOM_REDIRECT_URI,
        ),
        retry_config=RetryConfig(attempts=1),
        transport=transport,
    )

    with pytest.raises(UpstreamExchangeError) as excinfo:
        await client.exchange_authorization_code("code", "verifier")
    assert excinfo.value.upstream_error == "invalid_response"


@pytest.mark.asyncio
async def test_user_info_is_normalized(zoom: PlatformOAuthClient) -> None:
    info = await zoom.fetch_user_info("zoom-access-1")

    assert info is not None
    assert info.id == "zoom-user-42"
    assert info.email == "ada@example.com"
    assert info.display_name == "Ada Lovelace"


@pytest.mark.asyncio
async def test_user_info_failure_is_tolerated(
    zoom: PlatformOAuthClient, upstream: FakeZoomUpstream
) -> None:
    upstream.user_info_status = 500
    assert await zoom.fetch_user_info("zoom-access-1") is None


def test_registry_distinguishes_unknown_from_unconfigured(monkeypatch) -> None:
    for key in ("ASANA_CLIENT_ID", "ASANA_CLIENT_SECRET", "ASANA_REDIRECT_URI"):
        monkeypatch.delenv(key, raising=False)
    registry = PlatformRegistry.from_settings(AppSettings())  # type: ignore[call-arg]

    assert "zoom" in registry.configured_platforms()
    assert "asana" not in registry.configured_platforms()
    assert registry.supported_platforms() == ["asana", "teams", "zoom"]
    assert registry.get("ZOOM").platform == "zoom"
    assert registry.definition("asana").category is PlatformCategory.TASKS

    with pytest.raises(ConfigurationError):
        registry.get("asana")
    with pytest.raises(UnsupportedPlatformError):
        registry.get("slack")
