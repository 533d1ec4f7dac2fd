try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

from urllib.parse import parse_qs, urlparse

import pytest

from broker.core.errors import ConfigurationError, UnsupportedPlatformError
from broker.services.connect_flow import ConnectStage, FailureReason

try:
    from ._fakes import build_stack
except Exception:  # pragma: no cover - fallback for direct execution
    from _fakes import build_stack  # type: ignore


@pytest.fixture()
def stack(tmp_path):
    return build_stack(tmp_path / "flow.db")


def _state_of(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


@pytest.mark.asyncio
async def test_connect_zoom_end_to_end(stack) -> None:
    started = stack.flow.start("zoom", "u1", redirect_after="/connected")
    assert started.stage is ConnectStage.REDIRECTED
    assert started.authorization_url.startswith("https://zoom.us/oauth/authorize?")

    outcome = await stack.flow.finish(
        "zoom",
        transaction_handle=started.transaction_handle,
        code="abc",
        state=_state_of(started.authorization_url),
    )

    assert outcome.succeeded
    assert outcome.stage is ConnectStage.EXCHANGED
    assert outcome.user_id == "u1"
    assert outcome.redirect_after == "/connected"

    active = stack.vault.list_active("u1")
    assert [c.platform for c in active] == ["zoom"]
    assert active[0].platform_email == "ada@example.com"
    assert active[0].platform_user_id == "zoom-user-42"
    assert stack.cipher.decrypt(active[0].access_token_encrypted) == "zoom-access-1"

    exchange = stack.upstream.token_calls[0]
    assert exchange["code"] == "abc"
    challenge = parse_qs(urlparse(started.authorization_url).query)["code_challenge"][0]
    from broker.services.transactions import derive_code_challenge

    assert derive_code_challenge(exchange["code_verifier"]) == challenge

    events = stack.audit.list_events("u1")
    assert [event.event_type for event in events] == ["platform.connected"]


@pytest.mark.asyncio
async def test_wrong_state_fails_then_transaction_is_gone(stack) -> None:
    started = stack.flow.start("zoom", "u1")

    mismatch = await stack.flow.finish(
        "zoom",
        transaction_handle=started.transaction_handle,
        code="abc",
        state="wrong",
    )
    assert mismatch.stage is ConnectStage.FAILED
    assert mismatch.reason is FailureReason.STATE_MISMATCH

    replay = await stack.flow.finish(
        "zoom",
        transaction_handle=started.transaction_handle,
        code="abc",
        state=_state_of(started.authorization_url),
    )
    assert replay.reason is FailureReason.MISSING_SESSION
    assert stack.upstream.token_calls == []
    assert stack.vault.list_active("u1") == []


@pytest.mark.asyncio
async def test_user_denial_fails_without_exchange(stack) -> None:
    started = stack.flow.start("zoom", "u1")

    outcome = await stack.flow.finish(
        "zoom",
        transaction_handle=started.transaction_handle,
        code=None,
        state=_state_of(started.authorization_url),
        error="access_denied",
        error_description="The user denied the request",
    )

    assert outcome.reason is FailureReason.ACCESS_DENIED
    assert outcome.description == "The user denied the request"
    assert stack.upstream.token_calls == []


@pytest.mark.asyncio
async def test_missing_transaction_handle_is_missing_session(stack) -> None:
    started = stack.flow.start("zoom", "u1")

    outcome = await stack.flow.finish(
        "zoom",
        transaction_handle=None,
        code="abc",
        state=_state_of(started.authorization_url),
    )
    assert outcome.reason is FailureReason.MISSING_SESSION


@pytest.mark.asyncio
async def test_upstream_rejection_is_exchange_failed(stack) -> None:
    stack.upstream.exchange_error = (400, {"error": "invalid_grant"})
    started = stack.flow.start("zoom", "u1")

    outcome = await stack.flow.finish(
        "zoom",
        transaction_handle=started.transaction_handle,
        code="abc",
        state=_state_of(started.authorization_url),
    )

    assert outcome.reason is FailureReason.EXCHANGE_FAILED
    assert "invalid_grant" in outcome.description
    assert stack.vault.list_active("u1") == []


@pytest.mark.asyncio
async def test_user_info_failure_still_connects(stack) -> None:
    stack.upstream.user_info_status = 503
    started = stack.flow.start("zoom", "u1")

    outcome = await stack.flow.finish(
        "zoom",
        transaction_handle=started.transaction_handle,
        code="abc",
        state=_state_of(started.authorization_url),
    )

    assert outcome.succeeded
    assert outcome.connection.platform_email is None


def test_start_rejects_unknown_and_unconfigured_platforms(stack) -> None:
    with pytest.raises(UnsupportedPlatformError):
        stack.flow.start("slack", "u1")
    with pytest.raises(ConfigurationError):
        stack.flow.start("asana", "u1")
    # Nothing was created for a rejected start.
    assert stack.vault.get_user("u1") is None


@pytest.mark.asyncio
async def test_callback_for_unknown_platform_is_unsupported(stack) -> None:
    outcome = await stack.flow.finish(
        "slack", transaction_handle=None, code="abc", state="s"
    )
    assert outcome.reason is FailureReason.UNSUPPORTED_PLATFORM
