"""
FastAPI routes for platform connections.
"""

from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Annotated, Any
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from broker.api.requests import (
    bearer_token,
    request_context,
    safe_redirect_target,
    wants_redirect,
)
from broker.core.errors import BrokerError, IdentityUnresolvedError, UserNotFoundError
from broker.dependencies import (
    get_app_settings,
    get_audit_trail,
    get_authorization_server,
    get_connect_flow_service,
    get_credential_vault,
    get_platform_registry,
)
from broker.schemas import (
    ConnectResponse,
    ConnectionSummary,
    ConnectionsResponse,
    DisconnectResponse,
    UserSummary,
)
from broker.services.identity import resolve_user_id

router = APIRouter()
logger = logging.getLogger(__name__)

TRANSACTION_COOKIE_PREFIX = "broker_oauth_txn_"
CONNECTIONS_SCOPE = "meetings:read"


def _cookie_name(platform: str) -> str:
    return f"{TRANSACTION_COOKIE_PREFIX}{platform.lower()}"


def _cookie_path(platform: str) -> str:
    return f"/api/auth/{platform.lower()}"


def _error_page(settings: Any, reason: str, platform: str) -> str:
    query = urlencode({"error": reason, "platform": platform})
    return f"{settings.pages_base_url}/auth/error?{query}"


@router.get("/health", status_code=HTTPStatus.OK)
async def healthcheck() -> dict:
    """Simple health endpoint for monitoring."""
    return {"status": "ok"}


@router.api_route("/auth/{platform}", methods=["GET", "POST"])
async def start_platform_connect(
    platform: str,
    request: Request,
    flow: Annotated[Any, Depends(get_connect_flow_service)],
    settings: Annotated[Any, Depends(get_app_settings)],
    user_id: str | None = Query(
        default=None, description="Internal user id; derived from headers when absent."
    ),
    redirect_url: str | None = Query(
        default=None, description="Page to return to after a successful connection."
    ),
    redirect: bool = Query(
        default=False,
        description="When true, respond with a redirect to the platform consent screen.",
    ),
):
    """
    Start the OAuth flow with an upstream platform.

    The pending transaction is sealed into an HttpOnly cookie scoped to the
    platform's callback path.
    """
    resolved_user = resolve_user_id(request_context(request, explicit_user_id=user_id))
    follow = wants_redirect(request, redirect)
    try:
        started = flow.start(
            platform,
            resolved_user,
            redirect_after=safe_redirect_target(redirect_url, settings),
        )
    except BrokerError as exc:
        if not follow:
            raise
        logger.warning("Connect to %s refused: %s", platform, exc)
        return RedirectResponse(
            url=_error_page(settings, exc.error_code, platform),
            status_code=HTTPStatus.TEMPORARY_REDIRECT,
        )

    if follow:
        response: Any = RedirectResponse(
            url=started.authorization_url, status_code=HTTPStatus.TEMPORARY_REDIRECT
        )
    else:
        response = JSONResponse(
            content=ConnectResponse(
                authorization_url=started.authorization_url, platform=started.platform
            ).model_dump()
        )
    response.set_cookie(
        key=_cookie_name(started.platform),
        value=started.transaction_handle,
        max_age=settings.oauth.state_ttl_seconds,
        path=_cookie_path(started.platform),
        httponly=True,
        secure=settings.environment != "development",
        samesite="lax",
    )
    return response


@router.get("/auth/{platform}/callback")
async def handle_platform_callback(
    platform: str,
    request: Request,
    flow: Annotated[Any, Depends(get_connect_flow_service)],
    settings: Annotated[Any, Depends(get_app_settings)],
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    error_description: str | None = Query(default=None),
) -> RedirectResponse:
    """Complete the platform exchange and redirect to a success or error page."""
    outcome = await flow.finish(
        platform,
        transaction_handle=request.cookies.get(_cookie_name(platform)),
        code=code,
        state=state,
        error=error,
        error_description=error_description,
    )
    if outcome.succeeded:
        target = outcome.redirect_after or (
            f"{settings.pages_base_url}/auth/{outcome.platform}/success"
        )
    else:
        target = _error_page(settings, outcome.reason.value, platform)

    response = RedirectResponse(url=target, status_code=HTTPStatus.TEMPORARY_REDIRECT)
    response.delete_cookie(
        key=_cookie_name(platform),
        path=_cookie_path(platform),
        httponly=True,
        secure=settings.environment != "development",
        samesite="lax",
    )
    return response


@router.get("/connections/me", response_model=ConnectionsResponse)
async def list_my_connections(
    request: Request,
    server: Annotated[Any, Depends(get_authorization_server)],
    vault: Annotated[Any, Depends(get_credential_vault)],
) -> ConnectionsResponse:
    """Bearer-protected listing of the caller's active connections."""
    principal = server.authenticate(bearer_token(request), CONNECTIONS_SCOPE)
    return _connections_for(vault, principal.user_id)


@router.get("/connections", response_model=ConnectionsResponse)
async def list_connections(
    request: Request,
    vault: Annotated[Any, Depends(get_credential_vault)],
    user_id: str | None = Query(default=None, description="Internal user id."),
) -> ConnectionsResponse:
    """Return the user and their active connections grouped by category."""
    if not user_id:
        raise IdentityUnresolvedError("user_id is required.")
    resolved = resolve_user_id(request_context(request, explicit_user_id=user_id))
    return _connections_for(vault, resolved)


def _connections_for(vault: Any, user_id: str) -> ConnectionsResponse:
    user = vault.get_user(user_id)
    if user is None:
        raise UserNotFoundError()
    grouped = vault.list_active_grouped(user_id)
    return ConnectionsResponse(
        user=UserSummary.from_user(user),
        connections={
            category: [ConnectionSummary.from_connection(conn) for conn in connections]
            for category, connections in grouped.items()
        },
    )


@router.delete("/connections/{platform}", response_model=DisconnectResponse)
async def disconnect_platform(
    platform: str,
    request: Request,
    vault: Annotated[Any, Depends(get_credential_vault)],
    registry: Annotated[Any, Depends(get_platform_registry)],
    audit: Annotated[Any, Depends(get_audit_trail)],
    user_id: str | None = Query(default=None, description="Internal user id."),
) -> DisconnectResponse:
    """Soft-delete the user's connection to ``platform``."""
    if not user_id:
        raise IdentityUnresolvedError("user_id is required.")
    resolved = resolve_user_id(request_context(request, explicit_user_id=user_id))
    definition = registry.definition(platform)
    connection = vault.deactivate(resolved, definition.name)
    audit.record(
        resolved,
        "platform.disconnected",
        f"Disconnected {definition.display_name}",
        platform=definition.name,
        platform_email=connection.platform_email,
    )
    return DisconnectResponse(success=True, platform=definition.name)


@router.post("/connections/{platform}/default", response_model=ConnectionSummary)
async def set_default_connection(
    platform: str,
    request: Request,
    vault: Annotated[Any, Depends(get_credential_vault)],
    registry: Annotated[Any, Depends(get_platform_registry)],
    user_id: str | None = Query(default=None, description="Internal user id."),
) -> ConnectionSummary:
    """Make ``platform`` the default connection in its category."""
    if not user_id:
        raise IdentityUnresolvedError("user_id is required.")
    resolved = resolve_user_id(request_context(request, explicit_user_id=user_id))
    definition = registry.definition(platform)
    connection = vault.set_default(resolved, definition.name)
    return ConnectionSummary.from_connection(connection)


__all__ = ["router"]
