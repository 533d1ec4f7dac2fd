"""
Routes for the broker's own authorization server and discovery documents.
"""

from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ValidationError

from broker.api.requests import bearer_token, read_body, request_context
from broker.core.errors import ConfigurationError, OAuthProtocolError
from broker.dependencies import get_authorization_server, get_signing_key_manager
from broker.schemas import (
    AuthorizationRequest,
    ClientRegistrationRequest,
    RevocationRequest,
    TokenRequest,
    TokenResponse,
)
from broker.services.identity import resolve_user_id

router = APIRouter()
logger = logging.getLogger(__name__)

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _parse_body(model: type[BaseModel], body: dict) -> Any:
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        fields = ", ".join(str(error["loc"][0]) for error in exc.errors() if error["loc"])
        raise OAuthProtocolError(
            "invalid_request", f"Malformed request parameters: {fields or 'body'}."
        ) from exc


@router.get("/.well-known/oauth-protected-resource")
async def protected_resource_metadata(
    server: Annotated[Any, Depends(get_authorization_server)],
) -> dict:
    return server.protected_resource_metadata()


@router.get("/.well-known/openid-configuration")
@router.get("/.well-known/oauth-authorization-server")
async def openid_configuration(
    server: Annotated[Any, Depends(get_authorization_server)],
) -> dict:
    return server.openid_configuration()


@router.get("/oauth/jwks")
async def json_web_key_set(
    key_manager: Annotated[Any, Depends(get_signing_key_manager)],
) -> dict:
    """Publish the verification key; degrade to an empty set when unconfigured."""
    try:
        return key_manager.public_key_set()
    except ConfigurationError as exc:
        logger.error("JWKS unavailable: %s", exc)
        return {"keys": [], "error": exc.error_code, "error_description": exc.description}


@router.get("/oauth/authorize")
async def authorize(
    request: Request,
    server: Annotated[Any, Depends(get_authorization_server)],
) -> RedirectResponse:
    """Authorization endpoint: code flow with mandatory S256 PKCE."""
    params = request.query_params
    user_id = resolve_user_id(
        request_context(
            request, explicit_user_id=params.get("user_id") or params.get("login_hint")
        )
    )
    auth_request = AuthorizationRequest.model_validate(dict(params))
    location = server.authorize(auth_request, user_id)
    return RedirectResponse(url=location, status_code=HTTPStatus.FOUND)


@router.post("/oauth/token")
async def token(
    request: Request,
    server: Annotated[Any, Depends(get_authorization_server)],
) -> JSONResponse:
    body = await read_body(request)
    token_request = _parse_body(TokenRequest, body)
    payload = TokenResponse.model_validate(server.token(token_request))
    return JSONResponse(content=payload.model_dump(exclude_none=True), headers=_NO_STORE)


@router.api_route("/oauth/userinfo", methods=["GET", "POST"])
async def userinfo(
    request: Request,
    server: Annotated[Any, Depends(get_authorization_server)],
) -> dict:
    principal = server.authenticate(bearer_token(request), "openid")
    return server.userinfo(principal)


@router.post("/oauth/register", status_code=HTTPStatus.CREATED)
async def register_client(
    payload: ClientRegistrationRequest,
    server: Annotated[Any, Depends(get_authorization_server)],
) -> JSONResponse:
    """Dynamic client registration for public clients."""
    response = server.clients.register(payload)
    return JSONResponse(
        status_code=HTTPStatus.CREATED,
        content=response.model_dump(),
        headers=_NO_STORE,
    )


@router.post("/oauth/revoke")
async def revoke(
    request: Request,
    server: Annotated[Any, Depends(get_authorization_server)],
) -> JSONResponse:
    """Token revocation; always answers 200 for well-formed requests."""
    body = await read_body(request)
    revocation = _parse_body(RevocationRequest, body)
    server.revoke(revocation.token, revocation.token_type_hint)
    return JSONResponse(content={}, status_code=HTTPStatus.OK)


__all__ = ["router"]
