"""
FastAPI application entrypoint for the identity and credential broker.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from broker.api.oauth import router as oauth_router
from broker.api.routes import router as api_router
from broker.core.config import AppSettings, get_settings
from broker.core.errors import BrokerError, InsufficientScopeError, InvalidTokenError
from broker.core.logging import configure_logging
from broker.dependencies import get_signing_key_manager

logger = logging.getLogger(__name__)


def _register_error_handlers(app: FastAPI, settings: AppSettings) -> None:
    resource_metadata = f"{settings.issuer}/.well-known/oauth-protected-resource"

    @app.exception_handler(BrokerError)
    async def handle_broker_error(request: Request, exc: BrokerError) -> JSONResponse:
        """Render service errors as OAuth-style JSON bodies."""
        headers = {}
        if isinstance(exc, (InvalidTokenError, InsufficientScopeError)):
            headers["WWW-Authenticate"] = (
                f'Bearer error="{exc.error_code}", '
                f'error_description="{exc.description}", '
                f'resource_metadata="{resource_metadata}"'
            )
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=int(exc.status_code),
            content={"error": exc.error_code, "error_description": exc.description},
            headers=headers,
        )


def create_app() -> FastAPI:
    """Factory for the FastAPI application."""
    settings = get_settings()
    configure_logging(settings.log_level)
    # Unparsable signing keys are fatal here rather than on first request.
    get_signing_key_manager()

    app = FastAPI(
        title="Identity and Credential Broker",
        version="0.1.0",
        description=(
            "OAuth 2.1 authorization server for AI chat clients and OAuth client "
            "for upstream productivity platforms."
        ),
    )
    _register_error_handlers(app, settings)
    app.include_router(api_router, prefix="/api")
    app.include_router(oauth_router)
    return app


app = create_app()

__all__ = ["app", "create_app"]
