"""Request parsing helpers shared by the routers."""

from __future__ import annotations

from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from fastapi import Request

from broker.core.config import AppSettings
from broker.core.errors import OAuthProtocolError
from broker.services.identity import RequestContext


def bearer_token(request: Request) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer`` header, if any."""
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def request_context(
    request: Request, *, explicit_user_id: str | None = None
) -> RequestContext:
    return RequestContext(headers=request.headers, explicit_user_id=explicit_user_id)


async def read_body(request: Request) -> Dict[str, Any]:
    """Parse a form-encoded or JSON request body into a flat dict."""
    content_type = request.headers.get("content-type", "").lower()
    if "application/json" in content_type:
        try:
            payload = await request.json()
        except ValueError as exc:
            raise OAuthProtocolError("invalid_request", "Malformed JSON body.") from exc
        if not isinstance(payload, dict):
            raise OAuthProtocolError("invalid_request", "Body must be a JSON object.")
        return payload
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def wants_redirect(request: Request, redirect: bool) -> bool:
    accept_header = request.headers.get("accept", "")
    return redirect or "text/html" in accept_header.lower()


def safe_redirect_target(url: str | None, settings: AppSettings) -> Optional[str]:
    """Accept only relative paths or URLs on the broker's own page hosts."""
    if not url:
        return None
    if url.startswith("/") and not url.startswith("//"):
        return f"{settings.pages_base_url}{url}"
    parts = urlsplit(url)
    allowed_hosts = {
        urlsplit(settings.pages_base_url).hostname,
        urlsplit(settings.issuer).hostname,
    }
    if parts.scheme in ("http", "https") and parts.hostname in allowed_hosts:
        return url
    return None


__all__ = [
    "bearer_token",
    "read_body",
    "request_context",
    "safe_redirect_target",
    "wants_redirect",
]
