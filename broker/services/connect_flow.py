"""
Orchestration of a platform connect attempt.

``start`` covers Started -> RedirectedToPlatform; ``finish`` covers
CallbackReceived -> Exchanged | Failed. Both terminal outcomes are returned as
values so the HTTP layer can turn them into success or error redirects.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from broker.clients.platform_oauth import PlatformRegistry
from broker.core.errors import (
    BrokerError,
    UpstreamAccessDeniedError,
    UpstreamExchangeError,
)
from broker.models.records import PlatformConnection
from broker.services.audit import AuditTrail
from broker.services.credential_vault import CredentialVault
from broker.services.transactions import TransactionStore

logger = logging.getLogger(__name__)


class ConnectStage(str, Enum):
    REDIRECTED = "redirected_to_platform"
    EXCHANGED = "exchanged"
    FAILED = "failed"


class FailureReason(str, Enum):
    """User-visible categories for a failed connect attempt."""

    ACCESS_DENIED = "access_denied"
    STATE_MISMATCH = "state_mismatch"
    MISSING_SESSION = "missing_session"
    EXCHANGE_FAILED = "exchange_failed"
    UNSUPPORTED_PLATFORM = "unsupported_platform"
    CONFIGURATION_ERROR = "configuration_error"


@dataclass(frozen=True)
class ConnectStart:
    platform: str
    user_id: str
    authorization_url: str
    transaction_handle: str
    stage: ConnectStage = ConnectStage.REDIRECTED


@dataclass(frozen=True)
class ConnectOutcome:
    platform: str
    stage: ConnectStage
    user_id: Optional[str] = None
    connection: Optional[PlatformConnection] = None
    reason: Optional[FailureReason] = None
    description: Optional[str] = None
    redirect_after: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.stage is ConnectStage.EXCHANGED


def _reason_for(exc: BrokerError) -> FailureReason:
    try:
        return FailureReason(exc.error_code)
    except ValueError:
        return FailureReason.EXCHANGE_FAILED


class ConnectFlowService:
    """Drives one user's connection to one upstream platform."""

    def __init__(
        self,
        *,
        registry: PlatformRegistry,
        transactions: TransactionStore,
        vault: CredentialVault,
        audit: AuditTrail,
    ) -> None:
        self._registry = registry
        self._transactions = transactions
        self._vault = vault
        self._audit = audit

    def start(
        self, platform: str, user_id: str, *, redirect_after: str | None = None
    ) -> ConnectStart:
        """Open a transaction and build the platform consent URL.

        Raises :class:`UnsupportedPlatformError` or :class:`ConfigurationError`
        before any transaction is created.
        """
        client = self._registry.get(platform)
        self._vault.ensure_user(user_id)
        pending = self._transactions.begin(
            client.platform, user_id, redirect_after=redirect_after
        )
        url = client.build_authorization_url(
            state=pending.state, code_challenge=pending.challenge
        )
        return ConnectStart(
            platform=client.platform,
            user_id=user_id,
            authorization_url=url,
            transaction_handle=pending.handle,
        )

    async def finish(
        self,
        platform: str,
        *,
        transaction_handle: str | None,
        code: str | None,
        state: str | None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> ConnectOutcome:
        platform = (platform or "").lower()
        try:
            return await self._finish(
                platform,
                transaction_handle=transaction_handle,
                code=code,
                state=state,
                error=error,
                error_description=error_description,
            )
        except BrokerError as exc:
            reason = _reason_for(exc)
            logger.warning("%s connect failed (%s): %s", platform, reason.value, exc)
            return ConnectOutcome(
                platform=platform,
                stage=ConnectStage.FAILED,
                reason=reason,
                description=exc.description,
            )

    async def _finish(
        self,
        platform: str,
        *,
        transaction_handle: str | None,
        code: str | None,
        state: str | None,
        error: str | None,
        error_description: str | None,
    ) -> ConnectOutcome:
        definition = self._registry.definition(platform)
        if error:
            if error == "access_denied":
                raise UpstreamAccessDeniedError(error_description)
            raise UpstreamExchangeError(
                platform, upstream_error=error, upstream_description=error_description
            )
        if not code:
            raise UpstreamExchangeError(
                platform,
                upstream_error="invalid_request",
                upstream_description="Callback did not include an authorization code.",
            )

        completed = self._transactions.complete(
            transaction_handle, state, platform=definition.name
        )
        client = self._registry.get(definition.name)
        tokens = await client.exchange_authorization_code(code, completed.verifier)
        user_info = await client.fetch_user_info(tokens.access_token)
        connection = self._vault.save(
            completed.user_id, definition.name, tokens, user_info=user_info
        )
        self._audit.record(
            completed.user_id,
            "platform.connected",
            f"Connected {definition.display_name}",
            platform=definition.name,
            platform_email=connection.platform_email,
        )
        return ConnectOutcome(
            platform=definition.name,
            stage=ConnectStage.EXCHANGED,
            user_id=completed.user_id,
            connection=connection,
            redirect_after=completed.redirect_after,
        )


__all__ = [
    "ConnectFlowService",
    "ConnectOutcome",
    "ConnectStage",
    "ConnectStart",
    "FailureReason",
]
