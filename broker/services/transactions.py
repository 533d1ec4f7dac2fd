"""
PKCE helpers and the pending-authorization transaction store.

A transaction binds a PKCE verifier, a state token and the target user to a
single connect attempt. Its contents travel with the browser as a sealed
capsule (Fernet: encrypted and authenticated), so the server keeps no session
for it. The only server-side trace is a one-shot "consumed" marker written on
completion, which makes a capsule unusable after its first callback. Markers
outlive their capsule by a second and are purged whenever a new transaction
begins.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from cryptography.fernet import Fernet, InvalidToken

from broker.clients.sqlite_store import SQLiteStore
from broker.core.errors import StateMismatchError, TransactionMissingError

logger = logging.getLogger(__name__)

VERIFIER_LENGTH = 64


def generate_code_verifier(length: int = VERIFIER_LENGTH) -> str:
    """Return a random RFC 7636 code verifier of ``length`` characters."""
    if not 43 <= length <= 128:
        raise ValueError("Code verifier length must be between 43 and 128 characters")
    random_bytes = secrets.token_bytes(length)
    return base64.urlsafe_b64encode(random_bytes).decode("ascii").rstrip("=")[:length]


def derive_code_challenge(code_verifier: str) -> str:
    """S256 challenge: base64url(SHA-256(verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def verify_code_challenge(code_verifier: str, code_challenge: str) -> bool:
    try:
        expected = derive_code_challenge(code_verifier)
    except UnicodeEncodeError:
        return False
    return secrets.compare_digest(expected, code_challenge)


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """What :meth:`TransactionStore.begin` hands back to the connect flow."""

    transaction_id: str
    platform: str
    user_id: str
    verifier: str
    challenge: str
    state: str
    handle: str
    redirect_after: Optional[str] = None


@dataclass(frozen=True, slots=True)
class CompletedTransaction:
    transaction_id: str
    platform: str
    user_id: str
    verifier: str
    redirect_after: Optional[str] = None


class TransactionStore:
    """Create and consume sealed, single-use PKCE/state transactions."""

    def __init__(
        self,
        *,
        secret: str,
        ttl_seconds: int,
        ledger: SQLiteStore,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if not secret:
            raise ValueError("Transaction secret must be provided.")
        digest = hashlib.sha256(f"transaction:{secret}".encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))
        self._ttl = ttl_seconds
        self._ledger = ledger
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    def begin(
        self,
        platform: str,
        user_id: str,
        *,
        redirect_after: str | None = None,
    ) -> PendingTransaction:
        self._ledger.purge_expired(self._clock())
        verifier = generate_code_verifier()
        challenge = derive_code_challenge(verifier)
        state = secrets.token_urlsafe(32)
        transaction_id = uuid.uuid4().hex
        payload = {
            "txn": transaction_id,
            "platform": platform,
            "user_id": user_id,
            "verifier": verifier,
            "state": state,
            "redirect_after": redirect_after,
        }
        handle = self._fernet.encrypt_at_time(
            json.dumps(payload, separators=(",", ":")).encode("utf-8"),
            int(self._clock().timestamp()),
        ).decode("ascii")
        logger.info(
            "Started %s authorization transaction %s for user %s",
            platform,
            transaction_id,
            user_id,
        )
        return PendingTransaction(
            transaction_id=transaction_id,
            platform=platform,
            user_id=user_id,
            verifier=verifier,
            challenge=challenge,
            state=state,
            handle=handle,
            redirect_after=redirect_after,
        )

    def complete(
        self,
        handle: str | None,
        supplied_state: str | None,
        *,
        platform: str,
    ) -> CompletedTransaction:
        """Consume the transaction behind ``handle`` exactly once.

        The consumed marker is claimed before the state comparison, so a
        callback carrying the wrong state burns the transaction as well.
        A second call for the same handle always raises
        :class:`TransactionMissingError`.
        """
        payload = self._open(handle)
        if payload.get("platform") != platform:
            raise TransactionMissingError(
                f"No pending {platform} authorization for this browser."
            )

        transaction_id = payload["txn"]
        now = self._clock()
        issued_at = self._fernet.extract_timestamp(handle.encode("ascii"))
        claimed = self._ledger.put_item_if_absent(
            {
                "pk": f"transaction#{transaction_id}",
                "sk": "consumed",
                "platform": platform,
                "consumed_at": now.isoformat(),
                "ttl": issued_at + self._ttl + 1,
            }
        )
        if not claimed:
            logger.warning("Replay of consumed transaction %s rejected", transaction_id)
            raise TransactionMissingError("Authorization transaction was already used.")

        expected_state = payload.get("state") or ""
        if not supplied_state or not secrets.compare_digest(
            expected_state.encode("utf-8"), supplied_state.encode("utf-8")
        ):
            logger.warning("State mismatch on transaction %s", transaction_id)
            raise StateMismatchError()

        return CompletedTransaction(
            transaction_id=transaction_id,
            platform=platform,
            user_id=payload["user_id"],
            verifier=payload["verifier"],
            redirect_after=payload.get("redirect_after"),
        )

    def _open(self, handle: str | None) -> dict:
        if not handle:
            raise TransactionMissingError()
        try:
            raw = self._fernet.decrypt_at_time(
                handle.encode("ascii"),
                ttl=self._ttl,
                current_time=int(self._clock().timestamp()),
            )
        except (InvalidToken, UnicodeEncodeError) as exc:
            raise TransactionMissingError(
                "Authorization transaction is invalid or has expired."
            ) from exc
        return json.loads(raw)


__all__ = [
    "CompletedTransaction",
    "PendingTransaction",
    "TransactionStore",
    "derive_code_challenge",
    "generate_code_verifier",
    "verify_code_challenge",
]
