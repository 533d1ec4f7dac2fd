"""
Durable per-user, per-platform credential storage.

Connections live at ``user#<id>/connection#<platform>``; one record per pair,
soft-deleted on disconnect. Every mutation is a compare-and-swap on the
record version. Token refresh additionally takes a short lease on the record
so concurrent callers wait for a single upstream refresh instead of each
spending the same refresh token.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from broker.clients.platform_oauth import PlatformRegistry, PlatformUserInfo, TokenSet
from broker.clients.sqlite_store import SQLiteStore
from broker.core.errors import (
    ConnectionNotFoundError,
    ReauthorizationRequiredError,
    StaleRecordError,
    UpstreamRefreshError,
)
from broker.models.records import (
    PlatformCategory,
    PlatformConnection,
    User,
    connection_keys,
)
from broker.services.token_cipher import TokenCipherService

logger = logging.getLogger(__name__)

PLACEHOLDER_EMAIL_DOMAIN = "oauth.placeholder"

_WRITE_ATTEMPTS = 5


class CredentialVault:
    """Stores connections and hands out valid platform access tokens."""

    _REFRESH_WINDOW = timedelta(minutes=5)

    def __init__(
        self,
        *,
        store: SQLiteStore,
        cipher: TokenCipherService,
        registry: PlatformRegistry,
        clock: Callable[[], datetime] | None = None,
        lease_seconds: float = 30.0,
        poll_interval_seconds: float = 0.05,
    ) -> None:
        self._store = store
        self._cipher = cipher
        self._registry = registry
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lease = timedelta(seconds=lease_seconds)
        self._poll_interval = poll_interval_seconds

    # -- users -----------------------------------------------------------------

    def get_user(self, user_id: str) -> Optional[User]:
        item = self._store.get_item(partition_key=f"user#{user_id}", sort_key="profile")
        return User.from_item(item) if item else None

    def ensure_user(
        self, user_id: str, *, email: str | None = None, name: str | None = None
    ) -> User:
        """Return the user record, creating it on first sight."""
        existing = self.get_user(user_id)
        if existing:
            return existing
        user = User(
            id=user_id,
            email=email or f"{user_id}@{PLACEHOLDER_EMAIL_DOMAIN}",
            name=name,
            email_verified=False,
            created_at=self._clock(),
        )
        if self._store.put_item_if_absent(user.to_item()):
            logger.info("Created user %s", user_id)
            return user
        # Lost a creation race; the winner's record is authoritative.
        return self.get_user(user_id) or user

    # -- connections -----------------------------------------------------------

    def get_connection(self, user_id: str, platform: str) -> Optional[PlatformConnection]:
        pk, sk = connection_keys(user_id, platform)
        item = self._store.get_item(partition_key=pk, sort_key=sk)
        return PlatformConnection.from_item(item) if item else None

    def _all_connections(self, user_id: str) -> list[PlatformConnection]:
        items = self._store.list_items_with_prefix(
            partition_key=f"user#{user_id}", sort_key_prefix="connection#"
        )
        return [PlatformConnection.from_item(item) for item in items]

    def list_active(self, user_id: str) -> list[PlatformConnection]:
        active = [conn for conn in self._all_connections(user_id) if conn.is_active]
        return sorted(active, key=lambda conn: conn.connected_at)

    def list_active_grouped(self, user_id: str) -> Dict[str, list[PlatformConnection]]:
        grouped: Dict[str, list[PlatformConnection]] = defaultdict(list)
        for connection in self.list_active(user_id):
            grouped[connection.category.value].append(connection)
        return dict(grouped)

    def save(
        self,
        user_id: str,
        platform: str,
        tokens: TokenSet,
        *,
        category: PlatformCategory | None = None,
        user_info: PlatformUserInfo | None = None,
        scopes: list[str] | None = None,
    ) -> PlatformConnection:
        """Upsert the (user, platform) connection and mark it active.

        An existing record is overwritten in place; its refresh token is kept
        when the new credential set does not carry one.
        """
        definition = self._registry.definition(platform)
        category = category or definition.category
        self.ensure_user(user_id)

        for _ in range(_WRITE_ATTEMPTS):
            now = self._clock()
            existing = self.get_connection(user_id, definition.name)
            refresh_encrypted = self._cipher.encrypt_optional(tokens.refresh_token)
            if refresh_encrypted is None and existing is not None:
                refresh_encrypted = existing.refresh_token_encrypted

            if existing is not None and existing.is_active and existing.is_default:
                is_default = True
            else:
                is_default = not any(
                    conn.is_default
                    for conn in self.list_active(user_id)
                    if conn.category == category and conn.platform != definition.name
                )

            connection = PlatformConnection(
                user_id=user_id,
                platform=definition.name,
                category=category,
                platform_user_id=user_info.id if user_info else None,
                platform_email=user_info.email if user_info else None,
                platform_display_name=user_info.display_name if user_info else None,
                access_token_encrypted=self._cipher.encrypt(tokens.access_token),
                refresh_token_encrypted=refresh_encrypted,
                token_type=tokens.token_type or "Bearer",
                scopes=scopes if scopes is not None else tokens.scopes,
                expires_at=self._expiry(tokens, now),
                is_active=True,
                is_default=is_default,
                connected_at=(
                    existing.connected_at
                    if existing is not None and existing.is_active
                    else now
                ),
                updated_at=now,
            )
            if user_info is None and existing is not None:
                connection.platform_user_id = existing.platform_user_id
                connection.platform_email = existing.platform_email
                connection.platform_display_name = existing.platform_display_name

            try:
                if existing is None:
                    if not self._store.put_item_if_absent(connection.to_item()):
                        continue
                    connection.version = 1
                else:
                    connection.version = self._store.put_item(
                        connection.to_item(), expected_version=existing.version
                    )
            except StaleRecordError:
                continue
            logger.info("Stored %s connection for user %s", definition.name, user_id)
            return connection

        raise StaleRecordError(
            f"Could not store {definition.name} connection after concurrent updates."
        )

    def deactivate(self, user_id: str, platform: str) -> PlatformConnection:
        """Soft-delete the active connection; promote a new default if needed."""
        for _ in range(_WRITE_ATTEMPTS):
            connection = self.get_connection(user_id, platform)
            if connection is None or not connection.is_active:
                raise ConnectionNotFoundError(
                    f"No active {platform} connection for this user."
                )
            was_default = connection.is_default
            connection.is_active = False
            connection.is_default = False
            connection.refresh_lease_until = None
            connection.updated_at = self._clock()
            try:
                connection.version = self._store.put_item(
                    connection.to_item(), expected_version=connection.version
                )
            except StaleRecordError:
                continue
            logger.info("Deactivated %s connection for user %s", platform, user_id)
            if was_default:
                self._promote_default(user_id, connection.category)
            return connection
        raise StaleRecordError(f"Could not deactivate {platform} connection.")

    def set_default(self, user_id: str, platform: str) -> PlatformConnection:
        """Make ``platform`` the default connection within its category."""
        target = self.get_connection(user_id, platform)
        if target is None or not target.is_active:
            raise ConnectionNotFoundError(f"No active {platform} connection for this user.")
        for other in self.list_active(user_id):
            if other.category == target.category and other.platform != target.platform:
                self._set_default_flag(user_id, other.platform, False)
        updated = self._set_default_flag(user_id, target.platform, True)
        return updated or target

    def _promote_default(self, user_id: str, category: PlatformCategory) -> None:
        candidates = [c for c in self.list_active(user_id) if c.category == category]
        if not candidates or any(c.is_default for c in candidates):
            return
        oldest = candidates[0]
        self._set_default_flag(user_id, oldest.platform, True)
        logger.info("Promoted %s to default %s connection", oldest.platform, category.value)

    def _set_default_flag(
        self, user_id: str, platform: str, value: bool
    ) -> Optional[PlatformConnection]:
        for _ in range(_WRITE_ATTEMPTS):
            connection = self.get_connection(user_id, platform)
            if connection is None or not connection.is_active:
                return None
            if connection.is_default == value:
                return connection
            connection.is_default = value
            connection.updated_at = self._clock()
            try:
                connection.version = self._store.put_item(
                    connection.to_item(), expected_version=connection.version
                )
            except StaleRecordError:
                continue
            return connection
        raise StaleRecordError(f"Could not update default flag on {platform}.")

    # -- tokens ----------------------------------------------------------------

    async def get_valid_access_token(self, user_id: str, platform: str) -> str:
        """Return a usable access token, refreshing it upstream when expired.

        Exactly one caller performs the refresh: it claims a lease on the
        record with a conditional write, calls the platform, then swaps in
        the rotated credentials. Other callers poll until the lease clears
        and pick up the refreshed token.
        """
        deadline = self._clock() + self._lease + timedelta(seconds=5)
        while True:
            connection = self.get_connection(user_id, platform)
            if connection is None or not connection.is_active:
                raise ConnectionNotFoundError(f"No active {platform} connection for this user.")

            now = self._clock()
            if not self._needs_refresh(connection, now):
                return self._cipher.decrypt(connection.access_token_encrypted)
            if not connection.refresh_token_encrypted:
                # Nothing to refresh with; serve the token until it actually lapses.
                if not self._has_lapsed(connection, now):
                    return self._cipher.decrypt(connection.access_token_encrypted)
                raise ReauthorizationRequiredError(
                    f"The {platform} connection has expired; reconnect to continue."
                )

            lease_active = (
                connection.refresh_lease_until is not None
                and connection.refresh_lease_until > now
            )
            if not lease_active:
                connection.refresh_lease_until = now + self._lease
                try:
                    connection.version = self._store.put_item(
                        connection.to_item(), expected_version=connection.version
                    )
                except StaleRecordError:
                    continue
                return await self._refresh(connection)

            if now >= deadline:
                raise StaleRecordError(f"Timed out waiting for {platform} token refresh.")
            await asyncio.sleep(self._poll_interval)

    async def _refresh(self, connection: PlatformConnection) -> str:
        client = self._registry.get(connection.platform)
        refresh_token = self._cipher.decrypt_optional(connection.refresh_token_encrypted)
        try:
            tokens = await client.refresh_token(refresh_token)
        except UpstreamRefreshError:
            self._release_lease(connection)
            raise

        now = self._clock()
        connection.access_token_encrypted = self._cipher.encrypt(tokens.access_token)
        if tokens.refresh_token:
            connection.refresh_token_encrypted = self._cipher.encrypt(tokens.refresh_token)
        connection.token_type = tokens.token_type or connection.token_type
        if tokens.scopes:
            connection.scopes = tokens.scopes
        connection.expires_at = self._expiry(tokens, now)
        connection.refresh_lease_until = None
        connection.updated_at = now
        connection.version = self._store.put_item(
            connection.to_item(), expected_version=connection.version
        )
        logger.info(
            "Refreshed %s credentials for user %s", connection.platform, connection.user_id
        )
        return tokens.access_token

    def _release_lease(self, connection: PlatformConnection) -> None:
        connection.refresh_lease_until = None
        try:
            connection.version = self._store.put_item(
                connection.to_item(), expected_version=connection.version
            )
        except StaleRecordError:
            logger.warning(
                "Refresh lease on %s for user %s changed before release",
                connection.platform,
                connection.user_id,
            )

    def _needs_refresh(self, connection: PlatformConnection, now: datetime) -> bool:
        return self._has_lapsed(connection, now + self._REFRESH_WINDOW)

    @staticmethod
    def _has_lapsed(connection: PlatformConnection, moment: datetime) -> bool:
        if connection.expires_at is None:
            return False
        expires_at = connection.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= moment

    @staticmethod
    def _expiry(tokens: TokenSet, now: datetime) -> Optional[datetime]:
        if tokens.expires_in is None:
            return None
        return now + timedelta(seconds=tokens.expires_in)


__all__ = ["CredentialVault", "PLACEHOLDER_EMAIL_DOMAIN"]
