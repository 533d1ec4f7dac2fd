"""Audit trail for connection lifecycle events."""

from __future__ import annotations

import logging
import secrets
from typing import Any, Dict

from broker.clients.sqlite_store import SQLiteStore
from broker.models.records import AuditEvent

logger = logging.getLogger(__name__)


class AuditTrail:
    """Append audit events under the owning user's partition."""

    def __init__(self, store: SQLiteStore) -> None:
        self._store = store

    def record(
        self,
        user_id: str,
        event_type: str,
        description: str,
        **metadata: Any,
    ) -> AuditEvent:
        event = AuditEvent(
            user_id=user_id,
            event_type=event_type,
            description=description,
            metadata=metadata,
        )
        item: Dict[str, Any] = event.model_dump(mode="json")
        item["pk"] = f"user#{user_id}"
        item["sk"] = f"audit#{event.created_at.isoformat()}#{secrets.token_hex(4)}"
        self._store.put_item(item)
        logger.info("Audit %s for user %s: %s", event_type, user_id, description)
        return event

    def list_events(self, user_id: str) -> list[AuditEvent]:
        items = self._store.list_items_with_prefix(
            partition_key=f"user#{user_id}", sort_key_prefix="audit#"
        )
        return [AuditEvent.model_validate(item) for item in items]


__all__ = ["AuditTrail"]
