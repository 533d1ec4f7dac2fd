"""SQLite-backed record storage with DynamoDB-style keys and conditional writes."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from broker.core.errors import StaleRecordError


class SQLiteStore:
    """Key-value store over a table keyed by (pk, sk) with a row version.

    Every write bumps ``version``. Passing ``expected_version`` to
    :meth:`put_item` turns the write into a compare-and-swap so concurrent
    read-modify-write cycles on the same record cannot silently overwrite
    each other.

    Items carrying a ``ttl`` attribute (epoch seconds, as with DynamoDB TTL)
    are removed by :meth:`purge_expired` once that moment has passed.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        if self._db_path.parent and not self._db_path.parent.exists():
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False, timeout=5.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS broker_records (
                    pk TEXT NOT NULL,
                    sk TEXT NOT NULL,
                    data TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    ttl INTEGER,
                    PRIMARY KEY (pk, sk)
                )
                """
            )
            columns = {
                row["name"] for row in conn.execute("PRAGMA table_info(broker_records)")
            }
            if "ttl" not in columns:
                conn.execute("ALTER TABLE broker_records ADD COLUMN ttl INTEGER")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS broker_records_ttl ON broker_records (ttl)"
            )

    @staticmethod
    def _keys(item: Dict[str, Any]) -> tuple[str, str]:
        pk = item.get("pk")
        sk = item.get("sk")
        if not pk or not sk:
            raise ValueError("Item must include 'pk' and 'sk' keys")
        return pk, sk

    @staticmethod
    def _ttl(item: Dict[str, Any]) -> Optional[int]:
        ttl = item.get("ttl")
        return int(ttl) if ttl is not None else None

    def put_item(
        self, item: Dict[str, Any], *, expected_version: int | None = None
    ) -> int:
        """Write an item and return its new version.

        With ``expected_version`` the write only succeeds when the stored row
        still carries that version; otherwise :class:`StaleRecordError`.
        """
        pk, sk = self._keys(item)
        payload = {key: value for key, value in item.items() if key != "version"}
        data_json = json.dumps(payload)
        with self._connect() as conn:
            if expected_version is None:
                conn.execute(
                    """
                    INSERT INTO broker_records (pk, sk, data, version, ttl)
                    VALUES (?, ?, ?, 1, ?)
                    ON CONFLICT(pk, sk) DO UPDATE SET
                        data = excluded.data,
                        version = broker_records.version + 1,
                        ttl = excluded.ttl
                    """,
                    (pk, sk, data_json, self._ttl(item)),
                )
            else:
                cursor = conn.execute(
                    """
                    UPDATE broker_records
                    SET data = ?, version = version + 1, ttl = ?
                    WHERE pk = ? AND sk = ? AND version = ?
                    """,
                    (data_json, self._ttl(item), pk, sk, expected_version),
                )
                if cursor.rowcount != 1:
                    raise StaleRecordError(
                        f"Record {pk}/{sk} changed since version {expected_version}."
                    )
            row = conn.execute(
                "SELECT version FROM broker_records WHERE pk = ? AND sk = ?",
                (pk, sk),
            ).fetchone()
        return int(row["version"])

    def put_item_if_absent(self, item: Dict[str, Any]) -> bool:
        """Insert an item only when no record with the same key exists."""
        pk, sk = self._keys(item)
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO broker_records (pk, sk, data, version, ttl)
                VALUES (?, ?, ?, 1, ?)
                ON CONFLICT(pk, sk) DO NOTHING
                """,
                (pk, sk, json.dumps(item), self._ttl(item)),
            )
        return cursor.rowcount == 1

    def get_item(
        self, *, partition_key: str, sort_key: str
    ) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data, version FROM broker_records WHERE pk = ? AND sk = ?",
                (partition_key, sort_key),
            ).fetchone()
        if not row:
            return None
        return self._row_to_item(row)

    def purge_expired(self, now: datetime) -> int:
        """Delete items whose ``ttl`` is at or before ``now``; return the count."""
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM broker_records WHERE ttl IS NOT NULL AND ttl <= ?",
                (int(now.timestamp()),),
            )
        return cursor.rowcount

    def list_items_with_prefix(
        self, *, partition_key: str, sort_key_prefix: str
    ) -> list[Dict[str, Any]]:
        escaped = (
            sort_key_prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        )
        with self._connect() as conn:
            rows = conn.execute(
                (
                    "SELECT data, version FROM broker_records "
                    "WHERE pk = ? AND sk LIKE ? ESCAPE '\\' ORDER BY sk"
                ),
                (partition_key, f"{escaped}%"),
            ).fetchall()
        return [self._row_to_item(row) for row in rows]

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> Dict[str, Any]:
        item = json.loads(row["data"])
        item["version"] = int(row["version"])
        return item


__all__ = ["SQLiteStore"]
