"""
Key-value and record storage used by every stateful component.

Two kinds of data live in a store:

* opaque string values under string keys (bandit, timing, burden history,
  rollout and rate-limit state), and
* append-only records grouped in named tables (intervention results,
  decision explanations, outcomes, sessions). Every record carries a
  millisecond ``timestamp`` and usually a ``target_app``.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import StoreError

logger = logging.getLogger(__name__)

INTERVENTION_RESULTS = "intervention_results"
DECISION_EXPLANATIONS = "decision_explanations"
OUTCOMES = "outcomes"
SESSIONS = "sessions"

TABLES = (INTERVENTION_RESULTS, DECISION_EXPLANATIONS, OUTCOMES, SESSIONS)


def _matches(
    record: Dict[str, Any],
    start_ms: Optional[int],
    end_ms: Optional[int],
    target_app: Optional[str],
    where: Optional[Dict[str, Any]],
) -> bool:
    ts = record.get("timestamp", 0)
    if start_ms is not None and ts < start_ms:
        return False
    if end_ms is not None and ts >= end_ms:
        return False
    if target_app is not None and record.get("target_app") != target_app:
        return False
    if where:
        for key, value in where.items():
            if record.get(key) != value:
                return False
    return True


class Store(ABC):
    """
    Abstract store interface consumed by the engine.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def append(self, table: str, record: Dict[str, Any]) -> int:
        """
        Append a record and return the id assigned to it.
        """

    @abstractmethod
    def query(
        self,
        table: str,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
        target_app: Optional[str] = None,
        newest_first: bool = False,
        limit: Optional[int] = None,
        where: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Return records ordered by timestamp. ``start_ms`` is inclusive,
        ``end_ms`` exclusive, ``where`` is an equality filter on fields.
        """

    @abstractmethod
    def get_record(self, table: str, record_id: int) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def update(self, table: str, record_id: int, fields: Dict[str, Any]) -> bool:
        ...

    @abstractmethod
    def delete_before(self, table: str, cutoff_ms: int) -> int:
        ...


class InMemoryStore(Store):
    """
    Dict-backed store. Used in tests, the demo and as a cache-only mode.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._values: Dict[str, str] = {}
        self._tables: Dict[str, List[Dict[str, Any]]] = {}
        self._next_id = 1

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    def append(self, table: str, record: Dict[str, Any]) -> int:
        with self._lock:
            record_id = self._next_id
            self._next_id += 1
            row = dict(record)
            row["id"] = record_id
            row.setdefault("timestamp", 0)
            self._tables.setdefault(table, []).append(row)
            return record_id

    def query(
        self,
        table: str,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
        target_app: Optional[str] = None,
        newest_first: bool = False,
        limit: Optional[int] = None,
        where: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [
                dict(row)
                for row in self._tables.get(table, [])
                if _matches(row, start_ms, end_ms, target_app, where)
            ]
        rows.sort(key=lambda row: (row["timestamp"], row["id"]), reverse=newest_first)
        if limit is not None:
            rows = rows[:limit]
        return rows

    def get_record(self, table: str, record_id: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            for row in self._tables.get(table, []):
                if row["id"] == record_id:
                    return dict(row)
        return None

    def update(self, table: str, record_id: int, fields: Dict[str, Any]) -> bool:
        with self._lock:
            for row in self._tables.get(table, []):
                if row["id"] == record_id:
                    row.update({k: v for k, v in fields.items() if k != "id"})
                    return True
        return False

    def delete_before(self, table: str, cutoff_ms: int) -> int:
        with self._lock:
            rows = self._tables.get(table, [])
            kept = [row for row in rows if row["timestamp"] >= cutoff_ms]
            self._tables[table] = kept
            return len(rows) - len(kept)


class SQLiteStore(Store):
    """
    SQLite-backed store. Records are kept as JSON payloads with the
    timestamp and target app lifted into indexed columns.
    """

    def __init__(self, db_path: Union[str, Path]) -> None:
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_db(self) -> None:
        """Initialize SQLite schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StoreError(f"cannot open {self.db_path}: {exc}") from exc
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    table_name TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    target_app TEXT,
                    payload TEXT NOT NULL  -- JSON object
                );

                CREATE INDEX IF NOT EXISTS idx_records_table_ts
                    ON records(table_name, timestamp);
                CREATE INDEX IF NOT EXISTS idx_records_app
                    ON records(table_name, target_app);
            """
            )
            conn.commit()
        except sqlite3.Error as exc:
            raise StoreError(f"cannot initialise {self.db_path}: {exc}") from exc
        finally:
            conn.close()

    def _execute(self, sql: str, params: tuple = ()) -> List[tuple]:
        with self._lock:
            try:
                conn = self._connect()
                try:
                    cursor = conn.execute(sql, params)
                    rows = cursor.fetchall()
                    conn.commit()
                    if sql.lstrip().upper().startswith("INSERT"):
                        return [(cursor.lastrowid,)]
                    if sql.lstrip().upper().startswith(("UPDATE", "DELETE")):
                        return [(cursor.rowcount,)]
                    return rows
                finally:
                    conn.close()
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc

    @staticmethod
    def _row_to_record(row: tuple) -> Dict[str, Any]:
        record_id, timestamp, target_app, payload = row
        record = json.loads(payload)
        record["id"] = record_id
        record["timestamp"] = timestamp
        if target_app is not None:
            record["target_app"] = target_app
        return record

    def get(self, key: str) -> Optional[str]:
        rows = self._execute("SELECT value FROM kv WHERE key = ?", (key,))
        return rows[0][0] if rows else None

    def set(self, key: str, value: str) -> None:
        self._execute("INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)", (key, value))

    def delete(self, key: str) -> None:
        self._execute("DELETE FROM kv WHERE key = ?", (key,))

    def append(self, table: str, record: Dict[str, Any]) -> int:
        payload = {k: v for k, v in record.items() if k != "id"}
        rows = self._execute(
            "INSERT INTO records (table_name, timestamp, target_app, payload) VALUES (?, ?, ?, ?)",
            (
                table,
                int(payload.get("timestamp", 0)),
                payload.get("target_app"),
                json.dumps(payload),
            ),
        )
        return int(rows[0][0])

    def query(
        self,
        table: str,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
        target_app: Optional[str] = None,
        newest_first: bool = False,
        limit: Optional[int] = None,
        where: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        clauses = ["table_name = ?"]
        params: List[Any] = [table]
        if start_ms is not None:
            clauses.append("timestamp >= ?")
            params.append(int(start_ms))
        if end_ms is not None:
            clauses.append("timestamp < ?")
            params.append(int(end_ms))
        if target_app is not None:
            clauses.append("target_app = ?")
            params.append(target_app)
        order = "DESC" if newest_first else "ASC"
        sql = (
            "SELECT id, timestamp, target_app, payload FROM records WHERE "
            + " AND ".join(clauses)
            + f" ORDER BY timestamp {order}, id {order}"
        )
        # Payload filters are applied after decoding, so LIMIT can only be
        # pushed into SQL when there are none.
        if limit is not None and not where:
            sql += " LIMIT ?"
            params.append(int(limit))
        records = [self._row_to_record(row) for row in self._execute(sql, tuple(params))]
        if where:
            records = [r for r in records if _matches(r, None, None, None, where)]
            if limit is not None:
                records = records[:limit]
        return records

    def get_record(self, table: str, record_id: int) -> Optional[Dict[str, Any]]:
        rows = self._execute(
            "SELECT id, timestamp, target_app, payload FROM records WHERE table_name = ? AND id = ?",
            (table, int(record_id)),
        )
        return self._row_to_record(rows[0]) if rows else None

    def update(self, table: str, record_id: int, fields: Dict[str, Any]) -> bool:
        current = self.get_record(table, record_id)
        if current is None:
            return False
        current.update({k: v for k, v in fields.items() if k != "id"})
        payload = {k: v for k, v in current.items() if k != "id"}
        rows = self._execute(
            "UPDATE records SET timestamp = ?, target_app = ?, payload = ? WHERE id = ?",
            (
                int(payload.get("timestamp", 0)),
                payload.get("target_app"),
                json.dumps(payload),
                int(record_id),
            ),
        )
        return rows[0][0] > 0

    def delete_before(self, table: str, cutoff_ms: int) -> int:
        rows = self._execute(
            "DELETE FROM records WHERE table_name = ? AND timestamp < ?",
            (table, int(cutoff_ms)),
        )
        deleted = int(rows[0][0])
        if deleted:
            logger.info(f"Pruned {deleted} rows from {table}")
        return deleted
