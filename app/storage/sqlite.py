"""SQLite storage engine.

Events live in one table with indexed filter columns and the full record
as an orjson document. Identities live in a table keyed by identity hash,
so registration is a single ``INSERT OR IGNORE``: a true insert-if-absent.
"""
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import orjson
import structlog

from .base import EventStore
from ..errors import StorageFault
from ..event_models import (
    AggregateRow,
    CanonicalEvent,
    EventFilter,
    GroupBy,
    IdentityRecord,
    SortField,
)

log = structlog.get_logger()

SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    identity_hash TEXT NOT NULL,
    client_id TEXT NOT NULL,
    metric TEXT NOT NULL,
    amount REAL NOT NULL,
    ts REAL NOT NULL,
    status TEXT NOT NULL CHECK(status IN ('processed', 'rejected', 'failed')),
    created_at REAL NOT NULL,
    doc BLOB NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_identity ON events(identity_hash);
CREATE INDEX IF NOT EXISTS idx_events_client ON events(client_id);
CREATE INDEX IF NOT EXISTS idx_events_status ON events(status);
CREATE INDEX IF NOT EXISTS idx_events_metric ON events(metric);
CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);

CREATE TABLE IF NOT EXISTS identities (
    identity_hash TEXT PRIMARY KEY,
    client_id TEXT NOT NULL,
    event_id TEXT NOT NULL,
    recorded_at REAL NOT NULL
);
"""

_SORT_COLUMNS = {"timestamp": "ts", "created_at": "created_at", "amount": "amount"}

_GROUP_COLUMNS = {
    "none": (),
    "client_id": ("client_id",),
    "metric": ("metric",),
    "both": ("client_id", "metric"),
}


def _epoch(dt: datetime) -> float:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _where(flt: EventFilter) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    for column, value in (
        ("client_id", flt.client_id),
        ("status", flt.status.value if flt.status else None),
        ("metric", flt.metric),
        ("identity_hash", flt.identity_hash),
    ):
        if value is not None:
            clauses.append(f"{column} = ?")
            params.append(value)
    if flt.from_time is not None:
        clauses.append("ts >= ?")
        params.append(_epoch(flt.from_time))
    if flt.to_time is not None:
        clauses.append("ts < ?")
        params.append(_epoch(flt.to_time))
    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


class SQLiteEventStore(EventStore):
    """Event and identity collections in a single SQLite database (WAL mode).

    One connection is shared across threads, so every statement, reads
    included, runs under the engine lock.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_schema()
        log.info("store.initialized", backend="sqlite", path=self.db_path)

    def _init_schema(self) -> None:
        with self._lock, self.conn:
            self.conn.executescript(SCHEMA)
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA synchronous=NORMAL")

    def close(self):
        with self._lock:
            self.conn.close()

    def _fetchall(self, sql: str, params: list[Any]) -> list[sqlite3.Row]:
        try:
            with self._lock:
                return self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            log.error("sqlite.read_failed", error=str(e))
            raise StorageFault(f"sqlite read failed: {e}") from e

    async def insert_event(self, event: CanonicalEvent) -> CanonicalEvent:
        doc = orjson.dumps(event.model_dump(mode="json"))
        try:
            with self._lock, self.conn:
                self.conn.execute(
                    "INSERT INTO events (id, identity_hash, client_id, metric, amount, ts,"
                    " status, created_at, doc) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        event.id,
                        event.identity_hash,
                        event.client_id,
                        event.metric,
                        event.amount,
                        _epoch(event.timestamp),
                        event.status.value,
                        _epoch(event.created_at),
                        doc,
                    ),
                )
        except sqlite3.Error as e:
            log.error("sqlite.insert_failed", error=str(e), event_id=event.id)
            raise StorageFault(f"sqlite insert failed: {e}") from e
        return event

    async def get_event(self, event_id: str) -> CanonicalEvent | None:
        rows = self._fetchall("SELECT doc FROM events WHERE id = ?", [event_id])
        if not rows:
            return None
        return CanonicalEvent.model_validate(orjson.loads(rows[0]["doc"]))

    async def delete_event(self, event_id: str) -> bool:
        try:
            with self._lock, self.conn:
                cursor = self.conn.execute("DELETE FROM events WHERE id = ?", (event_id,))
        except sqlite3.Error as e:
            log.error("sqlite.delete_failed", error=str(e), event_id=event_id)
            raise StorageFault(f"sqlite delete failed: {e}") from e
        return cursor.rowcount > 0

    async def find_events(
        self,
        flt: EventFilter,
        sort_by: SortField = "timestamp",
        descending: bool = True,
        limit: int | None = None,
        skip: int = 0,
    ) -> list[CanonicalEvent]:
        where, params = _where(flt)
        direction = "DESC" if descending else "ASC"
        sql = (
            f"SELECT doc FROM events{where}"
            f" ORDER BY {_SORT_COLUMNS[sort_by]} {direction}, id {direction}"
            " LIMIT ? OFFSET ?"
        )
        params += [-1 if limit is None else limit, skip]
        rows = self._fetchall(sql, params)
        return [CanonicalEvent.model_validate(orjson.loads(row["doc"])) for row in rows]

    async def count_events(self, flt: EventFilter) -> int:
        where, params = _where(flt)
        rows = self._fetchall(f"SELECT COUNT(*) AS n FROM events{where}", params)
        return int(rows[0]["n"])

    async def aggregate(self, flt: EventFilter, group_by: GroupBy = "none") -> list[AggregateRow]:
        columns = _GROUP_COLUMNS[group_by]
        where, params = _where(flt)
        select_cols = "".join(f"{c}, " for c in columns)
        group_clause = f" GROUP BY {', '.join(columns)}" if columns else ""
        sql = (
            f"SELECT {select_cols}SUM(amount) AS total, COUNT(*) AS n, AVG(amount) AS mean,"
            f" MIN(amount) AS lo, MAX(amount) AS hi FROM events{where}{group_clause}"
            " ORDER BY total DESC"
        )
        rows = self._fetchall(sql, params)

        result = []
        for row in rows:
            if not row["n"]:
                continue
            if group_by == "both":
                group = {"client_id": row["client_id"], "metric": row["metric"]}
            elif columns:
                group = row[columns[0]]
            else:
                group = None
            result.append(
                AggregateRow(
                    group=group,
                    total_amount=row["total"],
                    total_count=row["n"],
                    average_amount=row["mean"],
                    min_amount=row["lo"],
                    max_amount=row["hi"],
                )
            )
        return result

    async def lookup_identity(self, identity_hash: str) -> IdentityRecord | None:
        rows = self._fetchall(
            "SELECT identity_hash, client_id, event_id, recorded_at FROM identities"
            " WHERE identity_hash = ?",
            [identity_hash],
        )
        if not rows:
            return None
        row = rows[0]
        return IdentityRecord(
            identity_hash=row["identity_hash"],
            client_id=row["client_id"],
            event_id=row["event_id"],
            recorded_at=datetime.fromtimestamp(row["recorded_at"], tz=timezone.utc),
        )

    async def register_identity_if_absent(
        self, identity_hash: str, client_id: str, event_id: str
    ) -> bool:
        recorded_at = datetime.now(timezone.utc).timestamp()
        try:
            with self._lock, self.conn:
                cursor = self.conn.execute(
                    "INSERT OR IGNORE INTO identities (identity_hash, client_id, event_id,"
                    " recorded_at) VALUES (?, ?, ?, ?)",
                    (identity_hash, client_id, event_id, recorded_at),
                )
        except sqlite3.Error as e:
            log.error("sqlite.register_failed", error=str(e), identity_hash=identity_hash)
            raise StorageFault(f"sqlite identity registration failed: {e}") from e
        return cursor.rowcount == 1

    async def health_check(self) -> bool:
        try:
            self._fetchall("SELECT 1", [])
            return True
        except StorageFault as e:
            log.warning("sqlite.health_check_failed", error=str(e))
            return False
