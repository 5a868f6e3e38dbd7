"""
Database utilities for entity persistence.

Provides connection management, schema initialization and the entity stores
the record chain builder writes to. Each entity lives in its own table with
the full record stored as a JSON document.

Stores:
- SqliteEntityStore: SQLite-backed, blocking calls run in a worker thread
- InMemoryEntityStore: development mode and tests
"""

import asyncio
import copy
import logging
import sqlite3
from contextlib import closing
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

import orjson

from utils.errors import DependencyError, RecordNotFoundError

logger = logging.getLogger(__name__)

ENTITY_TABLES = ("tickets", "clients", "bookings", "invoices", "synced_files")


class EntityStore(Protocol):
    async def create(self, fields: dict[str, Any]) -> dict[str, Any]:
        ...

    async def update(self, record_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        ...

    async def filter(
        self,
        criteria: dict[str, Any],
        sort: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        ...


@dataclass
class EntityStores:
    tickets: EntityStore
    clients: EntityStore
    bookings: EntityStore
    invoices: EntityStore
    synced_files: EntityStore


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _sort_key(sort: str) -> tuple[str, bool]:
    """'-created_at' -> ('created_at', descending)."""
    if sort.startswith("-"):
        return sort[1:], True
    return sort, False


def get_conn(path: str) -> sqlite3.Connection:
    """
    Get SQLite database connection with dict-friendly row factory.

    Args:
        path: Database file path

    Returns:
        SQLite connection with row_factory set to sqlite3.Row

    Raises:
        sqlite3.Error: If connection fails
    """
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    return conn


def init_schema(path: str) -> None:
    """
    Initialize database schema by creating entity tables if they don't exist.

    Creates one table per entity in ENTITY_TABLES, each holding:
    id, agency_id, created_at, updated_at and the JSON record in data.

    Raises:
        sqlite3.Error: If schema creation fails
    """
    with closing(get_conn(path)) as conn:
        for table in ENTITY_TABLES:
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    agency_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT,
                    data TEXT NOT NULL
                )
            """)
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{table}_agency ON {table} (agency_id)"
            )

        conn.commit()

    logger.info("DB schema ready", extra={"path": path})


class SqliteEntityStore:
    """Entity store backed by one SQLite table."""

    def __init__(self, table: str, path: str) -> None:
        if table not in ENTITY_TABLES:
            raise ValueError(f"Unknown entity table: {table}")
        self.table = table
        self.path = path

    async def create(self, fields: dict[str, Any]) -> dict[str, Any]:
        return await asyncio.to_thread(self._create, fields)

    async def update(self, record_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        return await asyncio.to_thread(self._update, record_id, fields)

    async def filter(
        self,
        criteria: dict[str, Any],
        sort: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._filter, criteria, sort, limit)

    def _create(self, fields: dict[str, Any]) -> dict[str, Any]:
        now = _now_iso()
        record = {**fields, "id": uuid.uuid4().hex, "created_at": now}

        try:
            with closing(get_conn(self.path)) as conn:
                conn.execute(
                    f"INSERT INTO {self.table} (id, agency_id, created_at, data) VALUES (?, ?, ?, ?)",
                    (record["id"], record.get("agency_id"), now, orjson.dumps(record).decode("utf-8")),
                )
                conn.commit()
        except sqlite3.Error as e:
            raise DependencyError(f"Failed to create {self.table} record: {e}") from e

        return record

    def _update(self, record_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        now = _now_iso()

        try:
            with closing(get_conn(self.path)) as conn:
                row = conn.execute(
                    f"SELECT data FROM {self.table} WHERE id = ?", (record_id,)
                ).fetchone()
                if row is None:
                    raise RecordNotFoundError(f"{self.table} record not found: {record_id}")

                record = {**orjson.loads(row["data"]), **fields, "id": record_id, "updated_at": now}
                conn.execute(
                    f"UPDATE {self.table} SET agency_id = ?, updated_at = ?, data = ? WHERE id = ?",
                    (record.get("agency_id"), now, orjson.dumps(record).decode("utf-8"), record_id),
                )
                conn.commit()
        except sqlite3.Error as e:
            raise DependencyError(f"Failed to update {self.table} record {record_id}: {e}") from e

        return record

    def _filter(
        self,
        criteria: dict[str, Any],
        sort: str | None,
        limit: int | None,
    ) -> list[dict[str, Any]]:
        clauses = []
        params: list[Any] = []
        for key, value in criteria.items():
            clauses.append(f"json_extract(data, '$.{key}') = ?")
            params.append(value)

        query = f"SELECT data FROM {self.table}"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        if sort:
            field, descending = _sort_key(sort)
            query += f" ORDER BY json_extract(data, '$.{field}') {'DESC' if descending else 'ASC'}"
        else:
            query += " ORDER BY rowid ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        try:
            with closing(get_conn(self.path)) as conn:
                rows = conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise DependencyError(f"Failed to query {self.table}: {e}") from e

        return [orjson.loads(row["data"]) for row in rows]


class InMemoryEntityStore:
    """Dict-backed entity store for development mode and tests."""

    def __init__(self, name: str = "entity") -> None:
        self.name = name
        self.records: dict[str, dict[str, Any]] = {}

    async def create(self, fields: dict[str, Any]) -> dict[str, Any]:
        record = {**copy.deepcopy(fields), "id": uuid.uuid4().hex, "created_at": _now_iso()}
        self.records[record["id"]] = record
        logger.debug("Created %s record %s", self.name, record["id"])
        return copy.deepcopy(record)

    async def update(self, record_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        if record_id not in self.records:
            raise RecordNotFoundError(f"{self.name} record not found: {record_id}")
        self.records[record_id].update(copy.deepcopy(fields))
        self.records[record_id]["updated_at"] = _now_iso()
        return copy.deepcopy(self.records[record_id])

    async def filter(
        self,
        criteria: dict[str, Any],
        sort: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        matches = [
            record
            for record in self.records.values()
            if all(record.get(key) == value for key, value in criteria.items())
        ]
        if sort:
            field, descending = _sort_key(sort)
            matches.sort(key=lambda r: (r.get(field) is None, r.get(field)), reverse=descending)
        if limit is not None:
            matches = matches[:limit]
        return [copy.deepcopy(record) for record in matches]


def open_stores(backend: str, path: str | None = None) -> EntityStores:
    """Build the entity stores for the configured backend."""
    if backend == "memory":
        return EntityStores(**{table: InMemoryEntityStore(table) for table in ENTITY_TABLES})

    if not path:
        raise ValueError("SQLite backend requires a database path")
    init_schema(path)
    return EntityStores(**{table: SqliteEntityStore(table, path) for table in ENTITY_TABLES})
