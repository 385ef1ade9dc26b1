"""
SQLite-backed relational store.

Identity columns (``key``, ``tenant_id``, ``entity_type``, timestamps) are real
columns; the remaining payload lives in a JSON ``body`` column and is reached
with ``json_extract``. Filters are translated into a parameterised WHERE
clause. Blocking sqlite3 calls run in a worker thread behind an asyncio lock.
"""

from __future__ import annotations

import asyncio
import re
import sqlite3
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from loguru import logger

from polystore.core.errors import StoreConnectionError, ValidationError
from polystore.core.filters import Eq, FilterExpr, In, Range
from polystore.core.model import SortSpec
from polystore.core.serialization import JsonSerializer
from polystore.datastructures.type_aliases import (
    CollectionName,
    Document,
    DurationSeconds,
    EntityId,
    TenantId,
)

from .interfaces import BaseStoreAdapter, QueryPage, StoreKind, StoreQuery

_FIELD_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")

_COLUMN_FIELDS = {
    "id": "key",
    "tenant_id": "tenant_id",
    "entity_type": "entity_type",
    "created_at": "created_at",
    "updated_at": "updated_at",
}


def _field_sql(field: str) -> tuple[str, list[Any]]:
    column = _COLUMN_FIELDS.get(field)
    if column is not None:
        return column, []
    if not _FIELD_PATTERN.match(field):
        raise ValidationError(f"Unsupported field name for relational filter: {field!r}")
    return "json_extract(body, ?)", [f"$.{field}"]


def _type_guard(expression: str, params: list[Any], bound: Any) -> tuple[str, list[Any]]:
    # SQLite orders mixed types instead of rejecting them; only compare like with like.
    if isinstance(bound, str):
        return f"typeof({expression}) = 'text'", list(params)
    return f"typeof({expression}) IN ('integer', 'real')", list(params)


def _clause_sql(expr: FilterExpr) -> tuple[str, list[Any]]:
    expression, params = _field_sql(expr.field)
    match expr:
        case Eq(value=value):
            if value is None:
                return f"{expression} IS NULL", params
            return f"{expression} = ?", [*params, value]
        case In(values=values):
            if not values:
                return "0", []
            placeholders = ", ".join("?" for _ in values)
            return f"{expression} IN ({placeholders})", [*params, *values]
        case Range(min=low, max=high):
            bound = low if low is not None else high
            guard, clause_params = _type_guard(expression, params, bound)
            parts = [guard]
            if low is not None:
                parts.append(f"{expression} >= ?")
                clause_params += [*params, low]
            if high is not None:
                parts.append(f"{expression} <= ?")
                clause_params += [*params, high]
            return "(" + " AND ".join(parts) + ")", clause_params
    raise ValidationError(f"Unsupported filter expression: {expr!r}")


def to_sql_where(query: StoreQuery) -> tuple[str, list[Any]]:
    """Translate a store query into ``(where_sql, params)``; tenant clause first."""
    clauses: list[str] = []
    params: list[Any] = []
    for expr in query.scoped_filters():
        clause, clause_params = _clause_sql(expr)
        clauses.append(clause)
        params.extend(clause_params)
    return " AND ".join(clauses), params


def to_sql_order(sort: tuple[SortSpec, ...]) -> tuple[str, list[Any]]:
    if not sort:
        return "ORDER BY created_at ASC, key ASC", []
    parts: list[str] = []
    params: list[Any] = []
    for spec in sort:
        expression, expression_params = _field_sql(spec.field)
        direction = "DESC" if spec.descending else "ASC"
        parts.append(f"({expression}) IS NULL ASC")
        params.extend(expression_params)
        parts.append(f"{expression} {direction}")
        params.extend(expression_params)
    return "ORDER BY " + ", ".join(parts), params


class SQLiteRelationalStore(BaseStoreAdapter):
    """Relational store on SQLite with WAL support for file databases."""

    kind = StoreKind.RELATIONAL

    def __init__(
        self,
        db_path: str | Path = ":memory:",
        *,
        wal_mode: bool = True,
        synchronous_mode: str = "NORMAL",
    ) -> None:
        super().__init__()
        self.db_path = str(db_path)
        self.wal_mode = wal_mode
        self.synchronous_mode = synchronous_mode
        self.serializer = JsonSerializer()
        self._conn: sqlite3.Connection | None = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        if self._conn is not None:
            self.connected = True
            return
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = await asyncio.to_thread(
                sqlite3.connect, self.db_path, check_same_thread=False
            )
        except sqlite3.Error as e:
            raise StoreConnectionError(
                f"relational store handshake failed: {e}", store=self.kind.value
            ) from e
        self.connected = True
        if self.db_path != ":memory:":
            await self._execute(
                "PRAGMA journal_mode=WAL" if self.wal_mode else "PRAGMA journal_mode=DELETE"
            )
        await self._execute(f"PRAGMA synchronous={self.synchronous_mode}")
        await self._initialize_schema()
        logger.info("Relational store ready at {}", self.db_path)

    async def close(self) -> None:
        self.connected = False
        if self._conn is None:
            return
        self._conn.close()
        self._conn = None

    async def ping(self) -> None:
        await self._fetch_one("SELECT 1")

    async def health_extra(self) -> dict[str, Any]:
        row = await self._fetch_one("SELECT COUNT(*) FROM records")
        return {"connection_count": 1, "rows": row[0] if row else 0}

    def translate_filters(self, query: StoreQuery) -> tuple[str, list[Any]]:
        return to_sql_where(query)

    async def _initialize_schema(self) -> None:
        await self._execute(
            """
            CREATE TABLE IF NOT EXISTS records (
                collection TEXT NOT NULL,
                key TEXT NOT NULL,
                tenant_id TEXT NOT NULL,
                entity_type TEXT,
                created_at REAL,
                updated_at REAL,
                body TEXT NOT NULL,
                PRIMARY KEY (collection, key)
            )
            """
        )
        await self._execute(
            "CREATE INDEX IF NOT EXISTS records_tenant ON records (collection, tenant_id)"
        )

    def _row_values(
        self, collection: CollectionName, key: EntityId, document: Mapping[str, Any]
    ) -> tuple[Any, ...]:
        body = {**document, "id": key}
        return (
            collection,
            key,
            body["tenant_id"],
            body.get("entity_type"),
            body.get("created_at"),
            body.get("updated_at"),
            self.serializer.serialize(body).decode(),
        )

    async def put(
        self,
        collection: CollectionName,
        key: EntityId,
        document: Document,
        *,
        ttl_seconds: DurationSeconds | None = None,
    ) -> None:
        if "tenant_id" not in document:
            raise ValueError("documents must carry a tenant_id")
        await self._execute(
            "INSERT OR REPLACE INTO records"
            " (collection, key, tenant_id, entity_type, created_at, updated_at, body)"
            " VALUES (?, ?, ?, ?, ?, ?, ?)",
            self._row_values(collection, key, document),
        )

    async def get_by_key(
        self, collection: CollectionName, key: EntityId, *, tenant_id: TenantId
    ) -> Document | None:
        row = await self._fetch_one(
            "SELECT body FROM records WHERE collection=? AND key=? AND tenant_id=?",
            (collection, key, tenant_id),
        )
        if row is None:
            return None
        return self.serializer.deserialize(row[0])

    async def update_by_key(
        self,
        collection: CollectionName,
        key: EntityId,
        changes: Mapping[str, Any],
        *,
        tenant_id: TenantId,
    ) -> Document | None:
        def _update(conn: sqlite3.Connection) -> Document | None:
            cursor = conn.cursor()
            try:
                cursor.execute(
                    "SELECT body FROM records WHERE collection=? AND key=? AND tenant_id=?",
                    (collection, key, tenant_id),
                )
                row = cursor.fetchone()
                if row is None:
                    return None
                merged = {**self.serializer.deserialize(row[0]), **changes}
                cursor.execute(
                    "INSERT OR REPLACE INTO records"
                    " (collection, key, tenant_id, entity_type, created_at, updated_at, body)"
                    " VALUES (?, ?, ?, ?, ?, ?, ?)",
                    self._row_values(collection, key, merged),
                )
                conn.commit()
                return merged
            finally:
                cursor.close()

        return await self._run(_update)

    async def delete_by_key(
        self, collection: CollectionName, key: EntityId, *, tenant_id: TenantId
    ) -> bool:
        def _delete(conn: sqlite3.Connection) -> bool:
            cursor = conn.cursor()
            try:
                cursor.execute(
                    "DELETE FROM records WHERE collection=? AND key=? AND tenant_id=?",
                    (collection, key, tenant_id),
                )
                conn.commit()
                return cursor.rowcount > 0
            finally:
                cursor.close()

        return await self._run(_delete)

    async def query(self, collection: CollectionName, query: StoreQuery) -> QueryPage:
        where, params = self.translate_filters(query)
        order, order_params = to_sql_order(query.sort)
        count_row = await self._fetch_one(
            f"SELECT COUNT(*) FROM records WHERE collection=? AND {where}",
            (collection, *params),
        )
        rows = await self._fetch_all(
            f"SELECT body FROM records WHERE collection=? AND {where} {order}"
            " LIMIT ? OFFSET ?",
            (
                collection,
                *params,
                *order_params,
                query.limit if query.limit is not None else -1,
                query.offset,
            ),
        )
        return QueryPage(
            items=[self.serializer.deserialize(row[0]) for row in rows],
            total=count_row[0] if count_row else 0,
        )

    async def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> None:
        def _execute_blocking(conn: sqlite3.Connection) -> None:
            cursor = conn.cursor()
            try:
                cursor.execute(sql, params)
                conn.commit()
            finally:
                cursor.close()

        await self._run(_execute_blocking)

    async def _fetch_one(
        self, sql: str, params: tuple[Any, ...] = ()
    ) -> tuple[Any, ...] | None:
        def _fetch_blocking(conn: sqlite3.Connection) -> tuple[Any, ...] | None:
            cursor = conn.cursor()
            try:
                cursor.execute(sql, params)
                return cursor.fetchone()
            finally:
                cursor.close()

        return await self._run(_fetch_blocking)

    async def _fetch_all(
        self, sql: str, params: tuple[Any, ...] = ()
    ) -> list[tuple[Any, ...]]:
        def _fetch_blocking(conn: sqlite3.Connection) -> list[tuple[Any, ...]]:
            cursor = conn.cursor()
            try:
                cursor.execute(sql, params)
                return cursor.fetchall()
            finally:
                cursor.close()

        return await self._run(_fetch_blocking)

    async def _run[T](self, work: Callable[[sqlite3.Connection], T]) -> T:
        self._require_connected()
        if self._conn is None:
            raise StoreConnectionError("relational store not opened", store=self.kind.value)
        conn = self._conn
        async with self._lock:
            try:
                return await asyncio.to_thread(work, conn)
            except sqlite3.OperationalError as e:
                raise StoreConnectionError(
                    f"relational store call failed: {e}", store=self.kind.value
                ) from e
