"""PostgreSQL adapter: document collections emulated over JSONB tables.

Manifesto:
    A collection is a table with a ``data JSONB`` payload column and typed
    system columns. Filters and updates are translated (``jsonb``), index
    descriptors become GIN or B-tree expression indexes, and ``list_indexes``
    reads them back from ``pg_indexes`` (``introspection``). Versioning is
    done by a per-table ``BEFORE UPDATE`` trigger, so every write path
    (including ones outside this layer) bumps ``_version``.

Architecture:
    ::

        PostgresAdapter
          ├── _BlockingPool        ThreadedConnectionPool + bounded wait + idle eviction
          ├── _PoolExecutor        one pooled connection per operation, committed
          ├── _TransactionExecutor the transaction's connection, not committed
          └── PostgresCollection   translation + SQL over an executor

        per collection (lazily, or eagerly for system collections):
          CREATE TABLE "<t>" (_id UUID PK, data JSONB, _created_by, _updated_by,
                              _created_at, _updated_at, _version, _deleted_at)
          idx_<t>_created_at / _updated_at / _deleted_at  (btree)
          idx_<t>_data                                    (gin)
          update_<t>_updated_at()                         (trigger function)

Guardrails:
    ❌ Reading soft-deleted rows
    ✅ Every statement is scoped by ``_deleted_at IS NULL``
    ❌ Provisioning DDL inside the caller's transaction
    ✅ DDL runs on its own pooled connection and is cached per process

Tags:
    anybase-core, database, postgresql, psycopg2, jsonb, adapter

Doc-Types:
    api-reference
"""

from __future__ import annotations

import re
import threading
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import psycopg2
import psycopg2.extras
import psycopg2.pool
from psycopg2 import errors as pg_errors

from anybase.core import deadline
from anybase.core.errors import (
    DatabaseError,
    DuplicateKeyError,
    InvalidConfigError,
    NoDocumentsError,
    NotConnectedError,
    OperationTimeoutError,
    TransactionFailedError,
    UnsupportedOperationError,
)
from anybase.core.ids import ID
from anybase.core.logging import get_logger
from anybase.core.operators import normalize_update, validate_filter
from anybase.core.types import SYSTEM_COLLECTIONS, SYSTEM_FIELDS, DatabaseType, DeleteResult, FindOptions, Index, UpdateResult

from .base import BufferedCursor, Collection, Database, Transaction
from .introspection import parse_index_definition
from .jsonb import (
    SYSTEM_COLUMNS,
    Params,
    apply_projection,
    encode_json,
    order_by,
    translate_filter,
    translate_update,
    upsert_seed,
)

if TYPE_CHECKING:
    from anybase.core.settings import DatabaseSettings

logger = get_logger(__name__)

METADATA_TABLE = "_collections"
MAX_IDENTIFIER_LENGTH = 63

_COLUMNS = "_id, data, _created_at, _updated_at, _version, _created_by, _updated_by"
_UNSAFE = re.compile(r"[^a-z0-9_]")

_METADATA_DDL = f"""
CREATE TABLE IF NOT EXISTS {METADATA_TABLE} (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    name TEXT NOT NULL UNIQUE,
    table_name TEXT NOT NULL UNIQUE,
    schema JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""


def sanitize_table_name(name: str) -> str:
    """Physical table for a logical collection name.

    Lower-cases and replaces every character outside ``[a-z0-9_]`` with ``_``.
    """
    return _UNSAFE.sub("_", name.lower())


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _array_item(item: str) -> str:
    if item == "" or item.upper() == "NULL" or re.search(r'[{},"\\\s]', item):
        return '"' + item.replace("\\", "\\\\").replace('"', '\\"') + '"'
    return item


def payload_expression(field: str) -> str:
    """Index expression over the payload: ``data -> 'f'`` or ``data #> '{a,b}'``."""
    segments = field.split(".")
    if len(segments) == 1:
        return f"(data -> {quote_literal(field)})"
    array = "{" + ",".join(_array_item(segment) for segment in segments) + "}"
    return f"(data #> {quote_literal(array)})"


def table_ddl(table: str) -> list[str]:
    """Statements provisioning one collection table (all idempotent)."""
    t = quote_ident(table)
    function = quote_ident(f"update_{table}_updated_at")
    return [
        f"""
        CREATE TABLE IF NOT EXISTS {t} (
            _id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            data JSONB NOT NULL DEFAULT '{{}}',
            _created_by TEXT,
            _updated_by TEXT,
            _created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
            _updated_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
            _version INTEGER NOT NULL DEFAULT 1,
            _deleted_at TIMESTAMPTZ
        )
        """,
        f"CREATE INDEX IF NOT EXISTS {quote_ident(f'idx_{table}_created_at')} ON {t} (_created_at)",
        f"CREATE INDEX IF NOT EXISTS {quote_ident(f'idx_{table}_updated_at')} ON {t} (_updated_at)",
        f"CREATE INDEX IF NOT EXISTS {quote_ident(f'idx_{table}_deleted_at')} ON {t} (_deleted_at)",
        f"CREATE INDEX IF NOT EXISTS {quote_ident(f'idx_{table}_data')} ON {t} USING gin (data)",
        f"""
        CREATE OR REPLACE FUNCTION {function}() RETURNS TRIGGER AS $$
        BEGIN
            NEW._updated_at = GREATEST(clock_timestamp(), OLD._updated_at + interval '1 microsecond');
            NEW._version = OLD._version + 1;
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql
        """,
        f"DROP TRIGGER IF EXISTS {function} ON {t}",
        f"CREATE TRIGGER {function} BEFORE UPDATE ON {t} FOR EACH ROW EXECUTE FUNCTION {function}()",
    ]


def index_ddl(table: str, index: Index) -> tuple[str, str]:
    """``(physical name, CREATE INDEX statement)`` for a neutral descriptor.

    Raises:
        UnsupportedOperationError: TTL descriptor or no keys.
        InvalidConfigError: physical name longer than PostgreSQL allows.
    """
    if index.ttl is not None:
        raise UnsupportedOperationError(
            "TTL indexes are not supported by the PostgreSQL adapter", operator="expireAfterSeconds"
        )
    if not index.keys:
        raise UnsupportedOperationError("index requires at least one key")

    name = index.name or index.default_name()
    physical = f"{table}__{name}"
    if len(physical.encode()) > MAX_IDENTIFIER_LENGTH:
        raise InvalidConfigError("index.name", name, f"index name {physical!r} exceeds {MAX_IDENTIFIER_LENGTH} bytes")

    payload_fields = [field for field in index.keys if field not in SYSTEM_COLUMNS]
    all_ascending = all(direction == 1 for direction in index.keys.values())
    use_gin = (
        len(payload_fields) == len(index.keys)
        and not index.unique
        and not index.sparse
        and all_ascending
    )

    elements = []
    for field, direction in index.keys.items():
        if field in SYSTEM_COLUMNS:
            expr = quote_ident(field)
        else:
            expr = payload_expression(field)
            if index.unique:
                # a missing field collides like an explicit null
                expr = f"COALESCE({expr}, 'null'::jsonb)"
        elements.append(f"{expr} DESC" if direction == -1 else expr)

    predicates = []
    if index.unique:
        predicates.append("_deleted_at IS NULL")
    if index.sparse and payload_fields:
        present = " OR ".join(f"{payload_expression(field)} IS NOT NULL" for field in payload_fields)
        predicates.append(f"({present})")

    method = "gin" if use_gin else "btree"
    sql = (
        f"CREATE {'UNIQUE ' if index.unique else ''}INDEX IF NOT EXISTS {quote_ident(physical)} "
        f"ON {quote_ident(table)} USING {method} ({', '.join(elements)})"
    )
    if predicates:
        sql += " WHERE " + " AND ".join(predicates)
    return physical, sql


# =============================================================================
# ERROR MAPPING
# =============================================================================


def _map_error(exc: psycopg2.Error, operation: str, collection: str | None) -> DatabaseError:
    context = {"backend": "postgres", "collection": collection, "operation": operation}
    if isinstance(exc, pg_errors.UniqueViolation):
        diag = getattr(exc, "diag", None)
        detail = getattr(diag, "message_detail", None)
        return DuplicateKeyError(f"duplicate key error: {detail or exc}", key=detail, cause=exc).with_context(
            **context
        )
    if isinstance(exc, pg_errors.QueryCanceled):
        return OperationTimeoutError(f"{operation} exceeded its deadline", cause=exc).with_context(**context)
    if isinstance(exc, (psycopg2.OperationalError, psycopg2.InterfaceError)):
        return NotConnectedError(f"postgres unreachable: {exc}", cause=exc).with_context(**context)
    return DatabaseError(str(exc), cause=exc).with_context(**context)


@contextmanager
def _driver_errors(operation: str, collection: str | None = None) -> Iterator[None]:
    try:
        yield
    except psycopg2.Error as exc:
        raise _map_error(exc, operation, collection) from exc


def _apply_deadline(cur: Any, operation: str) -> None:
    left = deadline.check(operation)
    if left is not None:
        cur.execute("SET LOCAL statement_timeout = %s", (max(1, int(left * 1000)),))


# =============================================================================
# POOL
# =============================================================================


class _BlockingPool:
    """``ThreadedConnectionPool`` that waits for a free slot instead of failing.

    The wait is bounded by ``connect_timeout`` (or the active deadline).
    Connections idle longer than ``max_idle_time`` are closed on checkout.
    """

    def __init__(self, config: DatabaseSettings):
        connect_kwargs: dict[str, Any] = {"connect_timeout": max(1, int(config.connect_timeout))}
        dsn = config.postgres_dsn()
        if "sslmode" not in dsn:
            connect_kwargs["sslmode"] = config.ssl_mode
        with _driver_errors("connect"):
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                min(config.min_pool_size, config.max_pool_size),
                config.max_pool_size,
                dsn,
                **connect_kwargs,
            )
        self._slots = threading.BoundedSemaphore(config.max_pool_size)
        self._wait_timeout = config.connect_timeout
        self._max_idle = config.max_idle_time
        self._idle_since: dict[int, float] = {}
        self._lock = threading.Lock()

    def getconn(self) -> Any:
        timeout = deadline.bounded(self._wait_timeout)
        if not self._slots.acquire(timeout=max(timeout, 0)):
            raise OperationTimeoutError("timed out waiting for a pooled connection").with_context(
                backend="postgres", operation="acquire"
            )
        try:
            with _driver_errors("acquire"):
                while True:
                    conn = self._pool.getconn()
                    with self._lock:
                        since = self._idle_since.pop(id(conn), None)
                    if conn.closed or (since is not None and time.monotonic() - since > self._max_idle):
                        self._pool.putconn(conn, close=True)
                        continue
                    return conn
        except BaseException:
            self._slots.release()
            raise

    def putconn(self, conn: Any, close: bool = False) -> None:
        try:
            close = close or bool(conn.closed)
            if not close:
                with self._lock:
                    self._idle_since[id(conn)] = time.monotonic()
            self._pool.putconn(conn, close=close)
        finally:
            self._slots.release()

    def closeall(self) -> None:
        self._pool.closeall()
        self._idle_since.clear()


def _safe_rollback(conn: Any) -> bool:
    """Roll back; returns False when the connection is unusable."""
    try:
        conn.rollback()
        return True
    except psycopg2.Error as exc:
        logger.warning("connection_rollback_failed", backend="postgres", error=str(exc))
        return False


class _PoolExecutor:
    """Runs each operation on its own pooled connection and commits it."""

    def __init__(self, adapter: PostgresAdapter):
        self._adapter = adapter

    @contextmanager
    def cursor(self, operation: str, collection: str | None = None) -> Iterator[Any]:
        pool = self._adapter._require_pool()
        conn = pool.getconn()
        healthy = True
        try:
            with _driver_errors(operation, collection):
                try:
                    with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                        _apply_deadline(cur, operation)
                        yield cur
                    conn.commit()
                except BaseException:
                    healthy = _safe_rollback(conn)
                    raise
        finally:
            pool.putconn(conn, close=not healthy)


class _TransactionExecutor:
    """Runs operations on the transaction's connection without committing."""

    def __init__(self, transaction: PostgresTransaction):
        self._transaction = transaction

    @contextmanager
    def cursor(self, operation: str, collection: str | None = None) -> Iterator[Any]:
        self._transaction._ensure_open()
        with _driver_errors(operation, collection):
            with self._transaction.connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                _apply_deadline(cur, operation)
                yield cur


# =============================================================================
# COLLECTION
# =============================================================================


def _decode_row(row: Mapping[str, Any]) -> dict[str, Any]:
    document = dict(row["data"] or {})
    document["_id"] = ID.parse(str(row["_id"]), DatabaseType.POSTGRES)
    document["_created_at"] = row["_created_at"]
    document["_updated_at"] = row["_updated_at"]
    document["_version"] = row["_version"]
    if row.get("_created_by") is not None:
        document["_created_by"] = row["_created_by"]
    if row.get("_updated_by") is not None:
        document["_updated_by"] = row["_updated_by"]
    return document


class PostgresCollection(Collection):
    """Collection handle over one JSONB table."""

    def __init__(self, name: str, adapter: PostgresAdapter, executor: Any = None):
        super().__init__(name)
        self._adapter = adapter
        self._executor = executor or _PoolExecutor(adapter)

    @property
    def table(self) -> str:
        return sanitize_table_name(self.name)

    def _cursor(self, operation: str) -> Any:
        """Executor cursor, provisioning the table on first use."""
        self._adapter.ensure_table(self.name)
        return self._executor.cursor(operation, self.name)

    def _where(self, filter: Mapping[str, Any] | None, params: Params) -> str:
        predicate = translate_filter(validate_filter(filter), params)
        return f"_deleted_at IS NULL AND {predicate}"

    # -- inserts ------------------------------------------------------------

    def _insert(self, cur: Any, table: str, document: Mapping[str, Any], actor: str | None) -> ID:
        identifier = ID.zero()
        if document.get("_id") not in (None, ""):
            identifier = ID.coerce(document["_id"], DatabaseType.POSTGRES)
        if identifier.is_zero:
            identifier = ID.new(DatabaseType.POSTGRES)
        payload = {k: v for k, v in document.items() if k not in SYSTEM_FIELDS}
        cur.execute(
            f"INSERT INTO {quote_ident(table)} (_id, data, _created_by, _updated_by) "
            "VALUES (%s::uuid, %s::jsonb, %s, %s) RETURNING _id",
            (str(identifier), encode_json(payload), actor, actor),
        )
        return identifier

    def insert_one(self, document: Mapping[str, Any], *, actor: str | None = None) -> ID:
        table = self.table
        with self._cursor("insert_one") as cur:
            return self._insert(cur, table, document, actor)

    def insert_many(self, documents: list[Mapping[str, Any]], *, actor: str | None = None) -> list[ID]:
        if not documents:
            return []
        table = self.table
        with self._cursor("insert_many") as cur:
            return [self._insert(cur, table, document, actor) for document in documents]

    # -- reads --------------------------------------------------------------

    def _select(self, filter: Mapping[str, Any] | None, options: FindOptions) -> tuple[str, dict[str, Any]]:
        params = Params()
        sql = f"SELECT {_COLUMNS} FROM {quote_ident(self.table)} WHERE {self._where(filter, params)}"
        if options.sort:
            sql += f" ORDER BY {order_by(options.sort, params)}"
        if options.limit:
            sql += f" LIMIT {int(options.limit)}"
        if options.skip:
            sql += f" OFFSET {int(options.skip)}"
        return sql, params.values

    def find_one(self, filter: Mapping[str, Any] | None = None) -> dict[str, Any]:
        sql, values = self._select(filter, FindOptions(limit=1))
        with self._cursor("find_one") as cur:
            cur.execute(sql, values)
            row = cur.fetchone()
        if row is None:
            raise NoDocumentsError().with_context(backend="postgres", collection=self.name, operation="find_one")
        return _decode_row(row)

    def find(self, filter: Mapping[str, Any] | None = None, options: FindOptions | None = None) -> BufferedCursor:
        options = options or FindOptions()
        sql, values = self._select(filter, options)
        with self._cursor("find") as cur:
            cur.execute(sql, values)
            rows = cur.fetchall()
        return BufferedCursor([apply_projection(_decode_row(row), options.projection) for row in rows])

    def count_documents(self, filter: Mapping[str, Any] | None = None) -> int:
        params = Params()
        sql = f"SELECT count(*) AS n FROM {quote_ident(self.table)} WHERE {self._where(filter, params)}"
        with self._cursor("count_documents") as cur:
            cur.execute(sql, params.values)
            return int(cur.fetchone()["n"])

    # -- updates ------------------------------------------------------------

    def _update(
        self,
        operation: str,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
        upsert: bool,
        actor: str | None,
        single: bool,
    ) -> UpdateResult:
        table = quote_ident(self.table)
        normalized = normalize_update(update)
        params = Params()
        where = self._where(filter, params)
        new_data = translate_update(normalized, params)
        assignments = f"data = {new_data}"
        if actor is not None:
            assignments += f", _updated_by = {params.add(actor)}"
        limit = " LIMIT 1" if single else ""
        sql = (
            f"UPDATE {table} SET {assignments} "
            f"WHERE _id IN (SELECT _id FROM {table} WHERE {where}{limit} FOR UPDATE)"
        )

        insert_sql = None
        insert_values: dict[str, Any] = {}
        upserted_id = None
        if upsert:
            seed, seed_id = upsert_seed(validate_filter(filter))
            upserted_id = ID.coerce(seed_id, DatabaseType.POSTGRES) if seed_id is not None else ID.zero()
            if upserted_id.is_zero:
                upserted_id = ID.new(DatabaseType.POSTGRES)
            insert_params = Params()
            id_param = insert_params.add(str(upserted_id))
            seed_param = insert_params.jsonb(seed)
            actor_param = insert_params.add(actor)
            seeded = translate_update(normalized, insert_params, source="seed.data")
            insert_sql = (
                f"INSERT INTO {table} (_id, data, _created_by, _updated_by) "
                f"SELECT {id_param}::uuid, {seeded}, {actor_param}, {actor_param} "
                f"FROM (SELECT {seed_param} AS data) AS seed"
            )
            insert_values = insert_params.values

        with self._cursor(operation) as cur:
            cur.execute(sql, params.values)
            matched = cur.rowcount
            if matched == 0 and insert_sql is not None:
                cur.execute(insert_sql, insert_values)
                return UpdateResult(upserted_count=1, upserted_id=upserted_id)
        # the trigger bumps _version on every matched row
        return UpdateResult(matched_count=matched, modified_count=matched)

    def update_one(
        self,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        upsert: bool = False,
        actor: str | None = None,
    ) -> UpdateResult:
        return self._update("update_one", filter, update, upsert, actor, single=True)

    def update_many(
        self,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        upsert: bool = False,
        actor: str | None = None,
    ) -> UpdateResult:
        return self._update("update_many", filter, update, upsert, actor, single=False)

    # -- deletes ------------------------------------------------------------

    def _delete(self, operation: str, filter: Mapping[str, Any], single: bool) -> DeleteResult:
        table = quote_ident(self.table)
        params = Params()
        where = self._where(filter, params)
        limit = " LIMIT 1" if single else ""
        sql = (
            f"UPDATE {table} SET _deleted_at = clock_timestamp() "
            f"WHERE _id IN (SELECT _id FROM {table} WHERE {where}{limit} FOR UPDATE)"
        )
        with self._cursor(operation) as cur:
            cur.execute(sql, params.values)
            return DeleteResult(deleted_count=cur.rowcount)

    def delete_one(self, filter: Mapping[str, Any]) -> DeleteResult:
        return self._delete("delete_one", filter, single=True)

    def delete_many(self, filter: Mapping[str, Any]) -> DeleteResult:
        return self._delete("delete_many", filter, single=False)

    # -- indexes ------------------------------------------------------------

    def create_index(self, index: Index) -> str:
        table = self.table
        physical, sql = index_ddl(table, index)
        with self._cursor("create_index") as cur:
            cur.execute(sql)
        name = physical[len(table) + 2 :]
        logger.info("index_created", backend="postgres", collection=self.name, index=name, table=table)
        return name

    def drop_index(self, name: str) -> None:
        table = self.table
        candidates = [f"{table}__{name}", name]
        with self._cursor("drop_index") as cur:
            cur.execute(
                "SELECT indexname FROM pg_indexes "
                "WHERE schemaname = current_schema() AND tablename = %s AND indexname = ANY(%s)",
                (table, candidates),
            )
            found = {row["indexname"] for row in cur.fetchall()}
            physical = next((candidate for candidate in candidates if candidate in found), None)
            if physical is None:
                raise DatabaseError(f"index not found with name [{name}]").with_context(
                    backend="postgres", collection=self.name, operation="drop_index"
                )
            cur.execute(f"DROP INDEX {quote_ident(physical)}")
        logger.info("index_dropped", backend="postgres", collection=self.name, index=name)

    def list_indexes(self) -> list[Index]:
        table = self.table
        with self._cursor("list_indexes") as cur:
            cur.execute(
                "SELECT indexname, indexdef FROM pg_indexes "
                "WHERE schemaname = current_schema() AND tablename = %s ORDER BY indexname",
                (table,),
            )
            rows = cur.fetchall()
        prefix = f"{table}__"
        indexes = []
        for row in rows:
            index = parse_index_definition(row["indexname"], row["indexdef"])
            if index.name.startswith(prefix):
                index.name = index.name[len(prefix) :]
            indexes.append(index)
        return indexes

    # -- aggregation --------------------------------------------------------

    def aggregate(self, pipeline: list[Mapping[str, Any]]) -> BufferedCursor:
        sql, values, projection, count_field = _AggregateBuilder(self).build(pipeline)
        with self._cursor("aggregate") as cur:
            cur.execute(sql, values)
            rows = cur.fetchall()
        if count_field is not None:
            total = int(rows[0]["n"]) if rows else 0
            return BufferedCursor([{count_field: total}] if total else [])
        return BufferedCursor([apply_projection(_decode_row(row), projection) for row in rows])


class _AggregateBuilder:
    """Folds ``$match/$sort/$skip/$limit/$project/$count`` stages into SQL.

    A new sub-select level starts only where the stage order requires it
    (for example ``$match`` after ``$limit``); the sort order is carried
    into the outer level.
    """

    def __init__(self, collection: PostgresCollection):
        self._collection = collection
        self._params = Params()
        self._depth = 0
        self._source = ""
        self._where: list[str] = []
        self._order: str | None = None
        self._offset = 0
        self._limit: int | None = None

    def _render(self) -> str:
        sql = f"SELECT {_COLUMNS} FROM {self._source}"
        if self._where:
            sql += " WHERE " + " AND ".join(self._where)
        if self._order:
            sql += f" ORDER BY {self._order}"
        if self._limit is not None:
            sql += f" LIMIT {self._limit}"
        if self._offset:
            sql += f" OFFSET {self._offset}"
        return sql

    def _nest(self) -> None:
        self._depth += 1
        self._source = f"({self._render()}) AS _s{self._depth}"
        self._where = []
        self._offset = 0
        self._limit = None

    def build(self, pipeline: list[Mapping[str, Any]]) -> tuple[str, dict[str, Any], dict[str, Any] | None, str | None]:
        self._source = quote_ident(self._collection.table)
        self._where = ["_deleted_at IS NULL"]
        projection: dict[str, Any] | None = None
        count_field: str | None = None

        for stage in pipeline:
            if not isinstance(stage, Mapping) or len(stage) != 1:
                raise UnsupportedOperationError("each pipeline stage must have exactly one operator")
            (op, spec), = stage.items()
            if projection is not None or count_field is not None:
                raise UnsupportedOperationError(f"{op} after $project or $count is not supported", operator=op)
            if op == "$match":
                if self._limit is not None or self._offset:
                    self._nest()
                self._where.append(translate_filter(validate_filter(spec), self._params))
            elif op == "$sort":
                if self._limit is not None or self._offset:
                    self._nest()
                self._order = order_by(spec, self._params)
            elif op == "$skip":
                if self._limit is not None:
                    self._nest()
                self._offset += _non_negative(op, spec)
            elif op == "$limit":
                limit = _non_negative(op, spec)
                self._limit = limit if self._limit is None else min(self._limit, limit)
            elif op == "$project":
                if not isinstance(spec, Mapping):
                    raise UnsupportedOperationError("$project requires a field document", operator=op)
                projection = dict(spec)
            elif op == "$count":
                if not isinstance(spec, str) or not spec or spec.startswith("$") or "." in spec:
                    raise UnsupportedOperationError("$count requires a plain field name", operator=op)
                count_field = spec
            else:
                raise UnsupportedOperationError(
                    f"aggregation stage {op} is not supported by the PostgreSQL adapter", operator=op
                )

        sql = self._render()
        if count_field is not None:
            sql = f"SELECT count(*) AS n FROM ({sql}) AS _count"
        return sql, self._params.values, projection, count_field


def _non_negative(op: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise UnsupportedOperationError(f"{op} requires a non-negative integer", operator=op)
    return value


# =============================================================================
# TRANSACTION
# =============================================================================


class PostgresTransaction(Transaction):
    """Transaction pinned to one pooled connection."""

    def __init__(self, adapter: PostgresAdapter):
        super().__init__()
        self._adapter = adapter
        self._pool = adapter._require_pool()
        self.connection = self._pool.getconn()

    def collection(self, name: str) -> PostgresCollection:
        self._ensure_open()
        return PostgresCollection(name, self._adapter, _TransactionExecutor(self))

    def _finish(self, healthy: bool = True) -> None:
        self._closed = True
        self._pool.putconn(self.connection, close=not healthy)

    def commit(self) -> None:
        self._ensure_open()
        try:
            self.connection.commit()
        except psycopg2.Error as exc:
            healthy = _safe_rollback(self.connection)
            self._finish(healthy)
            raise TransactionFailedError(f"commit failed: {exc}", cause=exc).with_context(
                backend="postgres", operation="commit"
            ) from exc
        self._finish()

    def rollback(self) -> None:
        self._ensure_open()
        try:
            self.connection.rollback()
        except psycopg2.Error as exc:
            self._finish(healthy=False)
            raise TransactionFailedError(f"rollback failed: {exc}", cause=exc).with_context(
                backend="postgres", operation="rollback"
            ) from exc
        self._finish()
        logger.info("transaction_rolled_back", backend="postgres")


# =============================================================================
# ADAPTER
# =============================================================================


class PostgresAdapter(Database):
    """
    PostgreSQL implementation of the ``Database`` contract.

    Example:
        >>> db = PostgresAdapter(DatabaseSettings(uri="postgres://app@localhost/anybase"))
        >>> db.connect()
        >>> db.collection("products").insert_one({"name": "widget", "price": 9.5})
    """

    db_type = DatabaseType.POSTGRES

    def __init__(self, config: DatabaseSettings):
        self._config = config
        self._pool: _BlockingPool | None = None
        self._tables: dict[str, str] = {}
        self._owners: dict[str, str] = {}
        self._provision_lock = threading.Lock()
        self._executor = _PoolExecutor(self)

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    def supports_ttl(self) -> bool:
        return False

    def _require_pool(self) -> _BlockingPool:
        if self._pool is None:
            raise NotConnectedError().with_context(backend="postgres")
        return self._pool

    def connect(self) -> None:
        """Open the pool, create the metadata table and the system collections."""
        if self._pool is not None:
            return
        self._pool = _BlockingPool(self._config)
        try:
            with self._executor.cursor("connect") as cur:
                cur.execute("SELECT 1")
                cur.execute(_METADATA_DDL)
            for name in SYSTEM_COLLECTIONS:
                self.ensure_table(name)
        except BaseException:
            self._pool.closeall()
            self._pool = None
            self._tables.clear()
            self._owners.clear()
            raise
        logger.info(
            "database_connected",
            backend="postgres",
            uri=self._config.redacted_uri(),
            system_collections=len(SYSTEM_COLLECTIONS),
        )

    def close(self) -> None:
        if self._pool is None:
            return
        self._pool.closeall()
        self._pool = None
        self._tables.clear()
        self._owners.clear()
        logger.info("database_closed", backend="postgres")

    def ping(self) -> None:
        with self._executor.cursor("ping") as cur:
            cur.execute("SELECT 1")

    # -- provisioning -------------------------------------------------------

    def ensure_table(self, name: str) -> str:
        """Physical table for ``name``, provisioning it on first use.

        Raises:
            InvalidConfigError: reserved name, or the sanitized name is
                already owned by another logical collection.
        """
        cached = self._tables.get(name)
        if cached is not None:
            return cached
        table = sanitize_table_name(name)
        if not table or table == METADATA_TABLE or table.startswith("pg_"):
            raise InvalidConfigError("collection", name, f"collection name {name!r} is reserved or empty")
        if len(table) > MAX_IDENTIFIER_LENGTH - len("idx__updated_at"):
            raise InvalidConfigError("collection", name, f"collection name {name!r} is too long")

        with self._provision_lock:
            owner = self._owners.get(table)
            if owner is not None and owner != name:
                raise self._collision(name, owner, table)
            with self._executor.cursor("provision", name) as cur:
                cur.execute(
                    f"INSERT INTO {METADATA_TABLE} (name, table_name) VALUES (%s, %s) "
                    "ON CONFLICT DO NOTHING",
                    (name, table),
                )
                cur.execute(f"SELECT name FROM {METADATA_TABLE} WHERE table_name = %s", (table,))
                row = cur.fetchone()
                if row is not None and row["name"] != name:
                    raise self._collision(name, row["name"], table)
                for statement in table_ddl(table):
                    cur.execute(statement)
            self._owners[table] = name
            self._tables[name] = table
        logger.info("collection_provisioned", backend="postgres", collection=name, table=table)
        return table

    @staticmethod
    def _collision(name: str, owner: str, table: str) -> InvalidConfigError:
        return InvalidConfigError(
            "collection",
            name,
            f"collection {name!r} maps to table {table!r}, already used by collection {owner!r}",
        )

    # -- catalog ------------------------------------------------------------

    def collection(self, name: str) -> PostgresCollection:
        self._require_pool()
        return PostgresCollection(name, self, self._executor)

    def create_collection(self, name: str, schema: Mapping[str, Any] | None = None) -> None:
        self.ensure_table(name)
        if schema is not None:
            with self._executor.cursor("create_collection", name) as cur:
                cur.execute(
                    f"UPDATE {METADATA_TABLE} SET schema = %s::jsonb, updated_at = now() WHERE name = %s",
                    (encode_json(dict(schema)), name),
                )
        logger.info("collection_created", backend="postgres", collection=name)

    def drop_collection(self, name: str) -> None:
        table = sanitize_table_name(name)
        with self._executor.cursor("drop_collection", name) as cur:
            cur.execute(f"SELECT name FROM {METADATA_TABLE} WHERE table_name = %s", (table,))
            row = cur.fetchone()
            if row is not None and row["name"] != name:
                raise self._collision(name, row["name"], table)
            cur.execute(f"DROP TABLE IF EXISTS {quote_ident(table)} CASCADE")
            cur.execute(f"DROP FUNCTION IF EXISTS {quote_ident(f'update_{table}_updated_at')}()")
            cur.execute(f"DELETE FROM {METADATA_TABLE} WHERE name = %s", (name,))
        with self._provision_lock:
            self._tables.pop(name, None)
            self._owners.pop(table, None)
        logger.info("collection_dropped", backend="postgres", collection=name, table=table)

    def list_collections(self) -> list[str]:
        with self._executor.cursor("list_collections") as cur:
            cur.execute(f"SELECT name FROM {METADATA_TABLE} ORDER BY name")
            return [row["name"] for row in cur.fetchall()]

    def begin_transaction(self) -> PostgresTransaction:
        return PostgresTransaction(self)


__all__ = [
    "PostgresAdapter",
    "PostgresCollection",
    "PostgresTransaction",
    "sanitize_table_name",
    "payload_expression",
    "index_ddl",
    "table_ddl",
]
