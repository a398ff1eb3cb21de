"""MongoDB adapter.

The reference backend: the neutral vocabulary *is* MongoDB's query
language, so filters pass through after validation and identifier
conversion. What MongoDB lacks is triggers, so this adapter stamps
``_created_at``/``_updated_at``/``_version`` itself on every write. Updates are
sent as aggregation pipelines so the server derives the new stamps from
the stored ones.

Features:
    - ``pymongo.MongoClient`` pool sized from ``DatabaseSettings``
    - ``ID``/hex ``_id`` values converted to ``ObjectId`` in filters
    - Explicit versioning: every update bumps ``_version`` and moves ``_updated_at``
      strictly forward (``max($$NOW, previous + 1ms)``)
    - Identifiers inside the payload read back as canonical text, as on PostgreSQL
    - Native upserts, TTL indexes and aggregation pipelines
    - Transactions over client sessions (requires a replica set)
    - Driver errors mapped onto the anybase taxonomy at every call

Tags:
    anybase-core, database, mongodb, pymongo, adapter

Doc-Types:
    api-reference
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import pymongo
from bson import ObjectId
from pymongo import errors as mongo_errors

from anybase.core import deadline
from anybase.core.errors import (
    DatabaseError,
    DuplicateKeyError,
    NoDocumentsError,
    NotConnectedError,
    OperationTimeoutError,
    TransactionFailedError,
)
from anybase.core.ids import ID
from anybase.core.logging import get_logger
from anybase.core.operators import normalize_update, push_values, validate_filter
from anybase.core.types import SYSTEM_FIELDS, DatabaseType, DeleteResult, FindOptions, Index, UpdateResult

from .base import Collection, Cursor, Database, Transaction

if TYPE_CHECKING:
    from pymongo.client_session import ClientSession

    from anybase.core.settings import DatabaseSettings

logger = get_logger(__name__)

_DUPLICATE_KEY_CODES = {11000, 11001, 12582}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def _driver_errors(operation: str, collection: str | None = None) -> Iterator[None]:
    """Apply the active deadline and map pymongo failures onto the taxonomy."""
    left = deadline.check(operation)
    try:
        if left is None:
            yield
        else:
            with pymongo.timeout(left):
                yield
    except mongo_errors.DuplicateKeyError as exc:
        raise DuplicateKeyError(
            str(exc), key=(exc.details or {}).get("keyValue"), cause=exc
        ).with_context(backend="mongodb", collection=collection, operation=operation) from exc
    except mongo_errors.BulkWriteError as exc:
        write_errors = exc.details.get("writeErrors", [])
        if any(err.get("code") in _DUPLICATE_KEY_CODES for err in write_errors):
            key = write_errors[0].get("keyValue") if write_errors else None
            raise DuplicateKeyError(str(exc), key=key, cause=exc).with_context(
                backend="mongodb", collection=collection, operation=operation
            ) from exc
        raise DatabaseError(str(exc), cause=exc).with_context(
            backend="mongodb", collection=collection, operation=operation
        ) from exc
    except mongo_errors.PyMongoError as exc:
        raise _map_error(exc, operation, collection) from exc


def _map_error(exc: mongo_errors.PyMongoError, operation: str, collection: str | None) -> DatabaseError:
    context = {"backend": "mongodb", "collection": collection, "operation": operation}
    if exc.timeout and deadline.remaining() is not None:
        return OperationTimeoutError(f"{operation} exceeded its deadline: {exc}", cause=exc).with_context(**context)
    if isinstance(exc, mongo_errors.ConnectionFailure):
        return NotConnectedError(f"mongodb unreachable: {exc}", cause=exc).with_context(**context)
    if isinstance(exc, mongo_errors.OperationFailure) and exc.code in _DUPLICATE_KEY_CODES:
        return DuplicateKeyError(str(exc), cause=exc).with_context(**context)
    return DatabaseError(str(exc), cause=exc).with_context(**context)


# =============================================================================
# VALUE CONVERSION
# =============================================================================


def _to_bson(value: Any) -> Any:
    """Replace ``ID`` values (at any depth) with their native identifiers."""
    if isinstance(value, ID):
        return value.to_native()
    if isinstance(value, Mapping):
        return {k: _to_bson(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_bson(v) for v in value]
    return value


def _native_id(value: Any) -> Any:
    if isinstance(value, str):
        return ID.parse(value, DatabaseType.MONGODB).to_native()
    if isinstance(value, ID):
        return value.to_native()
    return value


def _convert_id_condition(condition: Any) -> Any:
    if isinstance(condition, Mapping) and condition and all(str(k).startswith("$") for k in condition):
        converted: dict[str, Any] = {}
        for op, operand in condition.items():
            if op in ("$in", "$nin"):
                converted[op] = [_native_id(v) for v in operand]
            elif op == "$not":
                converted[op] = _convert_id_condition(operand)
            elif op in ("$eq", "$ne", "$gt", "$gte", "$lt", "$lte"):
                converted[op] = _native_id(operand)
            else:
                converted[op] = operand
        return converted
    return _native_id(condition)


def prepare_filter(filter: Mapping[str, Any] | None) -> dict[str, Any]:
    """Validate a neutral filter and convert it for pymongo."""
    validated = validate_filter(filter)
    prepared: dict[str, Any] = {}
    for key, value in validated.items():
        if key in ("$and", "$or"):
            prepared[key] = [prepare_filter(clause) for clause in value]
        elif key == "_id":
            prepared[key] = _convert_id_condition(value)
        else:
            prepared[key] = _to_bson(value)
    return prepared


def _text_ids(value: Any) -> Any:
    if isinstance(value, (ObjectId, uuid.UUID)):
        return str(value)
    if isinstance(value, Mapping):
        return {k: _text_ids(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_text_ids(v) for v in value]
    return value


def _from_bson(document: Mapping[str, Any]) -> dict[str, Any]:
    """Top-level ``_id`` as an ``ID``; identifiers inside the payload as canonical text."""
    result = {k: (v if k == "_id" else _text_ids(v)) for k, v in document.items()}
    if isinstance(result.get("_id"), (ObjectId, uuid.UUID)):
        result["_id"] = ID.from_native(result["_id"])
    return result


def _field_ref(field: str) -> str:
    return f"${field}"


def _array_or_empty(field: str) -> dict[str, Any]:
    return {"$ifNull": [_field_ref(field), []]}


def update_pipeline(update: Mapping[str, Any], upsert: bool = False, actor: str | None = None) -> list[dict[str, Any]]:
    """Translate a neutral update into an aggregation-pipeline update.

    The pipeline form lets the server stamp ``_updated_at`` from the
    document's previous value: ``max($$NOW, previous + 1ms)``, so two updates
    inside one millisecond still move the timestamp forward. Operands are
    wrapped in ``$literal`` so payload strings starting with ``$`` stay data.
    """
    stages: list[dict[str, Any]] = []
    for op, fields in normalize_update(update).items():
        fields = {field: _to_bson(value) for field, value in fields.items()}
        if op == "$set":
            stages.append({"$set": {field: {"$literal": value} for field, value in fields.items()}})
        elif op == "$unset":
            stages.append({"$unset": list(fields)})
        elif op == "$inc":
            stages.append(
                {"$set": {field: {"$add": [{"$ifNull": [_field_ref(field), 0]}, amount]} for field, amount in fields.items()}}
            )
        elif op == "$push":
            stages.append(
                {
                    "$set": {
                        field: {"$concatArrays": [_array_or_empty(field), {"$literal": push_values(value)}]}
                        for field, value in fields.items()
                    }
                }
            )
        elif op == "$addToSet":
            for field, value in fields.items():
                for item in push_values(value):
                    stages.append(
                        {
                            "$set": {
                                field: {
                                    "$cond": [
                                        {"$in": [{"$literal": item}, _array_or_empty(field)]},
                                        _array_or_empty(field),
                                        {"$concatArrays": [_array_or_empty(field), {"$literal": [item]}]},
                                    ]
                                }
                            }
                        }
                    )
        elif op == "$pull":
            stages.append(
                {
                    "$set": {
                        field: {
                            "$cond": [
                                {"$isArray": _field_ref(field)},
                                {"$filter": {"input": _field_ref(field), "cond": {"$ne": ["$$this", {"$literal": value}]}}},
                                _field_ref(field),
                            ]
                        }
                    }
                }
            )

    stamps: dict[str, Any] = {
        "_updated_at": {"$max": ["$$NOW", {"$add": ["$_updated_at", 1]}]},
        "_version": {"$add": [{"$ifNull": ["$_version", 0]}, 1]},
    }
    if actor is not None:
        stamps["_updated_by"] = {"$literal": actor}
    if upsert:
        stamps["_created_at"] = {"$ifNull": ["$_created_at", "$$NOW"]}
        if actor is not None:
            stamps["_created_by"] = {"$ifNull": ["$_created_by", {"$literal": actor}]}
    stages.append({"$set": stamps})
    return stages


# =============================================================================
# CURSOR
# =============================================================================


class MongoCursor(Cursor):
    """Pull-mode wrapper over a pymongo cursor."""

    def __init__(self, cursor: Any, collection: str):
        self._cursor = cursor
        self._collection = collection
        self._current: dict[str, Any] | None = None

    def next(self) -> bool:
        with _driver_errors("cursor.next", self._collection):
            try:
                document = next(self._cursor)
            except StopIteration:
                self._current = None
                return False
        self._current = _from_bson(document)
        return True

    def current(self) -> dict[str, Any]:
        if self._current is None:
            raise IndexError("cursor is not positioned on a document")
        return self._current

    def close(self) -> None:
        self._cursor.close()
        self._current = None


# =============================================================================
# COLLECTION
# =============================================================================


class MongoCollection(Collection):
    """Collection handle; bound to a client session inside transactions."""

    def __init__(self, name: str, collection: Any, session: ClientSession | None = None):
        super().__init__(name)
        self._collection = collection
        self._session = session

    def _prepare_insert(self, document: Mapping[str, Any], actor: str | None, now: datetime) -> dict[str, Any]:
        doc = {k: _to_bson(v) for k, v in document.items() if k not in SYSTEM_FIELDS}
        if document.get("_id") not in (None, ""):
            identifier = ID.coerce(document["_id"], DatabaseType.MONGODB)
            if not identifier.is_zero:
                doc["_id"] = identifier.to_native()
        doc.setdefault("_id", ObjectId())
        doc["_created_at"] = now
        doc["_updated_at"] = now
        doc["_version"] = 1
        if actor is not None:
            doc["_created_by"] = actor
            doc["_updated_by"] = actor
        return doc

    def insert_one(self, document: Mapping[str, Any], *, actor: str | None = None) -> ID:
        doc = self._prepare_insert(document, actor, _utcnow())
        with _driver_errors("insert_one", self.name):
            result = self._collection.insert_one(doc, session=self._session)
        return ID.from_native(result.inserted_id)

    def insert_many(self, documents: list[Mapping[str, Any]], *, actor: str | None = None) -> list[ID]:
        if not documents:
            return []
        now = _utcnow()
        docs = [self._prepare_insert(document, actor, now) for document in documents]
        with _driver_errors("insert_many", self.name):
            result = self._collection.insert_many(docs, session=self._session)
        return [ID.from_native(inserted) for inserted in result.inserted_ids]

    def find_one(self, filter: Mapping[str, Any] | None = None) -> dict[str, Any]:
        query = prepare_filter(filter)
        with _driver_errors("find_one", self.name):
            document = self._collection.find_one(query, session=self._session)
        if document is None:
            raise NoDocumentsError().with_context(backend="mongodb", collection=self.name, operation="find_one")
        return _from_bson(document)

    def find(self, filter: Mapping[str, Any] | None = None, options: FindOptions | None = None) -> MongoCursor:
        query = prepare_filter(filter)
        options = options or FindOptions()
        with _driver_errors("find", self.name):
            cursor = self._collection.find(query, options.projection, session=self._session)
            if options.sort:
                cursor = cursor.sort(list(options.sort.items()))
            if options.skip:
                cursor = cursor.skip(options.skip)
            if options.limit:
                cursor = cursor.limit(options.limit)
        return MongoCursor(cursor, self.name)

    @staticmethod
    def _update_result(result: Any) -> UpdateResult:
        upserted = result.upserted_id
        return UpdateResult(
            matched_count=result.matched_count,
            modified_count=result.modified_count,
            upserted_count=1 if upserted is not None else 0,
            upserted_id=ID.from_native(upserted) if upserted is not None else None,
        )

    def update_one(
        self,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        upsert: bool = False,
        actor: str | None = None,
    ) -> UpdateResult:
        query = prepare_filter(filter)
        pipeline = update_pipeline(update, upsert, actor)
        with _driver_errors("update_one", self.name):
            result = self._collection.update_one(query, pipeline, upsert=upsert, session=self._session)
        return self._update_result(result)

    def update_many(
        self,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        upsert: bool = False,
        actor: str | None = None,
    ) -> UpdateResult:
        query = prepare_filter(filter)
        pipeline = update_pipeline(update, upsert, actor)
        with _driver_errors("update_many", self.name):
            result = self._collection.update_many(query, pipeline, upsert=upsert, session=self._session)
        return self._update_result(result)

    def delete_one(self, filter: Mapping[str, Any]) -> DeleteResult:
        query = prepare_filter(filter)
        with _driver_errors("delete_one", self.name):
            result = self._collection.delete_one(query, session=self._session)
        return DeleteResult(deleted_count=result.deleted_count)

    def delete_many(self, filter: Mapping[str, Any]) -> DeleteResult:
        query = prepare_filter(filter)
        with _driver_errors("delete_many", self.name):
            result = self._collection.delete_many(query, session=self._session)
        return DeleteResult(deleted_count=result.deleted_count)

    def count_documents(self, filter: Mapping[str, Any] | None = None) -> int:
        query = prepare_filter(filter)
        with _driver_errors("count_documents", self.name):
            return self._collection.count_documents(query, session=self._session)

    def create_index(self, index: Index) -> str:
        name = index.name or index.default_name()
        kwargs: dict[str, Any] = {"name": name}
        if index.unique:
            kwargs["unique"] = True
        if index.sparse:
            kwargs["sparse"] = True
        if index.ttl is not None:
            kwargs["expireAfterSeconds"] = int(index.ttl.total_seconds())
        with _driver_errors("create_index", self.name):
            created = self._collection.create_index(
                list(index.keys.items()), session=self._session, **kwargs
            )
        logger.info("index_created", backend="mongodb", collection=self.name, index=created)
        return created

    def drop_index(self, name: str) -> None:
        with _driver_errors("drop_index", self.name):
            self._collection.drop_index(name, session=self._session)
        logger.info("index_dropped", backend="mongodb", collection=self.name, index=name)

    def list_indexes(self) -> list[Index]:
        with _driver_errors("list_indexes", self.name):
            specs = list(self._collection.list_indexes(session=self._session))
        indexes = []
        for spec in specs:
            ttl = spec.get("expireAfterSeconds")
            indexes.append(
                Index(
                    name=spec["name"],
                    keys={
                        field: int(direction) if isinstance(direction, (int, float)) else direction
                        for field, direction in spec["key"].items()
                    },
                    unique=bool(spec.get("unique", False)),
                    sparse=bool(spec.get("sparse", False)),
                    ttl=timedelta(seconds=ttl) if ttl is not None else None,
                )
            )
        return indexes

    def aggregate(self, pipeline: list[Mapping[str, Any]]) -> MongoCursor:
        stages = []
        for stage in pipeline:
            if "$match" in stage:
                stages.append({**stage, "$match": prepare_filter(stage["$match"])})
            else:
                stages.append(_to_bson(stage))
        with _driver_errors("aggregate", self.name):
            cursor = self._collection.aggregate(stages, session=self._session)
        return MongoCursor(cursor, self.name)


# =============================================================================
# TRANSACTION
# =============================================================================


class MongoTransaction(Transaction):
    """Multi-document transaction over one client session."""

    def __init__(self, database: Any, session: ClientSession):
        super().__init__()
        self._database = database
        self._session = session

    def collection(self, name: str) -> MongoCollection:
        self._ensure_open()
        return MongoCollection(name, self._database[name], session=self._session)

    def commit(self) -> None:
        self._ensure_open()
        try:
            with _driver_errors("commit"):
                self._session.commit_transaction()
        except DatabaseError as exc:
            raise TransactionFailedError(f"commit failed: {exc.message}", cause=exc).with_context(
                backend="mongodb", operation="commit"
            ) from exc
        finally:
            self._finish()

    def rollback(self) -> None:
        self._ensure_open()
        try:
            with _driver_errors("rollback"):
                self._session.abort_transaction()
        except DatabaseError as exc:
            raise TransactionFailedError(f"rollback failed: {exc.message}", cause=exc).with_context(
                backend="mongodb", operation="rollback"
            ) from exc
        finally:
            self._finish()
        logger.info("transaction_rolled_back", backend="mongodb")

    def _finish(self) -> None:
        self._closed = True
        self._session.end_session()


# =============================================================================
# ADAPTER
# =============================================================================


class MongoAdapter(Database):
    """
    MongoDB implementation of the ``Database`` contract.

    Example:
        >>> db = MongoAdapter(DatabaseSettings(uri="mongodb://localhost:27017"))
        >>> db.connect()
        >>> db.collection("users").insert_one({"email": "a@example.com"})
    """

    db_type = DatabaseType.MONGODB

    def __init__(self, config: DatabaseSettings):
        self._config = config
        self._client: pymongo.MongoClient | None = None
        self._database: Any = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    def connect(self) -> None:
        """Create the client and verify the server answers a ping."""
        if self._client is not None:
            return
        config = self._config
        options: dict[str, Any] = {
            "maxPoolSize": config.max_pool_size,
            "minPoolSize": config.min_pool_size,
            "maxIdleTimeMS": int(config.max_idle_time * 1000),
            "connectTimeoutMS": int(config.connect_timeout * 1000),
            "waitQueueTimeoutMS": int(config.connect_timeout * 1000),
            "serverSelectionTimeoutMS": int(config.server_selection_timeout * 1000),
            "heartbeatFrequencyMS": int(config.heartbeat_interval * 1000),
            "retryWrites": config.retry_writes,
            "tz_aware": True,
            "uuidRepresentation": "standard",
        }
        if config.replica_set:
            options["replicaset"] = config.replica_set

        client = pymongo.MongoClient(config.uri, **options)
        try:
            with _driver_errors("connect"):
                client.admin.command("ping")
        except DatabaseError:
            client.close()
            raise
        self._client = client
        self._database = client[config.database]
        logger.info("database_connected", backend="mongodb", uri=config.redacted_uri(), database=config.database)

    def close(self) -> None:
        if self._client is None:
            return
        self._client.close()
        self._client = None
        self._database = None
        logger.info("database_closed", backend="mongodb")

    def _require_client(self) -> pymongo.MongoClient:
        if self._client is None:
            raise NotConnectedError().with_context(backend="mongodb")
        return self._client

    def ping(self) -> None:
        client = self._require_client()
        with _driver_errors("ping"):
            client.admin.command("ping")

    def collection(self, name: str) -> MongoCollection:
        self._require_client()
        return MongoCollection(name, self._database[name])

    def create_collection(self, name: str, schema: Mapping[str, Any] | None = None) -> None:
        self._require_client()
        kwargs: dict[str, Any] = {}
        if schema:
            kwargs["validator"] = {"$jsonSchema": dict(schema)}
        try:
            with _driver_errors("create_collection", name):
                self._database.create_collection(name, **kwargs)
        except DatabaseError as exc:
            if not isinstance(exc.cause, mongo_errors.CollectionInvalid):
                raise
            logger.debug("collection_exists", backend="mongodb", collection=name)
            return
        logger.info("collection_created", backend="mongodb", collection=name)

    def drop_collection(self, name: str) -> None:
        self._require_client()
        with _driver_errors("drop_collection", name):
            self._database.drop_collection(name)
        logger.info("collection_dropped", backend="mongodb", collection=name)

    def list_collections(self) -> list[str]:
        self._require_client()
        with _driver_errors("list_collections"):
            return sorted(self._database.list_collection_names())

    def begin_transaction(self) -> MongoTransaction:
        client = self._require_client()
        with _driver_errors("begin_transaction"):
            session = client.start_session()
        try:
            with _driver_errors("begin_transaction"):
                session.start_transaction()
        except DatabaseError as exc:
            session.end_session()
            raise TransactionFailedError(f"begin failed: {exc.message}", cause=exc).with_context(
                backend="mongodb", operation="begin_transaction"
            ) from exc
        return MongoTransaction(self._database, session)


__all__ = [
    "MongoAdapter",
    "MongoCollection",
    "MongoCursor",
    "MongoTransaction",
    "prepare_filter",
    "update_pipeline",
]
