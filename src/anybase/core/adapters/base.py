"""Backend-neutral database contract.

Manifesto:
    Repositories program against ``Database``, ``Collection``,
    ``Transaction`` and ``Cursor`` and never import a driver. Each adapter
    translates the neutral filter/update vocabulary into its backend's
    native language and maps driver failures onto ``anybase.core.errors``.

Features:
    - Abstract ``Database`` lifecycle (connect/close/ping) and catalog operations
    - Abstract ``Collection`` CRUD, index and aggregate operations
    - ``Transaction`` context manager: commit on success, rollback on any exception
    - ``Cursor`` with pull mode (``next``/``decode``), ``all()`` and iteration
    - ``BufferedCursor`` for adapters that materialize results up front
    - ``run_in_transaction`` and ``ensure_system_indexes`` shared by both adapters

Guardrails:
    ❌ ``tx = db.begin_transaction()`` then returning early without commit/rollback
    ✅ ``with db.begin_transaction() as tx:`` or ``db.run_in_transaction(fn)``
    ❌ Sharing one ``Transaction`` across threads
    ✅ One transaction per call chain

Tags:
    anybase-core, database, abstract-base, adapter-pattern

Doc-Types:
    api-reference
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Mapping
from datetime import timedelta
from typing import Any, TypeVar

from anybase.core.errors import TransactionFailedError
from anybase.core.logging import get_logger
from anybase.core.types import DatabaseType, DeleteResult, FindOptions, Index, UpdateResult

logger = get_logger(__name__)

T = TypeVar("T")


# Default index set applied by ``Database.ensure_system_indexes``.
SYSTEM_INDEXES: dict[str, list[Index]] = {
    "users": [
        Index(name="email_1", keys={"email": 1}, unique=True),
        Index(name="username_1", keys={"username": 1}, unique=True, sparse=True),
        Index(name="created_at_-1", keys={"created_at": -1}),
    ],
    "sessions": [
        Index(name="token_1", keys={"token": 1}, unique=True),
        Index(name="user_id_1", keys={"user_id": 1}),
        Index(name="expires_at_1", keys={"expires_at": 1}, ttl=timedelta(0)),
    ],
    "access_keys": [
        Index(name="name_1", keys={"name": 1}, unique=True),
        Index(name="key_hash_1", keys={"key_hash": 1}, unique=True),
        Index(name="owner_id_1", keys={"owner_id": 1}),
    ],
    "collections": [
        Index(name="name_1", keys={"name": 1}, unique=True),
        Index(name="created_by_1", keys={"created_by": 1}),
    ],
    "audit_logs": [
        Index(name="user_id_1_created_at_-1", keys={"user_id": 1, "created_at": -1}),
        Index(name="action_1_created_at_-1", keys={"action": 1, "created_at": -1}),
    ],
}


def convert_document(document: Mapping[str, Any], into: Any = None) -> Any:
    """Convert a result document into ``into``.

    ``into`` may be ``None`` (plain ``dict``), a pydantic model class, or
    any callable accepting the document mapping.
    """
    if into is None:
        return dict(document)
    model_validate = getattr(into, "model_validate", None)
    if model_validate is not None:
        return model_validate(dict(document))
    return into(dict(document))


class Cursor(ABC):
    """
    Result cursor.

    Pull mode::

        while cursor.next():
            user = cursor.decode(User)

    Materialize mode::

        users = cursor.all(User)

    Cursors are also iterable and usable as context managers; ``close()``
    is idempotent.
    """

    @abstractmethod
    def next(self) -> bool:
        """Advance to the next document; ``False`` when exhausted."""
        ...

    @abstractmethod
    def current(self) -> dict[str, Any]:
        """The document the cursor is positioned on."""
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    def decode(self, into: Any = None) -> Any:
        """Decode the current document (see ``convert_document``)."""
        return convert_document(self.current(), into)

    def all(self, into: Any = None) -> list[Any]:
        """Drain the remaining documents and close the cursor."""
        try:
            results = []
            while self.next():
                results.append(self.decode(into))
            return results
        finally:
            self.close()

    def __iter__(self) -> Iterator[dict[str, Any]]:
        while self.next():
            yield self.decode()

    def __enter__(self) -> Cursor:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class BufferedCursor(Cursor):
    """Cursor over an already materialized list of documents."""

    def __init__(self, documents: list[dict[str, Any]]):
        self._documents = documents
        self._position = -1
        self._closed = False

    def next(self) -> bool:
        if self._closed or self._position + 1 >= len(self._documents):
            return False
        self._position += 1
        return True

    def current(self) -> dict[str, Any]:
        if self._position < 0 or self._position >= len(self._documents):
            raise IndexError("cursor is not positioned on a document")
        return self._documents[self._position]

    def close(self) -> None:
        self._closed = True
        self._documents = []
        self._position = -1


class Collection(ABC):
    """
    Handle on one logical collection.

    Owns no state beyond its name and a reference to the adapter (or
    transaction) it runs on.
    """

    def __init__(self, name: str):
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    @abstractmethod
    def insert_one(self, document: Mapping[str, Any], *, actor: str | None = None) -> Any:
        """Insert one document and return its ``ID``."""
        ...

    @abstractmethod
    def insert_many(
        self, documents: list[Mapping[str, Any]], *, actor: str | None = None
    ) -> list[Any]:
        ...

    @abstractmethod
    def find_one(self, filter: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Return the first matching document.

        Raises:
            NoDocumentsError: nothing matched.
        """
        ...

    @abstractmethod
    def find(
        self, filter: Mapping[str, Any] | None = None, options: FindOptions | None = None
    ) -> Cursor:
        ...

    @abstractmethod
    def update_one(
        self,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        upsert: bool = False,
        actor: str | None = None,
    ) -> UpdateResult:
        ...

    @abstractmethod
    def update_many(
        self,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        upsert: bool = False,
        actor: str | None = None,
    ) -> UpdateResult:
        ...

    @abstractmethod
    def delete_one(self, filter: Mapping[str, Any]) -> DeleteResult:
        ...

    @abstractmethod
    def delete_many(self, filter: Mapping[str, Any]) -> DeleteResult:
        ...

    @abstractmethod
    def count_documents(self, filter: Mapping[str, Any] | None = None) -> int:
        ...

    @abstractmethod
    def create_index(self, index: Index) -> str:
        """Create ``index`` and return its name."""
        ...

    @abstractmethod
    def drop_index(self, name: str) -> None:
        ...

    @abstractmethod
    def list_indexes(self) -> list[Index]:
        ...

    @abstractmethod
    def aggregate(self, pipeline: list[Mapping[str, Any]]) -> Cursor:
        ...


class Transaction(ABC):
    """
    All-or-nothing scope over a sequence of operations.

    Not safe for concurrent use. Every exit path must commit or roll back,
    which the context-manager form guarantees::

        with db.begin_transaction() as tx:
            tx.collection("orders").insert_one(order)
    """

    def __init__(self) -> None:
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise TransactionFailedError("transaction already committed or rolled back")

    @abstractmethod
    def collection(self, name: str) -> Collection:
        """Collection handle bound to this transaction."""
        ...

    @abstractmethod
    def commit(self) -> None:
        ...

    @abstractmethod
    def rollback(self) -> None:
        ...

    def __enter__(self) -> Transaction:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._closed:
            return
        if exc_type is None:
            self.commit()
        else:
            _rollback_quietly(self, exc_val)


def _rollback_quietly(tx: Transaction, error: BaseException | None) -> None:
    """Roll back after ``error``; a rollback failure is logged, never raised over it."""
    try:
        tx.rollback()
    except Exception as rollback_error:
        logger.error(
            "transaction_rollback_failed",
            error=str(rollback_error),
            original_error=repr(error),
        )


class Database(ABC):
    """
    Abstract database handle.

    One instance is selected at startup (see ``registry.init_database``)
    and shared by the whole process.
    """

    db_type: DatabaseType

    @property
    def type(self) -> DatabaseType:
        return self.db_type

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    def connect(self) -> None:
        """Open the connection pool; idempotent."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Release the pool; closing a closed handle is a no-op."""
        ...

    @abstractmethod
    def ping(self) -> None:
        """Round-trip to the server.

        Raises:
            NotConnectedError: the server is unreachable or ``connect()`` was never called.
        """
        ...

    @abstractmethod
    def collection(self, name: str) -> Collection:
        ...

    @abstractmethod
    def create_collection(self, name: str, schema: Mapping[str, Any] | None = None) -> None:
        ...

    @abstractmethod
    def drop_collection(self, name: str) -> None:
        ...

    @abstractmethod
    def list_collections(self) -> list[str]:
        ...

    @abstractmethod
    def begin_transaction(self) -> Transaction:
        ...

    def run_in_transaction(self, fn: Callable[[Transaction], T]) -> T:
        """Run ``fn(tx)`` inside a transaction.

        Commits when ``fn`` returns; rolls back when it raises anything,
        ``KeyboardInterrupt`` and other ``BaseException`` subclasses
        included, then re-raises.
        """
        tx = self.begin_transaction()
        try:
            result = fn(tx)
        except BaseException as exc:
            if not tx.closed:
                _rollback_quietly(tx, exc)
            raise
        if not tx.closed:
            tx.commit()
        return result

    def supports_ttl(self) -> bool:
        return True

    def ensure_system_indexes(self) -> list[str]:
        """Create the default indexes of the system collections.

        Backends without TTL support get the TTL indexes without expiry and
        a warning event.
        """
        created: list[str] = []
        for collection_name, indexes in SYSTEM_INDEXES.items():
            coll = self.collection(collection_name)
            for index in indexes:
                if index.ttl is not None and not self.supports_ttl():
                    logger.warning(
                        "ttl_index_downgraded",
                        backend=self.type.value,
                        collection=collection_name,
                        index=index.name,
                    )
                    index = Index(
                        name=index.name, keys=dict(index.keys), unique=index.unique, sparse=index.sparse
                    )
                created.append(f"{collection_name}.{coll.create_index(index)}")
        return created

    def __enter__(self) -> Database:
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


__all__ = [
    "SYSTEM_INDEXES",
    "convert_document",
    "Cursor",
    "BufferedCursor",
    "Collection",
    "Transaction",
    "Database",
]
