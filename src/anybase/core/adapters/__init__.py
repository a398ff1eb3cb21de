"""Database adapters -- one document contract for MongoDB and PostgreSQL.

Manifesto:
    The same repository code must run on MongoDB and on PostgreSQL.
    MongoDB speaks the neutral vocabulary natively; PostgreSQL stores each
    collection as a table of JSONB documents with trigger-maintained
    versioning. Consumers pick neither: ``init_database()`` reads the
    configured URI and hands back a ``Database``.

Architecture::

    Database / Collection / Transaction / Cursor (base.py)
        |-- MongoAdapter             pymongo (mongodb.py)
        |-- PostgresAdapter          psycopg2 + JSONB (postgresql.py)
                jsonb.py             filter/update -> SQL translation
                introspection.py     pg_indexes definition -> Index

    AdapterRegistry (registry.py)    name -> adapter class, process handle

Modules
-------
base            Abstract contract + default system indexes
mongodb         MongoDB adapter
postgresql      PostgreSQL JSONB adapter, table/index DDL
jsonb           Neutral vocabulary -> parameterized SQL
introspection   Heuristic index definition parser
registry        AdapterRegistry, get_adapter(), init/get/close_database()

Guardrails:
    ❌ ``MongoAdapter(config)`` hard-coded in application code
    ✅ ``db = init_database()`` then ``get_database()`` elsewhere
    ❌ Catching ``pymongo.errors.DuplicateKeyError`` / ``psycopg2.IntegrityError``
    ✅ Catching ``anybase.core.errors.DuplicateKeyError``

Tags:
    anybase-core, database, adapters, mongodb, postgresql, jsonb,
    registry-pattern

Doc-Types:
    package-overview, architecture-map, module-index
"""

from anybase.core.types import (
    SYSTEM_COLLECTIONS,
    SYSTEM_FIELDS,
    DatabaseType,
    DeleteResult,
    FindOptions,
    Index,
    UpdateResult,
)

from .base import SYSTEM_INDEXES, BufferedCursor, Collection, Cursor, Database, Transaction
from .mongodb import MongoAdapter
from .postgresql import PostgresAdapter
from .registry import (
    AdapterRegistry,
    adapter_registry,
    close_database,
    get_adapter,
    get_database,
    init_database,
)

__all__ = [
    # Types
    "DatabaseType",
    "Index",
    "FindOptions",
    "UpdateResult",
    "DeleteResult",
    "SYSTEM_FIELDS",
    "SYSTEM_COLLECTIONS",
    "SYSTEM_INDEXES",
    # Contract
    "Database",
    "Collection",
    "Transaction",
    "Cursor",
    "BufferedCursor",
    # Adapters
    "MongoAdapter",
    "PostgresAdapter",
    # Registry
    "AdapterRegistry",
    "adapter_registry",
    "get_adapter",
    "init_database",
    "get_database",
    "close_database",
]
