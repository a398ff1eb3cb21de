"""Anybase Core -- backend-neutral database primitives.

Manifesto:
    Repositories should not care whether documents live in MongoDB or in
    PostgreSQL JSONB rows. ``anybase.core`` owns the neutral vocabulary
    (identifiers, filters, updates, indexes, errors) and the adapters that
    translate it for each backend.

Architecture::

    Layer 1 -- Types & Errors
        types.py           DatabaseType, Index, FindOptions, result records
        errors.py          AnybaseError hierarchy (DatabaseError, ConfigError)
        ids.py             ID tagged union (ObjectId | UUID)
        operators.py       Filter/update vocabulary + validation

    Layer 2 -- Infrastructure
        settings.py        pydantic-settings configuration (ANYBASE_*)
        logging.py         structlog configuration
        deadline.py        Per-call deadlines (contextvars)

    Layer 3 -- Adapters
        adapters/          Database contract, MongoDB + PostgreSQL adapters,
                           registry and process-wide handle

Modules are imported explicitly (``from anybase.core.ids import ID``); this
package does not eagerly import the adapters or their drivers.

Tags:
    anybase-core, database, document-store, multi-backend

Doc-Types:
    package-overview, architecture-map, module-index
"""
