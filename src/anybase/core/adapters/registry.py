"""Adapter registry and the process-wide database handle.

Manifesto:
    The backend is chosen once, at startup, from configuration. Consumers
    never hard-code adapter classes: the registry maps backend names (and
    their aliases) to adapter classes, ``init_database()`` selects,
    connects and stores one shared handle, and ``get_database()`` hands it
    out.

Features:
    - ``AdapterRegistry`` with pre-registered ``mongodb``/``mongo`` and
      ``postgres``/``postgresql``
    - ``register()`` for additional adapters
    - ``get_adapter()`` factory: settings -> unconnected adapter
    - ``init_database()`` / ``get_database()`` / ``close_database()``

Tags:
    anybase-core, database, registry, factory, singleton

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from anybase.core.errors import ConfigError, NotConnectedError
from anybase.core.logging import get_logger
from anybase.core.types import DatabaseType

from .base import Database
from .mongodb import MongoAdapter
from .postgresql import PostgresAdapter

if TYPE_CHECKING:
    from anybase.core.settings import AnybaseSettings, DatabaseSettings

logger = get_logger(__name__)


class AdapterRegistry:
    """
    Registry for database adapter classes.

    Pre-registered adapters:
    - ``mongodb`` / ``mongo`` — :class:`MongoAdapter`
    - ``postgres`` / ``postgresql`` — :class:`PostgresAdapter`
    """

    def __init__(self):
        self._factories: dict[str, type[Database]] = {}
        self._register_defaults()

    def _register_defaults(self) -> None:
        self._factories["mongodb"] = MongoAdapter
        self._factories["mongo"] = MongoAdapter  # Alias
        self._factories["postgres"] = PostgresAdapter
        self._factories["postgresql"] = PostgresAdapter  # Alias

    def register(self, name: str, adapter_class: type[Database]) -> None:
        """Register an adapter class."""
        self._factories[name.lower()] = adapter_class

    def create(self, name: str, config: DatabaseSettings) -> Database:
        """Create an (unconnected) adapter by name."""
        name = name.lower()
        if name not in self._factories:
            raise ConfigError(f"Unknown database adapter: {name}")
        return self._factories[name](config)

    def list_adapters(self) -> list[str]:
        return sorted(self._factories.keys())


# Global registry
adapter_registry = AdapterRegistry()


def get_adapter(config: DatabaseSettings, db_type: DatabaseType | str | None = None) -> Database:
    """
    Build the adapter for ``config`` without connecting it.

    Usage:
        adapter = get_adapter(DatabaseSettings(uri="postgres://localhost/anybase"))
        adapter = get_adapter(config, "mongo")
    """
    if db_type is None:
        db_type = config.backend
    name = db_type.value if isinstance(db_type, DatabaseType) else db_type
    return adapter_registry.create(name, config)


_database: Database | None = None
_lock = threading.Lock()


def init_database(settings: AnybaseSettings | None = None) -> Database:
    """Select, connect and store the process-wide database handle.

    Settings are read from the environment when not given. Calling it
    again returns the already-initialized handle.
    """
    global _database
    with _lock:
        if _database is not None:
            return _database
        if settings is None:
            from anybase.core.settings import load_settings

            settings = load_settings()
        database = get_adapter(settings.database)
        database.connect()
        _database = database
    logger.info("database_initialized", backend=database.type.value)
    return database


def get_database() -> Database:
    """The process-wide handle.

    Raises:
        NotConnectedError: ``init_database()`` has not run.
    """
    if _database is None:
        raise NotConnectedError("database not initialized; call init_database() first")
    return _database


def close_database() -> None:
    """Close and forget the process-wide handle (no-op when not initialized)."""
    global _database
    with _lock:
        database, _database = _database, None
    if database is not None:
        database.close()


__all__ = [
    "AdapterRegistry",
    "adapter_registry",
    "get_adapter",
    "init_database",
    "get_database",
    "close_database",
]
