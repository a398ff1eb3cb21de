"""Backend kinds and the neutral value types shared by both adapters."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any


class DatabaseType(str, Enum):
    """Supported database backends."""

    MONGODB = "mongodb"
    POSTGRES = "postgres"


# Layer-managed fields. Only ``_id`` may be supplied by callers.
SYSTEM_FIELDS: frozenset[str] = frozenset(
    {
        "_id",
        "_created_at",
        "_updated_at",
        "_version",
        "_deleted_at",
        "_created_by",
        "_updated_by",
    }
)

# Collections provisioned eagerly at connect.
SYSTEM_COLLECTIONS: tuple[str, ...] = (
    "users",
    "sessions",
    "access_keys",
    "audit_logs",
    "settings",
    "collections",
    "ai_providers",
    "rag_configs",
    "embedding_jobs",
)


@dataclass
class Index:
    """
    Backend-neutral index descriptor.

    ``keys`` preserves insertion order: ``{"a": 1, "b": -1}`` is a compound
    index ascending on ``a`` then descending on ``b``. ``partial`` is set
    only on descriptors read back from a definition the relational adapter
    could not fully parse.
    """

    name: str = ""
    keys: dict[str, int] = field(default_factory=dict)
    unique: bool = False
    sparse: bool = False
    ttl: timedelta | None = None
    partial: bool = False

    def default_name(self) -> str:
        """Name in the document-store convention: ``email_1``, ``a_1_b_-1``."""
        return "_".join(f"{key}_{direction}" for key, direction in self.keys.items())

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "name": self.name,
            "keys": dict(self.keys),
            "unique": self.unique,
            "sparse": self.sparse,
        }
        if self.ttl is not None:
            result["ttl_seconds"] = int(self.ttl.total_seconds())
        if self.partial:
            result["partial"] = True
        return result


@dataclass
class FindOptions:
    """
    Options for ``Collection.find``.

    ``sort`` is an ordered mapping of field to direction (``1``/``-1``);
    ``projection`` maps fields to ``1`` (include) or ``0`` (exclude).
    """

    limit: int | None = None
    skip: int | None = None
    sort: dict[str, int] | None = None
    projection: dict[str, int] | None = None


@dataclass
class UpdateResult:
    matched_count: int = 0
    modified_count: int = 0
    upserted_count: int = 0
    upserted_id: Any = None


@dataclass
class DeleteResult:
    deleted_count: int = 0


__all__ = [
    "DatabaseType",
    "SYSTEM_FIELDS",
    "SYSTEM_COLLECTIONS",
    "Index",
    "FindOptions",
    "UpdateResult",
    "DeleteResult",
]
