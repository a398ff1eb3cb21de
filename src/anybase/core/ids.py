"""Portable document identifiers.

MongoDB keys documents by 12-byte ``ObjectId`` values, PostgreSQL tables by
``UUID`` primary keys. ``ID`` is a closed tagged union over the two so
repositories, REST handlers and JSON payloads never care which backend
minted an identifier.

Examples:
    >>> oid = ID.parse("65a1f0c2e4b0a1b2c3d4e5f6", DatabaseType.MONGODB)
    >>> oid.type
    <IDType.OBJECT_ID: 'objectid'>
    >>> str(ID.parse(str(oid))) == str(oid)
    True
    >>> ID.zero().to_json() is None
    True

Tags:
    identifiers, objectid, uuid, json, pydantic, anybase-core

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import GetCoreSchemaHandler
from pydantic_core import core_schema

from anybase.core.errors import InvalidIDError
from anybase.core.types import DatabaseType

_ZERO_OBJECT_ID = ObjectId(b"\x00" * 12)


class IDType(str, Enum):
    """Which native identifier an ``ID`` wraps."""

    OBJECT_ID = "objectid"
    UUID = "uuid"


@dataclass(frozen=True)
class ID:
    """A document identifier holding either an ``ObjectId`` or a ``UUID``.

    The zero identifier holds neither (``type`` and ``value`` are ``None``).
    A nil UUID and the all-zero ObjectId normalise to it, so ``==`` stays
    total: two identifiers are equal only when tags and values match.
    """

    type: IDType | None = None
    value: ObjectId | uuid.UUID | None = None

    # -- construction ------------------------------------------------------

    @classmethod
    def zero(cls) -> ID:
        return cls()

    @classmethod
    def new(cls, backend: DatabaseType | str | None = None) -> ID:
        """Mint a fresh identifier in the backend's native format."""
        if _backend(backend) is DatabaseType.MONGODB:
            return cls(IDType.OBJECT_ID, ObjectId())
        return cls(IDType.UUID, uuid.uuid4())

    @classmethod
    def from_native(cls, value: Any) -> ID:
        """Wrap an ``ObjectId``, ``UUID`` or ``ID`` value.

        Raises:
            InvalidIDError: ``value`` is not a native identifier.
        """
        if value is None:
            return cls()
        if isinstance(value, ID):
            return value
        if isinstance(value, ObjectId):
            if value == _ZERO_OBJECT_ID:
                return cls()
            return cls(IDType.OBJECT_ID, value)
        if isinstance(value, uuid.UUID):
            if value.int == 0:
                return cls()
            return cls(IDType.UUID, value)
        raise InvalidIDError(f"cannot convert {type(value).__name__} to an ID", value=value)

    @classmethod
    def parse(cls, text: str, backend: DatabaseType | str | None = None) -> ID:
        """Parse canonical identifier text.

        With ``backend="mongodb"`` only 24-hex ObjectId text is accepted,
        with ``backend="postgres"`` only UUID text. Without a backend UUID
        is tried first, then ObjectId. ``""`` parses to the zero identifier.

        Raises:
            InvalidIDError: The text matches neither format.
        """
        if text == "":
            return cls()
        kind = _backend(backend)
        if kind is DatabaseType.MONGODB:
            return cls.from_native(_parse_object_id(text))
        if kind is DatabaseType.POSTGRES:
            return cls.from_native(_parse_uuid(text))
        try:
            return cls.from_native(_parse_uuid(text))
        except InvalidIDError:
            return cls.from_native(_parse_object_id(text))

    @classmethod
    def coerce(cls, value: Any, backend: DatabaseType | str | None = None) -> ID:
        """Accept an ``ID``, a native identifier, or identifier text."""
        if isinstance(value, str):
            return cls.parse(value, backend)
        return cls.from_native(value)

    # -- views -------------------------------------------------------------

    @property
    def is_zero(self) -> bool:
        return self.type is None

    def __str__(self) -> str:
        if self.value is None:
            return ""
        return str(self.value)

    def __repr__(self) -> str:
        if self.is_zero:
            return "ID()"
        return f"ID({self.type.value}, {str(self)!r})"

    def to_bytes(self) -> bytes:
        """Raw 12 (ObjectId) or 16 (UUID) bytes; empty for the zero identifier."""
        if isinstance(self.value, ObjectId):
            return self.value.binary
        if isinstance(self.value, uuid.UUID):
            return self.value.bytes
        return b""

    def to_native(self) -> ObjectId | uuid.UUID | None:
        return self.value

    def equals(self, other: Any) -> bool:
        return self == other

    # -- JSON --------------------------------------------------------------

    def to_json(self) -> str | None:
        """JSON value: the canonical string, or ``None`` (``null``) when zero."""
        if self.is_zero:
            return None
        return str(self)

    @classmethod
    def from_json(cls, value: Any) -> ID:
        """Inverse of ``to_json``; ``null`` and ``""`` give the zero identifier."""
        if value is None:
            return cls()
        if not isinstance(value, str):
            raise InvalidIDError(f"ID must be a JSON string, got {type(value).__name__}", value=value)
        return cls.parse(value)

    @classmethod
    def __get_pydantic_core_schema__(
        cls, source_type: Any, handler: GetCoreSchemaHandler
    ) -> core_schema.CoreSchema:
        return core_schema.no_info_plain_validator_function(
            _validate_for_pydantic,
            serialization=core_schema.plain_serializer_function_ser_schema(
                lambda value: value.to_json()
            ),
        )


def _validate_for_pydantic(value: Any) -> ID:
    try:
        if isinstance(value, str) or value is None:
            return ID.from_json(value)
        return ID.from_native(value)
    except InvalidIDError as exc:
        # pydantic reports ValueError as a validation failure
        raise ValueError(exc.message) from exc


def _backend(backend: DatabaseType | str | None) -> DatabaseType | None:
    if backend is None or isinstance(backend, DatabaseType):
        return backend
    name = backend.lower()
    if name in ("mongodb", "mongo"):
        return DatabaseType.MONGODB
    if name in ("postgres", "postgresql"):
        return DatabaseType.POSTGRES
    return None


def _parse_object_id(text: str) -> ObjectId:
    if len(text) != 24:
        raise InvalidIDError(f"invalid ObjectId: {text!r}", value=text)
    try:
        return ObjectId(text)
    except (InvalidId, TypeError) as exc:
        raise InvalidIDError(f"invalid ObjectId: {text!r}", value=text, cause=exc) from exc


def _parse_uuid(text: str) -> uuid.UUID:
    try:
        return uuid.UUID(text)
    except ValueError as exc:
        raise InvalidIDError(f"invalid UUID: {text!r}", value=text, cause=exc) from exc


def json_default(value: Any) -> Any:
    """``default=`` hook for ``json.dumps`` over documents returned by the layer.

    Usage:
        json.dumps(doc, default=json_default)
    """
    if isinstance(value, ID):
        return value.to_json()
    if isinstance(value, (ObjectId, uuid.UUID)):
        return ID.from_native(value).to_json()
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


__all__ = [
    "ID",
    "IDType",
    "json_default",
]
