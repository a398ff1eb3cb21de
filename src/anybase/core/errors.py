"""
Structured error types for the anybase database layer.

Every adapter maps its driver's native failures onto one fixed taxonomy at
its boundary, so repositories above the layer branch on anybase errors and
never on ``pymongo`` or ``psycopg2`` exception types.

Manifesto:
    - **One taxonomy, two backends:** A unique violation is a
      ``DuplicateKeyError`` whether MongoDB or PostgreSQL raised it
    - **Explicit retry semantics:** Each error knows if it's retryable
    - **Rich context:** Errors carry backend/collection/operation metadata
    - **Error chaining:** The driver exception survives as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                       AnybaseError                               │
        │  (category, retryable, context, cause)                           │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  DatabaseError (DATABASE)              ConfigError (CONFIG)      │
        │       │                                     │                    │
        │  NoDocumentsError                      MissingConfigError        │
        │  DuplicateKeyError                     InvalidConfigError        │
        │  InvalidIDError        (VALIDATION)                              │
        │  NotConnectedError     (retryable)                               │
        │  TransactionFailedError                                          │
        │  UnsupportedOperationError                                       │
        │  OperationTimeoutError (retryable)                               │
        └─────────────────────────────────────────────────────────────────┘

Examples:
    >>> error = DuplicateKeyError("duplicate key", key={"email": "a@b.c"})
    >>> error.retryable
    False
    >>> error.with_context(backend="postgres", collection="users").context.collection
    'users'

Guardrails:
    ❌ DON'T: Let ``pymongo.errors.*`` or ``psycopg2.*`` escape an adapter
    ✅ DO: Wrap them in the matching taxonomy class with ``cause=``

    ❌ DON'T: Catch ``DatabaseError`` to detect a missing document
    ✅ DO: Catch ``NoDocumentsError``

Tags:
    error-handling, exception-hierarchy, database, taxonomy, anybase-core

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """
    Standard error categories for classification and routing.

    Categories are grouped by their typical retry behavior:
    - **Infrastructure (usually transient):** NETWORK, DATABASE
    - **Caller errors (never retryable):** VALIDATION, CONFIG
    - **Internal errors:** INTERNAL, UNKNOWN
    """

    NETWORK = "NETWORK"           # Connection refused, DNS, server selection
    DATABASE = "DATABASE"         # Query, constraint, transaction failures
    VALIDATION = "VALIDATION"     # Malformed identifiers, operator misuse
    CONFIG = "CONFIG"             # Missing or invalid settings
    INTERNAL = "INTERNAL"         # Bugs, unexpected state
    UNKNOWN = "UNKNOWN"           # Uncategorized errors


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error for logging.

    Attributes:
        backend: Active backend kind (``mongodb`` or ``postgres``)
        collection: Logical collection name
        operation: Contract method that failed (``insert_one``, ...)
        metadata: Additional key-value pairs
    """

    backend: str | None = None
    collection: str | None = None
    operation: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result: dict[str, Any] = {}
        for key in ("backend", "collection", "operation"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class AnybaseError(Exception):
    """
    Base exception for all anybase errors.

    All instances carry a category, a retryable flag, an ``ErrorContext``
    and an optional chained cause. Subclasses set ``default_category`` and
    ``default_retryable`` so call sites rarely pass them explicitly.

    Examples:
        >>> error = AnybaseError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.to_dict()["retryable"]
        False
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> AnybaseError:
        """
        Add context to this error (fluent API).

        Usage:
            raise NoDocumentsError("not found").with_context(
                collection="users", operation="find_one"
            )
        """
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# DATABASE TAXONOMY
# =============================================================================


class DatabaseError(AnybaseError):
    """
    Database query or transaction error.

    Also the wrapper for any driver failure that has no more specific
    taxonomy entry; the driver exception is kept as ``cause``.
    """

    default_category = ErrorCategory.DATABASE
    default_retryable = False


class NoDocumentsError(DatabaseError):
    """No document matched the filter."""

    def __init__(self, message: str = "no documents found", **kwargs: Any):
        super().__init__(message, **kwargs)


class DuplicateKeyError(DatabaseError):
    """A unique index or primary key rejected the write."""

    def __init__(
        self,
        message: str = "duplicate key error",
        *,
        key: Any = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.key = key

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.key is not None:
            result["key"] = repr(self.key)
        return result


class InvalidIDError(DatabaseError):
    """Identifier text matches neither the ObjectId nor the UUID format."""

    default_category = ErrorCategory.VALIDATION

    def __init__(self, message: str = "invalid ID format", *, value: Any = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.value = value


class NotConnectedError(DatabaseError):
    """Backend unreachable, or the layer was used before ``connect()``."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True

    def __init__(self, message: str = "database not connected", **kwargs: Any):
        super().__init__(message, **kwargs)


class TransactionFailedError(DatabaseError):
    """Begin, commit or rollback failed, or the transaction was already closed."""

    def __init__(self, message: str = "transaction failed", **kwargs: Any):
        super().__init__(message, **kwargs)


class UnsupportedOperationError(DatabaseError):
    """Operator or stage outside the neutral vocabulary, or not translatable by this adapter."""

    default_category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str = "operation not supported by this database adapter",
        *,
        operator: str | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.operator = operator


class OperationTimeoutError(DatabaseError):
    """The caller's deadline expired before the backend answered."""

    default_retryable = True


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigError(AnybaseError):
    """
    Configuration error.

    Never retryable - configuration must be fixed.
    """

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class MissingConfigError(ConfigError):
    """Required configuration is missing."""

    def __init__(self, key: str, message: str | None = None):
        self.key = key
        super().__init__(message or f"Missing required configuration: {key}")


class InvalidConfigError(ConfigError):
    """Configuration value is invalid."""

    def __init__(self, key: str, value: Any, message: str | None = None):
        self.key = key
        self.value = value
        super().__init__(message or f"Invalid configuration for {key}: {value!r}")


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, AnybaseError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError))


def categorize_error(error: BaseException) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, AnybaseError):
        return error.category
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorCategory.NETWORK
    if isinstance(error, ValueError):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


__all__ = [
    # Category enum
    "ErrorCategory",
    # Context
    "ErrorContext",
    # Base
    "AnybaseError",
    # Database taxonomy
    "DatabaseError",
    "NoDocumentsError",
    "DuplicateKeyError",
    "InvalidIDError",
    "NotConnectedError",
    "TransactionFailedError",
    "UnsupportedOperationError",
    "OperationTimeoutError",
    # Config
    "ConfigError",
    "MissingConfigError",
    "InvalidConfigError",
    # Utilities
    "is_retryable",
    "categorize_error",
]
