"""Environment-driven settings for the anybase database layer.

Configuration is read once, at initialization, and handed to the adapter
selected by ``init_database()``. Everything comes from ``ANYBASE_*``
environment variables (or a ``.env`` file); database options are nested
under ``ANYBASE_DATABASE__*``.

Manifesto:
    - **Pydantic validation:** Type-checked at startup, not on first query
    - **Environment-driven:** Reads from env vars and .env files
    - **Sensible defaults:** A local MongoDB on the default port works out of the box
    - **One error type:** Bad values surface as ``InvalidConfigError``

Features:
    - **AnybaseSettings:** debug, log level, log format, nested database block
    - **DatabaseSettings:** uri, pool sizing, timeouts, TLS, replica set
    - **Backend inference:** ``type`` is derived from the URI scheme when unset
    - **load_settings():** wraps pydantic validation errors in the anybase taxonomy

Examples:
    >>> import os
    >>> os.environ["ANYBASE_DATABASE__URI"] = "postgres://app:secret@db:5432/anybase"
    >>> settings = load_settings()
    >>> settings.database.backend
    <DatabaseType.POSTGRES: 'postgres'>

Tags:
    settings, configuration, pydantic, environment, anybase-core

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from typing import Any
from urllib.parse import urlsplit

from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from anybase.core.errors import InvalidConfigError
from anybase.core.types import DatabaseType

_SCHEME_TYPES: dict[str, DatabaseType] = {
    "mongodb": DatabaseType.MONGODB,
    "mongodb+srv": DatabaseType.MONGODB,
    "postgres": DatabaseType.POSTGRES,
    "postgresql": DatabaseType.POSTGRES,
}

_SSL_MODES = {"disable", "allow", "prefer", "require", "verify-ca", "verify-full"}


class DatabaseSettings(BaseModel):
    """Connection and pool options shared by both adapters.

    Fields
    ──────
    type                     : ``mongodb`` or ``postgres``; inferred from ``uri`` when unset
    uri                      : Connection URI
    database                 : Database name (MongoDB database, or PostgreSQL dbname
                               when the URI carries none)
    host/port/username/password : Discrete PostgreSQL parameters used when ``uri``
                               is not a PostgreSQL URL
    max_pool_size            : Upper bound on pooled connections
    min_pool_size            : Connections kept open while idle
    max_idle_time            : Seconds an idle pooled connection survives
    connect_timeout          : Seconds to open a connection or wait for a pooled one
    server_selection_timeout : Seconds MongoDB waits for a suitable server
    heartbeat_interval       : Seconds between MongoDB topology heartbeats
    ssl_mode                 : libpq ``sslmode``
    retry_writes             : MongoDB retryable writes
    replica_set              : MongoDB replica set name
    """

    type: DatabaseType | None = None
    uri: str = "mongodb://localhost:27017"
    database: str = "anybase"

    host: str = "localhost"
    port: int = 5432
    username: str | None = None
    password: str | None = None

    max_pool_size: int = Field(default=100, ge=1)
    min_pool_size: int = Field(default=10, ge=0)
    max_idle_time: float = Field(default=600.0, gt=0)
    connect_timeout: float = Field(default=10.0, gt=0)
    server_selection_timeout: float = Field(default=5.0, gt=0)
    heartbeat_interval: float = Field(default=10.0, gt=0)

    ssl_mode: str = "disable"
    retry_writes: bool = True
    replica_set: str | None = None

    @model_validator(mode="after")
    def _check_consistency(self) -> DatabaseSettings:
        if self.min_pool_size > self.max_pool_size:
            raise InvalidConfigError(
                "database.min_pool_size",
                self.min_pool_size,
                f"min_pool_size ({self.min_pool_size}) exceeds max_pool_size ({self.max_pool_size})",
            )
        if self.ssl_mode not in _SSL_MODES:
            raise InvalidConfigError("database.ssl_mode", self.ssl_mode)
        scheme_type = self.scheme_type
        if self.type is None and scheme_type is None:
            raise InvalidConfigError(
                "database.uri",
                self.uri,
                f"Cannot infer database type from URI scheme of {self.uri!r}",
            )
        if self.type is DatabaseType.MONGODB and scheme_type is DatabaseType.POSTGRES:
            raise InvalidConfigError(
                "database.type", self.type.value, "type 'mongodb' contradicts a PostgreSQL URI"
            )
        return self

    @property
    def scheme_type(self) -> DatabaseType | None:
        """Backend implied by the URI scheme, if any."""
        return _SCHEME_TYPES.get(urlsplit(self.uri).scheme.lower())

    @property
    def backend(self) -> DatabaseType:
        """Resolved backend kind."""
        return self.type or self.scheme_type  # type: ignore[return-value]

    def postgres_dsn(self) -> str:
        """libpq connection string for the PostgreSQL adapter."""
        if self.scheme_type is DatabaseType.POSTGRES:
            # libpq accepts both postgres:// and postgresql:// URLs
            return self.uri
        parts = [
            f"host={self.host}",
            f"port={self.port}",
            f"dbname={self.database}",
        ]
        if self.username:
            parts.append(f"user={self.username}")
        if self.password:
            parts.append(f"password={self.password}")
        return " ".join(parts)

    def redacted_uri(self) -> str:
        """URI with the password replaced, safe for logs and CLI output."""
        parts = urlsplit(self.uri)
        if parts.password is None:
            return self.uri
        netloc = parts.netloc.replace(f":{parts.password}@", ":***@", 1)
        return parts._replace(netloc=netloc).geturl()


class AnybaseSettings(BaseSettings):
    """Process-wide settings, read once at startup.

    Fields
    ──────
    debug       : Enable debug mode (verbose logging)
    log_level   : Structlog log level
    log_json    : Force JSON (True) or console (False) log rendering; auto when unset
    database    : Nested ``DatabaseSettings`` (``ANYBASE_DATABASE__*``)
    """

    model_config = SettingsConfigDict(
        env_prefix="ANYBASE_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────
    debug: bool = False
    log_level: str = "INFO"
    log_json: bool | None = None

    # ── Storage ──────────────────────────────────────────────────
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)


def load_settings(**overrides: Any) -> AnybaseSettings:
    """Build ``AnybaseSettings`` from the environment plus explicit overrides.

    Raises:
        InvalidConfigError: A value failed validation.
    """
    try:
        return AnybaseSettings(**overrides)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        key = ".".join(str(part) for part in first.get("loc", ())) or "settings"
        raise InvalidConfigError(key, first.get("input"), str(exc)) from exc


__all__ = [
    "AnybaseSettings",
    "DatabaseSettings",
    "load_settings",
]
