"""Tests for core.settings module.

Covers:
- AnybaseSettings / DatabaseSettings defaults
- Environment variable override (ANYBASE_*, nested ANYBASE_DATABASE__*)
- Backend inference from the URI scheme
- Validation failures surfacing as InvalidConfigError
"""

import pytest

from anybase.core.errors import InvalidConfigError
from anybase.core.settings import AnybaseSettings, DatabaseSettings, load_settings
from anybase.core.types import DatabaseType


class TestDatabaseSettingsDefaults:
    def test_default_uri_is_local_mongodb(self):
        s = DatabaseSettings()
        assert s.uri == "mongodb://localhost:27017"
        assert s.backend is DatabaseType.MONGODB

    def test_pool_defaults(self):
        s = DatabaseSettings()
        assert s.max_pool_size == 100
        assert s.min_pool_size == 10
        assert s.max_idle_time == 600.0
        assert s.connect_timeout == 10.0

    def test_database_name(self):
        assert DatabaseSettings().database == "anybase"


class TestBackendInference:
    @pytest.mark.parametrize(
        "uri, expected",
        [
            ("mongodb://localhost:27017", DatabaseType.MONGODB),
            ("mongodb+srv://cluster.example.net", DatabaseType.MONGODB),
            ("postgres://app@localhost/anybase", DatabaseType.POSTGRES),
            ("postgresql://app@localhost/anybase", DatabaseType.POSTGRES),
        ],
    )
    def test_scheme(self, uri, expected):
        assert DatabaseSettings(uri=uri).backend is expected

    def test_explicit_type_wins(self):
        s = DatabaseSettings(type="postgres", uri="db.internal")
        assert s.backend is DatabaseType.POSTGRES

    def test_unknown_scheme_without_type(self):
        with pytest.raises(InvalidConfigError, match="infer"):
            DatabaseSettings(uri="mysql://localhost/app")

    def test_mongodb_type_with_postgres_uri(self):
        with pytest.raises(InvalidConfigError):
            DatabaseSettings(type="mongodb", uri="postgres://localhost/app")


class TestValidation:
    def test_min_pool_above_max(self):
        with pytest.raises(InvalidConfigError) as exc_info:
            DatabaseSettings(min_pool_size=20, max_pool_size=5)
        assert exc_info.value.key == "database.min_pool_size"

    def test_bad_ssl_mode(self):
        with pytest.raises(InvalidConfigError):
            DatabaseSettings(ssl_mode="sometimes")

    def test_load_settings_wraps_validation_errors(self, monkeypatch):
        monkeypatch.setenv("ANYBASE_DATABASE__MAX_POOL_SIZE", "0")
        with pytest.raises(InvalidConfigError) as exc_info:
            load_settings()
        assert "max_pool_size" in exc_info.value.key


class TestPostgresDsn:
    def test_uri_passes_through(self):
        s = DatabaseSettings(uri="postgresql://app:pw@db:5432/anybase")
        assert s.postgres_dsn() == "postgresql://app:pw@db:5432/anybase"

    def test_discrete_parameters(self):
        s = DatabaseSettings(type="postgres", uri="", host="db", port=5433, username="app", password="pw")
        assert s.postgres_dsn() == "host=db port=5433 dbname=anybase user=app password=pw"

    def test_redacted_uri(self):
        s = DatabaseSettings(uri="postgres://app:secret@db:5432/anybase")
        assert s.redacted_uri() == "postgres://app:***@db:5432/anybase"
        assert DatabaseSettings().redacted_uri() == "mongodb://localhost:27017"


class TestAnybaseSettingsEnvOverride:
    def test_defaults(self):
        s = AnybaseSettings()
        assert s.debug is False
        assert s.log_level == "INFO"
        assert s.log_json is None

    def test_prefix(self, monkeypatch):
        monkeypatch.setenv("ANYBASE_DEBUG", "true")
        monkeypatch.setenv("ANYBASE_LOG_LEVEL", "DEBUG")
        s = AnybaseSettings()
        assert s.debug is True
        assert s.log_level == "DEBUG"

    def test_nested_database(self, monkeypatch):
        monkeypatch.setenv("ANYBASE_DATABASE__URI", "postgres://app@db/anybase")
        monkeypatch.setenv("ANYBASE_DATABASE__MAX_POOL_SIZE", "25")
        s = load_settings()
        assert s.database.backend is DatabaseType.POSTGRES
        assert s.database.max_pool_size == 25

    def test_dotenv_file(self, tmp_path):
        (tmp_path / ".env").write_text("ANYBASE_DATABASE__URI=postgresql://app@db/anybase\n")
        assert load_settings().database.backend is DatabaseType.POSTGRES

    def test_overrides(self):
        s = load_settings(database={"uri": "postgres://localhost/x"}, log_level="WARNING")
        assert s.database.backend is DatabaseType.POSTGRES
        assert s.log_level == "WARNING"
