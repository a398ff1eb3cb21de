"""
Tests for the CLI app and the ``anybase db`` sub-commands.
"""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from anybase.cli.app import app
from anybase.core.errors import NotConnectedError
from anybase.core.types import DatabaseType, Index

runner = CliRunner()


@pytest.fixture
def fake_db():
    db = MagicMock()
    db.type = DatabaseType.POSTGRES
    db.list_collections.return_value = ["products", "users"]
    db.ensure_system_indexes.return_value = ["users.email_1", "sessions.expires_at_1"]
    db.collection.return_value.list_indexes.return_value = [
        Index(name="email_1", keys={"email": 1}, unique=True)
    ]
    return db


@pytest.fixture
def get_adapter(fake_db):
    # logging setup would point the root handler at the runner's stream
    with patch("anybase.cli.utils.configure_logging"), patch("anybase.cli.utils.get_adapter") as factory:
        factory.return_value = fake_db
        yield factory


class TestRootApp:
    def test_help(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "anybase" in result.output

    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert result.output.startswith("anybase ")

    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        # Typer returns exit code 0 or 2 for no_args_is_help
        assert result.exit_code in (0, 2)

    def test_db_help(self):
        result = runner.invoke(app, ["db", "--help"])
        assert result.exit_code == 0
        for command in ("ping", "init", "collections", "indexes"):
            assert command in result.output


class TestDbCommands:
    def test_ping_json(self, get_adapter, fake_db):
        result = runner.invoke(app, ["db", "ping", "--json"])
        assert result.exit_code == 0
        payload = json.loads(result.stdout)
        assert payload["backend"] == "postgres"
        assert payload["status"] == "ok"
        fake_db.connect.assert_called_once()
        fake_db.close.assert_called_once()

    def test_ping_table(self, get_adapter):
        result = runner.invoke(app, ["db", "ping"])
        assert result.exit_code == 0
        assert "Database Ping" in result.stdout

    def test_uri_override(self, get_adapter):
        result = runner.invoke(app, ["db", "ping", "--uri", "postgres://app@db/anybase", "--json"])
        assert result.exit_code == 0
        settings = get_adapter.call_args.args[0]
        assert settings.uri == "postgres://app@db/anybase"
        assert settings.backend is DatabaseType.POSTGRES

    def test_init(self, get_adapter, fake_db):
        result = runner.invoke(app, ["db", "init", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["indexes"] == ["users.email_1", "sessions.expires_at_1"]
        fake_db.ensure_system_indexes.assert_called_once()

    def test_collections(self, get_adapter):
        result = runner.invoke(app, ["db", "collections", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == [{"name": "products"}, {"name": "users"}]

    def test_indexes(self, get_adapter, fake_db):
        result = runner.invoke(app, ["db", "indexes", "users", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == [
            {"name": "email_1", "keys": {"email": 1}, "unique": True, "sparse": False}
        ]
        fake_db.collection.assert_called_once_with("users")

    def test_empty_collections(self, get_adapter, fake_db):
        fake_db.list_collections.return_value = []
        result = runner.invoke(app, ["db", "collections"])
        assert result.exit_code == 0
        assert "No items" in result.stdout

    def test_connect_failure(self, get_adapter, fake_db):
        fake_db.connect.side_effect = NotConnectedError("postgres unreachable: connection refused")
        result = runner.invoke(app, ["db", "ping"])
        assert result.exit_code == 1
        fake_db.ping.assert_not_called()

    def test_command_failure_closes(self, get_adapter, fake_db):
        fake_db.ping.side_effect = NotConnectedError()
        result = runner.invoke(app, ["db", "ping"])
        assert result.exit_code == 1
        fake_db.close.assert_called_once()

    def test_bad_uri(self, get_adapter):
        result = runner.invoke(app, ["db", "ping", "--uri", "mysql://localhost/app"])
        assert result.exit_code == 1
        get_adapter.assert_not_called()
