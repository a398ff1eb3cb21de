"""Tests for ``anybase.core.logging``: structlog configuration."""

from __future__ import annotations

import io
import json

import structlog

from anybase.core.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
)


def _configure(stream: io.StringIO, **kwargs) -> None:
    structlog.reset_defaults()
    configure_logging(level="DEBUG", json_format=True, stream=stream, **kwargs)


class TestConfigureLogging:
    def teardown_method(self):
        clear_context()
        structlog.reset_defaults()

    def test_json_event(self):
        stream = io.StringIO()
        _configure(stream, service="anybase-test")
        get_logger("anybase.test").info("collection_provisioned", collection="users", table="users")

        record = json.loads(stream.getvalue().strip().splitlines()[-1])
        assert record["event"] == "collection_provisioned"
        assert record["collection"] == "users"
        assert record["service.name"] == "anybase-test"
        assert record["log.level"] == "info"
        assert "@timestamp" in record

    def test_level_filtering(self):
        stream = io.StringIO()
        structlog.reset_defaults()
        configure_logging(level="WARNING", json_format=True, stream=stream)
        logger = get_logger("anybase.test")
        logger.info("ignored")
        logger.warning("ttl_index_downgraded", index="expires_at_1")
        lines = stream.getvalue().strip().splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0])["event"] == "ttl_index_downgraded"

    def test_bound_context(self):
        stream = io.StringIO()
        _configure(stream)
        bind_context(request_id="abc123")
        get_logger("anybase.test").info("find_started")
        assert json.loads(stream.getvalue().strip())["request_id"] == "abc123"

    def test_log_context_scoped(self):
        stream = io.StringIO()
        _configure(stream)
        logger = get_logger("anybase.test")
        with LogContext(operation="migrate"):
            logger.info("inside")
        logger.info("outside")
        inside, outside = (json.loads(line) for line in stream.getvalue().strip().splitlines())
        assert inside["operation"] == "migrate"
        assert "operation" not in outside
