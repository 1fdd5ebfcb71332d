"""Tests for structured logging module."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import structlog

from rolelink.config import LoggingConfig
from rolelink.core.logging import (
    LOG_FILE_NAME,
    QUIET_LOGGERS,
    REDACTED,
    SecretRedactionFilter,
    _current_guild,
    add_guild,
    add_trace_ids,
    bind_guild,
    configure_logging,
    current_guild,
)

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_logging():
    """Reset logging and guild context between tests."""
    token = _current_guild.set(None)
    yield
    _current_guild.reset(token)
    logging.disable(logging.NOTSET)
    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.NOTSET)


def _last_json_line(log_root: Path) -> dict:
    for handler in logging.getLogger().handlers:
        handler.flush()
    content = (log_root / LOG_FILE_NAME).read_text().strip()
    return json.loads(content.splitlines()[-1])


# ---------------------------------------------------------------------------
# Processors
# ---------------------------------------------------------------------------


class TestGuildBinding:
    def test_bind_and_read(self):
        bind_guild(42)
        assert current_guild() == 42

    def test_default_is_none(self):
        assert current_guild() is None

    def test_processor_injects_guild(self):
        bind_guild(7)
        result = add_guild(None, "info", {"event": "test"})
        assert result["guild"] == 7

    def test_processor_handles_unbound_context(self):
        result = add_guild(None, "info", {"event": "test"})
        assert result["guild"] is None

    def test_explicit_guild_on_record_wins(self):
        bind_guild(7)
        result = add_guild(None, "info", {"event": "test", "guild": 9})
        assert result["guild"] == 9


class TestAddTraceIds:
    def test_zeroed_ids_when_no_span(self):
        """No active OTel span: trace_id and span_id are zeroed."""
        result = add_trace_ids(None, "info", {"event": "test"})
        assert result["trace_id"] == "0" * 32
        assert result["span_id"] == "0" * 16

    def test_real_ids_when_span_active(self):
        from opentelemetry.sdk.trace import TracerProvider

        provider = TracerProvider()
        tracer = provider.get_tracer("test")
        with tracer.start_as_current_span("test-span"):
            result = add_trace_ids(None, "info", {"event": "test"})
            assert result["trace_id"] != "0" * 32
            assert len(result["trace_id"]) == 32
            assert len(result["span_id"]) == 16
        provider.shutdown()


class TestSecretRedactionFilter:
    def _record(self, msg: str, *args) -> logging.LogRecord:
        return logging.LogRecord("rolelink.test", logging.INFO, __file__, 1, msg, args, None)

    def test_masks_configured_secret_in_args(self):
        record = self._record("Authorization: %s", "s3cret")
        assert SecretRedactionFilter(["s3cret"]).filter(record) is True
        assert record.getMessage() == f"Authorization: {REDACTED}"
        assert record.args is None

    def test_masks_discord_bot_header(self):
        token = "MTIzNDU2Nzg5MDEyMzQ1Njc4.Gabcde.abcdefghijklmnopqrstuvwxyz"
        record = self._record(f"GET /guilds with Authorization: Bot {token}")
        SecretRedactionFilter().filter(record)
        assert record.getMessage() == f"GET /guilds with Authorization: Bot {REDACTED}"

    def test_leaves_ordinary_messages_alone(self):
        record = self._record("Bot started for guild %s", 42)
        SecretRedactionFilter(["s3cret"]).filter(record)
        assert record.msg == "Bot started for guild %s"
        assert record.args == (42,)

    def test_longer_secret_masked_whole(self):
        record = self._record("token=abcdef")
        SecretRedactionFilter(["abc", "abcdef"]).filter(record)
        assert record.getMessage() == f"token={REDACTED}"

    def test_empty_secrets_ignored(self):
        record = self._record("nothing to hide")
        SecretRedactionFilter(["", "s3cret"]).filter(record)
        assert record.getMessage() == "nothing to hide"


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_defaults_to_text_console(self):
        configure_logging()
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter, structlog.stdlib.ProcessorFormatter)
        assert isinstance(formatter.processors[-1], structlog.dev.ConsoleRenderer)

    def test_json_format_installs_json_renderer(self):
        configure_logging(LoggingConfig(format="json"))
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter.processors[-1], structlog.processors.JSONRenderer)

    def test_reconfiguring_does_not_duplicate_handlers(self):
        configure_logging()
        configure_logging()
        assert len(logging.getLogger().handlers) == 1

    def test_binds_guild(self):
        configure_logging(guild_id=42)
        assert current_guild() == 42

    def test_reconfiguring_without_guild_keeps_binding(self):
        configure_logging(guild_id=42)
        configure_logging()
        assert current_guild() == 42

    def test_quiet_loggers_raised_to_warning(self):
        configure_logging(LoggingConfig(level="DEBUG"))
        for name in QUIET_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING

    def test_log_level_applied(self):
        configure_logging(LoggingConfig(level="DEBUG"))
        assert logging.getLogger().level == logging.DEBUG

    def test_disabled_drops_everything(self):
        configure_logging(LoggingConfig(level="CRITICAL", disabled=True))
        assert not logging.getLogger("rolelink.test").isEnabledFor(logging.CRITICAL)

    def test_reenabling_after_disabled(self):
        configure_logging(LoggingConfig(disabled=True))
        configure_logging()
        assert logging.getLogger("rolelink.test").isEnabledFor(logging.WARNING)

    def test_every_handler_redacts(self, tmp_path: Path):
        configure_logging(LoggingConfig(log_root=tmp_path), secrets=["s3cret"])
        handlers = logging.getLogger().handlers
        assert len(handlers) == 2
        for handler in handlers:
            assert any(isinstance(f, SecretRedactionFilter) for f in handler.filters)


class TestFileLogging:
    def test_file_handler_always_json(self, tmp_path: Path):
        configure_logging(LoggingConfig(format="text", log_root=tmp_path))
        file_handlers = [
            h for h in logging.getLogger().handlers if isinstance(h, logging.FileHandler)
        ]
        assert len(file_handlers) == 1
        assert file_handlers[0].baseFilename.endswith(LOG_FILE_NAME)
        last_proc = file_handlers[0].formatter.processors[-1]
        assert isinstance(last_proc, structlog.processors.JSONRenderer)

    def test_nested_log_root_created(self, tmp_path: Path):
        log_dir = tmp_path / "deep" / "nested"
        configure_logging(LoggingConfig(log_root=log_dir))
        assert log_dir.is_dir()

    def test_records_carry_guild(self, tmp_path: Path):
        configure_logging(LoggingConfig(format="json", log_root=tmp_path), guild_id=42)
        logging.getLogger("rolelink.test").warning("hello structured world")

        data = _last_json_line(tmp_path)
        assert data["event"] == "hello structured world"
        assert data["guild"] == 42
        assert data["logger"] == "rolelink.test"
        assert data["level"] == "warning"

    def test_secrets_never_reach_the_file(self, tmp_path: Path):
        configure_logging(LoggingConfig(log_root=tmp_path), secrets=["s3cret"])
        logging.getLogger("rolelink.test").warning("push failed with password %s", "s3cret")

        data = _last_json_line(tmp_path)
        assert "s3cret" not in data["event"]
        assert REDACTED in data["event"]
