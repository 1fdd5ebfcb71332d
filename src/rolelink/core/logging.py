"""Log setup for the rolelink CLI and bot.

Call sites keep using ``logging.getLogger(__name__)``. :func:`configure_logging`
puts a structlog ``ProcessorFormatter`` on every root handler, so each record
is rendered with:

- ``guild``: the guild this process serves (see :func:`bind_guild`)
- ``trace_id`` / ``span_id``: the active OpenTelemetry span, zeroed without one

The console gets coloured text or JSON lines depending on ``BOT_LOG_FORMAT``.
When ``BOT_LOG_ROOT`` is set, JSON lines also go to ``rolelink.log`` in that
directory. The Discord bot token and the game-server password are masked by
:class:`SecretRedactionFilter` before any handler formats the record.
"""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import Iterable
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

from rolelink.config import LoggingConfig

LOG_FILE_NAME = "rolelink.log"
REDACTED = "[REDACTED]"

# Per-request chatter from the HTTP clients, the driver and Alembic.
QUIET_LOGGERS = ("httpx", "httpcore", "asyncpg", "alembic.runtime.migration")

_current_guild: ContextVar[int | None] = ContextVar("rolelink_guild", default=None)

_ZERO_TRACE_ID = "0" * 32
_ZERO_SPAN_ID = "0" * 16

# ``Authorization: Bot <token>`` as sent to the Discord REST API.
_BOT_AUTH = re.compile(r"\b(Bot\s+)[A-Za-z0-9._-]{20,}")


def bind_guild(guild_id: int | None) -> None:
    """Tag records logged from the current context onward with *guild_id*.

    The value lives in a ContextVar, so tasks started afterwards (including
    the one ``asyncio.run`` creates) inherit it.
    """
    _current_guild.set(guild_id)


def current_guild() -> int | None:
    return _current_guild.get()


def add_guild(logger, method_name, event_dict):  # noqa: ARG001
    event_dict.setdefault("guild", _current_guild.get())
    return event_dict


def add_trace_ids(logger, method_name, event_dict):  # noqa: ARG001
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = _ZERO_TRACE_ID
        event_dict["span_id"] = _ZERO_SPAN_ID
    return event_dict


class SecretRedactionFilter(logging.Filter):
    """Mask known secrets and Discord ``Bot`` credentials in log messages.

    The record is rewritten in place (``msg`` becomes the redacted message,
    ``args`` is cleared) and always let through.
    """

    def __init__(self, secrets: Iterable[str] = ()) -> None:
        super().__init__()
        # Longest first so a secret containing another is masked whole.
        self._secrets = sorted({s for s in secrets if s}, key=len, reverse=True)

    def redact(self, text: str) -> str:
        for secret in self._secrets:
            text = text.replace(secret, REDACTED)
        return _BOT_AUTH.sub(rf"\g<1>{REDACTED}", text)

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def _pre_chain(timestamp_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_fmt),
        add_guild,
        add_trace_ids,
        structlog.stdlib.ExtraAdder(),
    ]


def _prepare(
    handler: logging.Handler,
    renderer: structlog.types.Processor,
    timestamp_fmt: str,
    redaction: SecretRedactionFilter,
) -> logging.Handler:
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=_pre_chain(timestamp_fmt),
        )
    )
    handler.addFilter(redaction)
    return handler


def configure_logging(
    settings: LoggingConfig | None = None,
    *,
    guild_id: int | None = None,
    secrets: Iterable[str] = (),
) -> None:
    """Replace the root handlers with rolelink's console and file handlers.

    The CLI calls this twice: once from the ``BOT_LOG_*`` variables alone,
    before the rest of the configuration is validated, and again with the
    guild id and the secrets once it has loaded. Each call starts from a
    clean root logger.
    """
    settings = settings or LoggingConfig()
    if guild_id is not None:
        bind_guild(guild_id)

    redaction = SecretRedactionFilter(secrets)
    if settings.format == "json":
        renderer, timestamp_fmt = structlog.processors.JSONRenderer(), "iso"
    else:
        renderer, timestamp_fmt = structlog.dev.ConsoleRenderer(), "%H:%M:%S"
    handlers = [_prepare(logging.StreamHandler(sys.stderr), renderer, timestamp_fmt, redaction)]

    if settings.log_root is not None:
        log_root = Path(settings.log_root)
        log_root.mkdir(parents=True, exist_ok=True)
        handlers.append(
            _prepare(
                logging.FileHandler(log_root / LOG_FILE_NAME),
                structlog.processors.JSONRenderer(),
                "iso",
                redaction,
            )
        )

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
        old.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(settings.level)
    logging.disable(logging.CRITICAL if settings.disabled else logging.NOTSET)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[*_pre_chain("iso"), structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
