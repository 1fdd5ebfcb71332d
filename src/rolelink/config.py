"""Runtime configuration loaded from environment variables.

Required:
- BOT_BASE_URL: game server base URL (a trailing ``/`` is dropped)
- BOT_SERVER_PASSWORD: shared secret sent in the ``Authorization`` header
- BOT_SERVER_ID: id of the single guild this bot serves
- BOT_TOKEN: Discord bot token

Optional:
- BOT_PAGE_SIZE: guild member page size for full syncs (1..1000, default 1000)
- BOT_LOG_LEVEL: trace | debug | info | warn | error | off (default info)
- BOT_LOG_FORMAT: text | json (default text)
- BOT_LOG_ROOT: directory for the JSON log file
- BOT_DB_NAME plus DATABASE_URL or POSTGRES_* (see :mod:`rolelink.db`)
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from rolelink.db import Database
from rolelink.directory import MAX_PAGE_SIZE

_LOG_LEVELS = {
    "trace": "DEBUG",
    "debug": "DEBUG",
    "info": "INFO",
    "warn": "WARNING",
    "warning": "WARNING",
    "error": "ERROR",
    "off": "CRITICAL",
}
_LOG_FORMATS = ("text", "json")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: Path | None = None
    disabled: bool = False


@dataclass
class RolelinkConfig:
    """Everything the bot needs to reach Discord, the game server and the database."""

    base_url: str
    server_password: str
    guild_id: int
    discord_token: str
    page_size: int = MAX_PAGE_SIZE
    db_name: str | None = None
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def database(self) -> Database:
        return Database.from_env(self.db_name)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RolelinkConfig:
        env = os.environ if environ is None else environ

        base_url = _required(env, "BOT_BASE_URL").rstrip("/")
        server_password = _required(env, "BOT_SERVER_PASSWORD")
        discord_token = _required(env, "BOT_TOKEN")

        raw_guild_id = _required(env, "BOT_SERVER_ID")
        try:
            guild_id = int(raw_guild_id)
        except ValueError:
            raise ConfigError(f"BOT_SERVER_ID must be an integer, got {raw_guild_id!r}") from None

        raw_page_size = env.get("BOT_PAGE_SIZE", "").strip()
        page_size = MAX_PAGE_SIZE
        if raw_page_size:
            try:
                page_size = int(raw_page_size)
            except ValueError:
                raise ConfigError(
                    f"BOT_PAGE_SIZE must be an integer, got {raw_page_size!r}"
                ) from None
            if not 1 <= page_size <= MAX_PAGE_SIZE:
                raise ConfigError(f"BOT_PAGE_SIZE must be between 1 and {MAX_PAGE_SIZE}")

        return cls(
            base_url=base_url,
            server_password=server_password,
            guild_id=guild_id,
            discord_token=discord_token,
            page_size=page_size,
            db_name=env.get("BOT_DB_NAME", "").strip() or None,
            logging=logging_config_from_env(env),
        )


def logging_config_from_env(environ: Mapping[str, str] | None = None) -> LoggingConfig:
    """Parse the BOT_LOG_* variables; usable before the rest of the config."""
    env = os.environ if environ is None else environ

    raw_level = env.get("BOT_LOG_LEVEL", "info").strip().lower() or "info"
    if raw_level not in _LOG_LEVELS:
        raise ConfigError(
            f"Invalid BOT_LOG_LEVEL {raw_level!r}; "
            "possible values are 'trace', 'debug', 'info', 'warn', 'error', and 'off'"
        )

    fmt = env.get("BOT_LOG_FORMAT", "text").strip().lower() or "text"
    if fmt not in _LOG_FORMATS:
        raise ConfigError(f"Invalid BOT_LOG_FORMAT {fmt!r}; expected 'text' or 'json'")

    raw_root = env.get("BOT_LOG_ROOT", "").strip()
    return LoggingConfig(
        level=_LOG_LEVELS[raw_level],
        format=fmt,
        log_root=Path(raw_root) if raw_root else None,
        disabled=raw_level == "off",
    )


def _required(env: Mapping[str, str], name: str) -> str:
    value = env.get(name, "").strip()
    if not value:
        raise ConfigError(f"{name} environment variable is required")
    return value
