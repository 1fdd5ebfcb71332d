"""PostgreSQL access for rolelink.

The server comes from the environment: ``DATABASE_URL`` when it is set,
otherwise ``POSTGRES_HOST``, ``POSTGRES_PORT``, ``POSTGRES_USER``,
``POSTGRES_PASSWORD`` and ``POSTGRES_SSLMODE``. :class:`Database` creates the
bot's database on first use, owns the asyncpg pool the stores share, and
builds the URL the Alembic runner migrates.

Some managed Postgres hosts drop the connection during asyncpg's
opportunistic STARTTLS upgrade. When no sslmode was configured, provisioning
and pool creation both retry once with ``ssl=disable``.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, TypeVar
from urllib.parse import parse_qs, quote, urlparse

import asyncpg

from rolelink.errors import PersistenceFailure

logger = logging.getLogger(__name__)

DEFAULT_DB_NAME = "rolelink"
MAINTENANCE_DB = "postgres"

_SSL_MODES = frozenset({"disable", "allow", "prefer", "require", "verify-ca", "verify-full"})
_STARTTLS_LOST = "unexpected connection_lost() call"

T = TypeVar("T")


def _normalize_ssl_mode(value: str | None) -> str | None:
    mode = (value or "").strip().lower()
    if not mode:
        return None
    if mode not in _SSL_MODES:
        logger.warning("Ignoring unknown PostgreSQL sslmode %r", value)
        return None
    return mode


@dataclass(frozen=True)
class ConnectionSettings:
    """Where the server is and whom to log in as.

    ``database`` is only the name found in a ``DATABASE_URL`` path; the
    database actually used is decided by :meth:`Database.from_env`.
    """

    host: str = "localhost"
    port: int = 5432
    user: str = "rolelink"
    password: str = "rolelink"
    ssl: str | None = None
    database: str | None = None

    @classmethod
    def from_url(cls, url: str) -> ConnectionSettings:
        """Parse a libpq-style ``postgresql://user:pw@host:port/name?sslmode=..`` URL."""
        parsed = urlparse(url)
        sslmode = parse_qs(parsed.query).get("sslmode", [None])[0]
        return cls(
            host=parsed.hostname or "localhost",
            port=parsed.port or 5432,
            user=parsed.username or "rolelink",
            password=parsed.password or "rolelink",
            ssl=_normalize_ssl_mode(sslmode),
            database=parsed.path.lstrip("/") or None,
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ConnectionSettings:
        env = os.environ if environ is None else environ
        url = env.get("DATABASE_URL", "").strip()
        if url:
            return cls.from_url(url)
        return cls(
            host=env.get("POSTGRES_HOST", "localhost"),
            port=int(env.get("POSTGRES_PORT", "5432")),
            user=env.get("POSTGRES_USER", "rolelink"),
            password=env.get("POSTGRES_PASSWORD", "rolelink"),
            ssl=_normalize_ssl_mode(env.get("POSTGRES_SSLMODE")),
        )

    def connect_kwargs(self, database: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": database,
        }
        if self.ssl is not None:
            kwargs["ssl"] = self.ssl
        return kwargs


def should_retry_with_ssl_disable(exc: Exception, configured_ssl: str | None) -> bool:
    """True when a failed connect looks like a dropped STARTTLS upgrade we may retry."""
    return (
        configured_ssl is None
        and isinstance(exc, ConnectionError)
        and _STARTTLS_LOST in str(exc)
    )


async def _open_with_ssl_fallback(
    opener: Callable[..., Awaitable[T]],
    kwargs: dict[str, Any],
    configured_ssl: str | None,
    purpose: str,
) -> T:
    try:
        return await opener(**kwargs)
    except ConnectionError as exc:
        if not should_retry_with_ssl_disable(exc, configured_ssl):
            raise
    logger.info("PostgreSQL dropped the SSL upgrade while %s; retrying with ssl=disable", purpose)
    return await opener(**{**kwargs, "ssl": "disable"})


@contextmanager
def persistence_errors(action: str) -> Iterator[None]:
    """Re-raise driver-level failures as :class:`PersistenceFailure`."""
    try:
        yield
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
        raise PersistenceFailure(f"Database error while {action}: {exc}") from exc


class Database:
    """The bot's own database: provisioning, the shared pool and the migration URL."""

    def __init__(
        self,
        settings: ConnectionSettings | None = None,
        db_name: str = DEFAULT_DB_NAME,
        *,
        min_pool_size: int = 1,
        max_pool_size: int = 5,
    ) -> None:
        self.settings = settings or ConnectionSettings()
        self.db_name = db_name
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_env(
        cls, db_name: str | None = None, environ: Mapping[str, str] | None = None
    ) -> Database:
        """Build from the environment.

        The name is *db_name* if given, then the ``DATABASE_URL`` path, then
        ``rolelink``.
        """
        settings = ConnectionSettings.from_env(environ)
        return cls(settings, db_name or settings.database or DEFAULT_DB_NAME)

    @property
    def url(self) -> str:
        """``postgresql://`` URL for SQLAlchemy, with credentials percent-encoded."""
        s = self.settings
        credentials = f"{quote(s.user, safe='')}:{quote(s.password, safe='')}"
        url = f"postgresql://{credentials}@{s.host}:{s.port}/{self.db_name}"
        if s.ssl is not None:
            url += f"?sslmode={s.ssl}"
        return url

    async def provision(self) -> None:
        """Create the database unless it already exists.

        ``CREATE DATABASE`` takes no bind parameters, so the name is quoted
        as an identifier here.
        """
        conn = await _open_with_ssl_fallback(
            asyncpg.connect,
            self.settings.connect_kwargs(MAINTENANCE_DB),
            self.settings.ssl,
            "provisioning",
        )
        try:
            if await conn.fetchval("SELECT 1 FROM pg_database WHERE datname = $1", self.db_name):
                logger.debug("Database %s already exists", self.db_name)
                return
            quoted = self.db_name.replace('"', '""')
            await conn.execute(f'CREATE DATABASE "{quoted}"')
            logger.info("Created database %s", self.db_name)
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        kwargs = self.settings.connect_kwargs(self.db_name)
        kwargs.update(min_size=self.min_pool_size, max_size=self.max_pool_size)
        self.pool = await _open_with_ssl_fallback(
            asyncpg.create_pool, kwargs, self.settings.ssl, "opening the pool"
        )
        logger.info(
            "Connection pool open for %s on %s:%s",
            self.db_name,
            self.settings.host,
            self.settings.port,
        )
        return self.pool

    async def close(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None
        logger.info("Connection pool closed for %s", self.db_name)
