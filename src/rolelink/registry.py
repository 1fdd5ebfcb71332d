"""Authorization registry: grant mappings plus the watched-role cache.

The durable table ``authorization_mappings`` is the source of truth. The
registry keeps a sorted in-memory copy of the mapped guild role ids so that
membership-change handlers can test "is this role watched?" without a
database round trip.

Locking
-------
- Mutations are serialized by an asyncio lock. Each one writes the table
  first and only then updates the cache, so the cache never shows a state
  the table did not have.
- The cache itself sits behind a reader/writer lock. Membership tests take
  it shared; the in-memory update takes it exclusive. The exclusive lock is
  never held across a database call.
"""

from __future__ import annotations

import asyncio
import bisect
import logging
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from typing import Any, Protocol

from rolelink.db import persistence_errors
from rolelink.errors import GrantAlreadyMapped, InvalidGrantId, MappingNotFound
from rolelink.models import GrantMapping

logger = logging.getLogger(__name__)


class ReadWriteLock:
    """Many readers or one writer, writers preferred once waiting."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def shared(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class GrantMappingRepository(Protocol):
    """Persistence contract for grant mappings."""

    async def insert(self, grant_id: str, local_role_id: int) -> bool:
        """Insert a mapping; return False if *grant_id* already exists."""
        ...

    async def delete_by_grant(self, grant_id: str) -> GrantMapping | None:
        """Delete one mapping by grant id and return it, if it existed."""
        ...

    async def delete_by_role(self, local_role_id: int) -> list[GrantMapping]:
        """Delete every mapping for *local_role_id* and return them."""
        ...

    async def role_is_mapped(self, local_role_id: int) -> bool:
        """Return True if any mapping still points at *local_role_id*."""
        ...

    async def list_all(self) -> list[GrantMapping]:
        """Return every mapping in creation order."""
        ...


def _to_mapping(row: Any) -> GrantMapping:
    return GrantMapping(grant_id=row["grant_id"], local_role_id=row["local_role_id"])


class PostgresGrantMappingStore:
    """asyncpg-backed :class:`GrantMappingRepository`."""

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def insert(self, grant_id: str, local_role_id: int) -> bool:
        with persistence_errors("adding role mapping"):
            inserted = await self._pool.fetchval(
                """
                INSERT INTO authorization_mappings (grant_id, local_role_id)
                VALUES ($1, $2)
                ON CONFLICT (grant_id) DO NOTHING
                RETURNING grant_id
                """,
                grant_id,
                local_role_id,
            )
        return inserted is not None

    async def delete_by_grant(self, grant_id: str) -> GrantMapping | None:
        with persistence_errors("removing role mapping"):
            row = await self._pool.fetchrow(
                """
                DELETE FROM authorization_mappings
                WHERE grant_id = $1
                RETURNING grant_id, local_role_id
                """,
                grant_id,
            )
        if row is None:
            return None
        return _to_mapping(row)

    async def delete_by_role(self, local_role_id: int) -> list[GrantMapping]:
        with persistence_errors("removing role mapping"):
            rows = await self._pool.fetch(
                """
                DELETE FROM authorization_mappings
                WHERE local_role_id = $1
                RETURNING grant_id, local_role_id
                """,
                local_role_id,
            )
        return [_to_mapping(row) for row in rows]

    async def role_is_mapped(self, local_role_id: int) -> bool:
        with persistence_errors("checking role mapping"):
            found = await self._pool.fetchval(
                "SELECT EXISTS (SELECT 1 FROM authorization_mappings WHERE local_role_id = $1)",
                local_role_id,
            )
        return bool(found)

    async def list_all(self) -> list[GrantMapping]:
        with persistence_errors("listing role mappings"):
            rows = await self._pool.fetch(
                """
                SELECT grant_id, local_role_id
                FROM authorization_mappings
                ORDER BY created_at, grant_id
                """
            )
        return [_to_mapping(row) for row in rows]


class AuthorizationRegistry:
    """Owns the grant-mapping table accessor and the watched-role cache."""

    def __init__(self, store: GrantMappingRepository) -> None:
        self._store = store
        self._watched: list[int] = []
        self._cache_lock = ReadWriteLock()
        self._mutation_lock = asyncio.Lock()

    # -- cache -------------------------------------------------------------

    async def load(self) -> None:
        """Rebuild the watched-role cache from the table (process start)."""
        async with self._mutation_lock:
            mappings = await self._store.list_all()
            roles = sorted({m.local_role_id for m in mappings})
            with self._cache_lock.exclusive():
                self._watched = roles
        logger.debug("Watched roles: %s", roles)

    def is_watched(self, local_role_id: int) -> bool:
        """Membership test against the cache, under the shared lock."""
        with self._cache_lock.shared():
            index = bisect.bisect_left(self._watched, local_role_id)
            return index < len(self._watched) and self._watched[index] == local_role_id

    def watched_among(self, role_ids: Iterable[int]) -> frozenset[int]:
        """Return the subset of *role_ids* that are watched."""
        with self._cache_lock.shared():
            watched = self._watched
            found = set()
            for role_id in role_ids:
                index = bisect.bisect_left(watched, role_id)
                if index < len(watched) and watched[index] == role_id:
                    found.add(role_id)
        return frozenset(found)

    def watched_roles(self) -> tuple[int, ...]:
        """Snapshot of the cache in ascending order."""
        with self._cache_lock.shared():
            return tuple(self._watched)

    def _cache_add(self, local_role_id: int) -> None:
        with self._cache_lock.exclusive():
            index = bisect.bisect_left(self._watched, local_role_id)
            if index == len(self._watched) or self._watched[index] != local_role_id:
                self._watched.insert(index, local_role_id)
            snapshot = list(self._watched)
        logger.debug("Watched roles: %s", snapshot)

    def _cache_discard(self, local_role_id: int) -> None:
        with self._cache_lock.exclusive():
            index = bisect.bisect_left(self._watched, local_role_id)
            if index < len(self._watched) and self._watched[index] == local_role_id:
                del self._watched[index]
            snapshot = list(self._watched)
        logger.debug("Watched roles: %s", snapshot)

    # -- mappings ----------------------------------------------------------

    async def add_mapping(self, grant_id: str, local_role_id: int) -> GrantMapping:
        grant_id = grant_id.strip()
        if not grant_id:
            raise InvalidGrantId(grant_id)
        async with self._mutation_lock:
            if not await self._store.insert(grant_id, local_role_id):
                raise GrantAlreadyMapped(grant_id)
            self._cache_add(local_role_id)
        logger.info("Mapped role %s to grant %r", local_role_id, grant_id)
        return GrantMapping(grant_id=grant_id, local_role_id=local_role_id)

    async def remove_mapping(self, grant_id: str) -> GrantMapping:
        """Remove the mapping for *grant_id*.

        The role leaves the watched set only if no other grant still maps
        to it.
        """
        grant_id = grant_id.strip()
        async with self._mutation_lock:
            removed = await self._store.delete_by_grant(grant_id)
            if removed is None:
                raise MappingNotFound(grant_id)
            if not await self._store.role_is_mapped(removed.local_role_id):
                self._cache_discard(removed.local_role_id)
        logger.info("Removed mapping for grant %r (role %s)", grant_id, removed.local_role_id)
        return removed

    async def remove_mapping_by_role(self, local_role_id: int) -> list[GrantMapping]:
        async with self._mutation_lock:
            removed = await self._store.delete_by_role(local_role_id)
            if not removed:
                raise MappingNotFound(local_role_id)
            self._cache_discard(local_role_id)
        logger.info(
            "Removed %d mapping(s) for role %s: %s",
            len(removed),
            local_role_id,
            [m.grant_id for m in removed],
        )
        return removed

    async def list_mappings(self) -> list[GrantMapping]:
        return await self._store.list_all()
