"""Durable 1:1 mapping between guild members and game-server accounts.

Backed by the ``linked_identities`` table::

    linked_identities(local_id BIGINT PRIMARY KEY, external_id BIGINT UNIQUE)

Conflict detection does not parse driver error text. ``link`` runs a single
statement that attempts the insert with ``ON CONFLICT DO NOTHING`` and, in
the same snapshot, reports who already holds either side of the pair.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from rolelink.db import persistence_errors
from rolelink.errors import AlreadyLinked, LinkedToOther, NotLinked, PersistenceFailure
from rolelink.models import IdentityLink

logger = logging.getLogger(__name__)

_LINK_SQL = """
    WITH inserted AS (
        INSERT INTO linked_identities (local_id, external_id)
        VALUES ($1, $2)
        ON CONFLICT DO NOTHING
        RETURNING local_id
    )
    SELECT
        (SELECT local_id FROM inserted) AS inserted_id,
        (SELECT local_id FROM linked_identities WHERE external_id = $2) AS external_owner,
        (SELECT external_id FROM linked_identities WHERE local_id = $1) AS current_external
"""

# One re-run covers a conflicting row that was deleted between the insert
# attempt and the snapshot lookups.
_LINK_ATTEMPTS = 2


class LinkRepository(Protocol):
    """Persistence contract for identity links."""

    async def link(self, local_id: int, external_id: int) -> IdentityLink:
        """Insert the pair or raise ``AlreadyLinked`` / ``LinkedToOther``."""
        ...

    async def unlink(self, local_id: int) -> int:
        """Delete the link and return the external id, or raise ``NotLinked``."""
        ...

    async def lookup_by_local(self, local_id: int) -> int | None:
        """Return the external id linked to *local_id*, if any."""
        ...

    async def lookup_by_external(self, external_id: int) -> int | None:
        """Return the local id linked to *external_id*, if any."""
        ...

    async def list_links(self) -> list[IdentityLink]:
        """Return every link, ordered by local id."""
        ...


class PostgresLinkStore:
    """asyncpg-backed :class:`LinkRepository`."""

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def link(self, local_id: int, external_id: int) -> IdentityLink:
        for _ in range(_LINK_ATTEMPTS):
            with persistence_errors("linking account"):
                row = await self._pool.fetchrow(_LINK_SQL, local_id, external_id)

            if row["inserted_id"] is not None:
                logger.info("Linked member %s to account %s", local_id, external_id)
                return IdentityLink(local_id=local_id, external_id=external_id)

            owner = row["external_owner"]
            if owner is not None and owner != local_id:
                raise LinkedToOther(owner_id=owner)
            if row["current_external"] is not None:
                raise AlreadyLinked(local_id)

            logger.debug(
                "Link conflict for member %s / account %s vanished; retrying",
                local_id,
                external_id,
            )

        raise PersistenceFailure(
            f"Could not resolve link conflict for member {local_id} and account {external_id}"
        )

    async def unlink(self, local_id: int) -> int:
        with persistence_errors("unlinking account"):
            external_id = await self._pool.fetchval(
                "DELETE FROM linked_identities WHERE local_id = $1 RETURNING external_id",
                local_id,
            )
        if external_id is None:
            raise NotLinked(local_id)
        logger.info("Unlinked member %s from account %s", local_id, external_id)
        return external_id

    async def lookup_by_local(self, local_id: int) -> int | None:
        with persistence_errors("looking up linked account"):
            return await self._pool.fetchval(
                "SELECT external_id FROM linked_identities WHERE local_id = $1",
                local_id,
            )

    async def lookup_by_external(self, external_id: int) -> int | None:
        with persistence_errors("looking up linked member"):
            return await self._pool.fetchval(
                "SELECT local_id FROM linked_identities WHERE external_id = $1",
                external_id,
            )

    async def list_links(self) -> list[IdentityLink]:
        with persistence_errors("listing linked accounts"):
            rows = await self._pool.fetch(
                "SELECT local_id, external_id FROM linked_identities ORDER BY local_id"
            )
        return [
            IdentityLink(local_id=row["local_id"], external_id=row["external_id"]) for row in rows
        ]
