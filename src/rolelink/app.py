"""Service wiring: one place that builds and tears down the runtime graph.

The CLI opens services once per command. A long-running bot opens them once
at startup and forwards every Discord gateway dispatch to
``services.events.dispatch(event_type, payload)``, the single entry point for
membership changes (see :mod:`rolelink.events`).
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from rolelink.batch import BatchReconciler
from rolelink.config import RolelinkConfig
from rolelink.core.logging import bind_guild
from rolelink.db import Database
from rolelink.directory import DiscordGuildDirectory
from rolelink.events import MembershipEventHandler
from rolelink.gateway import AuthorizationGateway
from rolelink.lifecycle import LinkLifecycleManager
from rolelink.registry import AuthorizationRegistry, PostgresGrantMappingStore
from rolelink.store import PostgresLinkStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: RolelinkConfig
    db: Database
    links: PostgresLinkStore
    registry: AuthorizationRegistry
    gateway: AuthorizationGateway
    directory: DiscordGuildDirectory
    manager: LinkLifecycleManager
    reconciler: BatchReconciler
    events: MembershipEventHandler


@asynccontextmanager
async def open_services(config: RolelinkConfig) -> AsyncIterator[Services]:
    """Connect to the database, load the watched-role cache and yield services.

    Log records emitted inside the block carry ``config.guild_id``. The pool
    and both HTTP clients are closed on exit, even on error.
    """
    bind_guild(config.guild_id)
    db = config.database()
    await db.provision()
    pool = await db.connect()

    gateway = AuthorizationGateway(
        base_url=config.base_url,
        server_password=config.server_password,
    )
    directory = DiscordGuildDirectory(bot_token=config.discord_token, guild_id=config.guild_id)
    try:
        links = PostgresLinkStore(pool)
        registry = AuthorizationRegistry(PostgresGrantMappingStore(pool))
        await registry.load()

        manager = LinkLifecycleManager(
            links=links,
            registry=registry,
            gateway=gateway,
            resolver=directory,
        )
        yield Services(
            config=config,
            db=db,
            links=links,
            registry=registry,
            gateway=gateway,
            directory=directory,
            manager=manager,
            reconciler=BatchReconciler(
                links=links,
                registry=registry,
                directory=directory,
                gateway=gateway,
                page_size=config.page_size,
            ),
            events=MembershipEventHandler(
                guild_id=config.guild_id,
                manager=manager,
                registry=registry,
            ),
        )
    finally:
        await directory.shutdown()
        await gateway.shutdown()
        await db.close()
        logger.debug("Services closed")
