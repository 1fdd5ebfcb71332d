"""Membership-change handling for Discord gateway dispatches.

Only two dispatch types matter:

- ``GUILD_MEMBER_UPDATE``: if the member's watched roles changed since the
  last update we saw (or we have never seen them), and they are linked,
  push their roles.
- ``GUILD_MEMBER_REMOVE``: drop the member's link. Grant mappings are left
  alone and nothing is pushed.

Handlers never raise into the gateway loop; operational failures are logged.

This package does not hold a gateway websocket itself. Whatever process owns
the Discord gateway connection feeds each dispatch (``t`` and ``d`` of the
frame) to ``Services.events.dispatch(event_type, payload)``, where
``Services`` comes from :func:`rolelink.app.open_services`.
"""

from __future__ import annotations

import logging
from typing import Any

from rolelink.directory import parse_member
from rolelink.errors import NotLinked, OperationalError
from rolelink.lifecycle import LinkLifecycleManager
from rolelink.models import GuildMember
from rolelink.registry import AuthorizationRegistry

logger = logging.getLogger(__name__)

MEMBER_UPDATE = "GUILD_MEMBER_UPDATE"
MEMBER_REMOVE = "GUILD_MEMBER_REMOVE"

_HANDLED_EVENT_TYPES = frozenset({MEMBER_UPDATE, MEMBER_REMOVE})


class MembershipEventHandler:
    """Reacts to member updates and departures in the configured guild."""

    def __init__(
        self,
        *,
        guild_id: int,
        manager: LinkLifecycleManager,
        registry: AuthorizationRegistry,
    ) -> None:
        self._guild_id = guild_id
        self._manager = manager
        self._registry = registry
        # Last watched-role set seen per member.
        self._last_watched: dict[int, frozenset[int]] = {}

    async def dispatch(self, event_type: str, payload: dict[str, Any]) -> None:
        """Route one gateway dispatch to its handler."""
        if event_type not in _HANDLED_EVENT_TYPES:
            return
        if str(payload.get("guild_id")) != str(self._guild_id):
            return

        member = parse_member(payload)
        if member is None:
            logger.warning("Ignoring %s without a usable user id", event_type)
            return

        if event_type == MEMBER_UPDATE:
            await self.on_member_update(member)
        else:
            await self.on_member_remove(member.id)

    async def on_member_update(self, member: GuildMember) -> bool:
        """Sync the member if their watched roles changed. Returns True if pushed."""
        watched = self._registry.watched_among(member.role_ids)
        previous = self._last_watched.get(member.id)
        self._last_watched[member.id] = watched
        if previous is not None and previous == watched:
            return False

        try:
            await self._manager.sync_member(member)
        except NotLinked:
            return False
        except OperationalError as exc:
            logger.warning("Failed to sync roles for member %s: %s", member.id, exc)
            # Forget the snapshot so the next update retries the push.
            self._last_watched.pop(member.id, None)
            return False
        logger.info("Synced roles for member %s after role change", member.id)
        return True

    async def on_member_remove(self, local_id: int) -> bool:
        """Drop the departing member's link. Returns True if one existed."""
        self._last_watched.pop(local_id, None)
        try:
            return await self._manager.forget_member(local_id)
        except OperationalError as exc:
            logger.warning("Failed to drop link for departed member %s: %s", local_id, exc)
            return False
