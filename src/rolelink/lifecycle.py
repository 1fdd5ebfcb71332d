"""Link/unlink orchestration and single-member sync.

Per member the lifecycle is ``unlinked -> linked -> unlinked``. Linking
validates the handle locally, resolves it on the game server, stores the
link, then pushes the member's roles. Once the link is stored, any
operational failure while reading the mappings or pushing is reported as
:class:`LinkedButSyncFailed` and the link stays in place.
"""

from __future__ import annotations

import logging

from rolelink.directory import IdentityResolver
from rolelink.errors import (
    InvalidHandle,
    LinkedButSyncFailed,
    LinkedToOther,
    NotLinked,
    OperationalError,
)
from rolelink.gateway import AuthorizationGateway
from rolelink.models import ExternalAccount, GuildMember, SyncRequest
from rolelink.reconcile import compute, strip_all
from rolelink.registry import AuthorizationRegistry
from rolelink.store import LinkRepository

logger = logging.getLogger(__name__)

MAX_HANDLE_BYTES = 16


def validate_handle(handle: str) -> str:
    """Return the stripped handle or raise :class:`InvalidHandle`."""
    normalized = handle.strip()
    if not normalized:
        raise InvalidHandle(handle, "handle is empty")
    if not normalized.isascii():
        raise InvalidHandle(handle, "handle must be ASCII")
    if len(normalized.encode("ascii")) > MAX_HANDLE_BYTES:
        raise InvalidHandle(handle, f"handle is longer than {MAX_HANDLE_BYTES} characters")
    if not normalized.isprintable():
        raise InvalidHandle(handle, "handle contains non-printable characters")
    return normalized


class LinkLifecycleManager:
    """Entry point for link, unlink and per-member sync."""

    def __init__(
        self,
        *,
        links: LinkRepository,
        registry: AuthorizationRegistry,
        gateway: AuthorizationGateway,
        resolver: IdentityResolver,
    ) -> None:
        self._links = links
        self._registry = registry
        self._gateway = gateway
        self._resolver = resolver

    async def _describe(self, local_id: int) -> str:
        name = await self._resolver.display_name(local_id)
        return f"@{name}" if name else str(local_id)

    async def link(self, member: GuildMember, handle: str) -> ExternalAccount:
        """Link *member* to the account behind *handle* and sync their roles.

        Raises
        ------
        InvalidHandle, AccountNotFound, AlreadyLinked, LinkedToOther
            Expected refusals.
        ServerRequestError, PersistenceFailure
            The lookup or the store failed; nothing was linked.
        LinkedButSyncFailed
            The link was stored but reading the mappings or pushing the
            member's roles failed.
        """
        normalized = validate_handle(handle)
        account = await self._gateway.lookup_account(normalized)

        try:
            await self._links.link(member.id, account.account_id)
        except LinkedToOther as exc:
            raise LinkedToOther(exc.owner_id, await self._describe(exc.owner_id)) from None

        try:
            await self._push_member(member, account.account_id)
        except OperationalError as exc:
            logger.warning(
                "Linked member %s to account %s but role sync failed: %s",
                member.id,
                account.account_id,
                exc,
            )
            raise LinkedButSyncFailed(account, exc) from exc

        return account

    async def unlink(self, local_id: int) -> int:
        """Remove the link and strip every mapped grant from the account.

        Returns the external account id that was unlinked.
        """
        mappings = await self._registry.list_mappings()
        external_id = await self._links.unlink(local_id)
        await self._gateway.push([strip_all(external_id, mappings)])
        return external_id

    async def sync_member(self, member: GuildMember) -> SyncRequest:
        """Push the current keep/remove state for one linked member."""
        external_id = await self._links.lookup_by_local(member.id)
        if external_id is None:
            raise NotLinked(member.id)
        return await self._push_member(member, external_id)

    async def forget_member(self, local_id: int) -> bool:
        """Drop the link for a member who left the guild.

        Only the link is removed; mappings are untouched and nothing is
        pushed. Returns False if the member was not linked.
        """
        try:
            external_id = await self._links.unlink(local_id)
        except NotLinked:
            return False
        logger.info("Member %s left the guild; dropped link to account %s", local_id, external_id)
        return True

    async def _push_member(self, member: GuildMember, external_id: int) -> SyncRequest:
        mappings = await self._registry.list_mappings()
        request = compute(member.role_ids, external_id, mappings)
        await self._gateway.push([request])
        return request
