"""Guild member directory: paged enumeration and display-name lookup.

The batch sync walks the guild through :func:`iter_member_pages`, which asks
a :class:`MemberDirectory` for one page at a time using the last member id
seen as the cursor. Restarting the walk means calling it again.

:class:`DiscordGuildDirectory` is the production directory, talking to the
Discord REST API with a bot token.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any, Protocol

import httpx

from rolelink.errors import DirectoryError
from rolelink.models import GuildMember

logger = logging.getLogger(__name__)

DISCORD_API_BASE = "https://discord.com/api/v10"
MAX_PAGE_SIZE = 1000


class MemberDirectory(Protocol):
    """Read access to the guild's member list."""

    async def list_members(self, *, after: int | None, limit: int) -> list[GuildMember]:
        """Return up to *limit* members with id greater than *after*, ascending."""
        ...

    async def fetch_member(self, local_id: int) -> GuildMember | None:
        """Return one member, or ``None`` if they are not in the guild."""
        ...


class IdentityResolver(Protocol):
    """Turns a member id into something a human recognizes."""

    async def display_name(self, local_id: int) -> str | None:
        """Return the member's user name, or ``None`` if it can't be found."""
        ...


async def iter_member_pages(
    directory: MemberDirectory,
    *,
    page_size: int = MAX_PAGE_SIZE,
) -> AsyncIterator[list[GuildMember]]:
    """Yield non-empty member pages until the directory returns an empty one.

    Errors from the directory propagate to the consumer; pages already
    yielded stay valid.
    """
    after: int | None = None
    while True:
        page = await directory.list_members(after=after, limit=page_size)
        if not page:
            return
        after = page[-1].id
        yield page


def parse_member(payload: dict[str, Any]) -> GuildMember | None:
    user = payload.get("user")
    if not isinstance(user, dict):
        return None
    try:
        member_id = int(user["id"])
    except (KeyError, TypeError, ValueError):
        return None
    raw_roles = payload.get("roles")
    role_ids: set[int] = set()
    if isinstance(raw_roles, list):
        for raw in raw_roles:
            try:
                role_ids.add(int(raw))
            except (TypeError, ValueError):
                continue
    name = user.get("username")
    return GuildMember(
        id=member_id,
        role_ids=frozenset(role_ids),
        name=name if isinstance(name, str) else None,
    )


class DiscordGuildDirectory:
    """Discord REST member directory that also resolves display names."""

    def __init__(
        self,
        *,
        bot_token: str,
        guild_id: int,
        api_base: str = DISCORD_API_BASE,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._guild_id = guild_id
        self._api_base = api_base.rstrip("/")
        self._auth_header = f"Bot {bot_token}"
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client
            if http_client is not None
            else httpx.AsyncClient(timeout=httpx.Timeout(20.0, connect=10.0))
        )
        self._names: dict[int, str] = {}

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        try:
            return await self._http_client.get(
                f"{self._api_base}{path}",
                params=params,
                headers={"Authorization": self._auth_header},
            )
        except httpx.HTTPError as exc:
            raise DirectoryError(f"Discord request to {path} failed: {exc}") from exc

    async def list_members(self, *, after: int | None, limit: int) -> list[GuildMember]:
        params: dict[str, Any] = {"limit": max(1, min(limit, MAX_PAGE_SIZE))}
        if after is not None:
            params["after"] = str(after)
        response = await self._get(f"/guilds/{self._guild_id}/members", params)
        if not response.is_success:
            raise DirectoryError(
                f"Failed to fetch guild members (status {response.status_code})"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise DirectoryError("Discord returned invalid JSON for guild members") from exc
        if not isinstance(payload, list):
            raise DirectoryError("Discord guild members payload must be a JSON array")

        members: list[GuildMember] = []
        for item in payload:
            if not isinstance(item, dict):
                continue
            member = parse_member(item)
            if member is None:
                logger.warning("Skipping guild member without a usable user id")
                continue
            if member.name is not None:
                self._names[member.id] = member.name
            members.append(member)
        return members

    async def fetch_member(self, local_id: int) -> GuildMember | None:
        response = await self._get(f"/guilds/{self._guild_id}/members/{local_id}")
        if response.status_code == 404:
            return None
        if not response.is_success:
            raise DirectoryError(
                f"Failed to fetch guild member {local_id} (status {response.status_code})"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise DirectoryError("Discord returned invalid JSON for guild member") from exc
        member = parse_member(payload) if isinstance(payload, dict) else None
        if member is None:
            raise DirectoryError(f"Discord guild member payload for {local_id} is unusable")
        if member.name is not None:
            self._names[member.id] = member.name
        return member

    async def display_name(self, local_id: int) -> str | None:
        cached = self._names.get(local_id)
        if cached is not None:
            return cached
        try:
            response = await self._get(f"/users/{local_id}")
        except DirectoryError as exc:
            logger.debug("Could not resolve user %s: %s", local_id, exc)
            return None
        if not response.is_success:
            return None
        try:
            payload = response.json()
        except ValueError:
            return None
        name = payload.get("username") if isinstance(payload, dict) else None
        if not isinstance(name, str) or not name:
            return None
        self._names[local_id] = name
        return name

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
