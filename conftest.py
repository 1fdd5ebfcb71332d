"""Root conftest: in-memory doubles shared by every test module.

The doubles mirror the production contracts closely enough that the
lifecycle, batch and event code run against them unchanged. The game server
is faked at the HTTP layer with ``httpx.MockTransport`` so the real
:class:`AuthorizationGateway` is exercised end to end.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx
import pytest

from rolelink.errors import AlreadyLinked, DirectoryError, LinkedToOther, NotLinked
from rolelink.gateway import LOOKUP_PATH, SYNC_ROLES_PATH, AuthorizationGateway
from rolelink.lifecycle import LinkLifecycleManager
from rolelink.models import GrantMapping, GuildMember, IdentityLink
from rolelink.registry import AuthorizationRegistry

GAME_SERVER_URL = "http://game.test"
SERVER_PASSWORD = "s3cret"


class InMemoryLinkStore:
    """Dict-backed link repository with the same conflict rules as Postgres."""

    def __init__(self) -> None:
        self.by_local: dict[int, int] = {}

    async def link(self, local_id: int, external_id: int) -> IdentityLink:
        for owner, linked in self.by_local.items():
            if linked == external_id and owner != local_id:
                raise LinkedToOther(owner_id=owner)
        if local_id in self.by_local:
            raise AlreadyLinked(local_id)
        self.by_local[local_id] = external_id
        return IdentityLink(local_id=local_id, external_id=external_id)

    async def unlink(self, local_id: int) -> int:
        if local_id not in self.by_local:
            raise NotLinked(local_id)
        return self.by_local.pop(local_id)

    async def lookup_by_local(self, local_id: int) -> int | None:
        return self.by_local.get(local_id)

    async def lookup_by_external(self, external_id: int) -> int | None:
        for local_id, linked in self.by_local.items():
            if linked == external_id:
                return local_id
        return None

    async def list_links(self) -> list[IdentityLink]:
        return [
            IdentityLink(local_id=local_id, external_id=external_id)
            for local_id, external_id in sorted(self.by_local.items())
        ]


class InMemoryGrantMappingStore:
    """List-backed grant mapping repository preserving insertion order."""

    def __init__(self, mappings: list[GrantMapping] | None = None) -> None:
        self.mappings: list[GrantMapping] = list(mappings or [])
        self.fail_with: Exception | None = None

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def insert(self, grant_id: str, local_role_id: int) -> bool:
        self._check()
        if any(m.grant_id == grant_id for m in self.mappings):
            return False
        self.mappings.append(GrantMapping(grant_id=grant_id, local_role_id=local_role_id))
        return True

    async def delete_by_grant(self, grant_id: str) -> GrantMapping | None:
        self._check()
        for mapping in self.mappings:
            if mapping.grant_id == grant_id:
                self.mappings.remove(mapping)
                return mapping
        return None

    async def delete_by_role(self, local_role_id: int) -> list[GrantMapping]:
        self._check()
        removed = [m for m in self.mappings if m.local_role_id == local_role_id]
        self.mappings = [m for m in self.mappings if m.local_role_id != local_role_id]
        return removed

    async def role_is_mapped(self, local_role_id: int) -> bool:
        self._check()
        return any(m.local_role_id == local_role_id for m in self.mappings)

    async def list_all(self) -> list[GrantMapping]:
        self._check()
        return list(self.mappings)


class FakeDirectory:
    """Guild member directory over a fixed member list.

    ``fail_on_page`` makes the n-th ``list_members`` call (1-based) raise
    :class:`DirectoryError`.
    """

    def __init__(
        self,
        members: list[GuildMember] | None = None,
        names: dict[int, str] | None = None,
    ) -> None:
        self.members = sorted(members or [], key=lambda m: m.id)
        self.names = dict(names or {})
        self.fail_on_page: int | None = None
        self.page_calls: list[tuple[int | None, int]] = []
        self.name_calls: list[int] = []

    async def list_members(self, *, after: int | None, limit: int) -> list[GuildMember]:
        self.page_calls.append((after, limit))
        if self.fail_on_page is not None and len(self.page_calls) == self.fail_on_page:
            raise DirectoryError("simulated page failure")
        start = [m for m in self.members if after is None or m.id > after]
        return start[:limit]

    async def fetch_member(self, local_id: int) -> GuildMember | None:
        for member in self.members:
            if member.id == local_id:
                return member
        return None

    async def display_name(self, local_id: int) -> str | None:
        self.name_calls.append(local_id)
        return self.names.get(local_id)


@dataclass
class GameServerDouble:
    """Fake game server speaking the lookup and sync_roles wire format."""

    accounts: dict[str, dict[str, Any]] = field(default_factory=dict)
    sync_status: int = 200
    sync_body: str = ""
    lookup_status: int | None = None
    lookup_body: str | None = None
    raise_transport_error: bool = False
    requests: list[httpx.Request] = field(default_factory=list)
    pushed_batches: list[list[dict[str, Any]]] = field(default_factory=list)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_transport_error:
            raise httpx.ConnectError("connection refused", request=request)

        if request.url.path == LOOKUP_PATH:
            if self.lookup_status is not None:
                return httpx.Response(self.lookup_status, text=self.lookup_body or "")
            account = self.accounts.get(request.url.params.get("username", ""))
            if account is None:
                return httpx.Response(404, text="not found")
            if self.lookup_body is not None:
                return httpx.Response(200, text=self.lookup_body)
            return httpx.Response(200, json=account)

        if request.url.path == SYNC_ROLES_PATH:
            if self.sync_status >= 400:
                return httpx.Response(self.sync_status, text=self.sync_body)
            self.pushed_batches.append(json.loads(request.content)["users"])
            return httpx.Response(self.sync_status, text=self.sync_body)

        return httpx.Response(404)

    def lookup_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == LOOKUP_PATH]

    def gateway(self) -> AuthorizationGateway:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return AuthorizationGateway(
            base_url=GAME_SERVER_URL,
            server_password=SERVER_PASSWORD,
            http_client=client,
        )


@pytest.fixture
def link_store() -> InMemoryLinkStore:
    return InMemoryLinkStore()


@pytest.fixture
def mapping_store() -> InMemoryGrantMappingStore:
    return InMemoryGrantMappingStore(
        [
            GrantMapping(grant_id="g1", local_role_id=101),
            GrantMapping(grant_id="g2", local_role_id=102),
        ]
    )


@pytest.fixture
async def registry(mapping_store: InMemoryGrantMappingStore) -> AuthorizationRegistry:
    reg = AuthorizationRegistry(mapping_store)
    await reg.load()
    return reg


@pytest.fixture
def game_server() -> GameServerDouble:
    return GameServerDouble(
        accounts={
            "alice": {"account_id": 7001, "name": "Alice"},
            "bob": {"account_id": 7002, "name": "Bob"},
        }
    )


@pytest.fixture
async def gateway(game_server: GameServerDouble) -> AsyncIterator[AuthorizationGateway]:
    gw = game_server.gateway()
    yield gw
    await gw._http_client.aclose()


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory(
        members=[
            GuildMember(id=1, role_ids=frozenset({101})),
            GuildMember(id=2, role_ids=frozenset({101, 102, 999})),
            GuildMember(id=3, role_ids=frozenset()),
        ],
        names={1: "member_one", 2: "member_two"},
    )


@pytest.fixture
def manager(
    link_store: InMemoryLinkStore,
    registry: AuthorizationRegistry,
    gateway: AuthorizationGateway,
    directory: FakeDirectory,
) -> LinkLifecycleManager:
    return LinkLifecycleManager(
        links=link_store,
        registry=registry,
        gateway=gateway,
        resolver=directory,
    )
