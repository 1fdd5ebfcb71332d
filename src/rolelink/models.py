"""Shared data shapes for links, grant mappings, members and sync payloads."""

from __future__ import annotations

from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, Field, field_validator


@dataclass(frozen=True)
class IdentityLink:
    """One guild member linked to one game-server account."""

    local_id: int
    external_id: int


@dataclass(frozen=True)
class GrantMapping:
    """A guild role standing in for a server-side role grant."""

    grant_id: str
    local_role_id: int


@dataclass(frozen=True)
class GuildMember:
    """Minimal guild member record as returned by the member directory."""

    id: int
    role_ids: frozenset[int] = field(default_factory=frozenset)
    name: str | None = None


class ExternalAccount(BaseModel):
    """Account resolved from a handle by the game server's lookup endpoint."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    account_id: int
    name: str

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        return value.strip()


class SyncRequest(BaseModel):
    """Keep/remove decision for one account.

    ``keep`` and ``remove`` partition the grant ids that were mapped when the
    request was computed. Serialized with ``account_id`` as the wire key.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    external_id: int = Field(serialization_alias="account_id")
    keep: list[str] = Field(default_factory=list)
    remove: list[str] = Field(default_factory=list)


class SyncBatch(BaseModel):
    """Body of one ``sync_roles`` call."""

    model_config = ConfigDict(frozen=True)

    users: list[SyncRequest] = Field(default_factory=list)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)
