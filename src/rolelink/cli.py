"""CLI for rolelink: link guild members to game-server accounts and sync roles."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable

import click

from rolelink import __version__
from rolelink.app import Services, open_services
from rolelink.config import ConfigError, RolelinkConfig, logging_config_from_env
from rolelink.core.logging import configure_logging
from rolelink.errors import LinkedButSyncFailed, MemberNotInGuild, UserFacingError
from rolelink.migrations import run_migrations
from rolelink.models import GuildMember

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = ":x: An internal error occurred. Check the logs for details."

Action = Callable[[Services], Awaitable[str]]


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """rolelink: keep game-server role grants in step with guild roles."""
    try:
        log_config = logging_config_from_env()
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)
    configure_logging(log_config)


def _load_config() -> RolelinkConfig:
    """Load the full configuration and tag logs with the guild it serves."""
    try:
        config = RolelinkConfig.from_env()
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)
    configure_logging(
        config.logging,
        guild_id=config.guild_id,
        secrets=(config.discord_token, config.server_password),
    )
    return config


def _execute(action: Action) -> None:
    """Run *action* against freshly opened services and report the outcome.

    Exit status is 0 on success (including a link whose role push failed)
    and 1 for refusals and internal errors.
    """
    config = _load_config()

    async def _main() -> str:
        async with open_services(config) as services:
            return await action(services)

    try:
        message = asyncio.run(_main())
    except UserFacingError as exc:
        click.echo(f":x: {exc}")
        sys.exit(1)
    except LinkedButSyncFailed as exc:
        click.echo(
            f"✅ Linked to account {exc.account.name} ({exc.account.account_id}), "
            "but syncing roles failed. Run `rolelink sync` for this member to retry."
        )
        return
    except Exception:
        logger.exception("Command failed")
        click.echo(INTERNAL_ERROR_MESSAGE)
        sys.exit(1)
    click.echo(message)


async def _require_member(services: Services, member_id: int) -> GuildMember:
    member = await services.directory.fetch_member(member_id)
    if member is None:
        raise MemberNotInGuild(member_id)
    return member


@cli.command()
def migrate() -> None:
    """Create the database if needed and apply all migrations."""
    config = _load_config()
    db = config.database()
    try:
        asyncio.run(db.provision())
        run_migrations(db.url)
    except Exception:
        logger.exception("Migration failed")
        click.echo(INTERNAL_ERROR_MESSAGE)
        sys.exit(1)
    click.echo(f"✅ Database {db.db_name} is up to date.")


@cli.command()
@click.argument("member_id", type=int)
@click.argument("handle")
def link(member_id: int, handle: str) -> None:
    """Link MEMBER_ID to the game-server account named HANDLE."""

    async def _link(services: Services) -> str:
        member = await _require_member(services, member_id)
        account = await services.manager.link(member, handle)
        return f"✅ Linked {member_id} to account {account.name} ({account.account_id})!"

    _execute(_link)


@cli.command()
@click.argument("member_id", type=int)
def unlink(member_id: int) -> None:
    """Unlink MEMBER_ID and strip every mapped grant from their account."""

    async def _unlink(services: Services) -> str:
        external_id = await services.manager.unlink(member_id)
        return f"✅ Unlinked {member_id} from account {external_id}."

    _execute(_unlink)


@cli.command()
@click.argument("member_id", type=int)
def sync(member_id: int) -> None:
    """Push MEMBER_ID's current roles to the game server."""

    async def _sync(services: Services) -> str:
        member = await _require_member(services, member_id)
        await services.manager.sync_member(member)
        return (
            f"✅ Successfully synced {member_id}'s roles! If they were already online, "
            "they might need to reconnect to see the changes."
        )

    _execute(_sync)


@cli.command("sync-all")
def sync_all() -> None:
    """Push roles for every linked member of the guild in one batch."""

    async def _sync_all(services: Services) -> str:
        report = await services.reconciler.run()
        suffix = " (member scan stopped early, see logs)" if report.aborted else ""
        return f"✅ Successfully synced roles of {report.accounts_synced} people!{suffix}"

    _execute(_sync_all)


@cli.group()
def role() -> None:
    """Manage guild role to server grant mappings."""


@role.command("add")
@click.argument("role_id", type=int)
@click.argument("grant_id")
def role_add(role_id: int, grant_id: str) -> None:
    """Map guild role ROLE_ID to server grant GRANT_ID."""

    async def _add(services: Services) -> str:
        mapping = await services.registry.add_mapping(grant_id, role_id)
        return f"✅ Linked role {mapping.local_role_id} to grant `{mapping.grant_id}`."

    _execute(_add)


@role.command("remove")
@click.argument("role_id", type=int)
def role_remove(role_id: int) -> None:
    """Remove every mapping for guild role ROLE_ID."""

    async def _remove(services: Services) -> str:
        removed = await services.registry.remove_mapping_by_role(role_id)
        grants = ", ".join(f"`{m.grant_id}`" for m in removed)
        return f"✅ Removed role {role_id} ({grants})."

    _execute(_remove)


@role.command("remove-id")
@click.argument("grant_id")
def role_remove_id(grant_id: str) -> None:
    """Remove the mapping for server grant GRANT_ID."""

    async def _remove(services: Services) -> str:
        mapping = await services.registry.remove_mapping(grant_id)
        return f"✅ Removed grant `{mapping.grant_id}`."

    _execute(_remove)


@role.command("list")
def role_list() -> None:
    """List all role mappings."""

    async def _list(services: Services) -> str:
        mappings = await services.registry.list_mappings()
        if not mappings:
            return "No roles are linked."
        lines = ["List of linked roles:", ""]
        lines.extend(f"* {m.local_role_id} - `{m.grant_id}`" for m in mappings)
        return "\n".join(lines)

    _execute(_list)


if __name__ == "__main__":
    cli()
