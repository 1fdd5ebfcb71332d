"""Error taxonomy for linking and role reconciliation.

Two families:

- ``UserFacingError``: expected outcomes (bad handle, already linked, ...).
  Surfaced to the caller as-is and never logged as failures.
- ``OperationalError``: transport, remote, persistence and directory
  failures. Surfaced as a generic failure and logged for investigation.

``LinkedButSyncFailed`` sits outside both: the link is durable, only the
follow-up role push failed.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rolelink.models import ExternalAccount


class RolelinkError(Exception):
    """Base error for the rolelink package."""


# ---------------------------------------------------------------------------
# Expected, user-facing outcomes
# ---------------------------------------------------------------------------


class UserFacingError(RolelinkError):
    """An expected refusal that should be shown to the user verbatim."""


class AlreadyLinked(UserFacingError):
    """The local identity already has a linked account."""

    def __init__(self, local_id: int) -> None:
        self.local_id = local_id
        super().__init__(f"Member {local_id} is already linked")


class LinkedToOther(UserFacingError):
    """The external account is linked to a different local identity.

    ``owner`` is a display string for the owning identity (``@name`` when it
    could be resolved, otherwise the raw id).
    """

    def __init__(self, owner_id: int, owner: str | None = None) -> None:
        self.owner_id = owner_id
        self.owner = owner if owner is not None else str(owner_id)
        super().__init__(f"Account is already linked to another member ({self.owner})")


class NotLinked(UserFacingError):
    """The local identity has no linked account."""

    def __init__(self, local_id: int) -> None:
        self.local_id = local_id
        super().__init__(f"Member {local_id} is not linked")


class InvalidHandle(UserFacingError):
    """The supplied account handle failed local validation."""

    def __init__(self, handle: str, reason: str) -> None:
        self.handle = handle
        self.reason = reason
        super().__init__(f"Invalid account handle: {reason}")


class AccountNotFound(UserFacingError):
    """The game server has no account with the given handle."""

    def __init__(self, handle: str) -> None:
        self.handle = handle
        super().__init__(f"No account found for {handle!r}")


class GrantAlreadyMapped(UserFacingError):
    """A mapping for this grant id already exists."""

    def __init__(self, grant_id: str) -> None:
        self.grant_id = grant_id
        super().__init__(f"Grant {grant_id!r} is already mapped")


class InvalidGrantId(UserFacingError):
    """The supplied grant id is blank."""

    def __init__(self, grant_id: str) -> None:
        self.grant_id = grant_id
        super().__init__("Grant id must not be empty")


class MappingNotFound(UserFacingError):
    """No mapping matched the given grant id or role id."""

    def __init__(self, key: str | int) -> None:
        self.key = key
        super().__init__(f"No mapping found for {key!r}")


class MemberNotInGuild(UserFacingError):
    """The member directory has no such member."""

    def __init__(self, local_id: int) -> None:
        self.local_id = local_id
        super().__init__(f"Member {local_id} is not in the guild")


# ---------------------------------------------------------------------------
# Unexpected, operational failures
# ---------------------------------------------------------------------------


class OperationalError(RolelinkError):
    """An unexpected failure that operators need to look at."""


class ServerRequestError(OperationalError):
    """Base for failures talking to the game server."""


class TransportFailure(ServerRequestError):
    """The game server could not be reached."""


class RemoteRejected(ServerRequestError):
    """The game server answered with a non-success status."""

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Server returned error (code {status_code}): {message}")


class MalformedResponse(ServerRequestError):
    """A success response body could not be parsed."""

    def __init__(self, body: str) -> None:
        self.body = body
        super().__init__(f"Server returned unparsable data: {body[:200]!r}")


class PersistenceFailure(OperationalError):
    """The database rejected or failed an operation."""


class DirectoryError(OperationalError):
    """The guild member directory could not be read."""


# ---------------------------------------------------------------------------
# Partial success
# ---------------------------------------------------------------------------


class LinkedButSyncFailed(RolelinkError):
    """The link was stored but syncing the member's roles failed.

    The link is not rolled back; re-running a sync for the member is safe.
    """

    def __init__(self, account: ExternalAccount, error: OperationalError) -> None:
        self.account = account
        self.error = error
        super().__init__(
            f"Linked to account {account.name} ({account.account_id}) but role sync failed: "
            f"{error}"
        )
