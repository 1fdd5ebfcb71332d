"""Pure keep/remove computation for a single account.

No I/O happens here. Both functions walk the mappings in the order given, so
identical inputs always produce identical ``SyncRequest`` objects (and
identical JSON bodies).
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Iterable

from rolelink.models import GrantMapping, SyncRequest

logger = logging.getLogger(__name__)


def compute(
    member_roles: Collection[int],
    linked_external_id: int,
    mappings: Iterable[GrantMapping],
) -> SyncRequest:
    """Split every mapped grant into ``keep`` or ``remove`` for one account.

    A grant is kept when the member currently holds the mapped guild role and
    removed otherwise. Every mapping lands in exactly one of the two lists.
    """
    roles = member_roles if isinstance(member_roles, set | frozenset) else set(member_roles)
    keep: list[str] = []
    remove: list[str] = []

    for mapping in mappings:
        if mapping.local_role_id in roles:
            keep.append(mapping.grant_id)
        else:
            remove.append(mapping.grant_id)

    logger.debug(
        "Computed role sync for account %s: keep=%s remove=%s",
        linked_external_id,
        keep,
        remove,
    )
    return SyncRequest(external_id=linked_external_id, keep=keep, remove=remove)


def strip_all(linked_external_id: int, mappings: Iterable[GrantMapping]) -> SyncRequest:
    """Request that removes every mapped grant, regardless of guild roles."""
    return SyncRequest(
        external_id=linked_external_id,
        keep=[],
        remove=[mapping.grant_id for mapping in mappings],
    )
