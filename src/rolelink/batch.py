"""Whole-guild role reconciliation.

Links and mappings are loaded once, the guild is walked page by page, and
every linked member contributes one :class:`SyncRequest` to a single batch
that is pushed in one call at the end.

Linked ids are kept in a sorted list so each member costs one binary search
instead of a scan of all links.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass

from rolelink.directory import MAX_PAGE_SIZE, MemberDirectory, iter_member_pages
from rolelink.errors import DirectoryError
from rolelink.gateway import AuthorizationGateway
from rolelink.models import SyncRequest
from rolelink.reconcile import compute
from rolelink.registry import AuthorizationRegistry
from rolelink.store import LinkRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchSyncReport:
    """Outcome of one full-guild sync."""

    accounts_synced: int
    members_scanned: int
    pages_scanned: int
    aborted: bool = False


class BatchReconciler:
    """Runs the full-guild sync against one directory and one gateway."""

    def __init__(
        self,
        *,
        links: LinkRepository,
        registry: AuthorizationRegistry,
        directory: MemberDirectory,
        gateway: AuthorizationGateway,
        page_size: int = MAX_PAGE_SIZE,
    ) -> None:
        self._links = links
        self._registry = registry
        self._directory = directory
        self._gateway = gateway
        self._page_size = page_size

    async def collect(self) -> tuple[list[SyncRequest], BatchSyncReport]:
        """Walk the guild and build the sync batch without pushing it.

        A page fetch failure stops the walk; whatever was collected up to
        that point is returned and the report is marked ``aborted``.
        """
        links = await self._links.list_links()
        mappings = await self._registry.list_mappings()

        ordered = sorted(links, key=lambda link: link.local_id)
        linked_ids = [link.local_id for link in ordered]
        external_ids = [link.external_id for link in ordered]

        requests: list[SyncRequest] = []
        members_scanned = 0
        pages_scanned = 0
        aborted = False

        try:
            async for page in iter_member_pages(self._directory, page_size=self._page_size):
                pages_scanned += 1
                members_scanned += len(page)
                for member in page:
                    index = bisect.bisect_left(linked_ids, member.id)
                    if index == len(linked_ids) or linked_ids[index] != member.id:
                        continue
                    requests.append(compute(member.role_ids, external_ids[index], mappings))
        except DirectoryError as exc:
            aborted = True
            logger.warning(
                "Failed to fetch guild members after %d page(s): %s; syncing what was collected",
                pages_scanned,
                exc,
            )

        report = BatchSyncReport(
            accounts_synced=len(requests),
            members_scanned=members_scanned,
            pages_scanned=pages_scanned,
            aborted=aborted,
        )
        return requests, report

    async def run(self) -> BatchSyncReport:
        """Collect the batch and push it in exactly one call."""
        requests, report = await self.collect()
        await self._gateway.push(requests)
        logger.info(
            "Synced roles for %d linked account(s) across %d member(s)%s",
            report.accounts_synced,
            report.members_scanned,
            " (member scan aborted early)" if report.aborted else "",
        )
        return report
