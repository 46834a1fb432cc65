"""Revenue event queue - claims pending events and opens per-author batches."""

from __future__ import annotations

import logging

from pagepay.interfaces.store import LedgerStore
from pagepay.models.results import AuthorGroup, ClaimedEvent

log = logging.getLogger(__name__)


def group_by_author(events: list[ClaimedEvent]) -> list[AuthorGroup]:
    """One group per author, in first-seen order."""
    groups: dict[str, AuthorGroup] = {}
    for event in events:
        author = event.author_address.strip()
        group = groups.setdefault(author, AuthorGroup(author_address=author))
        group.event_ids.append(event.id)
        group.total_amount += event.amount
    return list(groups.values())


class RevenueQueue:
    """Admission point of the payout pipeline."""

    def __init__(self, store: LedgerStore, network: str) -> None:
        self._store = store
        self._network = network

    async def claim_batch(self, limit: int) -> list[ClaimedEvent]:
        """Atomically move up to `limit` pending events to processing.

        Concurrent callers never receive the same event.
        """
        async with self._store.transaction() as uow:
            claimed = await uow.claim_pending_events(max(1, limit))
        if claimed:
            log.info("Claimed %d revenue events for settlement", len(claimed))
        return claimed

    async def open_batches(self, groups: list[AuthorGroup]) -> list[AuthorGroup]:
        """Create a `created` batch per group and link its events."""
        for group in groups:
            async with self._store.transaction() as uow:
                group.batch_id = await uow.insert_batch(
                    group.author_address,
                    group.total_amount,
                    len(group.event_ids),
                    self._network,
                )
                await uow.link_events(group.event_ids, group.batch_id)
            log.debug(
                "Opened batch #%d for %s (%d events, %d)",
                group.batch_id, group.author_address, len(group.event_ids), group.total_amount,
            )
        return groups
