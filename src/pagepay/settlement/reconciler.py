"""Settlement reconciler and stale-work reclaimer."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from pagepay.interfaces.chain import ChainQuery
from pagepay.interfaces.store import LedgerStore
from pagepay.models.config import ServiceConfig
from pagepay.models.ledger import BatchStatus
from pagepay.models.results import SettlementTxState
from pagepay.settlement.broadcaster import Heartbeat
from pagepay.storage.sqlite import format_ts

log = logging.getLogger(__name__)


class SettlementReconciler:
    """Polls broadcasted batches until the chain confirms or fails them."""

    def __init__(self, store: LedgerStore, chain: ChainQuery, config: ServiceConfig) -> None:
        self._store = store
        self._chain = chain
        self._config = config

    async def resolve_tx_state(self, tx_hash: str) -> SettlementTxState:
        """Lookup failures are transient and read as pending."""
        try:
            tx = await self._chain.get_transaction(tx_hash)
        except Exception as exc:
            log.warning("Payout status lookup for %s failed: %s", tx_hash[:16], exc)
            return SettlementTxState("pending", error=str(exc))
        if tx.status == "success":
            return SettlementTxState("confirmed")
        if tx.status == "pending":
            return SettlementTxState("pending")
        return SettlementTxState("failed", error=f"payout_tx_failed:{tx.detail or tx.status}")

    async def reconcile(
        self, limit: int | None = None, heartbeat: Heartbeat | None = None
    ) -> int:
        """Finalize or roll back broadcasted batches. Returns how many confirmed."""
        limit = max(1, limit or self._config.payouts.reconcile_limit)
        async with self._store.transaction(write=False) as uow:
            batches = await uow.list_batches(BatchStatus.BROADCASTED.value, limit)

        confirmed = 0
        for batch in batches:
            if not batch.payout_tx_hash:
                continue
            if heartbeat is not None:
                await heartbeat()
            state = await self.resolve_tx_state(batch.payout_tx_hash)
            if state.status == "pending":
                continue

            if state.status == "confirmed":
                async with self._store.transaction() as uow:
                    settled = await uow.finalize_batch(batch.id, batch.payout_tx_hash)
                log.info("Batch #%d confirmed, %d events settled", batch.id, settled)
                confirmed += 1
            else:
                reason = state.error or "Settlement transaction failed"
                async with self._store.transaction() as uow:
                    requeued = await uow.fail_broadcasted_batch(batch.id, reason)
                log.warning("Batch #%d failed (%s), %d events requeued", batch.id, reason, requeued)
        return confirmed


class StaleWorkReclaimer:
    """Returns processing claims older than the settlement timeout to the queue.

    Events of a broadcasted batch are left to the reconciler so a payout in
    flight is never paid twice.
    """

    def __init__(self, store: LedgerStore, config: ServiceConfig) -> None:
        self._store = store
        self._timeout = config.payouts.settlement_timeout

    async def reclaim(self) -> int:
        cutoff = format_ts(datetime.now(timezone.utc) - timedelta(seconds=self._timeout))
        async with self._store.transaction() as uow:
            reclaimed = await uow.reclaim_stale_events(cutoff)
        if reclaimed:
            log.warning("Requeued %d stale processing revenue events", reclaimed)
        return reclaimed
