"""Author settlement pipeline - one claim/broadcast/finalize cycle per tick."""

from __future__ import annotations

import asyncio
import logging
import os
import socket

from pagepay.errors import SettlementLockLost
from pagepay.interfaces.chain import SettlementChain
from pagepay.interfaces.store import LedgerStore
from pagepay.models.config import ServiceConfig
from pagepay.models.results import SettlementReport
from pagepay.settlement.broadcaster import PayoutBroadcaster
from pagepay.settlement.queue import RevenueQueue, group_by_author
from pagepay.settlement.reconciler import SettlementReconciler, StaleWorkReclaimer

log = logging.getLogger(__name__)

SETTLEMENT_LOCK = "author-settlement"


class AuthorSettlementPipeline:
    """Runs reclaim, reconcile, claim and broadcast under one advisory lock.

    A worker that cannot take the lock skips the tick. The holder renews the
    lock in the background while the cycle runs and aborts the cycle as soon
    as a renewal fails.
    """

    def __init__(
        self,
        store: LedgerStore,
        chain: SettlementChain,
        config: ServiceConfig,
        owner: str | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._owner = owner or f"{socket.gethostname()}:{os.getpid()}:{id(self):x}"
        self._missing_config_warned = False
        self._lock_lost = False

        self.queue = RevenueQueue(store, config.stellar.caip2)
        self.broadcaster = PayoutBroadcaster(store, chain, config)
        self.reconciler = SettlementReconciler(store, chain, config)
        self.reclaimer = StaleWorkReclaimer(store, config)

    async def run_once(self, limit: int | None = None) -> SettlementReport:
        acquired = await self._store.try_advisory_lock(
            SETTLEMENT_LOCK, self._owner, self._config.payouts.lock_ttl
        )
        if not acquired:
            log.debug("Settlement lock held elsewhere, skipping cycle")
            return SettlementReport(skipped=True)

        self._lock_lost = False
        keeper = asyncio.create_task(self._keep_lock())
        try:
            return await self._run(limit or self._config.payouts.batch_limit)
        except SettlementLockLost as exc:
            log.error("Settlement cycle aborted: %s", exc)
            return SettlementReport(aborted=True)
        finally:
            keeper.cancel()
            try:
                await keeper
            except asyncio.CancelledError:
                pass
            await self._store.release_advisory_lock(SETTLEMENT_LOCK, self._owner)

    async def _keep_lock(self) -> None:
        ttl = self._config.payouts.lock_ttl
        while True:
            await asyncio.sleep(ttl / 3)
            if not await self._store.renew_advisory_lock(SETTLEMENT_LOCK, self._owner, ttl):
                self._lock_lost = True
                return

    async def _checkpoint(self) -> None:
        """Renew the lock now. Raises SettlementLockLost if it is gone."""
        if self._lock_lost or not await self._store.renew_advisory_lock(
            SETTLEMENT_LOCK, self._owner, self._config.payouts.lock_ttl
        ):
            self._lock_lost = True
            raise SettlementLockLost(f"settlement lock no longer held by {self._owner}")

    async def _run(self, limit: int) -> SettlementReport:
        reclaimed = await self.reclaimer.reclaim()
        confirmed = await self.reconciler.reconcile(heartbeat=self._checkpoint)

        if not self._payouts_ready():
            return SettlementReport(reclaimed=reclaimed, confirmed=confirmed)

        await self._checkpoint()
        claimed = await self.queue.claim_batch(limit)
        if not claimed:
            return SettlementReport(reclaimed=reclaimed, confirmed=confirmed)

        groups = await self.queue.open_batches(group_by_author(claimed))
        report = await self.broadcaster.broadcast(groups, heartbeat=self._checkpoint)
        report.reclaimed = reclaimed
        report.confirmed = confirmed

        log.info(
            "Settlement cycle: %d events (%d stroops) in %d batches, %d failed",
            report.event_count, report.total_amount,
            report.batches_broadcasted, report.batches_failed,
        )
        return report

    def _payouts_ready(self) -> bool:
        if self._config.payouts_enabled:
            return True
        if not self._missing_config_warned:
            log.warning(
                "Author payout broadcaster disabled: set treasury_address and "
                "PAGEPAY_TREASURY_SECRET to enable on-chain author payouts"
            )
            self._missing_config_warned = True
        return False
