"""Worker daemon - deposit reconciliation and author settlement loops."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Awaitable, Callable

from pagepay.interfaces.chain import SettlementChain
from pagepay.ledger.balances import BalanceStore
from pagepay.ledger.deposits import DepositVerifier
from pagepay.ledger.entitlements import EntitlementEngine
from pagepay.ledger.withdrawals import WithdrawalService
from pagepay.models.config import ServiceConfig
from pagepay.settlement.pipeline import AuthorSettlementPipeline
from pagepay.stellar.chain import StellarChainClient
from pagepay.storage.catalog import SQLiteCatalog
from pagepay.storage.sqlite import SQLiteLedgerStore

log = logging.getLogger(__name__)


class LedgerServices:
    """All ledger components wired over one store and one chain client."""

    def __init__(self, cfg: ServiceConfig, chain: SettlementChain | None = None) -> None:
        self.cfg = cfg
        self.store = SQLiteLedgerStore(cfg.storage.db_path, cfg.storage.busy_timeout)
        self.catalog = SQLiteCatalog(self.store)
        self.chain = chain or StellarChainClient(cfg.stellar)
        self.balances = BalanceStore(self.store)
        self.entitlements = EntitlementEngine(self.store, self.catalog, cfg)
        self.deposits = DepositVerifier(self.store, self.chain, cfg)
        self.withdrawals = WithdrawalService(self.store)
        self.settlement = AuthorSettlementPipeline(self.store, self.chain, cfg)

    async def open(self) -> None:
        await self.store.initialize()

    async def close(self) -> None:
        await self.store.close()
        close_chain = getattr(self.chain, "close", None)
        if close_chain is not None:
            await close_chain()


class LedgerDaemon:
    """Runs the periodic workers until stopped.

    Both loops run once immediately, then on their configured interval.
    """

    def __init__(self, cfg: ServiceConfig, chain: SettlementChain | None = None) -> None:
        self._cfg = cfg
        self._stopping = asyncio.Event()
        self.services = LedgerServices(cfg, chain)

    async def start(self) -> None:
        log.info("Starting pagepay worker daemon")
        log.info("  Network: %s", self._cfg.stellar.caip2)
        log.info("  Horizon: %s", self._cfg.stellar.horizon_url)
        log.info("  Treasury: %s", self._cfg.stellar.treasury_address or "(not configured)")
        log.info("  Database: %s", self._cfg.storage.db_path)

        await self.services.open()
        try:
            if not self._cfg.daemon.workers_enabled:
                log.warning("Workers disabled by configuration, nothing to run")
                return
            await asyncio.gather(
                self._loop(
                    "deposit-reconcile",
                    self._reconcile_deposits,
                    self._cfg.daemon.reconcile_interval,
                ),
                self._loop(
                    "author-settlement",
                    self._settle_authors,
                    self._cfg.daemon.settlement_interval,
                ),
            )
        finally:
            await self.services.close()
            log.info("Daemon shut down cleanly")

    async def stop(self) -> None:
        log.info("Stop requested")
        self._stopping.set()

    async def _reconcile_deposits(self) -> None:
        await self.services.deposits.reconcile_pending_intents()

    async def _settle_authors(self) -> None:
        report = await self.services.settlement.run_once()
        if report.skipped:
            log.debug("Settlement tick skipped, lock held by another worker")

    async def _loop(
        self, name: str, work: Callable[[], Awaitable[None]], interval: int
    ) -> None:
        while not self._stopping.is_set():
            delay = interval
            try:
                await work()
            except asyncio.CancelledError:
                log.info("%s loop cancelled", name)
                break
            except Exception as exc:
                log.error("%s loop error: %s", name, exc, exc_info=True)
                delay = self._cfg.daemon.error_backoff
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass


async def run_daemon(cfg: ServiceConfig) -> None:
    """Entry point for running the daemon."""
    daemon = LedgerDaemon(cfg)

    loop = asyncio.get_running_loop()

    def _signal_handler():
        asyncio.ensure_future(daemon.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    await daemon.start()
