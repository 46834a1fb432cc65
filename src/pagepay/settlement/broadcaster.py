"""Payout broadcaster - one payout transaction per author batch.

No database transaction is held while a broadcast is in flight.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Awaitable, Callable

from pagepay.errors import (
    BelowPayoutThreshold,
    InvalidPayoutAddress,
    NonceConflict,
    SettlementLockLost,
)
from pagepay.interfaces.chain import ChainBroadcaster
from pagepay.interfaces.store import LedgerStore
from pagepay.models.config import MAX_TEXT_MEMO_BYTES, ServiceConfig
from pagepay.models.results import AuthorGroup, BroadcastResult, PayoutRequest, SettlementReport

log = logging.getLogger(__name__)

Heartbeat = Callable[[], Awaitable[None]]

MAX_MEMO_BYTES = MAX_TEXT_MEMO_BYTES


def build_payout_memo(prefix: str, batch_id: int) -> str:
    raw = f"{prefix or 'pp:auth'}:{batch_id}".encode()
    return raw[:MAX_MEMO_BYTES].decode("utf-8", errors="ignore")


class PayoutBroadcaster:
    """Validates batches and submits their payouts with locally sequenced nonces."""

    def __init__(
        self,
        store: LedgerStore,
        chain: ChainBroadcaster,
        config: ServiceConfig,
    ) -> None:
        self._store = store
        self._chain = chain
        self._config = config

    def validate(self, group: AuthorGroup) -> None:
        """Raise InvalidPayoutAddress or BelowPayoutThreshold."""
        if not self._chain.is_valid_address(group.author_address):
            raise InvalidPayoutAddress(f"Invalid author payout address: {group.author_address}")
        min_payout = self._config.payouts.min_payout
        if group.total_amount < min_payout:
            raise BelowPayoutThreshold(f"Payout amount below threshold ({min_payout} stroops)")

    async def broadcast(
        self, groups: list[AuthorGroup], heartbeat: Heartbeat | None = None
    ) -> SettlementReport:
        """Broadcast every opened batch. Failed batches requeue their events.

        ``heartbeat`` runs before each submission. If it raises
        SettlementLockLost the unsent batches are requeued and the error
        propagates.
        """
        report = SettlementReport()
        payable = []
        for group in groups:
            try:
                self.validate(group)
            except (InvalidPayoutAddress, BelowPayoutThreshold) as exc:
                log.warning("Batch #%s rejected: %s", group.batch_id, exc)
                await self._fail(group, str(exc))
                report.batches_failed += 1
                continue
            payable.append(group)

        if not payable:
            return report

        treasury = self._config.stellar.treasury_address
        try:
            nonce = await self._chain.get_next_nonce(treasury)
        except Exception as exc:
            log.error("Could not fetch treasury nonce: %s", exc)
            for group in payable:
                await self._fail(group, f"nonce_lookup_failed:{exc}")
            report.batches_failed += len(payable)
            return report

        for index, group in enumerate(payable):
            if heartbeat is not None:
                try:
                    await heartbeat()
                except SettlementLockLost as exc:
                    for unsent in payable[index:]:
                        await self._fail(unsent, str(exc))
                    raise
            try:
                result = await self._broadcast_with_retry(group, nonce)
            except NonceConflict as exc:
                result = BroadcastResult(ok=False, nonce=nonce, error=str(exc))
            if not result.ok or not result.tx_hash:
                log.error(
                    "Payout for batch #%d to %s failed: %s",
                    group.batch_id, group.author_address, result.error,
                )
                await self._fail(group, result.error or "Author payout broadcast failed")
                report.batches_failed += 1
                continue

            async with self._store.transaction() as uow:
                await uow.mark_batch_broadcasted(
                    group.batch_id, group.event_ids, result.tx_hash, result.nonce
                )
            log.info(
                "Broadcast payout batch #%d: %d to %s (nonce=%d, tx=%s)",
                group.batch_id, group.total_amount, group.author_address,
                result.nonce, result.tx_hash[:16],
            )
            nonce = result.nonce + 1
            report.batches_broadcasted += 1
            report.event_count += len(group.event_ids)
            report.total_amount += group.total_amount

        return report

    async def _broadcast_with_retry(self, group: AuthorGroup, nonce: int) -> BroadcastResult:
        request = PayoutRequest(
            recipient=group.author_address,
            amount=group.total_amount,
            nonce=nonce,
            memo=build_payout_memo(self._config.payouts.memo_prefix, group.batch_id),
            fee=self._config.payouts.payout_fee,
        )
        result = await self._submit(request)
        if result.ok or not result.nonce_conflict:
            return result

        log.warning("Nonce %d rejected for batch #%d, refreshing", nonce, group.batch_id)
        try:
            fresh = await self._chain.get_next_nonce(self._config.stellar.treasury_address)
        except Exception as exc:
            return BroadcastResult(ok=False, nonce=nonce, error=f"nonce_refresh_failed:{exc}")
        result = await self._submit(replace(request, nonce=fresh))
        if result.nonce_conflict:
            raise NonceConflict(f"nonce {fresh} rejected after refresh: {result.error}")
        return result

    async def _submit(self, request: PayoutRequest) -> BroadcastResult:
        try:
            return await self._chain.broadcast_payout(request)
        except Exception as exc:
            return BroadcastResult(ok=False, nonce=request.nonce, error=str(exc))

    async def _fail(self, group: AuthorGroup, reason: str) -> None:
        async with self._store.transaction() as uow:
            await uow.mark_batch_failed(group.batch_id, group.event_ids, reason)
