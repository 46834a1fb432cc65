"""Reader withdrawal requests.

A request debits the balance up front. Cancelling refunds it, processing
only records the payout transaction.
"""

from __future__ import annotations

import logging

from pagepay.errors import LedgerError, NotFound
from pagepay.interfaces.store import LedgerStore
from pagepay.ledger.balances import credit_in, debit_in
from pagepay.models.ledger import LedgerReason, WithdrawalRequest

log = logging.getLogger(__name__)


class WithdrawalService:
    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    async def create_withdrawal_request(self, wallet: str, amount: int) -> WithdrawalRequest:
        """Debit `amount` and open a pending request. Raises InsufficientBalance."""
        async with self._store.transaction() as uow:
            account, entry_id = await debit_in(
                uow, wallet, amount, LedgerReason.WITHDRAW_REQUEST
            )
            request_id = await uow.insert_withdrawal(wallet, amount)
            request = await uow.get_withdrawal(request_id)
        log.info(
            "Withdrawal request #%d for %s: %d (ledger #%d, balance=%d)",
            request_id, wallet, amount, entry_id, account.available_balance,
        )
        return request

    async def mark_withdrawal_processed(self, request_id: int, tx_hash: str) -> WithdrawalRequest:
        async with self._store.transaction() as uow:
            request = await uow.get_withdrawal(request_id)
            if request is None:
                raise NotFound(f"withdrawal request {request_id} not found")
            if not await uow.transition_withdrawal(request_id, "processed", tx_hash):
                raise LedgerError(
                    f"withdrawal request {request_id} is {request.status}, not pending"
                )
            request = await uow.get_withdrawal(request_id)
        log.info("Withdrawal request #%d processed (tx=%s)", request_id, tx_hash[:16])
        return request

    async def cancel_withdrawal_request(self, request_id: int) -> WithdrawalRequest:
        """Cancel a pending request and refund its amount."""
        async with self._store.transaction() as uow:
            request = await uow.get_withdrawal(request_id)
            if request is None:
                raise NotFound(f"withdrawal request {request_id} not found")
            if not await uow.transition_withdrawal(request_id, "cancelled"):
                raise LedgerError(
                    f"withdrawal request {request_id} is {request.status}, not pending"
                )
            await credit_in(
                uow,
                request.wallet,
                request.amount,
                LedgerReason.WITHDRAW_CANCEL,
                reference_id=f"withdrawal:{request_id}",
            )
            request = await uow.get_withdrawal(request_id)
        log.info("Withdrawal request #%d cancelled, refunded %d", request_id, request.amount)
        return request
