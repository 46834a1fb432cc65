"""Balance store - the only code path that mutates reader balances.

Every mutation appends exactly one balance_ledger row in the same
transaction as the counter update, so the ledger replays to the balance.
"""

from __future__ import annotations

import logging

from pagepay.errors import InsufficientBalance, LedgerError
from pagepay.interfaces.store import LedgerStore, UnitOfWork
from pagepay.models.ledger import LedgerEntry, LedgerReason, ReaderAccount

log = logging.getLogger(__name__)


async def credit_in(
    uow: UnitOfWork,
    wallet: str,
    amount: int,
    reason: LedgerReason,
    **refs: object,
) -> tuple[ReaderAccount, int]:
    """Credit inside an open transaction. Returns (account, ledger entry id)."""
    if amount <= 0:
        raise ValueError(f"credit amount must be positive, got {amount}")

    account = await uow.lock_account(wallet)
    if reason.is_deposit:
        account = await uow.apply_balance_delta(wallet, amount, deposited=amount)
    else:
        # Refund-style credits give back previously spent funds.
        if account.total_spent < amount:
            raise LedgerError(
                f"{reason.value} credit of {amount} exceeds total spent {account.total_spent}"
            )
        account = await uow.apply_balance_delta(wallet, amount, spent=-amount)

    entry_id = await uow.append_ledger_entry(
        wallet, amount, account.available_balance, reason.value, **refs
    )
    return account, entry_id


async def debit_in(
    uow: UnitOfWork,
    wallet: str,
    amount: int,
    reason: LedgerReason,
    **refs: object,
) -> tuple[ReaderAccount, int]:
    """Debit inside an open transaction. Raises InsufficientBalance, touching nothing."""
    if amount <= 0:
        raise ValueError(f"debit amount must be positive, got {amount}")

    account = await uow.lock_account(wallet)
    if account.available_balance < amount:
        raise InsufficientBalance(amount, account.available_balance)

    account = await uow.apply_balance_delta(wallet, -amount, spent=amount)
    entry_id = await uow.append_ledger_entry(
        wallet, -amount, account.available_balance, reason.value, **refs
    )
    return account, entry_id


class BalanceStore:
    """Per-wallet available balance with an append-only audit trail."""

    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    async def get_balance(self, wallet: str) -> ReaderAccount:
        """Return the wallet's counters, creating a zero account on first sight."""
        async with self._store.transaction() as uow:
            return await uow.lock_account(wallet)

    async def credit(
        self, wallet: str, amount: int, reason: LedgerReason, **refs: object
    ) -> ReaderAccount:
        async with self._store.transaction() as uow:
            account, entry_id = await credit_in(uow, wallet, amount, reason, **refs)
        log.info(
            "Credited %d to %s (%s, ledger #%d, balance=%d)",
            amount, wallet, reason.value, entry_id, account.available_balance,
        )
        return account

    async def debit(
        self, wallet: str, amount: int, reason: LedgerReason, **refs: object
    ) -> ReaderAccount:
        async with self._store.transaction() as uow:
            account, entry_id = await debit_in(uow, wallet, amount, reason, **refs)
        log.info(
            "Debited %d from %s (%s, ledger #%d, balance=%d)",
            amount, wallet, reason.value, entry_id, account.available_balance,
        )
        return account

    async def history(self, wallet: str, limit: int = 50) -> list[LedgerEntry]:
        """Most recent ledger entries first."""
        async with self._store.transaction(write=False) as uow:
            return await uow.list_ledger_entries(wallet, limit)
