"""LedgerStore protocol - the transactional source of truth for balances and settlement."""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from typing import Protocol

from pagepay.models.ledger import (
    DepositIntent,
    LedgerEntry,
    ReaderAccount,
    RevenueEvent,
    SettlementBatch,
    WithdrawalRequest,
)
from pagepay.models.results import ClaimedEvent


class UnitOfWork(Protocol):
    """Operations valid only inside one open transaction.

    While a write transaction is open the caller holds exclusive ownership of
    every row it touches until commit or rollback.
    """

    # ── Accounts & ledger ──────────────────────────────────

    async def lock_account(self, wallet: str) -> ReaderAccount:
        """Create the account row if missing and return it under the write lock."""
        ...

    async def apply_balance_delta(
        self, wallet: str, available: int, deposited: int = 0, spent: int = 0
    ) -> ReaderAccount:
        ...

    async def append_ledger_entry(
        self, wallet: str, delta: int, balance_after: int, reason: str, **refs: object
    ) -> int:
        ...

    async def find_deposit_entry(self, tx_hash: str) -> LedgerEntry | None:
        ...

    async def list_ledger_entries(self, wallet: str, limit: int = 50) -> list[LedgerEntry]:
        ...

    # ── Unlocks & entitlements ─────────────────────────────

    async def has_unit_unlock(self, wallet: str, book_id: int, kind: str, unit: int) -> bool:
        ...

    async def insert_unit_unlock(
        self, wallet: str, book_id: int, kind: str, unit: int, amount: int, ledger_entry_id: int
    ) -> bool:
        """False when the (wallet, book, kind, unit) row already exists."""
        ...

    async def has_range_entitlement(self, wallet: str, book_id: int, page_number: int) -> bool:
        ...

    async def has_legacy_payment(
        self, wallet: str, book_id: int, page_number: int | None, chapter_number: int | None
    ) -> bool:
        ...

    async def owned_pages(
        self, wallet: str, book_id: int, pages: list[tuple[int, int | None]]
    ) -> set[int]:
        ...

    async def insert_entitlement(
        self, wallet: str, book_id: int, start_page: int, end_page: int, cost: int,
        chapter_number: int | None, bundle_type: str | None, source_ledger_id: int | None,
    ) -> int:
        ...

    async def insert_revenue_event(
        self, author_address: str, reader_address: str, book_id: int, amount: int,
        page_number: int | None = None, chapter_number: int | None = None,
        ledger_entry_id: int | None = None, entitlement_id: int | None = None,
    ) -> int:
        ...

    # ── Deposit intents ────────────────────────────────────

    async def insert_intent(self, intent: DepositIntent) -> None:
        ...

    async def get_intent(self, intent_id: str) -> DepositIntent | None:
        ...

    async def record_intent_attempt(
        self, intent_id: str, tx_hash: str, last_error: str | None
    ) -> None:
        """Keep the first submitted tx hash; overwrite last_error."""
        ...

    async def expire_intent(self, intent_id: str) -> None:
        ...

    async def confirm_intent(self, intent_id: str, tx_hash: str, amount: int) -> None:
        ...

    async def find_intent_by_tx(self, tx_hash: str, exclude_id: str) -> DepositIntent | None:
        ...

    async def list_reconcilable_intents(self, limit: int) -> list[DepositIntent]:
        """Pending or expired intents that already carry a submitted tx hash."""
        ...

    # ── Withdrawals ────────────────────────────────────────

    async def insert_withdrawal(self, wallet: str, amount: int) -> int:
        ...

    async def get_withdrawal(self, request_id: int) -> WithdrawalRequest | None:
        ...

    async def transition_withdrawal(
        self, request_id: int, status: str, tx_hash: str | None = None
    ) -> bool:
        ...

    # ── Settlement ─────────────────────────────────────────

    async def claim_pending_events(self, limit: int) -> list[ClaimedEvent]:
        ...

    async def insert_batch(
        self, author_address: str, total_amount: int, event_count: int, network: str
    ) -> int:
        ...

    async def link_events(self, event_ids: list[int], batch_id: int) -> None:
        ...

    async def mark_batch_broadcasted(
        self, batch_id: int, event_ids: list[int], tx_hash: str, nonce: int
    ) -> None:
        ...

    async def mark_batch_failed(self, batch_id: int | None, event_ids: list[int], reason: str) -> None:
        ...

    async def finalize_batch(self, batch_id: int, tx_hash: str) -> int:
        ...

    async def fail_broadcasted_batch(self, batch_id: int, reason: str) -> int:
        ...

    async def reclaim_stale_events(self, cutoff: str) -> int:
        ...

    async def list_batches(self, status: str, limit: int = 50) -> list[SettlementBatch]:
        ...

    async def get_batch(self, batch_id: int) -> SettlementBatch | None:
        ...

    async def get_revenue_events(
        self, status: str | None = None, batch_id: int | None = None
    ) -> list[RevenueEvent]:
        ...


class LedgerStore(Protocol):
    """Owns the connection, the schema and cluster-wide advisory locks."""

    async def initialize(self) -> None:
        ...

    async def close(self) -> None:
        ...

    def transaction(self, write: bool = True) -> AbstractAsyncContextManager[UnitOfWork]:
        ...

    async def try_advisory_lock(self, name: str, owner: str, ttl_seconds: int) -> bool:
        ...

    async def renew_advisory_lock(self, name: str, owner: str, ttl_seconds: int) -> bool:
        ...

    async def release_advisory_lock(self, name: str, owner: str) -> None:
        ...

    async def record_legacy_payment(
        self,
        wallet: str,
        book_id: int,
        tx_hash: str,
        amount: int,
        page_number: int | None = None,
        chapter_number: int | None = None,
    ) -> None:
        ...
