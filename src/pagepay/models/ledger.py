"""Persisted ledger entities as loaded from the state store."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class LedgerReason(str, Enum):
    """Why a balance mutation happened."""

    DEPOSIT = "deposit"
    DEPOSIT_CLAIM = "deposit_claim"
    DEDUCTION = "deduction"
    BUNDLE_UNLOCK = "bundle_unlock"
    WITHDRAW_REQUEST = "withdraw_request"
    WITHDRAW_CANCEL = "withdraw_cancel"

    @property
    def is_deposit(self) -> bool:
        return self in (LedgerReason.DEPOSIT, LedgerReason.DEPOSIT_CLAIM)


class IntentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    INVALID = "invalid"


class SettlementStatus(str, Enum):
    """Revenue event lifecycle: pending -> processing -> settled (or back to pending)."""

    PENDING = "pending"
    PROCESSING = "processing"
    SETTLED = "settled"


class BatchStatus(str, Enum):
    """Settlement batch lifecycle: created -> broadcasted -> confirmed | failed."""

    CREATED = "created"
    BROADCASTED = "broadcasted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class UnitKind(str, Enum):
    PAGE = "page"
    CHAPTER = "chapter"


@dataclass
class ReaderAccount:
    """Per-wallet counters, all in stroops.

    available_balance == total_deposited - total_spent at all times.
    """

    wallet: str
    available_balance: int = 0
    total_deposited: int = 0
    total_spent: int = 0
    created_at: str = ""
    updated_at: str = ""


@dataclass
class LedgerEntry:
    """Immutable row in the append-only balance ledger."""

    id: int
    wallet: str
    delta: int
    balance_after: int
    reason: str
    book_id: int | None = None
    page_number: int | None = None
    chapter_number: int | None = None
    bundle_type: str | None = None
    reference_id: str | None = None
    reference_tx_hash: str | None = None
    metadata: dict | None = None
    created_at: str = ""


@dataclass
class DepositIntent:
    id: str
    wallet: str
    amount: int
    memo: str
    status: str
    expires_at: str
    tx_hash: str | None = None
    last_error: str | None = None
    settled_at: str | None = None
    created_at: str = ""


@dataclass
class UnlockEntitlement:
    """A coalesced range grant: pages start_page..end_page inclusive."""

    id: int
    wallet: str
    book_id: int
    start_page: int
    end_page: int
    cost: int
    chapter_number: int | None = None
    bundle_type: str | None = None
    source_ledger_id: int | None = None
    created_at: str = ""


@dataclass
class RevenueEvent:
    """Author-owed income from one paid unlock."""

    id: int
    author_address: str
    reader_address: str
    book_id: int
    amount: int
    page_number: int | None = None
    chapter_number: int | None = None
    settlement_status: str = SettlementStatus.PENDING.value
    settlement_batch_id: int | None = None
    payout_tx_hash: str | None = None
    payout_attempts: int = 0
    processing_started_at: str | None = None
    settled_at: str | None = None
    last_error: str | None = None
    ledger_entry_id: int | None = None
    entitlement_id: int | None = None
    created_at: str = ""


@dataclass
class SettlementBatch:
    """One payout transaction covering many revenue events of a single author."""

    id: int
    author_address: str
    total_amount: int
    event_count: int
    network: str
    status: str = BatchStatus.CREATED.value
    payout_tx_hash: str | None = None
    nonce: int | None = None
    last_error: str | None = None
    created_at: str = ""
    broadcast_at: str | None = None
    confirmed_at: str | None = None


@dataclass
class WithdrawalRequest:
    id: int
    wallet: str
    amount: int
    status: str = "pending"
    tx_hash: str | None = None
    created_at: str = ""
    processed_at: str | None = None


@dataclass
class BookInfo:
    """Catalog metadata needed for pricing."""

    book_id: int
    author_address: str
    title: str
    total_pages: int
    page_price: int  # stroops
    chapter_price: int  # stroops
