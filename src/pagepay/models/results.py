"""Operation results returned to the surrounding system."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Union

from pagepay.models.ledger import ReaderAccount


# ── Unlocks ────────────────────────────────────────────


@dataclass
class AccessGranted:
    """The unit is readable. deducted_amount is 0 for free or already-owned units."""

    balance: int
    deducted_amount: int
    used_existing_unlock: bool
    status: Literal["granted"] = "granted"


@dataclass
class AccessInsufficient:
    """Payment-required response: nothing was charged."""

    balance: int
    required_amount: int
    shortfall: int
    recipient: str
    network: str
    suggested_top_up: int
    status: Literal["insufficient"] = "insufficient"


AccessResult = Union[AccessGranted, AccessInsufficient]


@dataclass
class BundleOption:
    """A candidate page range for a prepaid unlock."""

    bundle_type: str  # "single-page", "next-5-pages", "next-10-percent", "chapter"
    label: str
    description: str
    start_page: int
    end_page: int
    page_count: int
    amount: int  # list price for the whole range
    chapter_number: int | None = None
    remaining_pages: int | None = None
    effective_amount: int | None = None  # prorated for unowned pages

    @property
    def fully_unlocked(self) -> bool:
        return self.remaining_pages == 0


@dataclass
class UnlockPreview:
    book_id: int
    page_number: int
    balance: ReaderAccount
    options: list[BundleOption]
    suggested_top_up: int


@dataclass
class UnlockedRange:
    start_page: int
    end_page: int
    pages_unlocked: int
    chapter_number: int | None = None


@dataclass
class BundlePurchaseResult:
    success: bool
    already_unlocked: bool
    bundle_type: str
    debited_amount: int
    balance: ReaderAccount
    unlocked_range: UnlockedRange | None = None
    insufficient: AccessInsufficient | None = None


# ── Deposits ───────────────────────────────────────────


@dataclass
class DepositIntentTicket:
    """What the reader needs to send: amount to recipient with memo before expiry."""

    intent_id: str
    wallet: str
    amount: int
    recipient: str
    memo: str
    network: str
    expires_at: str


@dataclass
class DepositSettlementResult:
    status: Literal["confirmed", "pending", "invalid"]
    balance: int | None = None
    amount_credited: int | None = None
    tx_hash: str | None = None
    error: str | None = None


@dataclass
class DepositClaimResult:
    wallet: str
    amount: int
    tx_hash: str
    balance: ReaderAccount
    already_claimed: bool = False


@dataclass
class DepositVerification:
    """Outcome of matching an on-chain transaction against an intent."""

    status: Literal["confirmed", "pending", "invalid"]
    tx_hash: str
    amount: int | None = None
    error: str | None = None


# ── Chain ──────────────────────────────────────────────


@dataclass
class ChainTransaction:
    """Chain view of a transfer. status is success, pending or failed."""

    tx_hash: str
    status: Literal["success", "pending", "failed"]
    sender: str | None = None
    recipient: str | None = None
    amount: int | None = None  # stroops
    memo: str | None = None
    detail: str | None = None


@dataclass
class PayoutRequest:
    recipient: str
    amount: int  # stroops
    nonce: int
    memo: str
    fee: int | None = None


@dataclass
class BroadcastResult:
    ok: bool
    nonce: int
    tx_hash: str | None = None
    error: str | None = None
    nonce_conflict: bool = False


# ── Settlement ─────────────────────────────────────────


@dataclass
class ClaimedEvent:
    id: int
    author_address: str
    amount: int


@dataclass
class AuthorGroup:
    author_address: str
    event_ids: list[int] = field(default_factory=list)
    total_amount: int = 0
    batch_id: int | None = None


@dataclass
class SettlementTxState:
    status: Literal["pending", "confirmed", "failed"]
    error: str | None = None


@dataclass
class SettlementReport:
    """Summary of one settle-authors cycle."""

    event_count: int = 0
    total_amount: int = 0
    batches_broadcasted: int = 0
    batches_failed: int = 0
    reclaimed: int = 0
    confirmed: int = 0
    skipped: bool = False  # another worker held the settlement lock
    aborted: bool = False  # the lock was lost mid-cycle
