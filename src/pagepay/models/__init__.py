"""Data models for pagepay."""

from pagepay.models.config import (
    CreditsSection,
    DaemonSection,
    PayoutsSection,
    ServiceConfig,
    StellarSection,
    StorageSection,
)
from pagepay.models.ledger import (
    BatchStatus,
    BookInfo,
    DepositIntent,
    IntentStatus,
    LedgerEntry,
    LedgerReason,
    ReaderAccount,
    RevenueEvent,
    SettlementBatch,
    SettlementStatus,
    UnitKind,
    UnlockEntitlement,
    WithdrawalRequest,
)
from pagepay.models.results import (
    AccessGranted,
    AccessInsufficient,
    AccessResult,
    AuthorGroup,
    BroadcastResult,
    BundleOption,
    BundlePurchaseResult,
    ChainTransaction,
    ClaimedEvent,
    DepositClaimResult,
    DepositIntentTicket,
    DepositSettlementResult,
    DepositVerification,
    PayoutRequest,
    SettlementReport,
    SettlementTxState,
    UnlockedRange,
    UnlockPreview,
)

__all__ = [
    "CreditsSection", "DaemonSection", "PayoutsSection", "ServiceConfig",
    "StellarSection", "StorageSection",
    "BatchStatus", "BookInfo", "DepositIntent", "IntentStatus", "LedgerEntry",
    "LedgerReason", "ReaderAccount", "RevenueEvent", "SettlementBatch",
    "SettlementStatus", "UnitKind", "UnlockEntitlement", "WithdrawalRequest",
    "AccessGranted", "AccessInsufficient", "AccessResult", "AuthorGroup",
    "BroadcastResult", "BundleOption", "BundlePurchaseResult", "ChainTransaction",
    "ClaimedEvent", "DepositClaimResult", "DepositIntentTicket",
    "DepositSettlementResult", "DepositVerification", "PayoutRequest",
    "SettlementReport", "SettlementTxState", "UnlockedRange", "UnlockPreview",
]
