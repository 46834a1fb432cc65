"""Exception taxonomy for ledger and settlement operations."""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for all pagepay business errors."""


class ConfigError(LedgerError):
    """Configuration is missing or inconsistent."""


class NotFound(LedgerError):
    """A referenced book, page, intent or request does not exist."""


class InsufficientBalance(LedgerError):
    """A debit exceeds the wallet's available balance. Recoverable by topping up."""

    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        self.shortfall = max(0, required - available)
        super().__init__(
            f"insufficient balance: required {required}, available {available}"
        )


class DuplicateTransactionUse(LedgerError):
    """The external transaction already funded another deposit."""


class IntentMismatch(LedgerError):
    """The transaction does not match the deposit intent (sender, recipient, amount, memo)."""


class TransactionPending(LedgerError):
    """The chain has not confirmed the transaction yet. Retry later."""


class InvalidPayoutAddress(LedgerError):
    """The author payout address is malformed."""


class BelowPayoutThreshold(LedgerError):
    """The batch total is below the minimum payout amount."""


class NonceConflict(LedgerError):
    """The chain rejected a broadcast because of a stale sequence number."""


class SettlementLockLost(LedgerError):
    """The settlement lock expired or passed to another worker mid-cycle."""


class ConcurrentUnlockConflict(LedgerError):
    """Another writer already recorded the same unit unlock."""
