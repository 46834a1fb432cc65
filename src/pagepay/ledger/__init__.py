"""Reader-facing ledger services: balances, entitlements, deposits, withdrawals."""

from pagepay.ledger.balances import BalanceStore
from pagepay.ledger.deposits import DepositVerifier
from pagepay.ledger.entitlements import EntitlementEngine, UnitChargeRequest
from pagepay.ledger.withdrawals import WithdrawalService

__all__ = [
    "BalanceStore",
    "DepositVerifier",
    "EntitlementEngine",
    "UnitChargeRequest",
    "WithdrawalService",
]
