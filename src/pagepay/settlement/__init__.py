"""Author revenue settlement: queue, broadcaster, reconciler and pipeline."""

from pagepay.settlement.broadcaster import PayoutBroadcaster, build_payout_memo
from pagepay.settlement.pipeline import AuthorSettlementPipeline
from pagepay.settlement.queue import RevenueQueue, group_by_author
from pagepay.settlement.reconciler import SettlementReconciler, StaleWorkReclaimer

__all__ = [
    "AuthorSettlementPipeline",
    "PayoutBroadcaster",
    "RevenueQueue",
    "SettlementReconciler",
    "StaleWorkReclaimer",
    "build_payout_memo",
    "group_by_author",
]
