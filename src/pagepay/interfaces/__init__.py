"""Protocol interfaces for all pagepay collaborators."""

from pagepay.interfaces.catalog import ContentCatalog
from pagepay.interfaces.chain import ChainBroadcaster, ChainQuery, SettlementChain
from pagepay.interfaces.store import LedgerStore, UnitOfWork

__all__ = [
    "ChainBroadcaster", "ChainQuery", "SettlementChain",
    "ContentCatalog",
    "LedgerStore", "UnitOfWork",
]
