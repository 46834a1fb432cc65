"""Chain protocols - the narrow query/broadcast surface of the settlement chain."""

from __future__ import annotations

from typing import Protocol

from pagepay.models.results import BroadcastResult, ChainTransaction, PayoutRequest


class ChainQuery(Protocol):
    """Read-only transaction lookups."""

    async def get_transaction(self, tx_hash: str) -> ChainTransaction:
        """Fetch a transfer by hash. Raises on transport errors."""
        ...


class ChainBroadcaster(Protocol):
    """Signs and submits treasury payouts."""

    async def get_next_nonce(self, address: str) -> int:
        """Next usable sequence number for the account."""
        ...

    async def broadcast_payout(self, request: PayoutRequest) -> BroadcastResult:
        """Build, sign and submit one payout. Never raises for chain rejections."""
        ...

    def is_valid_address(self, address: str) -> bool:
        ...


class SettlementChain(ChainQuery, ChainBroadcaster, Protocol):
    """A chain client that can both broadcast payouts and look them up."""
