"""Stellar Horizon adapter - deposit lookups and treasury payouts."""

from __future__ import annotations

import logging
from decimal import Decimal

from stellar_sdk import Account, Asset, Keypair, ServerAsync, StrKey, TransactionBuilder
from stellar_sdk.client.aiohttp_client import AiohttpClient
from stellar_sdk.exceptions import BadRequestError, NotFoundError

from pagepay.models.config import StellarSection
from pagepay.models.results import BroadcastResult, ChainTransaction, PayoutRequest

log = logging.getLogger(__name__)

STROOPS_PER_XLM = 10_000_000

_NONCE_MARKERS = ("tx_bad_seq", "sequence", "nonce")


def stroops_to_xlm(stroops: int) -> str:
    """Horizon amount string for a stroop integer."""
    return f"{Decimal(stroops) / STROOPS_PER_XLM:.7f}"


def xlm_to_stroops(amount: str) -> int:
    return int(Decimal(amount) * STROOPS_PER_XLM)


def is_valid_account_address(address: str) -> bool:
    return bool(address) and StrKey.is_valid_ed25519_public_key(address.strip())


def _result_codes(exc: BadRequestError) -> dict:
    extras = exc.extras or {}
    return extras.get("result_codes") or {}


def _is_nonce_conflict(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _NONCE_MARKERS)


class StellarChainClient:
    """Implements ChainQuery and ChainBroadcaster over Horizon.

    Minor units are stroops. The treasury keypair is only needed for payouts.
    """

    def __init__(self, config: StellarSection) -> None:
        self._config = config
        self._server = ServerAsync(horizon_url=config.horizon_url, client=AiohttpClient())
        self._keypair = Keypair.from_secret(config.treasury_secret) if config.treasury_secret else None

    async def close(self) -> None:
        await self._server.close()

    def is_valid_address(self, address: str) -> bool:
        return is_valid_account_address(address)

    async def get_transaction(self, tx_hash: str) -> ChainTransaction:
        """Fetch a transaction and its first native payment.

        A hash Horizon has not ingested yet reads as pending.
        """
        try:
            record = await self._server.transactions().transaction(tx_hash).call()
        except NotFoundError:
            return ChainTransaction(tx_hash=tx_hash, status="pending", detail="not_found")

        if not record.get("successful", False):
            return ChainTransaction(
                tx_hash=tx_hash,
                status="failed",
                sender=record.get("source_account"),
                detail="transaction_failed",
            )

        memo = record.get("memo") if record.get("memo_type") == "text" else None
        ops = await self._server.operations().for_transaction(tx_hash).call()
        payment = next(
            (
                op
                for op in ops.get("_embedded", {}).get("records", [])
                if op.get("type") == "payment" and op.get("asset_type") == "native"
            ),
            None,
        )
        if payment is None:
            return ChainTransaction(
                tx_hash=tx_hash,
                status="success",
                sender=record.get("source_account"),
                memo=memo,
                detail="no_native_payment",
            )

        return ChainTransaction(
            tx_hash=tx_hash,
            status="success",
            sender=payment.get("from"),
            recipient=payment.get("to"),
            amount=xlm_to_stroops(payment["amount"]),
            memo=memo,
        )

    async def get_next_nonce(self, address: str) -> int:
        account = await self._server.accounts().account_id(address).call()
        return int(account["sequence"]) + 1

    async def broadcast_payout(self, request: PayoutRequest) -> BroadcastResult:
        """Sign and submit one native payment from the treasury using `request.nonce`."""
        if self._keypair is None:
            return BroadcastResult(ok=False, nonce=request.nonce, error="treasury secret not configured")

        source = Account(self._keypair.public_key, request.nonce - 1)
        tx = (
            TransactionBuilder(
                source_account=source,
                network_passphrase=self._config.passphrase,
                base_fee=request.fee if request.fee is not None else self._config.base_fee,
            )
            .append_payment_op(
                destination=request.recipient,
                asset=Asset.native(),
                amount=stroops_to_xlm(request.amount),
            )
            .add_text_memo(request.memo)
            .set_timeout(self._config.tx_timeout)
            .build()
        )
        tx.sign(self._keypair)

        try:
            response = await self._server.submit_transaction(tx)
        except BadRequestError as exc:
            codes = _result_codes(exc)
            error = f"{codes.get('transaction', 'tx_rejected')}:{codes.get('operations', [])}"
            log.warning("Payout to %s rejected: %s", request.recipient, error)
            return BroadcastResult(
                ok=False,
                nonce=request.nonce,
                error=error,
                nonce_conflict=codes.get("transaction") == "tx_bad_seq",
            )
        except Exception as exc:
            log.error("Payout to %s failed: %s", request.recipient, exc)
            return BroadcastResult(
                ok=False,
                nonce=request.nonce,
                error=str(exc),
                nonce_conflict=_is_nonce_conflict(str(exc)),
            )

        tx_hash = response.get("hash", "")
        return BroadcastResult(ok=bool(tx_hash), nonce=request.nonce, tx_hash=tx_hash or None)
