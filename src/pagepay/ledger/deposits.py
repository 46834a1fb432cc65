"""Deposit verifier - turns on-chain transfers to the treasury into credits.

Chain lookups happen outside any database transaction. The credit and the
intent status flip are committed together after the intent is re-read
under the write lock.
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timedelta, timezone

from pagepay.errors import (
    ConfigError,
    DuplicateTransactionUse,
    IntentMismatch,
    NotFound,
    TransactionPending,
)
from pagepay.interfaces.chain import ChainQuery
from pagepay.interfaces.store import LedgerStore
from pagepay.ledger.balances import credit_in
from pagepay.models.config import DEPOSIT_MEMO_TOKEN_HEX, ServiceConfig
from pagepay.models.ledger import DepositIntent, IntentStatus, LedgerReason
from pagepay.models.results import (
    DepositClaimResult,
    DepositIntentTicket,
    DepositSettlementResult,
    DepositVerification,
)
from pagepay.storage.sqlite import format_ts, parse_ts

log = logging.getLogger(__name__)

_TX_HASH_RE = re.compile(r"^[0-9a-f]{64}$")


def normalize_tx_hash(value: str) -> str:
    """Lowercase 64-char hex hash without a 0x prefix. Raises ValueError."""
    tx_hash = value.strip().lower()
    if tx_hash.startswith("0x"):
        tx_hash = tx_hash[2:]
    if not _TX_HASH_RE.match(tx_hash):
        raise ValueError(f"malformed transaction hash: {value!r}")
    return tx_hash


def normalize_memo(memo: str | None) -> str:
    if not memo:
        return ""
    return memo.replace("\x00", "").strip()


def same_address(a: str | None, b: str | None) -> bool:
    if not a or not b:
        return False
    return a.strip().upper() == b.strip().upper()


class DepositVerifier:
    """Issues deposit intents and settles them against the chain."""

    def __init__(self, store: LedgerStore, chain: ChainQuery, config: ServiceConfig) -> None:
        self._store = store
        self._chain = chain
        self._config = config

    @property
    def _treasury(self) -> str:
        treasury = self._config.stellar.treasury_address
        if not treasury:
            raise ConfigError("treasury address is not configured")
        return treasury

    async def create_intent(self, wallet: str, amount: int) -> DepositIntentTicket:
        wallet = wallet.strip()
        if not wallet:
            raise ValueError("wallet address is required")
        if amount <= 0:
            raise ValueError("deposit amount must be greater than zero")
        treasury = self._treasury

        intent_id = str(uuid.uuid4())
        token = uuid.uuid4().hex[:DEPOSIT_MEMO_TOKEN_HEX]
        memo = f"{self._config.credits.deposit_memo_prefix}:{token}"
        now = datetime.now(timezone.utc)
        expires_at = format_ts(
            now + timedelta(minutes=self._config.credits.deposit_intent_ttl_minutes)
        )
        intent = DepositIntent(
            id=intent_id,
            wallet=wallet,
            amount=amount,
            memo=memo,
            status=IntentStatus.PENDING.value,
            expires_at=expires_at,
            created_at=format_ts(now),
        )
        async with self._store.transaction() as uow:
            await uow.insert_intent(intent)

        log.info("Created deposit intent %s for %s (%d, memo=%s)", intent_id, wallet, amount, memo)
        return DepositIntentTicket(
            intent_id=intent_id,
            wallet=wallet,
            amount=amount,
            recipient=treasury,
            memo=memo,
            network=self._config.stellar.caip2,
            expires_at=expires_at,
        )

    async def verify_deposit_transaction(
        self, intent: DepositIntent, tx_hash: str
    ) -> DepositVerification:
        """Match a chain transaction against an intent. Lookup failures count as pending."""
        try:
            tx = await self._chain.get_transaction(tx_hash)
        except Exception as exc:
            log.warning("Transaction lookup for %s failed: %s", tx_hash[:16], exc)
            return DepositVerification("pending", tx_hash, error=f"lookup_failed:{exc}")

        if tx.status == "pending":
            return DepositVerification("pending", tx_hash, error="transaction_pending")
        if tx.status != "success":
            return DepositVerification(
                "invalid", tx_hash, error=f"transaction_failed:{tx.detail or tx.status}"
            )
        if not tx.sender or not tx.recipient:
            return DepositVerification(
                "invalid", tx_hash, error="Transaction payload is missing sender or recipient"
            )
        if not same_address(tx.sender, intent.wallet):
            return DepositVerification(
                "invalid", tx_hash, error="Deposit sender does not match intent wallet"
            )
        if not same_address(tx.recipient, self._config.stellar.treasury_address):
            return DepositVerification(
                "invalid", tx_hash, error="Deposit recipient does not match treasury"
            )
        if tx.amount is None or tx.amount < intent.amount:
            return DepositVerification(
                "invalid", tx_hash, error="Deposit amount is below the intent amount"
            )
        if normalize_memo(tx.memo) != normalize_memo(intent.memo):
            return DepositVerification("invalid", tx_hash, error="Deposit memo does not match intent")
        return DepositVerification("confirmed", tx_hash, amount=tx.amount)

    async def settle_intent(
        self, wallet: str, intent_id: str, tx_hash: str | None = None
    ) -> DepositSettlementResult:
        """Credit the wallet once the intent's transaction is confirmed.

        Safe to call repeatedly: a confirmed intent returns its recorded state.
        """
        submitted = None
        if tx_hash and tx_hash.strip():
            try:
                submitted = normalize_tx_hash(tx_hash)
            except ValueError as exc:
                return DepositSettlementResult("invalid", error=str(exc))

        async with self._store.transaction(write=False) as uow:
            intent = await uow.get_intent(intent_id)
        if intent is None:
            return DepositSettlementResult("invalid", error="Deposit intent not found")
        if not same_address(intent.wallet, wallet):
            return DepositSettlementResult("invalid", error="Wallet does not match deposit intent")

        if intent.status == IntentStatus.CONFIRMED.value:
            return await self._confirmed_result(intent)

        candidate = intent.tx_hash or submitted
        expired = datetime.now(timezone.utc) > parse_ts(intent.expires_at)
        if expired and not candidate:
            async with self._store.transaction() as uow:
                await uow.expire_intent(intent_id)
            return DepositSettlementResult(
                "invalid", error="Deposit intent expired. Create a new top-up request."
            )
        if not candidate:
            return DepositSettlementResult(
                "invalid", error="Transaction hash is required to verify this deposit intent."
            )

        verification = await self.verify_deposit_transaction(intent, candidate)
        if verification.status != "confirmed":
            error = verification.error or "Deposit verification failed"
            async with self._store.transaction() as uow:
                await uow.record_intent_attempt(intent_id, candidate, error)
            log.info("Deposit intent %s is %s: %s", intent_id, verification.status, error)
            return DepositSettlementResult(verification.status, tx_hash=candidate, error=error)

        try:
            async with self._store.transaction() as uow:
                current = await uow.get_intent(intent_id)
                if current is None:
                    raise NotFound(f"deposit intent {intent_id} not found")
                if current.status == IntentStatus.CONFIRMED.value:
                    account = await uow.lock_account(current.wallet)
                    return DepositSettlementResult(
                        "confirmed",
                        balance=account.available_balance,
                        amount_credited=current.amount,
                        tx_hash=current.tx_hash,
                    )
                if current.tx_hash and current.tx_hash != verification.tx_hash:
                    raise IntentMismatch(
                        "Deposit intent already linked to a different transaction"
                    )
                other = await uow.find_intent_by_tx(verification.tx_hash, intent_id)
                if other is not None or await uow.find_deposit_entry(verification.tx_hash):
                    raise DuplicateTransactionUse(
                        "This transaction has already been used for another deposit"
                    )

                account, _ = await credit_in(
                    uow,
                    current.wallet,
                    verification.amount,
                    LedgerReason.DEPOSIT,
                    reference_id=intent_id,
                    reference_tx_hash=verification.tx_hash,
                    metadata={"intent_memo": current.memo},
                )
                await uow.confirm_intent(intent_id, verification.tx_hash, verification.amount)
        except (IntentMismatch, DuplicateTransactionUse, NotFound) as exc:
            log.warning("Deposit intent %s rejected: %s", intent_id, exc)
            return DepositSettlementResult("invalid", tx_hash=candidate, error=str(exc))

        log.info(
            "Deposit intent %s confirmed: credited %d to %s (tx=%s)",
            intent_id, verification.amount, intent.wallet, verification.tx_hash[:16],
        )
        return DepositSettlementResult(
            "confirmed",
            balance=account.available_balance,
            amount_credited=verification.amount,
            tx_hash=verification.tx_hash,
        )

    async def reconcile_pending_intents(self, limit: int | None = None) -> int:
        """Re-settle intents that carry a tx hash. Returns how many confirmed."""
        limit = limit or self._config.credits.reconcile_limit
        async with self._store.transaction(write=False) as uow:
            intents = await uow.list_reconcilable_intents(limit)

        confirmed = 0
        for intent in intents:
            try:
                result = await self.settle_intent(intent.wallet, intent.id, intent.tx_hash)
            except Exception as exc:
                log.error("Reconcile of deposit intent %s failed: %s", intent.id, exc)
                continue
            if result.status == "confirmed":
                confirmed += 1
        if intents:
            log.info("Reconciled %d deposit intents (%d confirmed)", len(intents), confirmed)
        return confirmed

    async def claim_direct_deposit(
        self, tx_hash: str, wallet_hint: str | None = None
    ) -> DepositClaimResult:
        """Credit a plain transfer to the treasury made without an intent.

        Raises TransactionPending while unconfirmed and IntentMismatch when the
        transfer does not go to the treasury or comes from another wallet.
        """
        treasury = self._treasury
        tx_hash = normalize_tx_hash(tx_hash)
        tx = await self._chain.get_transaction(tx_hash)

        if tx.status == "pending":
            raise TransactionPending(f"deposit transaction {tx_hash} is not confirmed yet")
        if tx.status != "success":
            raise IntentMismatch(f"deposit transaction failed: {tx.detail or tx.status}")
        if not tx.sender:
            raise IntentMismatch("could not determine deposit sender")
        if not same_address(tx.recipient, treasury):
            raise IntentMismatch("deposit recipient does not match treasury")
        if not tx.amount or tx.amount <= 0:
            raise IntentMismatch("deposit amount must be greater than zero")
        if wallet_hint and not same_address(wallet_hint, tx.sender):
            raise IntentMismatch("deposit can only be claimed by the sending wallet")

        async with self._store.transaction() as uow:
            if await uow.find_deposit_entry(tx_hash) is not None:
                account = await uow.lock_account(tx.sender)
                return DepositClaimResult(
                    wallet=tx.sender,
                    amount=tx.amount,
                    tx_hash=tx_hash,
                    balance=account,
                    already_claimed=True,
                )
            account, _ = await credit_in(
                uow,
                tx.sender,
                tx.amount,
                LedgerReason.DEPOSIT_CLAIM,
                reference_tx_hash=tx_hash,
                metadata={"source": "stellar-payment"},
            )

        log.info("Claimed direct deposit %s: %d to %s", tx_hash[:16], tx.amount, tx.sender)
        return DepositClaimResult(
            wallet=tx.sender, amount=tx.amount, tx_hash=tx_hash, balance=account
        )

    async def _confirmed_result(self, intent: DepositIntent) -> DepositSettlementResult:
        async with self._store.transaction() as uow:
            account = await uow.lock_account(intent.wallet)
        return DepositSettlementResult(
            "confirmed",
            balance=account.available_balance,
            amount_credited=intent.amount,
            tx_hash=intent.tx_hash,
        )
