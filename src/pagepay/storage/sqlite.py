"""SQLite implementation of the LedgerStore protocol."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from pagepay.models.ledger import (
    BatchStatus,
    DepositIntent,
    IntentStatus,
    LedgerEntry,
    ReaderAccount,
    RevenueEvent,
    SettlementBatch,
    SettlementStatus,
    UnitKind,
    WithdrawalRequest,
)
from pagepay.models.results import ClaimedEvent

log = logging.getLogger(__name__)

SCHEMA = """
-- Reader balances. available = deposited - spent, never negative.
CREATE TABLE IF NOT EXISTS reader_accounts (
    wallet TEXT PRIMARY KEY,
    available_balance INTEGER NOT NULL DEFAULT 0 CHECK (available_balance >= 0),
    total_deposited INTEGER NOT NULL DEFAULT 0 CHECK (total_deposited >= 0),
    total_spent INTEGER NOT NULL DEFAULT 0 CHECK (total_spent >= 0),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK (available_balance = total_deposited - total_spent)
);

-- Append-only balance ledger
CREATE TABLE IF NOT EXISTS balance_ledger (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    wallet TEXT NOT NULL,
    delta INTEGER NOT NULL,
    balance_after INTEGER NOT NULL,
    reason TEXT NOT NULL,
    book_id INTEGER,
    page_number INTEGER,
    chapter_number INTEGER,
    bundle_type TEXT,
    reference_id TEXT,
    reference_tx_hash TEXT,
    metadata TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_ledger_wallet ON balance_ledger(wallet, id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_ledger_deposit_tx ON balance_ledger(reference_tx_hash)
    WHERE reason IN ('deposit', 'deposit_claim') AND reference_tx_hash IS NOT NULL;
CREATE TRIGGER IF NOT EXISTS balance_ledger_no_update BEFORE UPDATE ON balance_ledger
BEGIN
    SELECT RAISE(ABORT, 'balance_ledger is append-only');
END;
CREATE TRIGGER IF NOT EXISTS balance_ledger_no_delete BEFORE DELETE ON balance_ledger
BEGIN
    SELECT RAISE(ABORT, 'balance_ledger is append-only');
END;

-- Deposit intents
CREATE TABLE IF NOT EXISTS credit_deposit_intents (
    id TEXT PRIMARY KEY,
    wallet TEXT NOT NULL,
    amount INTEGER NOT NULL CHECK (amount > 0),
    memo TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL DEFAULT 'pending',
    tx_hash TEXT,
    last_error TEXT,
    expires_at TEXT NOT NULL,
    settled_at TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_intents_status ON credit_deposit_intents(status);
CREATE UNIQUE INDEX IF NOT EXISTS idx_intents_confirmed_tx ON credit_deposit_intents(tx_hash)
    WHERE status = 'confirmed';

-- Flat per-unit unlocks (one page or one chapter)
CREATE TABLE IF NOT EXISTS unit_unlocks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    wallet TEXT NOT NULL,
    book_id INTEGER NOT NULL,
    unit_kind TEXT NOT NULL CHECK (unit_kind IN ('page', 'chapter')),
    unit_number INTEGER NOT NULL,
    amount INTEGER NOT NULL,
    ledger_entry_id INTEGER REFERENCES balance_ledger(id),
    created_at TEXT NOT NULL,
    UNIQUE (wallet, book_id, unit_kind, unit_number)
);

-- Coalesced range entitlements from bundle purchases
CREATE TABLE IF NOT EXISTS unlock_entitlements (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    wallet TEXT NOT NULL,
    book_id INTEGER NOT NULL,
    start_page INTEGER NOT NULL,
    end_page INTEGER NOT NULL,
    chapter_number INTEGER,
    bundle_type TEXT,
    cost INTEGER NOT NULL,
    source_ledger_id INTEGER REFERENCES balance_ledger(id),
    created_at TEXT NOT NULL,
    CHECK (end_page >= start_page)
);
CREATE INDEX IF NOT EXISTS idx_entitlements_lookup ON unlock_entitlements(wallet, book_id);

-- Legacy flat payment log (direct on-chain page/chapter payments)
CREATE TABLE IF NOT EXISTS payment_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    reader_address TEXT NOT NULL,
    book_id INTEGER NOT NULL,
    page_number INTEGER,
    chapter_number INTEGER,
    tx_hash TEXT NOT NULL UNIQUE,
    amount INTEGER NOT NULL,
    verified_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_payments_reader ON payment_logs(reader_address, book_id);

-- Author revenue queue
CREATE TABLE IF NOT EXISTS author_revenue_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    author_address TEXT NOT NULL,
    reader_address TEXT NOT NULL,
    book_id INTEGER NOT NULL,
    page_number INTEGER,
    chapter_number INTEGER,
    amount INTEGER NOT NULL CHECK (amount >= 0),
    settlement_status TEXT NOT NULL DEFAULT 'pending',
    settlement_batch_id INTEGER REFERENCES author_settlement_batches(id),
    payout_tx_hash TEXT,
    payout_attempts INTEGER NOT NULL DEFAULT 0,
    processing_started_at TEXT,
    settled_at TEXT,
    last_error TEXT,
    ledger_entry_id INTEGER REFERENCES balance_ledger(id),
    entitlement_id INTEGER REFERENCES unlock_entitlements(id),
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_revenue_status ON author_revenue_events(settlement_status, created_at);
CREATE INDEX IF NOT EXISTS idx_revenue_batch ON author_revenue_events(settlement_batch_id);

-- Author payout batches
CREATE TABLE IF NOT EXISTS author_settlement_batches (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    author_address TEXT NOT NULL,
    total_amount INTEGER NOT NULL,
    event_count INTEGER NOT NULL,
    network TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'created',
    payout_tx_hash TEXT,
    nonce INTEGER,
    last_error TEXT,
    created_at TEXT NOT NULL,
    broadcast_at TEXT,
    confirmed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_batches_status ON author_settlement_batches(status);

-- Reader withdrawal requests
CREATE TABLE IF NOT EXISTS withdrawal_requests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    wallet TEXT NOT NULL,
    amount INTEGER NOT NULL CHECK (amount > 0),
    status TEXT NOT NULL DEFAULT 'pending',
    tx_hash TEXT,
    created_at TEXT NOT NULL,
    processed_at TEXT
);

-- Cluster-wide named locks
CREATE TABLE IF NOT EXISTS advisory_locks (
    name TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    acquired_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

-- Catalog
CREATE TABLE IF NOT EXISTS books (
    id INTEGER PRIMARY KEY,
    author_address TEXT NOT NULL,
    title TEXT NOT NULL,
    total_pages INTEGER NOT NULL,
    page_price INTEGER NOT NULL,
    chapter_price INTEGER NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS pages (
    book_id INTEGER NOT NULL REFERENCES books(id) ON DELETE CASCADE,
    page_number INTEGER NOT NULL,
    chapter_number INTEGER,
    PRIMARY KEY (book_id, page_number)
);
CREATE INDEX IF NOT EXISTS idx_pages_chapter ON pages(book_id, chapter_number);
"""

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def format_ts(dt: datetime) -> str:
    """Fixed-width UTC timestamp; compares correctly as text."""
    return dt.astimezone(timezone.utc).strftime(_TS_FORMAT)


def parse_ts(value: str) -> datetime:
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


def now_ts() -> str:
    return format_ts(datetime.now(timezone.utc))


def _placeholders(values: list) -> str:
    return ",".join("?" for _ in values)


class SQLiteUnitOfWork:
    """Statements executed inside one open SQLite transaction."""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self.conn = conn

    # ── Accounts & ledger ──────────────────────────────────

    async def lock_account(self, wallet: str) -> ReaderAccount:
        now = now_ts()
        await self.conn.execute(
            "INSERT OR IGNORE INTO reader_accounts (wallet, created_at, updated_at)"
            " VALUES (?, ?, ?)",
            (wallet, now, now),
        )
        async with self.conn.execute(
            "SELECT * FROM reader_accounts WHERE wallet=?", (wallet,)
        ) as cur:
            row = await cur.fetchone()
        return _row_to_account(row)

    async def apply_balance_delta(
        self, wallet: str, available: int, deposited: int = 0, spent: int = 0
    ) -> ReaderAccount:
        await self.conn.execute(
            "UPDATE reader_accounts SET available_balance=available_balance+?,"
            " total_deposited=total_deposited+?, total_spent=total_spent+?, updated_at=?"
            " WHERE wallet=?",
            (available, deposited, spent, now_ts(), wallet),
        )
        async with self.conn.execute(
            "SELECT * FROM reader_accounts WHERE wallet=?", (wallet,)
        ) as cur:
            row = await cur.fetchone()
        return _row_to_account(row)

    async def append_ledger_entry(
        self,
        wallet: str,
        delta: int,
        balance_after: int,
        reason: str,
        book_id: int | None = None,
        page_number: int | None = None,
        chapter_number: int | None = None,
        bundle_type: str | None = None,
        reference_id: str | None = None,
        reference_tx_hash: str | None = None,
        metadata: dict | None = None,
    ) -> int:
        cur = await self.conn.execute(
            "INSERT INTO balance_ledger"
            " (wallet, delta, balance_after, reason, book_id, page_number, chapter_number,"
            "  bundle_type, reference_id, reference_tx_hash, metadata, created_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                wallet, delta, balance_after, reason, book_id, page_number,
                chapter_number, bundle_type, reference_id, reference_tx_hash,
                json.dumps(metadata) if metadata is not None else None, now_ts(),
            ),
        )
        return cur.lastrowid

    async def find_deposit_entry(self, tx_hash: str) -> LedgerEntry | None:
        async with self.conn.execute(
            "SELECT * FROM balance_ledger WHERE reference_tx_hash=?"
            " AND reason IN ('deposit', 'deposit_claim') LIMIT 1",
            (tx_hash,),
        ) as cur:
            row = await cur.fetchone()
            return _row_to_ledger_entry(row) if row else None

    async def list_ledger_entries(self, wallet: str, limit: int = 50) -> list[LedgerEntry]:
        async with self.conn.execute(
            "SELECT * FROM balance_ledger WHERE wallet=? ORDER BY id DESC LIMIT ?",
            (wallet, limit),
        ) as cur:
            return [_row_to_ledger_entry(row) async for row in cur]

    # ── Unlocks & entitlements ─────────────────────────────

    async def has_unit_unlock(self, wallet: str, book_id: int, kind: str, unit: int) -> bool:
        async with self.conn.execute(
            "SELECT 1 FROM unit_unlocks WHERE wallet=? AND book_id=? AND unit_kind=?"
            " AND unit_number=? LIMIT 1",
            (wallet, book_id, kind, unit),
        ) as cur:
            return await cur.fetchone() is not None

    async def insert_unit_unlock(
        self, wallet: str, book_id: int, kind: str, unit: int, amount: int, ledger_entry_id: int
    ) -> bool:
        cur = await self.conn.execute(
            "INSERT INTO unit_unlocks"
            " (wallet, book_id, unit_kind, unit_number, amount, ledger_entry_id, created_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?)"
            " ON CONFLICT (wallet, book_id, unit_kind, unit_number) DO NOTHING",
            (wallet, book_id, kind, unit, amount, ledger_entry_id, now_ts()),
        )
        return cur.rowcount == 1

    async def has_range_entitlement(self, wallet: str, book_id: int, page_number: int) -> bool:
        async with self.conn.execute(
            "SELECT 1 FROM unlock_entitlements WHERE wallet=? AND book_id=?"
            " AND ? BETWEEN start_page AND end_page LIMIT 1",
            (wallet, book_id, page_number),
        ) as cur:
            return await cur.fetchone() is not None

    async def has_legacy_payment(
        self, wallet: str, book_id: int, page_number: int | None, chapter_number: int | None
    ) -> bool:
        async with self.conn.execute(
            "SELECT 1 FROM payment_logs WHERE reader_address=? AND book_id=?"
            " AND (page_number=? OR (? IS NOT NULL AND chapter_number=?)) LIMIT 1",
            (wallet, book_id, page_number, chapter_number, chapter_number),
        ) as cur:
            return await cur.fetchone() is not None

    async def owned_pages(
        self, wallet: str, book_id: int, pages: list[tuple[int, int | None]]
    ) -> set[int]:
        """Pages in `pages` the wallet already owns through any entitlement source."""
        async with self.conn.execute(
            "SELECT start_page, end_page FROM unlock_entitlements WHERE wallet=? AND book_id=?",
            (wallet, book_id),
        ) as cur:
            ranges = [(row["start_page"], row["end_page"]) async for row in cur]

        unit_pages: set[int] = set()
        unit_chapters: set[int] = set()
        async with self.conn.execute(
            "SELECT unit_kind, unit_number FROM unit_unlocks WHERE wallet=? AND book_id=?",
            (wallet, book_id),
        ) as cur:
            async for row in cur:
                if row["unit_kind"] == UnitKind.PAGE.value:
                    unit_pages.add(row["unit_number"])
                else:
                    unit_chapters.add(row["unit_number"])

        async with self.conn.execute(
            "SELECT page_number, chapter_number FROM payment_logs"
            " WHERE reader_address=? AND book_id=?",
            (wallet, book_id),
        ) as cur:
            async for row in cur:
                if row["page_number"] is not None:
                    unit_pages.add(row["page_number"])
                if row["chapter_number"] is not None:
                    unit_chapters.add(row["chapter_number"])

        owned = set()
        for page, chapter in pages:
            if page in unit_pages or (chapter is not None and chapter in unit_chapters):
                owned.add(page)
            elif any(start <= page <= end for start, end in ranges):
                owned.add(page)
        return owned

    async def insert_entitlement(
        self, wallet: str, book_id: int, start_page: int, end_page: int, cost: int,
        chapter_number: int | None, bundle_type: str | None, source_ledger_id: int | None,
    ) -> int:
        cur = await self.conn.execute(
            "INSERT INTO unlock_entitlements"
            " (wallet, book_id, start_page, end_page, chapter_number, bundle_type, cost,"
            "  source_ledger_id, created_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                wallet, book_id, start_page, end_page, chapter_number,
                bundle_type, cost, source_ledger_id, now_ts(),
            ),
        )
        return cur.lastrowid

    async def insert_revenue_event(
        self, author_address: str, reader_address: str, book_id: int, amount: int,
        page_number: int | None = None, chapter_number: int | None = None,
        ledger_entry_id: int | None = None, entitlement_id: int | None = None,
    ) -> int:
        cur = await self.conn.execute(
            "INSERT INTO author_revenue_events"
            " (author_address, reader_address, book_id, page_number, chapter_number, amount,"
            "  ledger_entry_id, entitlement_id, created_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                author_address, reader_address, book_id, page_number, chapter_number,
                amount, ledger_entry_id, entitlement_id, now_ts(),
            ),
        )
        return cur.lastrowid

    # ── Deposit intents ────────────────────────────────────

    async def insert_intent(self, intent: DepositIntent) -> None:
        await self.conn.execute(
            "INSERT INTO credit_deposit_intents"
            " (id, wallet, amount, memo, status, expires_at, created_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                intent.id, intent.wallet, intent.amount, intent.memo,
                intent.status, intent.expires_at, intent.created_at or now_ts(),
            ),
        )

    async def get_intent(self, intent_id: str) -> DepositIntent | None:
        async with self.conn.execute(
            "SELECT * FROM credit_deposit_intents WHERE id=?", (intent_id,)
        ) as cur:
            row = await cur.fetchone()
            return _row_to_intent(row) if row else None

    async def record_intent_attempt(
        self, intent_id: str, tx_hash: str, last_error: str | None
    ) -> None:
        """Remember the first submitted tx hash and the latest verification error."""
        await self.conn.execute(
            "UPDATE credit_deposit_intents SET tx_hash=COALESCE(tx_hash, ?), last_error=?"
            " WHERE id=?",
            (tx_hash, last_error, intent_id),
        )

    async def expire_intent(self, intent_id: str) -> None:
        await self.conn.execute(
            "UPDATE credit_deposit_intents SET status=?,"
            " last_error=COALESCE(last_error, 'Deposit intent expired') WHERE id=?",
            (IntentStatus.EXPIRED.value, intent_id),
        )

    async def confirm_intent(self, intent_id: str, tx_hash: str, amount: int) -> None:
        await self.conn.execute(
            "UPDATE credit_deposit_intents SET status=?, tx_hash=?, amount=?,"
            " settled_at=?, last_error=NULL WHERE id=?",
            (IntentStatus.CONFIRMED.value, tx_hash, amount, now_ts(), intent_id),
        )

    async def find_intent_by_tx(self, tx_hash: str, exclude_id: str) -> DepositIntent | None:
        async with self.conn.execute(
            "SELECT * FROM credit_deposit_intents WHERE tx_hash=? AND id<>? LIMIT 1",
            (tx_hash, exclude_id),
        ) as cur:
            row = await cur.fetchone()
            return _row_to_intent(row) if row else None

    async def list_reconcilable_intents(self, limit: int) -> list[DepositIntent]:
        async with self.conn.execute(
            "SELECT * FROM credit_deposit_intents"
            " WHERE status IN ('pending', 'expired') AND tx_hash IS NOT NULL"
            " ORDER BY created_at LIMIT ?",
            (limit,),
        ) as cur:
            return [_row_to_intent(row) async for row in cur]

    # ── Withdrawals ────────────────────────────────────────

    async def insert_withdrawal(self, wallet: str, amount: int) -> int:
        cur = await self.conn.execute(
            "INSERT INTO withdrawal_requests (wallet, amount, status, created_at)"
            " VALUES (?, ?, 'pending', ?)",
            (wallet, amount, now_ts()),
        )
        return cur.lastrowid

    async def get_withdrawal(self, request_id: int) -> WithdrawalRequest | None:
        async with self.conn.execute(
            "SELECT * FROM withdrawal_requests WHERE id=?", (request_id,)
        ) as cur:
            row = await cur.fetchone()
            if row is None:
                return None
            return WithdrawalRequest(
                id=row["id"],
                wallet=row["wallet"],
                amount=row["amount"],
                status=row["status"],
                tx_hash=row["tx_hash"],
                created_at=row["created_at"],
                processed_at=row["processed_at"],
            )

    async def transition_withdrawal(
        self, request_id: int, status: str, tx_hash: str | None = None
    ) -> bool:
        """Move a pending request to `status`. False if it was not pending."""
        cur = await self.conn.execute(
            "UPDATE withdrawal_requests SET status=?, tx_hash=COALESCE(?, tx_hash),"
            " processed_at=? WHERE id=? AND status='pending'",
            (status, tx_hash, now_ts(), request_id),
        )
        return cur.rowcount == 1

    # ── Settlement ─────────────────────────────────────────

    async def claim_pending_events(self, limit: int) -> list[ClaimedEvent]:
        """Move up to `limit` pending events to processing and return them."""
        async with self.conn.execute(
            "SELECT id, author_address, amount FROM author_revenue_events"
            " WHERE settlement_status=? ORDER BY created_at, id LIMIT ?",
            (SettlementStatus.PENDING.value, limit),
        ) as cur:
            claimed = [
                ClaimedEvent(
                    id=row["id"],
                    author_address=row["author_address"],
                    amount=row["amount"],
                )
                async for row in cur
            ]
        if not claimed:
            return []

        ids = [ev.id for ev in claimed]
        await self.conn.execute(
            "UPDATE author_revenue_events SET settlement_status=?, processing_started_at=?,"
            " payout_attempts=payout_attempts+1, last_error=NULL"
            f" WHERE id IN ({_placeholders(ids)}) AND settlement_status=?",
            [SettlementStatus.PROCESSING.value, now_ts(), *ids, SettlementStatus.PENDING.value],
        )
        return claimed

    async def insert_batch(
        self, author_address: str, total_amount: int, event_count: int, network: str
    ) -> int:
        cur = await self.conn.execute(
            "INSERT INTO author_settlement_batches"
            " (author_address, total_amount, event_count, network, status, created_at)"
            " VALUES (?, ?, ?, ?, ?, ?)",
            (author_address, total_amount, event_count, network,
             BatchStatus.CREATED.value, now_ts()),
        )
        return cur.lastrowid

    async def link_events(self, event_ids: list[int], batch_id: int) -> None:
        await self.conn.execute(
            "UPDATE author_revenue_events SET settlement_batch_id=?"
            f" WHERE id IN ({_placeholders(event_ids)})",
            [batch_id, *event_ids],
        )

    async def mark_batch_broadcasted(
        self, batch_id: int, event_ids: list[int], tx_hash: str, nonce: int
    ) -> None:
        await self.conn.execute(
            "UPDATE author_settlement_batches SET status=?, payout_tx_hash=?, nonce=?,"
            " last_error=NULL, broadcast_at=? WHERE id=?",
            (BatchStatus.BROADCASTED.value, tx_hash, nonce, now_ts(), batch_id),
        )
        await self.conn.execute(
            "UPDATE author_revenue_events SET payout_tx_hash=?, last_error=NULL"
            f" WHERE id IN ({_placeholders(event_ids)})",
            [tx_hash, *event_ids],
        )

    async def mark_batch_failed(
        self, batch_id: int | None, event_ids: list[int], reason: str
    ) -> None:
        """Fail a batch that never reached the chain and requeue its events."""
        if batch_id is not None:
            await self.conn.execute(
                "UPDATE author_settlement_batches SET status=?, last_error=? WHERE id=?",
                (BatchStatus.FAILED.value, reason, batch_id),
            )
        if event_ids:
            await self.conn.execute(
                f"{_REQUEUE_SQL} WHERE id IN ({_placeholders(event_ids)})",
                [reason, *event_ids],
            )

    async def finalize_batch(self, batch_id: int, tx_hash: str) -> int:
        """Confirm a broadcasted batch and settle its processing events."""
        now = now_ts()
        await self.conn.execute(
            "UPDATE author_settlement_batches SET status=?, confirmed_at=?, last_error=NULL"
            " WHERE id=?",
            (BatchStatus.CONFIRMED.value, now, batch_id),
        )
        cur = await self.conn.execute(
            "UPDATE author_revenue_events SET settlement_status=?, settled_at=?,"
            " processing_started_at=NULL, payout_tx_hash=?, last_error=NULL"
            " WHERE settlement_batch_id=? AND settlement_status=?",
            (SettlementStatus.SETTLED.value, now, tx_hash, batch_id,
             SettlementStatus.PROCESSING.value),
        )
        return cur.rowcount

    async def fail_broadcasted_batch(self, batch_id: int, reason: str) -> int:
        await self.conn.execute(
            "UPDATE author_settlement_batches SET status=?, last_error=? WHERE id=?",
            (BatchStatus.FAILED.value, reason, batch_id),
        )
        cur = await self.conn.execute(
            f"{_REQUEUE_SQL} WHERE settlement_batch_id=? AND settlement_status=?",
            (reason, batch_id, SettlementStatus.PROCESSING.value),
        )
        return cur.rowcount

    async def reclaim_stale_events(self, cutoff: str) -> int:
        """Requeue processing events claimed before `cutoff` whose batch never broadcast."""
        stale_filter = (
            " WHERE settlement_status='processing'"
            " AND processing_started_at IS NOT NULL AND processing_started_at < ?"
            " AND (settlement_batch_id IS NULL OR settlement_batch_id IN"
            "      (SELECT id FROM author_settlement_batches WHERE status IN ('created', 'failed')))"
        )
        await self.conn.execute(
            "UPDATE author_settlement_batches SET status='failed',"
            " last_error=COALESCE(last_error, 'Abandoned by a stalled worker')"
            " WHERE status='created' AND id IN"
            f" (SELECT settlement_batch_id FROM author_revenue_events{stale_filter})",
            (cutoff,),
        )
        cur = await self.conn.execute(
            "UPDATE author_revenue_events SET settlement_status='pending',"
            " settlement_batch_id=NULL, processing_started_at=NULL, payout_tx_hash=NULL,"
            " settled_at=NULL,"
            " last_error=COALESCE(last_error, 'Settlement timed out and was requeued')"
            f"{stale_filter}",
            (cutoff,),
        )
        return cur.rowcount

    async def list_batches(self, status: str, limit: int = 50) -> list[SettlementBatch]:
        async with self.conn.execute(
            "SELECT * FROM author_settlement_batches WHERE status=?"
            " ORDER BY broadcast_at IS NULL, broadcast_at, created_at LIMIT ?",
            (status, limit),
        ) as cur:
            return [_row_to_batch(row) async for row in cur]

    async def get_batch(self, batch_id: int) -> SettlementBatch | None:
        async with self.conn.execute(
            "SELECT * FROM author_settlement_batches WHERE id=?", (batch_id,)
        ) as cur:
            row = await cur.fetchone()
            return _row_to_batch(row) if row else None

    async def get_revenue_events(
        self, status: str | None = None, batch_id: int | None = None
    ) -> list[RevenueEvent]:
        clauses = []
        params: list = []
        if status is not None:
            clauses.append("settlement_status=?")
            params.append(status)
        if batch_id is not None:
            clauses.append("settlement_batch_id=?")
            params.append(batch_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self.conn.execute(
            f"SELECT * FROM author_revenue_events{where} ORDER BY id", params
        ) as cur:
            return [_row_to_revenue_event(row) async for row in cur]


_REQUEUE_SQL = (
    "UPDATE author_revenue_events SET settlement_status='pending',"
    " settlement_batch_id=NULL, processing_started_at=NULL, payout_tx_hash=NULL,"
    " settled_at=NULL, last_error=?"
)


class SQLiteLedgerStore:
    """SQLite-backed implementation of the LedgerStore protocol.

    All access to the shared connection goes through transaction(), which
    serializes coroutines of this process and takes the database write lock
    (BEGIN IMMEDIATE) so that other processes on the same file serialize too.
    """

    def __init__(self, db_path: str, busy_timeout: float = 5.0) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(
            self._db_path, timeout=self._busy_timeout, isolation_level=None,
        )
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys=ON")
        if self._db_path != ":memory:":
            await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(SCHEMA)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        assert self._db is not None, "Store not initialized. Call initialize() first."
        return self._db

    @asynccontextmanager
    async def transaction(self, write: bool = True) -> AsyncIterator[SQLiteUnitOfWork]:
        """Run a block atomically. Any exception rolls the whole block back."""
        async with self._lock:
            await self.db.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            try:
                yield SQLiteUnitOfWork(self.db)
            except BaseException:
                await self.db.execute("ROLLBACK")
                raise
            else:
                await self.db.execute("COMMIT")

    # ── Advisory locks ─────────────────────────────────────

    async def try_advisory_lock(self, name: str, owner: str, ttl_seconds: int) -> bool:
        """Take the named lock without waiting. Expired holders are evicted."""
        now = datetime.now(timezone.utc)
        async with self.transaction() as uow:
            await uow.conn.execute(
                "DELETE FROM advisory_locks WHERE name=? AND expires_at < ?",
                (name, format_ts(now)),
            )
            cur = await uow.conn.execute(
                "INSERT OR IGNORE INTO advisory_locks (name, owner, acquired_at, expires_at)"
                " VALUES (?, ?, ?, ?)",
                (name, owner, format_ts(now), format_ts(now + timedelta(seconds=ttl_seconds))),
            )
            acquired = cur.rowcount == 1
        if not acquired:
            log.debug("Advisory lock %s is held by another worker", name)
        return acquired

    async def renew_advisory_lock(self, name: str, owner: str, ttl_seconds: int) -> bool:
        """Push the expiry forward. False once another worker has taken the lock."""
        now = datetime.now(timezone.utc)
        async with self.transaction() as uow:
            cur = await uow.conn.execute(
                "UPDATE advisory_locks SET expires_at=? WHERE name=? AND owner=?",
                (format_ts(now + timedelta(seconds=ttl_seconds)), name, owner),
            )
            renewed = cur.rowcount == 1
        if not renewed:
            log.warning("Advisory lock %s is no longer held by %s", name, owner)
        return renewed

    async def release_advisory_lock(self, name: str, owner: str) -> None:
        async with self.transaction() as uow:
            await uow.conn.execute(
                "DELETE FROM advisory_locks WHERE name=? AND owner=?", (name, owner)
            )

    # ── Legacy payments ────────────────────────────────────

    async def record_legacy_payment(
        self,
        wallet: str,
        book_id: int,
        tx_hash: str,
        amount: int,
        page_number: int | None = None,
        chapter_number: int | None = None,
    ) -> None:
        """Import a direct on-chain page/chapter payment as an entitlement source."""
        async with self.transaction() as uow:
            await uow.conn.execute(
                "INSERT OR IGNORE INTO payment_logs"
                " (reader_address, book_id, page_number, chapter_number, tx_hash, amount,"
                "  verified_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (wallet, book_id, page_number, chapter_number, tx_hash, amount, now_ts()),
            )


# ── Row converters ─────────────────────────────────────────


def _row_to_account(row: aiosqlite.Row) -> ReaderAccount:
    return ReaderAccount(
        wallet=row["wallet"],
        available_balance=row["available_balance"],
        total_deposited=row["total_deposited"],
        total_spent=row["total_spent"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_ledger_entry(row: aiosqlite.Row) -> LedgerEntry:
    return LedgerEntry(
        id=row["id"],
        wallet=row["wallet"],
        delta=row["delta"],
        balance_after=row["balance_after"],
        reason=row["reason"],
        book_id=row["book_id"],
        page_number=row["page_number"],
        chapter_number=row["chapter_number"],
        bundle_type=row["bundle_type"],
        reference_id=row["reference_id"],
        reference_tx_hash=row["reference_tx_hash"],
        metadata=json.loads(row["metadata"]) if row["metadata"] else None,
        created_at=row["created_at"],
    )


def _row_to_intent(row: aiosqlite.Row) -> DepositIntent:
    return DepositIntent(
        id=row["id"],
        wallet=row["wallet"],
        amount=row["amount"],
        memo=row["memo"],
        status=row["status"],
        expires_at=row["expires_at"],
        tx_hash=row["tx_hash"],
        last_error=row["last_error"],
        settled_at=row["settled_at"],
        created_at=row["created_at"],
    )


def _row_to_batch(row: aiosqlite.Row) -> SettlementBatch:
    return SettlementBatch(
        id=row["id"],
        author_address=row["author_address"],
        total_amount=row["total_amount"],
        event_count=row["event_count"],
        network=row["network"],
        status=row["status"],
        payout_tx_hash=row["payout_tx_hash"],
        nonce=row["nonce"],
        last_error=row["last_error"],
        created_at=row["created_at"],
        broadcast_at=row["broadcast_at"],
        confirmed_at=row["confirmed_at"],
    )


def _row_to_revenue_event(row: aiosqlite.Row) -> RevenueEvent:
    return RevenueEvent(
        id=row["id"],
        author_address=row["author_address"],
        reader_address=row["reader_address"],
        book_id=row["book_id"],
        amount=row["amount"],
        page_number=row["page_number"],
        chapter_number=row["chapter_number"],
        settlement_status=row["settlement_status"],
        settlement_batch_id=row["settlement_batch_id"],
        payout_tx_hash=row["payout_tx_hash"],
        payout_attempts=row["payout_attempts"],
        processing_started_at=row["processing_started_at"],
        settled_at=row["settled_at"],
        last_error=row["last_error"],
        ledger_entry_id=row["ledger_entry_id"],
        entitlement_id=row["entitlement_id"],
        created_at=row["created_at"],
    )
