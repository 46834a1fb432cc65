"""Tests 37-43: revenue queue claims and payout broadcasting."""

from __future__ import annotations

import asyncio

import pytest

from pagepay.errors import BelowPayoutThreshold, InvalidPayoutAddress, SettlementLockLost
from pagepay.models.config import PayoutsSection
from pagepay.models.results import AuthorGroup, ClaimedEvent
from pagepay.settlement.broadcaster import MAX_MEMO_BYTES, PayoutBroadcaster, build_payout_memo
from pagepay.settlement.queue import RevenueQueue, group_by_author

from tests.conftest import AUTHOR, OTHER_AUTHOR, make_test_config
from tests.factories import add_revenue


async def _events(store, **filters):
    async with store.transaction(write=False) as uow:
        return await uow.get_revenue_events(**filters)


async def _batch(store, batch_id):
    async with store.transaction(write=False) as uow:
        return await uow.get_batch(batch_id)


async def _open(store, limit=100):
    queue = RevenueQueue(store, "stellar:testnet")
    claimed = await queue.claim_batch(limit)
    return await queue.open_batches(group_by_author(claimed))


# ── Test 37: Grouping ────────────────────────────────────────────


def test_group_by_author_sums_in_first_seen_order():
    events = [
        ClaimedEvent(1, AUTHOR, 100),
        ClaimedEvent(2, OTHER_AUTHOR, 50),
        ClaimedEvent(3, f" {AUTHOR} ", 25),
    ]

    groups = group_by_author(events)

    assert [g.author_address for g in groups] == [AUTHOR, OTHER_AUTHOR]
    assert groups[0].event_ids == [1, 3]
    assert groups[0].total_amount == 125
    assert groups[1].total_amount == 50


# ── Test 38: Claims are exclusive ────────────────────────────────


async def test_claim_moves_events_to_processing(store):
    ids = [await add_revenue(store, AUTHOR, 10) for _ in range(3)]
    queue = RevenueQueue(store, "stellar:testnet")

    claimed = await queue.claim_batch(2)

    assert [c.id for c in claimed] == ids[:2]
    processing = await _events(store, status="processing")
    assert [e.id for e in processing] == ids[:2]
    assert all(e.payout_attempts == 1 and e.processing_started_at for e in processing)
    assert [e.id for e in await _events(store, status="pending")] == ids[2:]


async def test_concurrent_claims_are_disjoint(store):
    for _ in range(10):
        await add_revenue(store, AUTHOR, 10)
    queue = RevenueQueue(store, "stellar:testnet")

    results = await asyncio.gather(*(queue.claim_batch(3) for _ in range(5)))

    ids = [c.id for claimed in results for c in claimed]
    assert len(ids) == 10
    assert len(set(ids)) == 10


async def test_open_batches_links_events(store):
    await add_revenue(store, AUTHOR, 10)
    await add_revenue(store, OTHER_AUTHOR, 20)
    await add_revenue(store, AUTHOR, 30)

    groups = await _open(store)

    assert len(groups) == 2
    batch = await _batch(store, groups[0].batch_id)
    assert batch.status == "created"
    assert batch.author_address == AUTHOR
    assert batch.total_amount == 40
    assert batch.event_count == 2
    assert batch.network == "stellar:testnet"
    linked = await _events(store, batch_id=groups[0].batch_id)
    assert [e.amount for e in linked] == [10, 30]


# ── Test 39: Validation ──────────────────────────────────────────


def test_validate_rejects_bad_address_and_small_total(mock_chain):
    config = make_test_config(payouts=PayoutsSection(min_payout=1_000))
    broadcaster = PayoutBroadcaster(None, mock_chain, config)

    with pytest.raises(InvalidPayoutAddress):
        broadcaster.validate(AuthorGroup("not-an-address", [1], 5_000))
    with pytest.raises(BelowPayoutThreshold):
        broadcaster.validate(AuthorGroup(AUTHOR, [1], 999))
    broadcaster.validate(AuthorGroup(AUTHOR, [1], 1_000))


async def test_invalid_author_address_requeues_events(store, mock_chain, test_config):
    await add_revenue(store, "GBROKEN", 500)
    groups = await _open(store)

    report = await PayoutBroadcaster(store, mock_chain, test_config).broadcast(groups)

    assert report.batches_failed == 1
    assert report.batches_broadcasted == 0
    assert mock_chain.broadcast_calls == []
    batch = await _batch(store, groups[0].batch_id)
    assert batch.status == "failed"
    assert "Invalid author payout address" in batch.last_error
    (event,) = await _events(store)
    assert event.settlement_status == "pending"
    assert event.settlement_batch_id is None
    assert "Invalid author payout address" in event.last_error


async def test_below_threshold_requeues_events(store, mock_chain):
    config = make_test_config(payouts=PayoutsSection(min_payout=1_000))
    await add_revenue(store, AUTHOR, 400)
    groups = await _open(store)

    report = await PayoutBroadcaster(store, mock_chain, config).broadcast(groups)

    assert report.batches_failed == 1
    (event,) = await _events(store)
    assert event.settlement_status == "pending"
    assert "below threshold" in event.last_error


# ── Test 40: Successful broadcast ────────────────────────────────


async def test_broadcast_sequences_nonces(store, mock_chain, test_config):
    await add_revenue(store, AUTHOR, 100)
    await add_revenue(store, OTHER_AUTHOR, 200)
    groups = await _open(store)

    report = await PayoutBroadcaster(store, mock_chain, test_config).broadcast(groups)

    assert report.batches_broadcasted == 2
    assert report.event_count == 2
    assert report.total_amount == 300
    assert [r.nonce for r in mock_chain.broadcast_calls] == [100, 101]
    assert len(mock_chain.nonce_calls) == 1
    assert mock_chain.broadcast_calls[0].recipient == AUTHOR
    assert mock_chain.broadcast_calls[0].memo == f"pp:auth:{groups[0].batch_id}"

    batch = await _batch(store, groups[0].batch_id)
    assert batch.status == "broadcasted"
    assert batch.nonce == 100
    assert batch.payout_tx_hash
    assert batch.broadcast_at
    events = await _events(store, batch_id=groups[0].batch_id)
    assert events[0].settlement_status == "processing"
    assert events[0].payout_tx_hash == batch.payout_tx_hash


# ── Test 41: Nonce conflict retried once ─────────────────────────


async def test_nonce_conflict_retries_with_fresh_nonce(store, mock_chain, test_config):
    mock_chain.nonces = [100, 105]
    mock_chain.conflict_nonces = {100}
    await add_revenue(store, AUTHOR, 100)
    groups = await _open(store)

    report = await PayoutBroadcaster(store, mock_chain, test_config).broadcast(groups)

    assert report.batches_broadcasted == 1
    assert [r.nonce for r in mock_chain.broadcast_calls] == [100, 105]
    assert (await _batch(store, groups[0].batch_id)).nonce == 105


async def test_repeated_nonce_conflict_fails_batch(store, mock_chain, test_config):
    mock_chain.conflict_nonces = {100}
    await add_revenue(store, AUTHOR, 100)
    groups = await _open(store)

    report = await PayoutBroadcaster(store, mock_chain, test_config).broadcast(groups)

    assert report.batches_failed == 1
    assert len(mock_chain.broadcast_calls) == 2
    batch = await _batch(store, groups[0].batch_id)
    assert batch.status == "failed"
    assert "rejected after refresh" in batch.last_error
    (event,) = await _events(store)
    assert event.settlement_status == "pending"


# ── Test 42: Chain rejection and nonce lookup failure ────────────


async def test_rejected_broadcast_requeues(store, mock_chain, test_config):
    mock_chain.broadcast_error = "op_underfunded"
    await add_revenue(store, AUTHOR, 100)
    groups = await _open(store)

    report = await PayoutBroadcaster(store, mock_chain, test_config).broadcast(groups)

    assert report.batches_failed == 1
    batch = await _batch(store, groups[0].batch_id)
    assert batch.status == "failed"
    assert batch.last_error == "op_underfunded"
    (event,) = await _events(store)
    assert event.settlement_status == "pending"
    assert event.last_error == "op_underfunded"


async def test_nonce_lookup_failure_fails_all(store, mock_chain, test_config):
    mock_chain.nonce_error = ConnectionError("horizon down")
    await add_revenue(store, AUTHOR, 100)
    await add_revenue(store, OTHER_AUTHOR, 100)
    groups = await _open(store)

    report = await PayoutBroadcaster(store, mock_chain, test_config).broadcast(groups)

    assert report.batches_failed == 2
    assert mock_chain.broadcast_calls == []
    assert len(await _events(store, status="pending")) == 2


async def test_lost_lock_requeues_unsent_batches(store, mock_chain, test_config):
    await add_revenue(store, AUTHOR, 100)
    await add_revenue(store, OTHER_AUTHOR, 200)
    groups = await _open(store)
    beats = []

    async def heartbeat():
        beats.append(1)
        if len(beats) > 1:
            raise SettlementLockLost("settlement lock no longer held")

    with pytest.raises(SettlementLockLost):
        await PayoutBroadcaster(store, mock_chain, test_config).broadcast(groups, heartbeat)

    assert [r.recipient for r in mock_chain.broadcast_calls] == [AUTHOR]
    assert (await _batch(store, groups[0].batch_id)).status == "broadcasted"
    unsent = await _batch(store, groups[1].batch_id)
    assert unsent.status == "failed"
    (event,) = await _events(store, status="pending")
    assert event.author_address == OTHER_AUTHOR


# ── Test 43: Memo fits the chain limit ───────────────────────────


def test_payout_memo_truncated_to_limit():
    assert build_payout_memo("pp:auth", 42) == "pp:auth:42"
    long = build_payout_memo("a-very-long-settlement-prefix", 123456)
    assert len(long.encode()) == MAX_MEMO_BYTES
