"""Tests 49-53: end-to-end settlement cycles under the advisory lock."""

from __future__ import annotations

from pagepay.ledger.deposits import DepositVerifier
from pagepay.ledger.entitlements import EntitlementEngine
from pagepay.models.config import StellarSection
from pagepay.settlement.pipeline import SETTLEMENT_LOCK, AuthorSettlementPipeline

from tests.conftest import AUTHOR, BOOK_ID, READER, TEST_PUBLIC, make_test_config
from tests.factories import add_revenue


async def _events(store, **filters):
    async with store.transaction(write=False) as uow:
        return await uow.get_revenue_events(**filters)


# ── Test 49: Reader deposit to author payout ─────────────────────


async def test_full_cycle_from_deposit_to_settled_payout(
    store, catalog, mock_chain, test_config, pipeline
):
    verifier = DepositVerifier(store, mock_chain, test_config)
    engine = EntitlementEngine(store, catalog, test_config)

    ticket = await verifier.create_intent(READER, 500_000)
    deposit_tx = mock_chain.add_deposit(READER, 500_000, memo=ticket.memo)
    settled = await verifier.settle_intent(READER, ticket.intent_id, deposit_tx)
    assert settled.balance == 500_000

    unlock = await engine.charge_for_page(READER, BOOK_ID, 2)
    assert unlock.balance == 400_000
    await engine.charge_for_page(READER, BOOK_ID, 3)

    report = await pipeline.run_once()

    assert report.skipped is False
    assert report.batches_broadcasted == 1
    assert report.event_count == 2
    assert report.total_amount == 200_000
    (payout,) = mock_chain.broadcast_calls
    assert payout.recipient == AUTHOR
    assert payout.amount == 200_000

    payout_tx = next(
        h for h, tx in mock_chain.transactions.items() if tx.recipient == AUTHOR
    )
    mock_chain.confirm(payout_tx)

    second = await pipeline.run_once()

    assert second.confirmed == 1
    assert second.batches_broadcasted == 0
    events = await _events(store)
    assert {e.settlement_status for e in events} == {"settled"}
    assert len(mock_chain.broadcast_calls) == 1


# ── Test 50: Only one worker per cycle ───────────────────────────


async def test_cycle_skipped_while_lock_held(store, mock_chain, test_config, pipeline):
    await add_revenue(store, AUTHOR, 100)
    assert await store.try_advisory_lock(SETTLEMENT_LOCK, "other-worker", 600)

    report = await pipeline.run_once()

    assert report.skipped is True
    assert mock_chain.broadcast_calls == []
    assert len(await _events(store, status="pending")) == 1

    await store.release_advisory_lock(SETTLEMENT_LOCK, "other-worker")
    assert (await pipeline.run_once()).batches_broadcasted == 1


async def test_lock_released_after_cycle(store, pipeline):
    await pipeline.run_once()
    assert await store.try_advisory_lock(SETTLEMENT_LOCK, "other-worker", 600)


async def test_expired_lock_is_taken_over(store, pipeline):
    assert await store.try_advisory_lock(SETTLEMENT_LOCK, "crashed-worker", -1)

    report = await pipeline.run_once()

    assert report.skipped is False


async def test_lock_lost_before_broadcast_aborts_cycle(store, mock_chain, pipeline):
    await add_revenue(store, AUTHOR, 100)
    fetch_nonce = mock_chain.get_next_nonce

    async def lock_taken_over(address):
        await store.release_advisory_lock(SETTLEMENT_LOCK, "test-worker")
        assert await store.try_advisory_lock(SETTLEMENT_LOCK, "other-worker", 600)
        return await fetch_nonce(address)

    mock_chain.get_next_nonce = lock_taken_over

    report = await pipeline.run_once()

    assert report.aborted is True
    assert mock_chain.broadcast_calls == []
    (event,) = await _events(store)
    assert event.settlement_status == "pending"
    assert "settlement lock" in event.last_error
    assert not await store.try_advisory_lock(SETTLEMENT_LOCK, "third-worker", 600)


async def test_renew_only_extends_own_lock(store):
    assert await store.try_advisory_lock(SETTLEMENT_LOCK, "worker-a", 600)

    assert await store.renew_advisory_lock(SETTLEMENT_LOCK, "worker-a", 600)
    assert not await store.renew_advisory_lock(SETTLEMENT_LOCK, "worker-b", 600)


# ── Test 51: Payouts disabled without treasury keys ──────────────


async def test_missing_treasury_keys_leave_events_pending(store, mock_chain):
    config = make_test_config(stellar=StellarSection(treasury_address=TEST_PUBLIC))
    pipeline = AuthorSettlementPipeline(store, mock_chain, config, owner="no-keys")
    await add_revenue(store, AUTHOR, 100)

    report = await pipeline.run_once()
    await pipeline.run_once()

    assert report.batches_broadcasted == 0
    assert mock_chain.broadcast_calls == []
    assert len(await _events(store, status="pending")) == 1


# ── Test 52: Failed batch is retried next cycle ──────────────────


async def test_failed_payout_is_retried_next_cycle(store, mock_chain, pipeline):
    await add_revenue(store, AUTHOR, 100)
    mock_chain.broadcast_error = "tx_failed"

    first = await pipeline.run_once()
    assert first.batches_failed == 1

    mock_chain.broadcast_error = None
    second = await pipeline.run_once()

    assert second.batches_broadcasted == 1
    (event,) = await _events(store)
    assert event.settlement_status == "processing"
    assert event.payout_attempts == 2


# ── Test 53: Empty queue ─────────────────────────────────────────


async def test_empty_queue_is_a_quiet_cycle(mock_chain, pipeline):
    report = await pipeline.run_once()

    assert report.skipped is False
    assert report.batches_broadcasted == 0
    assert mock_chain.nonce_calls == []
