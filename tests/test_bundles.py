"""Tests 21-27: bundle previews and prorated bundle purchases."""

from __future__ import annotations

import pytest

from pagepay.errors import NotFound
from pagepay.ledger.pricing import CHAPTER, NEXT_5_PAGES, NEXT_10_PERCENT, SINGLE_PAGE

from tests.conftest import AUTHOR, BOOK_ID, CHAPTER_PRICE, PAGE_PRICE, READER
from tests.factories import fund, make_book

SMALL_BOOK_ID = 2


async def _events(store, entitlement_only: bool = True):
    async with store.transaction(write=False) as uow:
        events = await uow.get_revenue_events()
    return [e for e in events if e.entitlement_id is not None or not entitlement_only]


@pytest.fixture
async def small_book(catalog):
    """4 pages, pages 2-4 form chapter 2 priced at 100 stroops."""
    await catalog.register_book(
        make_book(
            book_id=SMALL_BOOK_ID,
            author_address=AUTHOR,
            total_pages=4,
            page_price=40,
            chapter_price=100,
        ),
        [1, 2, 2, 2],
    )
    return SMALL_BOOK_ID


# ── Test 21: Full bundle purchase ────────────────────────────────


async def test_next_five_pages_purchase(engine, store, balances):
    await fund(store, READER, 1_000_000)

    result = await engine.purchase_bundle(READER, BOOK_ID, 6, NEXT_5_PAGES)

    assert result.success is True
    assert result.already_unlocked is False
    assert result.debited_amount == 475_000
    assert result.balance.available_balance == 525_000
    assert (result.unlocked_range.start_page, result.unlocked_range.end_page) == (6, 10)
    assert result.unlocked_range.pages_unlocked == 5

    for page in range(6, 11):
        assert await engine.has_entitlement(READER, BOOK_ID, page)
    assert not await engine.has_entitlement(READER, BOOK_ID, 11)

    events = await _events(store)
    assert [e.page_number for e in events] == [6, 7, 8, 9, 10]
    assert sum(e.amount for e in events) == 475_000
    assert {e.amount for e in events} == {95_000}

    entry = (await balances.history(READER, limit=1))[0]
    assert entry.reason == "bundle_unlock"
    assert entry.bundle_type == NEXT_5_PAGES
    assert entry.metadata["pages_unlocked"] == 5


# ── Test 22: Already-owned pages are not charged again ───────────


async def test_partial_ownership_is_prorated(engine, store):
    """Page 3 owned: next-5 from page 2 charges 4/5 of 475,000."""
    await fund(store, READER, 1_000_000)
    await engine.charge_for_page(READER, BOOK_ID, 3)

    result = await engine.purchase_bundle(READER, BOOK_ID, 2, NEXT_5_PAGES)

    assert result.success is True
    assert result.debited_amount == 380_000
    assert result.unlocked_range.pages_unlocked == 4
    assert (result.unlocked_range.start_page, result.unlocked_range.end_page) == (2, 6)

    events = await _events(store)
    assert [e.page_number for e in events] == [2, 4, 5, 6]
    assert sum(e.amount for e in events) == 380_000


# ── Test 23: Buying an owned range is a no-op ────────────────────


async def test_fully_owned_bundle_debits_nothing(engine, store, balances):
    await fund(store, READER, 1_000_000)
    await engine.purchase_bundle(READER, BOOK_ID, 6, NEXT_5_PAGES)
    before = await balances.get_balance(READER)

    again = await engine.purchase_bundle(READER, BOOK_ID, 6, SINGLE_PAGE)

    assert again.success is True
    assert again.already_unlocked is True
    assert again.debited_amount == 0
    assert again.unlocked_range.pages_unlocked == 0
    assert again.balance.available_balance == before.available_balance
    assert len(await _events(store)) == 5


# ── Test 24: Split remainder across pages ────────────────────────


async def test_chapter_bundle_split_sums_to_charge(engine, store, small_book):
    await fund(store, READER, 1_000)

    result = await engine.purchase_bundle(READER, small_book, 3, CHAPTER)

    assert result.debited_amount == 100
    assert result.unlocked_range.chapter_number == 2
    assert (result.unlocked_range.start_page, result.unlocked_range.end_page) == (2, 4)

    events = await _events(store)
    assert [(e.page_number, e.amount) for e in events] == [(2, 34), (3, 33), (4, 33)]
    assert all(e.chapter_number == 2 for e in events)


# ── Test 25: Insufficient balance ────────────────────────────────


async def test_bundle_with_insufficient_balance(engine, store, balances):
    await fund(store, READER, 100_000)

    result = await engine.purchase_bundle(READER, BOOK_ID, 13, CHAPTER)

    assert result.success is False
    assert result.debited_amount == 0
    assert result.insufficient is not None
    assert result.insufficient.required_amount == CHAPTER_PRICE
    assert result.insufficient.shortfall == CHAPTER_PRICE - 100_000
    assert result.balance.available_balance == 100_000
    assert not await engine.has_entitlement(READER, BOOK_ID, 13)
    assert await _events(store) == []


async def test_unknown_bundle_type_rejected(engine, store):
    with pytest.raises(ValueError):
        await engine.purchase_bundle(READER, BOOK_ID, 2, "whole-library")
    with pytest.raises(NotFound):
        await engine.purchase_bundle(READER, 404, 2, SINGLE_PAGE)


# ── Test 26: Preview reflects ownership ──────────────────────────


async def test_preview_prorates_and_suggests_top_up(engine, store):
    await fund(store, READER, 50_000)
    await store.record_legacy_payment(READER, BOOK_ID, "legacy-7", PAGE_PRICE, page_number=7)

    preview = await engine.preview_unlock(READER, BOOK_ID, 6)
    by_type = {o.bundle_type: o for o in preview.options}

    assert preview.balance.available_balance == 50_000
    assert by_type[SINGLE_PAGE].remaining_pages == 1
    assert by_type[NEXT_5_PAGES].remaining_pages == 4
    assert by_type[NEXT_5_PAGES].effective_amount == 380_000
    assert by_type[CHAPTER].remaining_pages == 6
    assert by_type[CHAPTER].effective_amount == 214_286
    # pages 6-7 with 7 owned: half of 180,000 is the cheapest payable option
    assert by_type[NEXT_10_PERCENT].effective_amount == 90_000
    assert preview.suggested_top_up == 40_000


async def test_preview_of_owned_range(engine, store):
    await fund(store, READER, 1_000_000)
    await engine.charge_for_chapter(READER, BOOK_ID, 2)

    preview = await engine.preview_unlock(READER, BOOK_ID, 6)
    by_type = {o.bundle_type: o for o in preview.options}

    assert by_type[CHAPTER].fully_unlocked
    assert by_type[CHAPTER].effective_amount == 0
    assert preview.suggested_top_up == 0


# ── Test 27: Bundle grants combine with flat checks ──────────────


async def test_bundle_pages_are_free_to_read(engine, store):
    await fund(store, READER, 1_000_000)
    await engine.purchase_bundle(READER, BOOK_ID, 2, NEXT_5_PAGES)

    result = await engine.charge_for_page(READER, BOOK_ID, 4)

    assert result.deducted_amount == 0
    assert result.used_existing_unlock is True
