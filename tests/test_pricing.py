"""Tests 8-12: bundle option building, proration and revenue splitting."""

from __future__ import annotations

import pytest

from pagepay.ledger.pricing import (
    CHAPTER,
    NEXT_5_PAGES,
    NEXT_10_PERCENT,
    SINGLE_PAGE,
    apply_discount,
    build_options,
    dedupe,
    prorate,
    split_revenue,
)

from tests.factories import make_book


# ── Test 8: Proration rounds up ──────────────────────────────────


@pytest.mark.parametrize(
    "total,full,remaining,expected",
    [
        (1000, 10, 3, 300),
        (1000, 10, 10, 1000),
        (1000, 10, 0, 0),
        (1000, 3, 2, 667),
        (1000, 3, 5, 1000),
    ],
)
def test_prorate(total, full, remaining, expected):
    assert prorate(total, full, remaining) == expected


# ── Test 9: Revenue split sums exactly ───────────────────────────


def test_split_revenue_remainder_goes_first():
    assert split_revenue(100, 3) == [34, 33, 33]
    assert split_revenue(7, 7) == [1] * 7
    assert split_revenue(2, 4) == [1, 1, 0, 0]


def test_split_revenue_requires_positive_count():
    with pytest.raises(ValueError):
        split_revenue(100, 0)


def test_apply_discount_rounds_down():
    assert apply_discount(500_000, 95) == 475_000
    assert apply_discount(99, 95) == 94


# ── Test 10: Options for a page mid-book ─────────────────────────


def test_build_options_mid_book():
    book = make_book(total_pages=20, page_price=100_000, chapter_price=250_000)

    options = build_options(book, 6, chapter_number=2, chapter_range=(6, 12))
    by_type = {o.bundle_type: o for o in options}

    assert [o.bundle_type for o in options] == [SINGLE_PAGE, NEXT_5_PAGES, NEXT_10_PERCENT, CHAPTER]
    assert by_type[SINGLE_PAGE].amount == 100_000
    assert (by_type[NEXT_5_PAGES].start_page, by_type[NEXT_5_PAGES].end_page) == (6, 10)
    assert by_type[NEXT_5_PAGES].amount == 475_000
    # 10% of 20 pages is a 2-page window
    assert by_type[NEXT_10_PERCENT].page_count == 2
    assert by_type[NEXT_10_PERCENT].amount == 180_000
    assert by_type[CHAPTER].chapter_number == 2
    assert by_type[CHAPTER].page_count == 7
    assert by_type[CHAPTER].amount == 250_000


# ── Test 11: Ranges clamp at the last page ───────────────────────


def test_build_options_near_end_clamps():
    book = make_book(total_pages=20, page_price=1_000)

    options = build_options(book, 19)
    by_type = {o.bundle_type: o for o in options}

    assert CHAPTER not in by_type
    assert by_type[NEXT_5_PAGES].end_page == 20
    assert by_type[NEXT_5_PAGES].page_count == 2
    assert by_type[NEXT_5_PAGES].amount == 1_900


def test_ten_percent_window_is_at_least_one_page():
    book = make_book(total_pages=4, page_price=1_000)

    by_type = {o.bundle_type: o for o in build_options(book, 2)}

    assert by_type[NEXT_10_PERCENT].page_count == 1
    assert by_type[NEXT_10_PERCENT].amount == 900


# ── Test 12: Dedupe ──────────────────────────────────────────────


def test_dedupe_keeps_first_occurrence():
    book = make_book(total_pages=20)
    options = build_options(book, 3)

    doubled = dedupe(options + options)

    assert doubled == options
