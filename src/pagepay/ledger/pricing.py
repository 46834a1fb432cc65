"""Bundle pricing, proration and revenue splitting. Pure functions, no I/O."""

from __future__ import annotations

from pagepay.models.ledger import BookInfo
from pagepay.models.results import BundleOption

SINGLE_PAGE = "single-page"
NEXT_5_PAGES = "next-5-pages"
NEXT_10_PERCENT = "next-10-percent"
CHAPTER = "chapter"

BUNDLE_TYPES = (SINGLE_PAGE, NEXT_5_PAGES, NEXT_10_PERCENT, CHAPTER)

NEXT_5_DISCOUNT = 95  # percent of list price actually charged
NEXT_10_PERCENT_DISCOUNT = 90


def apply_discount(amount: int, percent: int) -> int:
    """Keep `percent` percent of `amount`, rounding down."""
    return amount * percent // 100


def prorate(total: int, full_count: int, remaining_count: int) -> int:
    """Scale a range price to the unowned part of the range, rounding up.

    >>> prorate(1000, 3, 2)
    667
    """
    if remaining_count <= 0:
        return 0
    if remaining_count >= full_count:
        return total
    return -(-total * remaining_count // full_count)


def split_revenue(amount: int, count: int) -> list[int]:
    """Split `amount` into `count` integer shares summing exactly to `amount`.

    The first `amount % count` shares carry one extra unit.
    """
    if count <= 0:
        raise ValueError("count must be positive")
    base, remainder = divmod(amount, count)
    return [base + 1 if i < remainder else base for i in range(count)]


def dedupe(options: list[BundleOption]) -> list[BundleOption]:
    seen: set[tuple[str, int, int]] = set()
    unique = []
    for option in options:
        key = (option.bundle_type, option.start_page, option.end_page)
        if key in seen:
            continue
        seen.add(key)
        unique.append(option)
    return unique


def build_options(
    book: BookInfo,
    page_number: int,
    chapter_number: int | None = None,
    chapter_range: tuple[int, int] | None = None,
) -> list[BundleOption]:
    """Candidate unlock ranges starting at `page_number`.

    The chapter option is offered only when the page belongs to a chapter
    with a known page range.
    """
    total = book.total_pages

    next5_end = min(total, page_number + 4)
    next5_count = next5_end - page_number + 1

    window = max(1, -(-total // 10))
    tenth_end = min(total, page_number + window - 1)
    tenth_count = tenth_end - page_number + 1

    options = [
        BundleOption(
            bundle_type=SINGLE_PAGE,
            label="Unlock this page",
            description="Smallest unlock, immediate continuation.",
            start_page=page_number,
            end_page=page_number,
            page_count=1,
            amount=book.page_price,
        ),
        BundleOption(
            bundle_type=NEXT_5_PAGES,
            label="Unlock next 5 pages",
            description="Recommended for smoother reading flow.",
            start_page=page_number,
            end_page=next5_end,
            page_count=next5_count,
            amount=apply_discount(book.page_price * next5_count, NEXT_5_DISCOUNT),
        ),
        BundleOption(
            bundle_type=NEXT_10_PERCENT,
            label="Unlock next 10% of book",
            description="Best value for deep reading sessions.",
            start_page=page_number,
            end_page=tenth_end,
            page_count=tenth_count,
            amount=apply_discount(book.page_price * tenth_count, NEXT_10_PERCENT_DISCOUNT),
        ),
    ]

    if chapter_number is not None and chapter_range is not None:
        start, end = chapter_range
        if end >= start:
            options.append(
                BundleOption(
                    bundle_type=CHAPTER,
                    label="Unlock full chapter",
                    description="One purchase for the rest of this chapter.",
                    start_page=start,
                    end_page=end,
                    page_count=end - start + 1,
                    amount=book.chapter_price,
                    chapter_number=chapter_number,
                )
            )

    return dedupe(options)
