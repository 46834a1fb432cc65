"""ContentCatalog protocol - read-only book, page and pricing lookups."""

from __future__ import annotations

from typing import Protocol

from pagepay.models.ledger import BookInfo


class ContentCatalog(Protocol):

    async def get_book(self, book_id: int) -> BookInfo | None:
        ...

    async def get_page_chapter(self, book_id: int, page_number: int) -> int | None:
        """Chapter number of a page. Raises NotFound if the page does not exist."""
        ...

    async def get_chapter_range(self, book_id: int, chapter_number: int) -> tuple[int, int] | None:
        """(first_page, last_page) of a chapter, or None if it has no pages."""
        ...

    async def list_pages(
        self, book_id: int, start_page: int, end_page: int
    ) -> list[tuple[int, int | None]]:
        """(page_number, chapter_number) pairs in range, ascending."""
        ...
