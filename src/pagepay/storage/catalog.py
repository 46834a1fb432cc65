"""Book and page catalog backed by the ledger database."""

from __future__ import annotations

from pagepay.errors import NotFound
from pagepay.models.ledger import BookInfo
from pagepay.storage.sqlite import SQLiteLedgerStore, now_ts


class SQLiteCatalog:
    """ContentCatalog over the books/pages tables of a SQLiteLedgerStore.

    Reads run in their own short read transaction, so callers must not query
    the catalog while holding a write transaction on the same store.
    """

    def __init__(self, store: SQLiteLedgerStore) -> None:
        self._store = store

    async def get_book(self, book_id: int) -> BookInfo | None:
        async with self._store.transaction(write=False) as uow:
            async with uow.conn.execute(
                "SELECT * FROM books WHERE id=?", (book_id,)
            ) as cur:
                row = await cur.fetchone()
        if row is None:
            return None
        return BookInfo(
            book_id=row["id"],
            author_address=row["author_address"],
            title=row["title"],
            total_pages=row["total_pages"],
            page_price=row["page_price"],
            chapter_price=row["chapter_price"],
        )

    async def get_page_chapter(self, book_id: int, page_number: int) -> int | None:
        async with self._store.transaction(write=False) as uow:
            async with uow.conn.execute(
                "SELECT chapter_number FROM pages WHERE book_id=? AND page_number=?",
                (book_id, page_number),
            ) as cur:
                row = await cur.fetchone()
        if row is None:
            raise NotFound(f"page {page_number} of book {book_id} not found")
        return row["chapter_number"]

    async def get_chapter_range(
        self, book_id: int, chapter_number: int
    ) -> tuple[int, int] | None:
        async with self._store.transaction(write=False) as uow:
            async with uow.conn.execute(
                "SELECT MIN(page_number) AS first_page, MAX(page_number) AS last_page"
                " FROM pages WHERE book_id=? AND chapter_number=?",
                (book_id, chapter_number),
            ) as cur:
                row = await cur.fetchone()
        if row is None or row["first_page"] is None:
            return None
        return row["first_page"], row["last_page"]

    async def list_pages(
        self, book_id: int, start_page: int, end_page: int
    ) -> list[tuple[int, int | None]]:
        async with self._store.transaction(write=False) as uow:
            async with uow.conn.execute(
                "SELECT page_number, chapter_number FROM pages"
                " WHERE book_id=? AND page_number BETWEEN ? AND ? ORDER BY page_number",
                (book_id, start_page, end_page),
            ) as cur:
                return [(row["page_number"], row["chapter_number"]) async for row in cur]

    async def register_book(
        self,
        book: BookInfo,
        chapters: list[int | None] | None = None,
    ) -> None:
        """Insert or replace a book and its pages.

        `chapters[i]` is the chapter of page i+1. Pages default to no chapter.
        """
        chapters = chapters or [None] * book.total_pages
        if len(chapters) != book.total_pages:
            raise ValueError(
                f"expected {book.total_pages} chapter entries, got {len(chapters)}"
            )
        async with self._store.transaction() as uow:
            await uow.conn.execute(
                "INSERT OR REPLACE INTO books"
                " (id, author_address, title, total_pages, page_price, chapter_price, created_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    book.book_id, book.author_address, book.title, book.total_pages,
                    book.page_price, book.chapter_price, now_ts(),
                ),
            )
            await uow.conn.execute("DELETE FROM pages WHERE book_id=?", (book.book_id,))
            await uow.conn.executemany(
                "INSERT INTO pages (book_id, page_number, chapter_number) VALUES (?, ?, ?)",
                [(book.book_id, i + 1, ch) for i, ch in enumerate(chapters)],
            )
