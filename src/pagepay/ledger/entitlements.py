"""Entitlement engine - flat unit unlocks and prorated bundle purchases.

Catalog metadata is read before a write transaction opens. Everything that
touches balances, entitlements and revenue events for one request happens
inside a single transaction so a debit never lands without its grant and
its revenue record.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from pagepay.errors import ConcurrentUnlockConflict, InsufficientBalance, NotFound
from pagepay.interfaces.catalog import ContentCatalog
from pagepay.interfaces.store import LedgerStore, UnitOfWork
from pagepay.ledger.balances import BalanceStore, debit_in
from pagepay.ledger.pricing import build_options, prorate, split_revenue
from pagepay.models.config import ServiceConfig
from pagepay.models.ledger import BookInfo, LedgerReason, UnitKind
from pagepay.models.results import (
    AccessGranted,
    AccessInsufficient,
    AccessResult,
    BundleOption,
    BundlePurchaseResult,
    UnlockedRange,
    UnlockPreview,
)

log = logging.getLogger(__name__)

FREE_UNIT = 1


@dataclass
class UnitChargeRequest:
    wallet: str
    book_id: int
    unit_kind: UnitKind
    unit_number: int


@dataclass
class _PricingContext:
    book: BookInfo
    page_number: int
    chapter_number: int | None
    chapter_range: tuple[int, int] | None


async def page_is_owned(
    uow: UnitOfWork, wallet: str, book_id: int, page_number: int, chapter_number: int | None
) -> bool:
    """Single ownership check across flat unlocks, bundle ranges and legacy payments."""
    if await uow.has_unit_unlock(wallet, book_id, UnitKind.PAGE.value, page_number):
        return True
    if chapter_number is not None and await uow.has_unit_unlock(
        wallet, book_id, UnitKind.CHAPTER.value, chapter_number
    ):
        return True
    if await uow.has_range_entitlement(wallet, book_id, page_number):
        return True
    return await uow.has_legacy_payment(wallet, book_id, page_number, chapter_number)


async def chapter_is_owned(uow: UnitOfWork, wallet: str, book_id: int, chapter_number: int) -> bool:
    if await uow.has_unit_unlock(wallet, book_id, UnitKind.CHAPTER.value, chapter_number):
        return True
    return await uow.has_legacy_payment(wallet, book_id, None, chapter_number)


class EntitlementEngine:
    """Decides whether a wallet may read a unit and charges it when needed."""

    def __init__(
        self,
        store: LedgerStore,
        catalog: ContentCatalog,
        config: ServiceConfig,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._config = config
        self._balances = BalanceStore(store)

    # ── Flat unlocks ───────────────────────────────────────

    async def charge_for_page(self, wallet: str, book_id: int, page_number: int) -> AccessResult:
        return await self.charge_for_unit(
            UnitChargeRequest(wallet, book_id, UnitKind.PAGE, page_number)
        )

    async def charge_for_chapter(
        self, wallet: str, book_id: int, chapter_number: int
    ) -> AccessResult:
        return await self.charge_for_unit(
            UnitChargeRequest(wallet, book_id, UnitKind.CHAPTER, chapter_number)
        )

    async def charge_for_unit(self, req: UnitChargeRequest) -> AccessResult:
        """Grant access to one page or chapter, debiting its flat price at most once.

        Unit 1 is free. An existing grant from any source costs nothing.
        """
        book = await self._require_book(req.book_id)
        if req.unit_kind == UnitKind.PAGE:
            chapter_number = await self._catalog.get_page_chapter(req.book_id, req.unit_number)
            page_number: int | None = req.unit_number
            price = book.page_price
        else:
            if await self._catalog.get_chapter_range(req.book_id, req.unit_number) is None:
                raise NotFound(f"chapter {req.unit_number} of book {req.book_id} not found")
            chapter_number = req.unit_number
            page_number = None
            price = book.chapter_price

        if req.unit_number == FREE_UNIT or price <= 0:
            account = await self._balances.get_balance(req.wallet)
            return AccessGranted(
                balance=account.available_balance,
                deducted_amount=0,
                used_existing_unlock=True,
            )

        try:
            async with self._store.transaction() as uow:
                if req.unit_kind == UnitKind.PAGE:
                    owned = await page_is_owned(
                        uow, req.wallet, req.book_id, req.unit_number, chapter_number
                    )
                else:
                    owned = await chapter_is_owned(uow, req.wallet, req.book_id, req.unit_number)
                if owned:
                    account = await uow.lock_account(req.wallet)
                    return AccessGranted(
                        balance=account.available_balance,
                        deducted_amount=0,
                        used_existing_unlock=True,
                    )

                account, entry_id = await debit_in(
                    uow,
                    req.wallet,
                    price,
                    LedgerReason.DEDUCTION,
                    book_id=req.book_id,
                    page_number=page_number,
                    chapter_number=chapter_number,
                    reference_id=f"{req.unit_kind.value}:{req.unit_number}",
                )
                inserted = await uow.insert_unit_unlock(
                    req.wallet, req.book_id, req.unit_kind.value, req.unit_number, price, entry_id
                )
                if not inserted:
                    raise ConcurrentUnlockConflict(
                        f"{req.unit_kind.value} {req.unit_number} of book {req.book_id}"
                        f" already unlocked by {req.wallet}"
                    )
                await uow.insert_revenue_event(
                    book.author_address,
                    req.wallet,
                    req.book_id,
                    price,
                    page_number=page_number,
                    chapter_number=chapter_number,
                    ledger_entry_id=entry_id,
                )
        except InsufficientBalance as exc:
            log.info(
                "Insufficient balance for %s %d of book %d: %s",
                req.unit_kind.value, req.unit_number, req.book_id, exc,
            )
            return self._insufficient(exc)
        except ConcurrentUnlockConflict as exc:
            # The debit was rolled back with the transaction.
            log.info("Concurrent unlock resolved as existing grant: %s", exc)
            account = await self._balances.get_balance(req.wallet)
            return AccessGranted(
                balance=account.available_balance,
                deducted_amount=0,
                used_existing_unlock=True,
            )

        log.info(
            "Unlocked %s %d of book %d for %s (charged %d, balance=%d)",
            req.unit_kind.value, req.unit_number, req.book_id, req.wallet,
            price, account.available_balance,
        )
        return AccessGranted(
            balance=account.available_balance,
            deducted_amount=price,
            used_existing_unlock=False,
        )

    async def has_entitlement(self, wallet: str, book_id: int, page_number: int) -> bool:
        if page_number == FREE_UNIT:
            return True
        chapter_number = await self._catalog.get_page_chapter(book_id, page_number)
        async with self._store.transaction(write=False) as uow:
            return await page_is_owned(uow, wallet, book_id, page_number, chapter_number)

    # ── Bundles ────────────────────────────────────────────

    async def build_options(self, book_id: int, page_number: int) -> list[BundleOption]:
        ctx = await self._pricing_context(book_id, page_number)
        return build_options(ctx.book, page_number, ctx.chapter_number, ctx.chapter_range)

    async def preview_unlock(self, wallet: str, book_id: int, page_number: int) -> UnlockPreview:
        """Every bundle option with what it would cost this wallet right now."""
        ctx = await self._pricing_context(book_id, page_number)
        options = build_options(ctx.book, page_number, ctx.chapter_number, ctx.chapter_range)
        pages_by_option = [
            await self._catalog.list_pages(book_id, opt.start_page, opt.end_page)
            for opt in options
        ]
        balance = await self._balances.get_balance(wallet)

        async with self._store.transaction(write=False) as uow:
            for option, pages in zip(options, pages_by_option):
                owned = await uow.owned_pages(wallet, book_id, pages) if pages else set()
                option.remaining_pages = len(pages) - len(owned)
                option.effective_amount = prorate(
                    option.amount, option.page_count, option.remaining_pages
                )

        payable = [o.effective_amount for o in options if o.remaining_pages]
        cheapest = min(payable) if payable else 0
        suggested = max(0, cheapest - balance.available_balance)
        return UnlockPreview(
            book_id=book_id,
            page_number=page_number,
            balance=balance,
            options=options,
            suggested_top_up=suggested,
        )

    async def purchase_bundle(
        self, wallet: str, book_id: int, page_number: int, bundle_type: str
    ) -> BundlePurchaseResult:
        """Buy the unowned part of a bundle range at a prorated price."""
        ctx = await self._pricing_context(book_id, page_number)
        options = build_options(ctx.book, page_number, ctx.chapter_number, ctx.chapter_range)
        option = next((o for o in options if o.bundle_type == bundle_type), None)
        if option is None:
            raise ValueError(f"invalid unlock bundle: {bundle_type!r}")

        pages = await self._catalog.list_pages(book_id, option.start_page, option.end_page)
        if not pages:
            raise NotFound(f"no pages found for bundle {bundle_type} of book {book_id}")

        try:
            async with self._store.transaction() as uow:
                account = await uow.lock_account(wallet)
                owned = await uow.owned_pages(wallet, book_id, pages)
                to_unlock = [(p, ch) for p, ch in pages if p not in owned]

                if not to_unlock:
                    return BundlePurchaseResult(
                        success=True,
                        already_unlocked=True,
                        bundle_type=bundle_type,
                        debited_amount=0,
                        balance=account,
                        unlocked_range=UnlockedRange(
                            start_page=option.start_page,
                            end_page=option.end_page,
                            pages_unlocked=0,
                            chapter_number=option.chapter_number,
                        ),
                    )

                cost = prorate(option.amount, option.page_count, len(to_unlock))
                range_start = to_unlock[0][0]
                range_end = to_unlock[-1][0]

                entry_id = None
                if cost > 0:
                    account, entry_id = await debit_in(
                        uow,
                        wallet,
                        cost,
                        LedgerReason.BUNDLE_UNLOCK,
                        book_id=book_id,
                        page_number=page_number,
                        chapter_number=option.chapter_number,
                        bundle_type=bundle_type,
                        metadata={
                            "start_page": option.start_page,
                            "end_page": option.end_page,
                            "unlocked_start_page": range_start,
                            "unlocked_end_page": range_end,
                            "pages_unlocked": len(to_unlock),
                        },
                    )

                entitlement_id = await uow.insert_entitlement(
                    wallet, book_id, range_start, range_end, cost,
                    option.chapter_number, bundle_type, entry_id,
                )

                for (page, chapter), share in zip(to_unlock, split_revenue(cost, len(to_unlock))):
                    if share == 0:
                        continue
                    await uow.insert_revenue_event(
                        ctx.book.author_address,
                        wallet,
                        book_id,
                        share,
                        page_number=page,
                        chapter_number=chapter,
                        ledger_entry_id=entry_id,
                        entitlement_id=entitlement_id,
                    )
        except InsufficientBalance as exc:
            log.info("Insufficient balance for %s bundle on book %d: %s", bundle_type, book_id, exc)
            account = await self._balances.get_balance(wallet)
            return BundlePurchaseResult(
                success=False,
                already_unlocked=False,
                bundle_type=bundle_type,
                debited_amount=0,
                balance=account,
                insufficient=self._insufficient(exc),
            )

        log.info(
            "Bundle %s unlocked pages %d-%d of book %d for %s (charged %d)",
            bundle_type, range_start, range_end, book_id, wallet, cost,
        )
        return BundlePurchaseResult(
            success=True,
            already_unlocked=False,
            bundle_type=bundle_type,
            debited_amount=cost,
            balance=account,
            unlocked_range=UnlockedRange(
                start_page=range_start,
                end_page=range_end,
                pages_unlocked=len(to_unlock),
                chapter_number=option.chapter_number,
            ),
        )

    # ── Internals ──────────────────────────────────────────

    async def _require_book(self, book_id: int) -> BookInfo:
        book = await self._catalog.get_book(book_id)
        if book is None:
            raise NotFound(f"book {book_id} not found")
        return book

    async def _pricing_context(self, book_id: int, page_number: int) -> _PricingContext:
        book = await self._require_book(book_id)
        chapter_number = await self._catalog.get_page_chapter(book_id, page_number)
        chapter_range = None
        if chapter_number is not None:
            chapter_range = await self._catalog.get_chapter_range(book_id, chapter_number)
        return _PricingContext(book, page_number, chapter_number, chapter_range)

    def _insufficient(self, exc: InsufficientBalance) -> AccessInsufficient:
        return AccessInsufficient(
            balance=exc.available,
            required_amount=exc.required,
            shortfall=exc.shortfall,
            recipient=self._config.stellar.treasury_address,
            network=self._config.stellar.caip2,
            suggested_top_up=max(exc.shortfall, self._config.credits.default_top_up),
        )
