"""CLI entry point for the pagepay ledger service."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Awaitable, Callable, TypeVar

import click

from pagepay.config import load_config
from pagepay.daemon import LedgerServices, run_daemon
from pagepay.errors import ConfigError, LedgerError
from pagepay.ledger.pricing import BUNDLE_TYPES
from pagepay.models.config import ServiceConfig
from pagepay.models.ledger import BookInfo
from pagepay.models.results import AccessInsufficient
from pagepay.stellar.chain import STROOPS_PER_XLM

T = TypeVar("T")


def _xlm(stroops: int) -> str:
    return f"{stroops / STROOPS_PER_XLM:.7f} XLM"


def _load(ctx: click.Context) -> ServiceConfig:
    """Load and validate config, exiting with an error message on failure."""
    cfg = load_config(ctx.obj["config_path"])
    try:
        cfg.validate()
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    return cfg


def _require_treasury(cfg: ServiceConfig) -> None:
    if not cfg.stellar.treasury_address:
        click.echo("Error: No treasury address configured.", err=True)
        click.echo("Set PAGEPAY_TREASURY_ADDRESS or stellar.treasury_address in config.", err=True)
        sys.exit(1)


def _with_services(cfg: ServiceConfig, work: Callable[[LedgerServices], Awaitable[T]]) -> T:
    """Run `work` against freshly opened services, exiting 1 on business errors."""

    async def _run() -> T:
        services = LedgerServices(cfg)
        await services.open()
        try:
            return await work(services)
        finally:
            await services.close()

    try:
        return asyncio.run(_run())
    except (LedgerError, ValueError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


def _echo_access(result) -> None:
    if isinstance(result, AccessInsufficient):
        click.echo("Payment required")
        click.echo(f"  Required:   {result.required_amount} stroops ({_xlm(result.required_amount)})")
        click.echo(f"  Balance:    {result.balance} stroops")
        click.echo(f"  Shortfall:  {result.shortfall} stroops")
        click.echo(f"  Top up:     {result.suggested_top_up} stroops to {result.recipient or '(unset)'}")
        click.echo(f"  Network:    {result.network}")
        return
    note = " (already unlocked)" if result.used_existing_unlock else ""
    click.echo(f"Granted{note}")
    click.echo(f"  Charged:    {result.deducted_amount} stroops")
    click.echo(f"  Balance:    {result.balance} stroops ({_xlm(result.balance)})")


@click.group()
@click.option("-c", "--config", "config_path", default=None, help="Path to config TOML file")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """pagepay - Prepaid reading credits and author settlement."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose

    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# ── Daemon ─────────────────────────────────────────────


@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Start the deposit reconcile and author settlement workers."""
    cfg = _load(ctx)
    click.echo(f"Starting pagepay workers on {cfg.stellar.caip2}")
    asyncio.run(run_daemon(cfg))


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show service configuration."""
    cfg = load_config(ctx.obj["config_path"])
    click.echo(f"Network:     {cfg.stellar.network} ({cfg.stellar.caip2})")
    click.echo(f"Horizon:     {cfg.stellar.horizon_url}")
    click.echo(f"Treasury:    {cfg.stellar.treasury_address or '(not set)'}")
    click.echo(f"Secret:      {'***configured***' if cfg.stellar.treasury_secret else '(not set)'}")
    click.echo(f"Payouts:     {'enabled' if cfg.payouts_enabled else 'disabled'}")
    click.echo(f"Min payout:  {cfg.payouts.min_payout} stroops")
    click.echo(f"Workers:     reconcile every {cfg.daemon.reconcile_interval}s, "
               f"settle every {cfg.daemon.settlement_interval}s")
    click.echo(f"DB path:     {cfg.storage.db_path}")


# ── Balances & deposits ────────────────────────────────


@cli.command()
@click.argument("wallet")
@click.option("-n", "--history", "limit", type=int, default=0, help="Show recent ledger entries")
@click.pass_context
def balance(ctx: click.Context, wallet: str, limit: int) -> None:
    """Show a wallet's prepaid balance."""
    cfg = _load(ctx)

    async def _balance(services: LedgerServices):
        account = await services.balances.get_balance(wallet)
        entries = await services.balances.history(wallet, limit) if limit else []
        return account, entries

    account, entries = _with_services(cfg, _balance)
    click.echo(f"Wallet:     {account.wallet}")
    click.echo(f"Available:  {account.available_balance} stroops ({_xlm(account.available_balance)})")
    click.echo(f"Deposited:  {account.total_deposited} stroops")
    click.echo(f"Spent:      {account.total_spent} stroops")
    for e in entries:
        click.echo(f"  #{e.id} {e.created_at} {e.reason:<16} {e.delta:+d} -> {e.balance_after}")


@cli.command()
@click.argument("wallet")
@click.argument("amount", type=int)
@click.pass_context
def intent(ctx: click.Context, wallet: str, amount: int) -> None:
    """Create a deposit intent for AMOUNT stroops."""
    cfg = _load(ctx)
    _require_treasury(cfg)
    ticket = _with_services(cfg, lambda s: s.deposits.create_intent(wallet, amount))
    click.echo(f"Intent:     {ticket.intent_id}")
    click.echo(f"Send:       {ticket.amount} stroops ({_xlm(ticket.amount)})")
    click.echo(f"To:         {ticket.recipient}")
    click.echo(f"Memo:       {ticket.memo}")
    click.echo(f"Network:    {ticket.network}")
    click.echo(f"Expires:    {ticket.expires_at}")


@cli.command("settle-intent")
@click.argument("wallet")
@click.argument("intent_id")
@click.option("--tx", "tx_hash", default=None, help="Transaction hash of the deposit")
@click.pass_context
def settle_intent(ctx: click.Context, wallet: str, intent_id: str, tx_hash: str | None) -> None:
    """Verify a deposit intent against the chain and credit the wallet."""
    cfg = _load(ctx)
    _require_treasury(cfg)
    result = _with_services(cfg, lambda s: s.deposits.settle_intent(wallet, intent_id, tx_hash))
    click.echo(f"Status:     {result.status}")
    if result.amount_credited is not None:
        click.echo(f"Credited:   {result.amount_credited} stroops")
    if result.balance is not None:
        click.echo(f"Balance:    {result.balance} stroops")
    if result.tx_hash:
        click.echo(f"Tx hash:    {result.tx_hash}")
    if result.error:
        click.echo(f"Reason:     {result.error}")
    if result.status == "invalid":
        sys.exit(1)


@cli.command("claim-deposit")
@click.argument("tx_hash")
@click.option("--wallet", default=None, help="Expected sending wallet")
@click.pass_context
def claim_deposit(ctx: click.Context, tx_hash: str, wallet: str | None) -> None:
    """Credit a direct transfer to the treasury made without an intent."""
    cfg = _load(ctx)
    _require_treasury(cfg)
    result = _with_services(cfg, lambda s: s.deposits.claim_direct_deposit(tx_hash, wallet))
    note = " (already claimed)" if result.already_claimed else ""
    click.echo(f"Claimed{note}: {result.amount} stroops for {result.wallet}")
    click.echo(f"Balance:    {result.balance.available_balance} stroops")


@cli.command()
@click.argument("wallet")
@click.argument("amount", type=int)
@click.pass_context
def withdraw(ctx: click.Context, wallet: str, amount: int) -> None:
    """Request a withdrawal of AMOUNT stroops from the prepaid balance."""
    cfg = _load(ctx)
    req = _with_services(cfg, lambda s: s.withdrawals.create_withdrawal_request(wallet, amount))
    click.echo(f"Withdrawal request #{req.id}: {req.amount} stroops ({req.status})")


@cli.command("cancel-withdrawal")
@click.argument("request_id", type=int)
@click.pass_context
def cancel_withdrawal(ctx: click.Context, request_id: int) -> None:
    """Cancel a pending withdrawal and refund it."""
    cfg = _load(ctx)
    req = _with_services(cfg, lambda s: s.withdrawals.cancel_withdrawal_request(request_id))
    click.echo(f"Withdrawal request #{req.id} {req.status}, refunded {req.amount} stroops")


# ── Unlocks ────────────────────────────────────────────


@cli.command("unlock-page")
@click.argument("wallet")
@click.argument("book_id", type=int)
@click.argument("page", type=int)
@click.pass_context
def unlock_page(ctx: click.Context, wallet: str, book_id: int, page: int) -> None:
    """Charge the flat page price to unlock PAGE."""
    cfg = _load(ctx)
    result = _with_services(cfg, lambda s: s.entitlements.charge_for_page(wallet, book_id, page))
    _echo_access(result)


@cli.command("unlock-chapter")
@click.argument("wallet")
@click.argument("book_id", type=int)
@click.argument("chapter", type=int)
@click.pass_context
def unlock_chapter(ctx: click.Context, wallet: str, book_id: int, chapter: int) -> None:
    """Charge the flat chapter price to unlock CHAPTER."""
    cfg = _load(ctx)
    result = _with_services(
        cfg, lambda s: s.entitlements.charge_for_chapter(wallet, book_id, chapter)
    )
    _echo_access(result)


@cli.command()
@click.argument("wallet")
@click.argument("book_id", type=int)
@click.argument("page", type=int)
@click.pass_context
def preview(ctx: click.Context, wallet: str, book_id: int, page: int) -> None:
    """List unlock bundles for PAGE with prorated prices."""
    cfg = _load(ctx)
    pv = _with_services(cfg, lambda s: s.entitlements.preview_unlock(wallet, book_id, page))
    click.echo(f"Balance: {pv.balance.available_balance} stroops")
    for opt in pv.options:
        state = "owned" if opt.fully_unlocked else f"{opt.effective_amount} stroops"
        click.echo(
            f"  {opt.bundle_type:<16} pages {opt.start_page}-{opt.end_page} "
            f"({opt.remaining_pages}/{opt.page_count} left)  {state}"
        )
    if pv.suggested_top_up:
        click.echo(f"Suggested top up: {pv.suggested_top_up} stroops")


@cli.command("buy-bundle")
@click.argument("wallet")
@click.argument("book_id", type=int)
@click.argument("page", type=int)
@click.argument("bundle_type", type=click.Choice(BUNDLE_TYPES))
@click.pass_context
def buy_bundle(ctx: click.Context, wallet: str, book_id: int, page: int, bundle_type: str) -> None:
    """Buy a bundle starting at PAGE."""
    cfg = _load(ctx)
    result = _with_services(
        cfg, lambda s: s.entitlements.purchase_bundle(wallet, book_id, page, bundle_type)
    )
    if result.insufficient is not None:
        _echo_access(result.insufficient)
        sys.exit(1)
    if result.already_unlocked:
        click.echo("Already unlocked, nothing charged")
        return
    r = result.unlocked_range
    click.echo(f"Unlocked pages {r.start_page}-{r.end_page} ({r.pages_unlocked} new)")
    click.echo(f"  Charged:    {result.debited_amount} stroops")
    click.echo(f"  Balance:    {result.balance.available_balance} stroops")


@cli.command("add-book")
@click.argument("book_id", type=int)
@click.option("--author", required=True, help="Author payout address")
@click.option("--title", default="Untitled", help="Book title")
@click.option("--pages", "total_pages", type=int, required=True, help="Total page count")
@click.option("--page-price", type=int, required=True, help="Flat page price (stroops)")
@click.option("--chapter-price", type=int, default=0, help="Flat chapter price (stroops)")
@click.option("--chapters", default="", help="Comma-separated chapter number per page")
@click.pass_context
def add_book(
    ctx: click.Context,
    book_id: int,
    author: str,
    title: str,
    total_pages: int,
    page_price: int,
    chapter_price: int,
    chapters: str,
) -> None:
    """Register a book and its pages in the catalog."""
    cfg = _load(ctx)
    chapter_list = [int(c) if c.strip() else None for c in chapters.split(",")] if chapters else None
    book = BookInfo(book_id, author, title, total_pages, page_price, chapter_price)
    _with_services(cfg, lambda s: s.catalog.register_book(book, chapter_list))
    click.echo(f"Registered book {book_id} ({total_pages} pages)")


# ── Settlement ─────────────────────────────────────────


@cli.command("settle-authors")
@click.option("--limit", type=int, default=None, help="Max revenue events to claim")
@click.pass_context
def settle_authors(ctx: click.Context, limit: int | None) -> None:
    """Run one author settlement cycle."""
    cfg = _load(ctx)
    report = _with_services(cfg, lambda s: s.settlement.run_once(limit))
    if report.skipped:
        click.echo("Skipped: settlement lock held by another worker")
        return
    click.echo(f"Reclaimed:   {report.reclaimed}")
    click.echo(f"Confirmed:   {report.confirmed} batches")
    click.echo(f"Broadcast:   {report.batches_broadcasted} batches, {report.event_count} events, "
               f"{report.total_amount} stroops")
    click.echo(f"Failed:      {report.batches_failed} batches")


@cli.command()
@click.option("--limit", type=int, default=None, help="Max intents to re-check")
@click.pass_context
def reconcile(ctx: click.Context, limit: int | None) -> None:
    """Re-settle pending deposit intents that carry a transaction hash."""
    cfg = _load(ctx)
    confirmed = _with_services(cfg, lambda s: s.deposits.reconcile_pending_intents(limit))
    click.echo(f"Confirmed {confirmed} deposit intents")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
