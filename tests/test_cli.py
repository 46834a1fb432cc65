"""Tests 64-67: command line interface against a file database."""

from __future__ import annotations

import pytest
from click.testing import CliRunner

from pagepay.cli import cli

from tests.conftest import AUTHOR, READER, TEST_PUBLIC


@pytest.fixture
def runner(tmp_path, monkeypatch):
    for name in ("TREASURY_SECRET", "TREASURY_ADDRESS", "NETWORK", "HORIZON_URL"):
        monkeypatch.delenv(f"PAGEPAY_{name}", raising=False)
    monkeypatch.setenv("PAGEPAY_DB_PATH", str(tmp_path / "cli.db"))
    return CliRunner()


def _add_book(runner):
    return runner.invoke(
        cli,
        [
            "add-book", "7",
            "--author", AUTHOR,
            "--pages", "6",
            "--page-price", "1000",
            "--chapter-price", "2500",
            "--chapters", "1,1,2,2,2,2",
        ],
    )


# ── Test 64: Status ──────────────────────────────────────────────


def test_status_shows_configuration(runner, monkeypatch):
    monkeypatch.setenv("PAGEPAY_TREASURY_ADDRESS", TEST_PUBLIC)

    result = runner.invoke(cli, ["status"])

    assert result.exit_code == 0
    assert "stellar:testnet" in result.output
    assert TEST_PUBLIC in result.output
    assert "Payouts:     disabled" in result.output


# ── Test 65: Catalog and unlocks ─────────────────────────────────


def test_add_book_and_unlock(runner):
    assert _add_book(runner).exit_code == 0

    free = runner.invoke(cli, ["unlock-page", READER, "7", "1"])
    paid = runner.invoke(cli, ["unlock-page", READER, "7", "2"])

    assert free.exit_code == 0
    assert "Granted" in free.output
    assert paid.exit_code == 0
    assert "Payment required" in paid.output
    assert "Shortfall:  1000 stroops" in paid.output


def test_preview_lists_bundles(runner):
    _add_book(runner)

    result = runner.invoke(cli, ["preview", READER, "7", "3"])

    assert result.exit_code == 0
    assert "next-5-pages" in result.output
    assert "chapter" in result.output


def test_bundle_choice_is_validated(runner):
    _add_book(runner)

    result = runner.invoke(cli, ["buy-bundle", READER, "7", "2", "everything"])

    assert result.exit_code == 2


# ── Test 66: Balances ────────────────────────────────────────────


def test_balance_of_new_wallet(runner):
    result = runner.invoke(cli, ["balance", READER])

    assert result.exit_code == 0
    assert "Available:  0 stroops" in result.output


def test_withdraw_without_funds_fails(runner):
    result = runner.invoke(cli, ["withdraw", READER, "500"])

    assert result.exit_code == 1
    assert "insufficient balance" in result.output


# ── Test 67: Treasury required for deposits ──────────────────────


def test_intent_requires_treasury(runner):
    result = runner.invoke(cli, ["intent", READER, "1000"])

    assert result.exit_code == 1
    assert "No treasury address configured" in result.output
