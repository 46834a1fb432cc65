"""Shared fixtures for pagepay tests."""

from __future__ import annotations

import pytest
from pytest_metadata.plugin import metadata_key
from stellar_sdk import Keypair

from pagepay.ledger.balances import BalanceStore
from pagepay.ledger.deposits import DepositVerifier
from pagepay.ledger.entitlements import EntitlementEngine
from pagepay.ledger.withdrawals import WithdrawalService
from pagepay.models.config import (
    CreditsSection,
    DaemonSection,
    PayoutsSection,
    ServiceConfig,
    StellarSection,
    StorageSection,
)
from pagepay.settlement.pipeline import AuthorSettlementPipeline
from pagepay.storage.catalog import SQLiteCatalog
from pagepay.storage.sqlite import SQLiteLedgerStore

from tests.factories import make_book
from tests.mocks import MockChain

TEST_SECRET = "SBWVJTD3F5ETMVWCNI7MM4HUAPUSCUXXMUEJZJTPRWRJGXW2BF4SVQTK"
TEST_PUBLIC = "GDNAG4KFFVF5HCSGRWZIXZNL2SR2KBGJSHW2A6FI6DZI62XF6IBLO4GD"

AUTHOR = Keypair.random().public_key
OTHER_AUTHOR = Keypair.random().public_key
READER = Keypair.random().public_key
OTHER_READER = Keypair.random().public_key

BOOK_ID = 1
PAGE_PRICE = 100_000
CHAPTER_PRICE = 250_000

# 20 pages: chapter 1 = 1-5, chapter 2 = 6-12, chapter 3 = 13-20
BOOK_CHAPTERS = [1] * 5 + [2] * 7 + [3] * 8


# ── Report metadata ──────────────────────────────────────────────


def pytest_configure(config):
    """Add network info to the HTML report Environment table."""
    meta = config.stash.setdefault(metadata_key, {})
    meta["Network"] = "Stellar Testnet (mocked)"
    meta["Treasury Account"] = TEST_PUBLIC


def make_test_config(**overrides) -> ServiceConfig:
    """Build a ServiceConfig suitable for testing.

    Keyword overrides replace whole sections, e.g. payouts=PayoutsSection(...).
    """
    defaults = dict(
        daemon=DaemonSection(reconcile_interval=1, settlement_interval=1, error_backoff=1),
        stellar=StellarSection(
            network="testnet",
            treasury_address=TEST_PUBLIC,
            treasury_secret=TEST_SECRET,
        ),
        credits=CreditsSection(default_top_up=1_000_000),
        payouts=PayoutsSection(min_payout=1),
        storage=StorageSection(db_path=":memory:"),
    )
    defaults.update(overrides)
    return ServiceConfig(**defaults)


@pytest.fixture
def test_config():
    """Default ServiceConfig for tests."""
    return make_test_config()


@pytest.fixture
async def store():
    """Initialized in-memory SQLiteLedgerStore."""
    s = SQLiteLedgerStore(":memory:")
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
async def catalog(store):
    """Catalog seeded with one 20-page, three-chapter book by AUTHOR."""
    c = SQLiteCatalog(store)
    await c.register_book(
        make_book(
            book_id=BOOK_ID,
            author_address=AUTHOR,
            total_pages=20,
            page_price=PAGE_PRICE,
            chapter_price=CHAPTER_PRICE,
        ),
        BOOK_CHAPTERS,
    )
    return c


@pytest.fixture
def mock_chain():
    return MockChain(treasury=TEST_PUBLIC)


@pytest.fixture
def balances(store):
    return BalanceStore(store)


@pytest.fixture
def engine(store, catalog, test_config):
    return EntitlementEngine(store, catalog, test_config)


@pytest.fixture
def verifier(store, mock_chain, test_config):
    return DepositVerifier(store, mock_chain, test_config)


@pytest.fixture
def withdrawals(store):
    return WithdrawalService(store)


@pytest.fixture
def pipeline(store, mock_chain, test_config):
    return AuthorSettlementPipeline(store, mock_chain, test_config, owner="test-worker")
