"""Configuration models for the ledger service and its workers."""

from __future__ import annotations

from dataclasses import dataclass, field

from stellar_sdk import Keypair, StrKey

from pagepay.errors import ConfigError

NETWORK_PASSPHRASES = {
    "testnet": "Test SDF Network ; September 2015",
    "pubnet": "Public Global Stellar Network ; September 2015",
}

MAX_TEXT_MEMO_BYTES = 28  # Stellar text memo limit
DEPOSIT_MEMO_TOKEN_HEX = 24  # random hex appended to the deposit memo prefix

CAIP2_NETWORKS = {
    "testnet": "stellar:testnet",
    "pubnet": "stellar:pubnet",
}


@dataclass
class DaemonSection:
    """Worker loop scheduling."""

    workers_enabled: bool = True
    reconcile_interval: int = 30  # seconds between deposit reconcile runs
    settlement_interval: int = 60  # seconds between author settlement runs
    error_backoff: int = 30  # seconds
    log_level: str = "info"


@dataclass
class StellarSection:
    """Chain access and treasury identity."""

    network: str = "testnet"
    horizon_url: str = "https://horizon-testnet.stellar.org"
    network_passphrase: str = ""
    treasury_address: str = ""
    treasury_secret: str = ""  # loaded from env var PAGEPAY_TREASURY_SECRET
    base_fee: int = 100  # stroops per operation
    tx_timeout: int = 300  # seconds

    @property
    def passphrase(self) -> str:
        return self.network_passphrase or NETWORK_PASSPHRASES.get(self.network, "")

    @property
    def caip2(self) -> str:
        return CAIP2_NETWORKS.get(self.network, f"stellar:{self.network}")


@dataclass
class CreditsSection:
    """Reader-facing credit and deposit policy."""

    default_top_up: int = 20_000_000  # 2 XLM in stroops
    deposit_intent_ttl_minutes: int = 30
    deposit_memo_prefix: str = "pp"
    reconcile_limit: int = 25


@dataclass
class PayoutsSection:
    """Author settlement policy."""

    min_payout: int = 1  # stroops
    settlement_timeout: int = 900  # seconds before a processing claim is reclaimed
    reconcile_limit: int = 50
    batch_limit: int = 500
    memo_prefix: str = "pp:auth"
    payout_fee: int | None = None  # stroops; None uses base_fee
    lock_ttl: int = 600  # seconds an advisory lock survives a crashed holder


@dataclass
class StorageSection:
    db_path: str = "~/.pagepay/ledger.db"
    busy_timeout: float = 5.0  # seconds


@dataclass
class ServiceConfig:
    """Complete service configuration, validated once at startup."""

    daemon: DaemonSection = field(default_factory=DaemonSection)
    stellar: StellarSection = field(default_factory=StellarSection)
    credits: CreditsSection = field(default_factory=CreditsSection)
    payouts: PayoutsSection = field(default_factory=PayoutsSection)
    storage: StorageSection = field(default_factory=StorageSection)

    @property
    def payouts_enabled(self) -> bool:
        return bool(self.stellar.treasury_address and self.stellar.treasury_secret)

    def validate(self) -> None:
        """Raise ConfigError if the configuration cannot run safely."""
        if self.daemon.reconcile_interval < 1 or self.daemon.settlement_interval < 1:
            raise ConfigError("worker intervals must be positive")
        if self.credits.deposit_intent_ttl_minutes < 1:
            raise ConfigError("deposit_intent_ttl_minutes must be positive")
        if self.payouts.min_payout < 0:
            raise ConfigError("min_payout must not be negative")
        if self.payouts.lock_ttl < 1:
            raise ConfigError("lock_ttl must be at least one second")
        memo_bytes = len(self.credits.deposit_memo_prefix.encode()) + 1 + DEPOSIT_MEMO_TOKEN_HEX
        if memo_bytes > MAX_TEXT_MEMO_BYTES:
            raise ConfigError(
                f"deposit_memo_prefix too long: memos would be {memo_bytes} bytes,"
                f" Stellar allows {MAX_TEXT_MEMO_BYTES}"
            )
        if not self.stellar.passphrase:
            raise ConfigError(f"unknown network {self.stellar.network!r} and no passphrase set")

        treasury = self.stellar.treasury_address
        if treasury and not StrKey.is_valid_ed25519_public_key(treasury):
            raise ConfigError(f"invalid treasury address: {treasury}")

        if self.stellar.treasury_secret:
            try:
                derived = Keypair.from_secret(self.stellar.treasury_secret).public_key
            except Exception as exc:
                raise ConfigError(f"invalid treasury secret: {exc}") from exc
            if treasury and derived != treasury:
                raise ConfigError(
                    f"treasury key/address mismatch: secret derives {derived}, expected {treasury}"
                )
