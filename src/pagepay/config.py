"""Configuration loading: TOML file + environment variables."""

from __future__ import annotations

import os
from pathlib import Path

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:
    import tomli as tomllib  # type: ignore[no-redef]

from pagepay.models.config import ServiceConfig


def load_config(
    config_path: str | Path | None = None,
    env_prefix: str = "PAGEPAY_",
) -> ServiceConfig:
    """Load service configuration from a TOML file and env vars.

    Priority (highest wins):
        1. Environment variables (PAGEPAY_TREASURY_SECRET, etc.)
        2. TOML config file
        3. Defaults from ServiceConfig
    """
    raw: dict = {}
    if config_path is not None:
        p = Path(config_path).expanduser()
        if p.exists():
            with open(p, "rb") as f:
                raw = tomllib.load(f)

    cfg = ServiceConfig()

    # ── Daemon section ─────────────────────────────────────
    daemon = raw.get("daemon", {})
    if "workers_enabled" in daemon:
        cfg.daemon.workers_enabled = bool(daemon["workers_enabled"])
    if v := daemon.get("reconcile_interval"):
        cfg.daemon.reconcile_interval = int(v)
    if v := daemon.get("settlement_interval"):
        cfg.daemon.settlement_interval = int(v)
    if v := daemon.get("error_backoff"):
        cfg.daemon.error_backoff = int(v)
    if v := daemon.get("log_level"):
        cfg.daemon.log_level = str(v)

    # ── Stellar section ────────────────────────────────────
    stellar = raw.get("stellar", {})
    if v := stellar.get("network"):
        cfg.stellar.network = str(v)
    if v := stellar.get("horizon_url"):
        cfg.stellar.horizon_url = str(v)
    if v := stellar.get("network_passphrase"):
        cfg.stellar.network_passphrase = str(v)
    if v := stellar.get("treasury_address"):
        cfg.stellar.treasury_address = str(v)
    if v := stellar.get("treasury_secret"):
        cfg.stellar.treasury_secret = str(v)
    if v := stellar.get("base_fee"):
        cfg.stellar.base_fee = int(v)
    if v := stellar.get("tx_timeout"):
        cfg.stellar.tx_timeout = int(v)

    # ── Credits section ────────────────────────────────────
    credits = raw.get("credits", {})
    if v := credits.get("default_top_up"):
        cfg.credits.default_top_up = int(v)
    if v := credits.get("deposit_intent_ttl_minutes"):
        cfg.credits.deposit_intent_ttl_minutes = int(v)
    if v := credits.get("deposit_memo_prefix"):
        cfg.credits.deposit_memo_prefix = str(v)
    if v := credits.get("reconcile_limit"):
        cfg.credits.reconcile_limit = int(v)

    # ── Payouts section ────────────────────────────────────
    payouts = raw.get("payouts", {})
    if "min_payout" in payouts:
        cfg.payouts.min_payout = int(payouts["min_payout"])
    if v := payouts.get("settlement_timeout"):
        cfg.payouts.settlement_timeout = int(v)
    if v := payouts.get("reconcile_limit"):
        cfg.payouts.reconcile_limit = int(v)
    if v := payouts.get("batch_limit"):
        cfg.payouts.batch_limit = int(v)
    if v := payouts.get("memo_prefix"):
        cfg.payouts.memo_prefix = str(v)
    if "payout_fee" in payouts:
        cfg.payouts.payout_fee = int(payouts["payout_fee"])
    if v := payouts.get("lock_ttl"):
        cfg.payouts.lock_ttl = int(v)

    # ── Storage section ────────────────────────────────────
    storage = raw.get("storage", {})
    if v := storage.get("db_path"):
        cfg.storage.db_path = str(v)
    if v := storage.get("busy_timeout"):
        cfg.storage.busy_timeout = float(v)

    # ── Environment variable overrides (highest priority) ──
    if secret := os.environ.get(f"{env_prefix}TREASURY_SECRET"):
        cfg.stellar.treasury_secret = secret
    if address := os.environ.get(f"{env_prefix}TREASURY_ADDRESS"):
        cfg.stellar.treasury_address = address
    if net := os.environ.get(f"{env_prefix}NETWORK"):
        cfg.stellar.network = net
    if url := os.environ.get(f"{env_prefix}HORIZON_URL"):
        cfg.stellar.horizon_url = url
    if db := os.environ.get(f"{env_prefix}DB_PATH"):
        cfg.storage.db_path = db

    # Expand ~ in paths
    if cfg.storage.db_path != ":memory:":
        cfg.storage.db_path = str(Path(cfg.storage.db_path).expanduser())

    return cfg
