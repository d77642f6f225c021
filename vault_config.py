from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv

from vault_errors import VaultConfigError

# Load .env from project root
PROJECT_ROOT = Path(__file__).resolve().parent
load_dotenv(PROJECT_ROOT / ".env")

VaultNetwork = Literal["mainnet", "testnet", "signet"]

SUPPORTED_NETWORKS = ("mainnet", "testnet", "signet")
FEE_TIERS = ("fastestFee", "halfHourFee", "hourFee", "economyFee", "minimumFee")

log = logging.getLogger("vault")
log.addHandler(logging.NullHandler())


def setup_logging(log_file: str | None = None, level: int = logging.INFO) -> None:
    """
    Configure logging for the ``vault`` logger hierarchy.

    Console output goes to stderr (stdout belongs to the MCP stdio
    transport). A rotating file handler is added when *log_file* is given.
    Safe to call more than once.
    """
    if getattr(setup_logging, "_done", False):
        return

    fmt = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(fmt)
    console_handler.setLevel(logging.WARNING)
    log.addHandler(console_handler)

    if log_file:
        file_handler = RotatingFileHandler(
            log_file, maxBytes=10 * 1024 * 1024, backupCount=5,
        )
        file_handler.setFormatter(fmt)
        file_handler.setLevel(level)
        log.addHandler(file_handler)

    log.setLevel(level)
    setup_logging._done = True  # type: ignore[attr-defined]


@dataclass
class VaultConfig:
    """
    Configuration for the vault service.

    Values are sourced from environment variables or a .env file.

    - VAULT_NETWORK: "mainnet", "testnet" or "signet" (defaults to "testnet").
    - VAULT_FEE_TIER: mempool.space tier used when no fixed rate is set.
      One of: fastestFee, halfHourFee, hourFee, economyFee, minimumFee.
    - VAULT_FEE_RATE_SAT_PER_VB: optional fixed fee rate (sat/vB); disables
      the dynamic lookup when set.
    - VAULT_DRY_RUN: if true (default), never broadcast unless overridden.
    - VAULT_MEMPOOL_API_URL: optional REST base URL (e.g. a self-hosted
      mempool instance). Defaults to mempool.space for the network.
    - VAULT_HTTP_TIMEOUT: request timeout in seconds (default 5).
    - VAULT_LOG_FILE: optional rotating log file.
    """

    network: VaultNetwork = "testnet"
    fee_tier: str = "hourFee"
    fee_rate_sat_per_vb: int = 10
    use_fixed_fee_rate: bool = False
    dry_run_default: bool = True
    mempool_api_url: str | None = None
    http_timeout: float = 5.0
    log_file: str | None = None

    @classmethod
    def from_env(cls) -> VaultConfig:
        raw_network = os.getenv("VAULT_NETWORK", "testnet").strip().lower()
        if raw_network not in SUPPORTED_NETWORKS:
            raise VaultConfigError(
                f"Invalid VAULT_NETWORK={raw_network!r}. "
                f"Expected one of {', '.join(SUPPORTED_NETWORKS)}."
            )

        fee_tier = os.getenv("VAULT_FEE_TIER", "hourFee").strip()
        if fee_tier not in FEE_TIERS:
            raise VaultConfigError(
                f"Invalid VAULT_FEE_TIER={fee_tier!r}. Expected one of {', '.join(FEE_TIERS)}."
            )

        fee_rate_sat_per_vb = 10
        use_fixed_fee_rate = False
        fee_rate_env = os.getenv("VAULT_FEE_RATE_SAT_PER_VB")
        if fee_rate_env is not None and fee_rate_env.strip():
            try:
                fee_rate_sat_per_vb = max(1, int(fee_rate_env))
            except ValueError as exc:
                raise VaultConfigError(
                    f"VAULT_FEE_RATE_SAT_PER_VB must be an integer, got {fee_rate_env!r}."
                ) from exc
            use_fixed_fee_rate = True

        # Anything other than an explicit "off" value keeps dry run enabled
        dry_run_env = os.getenv("VAULT_DRY_RUN", "true").lower()
        dry_run_default = dry_run_env not in ("false", "0", "no", "off")

        timeout_env = os.getenv("VAULT_HTTP_TIMEOUT", "5")
        try:
            http_timeout = float(timeout_env)
        except ValueError as exc:
            raise VaultConfigError(
                f"VAULT_HTTP_TIMEOUT must be a number, got {timeout_env!r}."
            ) from exc

        mempool_api_url = (os.getenv("VAULT_MEMPOOL_API_URL") or "").strip() or None
        log_file = (os.getenv("VAULT_LOG_FILE") or "").strip() or None

        return cls(
            network=raw_network,  # type: ignore[arg-type]
            fee_tier=fee_tier,
            fee_rate_sat_per_vb=fee_rate_sat_per_vb,
            use_fixed_fee_rate=use_fixed_fee_rate,
            dry_run_default=dry_run_default,
            mempool_api_url=mempool_api_url.rstrip("/") if mempool_api_url else None,
            http_timeout=http_timeout,
            log_file=log_file,
        )
