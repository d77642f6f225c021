"""
mempool.space REST client: fee rates, vault UTXOs, tip height, broadcast.

These are the only network calls in the project. Nothing in the script,
PSBT or finalizer modules imports this one; the wallet layer fetches data
here and passes it into the pure builders.
"""

from __future__ import annotations

import logging

import requests

from vault_builder import FeeRates, Utxo
from vault_config import VaultConfig
from vault_errors import ChainQueryError

log = logging.getLogger("vault.chain")

MEMPOOL_API_URLS = {
    "mainnet": "https://mempool.space/api",
    "testnet": "https://mempool.space/testnet/api",
    "signet": "https://mempool.space/signet/api",
}


def api_base_url(cfg: VaultConfig) -> str:
    return cfg.mempool_api_url or MEMPOOL_API_URLS[cfg.network]


def _get_json(cfg: VaultConfig, path: str):
    url = f"{api_base_url(cfg)}{path}"
    try:
        resp = requests.get(url, timeout=cfg.http_timeout)
        resp.raise_for_status()
        return resp.json()
    except (requests.RequestException, ValueError) as exc:
        raise ChainQueryError(f"GET {url} failed: {exc}") from exc


def fetch_fee_rates(cfg: VaultConfig) -> FeeRates:
    """
    Recommended fee tiers (sat/vB).

    A fixed VAULT_FEE_RATE_SAT_PER_VB short-circuits the lookup; lookup
    failures fall back to the configured rate for every tier.
    """
    if cfg.use_fixed_fee_rate:
        return FeeRates.flat(cfg.fee_rate_sat_per_vb)
    try:
        data = _get_json(cfg, "/v1/fees/recommended")
        return FeeRates.from_mempool(data)
    except (ChainQueryError, KeyError, TypeError) as exc:
        log.warning(
            "Fee lookup failed (%s); using %s sat/vB", exc, cfg.fee_rate_sat_per_vb
        )
        return FeeRates.flat(cfg.fee_rate_sat_per_vb)


def fetch_vault_utxos(cfg: VaultConfig, address: str) -> list[Utxo]:
    data = _get_json(cfg, f"/address/{address}/utxo")
    if not isinstance(data, list):
        raise ChainQueryError(f"Unexpected UTXO response for {address}: {data!r}")
    try:
        return [Utxo.from_mempool(entry) for entry in data]
    except (KeyError, TypeError, ValueError) as exc:
        raise ChainQueryError(f"Malformed UTXO entry for {address}: {exc}") from exc


def fetch_tip_height(cfg: VaultConfig) -> int:
    url = f"{api_base_url(cfg)}/blocks/tip/height"
    try:
        resp = requests.get(url, timeout=cfg.http_timeout)
        resp.raise_for_status()
        return int(resp.text.strip())
    except (requests.RequestException, ValueError) as exc:
        raise ChainQueryError(f"GET {url} failed: {exc}") from exc


def broadcast_raw_tx(cfg: VaultConfig, raw_hex: str) -> str:
    """
    Broadcast a raw transaction hex via mempool.space.

    Returns the txid string on success, or raises ChainQueryError.
    """
    url = f"{api_base_url(cfg)}/tx"
    try:
        resp = requests.post(url, data=raw_hex, timeout=max(cfg.http_timeout, 10))
    except requests.RequestException as exc:
        raise ChainQueryError(f"Transaction broadcast failed: {exc}") from exc
    if not resp.ok:
        error_msg = resp.text or f"HTTP {resp.status_code}"
        raise ChainQueryError(f"Transaction broadcast failed: {error_msg}")
    # mempool.space returns the txid as plain text.
    txid = resp.text.strip()
    log.info("Broadcast %s via %s", txid, url)
    return txid
