"""
Vault operations behind the MCP tools.

Each function takes the service configuration and a stored vault
configuration dict, does whatever chain lookups it needs through vault_chain
and hands plain data to the pure compiler, builder and finalizer modules.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from bitcoin.core import CTransaction, b2lx, b2x

from vault_builder import (
    FeeRates,
    SpendIntent,
    Utxo,
    build_checkin_psbt,
    build_spend_psbt,
    estimate_checkin_cost,
)
from vault_chain import broadcast_raw_tx, fetch_fee_rates, fetch_tip_height, fetch_vault_utxos
from vault_config import VaultConfig
from vault_errors import IncompletePsbt
from vault_finalizer import extract_transaction, finalize_psbt
from vault_generator import CompiledVault, compiled_vault_from_config
from vault_interpreter import ChainContext, check_final, verify_transaction
from vault_psbt import Psbt, PsbtState
from vault_scripts import (
    LOCKTIME_THRESHOLD,
    SEQUENCE_LOCKTIME_MASK,
    SEQUENCE_LOCKTIME_TYPE_FLAG,
    DeadManSwitchProfile,
    spend_path_requirements,
)

log = logging.getLogger("vault.wallet")


def _needs_height(vault_config: dict[str, Any]) -> bool:
    decay = vault_config.get("decay") or {}
    return bool(vault_config.get("lock_date") or decay.get("decay_date"))


def load_vault(cfg: VaultConfig, vault_config: dict[str, Any]) -> CompiledVault:
    """Compile a stored vault configuration (network defaults to the service network)."""
    height = vault_config.get("current_height")
    if height is None and _needs_height(vault_config):
        height = fetch_tip_height(cfg)
    network = vault_config.get("network") or cfg.network
    return compiled_vault_from_config(vault_config, current_height=height, network=network)


def create_vault(cfg: VaultConfig, vault_config: dict[str, Any]) -> dict[str, Any]:
    return load_vault(cfg, vault_config).to_dict()


def get_fees(cfg: VaultConfig) -> dict[str, Any]:
    rates = fetch_fee_rates(cfg)
    return {
        "network": cfg.network,
        "selected_tier": cfg.fee_tier,
        "selected_rate": rates.rate_for(cfg.fee_tier),
        "fixed": cfg.use_fixed_fee_rate,
        "rates": rates.to_dict(),
    }


def _path_status(vault: CompiledVault, utxos: list[Utxo], tip: int) -> list[dict[str, Any]]:
    paths = []
    now = int(time.time())
    for path in vault.profile.spend_paths:
        req = spend_path_requirements(vault.profile, path)
        entry: dict[str, Any] = {
            "spend_path": path.value,
            "required_signatures": req.required_signatures,
            "locktime": req.locktime,
            "sequence": req.sequence,
        }
        if req.locktime and req.locktime < LOCKTIME_THRESHOLD:
            # mineable in the next block once nLockTime < tip + 1
            entry["available"] = req.locktime <= tip
            entry["blocks_remaining"] = max(0, req.locktime - tip)
        elif req.locktime:
            # median time past lags wall clock by about an hour
            entry["available"] = req.locktime <= now - 3600
        elif isinstance(vault.profile, DeadManSwitchProfile) and path is not vault.profile.owner_path:
            entry.update(_relative_status(req.sequence, utxos, tip))
        else:
            entry["available"] = True
        paths.append(entry)
    return paths


def _relative_status(sequence: int, utxos: list[Utxo], tip: int) -> dict[str, Any]:
    if sequence & SEQUENCE_LOCKTIME_TYPE_FLAG:
        seconds = (sequence & SEQUENCE_LOCKTIME_MASK) * 512
        return {"available": None, "relative_lock_seconds": seconds}

    blocks = sequence & SEQUENCE_LOCKTIME_MASK
    per_utxo = []
    for utxo in utxos:
        if utxo.height is None:
            per_utxo.append({"txid": utxo.txid, "vout": utxo.vout, "matures_at": None})
            continue
        matures_at = utxo.height + blocks
        per_utxo.append({
            "txid": utxo.txid,
            "vout": utxo.vout,
            "matures_at": matures_at,
            "blocks_remaining": max(0, matures_at - (tip + 1)),
        })
    available = bool(per_utxo) and all(
        u["matures_at"] is not None and u["matures_at"] <= tip + 1 for u in per_utxo
    )
    return {"available": available, "relative_lock_blocks": blocks, "utxos": per_utxo}


def get_vault_status(cfg: VaultConfig, vault_config: dict[str, Any]) -> dict[str, Any]:
    """Balance, UTXOs and which spend paths could be used in the next block."""
    vault = load_vault(cfg, vault_config)
    utxos = fetch_vault_utxos(cfg, vault.address)
    tip = fetch_tip_height(cfg)
    return {
        "address": vault.address,
        "network": vault.network,
        "kind": vault.profile.kind,
        "tip_height": tip,
        "balance_sats": sum(u.value for u in utxos),
        "confirmed_sats": sum(u.value for u in utxos if u.confirmed),
        "utxos": [u.to_dict() for u in utxos],
        "spend_paths": _path_status(vault, utxos, tip),
    }


def _fee_rates(cfg: VaultConfig, fee_rate: float | None) -> FeeRates | None:
    return None if fee_rate is not None else fetch_fee_rates(cfg)


def prepare_spend_psbt(
    cfg: VaultConfig,
    vault_config: dict[str, Any],
    destination: str,
    spend_path: str,
    fee_rate: float | None = None,
    fee_priority: str | None = None,
    heir_pubkey: str | None = None,
) -> dict[str, Any]:
    vault = load_vault(cfg, vault_config)
    utxos = fetch_vault_utxos(cfg, vault.address)
    intent = SpendIntent(
        destination=destination,
        spend_path=spend_path,
        fee_rate=fee_rate,
        fee_priority=fee_priority or cfg.fee_tier,
        heir_pubkey=heir_pubkey,
    )
    result = build_spend_psbt(vault, intent, utxos, _fee_rates(cfg, fee_rate))
    data = result.to_dict()
    data["witness_script"] = vault.witness_script.hex
    return data


def prepare_checkin_psbt(
    cfg: VaultConfig,
    vault_config: dict[str, Any],
    new_vault_config: dict[str, Any] | None = None,
    fee_rate: float | None = None,
    fee_priority: str | None = None,
) -> dict[str, Any]:
    vault = load_vault(cfg, vault_config)
    new_vault = load_vault(cfg, new_vault_config) if new_vault_config else None
    utxos = fetch_vault_utxos(cfg, vault.address)
    rates = _fee_rates(cfg, fee_rate)
    result = build_checkin_psbt(
        vault,
        utxos,
        fee_rate=fee_rate,
        fee_rates=rates,
        fee_priority=fee_priority or cfg.fee_tier,
        new_vault=new_vault,
    )
    data = result.to_dict()
    if rates is not None:
        data["cost_by_tier"] = estimate_checkin_cost(vault, utxos, rates)["tiers"]
    return data


def finalize_vault_psbt(
    cfg: VaultConfig, vault_config: dict[str, Any], psbt: str, spend_path: str
) -> dict[str, Any]:
    """Finalize, then run every input through the script verifier."""
    vault = load_vault(cfg, vault_config)
    finalized = finalize_psbt(psbt, vault.profile, spend_path)
    prevouts = [inp.witness_utxo for inp in Psbt.from_string(finalized.psbt_base64).inputs]
    verify_transaction(finalized.tx_hex, prevouts)
    data = finalized.to_dict()
    data["verified"] = True
    data["state"] = PsbtState.FINALIZED.value
    return data


def broadcast_transaction(
    cfg: VaultConfig,
    tx_hex: str | None = None,
    psbt: str | None = None,
    dry_run: bool | None = None,
) -> dict[str, Any]:
    """
    Broadcast a signed transaction, or the transaction of a finalized PSBT.

    With a PSBT the prevouts are known, so scripts are verified and the
    timelocks are checked against the current tip before anything is sent.
    """
    if dry_run is None:
        dry_run = cfg.dry_run_default
    if not tx_hex and not psbt:
        raise ValueError("Provide tx_hex or a finalized psbt.")

    verified = False
    if psbt:
        parsed = Psbt.from_string(psbt)
        tx = extract_transaction(parsed)
        prevouts = []
        for i, inp in enumerate(parsed.inputs):
            if inp.witness_utxo is None:
                raise IncompletePsbt(f"Input {i} has no witness UTXO.")
            prevouts.append(inp.witness_utxo)
        verify_transaction(tx, prevouts)
        check_final(tx, ChainContext(tip_height=fetch_tip_height(cfg)))
        tx_hex = b2x(tx.serialize())
        txid = b2lx(tx.GetTxid())
        verified = True
    else:
        txid = b2lx(CTransaction.deserialize(bytes.fromhex(tx_hex)).GetTxid())

    if dry_run:
        log.info("Dry run: not broadcasting %s", txid)
        return {
            "dry_run": True,
            "txid": txid,
            "tx_hex": tx_hex,
            "verified": verified,
            "state": PsbtState.FINALIZED.value,
        }

    broadcast_txid = broadcast_raw_tx(cfg, tx_hex)
    return {
        "dry_run": False,
        "txid": broadcast_txid,
        "verified": verified,
        "state": PsbtState.BROADCAST.value,
    }
