#!/usr/bin/env python3
"""
MCP server for Bitcoin inheritance vaults.

Tools cover the vault lifecycle: key normalization, vault creation (witness
script + P2WSH address), status, fee lookup, unsigned spend and check-in
PSBTs, PSBT validation/combination, finalization with script verification,
and broadcast. Signing happens elsewhere (hardware wallet or other signer).

Wraps vault_wallet.py and the pure vault_* modules as MCP tools.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, List

from dotenv import load_dotenv
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

# Load .env from current directory or parent directories
SERVER_DIR = Path(__file__).resolve().parent
load_dotenv(SERVER_DIR / ".env")
load_dotenv(SERVER_DIR.parent / ".env")

from vault_config import VaultConfig, setup_logging
from vault_errors import VaultError
from vault_keys import normalize_pubkey, validate_public_key
from vault_psbt import combine_psbts, psbt_state, validate_psbt
from vault_wallet import (
    broadcast_transaction,
    create_vault,
    finalize_vault_psbt,
    get_fees,
    get_vault_status,
    prepare_checkin_psbt,
    prepare_spend_psbt,
)

log = logging.getLogger("vault.mcp")

app = Server("bitcoin_vault")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _ok_response(data: dict[str, Any]) -> List[TextContent]:
    data["success"] = True
    return [TextContent(type="text", text=json.dumps(data, default=str))]


def _error_response(message: str, error_type: str | None = None) -> List[TextContent]:
    payload: dict[str, Any] = {"success": False, "error": message}
    if error_type:
        payload["error_type"] = error_type
    return [TextContent(type="text", text=json.dumps(payload))]


def _vault_arg(arguments: dict[str, Any], key: str = "vault") -> dict[str, Any]:
    vault = arguments.get(key)
    if not isinstance(vault, dict):
        raise ValueError(f"Missing or invalid '{key}' object.")
    return vault


_VAULT_SCHEMA = {
    "type": "object",
    "description": (
        "Vault configuration: logic (timelock | dead_man_switch | multisig_decay | "
        "thresh_decay), network, owner_pubkey, heir_pubkeys, lock_height or lock_date, "
        "inactivity_blocks or inactivity_days, decay {initial_threshold, initial_total, "
        "decayed_threshold, decayed_total, decay_height}, pubkeys (thresh_decay)."
    ),
}

_SPEND_PATHS = [
    "owner",
    "heir",
    "multisig_before_decay",
    "multisig_after_decay",
    "thresh_before_decay",
    "thresh_after_decay",
]


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------


@app.list_tools()
async def list_tools() -> List[Tool]:
    return [
        Tool(
            name="vault_normalize_key",
            description=(
                "Normalize a hex public key or extended public key (xpub/tpub/zpub...) "
                "to its 33-byte compressed hex form."
            ),
            inputSchema={
                "type": "object",
                "properties": {"key": {"type": "string", "description": "Public key"}},
                "required": ["key"],
            },
        ),
        Tool(
            name="vault_create",
            description=(
                "Compile a vault configuration into its witness script and derive the "
                "P2WSH address. Returns the script, ASM, policy and spend-path info."
            ),
            inputSchema={
                "type": "object",
                "properties": {"vault": _VAULT_SCHEMA},
                "required": ["vault"],
            },
        ),
        Tool(
            name="vault_get_status",
            description=(
                "Balance, UTXOs and spend-path availability for a vault. "
                "Queries mempool.space for UTXOs and the tip height."
            ),
            inputSchema={
                "type": "object",
                "properties": {"vault": _VAULT_SCHEMA},
                "required": ["vault"],
            },
        ),
        Tool(
            name="vault_get_fees",
            description="Return recommended fee rates (sat/vB) from mempool.space.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="vault_build_spend_psbt",
            description=(
                "Build an unsigned PSBT sweeping all vault UTXOs to a destination via "
                "one spend path. nLockTime/nSequence are set for that path."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "vault": _VAULT_SCHEMA,
                    "destination": {"type": "string", "description": "Destination address"},
                    "spend_path": {"type": "string", "enum": _SPEND_PATHS},
                    "fee_rate": {"type": "number", "description": "Fee rate in sat/vB"},
                    "fee_priority": {
                        "type": "string",
                        "description": "fastestFee, halfHourFee, hourFee, economyFee or minimumFee",
                    },
                    "heir_pubkey": {
                        "type": "string",
                        "description": "Optional heir key; must belong to the chosen path",
                    },
                },
                "required": ["vault", "destination", "spend_path"],
            },
        ),
        Tool(
            name="vault_build_checkin_psbt",
            description=(
                "Build an owner check-in PSBT that spends the vault back to itself "
                "(or to a new vault), restarting a dead man's switch timer."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "vault": _VAULT_SCHEMA,
                    "new_vault": _VAULT_SCHEMA,
                    "fee_rate": {"type": "number", "description": "Fee rate in sat/vB"},
                    "fee_priority": {"type": "string"},
                },
                "required": ["vault"],
            },
        ),
        Tool(
            name="vault_validate_psbt",
            description=(
                "Structurally validate a PSBT (base64 or hex): counts, witness scripts, "
                "signature count and state. Does not verify signatures."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "psbt": {"type": "string"},
                    "witness_script": {
                        "type": "string",
                        "description": "Optional expected witness script hex",
                    },
                },
                "required": ["psbt"],
            },
        ),
        Tool(
            name="vault_combine_psbts",
            description="Combine PSBTs signed by different co-signers into one.",
            inputSchema={
                "type": "object",
                "properties": {"psbts": {"type": "array", "items": {"type": "string"}}},
                "required": ["psbts"],
            },
        ),
        Tool(
            name="vault_finalize_psbt",
            description=(
                "Finalize a signed vault PSBT for a spend path, build the witness stacks, "
                "verify the scripts and return the raw transaction."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "vault": _VAULT_SCHEMA,
                    "psbt": {"type": "string"},
                    "spend_path": {"type": "string", "enum": _SPEND_PATHS},
                },
                "required": ["vault", "psbt", "spend_path"],
            },
        ),
        Tool(
            name="vault_broadcast",
            description=(
                "Broadcast a finalized PSBT or raw transaction via mempool.space. "
                "Requires explicit user confirmation; dry run unless disabled."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "psbt": {"type": "string", "description": "Finalized PSBT"},
                    "tx_hex": {"type": "string", "description": "Raw signed transaction"},
                    "dry_run": {
                        "type": "boolean",
                        "description": "If true, verify but do not broadcast",
                    },
                },
            },
        ),
    ]


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> List[TextContent]:
    if not isinstance(arguments, dict):
        return _error_response("Invalid arguments. Expected an object.")

    try:
        if name == "vault_normalize_key":
            return await _handle_normalize_key(arguments)
        if name == "vault_create":
            return await _handle_create(arguments)
        if name == "vault_get_status":
            return await _handle_get_status(arguments)
        if name == "vault_get_fees":
            return await _handle_get_fees()
        if name == "vault_build_spend_psbt":
            return await _handle_build_spend_psbt(arguments)
        if name == "vault_build_checkin_psbt":
            return await _handle_build_checkin_psbt(arguments)
        if name == "vault_validate_psbt":
            return await _handle_validate_psbt(arguments)
        if name == "vault_combine_psbts":
            return await _handle_combine_psbts(arguments)
        if name == "vault_finalize_psbt":
            return await _handle_finalize_psbt(arguments)
        if name == "vault_broadcast":
            return await _handle_broadcast(arguments)
    except VaultError as exc:
        return _error_response(str(exc), type(exc).__name__)
    except Exception as exc:  # noqa: BLE001
        log.exception("Tool %s failed", name)
        return _error_response(str(exc), type(exc).__name__)

    return _error_response(f"Unknown tool: {name}")


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def _handle_normalize_key(arguments: dict[str, Any]) -> List[TextContent]:
    key = arguments.get("key") or ""
    valid, message = validate_public_key(key)
    if not valid:
        return _error_response(message or "Invalid key", "InvalidKeyFormat")
    return _ok_response({"pubkey": normalize_pubkey(key)})


async def _handle_create(arguments: dict[str, Any]) -> List[TextContent]:
    cfg = await asyncio.to_thread(VaultConfig.from_env)
    result = await asyncio.to_thread(create_vault, cfg, _vault_arg(arguments))
    return _ok_response(result)


async def _handle_get_status(arguments: dict[str, Any]) -> List[TextContent]:
    cfg = await asyncio.to_thread(VaultConfig.from_env)
    result = await asyncio.to_thread(get_vault_status, cfg, _vault_arg(arguments))
    return _ok_response(result)


async def _handle_get_fees() -> List[TextContent]:
    cfg = await asyncio.to_thread(VaultConfig.from_env)
    result = await asyncio.to_thread(get_fees, cfg)
    return _ok_response(result)


async def _handle_build_spend_psbt(arguments: dict[str, Any]) -> List[TextContent]:
    destination = (arguments.get("destination") or "").strip()
    if not destination:
        return _error_response("Missing 'destination' parameter.")
    spend_path = arguments.get("spend_path")
    if not spend_path:
        return _error_response("Missing 'spend_path' parameter.")

    cfg = await asyncio.to_thread(VaultConfig.from_env)
    result = await asyncio.to_thread(
        prepare_spend_psbt,
        cfg,
        _vault_arg(arguments),
        destination,
        spend_path,
        fee_rate=arguments.get("fee_rate"),
        fee_priority=arguments.get("fee_priority"),
        heir_pubkey=arguments.get("heir_pubkey"),
    )
    return _ok_response(result)


async def _handle_build_checkin_psbt(arguments: dict[str, Any]) -> List[TextContent]:
    cfg = await asyncio.to_thread(VaultConfig.from_env)
    new_vault = arguments.get("new_vault")
    result = await asyncio.to_thread(
        prepare_checkin_psbt,
        cfg,
        _vault_arg(arguments),
        new_vault_config=new_vault if isinstance(new_vault, dict) else None,
        fee_rate=arguments.get("fee_rate"),
        fee_priority=arguments.get("fee_priority"),
    )
    return _ok_response(result)


async def _handle_validate_psbt(arguments: dict[str, Any]) -> List[TextContent]:
    psbt_str = (arguments.get("psbt") or "").strip()
    if not psbt_str:
        return _error_response("Missing 'psbt' parameter.")
    result = await asyncio.to_thread(validate_psbt, psbt_str, arguments.get("witness_script"))
    return _ok_response(result.to_dict())


async def _handle_combine_psbts(arguments: dict[str, Any]) -> List[TextContent]:
    psbts = arguments.get("psbts")
    if not psbts or not isinstance(psbts, list):
        return _error_response("Missing or invalid 'psbts' array.")
    combined = await asyncio.to_thread(combine_psbts, psbts)
    return _ok_response({
        "psbt_base64": combined.to_base64(),
        "signature_count": combined.signature_count,
        "state": psbt_state(combined).value,
    })


async def _handle_finalize_psbt(arguments: dict[str, Any]) -> List[TextContent]:
    psbt_str = (arguments.get("psbt") or "").strip()
    if not psbt_str:
        return _error_response("Missing 'psbt' parameter.")
    spend_path = arguments.get("spend_path")
    if not spend_path:
        return _error_response("Missing 'spend_path' parameter.")

    cfg = await asyncio.to_thread(VaultConfig.from_env)
    result = await asyncio.to_thread(
        finalize_vault_psbt, cfg, _vault_arg(arguments), psbt_str, spend_path
    )
    return _ok_response(result)


async def _handle_broadcast(arguments: dict[str, Any]) -> List[TextContent]:
    psbt_str = (arguments.get("psbt") or "").strip() or None
    tx_hex = (arguments.get("tx_hex") or "").strip() or None
    if not psbt_str and not tx_hex:
        return _error_response("Provide 'psbt' (finalized) or 'tx_hex'.")

    cfg = await asyncio.to_thread(VaultConfig.from_env)
    result = await asyncio.to_thread(
        broadcast_transaction, cfg, tx_hex=tx_hex, psbt=psbt_str, dry_run=arguments.get("dry_run")
    )
    result["network"] = cfg.network
    return _ok_response(result)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def main() -> None:
    cfg = VaultConfig.from_env()
    setup_logging(cfg.log_file)
    async with stdio_server() as (read_stream, write_stream):
        await app.run(read_stream, write_stream, app.create_initialization_options())


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
