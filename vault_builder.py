"""
Unsigned PSBT construction for vault spends and owner check-ins.

Everything here is pure over its arguments: UTXOs and fee rates are looked
up beforehand (see vault_chain) and passed in. Every UTXO at the vault
address is spent; there is no partial coin selection.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any

from bitcoin.core import CMutableTransaction, CMutableTxIn, CMutableTxOut, COutPoint, CTxOut, lx
from bitcoin.core.script import SIGHASH_ALL, CScript

from vault_address import address_to_script_pubkey
from vault_errors import InsufficientFunds, SpendPathMismatch
from vault_generator import CompiledVault
from vault_keys import normalize_pubkey
from vault_psbt import Psbt
from vault_scripts import (
    MultisigDecayProfile,
    SpendPath,
    ThreshDecayProfile,
    parse_spend_path,
    spend_path_requirements,
)

log = logging.getLogger("vault.builder")

TX_VERSION = 2
DUST_THRESHOLD = 546
# DER signature upper bound (low-S, high-R) plus the sighash byte
SIGNATURE_SIZE = 72
# prevout(36) + empty scriptSig length(1) + nSequence(4)
INPUT_BASE_SIZE = 41


@dataclass
class Utxo:
    txid: str
    vout: int
    value: int
    height: int | None = None
    script_pubkey: bytes | None = None

    @property
    def confirmed(self) -> bool:
        return self.height is not None

    @classmethod
    def from_mempool(cls, data: dict[str, Any]) -> Utxo:
        """Build from a mempool.space /address/<addr>/utxo entry."""
        status = data.get("status") or {}
        height = status.get("block_height") if status.get("confirmed") else None
        return cls(txid=data["txid"], vout=int(data["vout"]), value=int(data["value"]), height=height)

    def to_dict(self) -> dict[str, Any]:
        return {"txid": self.txid, "vout": self.vout, "value": self.value, "height": self.height}


@dataclass
class FeeRates:
    """mempool.space recommended fee tiers, sat/vB."""

    fastest: float
    half_hour: float
    hour: float
    economy: float
    minimum: float

    _ALIASES = {
        "fastestFee": "fastest",
        "fastest": "fastest",
        "halfHourFee": "half_hour",
        "halfHour": "half_hour",
        "hourFee": "hour",
        "hour": "hour",
        "economyFee": "economy",
        "economy": "economy",
        "minimumFee": "minimum",
        "minimum": "minimum",
    }

    @classmethod
    def from_mempool(cls, data: dict[str, Any]) -> FeeRates:
        return cls(
            fastest=data["fastestFee"],
            half_hour=data["halfHourFee"],
            hour=data["hourFee"],
            economy=data.get("economyFee", data["hourFee"]),
            minimum=data.get("minimumFee", 1),
        )

    @classmethod
    def flat(cls, rate: float) -> FeeRates:
        return cls(rate, rate, rate, rate, rate)

    def rate_for(self, priority: str) -> float:
        try:
            return getattr(self, self._ALIASES[priority])
        except KeyError:
            raise ValueError(
                f"Unknown fee priority {priority!r}. Expected one of: "
                "fastestFee, halfHourFee, hourFee, economyFee, minimumFee."
            ) from None

    def to_dict(self) -> dict[str, float]:
        return {
            "fastestFee": self.fastest,
            "halfHourFee": self.half_hour,
            "hourFee": self.hour,
            "economyFee": self.economy,
            "minimumFee": self.minimum,
        }


@dataclass
class SpendIntent:
    destination: str
    spend_path: SpendPath | str
    fee_rate: float | None = None
    fee_priority: str = "hourFee"
    heir_pubkey: str | None = None


@dataclass
class PsbtResult:
    psbt_base64: str
    psbt_hex: str
    fee: int
    fee_rate: float
    vsize: int
    input_count: int
    output_count: int
    total_input: int
    total_output: int
    destination: str
    spend_path: SpendPath
    locktime: int
    sequence: int

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.__dict__)
        data["spend_path"] = self.spend_path.value
        return data


@dataclass
class CheckinResult(PsbtResult):
    new_address: str = ""
    refresh_type: str = "same"
    new_witness_script: str = ""
    previous_utxos: list[dict[str, Any]] = field(default_factory=list)


# ---- Size estimation ----


def _varint_size(n: int) -> int:
    if n < 0xFD:
        return 1
    return 3 if n <= 0xFFFF else 5


def witness_item_sizes(vault: CompiledVault, spend_path: SpendPath | str) -> list[int]:
    """Lengths of the witness items a spend via *spend_path* will carry."""
    path = parse_spend_path(spend_path)
    req = spend_path_requirements(vault.profile, path)
    sigs = [SIGNATURE_SIZE] * req.required_signatures
    script_len = len(vault.witness_script.script)
    profile = vault.profile

    if isinstance(profile, MultisigDecayProfile):
        flag = 1 if path is SpendPath.MULTISIG_BEFORE_DECAY else 0
        return [0, *sigs, flag, script_len]
    if isinstance(profile, ThreshDecayProfile):
        empties = [0] * (len(profile.pubkeys) - req.required_signatures)
        dummy = 1 if path is SpendPath.THRESH_BEFORE_DECAY else 0
        return [dummy, *sigs, *empties, script_len]
    flag = 1 if path is SpendPath.OWNER else 0
    return [SIGNATURE_SIZE, flag, script_len]


def estimate_vsize(
    vault: CompiledVault,
    spend_path: SpendPath | str,
    input_count: int,
    output_scripts: list[bytes],
) -> int:
    """Virtual size of the finalized spend, from the branch's exact witness shape."""
    base = 4 + _varint_size(input_count) + INPUT_BASE_SIZE * input_count
    base += _varint_size(len(output_scripts))
    for spk in output_scripts:
        base += 8 + _varint_size(len(spk)) + len(spk)
    base += 4

    items = witness_item_sizes(vault, spend_path)
    per_input = _varint_size(len(items)) + sum(_varint_size(n) + n for n in items)
    witness = 2 + per_input * input_count  # marker + flag

    return math.ceil((base * 4 + witness) / 4)


# ---- Builders ----


def _resolve_fee_rate(fee_rate: float | None, fee_rates: FeeRates | None, priority: str) -> float:
    if fee_rate is not None:
        rate = fee_rate
    elif fee_rates is not None:
        rate = fee_rates.rate_for(priority)
    else:
        raise ValueError("A fee rate or a set of fee rates is required.")
    if rate <= 0:
        raise ValueError(f"Fee rate must be positive, got {rate}.")
    return rate


def _check_utxos(vault: CompiledVault, utxos: list[Utxo]) -> None:
    if not utxos:
        raise InsufficientFunds("No UTXOs found - vault may be empty.")
    for utxo in utxos:
        if utxo.script_pubkey is not None and utxo.script_pubkey != vault.script_pubkey:
            raise ValueError(f"UTXO {utxo.txid}:{utxo.vout} is not locked to vault {vault.address}.")
        if utxo.value <= 0:
            raise ValueError(f"UTXO {utxo.txid}:{utxo.vout} has no value.")


def _build(
    vault: CompiledVault,
    spend_path: SpendPath,
    utxos: list[Utxo],
    destination_spk: bytes,
    fee_rate: float,
) -> tuple[Psbt, dict[str, Any]]:
    _check_utxos(vault, utxos)
    req = spend_path_requirements(vault.profile, spend_path)

    total_input = sum(u.value for u in utxos)
    vsize = estimate_vsize(vault, spend_path, len(utxos), [destination_spk])
    fee = math.ceil(vsize * fee_rate)
    output_value = total_input - fee

    if output_value <= 0:
        raise InsufficientFunds(
            f"Insufficient funds: {total_input} sats cannot cover the {fee} sat fee."
        )
    if output_value < DUST_THRESHOLD:
        raise InsufficientFunds(
            f"Output of {output_value} sats after a {fee} sat fee is below the "
            f"{DUST_THRESHOLD} sat dust threshold."
        )

    vin = [
        CMutableTxIn(COutPoint(lx(u.txid), u.vout), nSequence=req.sequence) for u in utxos
    ]
    vout = [CMutableTxOut(output_value, CScript(destination_spk))]
    tx = CMutableTransaction(vin, vout, nLockTime=req.locktime, nVersion=TX_VERSION)

    psbt = Psbt.from_transaction(tx)
    vault_spk = CScript(vault.script_pubkey)
    for inp, utxo in zip(psbt.inputs, utxos):
        inp.witness_utxo = CTxOut(utxo.value, vault_spk)
        inp.witness_script = vault.witness_script.script
        inp.sighash_type = SIGHASH_ALL

    summary = {
        "fee": fee,
        "fee_rate": fee_rate,
        "vsize": vsize,
        "total_input": total_input,
        "total_output": output_value,
        "locktime": req.locktime,
        "sequence": req.sequence,
    }
    return psbt, summary


def build_spend_psbt(
    vault: CompiledVault,
    intent: SpendIntent,
    utxos: list[Utxo],
    fee_rates: FeeRates | None = None,
) -> PsbtResult:
    """Unsigned PSBT sweeping every vault UTXO to ``intent.destination``."""
    path = parse_spend_path(intent.spend_path)
    req = spend_path_requirements(vault.profile, path)

    if intent.heir_pubkey is not None:
        heir = normalize_pubkey(intent.heir_pubkey)
        if heir not in req.keys:
            raise SpendPathMismatch(
                f"Key {heir} cannot sign the {path.value} path of this vault."
            )

    fee_rate = _resolve_fee_rate(intent.fee_rate, fee_rates, intent.fee_priority)
    destination_spk = address_to_script_pubkey(intent.destination, vault.network)
    psbt, summary = _build(vault, path, utxos, destination_spk, fee_rate)

    log.info(
        "Built %s spend PSBT for %s: %d input(s), %d sats out, fee %d sats",
        path.value, vault.address, len(utxos), summary["total_output"], summary["fee"],
    )
    return PsbtResult(
        psbt_base64=psbt.to_base64(),
        psbt_hex=psbt.to_hex(),
        input_count=len(psbt.inputs),
        output_count=len(psbt.outputs),
        destination=intent.destination,
        spend_path=path,
        **summary,
    )


def build_checkin_psbt(
    vault: CompiledVault,
    utxos: list[Utxo],
    fee_rate: float | None = None,
    fee_rates: FeeRates | None = None,
    fee_priority: str = "hourFee",
    new_vault: CompiledVault | None = None,
) -> CheckinResult:
    """
    Owner-path self-spend that recreates the vault UTXO.

    For a dead man's switch this restarts the inactivity clock. With
    *new_vault* the funds move to a freshly compiled vault instead of the
    same address.
    """
    target = new_vault or vault
    if target.network != vault.network:
        raise ValueError(
            f"Check-in target is on {target.network}, vault is on {vault.network}."
        )

    path = vault.profile.owner_path
    rate = _resolve_fee_rate(fee_rate, fee_rates, fee_priority)
    psbt, summary = _build(vault, path, utxos, target.script_pubkey, rate)

    log.info(
        "Built check-in PSBT for %s -> %s (%s)",
        vault.address, target.address, "new" if new_vault else "same",
    )
    return CheckinResult(
        psbt_base64=psbt.to_base64(),
        psbt_hex=psbt.to_hex(),
        input_count=len(psbt.inputs),
        output_count=len(psbt.outputs),
        destination=target.address,
        spend_path=path,
        new_address=target.address,
        refresh_type="new" if new_vault else "same",
        new_witness_script=target.witness_script.hex,
        previous_utxos=[u.to_dict() for u in utxos],
        **summary,
    )


def estimate_checkin_cost(
    vault: CompiledVault, utxos: list[Utxo], fee_rates: FeeRates
) -> dict[str, Any]:
    """Check-in fee at every mempool tier, in sats."""
    vsize = estimate_vsize(vault, vault.profile.owner_path, max(len(utxos), 1), [vault.script_pubkey])
    total = sum(u.value for u in utxos)
    tiers = {
        tier: {"fee_rate": rate, "fee": math.ceil(vsize * rate)}
        for tier, rate in fee_rates.to_dict().items()
    }
    return {"vsize": vsize, "total_input": total, "tiers": tiers}
