"""
PSBT finalizer for vault spends.

The witness stack for every input is derived from the typed profile and the
requested spend path, never from the free-text redeem info:

    CHECKSIG          [sig, 0x01 | <empty>, witness_script]
    CHECKMULTISIG     [<empty>, sig_1 .. sig_m (BIP67 key order), 0x01 | <empty>, witness_script]
    thresh decay      [0x01 | <empty>, w(kN) .. w(k1), witness_script]

For thresh decay each w(k) is that key's signature or an empty push, and the
leading element feeds the ``sln:after`` term: empty exercises the timelock,
0x01 skips it. OP_EQUAL makes the count exact, so exactly t (or t-1 after
decay) signatures are placed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from bitcoin.core import (
    CMutableTransaction,
    CTransaction,
    CTxInWitness,
    CTxWitness,
    b2lx,
    b2x,
)
from bitcoin.core.script import CScriptWitness

from vault_errors import IncompletePsbt, InvalidPsbtFormat, SpendPathMismatch
from vault_psbt import Psbt, PsbtInput
from vault_scripts import (
    SEQUENCE_FINAL,
    MultisigDecayProfile,
    PathRequirements,
    SpendPath,
    ThreshDecayProfile,
    VaultProfile,
    compile_profile,
    locktime_kind,
    parse_spend_path,
    spend_path_requirements,
)

log = logging.getLogger("vault.finalizer")

BRANCH_TRUE = b"\x01"
BRANCH_FALSE = b""


@dataclass
class FinalizedTransaction:
    tx_hex: str
    txid: str
    witness_stacks: list[list[bytes]]
    psbt_base64: str
    weight: int
    vsize: int
    spend_path: SpendPath

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_hex": self.tx_hex,
            "txid": self.txid,
            "witness_stacks": [[item.hex() for item in stack] for stack in self.witness_stacks],
            "psbt_base64": self.psbt_base64,
            "weight": self.weight,
            "vsize": self.vsize,
            "spend_path": self.spend_path.value,
        }


def _signatures_by_key(inp: PsbtInput, index: int) -> dict[str, bytes]:
    sigs = {}
    for pubkey, sig in inp.partial_sigs.items():
        if not sig:
            raise InvalidPsbtFormat(f"Input {index} carries an empty partial signature.")
        sigs[pubkey.hex()] = sig
    return sigs


def _select_signatures(
    sigs: dict[str, bytes], req: PathRequirements, index: int
) -> dict[str, bytes]:
    """Pick exactly ``req.required_signatures`` signatures from the branch keys."""
    usable = {k: s for k, s in sigs.items() if k in req.keys}
    if len(usable) >= req.required_signatures:
        # first signers in script order
        chosen = [k for k in req.keys if k in usable][: req.required_signatures]
        return {k: usable[k] for k in chosen}

    if len(sigs) >= req.required_signatures:
        foreign = sorted(set(sigs) - set(req.keys))
        raise SpendPathMismatch(
            f"Input {index}: signatures from {', '.join(foreign)} cannot satisfy the "
            f"{req.spend_path.value} path."
        )
    raise IncompletePsbt(
        f"Input {index} has {len(usable)} of {req.required_signatures} required signature(s) "
        f"for the {req.spend_path.value} path."
    )


def build_witness_stack(
    profile: VaultProfile,
    req: PathRequirements,
    signatures: dict[str, bytes],
    witness_script: bytes,
) -> list[bytes]:
    """Witness items (witness script last) for one input; *signatures* is already exact."""
    path = req.spend_path

    if isinstance(profile, MultisigDecayProfile):
        flag = BRANCH_TRUE if path is SpendPath.MULTISIG_BEFORE_DECAY else BRANCH_FALSE
        ordered = [signatures[k] for k in req.keys if k in signatures]
        return [b"", *ordered, flag, witness_script]

    if isinstance(profile, ThreshDecayProfile):
        dummy = BRANCH_TRUE if path is SpendPath.THRESH_BEFORE_DECAY else BRANCH_FALSE
        # k1 is consumed first, so it sits on top of the stack: push kN first
        slots = [signatures.get(k, b"") for k in reversed(req.keys)]
        return [dummy, *slots, witness_script]

    flag = BRANCH_TRUE if path is SpendPath.OWNER else BRANCH_FALSE
    (key,) = req.keys
    return [signatures[key], flag, witness_script]


def _check_transaction_locks(tx: CMutableTransaction, req: PathRequirements) -> None:
    """
    CLTV paths accept any nLockTime of the lock's type at or past the lock
    and any non-final nSequence. Other paths need the exact nSequence.
    """
    path = req.spend_path.value
    if req.locktime:
        lock_type = locktime_kind(req.locktime)
        if locktime_kind(tx.nLockTime) != lock_type or tx.nLockTime < req.locktime:
            raise SpendPathMismatch(
                f"Transaction nLockTime is {tx.nLockTime}; the {path} path requires a "
                f"{lock_type} of at least {req.locktime}."
            )
        for i, txin in enumerate(tx.vin):
            if txin.nSequence == SEQUENCE_FINAL:
                raise SpendPathMismatch(
                    f"Input {i} nSequence is final (0xffffffff), which disables nLockTime; "
                    f"the {path} path needs a non-final nSequence."
                )
        return

    for i, txin in enumerate(tx.vin):
        if txin.nSequence != req.sequence:
            raise SpendPathMismatch(
                f"Input {i} nSequence is 0x{txin.nSequence:08x}; the {path} "
                f"path requires 0x{req.sequence:08x}."
            )


def _transaction_with_witness(tx: CMutableTransaction, stacks: list[list[bytes]]) -> CTransaction:
    witness = CTxWitness([CTxInWitness(CScriptWitness(stack)) for stack in stacks])
    return CTransaction(tx.vin, tx.vout, tx.nLockTime, tx.nVersion, witness)


def _weight(tx: CTransaction) -> int:
    stripped = len(CTransaction(tx.vin, tx.vout, tx.nLockTime, tx.nVersion).serialize())
    total = len(tx.serialize())
    return stripped * 3 + total


def finalize_psbt(
    psbt_text: str, profile: VaultProfile, spend_path: SpendPath | str
) -> FinalizedTransaction:
    """
    Finalize a signed vault PSBT for *spend_path* and extract the transaction.

    Raises IncompletePsbt when signatures are missing, SpendPathMismatch when
    the signatures, witness script or timelocks belong to another branch, and
    InvalidPsbtFormat for unparseable or already finalized input.
    """
    path = parse_spend_path(spend_path)
    req = spend_path_requirements(profile, path)
    witness_script = compile_profile(profile).script

    psbt = Psbt.from_string(psbt_text)
    if any(inp.is_finalized for inp in psbt.inputs):
        raise InvalidPsbtFormat("PSBT is already finalized; finalized transactions are immutable.")

    _check_transaction_locks(psbt.tx, req)

    stacks = []
    for i, inp in enumerate(psbt.inputs):
        if inp.witness_script is None:
            raise InvalidPsbtFormat(f"Input {i} has no witness script.")
        if inp.witness_script != witness_script:
            raise SpendPathMismatch(f"Input {i} witness script does not belong to this vault profile.")
        if inp.witness_utxo is None:
            raise InvalidPsbtFormat(f"Input {i} has no witness UTXO.")

        chosen = _select_signatures(_signatures_by_key(inp, i), req, i)
        stacks.append(build_witness_stack(profile, req, chosen, witness_script))

    # BIP174 finalizer: keep only the UTXO and the final fields
    for inp, stack in zip(psbt.inputs, stacks):
        inp.partial_sigs = {}
        inp.sighash_type = None
        inp.redeem_script = None
        inp.witness_script = None
        inp.bip32_derivations = {}
        inp.final_script_witness = stack

    tx = _transaction_with_witness(psbt.tx, stacks)
    weight = _weight(tx)
    txid = b2lx(tx.GetTxid())
    log.info("Finalized %s spend %s (%d input(s), %d WU)", path.value, txid, len(stacks), weight)

    return FinalizedTransaction(
        tx_hex=b2x(tx.serialize()),
        txid=txid,
        witness_stacks=stacks,
        psbt_base64=psbt.to_base64(),
        weight=weight,
        vsize=(weight + 3) // 4,
        spend_path=path,
    )


def extract_transaction(psbt: Psbt | str) -> CTransaction:
    """Network transaction of a fully finalized PSBT."""
    if isinstance(psbt, str):
        psbt = Psbt.from_string(psbt)
    missing = [i for i, inp in enumerate(psbt.inputs) if inp.final_script_witness is None]
    if missing:
        raise IncompletePsbt(f"Input {missing[0]} is not finalized.")
    return _transaction_with_witness(psbt.tx, [inp.final_script_witness for inp in psbt.inputs])
