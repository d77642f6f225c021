"""
BIP174 (version 0) PSBT codec, structural validator and combiner.

Parsing is strict about structure (magic, map separators, duplicate keys,
unsigned transaction shape) and lenient about content: unknown keys are kept
byte-for-byte so a PSBT passes through us unchanged for fields we do not
understand. Signatures are never verified here.
"""

from __future__ import annotations

import base64
import binascii
import logging
import struct
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from bitcoin.core import CMutableTransaction, CTransaction, CTxOut, b2lx
from bitcoin.core.serialize import SerializationError

from vault_errors import InvalidPsbtFormat

log = logging.getLogger("vault.psbt")

PSBT_MAGIC = b"psbt\xff"

PSBT_GLOBAL_UNSIGNED_TX = 0x00
PSBT_GLOBAL_XPUB = 0x01
PSBT_GLOBAL_VERSION = 0xFB

PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_PARTIAL_SIG = 0x02
PSBT_IN_SIGHASH_TYPE = 0x03
PSBT_IN_REDEEM_SCRIPT = 0x04
PSBT_IN_WITNESS_SCRIPT = 0x05
PSBT_IN_BIP32_DERIVATION = 0x06
PSBT_IN_FINAL_SCRIPTSIG = 0x07
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08

PSBT_OUT_REDEEM_SCRIPT = 0x00
PSBT_OUT_WITNESS_SCRIPT = 0x01
PSBT_OUT_BIP32_DERIVATION = 0x02


# ---- Low-level helpers ----


def _decode_varint(data: bytes, offset: int) -> tuple[int, int]:
    """Decode a Bitcoin compact-size varint. Returns (value, new_offset)."""
    if offset >= len(data):
        raise InvalidPsbtFormat("Unexpected end of PSBT data.")
    first = data[offset]
    if first < 0xFD:
        return first, offset + 1
    width, fmt = {0xFD: (2, "<H"), 0xFE: (4, "<I"), 0xFF: (8, "<Q")}[first]
    if offset + 1 + width > len(data):
        raise InvalidPsbtFormat("Unexpected end of PSBT data.")
    return struct.unpack_from(fmt, data, offset + 1)[0], offset + 1 + width


def _encode_varint(n: int) -> bytes:
    if n < 0xFD:
        return bytes([n])
    if n <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", n)
    if n <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", n)
    return b"\xff" + struct.pack("<Q", n)


def _read_bytes(data: bytes, offset: int) -> tuple[bytes, int]:
    length, offset = _decode_varint(data, offset)
    end = offset + length
    if end > len(data):
        raise InvalidPsbtFormat("Unexpected end of PSBT data.")
    return data[offset:end], end


def _read_map(data: bytes, offset: int, where: str) -> tuple[dict[bytes, bytes], int]:
    entries: dict[bytes, bytes] = {}
    while True:
        key, offset = _read_bytes(data, offset)
        if not key:
            return entries, offset
        if key in entries:
            raise InvalidPsbtFormat(f"Duplicate key 0x{key.hex()} in {where} map.")
        value, offset = _read_bytes(data, offset)
        entries[key] = value


def _write_map(entries: Iterable[tuple[bytes, bytes]]) -> bytes:
    out = bytearray()
    for key, value in entries:
        out += _encode_varint(len(key)) + key + _encode_varint(len(value)) + value
    out += b"\x00"
    return bytes(out)


def serialize_witness_stack(items: list[bytes]) -> bytes:
    out = bytearray(_encode_varint(len(items)))
    for item in items:
        out += _encode_varint(len(item)) + item
    return bytes(out)


def deserialize_witness_stack(data: bytes) -> list[bytes]:
    count, offset = _decode_varint(data, 0)
    items = []
    for _ in range(count):
        item, offset = _read_bytes(data, offset)
        items.append(item)
    if offset != len(data):
        raise InvalidPsbtFormat("Trailing bytes after final script witness.")
    return items


def _single_byte_key(key: bytes, where: str) -> None:
    if len(key) != 1:
        raise InvalidPsbtFormat(f"{where} key must be exactly one byte, got {len(key)}.")


def _pubkey_key(key: bytes, where: str) -> bytes:
    pubkey = key[1:]
    if len(pubkey) not in (33, 65):
        raise InvalidPsbtFormat(f"{where} key carries a {len(pubkey)}-byte public key.")
    return pubkey


def _unsigned_tx_bytes(tx: CTransaction | CMutableTransaction) -> bytes:
    """Legacy (non-witness) serialization, as BIP174 stores the unsigned tx."""
    return CTransaction(tx.vin, tx.vout, tx.nLockTime, tx.nVersion).serialize()


# ---- Maps ----


@dataclass
class PsbtInput:
    non_witness_utxo: bytes | None = None
    witness_utxo: CTxOut | None = None
    partial_sigs: dict[bytes, bytes] = field(default_factory=dict)  # pubkey -> DER sig + hashtype
    sighash_type: int | None = None
    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    bip32_derivations: dict[bytes, bytes] = field(default_factory=dict)
    final_script_sig: bytes | None = None
    final_script_witness: list[bytes] | None = None
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    @property
    def is_finalized(self) -> bool:
        return self.final_script_witness is not None or self.final_script_sig is not None

    @classmethod
    def from_map(cls, entries: dict[bytes, bytes], index: int) -> PsbtInput:
        where = f"input {index}"
        inp = cls()
        for key, value in entries.items():
            key_type = key[0]
            if key_type == PSBT_IN_NON_WITNESS_UTXO:
                _single_byte_key(key, where)
                inp.non_witness_utxo = value
            elif key_type == PSBT_IN_WITNESS_UTXO:
                _single_byte_key(key, where)
                try:
                    inp.witness_utxo = CTxOut.deserialize(value)
                except (SerializationError, ValueError, struct.error) as exc:
                    raise InvalidPsbtFormat(f"Malformed witness UTXO in {where}: {exc}") from exc
            elif key_type == PSBT_IN_PARTIAL_SIG:
                inp.partial_sigs[_pubkey_key(key, where)] = value
            elif key_type == PSBT_IN_SIGHASH_TYPE:
                _single_byte_key(key, where)
                if len(value) != 4:
                    raise InvalidPsbtFormat(f"Sighash type in {where} must be 4 bytes.")
                inp.sighash_type = struct.unpack("<I", value)[0]
            elif key_type == PSBT_IN_REDEEM_SCRIPT:
                _single_byte_key(key, where)
                inp.redeem_script = value
            elif key_type == PSBT_IN_WITNESS_SCRIPT:
                _single_byte_key(key, where)
                inp.witness_script = value
            elif key_type == PSBT_IN_BIP32_DERIVATION:
                inp.bip32_derivations[_pubkey_key(key, where)] = value
            elif key_type == PSBT_IN_FINAL_SCRIPTSIG:
                _single_byte_key(key, where)
                inp.final_script_sig = value
            elif key_type == PSBT_IN_FINAL_SCRIPTWITNESS:
                _single_byte_key(key, where)
                inp.final_script_witness = deserialize_witness_stack(value)
            else:
                inp.unknown[key] = value
        return inp

    def to_map(self) -> dict[bytes, bytes]:
        entries: dict[bytes, bytes] = {}
        if self.non_witness_utxo is not None:
            entries[bytes([PSBT_IN_NON_WITNESS_UTXO])] = self.non_witness_utxo
        if self.witness_utxo is not None:
            entries[bytes([PSBT_IN_WITNESS_UTXO])] = self.witness_utxo.serialize()
        for pubkey, sig in self.partial_sigs.items():
            entries[bytes([PSBT_IN_PARTIAL_SIG]) + pubkey] = sig
        if self.sighash_type is not None:
            entries[bytes([PSBT_IN_SIGHASH_TYPE])] = struct.pack("<I", self.sighash_type)
        if self.redeem_script is not None:
            entries[bytes([PSBT_IN_REDEEM_SCRIPT])] = self.redeem_script
        if self.witness_script is not None:
            entries[bytes([PSBT_IN_WITNESS_SCRIPT])] = self.witness_script
        for pubkey, origin in self.bip32_derivations.items():
            entries[bytes([PSBT_IN_BIP32_DERIVATION]) + pubkey] = origin
        if self.final_script_sig is not None:
            entries[bytes([PSBT_IN_FINAL_SCRIPTSIG])] = self.final_script_sig
        if self.final_script_witness is not None:
            entries[bytes([PSBT_IN_FINAL_SCRIPTWITNESS])] = serialize_witness_stack(
                self.final_script_witness
            )
        entries.update(self.unknown)
        return entries


@dataclass
class PsbtOutput:
    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    bip32_derivations: dict[bytes, bytes] = field(default_factory=dict)
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    @classmethod
    def from_map(cls, entries: dict[bytes, bytes], index: int) -> PsbtOutput:
        where = f"output {index}"
        out = cls()
        for key, value in entries.items():
            key_type = key[0]
            if key_type == PSBT_OUT_REDEEM_SCRIPT:
                _single_byte_key(key, where)
                out.redeem_script = value
            elif key_type == PSBT_OUT_WITNESS_SCRIPT:
                _single_byte_key(key, where)
                out.witness_script = value
            elif key_type == PSBT_OUT_BIP32_DERIVATION:
                out.bip32_derivations[_pubkey_key(key, where)] = value
            else:
                out.unknown[key] = value
        return out

    def to_map(self) -> dict[bytes, bytes]:
        entries: dict[bytes, bytes] = {}
        if self.redeem_script is not None:
            entries[bytes([PSBT_OUT_REDEEM_SCRIPT])] = self.redeem_script
        if self.witness_script is not None:
            entries[bytes([PSBT_OUT_WITNESS_SCRIPT])] = self.witness_script
        for pubkey, origin in self.bip32_derivations.items():
            entries[bytes([PSBT_OUT_BIP32_DERIVATION]) + pubkey] = origin
        entries.update(self.unknown)
        return entries


# ---- PSBT ----


@dataclass
class Psbt:
    tx: CMutableTransaction
    inputs: list[PsbtInput]
    outputs: list[PsbtOutput]
    version: int | None = None
    xpubs: dict[bytes, bytes] = field(default_factory=dict)
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    @classmethod
    def from_transaction(cls, tx: CTransaction | CMutableTransaction) -> Psbt:
        """Wrap an unsigned transaction with empty input and output maps."""
        return cls(
            tx=CMutableTransaction.from_tx(tx),
            inputs=[PsbtInput() for _ in tx.vin],
            outputs=[PsbtOutput() for _ in tx.vout],
        )

    @classmethod
    def parse(cls, raw: bytes) -> Psbt:
        if raw[:5] != PSBT_MAGIC:
            raise InvalidPsbtFormat("Not a valid PSBT (missing magic bytes 70736274ff).")

        global_map, offset = _read_map(raw, 5, "global")

        tx_key = bytes([PSBT_GLOBAL_UNSIGNED_TX])
        if tx_key not in global_map:
            raise InvalidPsbtFormat("PSBT is missing the unsigned transaction.")

        try:
            tx = CTransaction.deserialize(global_map[tx_key])
        except (SerializationError, ValueError, struct.error) as exc:
            raise InvalidPsbtFormat(f"Malformed unsigned transaction: {exc}") from exc
        if tx.has_witness() or any(len(txin.scriptSig) for txin in tx.vin):
            raise InvalidPsbtFormat("Unsigned transaction must not carry scriptSigs or witnesses.")
        if not tx.vin:
            raise InvalidPsbtFormat("PSBT has no inputs.")

        version = None
        xpubs: dict[bytes, bytes] = {}
        unknown: dict[bytes, bytes] = {}
        for key, value in global_map.items():
            if key == tx_key:
                continue
            if key[0] == PSBT_GLOBAL_VERSION:
                _single_byte_key(key, "global")
                if len(value) != 4:
                    raise InvalidPsbtFormat("PSBT version field must be 4 bytes.")
                version = struct.unpack("<I", value)[0]
                if version != 0:
                    raise InvalidPsbtFormat(f"Unsupported PSBT version {version}.")
            elif key[0] == PSBT_GLOBAL_XPUB:
                xpubs[key] = value
            else:
                unknown[key] = value

        inputs = []
        for i in range(len(tx.vin)):
            entries, offset = _read_map(raw, offset, f"input {i}")
            inputs.append(PsbtInput.from_map(entries, i))

        outputs = []
        for i in range(len(tx.vout)):
            entries, offset = _read_map(raw, offset, f"output {i}")
            outputs.append(PsbtOutput.from_map(entries, i))

        if offset != len(raw):
            raise InvalidPsbtFormat(f"{len(raw) - offset} trailing bytes after PSBT maps.")

        return cls(
            tx=CMutableTransaction.from_tx(tx),
            inputs=inputs,
            outputs=outputs,
            version=version,
            xpubs=xpubs,
            unknown=unknown,
        )

    @classmethod
    def from_string(cls, text: str) -> Psbt:
        return cls.parse(detect_and_parse_psbt(text))

    def global_map(self) -> dict[bytes, bytes]:
        entries = {bytes([PSBT_GLOBAL_UNSIGNED_TX]): _unsigned_tx_bytes(self.tx)}
        entries.update(self.xpubs)
        if self.version is not None:
            entries[bytes([PSBT_GLOBAL_VERSION])] = struct.pack("<I", self.version)
        entries.update(self.unknown)
        return entries

    def serialize(self) -> bytes:
        out = bytearray(PSBT_MAGIC)
        out += _write_map(self.global_map().items())
        for inp in self.inputs:
            out += _write_map(inp.to_map().items())
        for outp in self.outputs:
            out += _write_map(outp.to_map().items())
        return bytes(out)

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode("ascii")

    def to_hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        return b2lx(CTransaction.from_tx(self.tx).GetTxid())

    @property
    def signature_count(self) -> int:
        return sum(len(inp.partial_sigs) for inp in self.inputs)


def detect_and_parse_psbt(psbt_input: str) -> bytes:
    """Detect format (hex or base64) and return the raw PSBT bytes."""
    if not isinstance(psbt_input, str):
        raise InvalidPsbtFormat("PSBT must be a base64 or hex string.")
    psbt_input = psbt_input.strip()
    # PSBT magic bytes: 70736274ff (hex) = "cHNidP" (base64 prefix)
    if psbt_input.lower().startswith("70736274"):
        try:
            return bytes.fromhex(psbt_input)
        except ValueError as exc:
            raise InvalidPsbtFormat(f"PSBT hex is malformed: {exc}") from exc
    try:
        raw = base64.b64decode(psbt_input, validate=True)
    except (binascii.Error, ValueError):
        raw = b""
    if raw[:5] == PSBT_MAGIC:
        return raw
    raise InvalidPsbtFormat(
        "Invalid PSBT format. Provide hex or base64 encoded PSBT "
        "starting with magic bytes 70736274ff."
    )


# ---- Validation ----


class PsbtState(str, Enum):
    UNSIGNED = "unsigned"
    PARTIALLY_SIGNED = "partially_signed"
    FINALIZED = "finalized"
    # recorded by the chain layer once accepted by a node
    BROADCAST = "broadcast"


def psbt_state(psbt: Psbt) -> PsbtState:
    if all(inp.is_finalized for inp in psbt.inputs):
        return PsbtState.FINALIZED
    if any(inp.partial_sigs or inp.is_finalized for inp in psbt.inputs):
        return PsbtState.PARTIALLY_SIGNED
    return PsbtState.UNSIGNED


@dataclass
class PsbtValidation:
    valid: bool
    input_count: int = 0
    output_count: int = 0
    has_witness_scripts: bool = False
    signature_count: int = 0
    state: PsbtState | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "input_count": self.input_count,
            "output_count": self.output_count,
            "has_witness_scripts": self.has_witness_scripts,
            "signature_count": self.signature_count,
            "state": self.state.value if self.state else None,
            "error": self.error,
        }


def validate_psbt(psbt_text: str, witness_script: bytes | str | None = None) -> PsbtValidation:
    """
    Structural check of an externally (re-)imported PSBT.

    Reports counts and whether every input carries a witness script (matching
    *witness_script* when one is given). Signatures are not verified.
    """
    try:
        psbt = Psbt.from_string(psbt_text)
    except InvalidPsbtFormat as exc:
        return PsbtValidation(valid=False, error=str(exc))

    if isinstance(witness_script, str):
        try:
            witness_script = bytes.fromhex(witness_script.strip())
        except ValueError:
            return PsbtValidation(valid=False, error="Witness script is not valid hex.")

    result = PsbtValidation(
        valid=True,
        input_count=len(psbt.inputs),
        output_count=len(psbt.outputs),
        signature_count=psbt.signature_count,
        state=psbt_state(psbt),
    )

    missing = [
        i for i, inp in enumerate(psbt.inputs)
        if inp.witness_script is None and inp.final_script_witness is None
    ]
    result.has_witness_scripts = not missing

    if not psbt.outputs:
        result.valid = False
        result.error = "PSBT has no outputs."
    elif missing:
        result.valid = False
        result.error = f"Input {missing[0]} is missing its witness script."
    elif witness_script is not None:
        for i, inp in enumerate(psbt.inputs):
            actual = inp.witness_script
            if actual is None and inp.final_script_witness:
                actual = inp.final_script_witness[-1]
            if actual != witness_script:
                result.valid = False
                result.error = f"Input {i} witness script does not match the vault."
                break
    return result


def require_valid_psbt(psbt_text: str, witness_script: bytes | str | None = None) -> Psbt:
    """Like validate_psbt() but raises InvalidPsbtFormat and returns the parsed PSBT."""
    result = validate_psbt(psbt_text, witness_script)
    if not result.valid:
        raise InvalidPsbtFormat(result.error or "Invalid PSBT")
    return Psbt.from_string(psbt_text)


# ---- Combiner ----


def combine_psbts(psbt_texts: list[str]) -> Psbt:
    """
    BIP174 combiner: merge the key-value maps of PSBTs over the same unsigned
    transaction (e.g. one per multisig co-signer).
    """
    if not psbt_texts:
        raise InvalidPsbtFormat("No PSBTs provided.")
    psbts = [Psbt.from_string(text) for text in psbt_texts]
    base = psbts[0]
    base_tx = _unsigned_tx_bytes(base.tx)

    for other in psbts[1:]:
        if _unsigned_tx_bytes(other.tx) != base_tx:
            raise InvalidPsbtFormat("Cannot combine PSBTs for different transactions.")

    global_map: dict[bytes, bytes] = {}
    input_maps: list[dict[bytes, bytes]] = [{} for _ in base.inputs]
    output_maps: list[dict[bytes, bytes]] = [{} for _ in base.outputs]
    for psbt in psbts:
        for key, value in psbt.global_map().items():
            global_map.setdefault(key, value)
        for merged, inp in zip(input_maps, psbt.inputs):
            for key, value in inp.to_map().items():
                merged.setdefault(key, value)
        for merged, outp in zip(output_maps, psbt.outputs):
            for key, value in outp.to_map().items():
                merged.setdefault(key, value)

    raw = (
        PSBT_MAGIC
        + _write_map(global_map.items())
        + b"".join(_write_map(m.items()) for m in input_maps)
        + b"".join(_write_map(m.items()) for m in output_maps)
    )
    combined = Psbt.parse(raw)
    log.info(
        "Combined %d PSBTs (%d signatures total)", len(psbts), combined.signature_count
    )
    return combined
