"""
Segwit v0 script evaluator for vault spends.

Verifies a finalized P2WSH input the way a node's mempool would before
relaying it: witness program hash, script execution with the standard
verification flags (MINIMALDATA, MINIMALIF, NULLDUMMY, NULLFAIL, LOW_S,
STRICTENC, WITNESS_PUBKEYTYPE, CLEANSTACK) and the BIP65/BIP112 timelock
opcodes. BIP143 sighashes come from python-bitcoinlib and ECDSA checks from
libsecp256k1 via coincurve.

Only the opcode subset vault scripts can contain is implemented. Any other
opcode fails the script, executed or not.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Sequence, Union

from bitcoin.core import CTransaction, CTxOut, b2lx
from bitcoin.core.script import (
    OP_0NOTEQUAL,
    OP_1,
    OP_1NEGATE,
    OP_16,
    OP_ADD,
    OP_CHECKMULTISIG,
    OP_CHECKMULTISIGVERIFY,
    OP_CHECKSIG,
    OP_CHECKSIGVERIFY,
    OP_DROP,
    OP_DUP,
    OP_ELSE,
    OP_ENDIF,
    OP_EQUAL,
    OP_EQUALVERIFY,
    OP_IF,
    OP_NOP,
    OP_NOTIF,
    OP_PUSHDATA1,
    OP_PUSHDATA2,
    OP_PUSHDATA4,
    OP_SWAP,
    OP_VERIFY,
    SIGHASH_ANYONECANPAY,
    SIGHASH_SINGLE,
    SIGVERSION_WITNESS_V0,
    CScript,
    CScriptInvalidError,
    SignatureHash,
)
from bitcoin.core.serialize import SerializationError
from coincurve import PublicKey

from vault_errors import ScriptVerificationError
from vault_scripts import (
    LOCKTIME_THRESHOLD,
    OP_CHECKLOCKTIMEVERIFY,
    OP_CHECKSEQUENCEVERIFY,
    SEQUENCE_FINAL,
    SEQUENCE_LOCKTIME_MASK,
    SEQUENCE_LOCKTIME_TYPE_FLAG,
)

log = logging.getLogger("vault.interpreter")

MAX_SCRIPT_ELEMENT_SIZE = 520
MAX_STACK_SIZE = 1000
MAX_OPS_PER_SCRIPT = 201
MAX_PUBKEYS_PER_MULTISIG = 20
MAX_STANDARD_P2WSH_SCRIPT_SIZE = 3600
SEQUENCE_LOCKTIME_DISABLE_FLAG = 1 << 31

SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
SECP256K1_HALF_ORDER = SECP256K1_ORDER // 2


# ---- Script numbers ----


def encode_num(n: int) -> bytes:
    """Minimal CScriptNum encoding (sign-magnitude, little-endian)."""
    if n == 0:
        return b""
    neg = n < 0
    absval = -n if neg else n
    out = bytearray()
    while absval:
        out.append(absval & 0xFF)
        absval >>= 8
    if out[-1] & 0x80:
        out.append(0x80 if neg else 0x00)
    elif neg:
        out[-1] |= 0x80
    return bytes(out)


def decode_num(data: bytes, max_size: int = 4) -> int:
    """Decode a CScriptNum, rejecting oversized and non-minimal encodings."""
    if len(data) > max_size:
        raise ScriptVerificationError(f"script number overflow ({len(data)} > {max_size} bytes)")
    if not data:
        return 0
    # A trailing 0x00/0x80 is only allowed when it carries the sign bit
    if data[-1] & 0x7F == 0 and (len(data) == 1 or not data[-2] & 0x80):
        raise ScriptVerificationError("non-minimally encoded script number")
    value = int.from_bytes(data, "little")
    if data[-1] & 0x80:
        return -(value & ~(0x80 << (8 * (len(data) - 1))))
    return value


def cast_to_bool(data: bytes) -> bool:
    for i, byte in enumerate(data):
        if byte != 0:
            # negative zero
            return not (i == len(data) - 1 and byte == 0x80)
    return False


# ---- Encoding checks ----


def is_valid_signature_encoding(sig: bytes) -> bool:
    """BIP66 strict DER check; *sig* includes the trailing hashtype byte."""
    if not 9 <= len(sig) <= 73:
        return False
    if sig[0] != 0x30 or sig[1] != len(sig) - 3:
        return False
    len_r = sig[3]
    if 5 + len_r >= len(sig):
        return False
    len_s = sig[5 + len_r]
    if len_r + len_s + 7 != len(sig):
        return False
    if sig[2] != 0x02 or len_r == 0 or sig[4] & 0x80:
        return False
    if len_r > 1 and sig[4] == 0x00 and not sig[5] & 0x80:
        return False
    if sig[len_r + 4] != 0x02 or len_s == 0 or sig[len_r + 6] & 0x80:
        return False
    if len_s > 1 and sig[len_r + 6] == 0x00 and not sig[len_r + 7] & 0x80:
        return False
    return True


def is_low_s(sig: bytes) -> bool:
    len_r = sig[3]
    len_s = sig[5 + len_r]
    s = int.from_bytes(sig[6 + len_r : 6 + len_r + len_s], "big")
    return 0 < s <= SECP256K1_HALF_ORDER


def _check_signature_encoding(sig: bytes) -> None:
    # Empty signatures are a valid way to fail CHECKSIG
    if not sig:
        return
    if not is_valid_signature_encoding(sig):
        raise ScriptVerificationError("signature is not strict DER")
    if not is_low_s(sig):
        raise ScriptVerificationError("signature S value is not low")
    base_type = sig[-1] & ~SIGHASH_ANYONECANPAY
    if not 1 <= base_type <= SIGHASH_SINGLE:
        raise ScriptVerificationError(f"undefined sighash type 0x{sig[-1]:02x}")


def _check_pubkey_encoding(pubkey: bytes) -> None:
    if len(pubkey) != 33 or pubkey[0] not in (0x02, 0x03):
        raise ScriptVerificationError("witness v0 public keys must be compressed")


# ---- Execution ----


@dataclass
class _Context:
    tx: CTransaction
    index: int
    amount: int
    script: CScript


def _verify_signature(sig: bytes, pubkey: bytes, ctx: _Context) -> bool:
    if not sig:
        return False
    sighash = SignatureHash(
        ctx.script, ctx.tx, ctx.index, sig[-1], amount=ctx.amount, sigversion=SIGVERSION_WITNESS_V0
    )
    try:
        return PublicKey(pubkey).verify(sig[:-1], sighash, hasher=None)
    except ValueError:
        return False


def _check_locktime(lock: int, ctx: _Context) -> None:
    tx_lock = ctx.tx.nLockTime
    if (lock < LOCKTIME_THRESHOLD) != (tx_lock < LOCKTIME_THRESHOLD):
        raise ScriptVerificationError("CLTV lock type (height/time) does not match nLockTime")
    if lock > tx_lock:
        raise ScriptVerificationError(f"CLTV requires nLockTime >= {lock}, got {tx_lock}")
    if ctx.tx.vin[ctx.index].nSequence == SEQUENCE_FINAL:
        raise ScriptVerificationError("CLTV input has a final nSequence")


def _check_sequence(sequence: int, ctx: _Context) -> None:
    tx_sequence = ctx.tx.vin[ctx.index].nSequence
    if ctx.tx.nVersion < 2:
        raise ScriptVerificationError("CSV requires transaction version 2 or later")
    if tx_sequence & SEQUENCE_LOCKTIME_DISABLE_FLAG:
        raise ScriptVerificationError("CSV input has relative locktime disabled")
    mask = SEQUENCE_LOCKTIME_TYPE_FLAG | SEQUENCE_LOCKTIME_MASK
    script_masked = sequence & mask
    tx_masked = tx_sequence & mask
    if (script_masked & SEQUENCE_LOCKTIME_TYPE_FLAG) != (tx_masked & SEQUENCE_LOCKTIME_TYPE_FLAG):
        raise ScriptVerificationError("CSV lock type (blocks/time) does not match nSequence")
    if script_masked > tx_masked:
        raise ScriptVerificationError(
            f"CSV requires nSequence >= 0x{script_masked:08x}, got 0x{tx_masked:08x}"
        )


def _is_minimal_push(opcode: int, data: bytes) -> bool:
    if not data:
        return opcode == 0
    if len(data) == 1 and 1 <= data[0] <= 16:
        return False
    if len(data) == 1 and data[0] == 0x81:
        return False
    if len(data) <= 75:
        return opcode == len(data)
    if len(data) <= 255:
        return opcode == OP_PUSHDATA1
    if len(data) <= 65535:
        return opcode == OP_PUSHDATA2
    return True


def _pop(stack: list[bytes], opname: str, n: int = 1) -> list[bytes]:
    if len(stack) < n:
        raise ScriptVerificationError(f"{opname} needs {n} stack item(s), found {len(stack)}")
    items = stack[-n:]
    del stack[-n:]
    return items


def _op_checkmultisig(stack: list[bytes], ctx: _Context, op_count: int) -> tuple[bool, int]:
    """Core-compatible CHECKMULTISIG. Returns (success, updated op count)."""
    if not stack:
        raise ScriptVerificationError("CHECKMULTISIG needs a key count")
    n_keys = decode_num(stack[-1])
    if not 0 <= n_keys <= MAX_PUBKEYS_PER_MULTISIG:
        raise ScriptVerificationError("CHECKMULTISIG key count out of range")
    op_count += n_keys
    if op_count > MAX_OPS_PER_SCRIPT:
        raise ScriptVerificationError("script exceeds the opcode limit")

    if len(stack) < n_keys + 2:
        raise ScriptVerificationError("CHECKMULTISIG is missing keys")
    keys = [stack[-2 - k] for k in range(n_keys)]
    n_sigs = decode_num(stack[-2 - n_keys])
    if not 0 <= n_sigs <= n_keys:
        raise ScriptVerificationError("CHECKMULTISIG signature count out of range")
    # + the dummy element
    needed = n_keys + n_sigs + 3
    if len(stack) < needed:
        raise ScriptVerificationError("CHECKMULTISIG is missing signatures or the dummy element")
    sigs = [stack[-3 - n_keys - s] for s in range(n_sigs)]

    # Signatures must match keys in order; each key is tried once
    success = True
    isig = ikey = 0
    sigs_left, keys_left = n_sigs, n_keys
    while success and sigs_left > 0:
        sig, pubkey = sigs[isig], keys[ikey]
        _check_signature_encoding(sig)
        _check_pubkey_encoding(pubkey)
        if _verify_signature(sig, pubkey, ctx):
            isig += 1
            sigs_left -= 1
        ikey += 1
        keys_left -= 1
        if sigs_left > keys_left:
            success = False

    if not success and any(sigs):
        raise ScriptVerificationError("CHECKMULTISIG failed with non-empty signatures (NULLFAIL)")

    dummy = stack[-needed]
    if dummy != b"":
        raise ScriptVerificationError("CHECKMULTISIG dummy element must be empty (NULLDUMMY)")
    del stack[-needed:]
    return success, op_count


_SUPPORTED = {
    int(op)
    for op in (
        OP_1NEGATE, OP_NOP, OP_IF, OP_NOTIF, OP_ELSE, OP_ENDIF, OP_VERIFY, OP_DROP, OP_DUP,
        OP_SWAP, OP_EQUAL, OP_EQUALVERIFY, OP_ADD, OP_0NOTEQUAL, OP_CHECKSIG, OP_CHECKSIGVERIFY,
        OP_CHECKMULTISIG, OP_CHECKMULTISIGVERIFY, OP_CHECKLOCKTIMEVERIFY, OP_CHECKSEQUENCEVERIFY,
    )
}


def eval_script(stack: list[bytes], script: bytes, ctx: _Context) -> None:
    """Execute *script* on *stack* in place, raising ScriptVerificationError on failure."""
    exec_stack: list[bool] = []
    op_count = 0

    try:
        ops = list(CScript(script).raw_iter())
    except CScriptInvalidError as exc:
        raise ScriptVerificationError(f"malformed script: {exc}") from exc

    for opcode, data, _ in ops:
        executing = all(exec_stack)

        if opcode <= OP_PUSHDATA4:
            if len(data) > MAX_SCRIPT_ELEMENT_SIZE:
                raise ScriptVerificationError("push exceeds the 520-byte element limit")
            if executing:
                if not _is_minimal_push(opcode, data):
                    raise ScriptVerificationError("non-minimal data push")
                stack.append(data)
        elif OP_1 <= opcode <= OP_16 or opcode == OP_1NEGATE:
            if executing:
                stack.append(encode_num(-1 if opcode == OP_1NEGATE else opcode - OP_1 + 1))
        else:
            op_count += 1
            if op_count > MAX_OPS_PER_SCRIPT:
                raise ScriptVerificationError("script exceeds the opcode limit")
            if opcode not in _SUPPORTED:
                raise ScriptVerificationError(f"unsupported opcode 0x{opcode:02x}")

            if opcode in (OP_IF, OP_NOTIF):
                value = False
                if executing:
                    (top,) = _pop(stack, "OP_IF")
                    if top not in (b"", b"\x01"):
                        raise ScriptVerificationError("OP_IF argument must be empty or 0x01 (MINIMALIF)")
                    value = cast_to_bool(top)
                    if opcode == OP_NOTIF:
                        value = not value
                exec_stack.append(value)
            elif opcode == OP_ELSE:
                if not exec_stack:
                    raise ScriptVerificationError("OP_ELSE without OP_IF")
                exec_stack[-1] = not exec_stack[-1]
            elif opcode == OP_ENDIF:
                if not exec_stack:
                    raise ScriptVerificationError("OP_ENDIF without OP_IF")
                exec_stack.pop()
            elif not executing:
                pass
            elif opcode == OP_NOP:
                pass
            elif opcode == OP_VERIFY:
                (top,) = _pop(stack, "OP_VERIFY")
                if not cast_to_bool(top):
                    raise ScriptVerificationError("OP_VERIFY failed")
            elif opcode == OP_DROP:
                _pop(stack, "OP_DROP")
            elif opcode == OP_DUP:
                if not stack:
                    raise ScriptVerificationError("OP_DUP on empty stack")
                stack.append(stack[-1])
            elif opcode == OP_SWAP:
                a, b = _pop(stack, "OP_SWAP", 2)
                stack += [b, a]
            elif opcode in (OP_EQUAL, OP_EQUALVERIFY):
                a, b = _pop(stack, "OP_EQUAL", 2)
                if opcode == OP_EQUALVERIFY:
                    if a != b:
                        raise ScriptVerificationError("OP_EQUALVERIFY failed")
                else:
                    stack.append(b"\x01" if a == b else b"")
            elif opcode == OP_ADD:
                a, b = _pop(stack, "OP_ADD", 2)
                stack.append(encode_num(decode_num(a) + decode_num(b)))
            elif opcode == OP_0NOTEQUAL:
                (a,) = _pop(stack, "OP_0NOTEQUAL")
                stack.append(b"\x01" if decode_num(a) != 0 else b"")
            elif opcode in (OP_CHECKSIG, OP_CHECKSIGVERIFY):
                sig, pubkey = _pop(stack, "OP_CHECKSIG", 2)
                _check_signature_encoding(sig)
                _check_pubkey_encoding(pubkey)
                ok = _verify_signature(sig, pubkey, ctx)
                if not ok and sig:
                    raise ScriptVerificationError("signature check failed with a non-empty signature (NULLFAIL)")
                if opcode == OP_CHECKSIGVERIFY:
                    if not ok:
                        raise ScriptVerificationError("OP_CHECKSIGVERIFY failed")
                else:
                    stack.append(b"\x01" if ok else b"")
            elif opcode in (OP_CHECKMULTISIG, OP_CHECKMULTISIGVERIFY):
                ok, op_count = _op_checkmultisig(stack, ctx, op_count)
                if opcode == OP_CHECKMULTISIGVERIFY:
                    if not ok:
                        raise ScriptVerificationError("OP_CHECKMULTISIGVERIFY failed")
                else:
                    stack.append(b"\x01" if ok else b"")
            elif opcode == OP_CHECKLOCKTIMEVERIFY:
                if not stack:
                    raise ScriptVerificationError("OP_CHECKLOCKTIMEVERIFY on empty stack")
                lock = decode_num(stack[-1], max_size=5)
                if lock < 0:
                    raise ScriptVerificationError("negative locktime")
                _check_locktime(lock, ctx)
            elif opcode == OP_CHECKSEQUENCEVERIFY:
                if not stack:
                    raise ScriptVerificationError("OP_CHECKSEQUENCEVERIFY on empty stack")
                sequence = decode_num(stack[-1], max_size=5)
                if sequence < 0:
                    raise ScriptVerificationError("negative sequence")
                if not sequence & SEQUENCE_LOCKTIME_DISABLE_FLAG:
                    _check_sequence(sequence, ctx)

        if len(stack) > MAX_STACK_SIZE:
            raise ScriptVerificationError("stack size limit exceeded")

    if exec_stack:
        raise ScriptVerificationError("unbalanced conditional")


# ---- Public API ----


def verify_input(
    tx: CTransaction,
    index: int,
    amount: int,
    script_pubkey: bytes,
    witness: Sequence[bytes],
) -> None:
    """
    Verify input *index* of *tx* spending a P2WSH output of *amount* sats.

    *witness* is the full witness stack, witness script last.
    """
    script_pubkey = bytes(script_pubkey)
    if len(script_pubkey) != 34 or script_pubkey[:2] != b"\x00\x20":
        raise ScriptVerificationError(f"input {index} does not spend a P2WSH output")
    if not witness:
        raise ScriptVerificationError(f"input {index} has an empty witness")

    witness_script = bytes(witness[-1])
    if hashlib.sha256(witness_script).digest() != script_pubkey[2:]:
        raise ScriptVerificationError(f"input {index} witness script does not match the witness program")
    if len(witness_script) > MAX_STANDARD_P2WSH_SCRIPT_SIZE:
        raise ScriptVerificationError("witness script exceeds the standard size limit")

    stack = [bytes(item) for item in witness[:-1]]
    for item in stack:
        if len(item) > MAX_SCRIPT_ELEMENT_SIZE:
            raise ScriptVerificationError("witness item exceeds the 520-byte element limit")

    ctx = _Context(tx=tx, index=index, amount=amount, script=CScript(witness_script))
    try:
        eval_script(stack, witness_script, ctx)
    except ScriptVerificationError as exc:
        raise ScriptVerificationError(f"input {index}: {exc}") from exc

    if len(stack) != 1:
        raise ScriptVerificationError(f"input {index}: stack not clean ({len(stack)} items left)")
    if not cast_to_bool(stack[0]):
        raise ScriptVerificationError(f"input {index}: script evaluated to false")


Prevout = Union[CTxOut, tuple[int, bytes]]


def _prevout_parts(prevout: Prevout) -> tuple[int, bytes]:
    if isinstance(prevout, CTxOut):
        return prevout.nValue, bytes(prevout.scriptPubKey)
    amount, spk = prevout
    return amount, bytes(spk)


def verify_transaction(tx_hex: str | bytes | CTransaction, prevouts: Sequence[Prevout]) -> str:
    """Verify every input of a signed transaction. Returns its txid."""
    if isinstance(tx_hex, CTransaction):
        tx = tx_hex
    else:
        raw = bytes.fromhex(tx_hex) if isinstance(tx_hex, str) else tx_hex
        try:
            tx = CTransaction.deserialize(raw)
        except (SerializationError, ValueError) as exc:
            raise ScriptVerificationError(f"transaction does not deserialize: {exc}") from exc

    if len(prevouts) != len(tx.vin):
        raise ScriptVerificationError(
            f"{len(prevouts)} prevouts given for {len(tx.vin)} inputs"
        )

    witnesses = tx.wit.vtxinwit
    for i, prevout in enumerate(prevouts):
        amount, spk = _prevout_parts(prevout)
        stack = list(witnesses[i].scriptWitness.stack) if i < len(witnesses) else []
        verify_input(tx, i, amount, spk, stack)

    txid = b2lx(tx.GetTxid())
    log.debug("Verified %d input(s) of %s", len(tx.vin), txid)
    return txid


@dataclass
class ChainContext:
    """Chain state a transaction is checked against for inclusion in the next block."""

    tip_height: int
    tip_median_time: int | None = None
    # creation heights of the spent UTXOs, None for unconfirmed
    utxo_heights: list[int | None] = field(default_factory=list)


def check_final(tx: CTransaction, chain: ChainContext) -> None:
    """
    Raise ScriptVerificationError unless *tx* could be mined in the block
    after ``chain.tip_height``: nLockTime finality and, when UTXO heights
    are given, BIP68 block-based relative locks. Time-based relative locks
    need per-block median times and are skipped with a warning.
    """
    next_height = chain.tip_height + 1
    lock = tx.nLockTime
    if lock and not all(txin.nSequence == SEQUENCE_FINAL for txin in tx.vin):
        if lock < LOCKTIME_THRESHOLD:
            if lock >= next_height:
                raise ScriptVerificationError(
                    f"transaction is locked until block {lock} (next block is {next_height})"
                )
        elif chain.tip_median_time is None or lock >= chain.tip_median_time:
            raise ScriptVerificationError(f"transaction is locked until UNIX time {lock}")

    if tx.nVersion < 2 or not chain.utxo_heights:
        return
    for i, txin in enumerate(tx.vin):
        seq = txin.nSequence
        if seq & SEQUENCE_LOCKTIME_DISABLE_FLAG:
            continue
        if seq & SEQUENCE_LOCKTIME_TYPE_FLAG:
            log.warning("Input %d uses a time-based relative lock; not checked", i)
            continue
        height = chain.utxo_heights[i] if i < len(chain.utxo_heights) else None
        coin_height = next_height if height is None else height
        required = coin_height + (seq & SEQUENCE_LOCKTIME_MASK)
        if required > next_height:
            raise ScriptVerificationError(
                f"input {i} is relative-locked until block {required} (next block is {next_height})"
            )
