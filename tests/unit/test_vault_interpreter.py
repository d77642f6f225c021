import hashlib
import sys
from pathlib import Path

import pytest
from bitcoin.core import CTransaction, CTxIn, CTxOut

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

from conftest import make_key  # noqa: E402
from vault_errors import ScriptVerificationError  # noqa: E402
from vault_interpreter import (  # noqa: E402
    cast_to_bool,
    decode_num,
    encode_num,
    is_low_s,
    is_valid_signature_encoding,
    verify_input,
    verify_transaction,
)


def _p2wsh(script):
    return b"\x00\x20" + hashlib.sha256(script).digest()


def _tx():
    return CTransaction([CTxIn()], [CTxOut(1000, b"\x51")], nVersion=2)


@pytest.mark.parametrize(
    "value, encoded",
    [
        (0, ""),
        (1, "01"),
        (-1, "81"),
        (127, "7f"),
        (128, "8000"),
        (-128, "8080"),
        (255, "ff00"),
        (144, "9000"),
        (900000, "a0bb0d"),
    ],
)
def test_script_numbers(value, encoded):
    assert encode_num(value).hex() == encoded
    assert decode_num(bytes.fromhex(encoded)) == value


@pytest.mark.parametrize("data", ["00", "80", "0100", "ff0000"])
def test_non_minimal_numbers_rejected(data):
    with pytest.raises(ScriptVerificationError):
        decode_num(bytes.fromhex(data))


def test_number_size_limit():
    with pytest.raises(ScriptVerificationError):
        decode_num(b"\x01" * 5)
    assert decode_num(b"\x01" * 5, max_size=5) == int.from_bytes(b"\x01" * 5, "little")


def test_cast_to_bool():
    assert not cast_to_bool(b"")
    assert not cast_to_bool(b"\x00\x00")
    assert not cast_to_bool(b"\x00\x80")
    assert cast_to_bool(b"\x01")
    assert cast_to_bool(b"\x80\x00")


def test_signature_encoding_checks():
    priv = make_key("encoding")
    sig = priv.sign(hashlib.sha256(b"msg").digest(), hasher=None) + b"\x01"
    assert is_valid_signature_encoding(sig)
    assert is_low_s(sig)
    assert not is_valid_signature_encoding(sig[:-2] + b"\x01")
    assert not is_valid_signature_encoding(b"\x30\x00\x01")


def test_trivially_true_script():
    script = b"\x51"
    verify_input(_tx(), 0, 1000, _p2wsh(script), [script])


def test_stack_must_be_clean():
    script = b"\x51"
    with pytest.raises(ScriptVerificationError, match="not clean"):
        verify_input(_tx(), 0, 1000, _p2wsh(script), [b"\x01", script])


def test_false_result():
    # OP_0
    script = b"\x00"
    with pytest.raises(ScriptVerificationError, match="false"):
        verify_input(_tx(), 0, 1000, _p2wsh(script), [script])


def test_minimal_if():
    script = bytes.fromhex("6351675168")  # OP_IF 1 OP_ELSE 1 OP_ENDIF
    verify_input(_tx(), 0, 1000, _p2wsh(script), [b"\x01", script])
    verify_input(_tx(), 0, 1000, _p2wsh(script), [b"", script])
    with pytest.raises(ScriptVerificationError, match="MINIMALIF"):
        verify_input(_tx(), 0, 1000, _p2wsh(script), [b"\x02", script])


def test_unbalanced_conditional():
    script = bytes.fromhex("6351")
    with pytest.raises(ScriptVerificationError, match="unbalanced"):
        verify_input(_tx(), 0, 1000, _p2wsh(script), [b"\x01", script])


def test_unsupported_opcode():
    script = bytes.fromhex("a9")  # OP_HASH160
    with pytest.raises(ScriptVerificationError, match="unsupported"):
        verify_input(_tx(), 0, 1000, _p2wsh(script), [script])


def test_witness_program_mismatch():
    with pytest.raises(ScriptVerificationError, match="witness program"):
        verify_input(_tx(), 0, 1000, _p2wsh(b"\x52"), [b"\x51"])


def test_non_p2wsh_prevout():
    with pytest.raises(ScriptVerificationError, match="P2WSH"):
        verify_input(_tx(), 0, 1000, b"\x00\x14" + b"\x00" * 20, [b"\x51"])


def test_prevout_count_must_match():
    with pytest.raises(ScriptVerificationError):
        verify_transaction(_tx(), [])


def test_undecodable_transaction():
    with pytest.raises(ScriptVerificationError):
        verify_transaction("00", [])
