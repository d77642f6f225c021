import base64
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

from conftest import sign_psbt  # noqa: E402
from vault_address import p2wpkh_address  # noqa: E402
from vault_builder import SpendIntent, Utxo, build_spend_psbt  # noqa: E402
from vault_errors import InvalidPsbtFormat  # noqa: E402
from vault_generator import create_vault  # noqa: E402
from vault_psbt import (  # noqa: E402
    PSBT_MAGIC,
    Psbt,
    PsbtState,
    _unsigned_tx_bytes,
    _write_map,
    combine_psbts,
    detect_and_parse_psbt,
    deserialize_witness_stack,
    psbt_state,
    require_valid_psbt,
    serialize_witness_stack,
    validate_psbt,
)
from vault_scripts import MultisigDecayProfile  # noqa: E402


@pytest.fixture
def multisig_vault(pubkeys):
    profile = MultisigDecayProfile(
        owner=pubkeys["owner"],
        heirs=(pubkeys["heir"], pubkeys["heir2"]),
        initial_threshold=2,
        initial_total=3,
        decayed_threshold=1,
        decayed_total=2,
        decay_height=850000,
    )
    return create_vault(profile, "testnet")


@pytest.fixture
def unsigned(multisig_vault, pubkeys):
    dest = p2wpkh_address(pubkeys["heir3"], "testnet")
    result = build_spend_psbt(
        multisig_vault,
        SpendIntent(dest, "multisig_before_decay", fee_rate=1),
        [Utxo("11" * 32, 0, 80_000), Utxo("22" * 32, 1, 20_000)],
    )
    return result.psbt_base64


def test_round_trip_base64_and_hex(unsigned):
    psbt = Psbt.from_string(unsigned)
    assert psbt.to_base64() == unsigned
    assert Psbt.from_string(psbt.to_hex()).to_base64() == unsigned


def test_unknown_keys_survive_round_trip(unsigned):
    psbt = Psbt.from_string(unsigned)
    psbt.unknown[b"\xfc\x05vault"] = b"global"
    psbt.inputs[1].unknown[b"\xfc\x01"] = b"in"
    psbt.outputs[0].unknown[b"\xfc\x02"] = b"out"
    again = Psbt.from_string(psbt.to_base64())
    assert again.unknown == {b"\xfc\x05vault": b"global"}
    assert again.inputs[1].unknown == {b"\xfc\x01": b"in"}
    assert again.outputs[0].unknown == {b"\xfc\x02": b"out"}
    assert again.serialize() == psbt.serialize()


def test_duplicate_key_rejected(unsigned):
    tx_bytes = _unsigned_tx_bytes(Psbt.from_string(unsigned).tx)
    raw = PSBT_MAGIC + _write_map([(b"\x00", tx_bytes), (b"\x00", tx_bytes)])
    with pytest.raises(InvalidPsbtFormat, match="Duplicate key"):
        Psbt.parse(raw)


def test_missing_magic_rejected():
    with pytest.raises(InvalidPsbtFormat):
        Psbt.parse(b"nope\xff\x00")
    with pytest.raises(InvalidPsbtFormat):
        detect_and_parse_psbt(base64.b64encode(b"hello world").decode())


def test_truncated_psbt_rejected(unsigned):
    raw = base64.b64decode(unsigned)
    with pytest.raises(InvalidPsbtFormat):
        Psbt.parse(raw[:-3])


def test_trailing_bytes_rejected(unsigned):
    raw = base64.b64decode(unsigned)
    with pytest.raises(InvalidPsbtFormat):
        Psbt.parse(raw + b"\x00")


def test_witness_stack_codec():
    items = [b"", b"\x01", b"\xab" * 300]
    assert deserialize_witness_stack(serialize_witness_stack(items)) == items


def test_state_transitions(unsigned, keys):
    assert psbt_state(Psbt.from_string(unsigned)) is PsbtState.UNSIGNED
    signed = sign_psbt(unsigned, keys["owner"])
    assert psbt_state(Psbt.from_string(signed)) is PsbtState.PARTIALLY_SIGNED


def test_validate_psbt_report(unsigned, multisig_vault):
    report = validate_psbt(unsigned, multisig_vault.witness_script.hex)
    assert report.valid
    assert report.input_count == 2
    assert report.output_count == 1
    assert report.has_witness_scripts
    assert report.signature_count == 0
    assert report.to_dict()["state"] == "unsigned"


def test_validate_psbt_garbage():
    report = validate_psbt("not a psbt")
    assert not report.valid
    assert report.error


def test_validate_psbt_wrong_vault(unsigned):
    report = validate_psbt(unsigned, b"\x51")
    assert not report.valid
    assert "does not match" in report.error
    with pytest.raises(InvalidPsbtFormat):
        require_valid_psbt(unsigned, b"\x51")


def test_validate_psbt_non_hex_witness_script(unsigned):
    report = validate_psbt(unsigned, "OP_IF zz")
    assert not report.valid
    assert "not valid hex" in report.error
    with pytest.raises(InvalidPsbtFormat):
        require_valid_psbt(unsigned, "zz")


def test_validate_psbt_missing_witness_script(unsigned):
    psbt = Psbt.from_string(unsigned)
    psbt.inputs[0].witness_script = None
    report = validate_psbt(psbt.to_base64())
    assert not report.valid
    assert not report.has_witness_scripts


def test_combine_collects_signatures(unsigned, keys):
    a = sign_psbt(unsigned, keys["owner"])
    b = sign_psbt(unsigned, keys["heir"])
    combined = combine_psbts([a, b])
    assert combined.signature_count == 4
    assert all(len(inp.partial_sigs) == 2 for inp in combined.inputs)
    assert combined.txid == Psbt.from_string(unsigned).txid


def test_combine_rejects_different_transactions(unsigned):
    other = Psbt.from_string(unsigned)
    other.tx.vout[0].nValue -= 1
    with pytest.raises(InvalidPsbtFormat, match="different transactions"):
        combine_psbts([unsigned, other.to_base64()])


def test_combine_requires_input():
    with pytest.raises(InvalidPsbtFormat):
        combine_psbts([])
