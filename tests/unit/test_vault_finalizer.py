import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

from conftest import sign_psbt  # noqa: E402
from vault_address import p2wpkh_address  # noqa: E402
from vault_builder import SpendIntent, Utxo, build_spend_psbt  # noqa: E402
from vault_errors import (  # noqa: E402
    IncompletePsbt,
    InvalidPsbtFormat,
    ScriptVerificationError,
    SpendPathMismatch,
)
from vault_finalizer import (  # noqa: E402
    _transaction_with_witness,
    extract_transaction,
    finalize_psbt,
)
from vault_generator import create_vault  # noqa: E402
from vault_interpreter import ChainContext, check_final, verify_transaction  # noqa: E402
from vault_psbt import Psbt  # noqa: E402
from vault_scripts import (  # noqa: E402
    DeadManSwitchProfile,
    MultisigDecayProfile,
    ThreshDecayProfile,
    TimelockProfile,
)

UTXO_VALUE = 100_000


def _build(vault, path, dest, count=1):
    utxos = [Utxo(f"{i + 1:02x}" * 32, i, UTXO_VALUE) for i in range(count)]
    return build_spend_psbt(vault, SpendIntent(dest, path, fee_rate=2), utxos)


def _prevouts(vault, count=1):
    return [(UTXO_VALUE, vault.script_pubkey)] * count


def _sig(psbt_text, index, pubkey):
    return Psbt.from_string(psbt_text).inputs[index].partial_sigs[bytes.fromhex(pubkey)]


def _retimed_and_signed(unsigned, *privkeys, locktime=None, sequence=None):
    psbt = Psbt.from_string(unsigned)
    if locktime is not None:
        psbt.tx.nLockTime = locktime
    if sequence is not None:
        for txin in psbt.tx.vin:
            txin.nSequence = sequence
    return sign_psbt(psbt.to_base64(), *privkeys)


@pytest.fixture
def dest(pubkeys):
    return p2wpkh_address(pubkeys["heir3"], "testnet")


@pytest.fixture
def timelock_vault(pubkeys):
    profile = TimelockProfile(owner=pubkeys["owner"], heir=pubkeys["heir"], lock_height=900000)
    return create_vault(profile, "testnet")


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
def thresh_vault(pubkeys):
    profile = ThreshDecayProfile(
        pubkeys=(pubkeys["owner"], pubkeys["heir"], pubkeys["heir2"]),
        initial_threshold=2,
        decay_height=850000,
    )
    return create_vault(profile, "testnet")


@pytest.fixture
def dms_vault(pubkeys):
    profile = DeadManSwitchProfile(owner=pubkeys["owner"], heir=pubkeys["heir"], inactivity_blocks=144)
    return create_vault(profile, "testnet")


# ---- timelock ----


def test_timelock_owner_spend(timelock_vault, keys, dest):
    unsigned = _build(timelock_vault, "owner", dest).psbt_base64
    fin = finalize_psbt(sign_psbt(unsigned, keys["owner"]), timelock_vault.profile, "owner")
    assert fin.witness_stacks[0][1] == b"\x01"
    assert verify_transaction(fin.tx_hex, _prevouts(timelock_vault)) == fin.txid


def test_timelock_heir_spend(timelock_vault, keys, dest):
    built = _build(timelock_vault, "heir", dest)
    fin = finalize_psbt(sign_psbt(built.psbt_base64, keys["heir"]), timelock_vault.profile, "heir")
    stack = fin.witness_stacks[0]
    assert stack[1] == b""
    assert stack[2] == timelock_vault.witness_script.script
    verify_transaction(fin.tx_hex, _prevouts(timelock_vault))
    assert fin.vsize <= built.vsize


def test_timelock_heir_before_lock_fails_script(timelock_vault, keys, pubkeys, dest):
    unsigned = _build(timelock_vault, "heir", dest).psbt_base64
    signed = _retimed_and_signed(unsigned, keys["heir"], locktime=899999)
    psbt = Psbt.from_string(signed)
    stack = [_sig(signed, 0, pubkeys["heir"]), b"", timelock_vault.witness_script.script]
    tx = _transaction_with_witness(psbt.tx, [stack])
    with pytest.raises(ScriptVerificationError, match="CLTV"):
        verify_transaction(tx, _prevouts(timelock_vault))

    # the finalizer refuses the mismatched nLockTime up front
    with pytest.raises(SpendPathMismatch):
        finalize_psbt(signed, timelock_vault.profile, "heir")


def test_timelock_heir_mempool_finality(timelock_vault, keys, dest):
    unsigned = _build(timelock_vault, "heir", dest).psbt_base64
    fin = finalize_psbt(sign_psbt(unsigned, keys["heir"]), timelock_vault.profile, "heir")
    tx = extract_transaction(fin.psbt_base64)
    with pytest.raises(ScriptVerificationError):
        check_final(tx, ChainContext(tip_height=899999))
    check_final(tx, ChainContext(tip_height=900000))


def test_heir_spend_accepts_later_locktime(timelock_vault, keys, dest):
    unsigned = _build(timelock_vault, "heir", dest).psbt_base64
    signed = _retimed_and_signed(unsigned, keys["heir"], locktime=900100)
    fin = finalize_psbt(signed, timelock_vault.profile, "heir")
    assert extract_transaction(fin.psbt_base64).nLockTime == 900100
    verify_transaction(fin.tx_hex, _prevouts(timelock_vault))


def test_heir_spend_accepts_rbf_sequence(timelock_vault, keys, dest):
    unsigned = _build(timelock_vault, "heir", dest).psbt_base64
    signed = _retimed_and_signed(unsigned, keys["heir"], sequence=0xFFFFFFFD)
    fin = finalize_psbt(signed, timelock_vault.profile, "heir")
    assert extract_transaction(fin.psbt_base64).vin[0].nSequence == 0xFFFFFFFD
    verify_transaction(fin.tx_hex, _prevouts(timelock_vault))


def test_heir_spend_rejects_final_sequence(timelock_vault, keys, dest):
    unsigned = _build(timelock_vault, "heir", dest).psbt_base64
    signed = _retimed_and_signed(unsigned, keys["heir"], sequence=0xFFFFFFFF)
    with pytest.raises(SpendPathMismatch, match="non-final"):
        finalize_psbt(signed, timelock_vault.profile, "heir")


def test_owner_spend_ignores_locktime(timelock_vault, keys, dest):
    unsigned = _build(timelock_vault, "owner", dest).psbt_base64
    signed = _retimed_and_signed(unsigned, keys["owner"], locktime=850000)
    fin = finalize_psbt(signed, timelock_vault.profile, "owner")
    verify_transaction(fin.tx_hex, _prevouts(timelock_vault))


def test_owner_spend_requires_final_sequence(timelock_vault, keys, dest):
    unsigned = _build(timelock_vault, "owner", dest).psbt_base64
    signed = _retimed_and_signed(unsigned, keys["owner"], sequence=0xFFFFFFFD)
    with pytest.raises(SpendPathMismatch):
        finalize_psbt(signed, timelock_vault.profile, "owner")


# ---- timestamp locks ----

LOCK_TIME = 1_700_000_000


@pytest.fixture
def timestamp_vault(pubkeys):
    profile = TimelockProfile(owner=pubkeys["owner"], heir=pubkeys["heir"], lock_height=LOCK_TIME)
    return create_vault(profile, "testnet")


def test_timestamp_lock_heir_spend(timestamp_vault, keys, dest):
    built = _build(timestamp_vault, "heir", dest)
    assert Psbt.from_string(built.psbt_base64).tx.nLockTime == LOCK_TIME
    fin = finalize_psbt(sign_psbt(built.psbt_base64, keys["heir"]), timestamp_vault.profile, "heir")
    verify_transaction(fin.tx_hex, _prevouts(timestamp_vault))

    tx = extract_transaction(fin.psbt_base64)
    with pytest.raises(ScriptVerificationError, match="UNIX time"):
        check_final(tx, ChainContext(tip_height=900000, tip_median_time=LOCK_TIME))
    check_final(tx, ChainContext(tip_height=900000, tip_median_time=LOCK_TIME + 1))


def test_timestamp_lock_rejects_height_locktime(timestamp_vault, keys, pubkeys, dest):
    unsigned = _build(timestamp_vault, "heir", dest).psbt_base64
    signed = _retimed_and_signed(unsigned, keys["heir"], locktime=900000)
    with pytest.raises(SpendPathMismatch, match="timestamp"):
        finalize_psbt(signed, timestamp_vault.profile, "heir")

    stack = [_sig(signed, 0, pubkeys["heir"]), b"", timestamp_vault.witness_script.script]
    tx = _transaction_with_witness(Psbt.from_string(signed).tx, [stack])
    with pytest.raises(ScriptVerificationError, match="lock type"):
        verify_transaction(tx, _prevouts(timestamp_vault))


def test_height_lock_rejects_timestamp_locktime(timelock_vault, keys, pubkeys, dest):
    unsigned = _build(timelock_vault, "heir", dest).psbt_base64
    signed = _retimed_and_signed(unsigned, keys["heir"], locktime=LOCK_TIME)
    with pytest.raises(SpendPathMismatch, match="height"):
        finalize_psbt(signed, timelock_vault.profile, "heir")

    stack = [_sig(signed, 0, pubkeys["heir"]), b"", timelock_vault.witness_script.script]
    tx = _transaction_with_witness(Psbt.from_string(signed).tx, [stack])
    with pytest.raises(ScriptVerificationError, match="lock type"):
        verify_transaction(tx, _prevouts(timelock_vault))


def test_heir_cannot_sign_owner_path(timelock_vault, keys, dest):
    unsigned = _build(timelock_vault, "owner", dest).psbt_base64
    with pytest.raises(SpendPathMismatch):
        finalize_psbt(sign_psbt(unsigned, keys["heir"]), timelock_vault.profile, "owner")


def test_unsigned_psbt_is_incomplete(timelock_vault, dest):
    unsigned = _build(timelock_vault, "owner", dest).psbt_base64
    with pytest.raises(IncompletePsbt):
        finalize_psbt(unsigned, timelock_vault.profile, "owner")


def test_finalized_psbt_is_immutable(timelock_vault, keys, dest):
    unsigned = _build(timelock_vault, "owner", dest).psbt_base64
    fin = finalize_psbt(sign_psbt(unsigned, keys["owner"]), timelock_vault.profile, "owner")
    finalized = Psbt.from_string(fin.psbt_base64).inputs[0]
    assert finalized.partial_sigs == {} and finalized.witness_script is None
    with pytest.raises(InvalidPsbtFormat):
        finalize_psbt(fin.psbt_base64, timelock_vault.profile, "owner")


def test_psbt_for_other_vault_rejected(timelock_vault, keys, dest):
    unsigned = _build(timelock_vault, "owner", dest).psbt_base64
    other = TimelockProfile(
        owner=timelock_vault.profile.owner, heir=timelock_vault.profile.heir, lock_height=900001
    )
    with pytest.raises(SpendPathMismatch):
        finalize_psbt(sign_psbt(unsigned, keys["owner"]), other, "owner")


def test_extract_requires_finalized_inputs(timelock_vault, dest):
    unsigned = _build(timelock_vault, "owner", dest).psbt_base64
    with pytest.raises(IncompletePsbt):
        extract_transaction(unsigned)


def test_multiple_inputs(timelock_vault, keys, dest):
    built = _build(timelock_vault, "owner", dest, count=3)
    fin = finalize_psbt(sign_psbt(built.psbt_base64, keys["owner"]), timelock_vault.profile, "owner")
    assert len(fin.witness_stacks) == 3
    verify_transaction(fin.tx_hex, _prevouts(timelock_vault, 3))
    assert fin.vsize <= built.vsize


# ---- multisig decay ----


def test_multisig_one_signature_is_incomplete(multisig_vault, keys, dest):
    unsigned = _build(multisig_vault, "multisig_before_decay", dest).psbt_base64
    with pytest.raises(IncompletePsbt):
        finalize_psbt(sign_psbt(unsigned, keys["owner"]), multisig_vault.profile, "multisig_before_decay")


def test_multisig_two_signatures(multisig_vault, keys, dest):
    built = _build(multisig_vault, "multisig_before_decay", dest)
    signed = sign_psbt(built.psbt_base64, keys["heir2"], keys["owner"])
    fin = finalize_psbt(signed, multisig_vault.profile, "multisig_before_decay")
    stack = fin.witness_stacks[0]
    assert stack[0] == b"" and stack[3] == b"\x01"
    verify_transaction(fin.tx_hex, _prevouts(multisig_vault))
    assert fin.vsize <= built.vsize


def test_multisig_signature_order_matters(multisig_vault, keys, dest):
    unsigned = _build(multisig_vault, "multisig_before_decay", dest).psbt_base64
    signed = sign_psbt(unsigned, keys["owner"], keys["heir"])
    fin = finalize_psbt(signed, multisig_vault.profile, "multisig_before_decay")
    stack = list(fin.witness_stacks[0])
    stack[1], stack[2] = stack[2], stack[1]
    tx = _transaction_with_witness(Psbt.from_string(unsigned).tx, [stack])
    with pytest.raises(ScriptVerificationError):
        verify_transaction(tx, _prevouts(multisig_vault))


def test_multisig_after_decay_heir_alone(multisig_vault, keys, dest):
    built = _build(multisig_vault, "multisig_after_decay", dest)
    assert Psbt.from_string(built.psbt_base64).tx.nLockTime == 850000
    fin = finalize_psbt(sign_psbt(built.psbt_base64, keys["heir2"]), multisig_vault.profile, "multisig_after_decay")
    assert fin.witness_stacks[0][2] == b""
    verify_transaction(fin.tx_hex, _prevouts(multisig_vault))


def test_multisig_after_decay_owner_excluded(multisig_vault, keys, pubkeys, dest):
    unsigned = _build(multisig_vault, "multisig_after_decay", dest).psbt_base64
    signed = sign_psbt(unsigned, keys["owner"])
    with pytest.raises(SpendPathMismatch):
        finalize_psbt(signed, multisig_vault.profile, "multisig_after_decay")

    stack = [b"", _sig(signed, 0, pubkeys["owner"]), b"", multisig_vault.witness_script.script]
    tx = _transaction_with_witness(Psbt.from_string(unsigned).tx, [stack])
    with pytest.raises(ScriptVerificationError):
        verify_transaction(tx, _prevouts(multisig_vault))


# ---- thresh decay ----


def test_thresh_before_decay(thresh_vault, keys, dest):
    built = _build(thresh_vault, "thresh_before_decay", dest)
    signed = sign_psbt(built.psbt_base64, keys["owner"], keys["heir"])
    fin = finalize_psbt(signed, thresh_vault.profile, "thresh_before_decay")
    stack = fin.witness_stacks[0]
    assert stack[0] == b"\x01"
    assert len(stack) == 1 + 3 + 1
    assert sum(1 for item in stack[1:-1] if item) == 2
    verify_transaction(fin.tx_hex, _prevouts(thresh_vault))
    assert fin.vsize <= built.vsize


def test_thresh_before_decay_one_signature(thresh_vault, keys, dest):
    unsigned = _build(thresh_vault, "thresh_before_decay", dest).psbt_base64
    with pytest.raises(IncompletePsbt):
        finalize_psbt(sign_psbt(unsigned, keys["heir"]), thresh_vault.profile, "thresh_before_decay")


def test_thresh_after_decay(thresh_vault, keys, dest):
    built = _build(thresh_vault, "thresh_after_decay", dest)
    fin = finalize_psbt(sign_psbt(built.psbt_base64, keys["heir2"]), thresh_vault.profile, "thresh_after_decay")
    stack = fin.witness_stacks[0]
    assert stack[0] == b""
    assert sum(1 for item in stack[1:-1] if item) == 1
    verify_transaction(fin.tx_hex, _prevouts(thresh_vault))


def test_thresh_after_decay_places_exact_count(thresh_vault, keys, dest):
    unsigned = _build(thresh_vault, "thresh_after_decay", dest).psbt_base64
    signed = sign_psbt(unsigned, keys["owner"], keys["heir"])
    fin = finalize_psbt(signed, thresh_vault.profile, "thresh_after_decay")
    assert sum(1 for item in fin.witness_stacks[0][1:-1] if item) == 1
    verify_transaction(fin.tx_hex, _prevouts(thresh_vault))


def test_thresh_extra_signature_fails_script(thresh_vault, keys, dest):
    unsigned = _build(thresh_vault, "thresh_after_decay", dest).psbt_base64
    signed = sign_psbt(unsigned, keys["owner"], keys["heir"], keys["heir2"])
    sorted_keys = thresh_vault.profile.sorted_keys
    slots = [_sig(signed, 0, k) for k in reversed(sorted_keys)]
    stack = [b"", slots[0], slots[1], b"", thresh_vault.witness_script.script]
    tx = _transaction_with_witness(Psbt.from_string(unsigned).tx, [stack])
    with pytest.raises(ScriptVerificationError):
        verify_transaction(tx, _prevouts(thresh_vault))


# ---- dead man's switch ----


def test_dead_man_switch_heir_spend(dms_vault, keys, dest):
    built = _build(dms_vault, "heir", dest)
    fin = finalize_psbt(sign_psbt(built.psbt_base64, keys["heir"]), dms_vault.profile, "heir")
    verify_transaction(fin.tx_hex, _prevouts(dms_vault))

    tx = extract_transaction(fin.psbt_base64)
    with pytest.raises(ScriptVerificationError, match="relative-locked"):
        check_final(tx, ChainContext(tip_height=800100, utxo_heights=[800000]))
    check_final(tx, ChainContext(tip_height=800143, utxo_heights=[800000]))


def test_dead_man_switch_short_sequence_fails_script(dms_vault, keys, pubkeys, dest):
    unsigned = _build(dms_vault, "heir", dest).psbt_base64
    signed = _retimed_and_signed(unsigned, keys["heir"], sequence=143)
    stack = [_sig(signed, 0, pubkeys["heir"]), b"", dms_vault.witness_script.script]
    tx = _transaction_with_witness(Psbt.from_string(signed).tx, [stack])
    with pytest.raises(ScriptVerificationError, match="CSV"):
        verify_transaction(tx, _prevouts(dms_vault))


def test_dead_man_switch_owner_checkin_path(dms_vault, keys, dest):
    unsigned = _build(dms_vault, "owner", dest).psbt_base64
    fin = finalize_psbt(sign_psbt(unsigned, keys["owner"]), dms_vault.profile, "owner")
    verify_transaction(fin.tx_hex, _prevouts(dms_vault))
    check_final(extract_transaction(fin.psbt_base64), ChainContext(tip_height=1, utxo_heights=[1]))
