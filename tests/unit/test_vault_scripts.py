import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

from vault_errors import InvalidKeyFormat, InvalidProfileParameters, SpendPathMismatch  # noqa: E402
from vault_scripts import (  # noqa: E402
    SEQUENCE_ENABLE_LOCKTIME,
    SEQUENCE_FINAL,
    SEQUENCE_LOCKTIME_TYPE_FLAG,
    DeadManSwitchProfile,
    MultisigDecayProfile,
    SpendPath,
    ThreshDecayProfile,
    TimelockProfile,
    bip68_sequence,
    bip68_sequence_seconds,
    compile_profile,
    describe_sequence,
    disassemble,
    generate_policy,
    locktime_kind,
    parse_witness_script,
    spend_path_requirements,
)

OWNER = "02" + "11" * 32
HEIR = "03" + "22" * 32
HEIR2 = "02" + "33" * 32
HEIR3 = "03" + "44" * 32


def test_timelock_script_bytes():
    ws = compile_profile(TimelockProfile(owner=OWNER, heir=HEIR, lock_height=900000))
    expected = "6321" + OWNER + "ac67" + "03a0bb0d" + "b175" + "21" + HEIR + "ac68"
    assert ws.hex == expected


def test_timelock_asm():
    ws = compile_profile(TimelockProfile(owner=OWNER, heir=HEIR, lock_height=900000))
    assert ws.asm == (
        f"OP_IF {OWNER} OP_CHECKSIG OP_ELSE a0bb0d OP_CHECKLOCKTIMEVERIFY OP_DROP "
        f"{HEIR} OP_CHECKSIG OP_ENDIF"
    )


def test_dead_man_switch_pushes_sequence():
    ws = compile_profile(DeadManSwitchProfile(owner=OWNER, heir=HEIR, inactivity_blocks=144))
    assert "029000b275" in ws.hex
    assert "OP_CHECKSEQUENCEVERIFY" in ws.asm


def test_compilation_is_deterministic():
    owner = "02" + "ab" * 32
    a = compile_profile(TimelockProfile(owner=owner, heir=HEIR, lock_height=800000))
    b = compile_profile(TimelockProfile(owner=owner.upper(), heir=HEIR, lock_height=800000))
    assert a.script == b.script


def test_compilation_depends_on_every_parameter():
    base = compile_profile(TimelockProfile(owner=OWNER, heir=HEIR, lock_height=800000)).script
    assert compile_profile(TimelockProfile(owner=OWNER, heir=HEIR, lock_height=800001)).script != base
    assert compile_profile(TimelockProfile(owner=HEIR, heir=OWNER, lock_height=800000)).script != base


def test_multisig_keys_are_sorted_in_script():
    profile = MultisigDecayProfile(
        owner=HEIR3,
        heirs=(HEIR, HEIR2),
        initial_threshold=2,
        initial_total=3,
        decayed_threshold=1,
        decayed_total=2,
        decay_height=850000,
    )
    asm = compile_profile(profile).asm.split()
    before = asm[asm.index("OP_IF") + 2 : asm.index("OP_IF") + 5]
    assert before == sorted([HEIR3, HEIR, HEIR2], key=bytes.fromhex)
    assert asm[1] == "2" or asm[1] == "OP_2"
    assert asm.count("OP_CHECKMULTISIG") == 2


def test_multisig_shuffled_heirs_compile_identically():
    kwargs = dict(
        owner=OWNER,
        initial_threshold=2,
        initial_total=3,
        decayed_threshold=1,
        decayed_total=2,
        decay_height=850000,
    )
    a = compile_profile(MultisigDecayProfile(heirs=(HEIR, HEIR2), **kwargs))
    b = compile_profile(MultisigDecayProfile(heirs=(HEIR2, HEIR), **kwargs))
    assert a.script == b.script


def test_thresh_script_shape():
    profile = ThreshDecayProfile(pubkeys=(OWNER, HEIR, HEIR2), initial_threshold=2, decay_height=850000)
    asm = compile_profile(profile).asm.split()
    assert asm[0] == sorted([OWNER, HEIR, HEIR2], key=bytes.fromhex)[0]
    assert asm.count("OP_CHECKSIG") == 3
    assert asm.count("OP_SWAP") == 3
    assert asm[-2:] == ["OP_2", "OP_EQUAL"]
    assert "OP_0NOTEQUAL" in asm


def test_redeem_info_lists_paths():
    ws = compile_profile(TimelockProfile(owner=OWNER, heir=HEIR, lock_height=900000))
    info = ws.to_dict()["redeem_info"]
    assert info["kind"] == "timelock"
    assert [p["spend_path"] for p in info["spend_paths"]] == ["owner", "heir"]
    heir = info["spend_paths"][1]
    assert heir["available_after_block"] == 900000
    assert heir["locktime"] == 900000


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(owner=OWNER, heir=OWNER, lock_height=900000),
        dict(owner=OWNER, heir=HEIR, lock_height=0),
        dict(owner=OWNER, heir=HEIR, lock_height=2**32),
        dict(owner=OWNER, heir=HEIR, lock_height="900000"),
        dict(owner=OWNER, heir=HEIR, lock_height=True),
    ],
)
def test_timelock_rejects_bad_parameters(kwargs):
    with pytest.raises(InvalidProfileParameters):
        TimelockProfile(**kwargs)


def test_bad_key_surfaces_as_key_error():
    with pytest.raises(InvalidKeyFormat):
        TimelockProfile(owner="nope", heir=HEIR, lock_height=900000)


@pytest.mark.parametrize(
    "overrides",
    [
        dict(initial_threshold=0),
        dict(initial_threshold=4),
        dict(initial_total=4),
        dict(decayed_threshold=3),
        dict(decayed_total=1),
        dict(heirs=()),
    ],
)
def test_multisig_rejects_bad_thresholds(overrides):
    kwargs = dict(
        owner=OWNER,
        heirs=(HEIR, HEIR2),
        initial_threshold=2,
        initial_total=3,
        decayed_threshold=1,
        decayed_total=2,
        decay_height=850000,
    )
    kwargs.update(overrides)
    with pytest.raises(InvalidProfileParameters):
        MultisigDecayProfile(**kwargs)


@pytest.mark.parametrize("threshold", [1, 4])
def test_thresh_rejects_out_of_range_threshold(threshold):
    with pytest.raises(InvalidProfileParameters):
        ThreshDecayProfile(pubkeys=(OWNER, HEIR, HEIR2), initial_threshold=threshold, decay_height=850000)


def test_thresh_requires_two_keys():
    with pytest.raises(InvalidProfileParameters):
        ThreshDecayProfile(pubkeys=(OWNER,), initial_threshold=2, decay_height=850000)


def test_bip68_block_range():
    assert bip68_sequence(1) == 1
    assert bip68_sequence(65535) == 65535


def test_bip68_beyond_block_range_is_rejected():
    for blocks in (65536, 100_000, 4_000_000):
        with pytest.raises(InvalidProfileParameters, match="at most 65535 blocks"):
            bip68_sequence(blocks)


@pytest.mark.parametrize("blocks", [0, -5])
def test_bip68_rejects_non_positive(blocks):
    with pytest.raises(InvalidProfileParameters):
        bip68_sequence(blocks)


def test_bip68_seconds_encoding():
    assert bip68_sequence_seconds(512) == SEQUENCE_LOCKTIME_TYPE_FLAG | 1
    assert bip68_sequence_seconds(1023) == SEQUENCE_LOCKTIME_TYPE_FLAG | 1
    with pytest.raises(InvalidProfileParameters):
        bip68_sequence_seconds(100)


def test_describe_sequence():
    assert describe_sequence(144) == "144 blocks"
    assert describe_sequence(SEQUENCE_LOCKTIME_TYPE_FLAG | 169).startswith("169 x 512 seconds")


def test_locktime_kind_boundary():
    assert locktime_kind(499_999_999) == "height"
    assert locktime_kind(500_000_000) == "timestamp"


def test_timestamp_lock_script_push():
    profile = TimelockProfile(owner=OWNER, heir=HEIR, lock_height=1_700_000_000)
    ws = compile_profile(profile)
    # 1_700_000_000 = 0x6553f100, little-endian script number
    assert "0400f15365b175" in ws.hex
    assert "00f15365 OP_CHECKLOCKTIMEVERIFY" in ws.asm
    assert spend_path_requirements(profile, "heir").locktime == 1_700_000_000


def test_dead_man_switch_rejects_unencodable_period():
    with pytest.raises(InvalidProfileParameters):
        DeadManSwitchProfile(owner=OWNER, heir=HEIR, inactivity_blocks=100_000)


def test_spend_path_requirements_timelock():
    profile = TimelockProfile(owner=OWNER, heir=HEIR, lock_height=900000)
    owner = spend_path_requirements(profile, "owner")
    heir = spend_path_requirements(profile, SpendPath.HEIR)
    assert (owner.sequence, owner.locktime, owner.keys) == (SEQUENCE_FINAL, 0, (OWNER,))
    assert (heir.sequence, heir.locktime, heir.keys) == (SEQUENCE_ENABLE_LOCKTIME, 900000, (HEIR,))


def test_spend_path_requirements_dead_man_switch():
    profile = DeadManSwitchProfile(owner=OWNER, heir=HEIR, inactivity_blocks=4320)
    heir = spend_path_requirements(profile, "heir")
    assert heir.sequence == 4320
    assert heir.locktime == 0


def test_spend_path_requirements_thresh_after_decay():
    profile = ThreshDecayProfile(pubkeys=(OWNER, HEIR, HEIR2), initial_threshold=3, decay_height=850000)
    req = spend_path_requirements(profile, "thresh_after_decay")
    assert req.required_signatures == 2
    assert req.locktime == 850000


def test_spend_path_not_in_profile():
    profile = TimelockProfile(owner=OWNER, heir=HEIR, lock_height=900000)
    with pytest.raises(SpendPathMismatch):
        spend_path_requirements(profile, "multisig_after_decay")
    with pytest.raises(SpendPathMismatch):
        spend_path_requirements(profile, "sideways")


def test_generate_policy():
    profile = TimelockProfile(owner=OWNER, heir=HEIR, lock_height=900000)
    assert generate_policy(profile) == f"or(pk({OWNER}),and(pk({HEIR}),after(900000)))"

    dms = DeadManSwitchProfile(owner=OWNER, heir=HEIR, inactivity_blocks=144)
    assert generate_policy(dms).endswith("older(144)))")


def test_disassemble_empty_push():
    assert disassemble(bytes([0x00, 0x51, 0x87])) == "OP_0 OP_1 OP_EQUAL"


def test_disassemble_truncated_push():
    with pytest.raises(ValueError):
        disassemble(bytes([0x21, 0x02]))


def test_parse_witness_script_formats():
    ws = compile_profile(TimelockProfile(owner=OWNER, heir=HEIR, lock_height=900000)).script
    assert parse_witness_script(ws.hex()) == ws
    assert parse_witness_script(",".join(str(b) for b in ws)) == ws


@pytest.mark.parametrize("text", ["1,2,300", "1,x,3", "zz"])
def test_parse_witness_script_rejects_garbage(text):
    with pytest.raises(ValueError):
        parse_witness_script(text)
