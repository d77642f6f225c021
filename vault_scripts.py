"""
Witness script compiler for inheritance vaults.

Four profiles are supported, each compiled straight to Bitcoin Script:

* timelock          OP_IF <owner> OP_CHECKSIG
                    OP_ELSE <height> OP_CHECKLOCKTIMEVERIFY OP_DROP <heir> OP_CHECKSIG
                    OP_ENDIF
* dead_man_switch   same shape, OP_CHECKSEQUENCEVERIFY with a BIP68 value
* multisig_decay    OP_IF m-of-n(owner + heirs) OP_ELSE <height> CLTV DROP m'-of-n'(heirs) OP_ENDIF
* thresh_decay      thresh(t, pk(k1), s:pk(k2), ..., s:pk(kN), sln:after(height))

Compilation is a pure function of the typed profile. The spend-path
documentation returned next to the script (``RedeemInfo``) is informational;
finalization re-derives everything from the profile via
``spend_path_requirements()``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Union

from bitcoin.core.script import (
    OP_0NOTEQUAL,
    OP_ADD,
    OP_CHECKMULTISIG,
    OP_CHECKSIG,
    OP_DROP,
    OP_ELSE,
    OP_ENDIF,
    OP_EQUAL,
    OP_IF,
    OP_NOP2,
    OP_NOP3,
    OP_PUSHDATA4,
    OP_SWAP,
    OPCODE_NAMES,
    CScript,
    CScriptInvalidError,
)

from vault_errors import InvalidProfileParameters, SpendPathMismatch
from vault_keys import normalize_pubkey, sort_pubkeys

log = logging.getLogger("vault.scripts")

# BIP65 / BIP112 redefine these NOPs
OP_CHECKLOCKTIMEVERIFY = OP_NOP2
OP_CHECKSEQUENCEVERIFY = OP_NOP3

SEQUENCE_FINAL = 0xFFFFFFFF
# Non-final but without BIP68 meaning (bit 31 set); makes nLockTime binding
SEQUENCE_ENABLE_LOCKTIME = 0xFFFFFFFE
LOCKTIME_THRESHOLD = 500_000_000
MAX_LOCKTIME = 0xFFFFFFFF

SEQUENCE_LOCKTIME_TYPE_FLAG = 1 << 22
SEQUENCE_LOCKTIME_MASK = 0x0000FFFF
SEQUENCE_LOCKTIME_GRANULARITY = 9  # 512-second units

MAX_PUBKEYS_PER_MULTISIG = 20


class SpendPath(str, Enum):
    """A single branch of a compiled vault script."""

    OWNER = "owner"
    HEIR = "heir"
    MULTISIG_BEFORE_DECAY = "multisig_before_decay"
    MULTISIG_AFTER_DECAY = "multisig_after_decay"
    THRESH_BEFORE_DECAY = "thresh_before_decay"
    THRESH_AFTER_DECAY = "thresh_after_decay"


def parse_spend_path(value: str | SpendPath) -> SpendPath:
    try:
        return SpendPath(value)
    except ValueError as exc:
        choices = ", ".join(p.value for p in SpendPath)
        raise SpendPathMismatch(f"Unknown spend path {value!r}. Expected one of: {choices}.") from exc


# ---------------------------------------------------------------------------
# Timelock encodings
# ---------------------------------------------------------------------------


def _require_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidProfileParameters(f"{name} must be an integer, got {value!r}.")
    return value


def _check_absolute_lock(value: Any, name: str) -> int:
    value = _require_int(value, name)
    if not 1 <= value <= MAX_LOCKTIME:
        raise InvalidProfileParameters(
            f"{name} must be between 1 and {MAX_LOCKTIME} (got {value})."
        )
    return value


def locktime_kind(value: int) -> str:
    """BIP65 boundary: below 500,000,000 is a block height, otherwise a UNIX time."""
    return "height" if value < LOCKTIME_THRESHOLD else "timestamp"


def bip68_sequence(blocks: int) -> int:
    """
    Encode an inactivity period given in blocks as a BIP68 relative lock.

    The block count goes into the 16-bit value field as is. Periods over
    65535 blocks are rejected: converted to 512-second units they would
    not fit the field either.
    """
    blocks = _require_int(blocks, "inactivity_blocks")
    if blocks < 1:
        raise InvalidProfileParameters("inactivity_blocks must be at least 1.")
    if blocks > SEQUENCE_LOCKTIME_MASK:
        raise InvalidProfileParameters(
            f"Relative lock of {blocks} blocks cannot be encoded: BIP68 allows at most "
            f"{SEQUENCE_LOCKTIME_MASK} blocks."
        )
    return blocks


def bip68_sequence_seconds(seconds: int) -> int:
    """Time-based BIP68 encoding of *seconds*, rounded down to 512 s units."""
    seconds = _require_int(seconds, "seconds")
    units = seconds >> SEQUENCE_LOCKTIME_GRANULARITY
    if not 1 <= units <= SEQUENCE_LOCKTIME_MASK:
        raise InvalidProfileParameters(
            f"Relative lock of {seconds} s is outside the BIP68 time range (512 s to 65535 x 512 s)."
        )
    return SEQUENCE_LOCKTIME_TYPE_FLAG | units


def describe_sequence(sequence: int) -> str:
    if sequence & SEQUENCE_LOCKTIME_TYPE_FLAG:
        units = sequence & SEQUENCE_LOCKTIME_MASK
        return f"{units} x 512 seconds (~{units * 512 // 86400} days)"
    return f"{sequence & SEQUENCE_LOCKTIME_MASK} blocks"


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


def _check_distinct(keys: list[str]) -> None:
    if len(set(keys)) != len(keys):
        raise InvalidProfileParameters("Vault keys must be distinct; the same key appears twice.")


@dataclass(frozen=True)
class TimelockProfile:
    """Owner spends anytime; heir spends once the absolute lock has passed."""

    owner: str
    heir: str
    lock_height: int

    kind: ClassVar[str] = "timelock"
    spend_paths: ClassVar[tuple[SpendPath, ...]] = (SpendPath.OWNER, SpendPath.HEIR)
    owner_path: ClassVar[SpendPath] = SpendPath.OWNER

    def __post_init__(self) -> None:
        object.__setattr__(self, "owner", normalize_pubkey(self.owner))
        object.__setattr__(self, "heir", normalize_pubkey(self.heir))
        _check_absolute_lock(self.lock_height, "lock_height")
        _check_distinct([self.owner, self.heir])

    def to_dict(self) -> dict[str, Any]:
        return {
            "logic": self.kind,
            "owner_pubkey": self.owner,
            "heir_pubkeys": [self.heir],
            "lock_height": self.lock_height,
        }


@dataclass(frozen=True)
class DeadManSwitchProfile:
    """
    Owner spends anytime; heir spends after the UTXO has sat unspent for
    ``inactivity_blocks``. Each owner check-in creates a new UTXO and so
    restarts the clock.
    """

    owner: str
    heir: str
    inactivity_blocks: int

    kind: ClassVar[str] = "dead_man_switch"
    spend_paths: ClassVar[tuple[SpendPath, ...]] = (SpendPath.OWNER, SpendPath.HEIR)
    owner_path: ClassVar[SpendPath] = SpendPath.OWNER

    def __post_init__(self) -> None:
        object.__setattr__(self, "owner", normalize_pubkey(self.owner))
        object.__setattr__(self, "heir", normalize_pubkey(self.heir))
        bip68_sequence(self.inactivity_blocks)
        _check_distinct([self.owner, self.heir])

    @property
    def sequence(self) -> int:
        return bip68_sequence(self.inactivity_blocks)

    def to_dict(self) -> dict[str, Any]:
        return {
            "logic": self.kind,
            "owner_pubkey": self.owner,
            "heir_pubkeys": [self.heir],
            "inactivity_blocks": self.inactivity_blocks,
        }


@dataclass(frozen=True)
class MultisigDecayProfile:
    """
    m-of-n over owner + heirs, decaying to m'-of-n' over the heirs alone
    once ``decay_height`` is reached.
    """

    owner: str
    heirs: tuple[str, ...]
    initial_threshold: int
    initial_total: int
    decayed_threshold: int
    decayed_total: int
    decay_height: int

    kind: ClassVar[str] = "multisig_decay"
    spend_paths: ClassVar[tuple[SpendPath, ...]] = (
        SpendPath.MULTISIG_BEFORE_DECAY,
        SpendPath.MULTISIG_AFTER_DECAY,
    )
    owner_path: ClassVar[SpendPath] = SpendPath.MULTISIG_BEFORE_DECAY

    def __post_init__(self) -> None:
        object.__setattr__(self, "owner", normalize_pubkey(self.owner))
        object.__setattr__(self, "heirs", tuple(normalize_pubkey(h) for h in self.heirs))

        if not self.heirs:
            raise InvalidProfileParameters("Multisig decay requires at least one heir key.")
        _check_distinct([self.owner, *self.heirs])

        for name in ("initial_threshold", "initial_total", "decayed_threshold", "decayed_total"):
            _require_int(getattr(self, name), name)
        _check_absolute_lock(self.decay_height, "decay_height")

        if self.initial_total != len(self.heirs) + 1:
            raise InvalidProfileParameters(
                f"initial_total ({self.initial_total}) must equal owner + heir keys "
                f"({len(self.heirs) + 1})."
            )
        if self.decayed_total != len(self.heirs):
            raise InvalidProfileParameters(
                f"decayed_total ({self.decayed_total}) must equal the number of heir keys "
                f"({len(self.heirs)})."
            )
        if self.initial_total > MAX_PUBKEYS_PER_MULTISIG:
            raise InvalidProfileParameters(
                f"OP_CHECKMULTISIG supports at most {MAX_PUBKEYS_PER_MULTISIG} keys."
            )
        if not 1 <= self.initial_threshold <= self.initial_total:
            raise InvalidProfileParameters(
                f"initial_threshold must be between 1 and {self.initial_total}, "
                f"got {self.initial_threshold}."
            )
        if not 1 <= self.decayed_threshold <= self.decayed_total:
            raise InvalidProfileParameters(
                f"decayed_threshold must be between 1 and {self.decayed_total}, "
                f"got {self.decayed_threshold}."
            )

    @property
    def initial_keys(self) -> list[str]:
        return sort_pubkeys([self.owner, *self.heirs])

    @property
    def decayed_keys(self) -> list[str]:
        return sort_pubkeys(self.heirs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "logic": self.kind,
            "owner_pubkey": self.owner,
            "heir_pubkeys": list(self.heirs),
            "decay": {
                "initial_threshold": self.initial_threshold,
                "initial_total": self.initial_total,
                "decayed_threshold": self.decayed_threshold,
                "decayed_total": self.decayed_total,
                "decay_height": self.decay_height,
            },
        }


@dataclass(frozen=True)
class ThreshDecayProfile:
    """
    thresh(t, pk(k1), s:pk(k2), ..., sln:after(decay_height)): t-of-N keys
    until ``decay_height``, then (t-1)-of-N keys plus the timelock.
    """

    pubkeys: tuple[str, ...]
    initial_threshold: int
    decay_height: int

    kind: ClassVar[str] = "thresh_decay"
    spend_paths: ClassVar[tuple[SpendPath, ...]] = (
        SpendPath.THRESH_BEFORE_DECAY,
        SpendPath.THRESH_AFTER_DECAY,
    )
    owner_path: ClassVar[SpendPath] = SpendPath.THRESH_BEFORE_DECAY

    def __post_init__(self) -> None:
        object.__setattr__(self, "pubkeys", tuple(normalize_pubkey(k) for k in self.pubkeys))

        if len(self.pubkeys) < 2:
            raise InvalidProfileParameters("Threshold decay requires at least two keys.")
        if len(self.pubkeys) > MAX_PUBKEYS_PER_MULTISIG:
            raise InvalidProfileParameters(
                f"Threshold decay supports at most {MAX_PUBKEYS_PER_MULTISIG} keys."
            )
        _check_distinct(list(self.pubkeys))
        _require_int(self.initial_threshold, "initial_threshold")
        _check_absolute_lock(self.decay_height, "decay_height")

        # t == 1 would let the timelock alone satisfy the script after decay
        if not 2 <= self.initial_threshold <= len(self.pubkeys):
            raise InvalidProfileParameters(
                f"initial_threshold must be between 2 and {len(self.pubkeys)}, "
                f"got {self.initial_threshold}."
            )

    @property
    def sorted_keys(self) -> list[str]:
        return sort_pubkeys(self.pubkeys)

    def to_dict(self) -> dict[str, Any]:
        return {
            "logic": self.kind,
            "pubkeys": list(self.pubkeys),
            "decay": {
                "initial_threshold": self.initial_threshold,
                "decay_height": self.decay_height,
            },
        }


VaultProfile = Union[TimelockProfile, DeadManSwitchProfile, MultisigDecayProfile, ThreshDecayProfile]

PROFILE_TYPES: dict[str, type] = {
    cls.kind: cls
    for cls in (TimelockProfile, DeadManSwitchProfile, MultisigDecayProfile, ThreshDecayProfile)
}


# ---------------------------------------------------------------------------
# Spend path requirements (source of truth for builder and finalizer)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PathRequirements:
    spend_path: SpendPath
    sequence: int
    locktime: int
    keys: tuple[str, ...]  # eligible signers, in script order
    required_signatures: int


def spend_path_requirements(profile: VaultProfile, spend_path: str | SpendPath) -> PathRequirements:
    """nSequence, nLockTime and signer set needed to spend *profile* via *spend_path*."""
    path = parse_spend_path(spend_path)
    if path not in profile.spend_paths:
        supported = ", ".join(p.value for p in profile.spend_paths)
        raise SpendPathMismatch(
            f"Spend path {path.value!r} does not exist in a {profile.kind} vault "
            f"(supported: {supported})."
        )

    if isinstance(profile, TimelockProfile):
        if path is SpendPath.OWNER:
            return PathRequirements(path, SEQUENCE_FINAL, 0, (profile.owner,), 1)
        return PathRequirements(
            path, SEQUENCE_ENABLE_LOCKTIME, profile.lock_height, (profile.heir,), 1
        )

    if isinstance(profile, DeadManSwitchProfile):
        if path is SpendPath.OWNER:
            return PathRequirements(path, SEQUENCE_FINAL, 0, (profile.owner,), 1)
        return PathRequirements(path, profile.sequence, 0, (profile.heir,), 1)

    if isinstance(profile, MultisigDecayProfile):
        if path is SpendPath.MULTISIG_BEFORE_DECAY:
            return PathRequirements(
                path, SEQUENCE_FINAL, 0, tuple(profile.initial_keys), profile.initial_threshold
            )
        return PathRequirements(
            path,
            SEQUENCE_ENABLE_LOCKTIME,
            profile.decay_height,
            tuple(profile.decayed_keys),
            profile.decayed_threshold,
        )

    if path is SpendPath.THRESH_BEFORE_DECAY:
        return PathRequirements(
            path, SEQUENCE_FINAL, 0, tuple(profile.sorted_keys), profile.initial_threshold
        )
    return PathRequirements(
        path,
        SEQUENCE_ENABLE_LOCKTIME,
        profile.decay_height,
        tuple(profile.sorted_keys),
        profile.initial_threshold - 1,
    )


# ---------------------------------------------------------------------------
# Compiled output
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SpendPathInfo:
    """Human-readable description of one branch. Documentation only."""

    spend_path: SpendPath
    name: str
    description: str
    witness: str
    sequence: int
    locktime: int
    required_signatures: int
    keys: tuple[str, ...]
    available_after_block: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "spend_path": self.spend_path.value,
            "name": self.name,
            "description": self.description,
            "witness": self.witness,
            "sequence": self.sequence,
            "locktime": self.locktime,
            "required_signatures": self.required_signatures,
            "keys": list(self.keys),
            "available_after_block": self.available_after_block,
        }


@dataclass(frozen=True)
class RedeemInfo:
    kind: str
    policy: str
    keys: tuple[str, ...]
    spend_paths: tuple[SpendPathInfo, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "policy": self.policy,
            "keys": list(self.keys),
            "spend_paths": [p.to_dict() for p in self.spend_paths],
        }


@dataclass(frozen=True)
class WitnessScript:
    script: bytes
    redeem_info: RedeemInfo

    @property
    def hex(self) -> str:
        return self.script.hex()

    @property
    def asm(self) -> str:
        return disassemble(self.script)

    def to_dict(self) -> dict[str, Any]:
        return {
            "witness_script": self.hex,
            "asm": self.asm,
            "size_bytes": len(self.script),
            "redeem_info": self.redeem_info.to_dict(),
        }


def _compile_timelock(p: TimelockProfile) -> CScript:
    return CScript([
        OP_IF,
        bytes.fromhex(p.owner), OP_CHECKSIG,
        OP_ELSE,
        p.lock_height, OP_CHECKLOCKTIMEVERIFY, OP_DROP,
        bytes.fromhex(p.heir), OP_CHECKSIG,
        OP_ENDIF,
    ])


def _compile_dead_man_switch(p: DeadManSwitchProfile) -> CScript:
    return CScript([
        OP_IF,
        bytes.fromhex(p.owner), OP_CHECKSIG,
        OP_ELSE,
        p.sequence, OP_CHECKSEQUENCEVERIFY, OP_DROP,
        bytes.fromhex(p.heir), OP_CHECKSIG,
        OP_ENDIF,
    ])


def _compile_multisig_decay(p: MultisigDecayProfile) -> CScript:
    initial = [bytes.fromhex(k) for k in p.initial_keys]
    decayed = [bytes.fromhex(k) for k in p.decayed_keys]
    return CScript([
        OP_IF,
        p.initial_threshold, *initial, p.initial_total, OP_CHECKMULTISIG,
        OP_ELSE,
        p.decay_height, OP_CHECKLOCKTIMEVERIFY, OP_DROP,
        p.decayed_threshold, *decayed, p.decayed_total, OP_CHECKMULTISIG,
        OP_ENDIF,
    ])


def _compile_thresh_decay(p: ThreshDecayProfile) -> CScript:
    keys = [bytes.fromhex(k) for k in p.sorted_keys]
    ops: list[Any] = [keys[0], OP_CHECKSIG]
    for key in keys[1:]:
        ops += [OP_SWAP, key, OP_CHECKSIG, OP_ADD]
    # sln:after(h)
    ops += [
        OP_SWAP, OP_IF, 0, OP_ELSE,
        p.decay_height, OP_CHECKLOCKTIMEVERIFY, OP_0NOTEQUAL,
        OP_ENDIF, OP_ADD,
        p.initial_threshold, OP_EQUAL,
    ]
    return CScript(ops)


_COMPILERS = {
    TimelockProfile: _compile_timelock,
    DeadManSwitchProfile: _compile_dead_man_switch,
    MultisigDecayProfile: _compile_multisig_decay,
    ThreshDecayProfile: _compile_thresh_decay,
}


def _lock_text(value: int) -> str:
    if locktime_kind(value) == "height":
        return f"block {value}"
    return f"UNIX time {value}"


def _path_info(profile: VaultProfile) -> tuple[SpendPathInfo, ...]:
    infos = []
    for path in profile.spend_paths:
        req = spend_path_requirements(profile, path)
        after = (
            req.locktime
            if req.locktime and locktime_kind(req.locktime) == "height"
            else None
        )
        if isinstance(profile, (TimelockProfile, DeadManSwitchProfile)):
            if path is SpendPath.OWNER:
                name, desc = "Owner", "Owner can spend at any time"
                witness = "<owner_signature> 01 <witnessScript>"
            elif isinstance(profile, TimelockProfile):
                name = "Heir"
                desc = f"Heir can spend after {_lock_text(profile.lock_height)}"
                witness = "<heir_signature> <empty> <witnessScript>"
            else:
                name = "Heir"
                desc = (
                    f"Heir can spend once the vault UTXO has been unspent for "
                    f"{describe_sequence(profile.sequence)}"
                )
                witness = "<heir_signature> <empty> <witnessScript>"
        elif isinstance(profile, MultisigDecayProfile):
            sigs = " ".join(f"<sig_{i + 1}>" for i in range(req.required_signatures))
            if path is SpendPath.MULTISIG_BEFORE_DECAY:
                name = "Multisig (before decay)"
                desc = (
                    f"Requires {profile.initial_threshold} of {profile.initial_total} "
                    f"signatures from owner and heirs"
                )
                witness = f"<empty> {sigs} 01 <witnessScript>"
            else:
                name = "Multisig (after decay)"
                desc = (
                    f"Requires {profile.decayed_threshold} of {profile.decayed_total} heir "
                    f"signatures after {_lock_text(profile.decay_height)}"
                )
                witness = f"<empty> {sigs} <empty> <witnessScript>"
        else:
            n = len(profile.pubkeys)
            slots = " ".join(f"<sig_k{i} | empty>" for i in range(n, 0, -1))
            if path is SpendPath.THRESH_BEFORE_DECAY:
                name = "Threshold (before decay)"
                desc = f"Requires {profile.initial_threshold} of {n} signatures"
                witness = f"01 {slots} <witnessScript>"
            else:
                name = "Threshold (after decay)"
                desc = (
                    f"Requires {profile.initial_threshold - 1} of {n} signatures "
                    f"after {_lock_text(profile.decay_height)}"
                )
                witness = f"<empty> {slots} <witnessScript>"
        infos.append(
            SpendPathInfo(
                spend_path=path,
                name=name,
                description=desc,
                witness=witness,
                sequence=req.sequence,
                locktime=req.locktime,
                required_signatures=req.required_signatures,
                keys=req.keys,
                available_after_block=after,
            )
        )
    return tuple(infos)


def profile_keys(profile: VaultProfile) -> tuple[str, ...]:
    if isinstance(profile, ThreshDecayProfile):
        return tuple(profile.sorted_keys)
    if isinstance(profile, MultisigDecayProfile):
        return tuple(profile.initial_keys)
    return (profile.owner, profile.heir)


def generate_policy(profile: VaultProfile) -> str:
    """Miniscript-style policy text for display. Never parsed back."""
    if isinstance(profile, TimelockProfile):
        return f"or(pk({profile.owner}),and(pk({profile.heir}),after({profile.lock_height})))"
    if isinstance(profile, DeadManSwitchProfile):
        return f"or(pk({profile.owner}),and(pk({profile.heir}),older({profile.sequence})))"
    if isinstance(profile, MultisigDecayProfile):
        before = ",".join(f"pk({k})" for k in profile.initial_keys)
        after = ",".join(f"pk({k})" for k in profile.decayed_keys)
        return (
            f"or(thresh({profile.initial_threshold},{before}),"
            f"and(thresh({profile.decayed_threshold},{after}),after({profile.decay_height})))"
        )
    keys = profile.sorted_keys
    terms = [f"pk({keys[0]})"] + [f"s:pk({k})" for k in keys[1:]]
    return f"thresh({profile.initial_threshold},{','.join(terms)},sln:after({profile.decay_height}))"


def compile_profile(profile: VaultProfile) -> WitnessScript:
    """Compile *profile* into its witness script. Pure and deterministic."""
    compiler = _COMPILERS.get(type(profile))
    if compiler is None:
        raise InvalidProfileParameters(f"Unsupported vault profile: {type(profile).__name__}")

    script = bytes(compiler(profile))
    redeem_info = RedeemInfo(
        kind=profile.kind,
        policy=generate_policy(profile),
        keys=profile_keys(profile),
        spend_paths=_path_info(profile),
    )
    log.debug("Compiled %s witness script (%d bytes)", profile.kind, len(script))
    return WitnessScript(script=script, redeem_info=redeem_info)


# ---------------------------------------------------------------------------
# Script text helpers
# ---------------------------------------------------------------------------

_NAME_OVERRIDES = {
    int(OP_CHECKLOCKTIMEVERIFY): "OP_CHECKLOCKTIMEVERIFY",
    int(OP_CHECKSEQUENCEVERIFY): "OP_CHECKSEQUENCEVERIFY",
}


def _opcode_name(opcode: int) -> str:
    if opcode in _NAME_OVERRIDES:
        return _NAME_OVERRIDES[opcode]
    return OPCODE_NAMES.get(opcode, f"OP_UNKNOWN<0x{opcode:02x}>")


def disassemble(script: bytes) -> str:
    """Render *script* as space-separated ASM (pushes as hex, OP_0 for empty)."""
    parts = []
    try:
        for opcode, data, _ in CScript(script).raw_iter():
            if opcode <= OP_PUSHDATA4:
                parts.append(data.hex() if data else "OP_0")
            else:
                parts.append(_opcode_name(opcode))
    except CScriptInvalidError as exc:
        raise ValueError(f"Malformed script: {exc}") from exc
    return " ".join(parts)


def parse_witness_script(text: str) -> bytes:
    """
    Parse a stored witness script.

    Accepts hex ("632103...") and the legacy comma-separated byte list
    ("99,33,3,...") some stored vaults still carry.
    """
    text = text.strip()
    if "," in text:
        out = bytearray()
        for part in text.split(","):
            part = part.strip()
            try:
                value = int(part, 10)
            except ValueError:
                value = -1
            if not 0 <= value <= 255:
                raise ValueError(f'Invalid byte value in witnessScript: "{part}". Expected 0-255.')
            out.append(value)
        return bytes(out)
    try:
        return bytes.fromhex(text)
    except ValueError as exc:
        raise ValueError(f"Witness script is not valid hex: {exc}") from exc
