"""
Vault configuration -> typed profile -> compiled vault.

The configuration is the plain dict the storage layer hands us:

    {
        "logic": "timelock" | "dead_man_switch" | "multisig_decay" | "thresh_decay",
        "network": "mainnet" | "testnet" | "signet",
        "owner_pubkey": "02..." | "xpub...",
        "heir_pubkeys": ["03...", ...],
        "lock_height": 900000,             # or "lock_date": "2030-01-01"
        "inactivity_blocks": 12960,        # or "inactivity_days": 90
        "decay": {...},                    # decay profiles only
        "pubkeys": [...],                  # thresh_decay only
    }
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any

from vault_address import derive_address, get_address_prefix, p2wsh_script_pubkey
from vault_errors import InvalidProfileParameters
from vault_scripts import (
    DeadManSwitchProfile,
    MultisigDecayProfile,
    ThreshDecayProfile,
    TimelockProfile,
    VaultProfile,
    WitnessScript,
    compile_profile,
    locktime_kind,
)

log = logging.getLogger("vault.generator")

BLOCKS_PER_DAY = 144


def blocks_from_days(days: int) -> int:
    if isinstance(days, bool) or not isinstance(days, int) or days < 1:
        raise InvalidProfileParameters(f"Day count must be a positive integer, got {days!r}.")
    return days * BLOCKS_PER_DAY


def lock_height_from_date(
    lock_date: str | date, current_height: int, today: date | None = None
) -> int:
    """Estimate the block height reached at *lock_date* (144 blocks per day)."""
    if isinstance(lock_date, str):
        try:
            lock_date = date.fromisoformat(lock_date[:10])
        except ValueError as exc:
            raise InvalidProfileParameters(f"lock_date is not an ISO date: {lock_date!r}") from exc
    today = today or date.today()
    days = (lock_date - today).days
    if days < 1:
        raise InvalidProfileParameters(f"lock_date {lock_date.isoformat()} is not in the future.")
    return current_height + days * BLOCKS_PER_DAY


def _heirs(config: dict[str, Any]) -> list[str]:
    heirs = config.get("heir_pubkeys") or []
    if isinstance(heirs, str):
        heirs = [heirs]
    heirs = [h for h in heirs if h]
    if not heirs:
        raise InvalidProfileParameters("At least one heir public key is required.")
    return heirs


def _owner(config: dict[str, Any]) -> str:
    owner = config.get("owner_pubkey")
    if not owner:
        raise InvalidProfileParameters("Owner public key is required.")
    return owner


def _absolute_lock(config: dict[str, Any], current_height: int | None) -> int:
    if config.get("lock_height") is not None:
        return config["lock_height"]
    if config.get("lock_date"):
        if current_height is None:
            raise InvalidProfileParameters("lock_date requires the current block height.")
        return lock_height_from_date(config["lock_date"], current_height)
    raise InvalidProfileParameters("Either lock_height or lock_date is required.")


def _decay(config: dict[str, Any], current_height: int | None) -> dict[str, Any]:
    decay = dict(config.get("decay") or {})
    if not decay:
        raise InvalidProfileParameters(f"{config.get('logic')} vaults require a decay configuration.")
    if decay.get("decay_height") is None:
        if decay.get("decay_date"):
            if current_height is None:
                raise InvalidProfileParameters("decay_date requires the current block height.")
            decay["decay_height"] = lock_height_from_date(decay["decay_date"], current_height)
        elif config.get("lock_height") is not None or config.get("lock_date"):
            decay["decay_height"] = _absolute_lock(config, current_height)
        else:
            raise InvalidProfileParameters("Decay configuration requires decay_height.")
    return decay


def profile_from_config(config: dict[str, Any], current_height: int | None = None) -> VaultProfile:
    """Build the typed profile described by a stored vault configuration."""
    logic = config.get("logic")

    if logic == "timelock":
        heirs = _heirs(config)
        return TimelockProfile(
            owner=_owner(config),
            heir=heirs[0],
            lock_height=_absolute_lock(config, current_height),
        )

    if logic == "dead_man_switch":
        heirs = _heirs(config)
        if config.get("inactivity_blocks") is not None:
            blocks = config["inactivity_blocks"]
        elif config.get("inactivity_days") is not None:
            blocks = blocks_from_days(config["inactivity_days"])
        else:
            raise InvalidProfileParameters("inactivity_blocks or inactivity_days is required.")
        return DeadManSwitchProfile(owner=_owner(config), heir=heirs[0], inactivity_blocks=blocks)

    if logic == "multisig_decay":
        heirs = _heirs(config)
        decay = _decay(config, current_height)
        return MultisigDecayProfile(
            owner=_owner(config),
            heirs=tuple(heirs),
            initial_threshold=decay.get("initial_threshold", 2),
            initial_total=decay.get("initial_total", len(heirs) + 1),
            decayed_threshold=decay.get("decayed_threshold", 1),
            decayed_total=decay.get("decayed_total", len(heirs)),
            decay_height=decay["decay_height"],
        )

    if logic == "thresh_decay":
        pubkeys = config.get("pubkeys")
        if not pubkeys:
            pubkeys = [_owner(config), *_heirs(config)]
        decay = _decay(config, current_height)
        return ThreshDecayProfile(
            pubkeys=tuple(pubkeys),
            initial_threshold=decay.get("initial_threshold", 2),
            decay_height=decay["decay_height"],
        )

    raise InvalidProfileParameters(
        f"Unknown vault logic {logic!r}. Expected timelock, dead_man_switch, "
        "multisig_decay or thresh_decay."
    )


@dataclass(frozen=True)
class CompiledVault:
    profile: VaultProfile
    network: str
    witness_script: WitnessScript
    address: str
    script_pubkey: bytes

    def to_dict(self) -> dict[str, Any]:
        data = {
            "address": self.address,
            "network": self.network,
            "script_pubkey": self.script_pubkey.hex(),
            "profile": self.profile.to_dict(),
        }
        data.update(self.witness_script.to_dict())
        lock = getattr(self.profile, "lock_height", None) or getattr(self.profile, "decay_height", None)
        if lock is not None:
            data["locktime_kind"] = locktime_kind(lock)
        return data


def create_vault(profile: VaultProfile, network: str) -> CompiledVault:
    """Compile *profile* and derive its P2WSH address on *network*."""
    get_address_prefix(network)
    witness_script = compile_profile(profile)
    address = derive_address(witness_script.script, network)
    log.info("Created %s vault %s on %s", profile.kind, address, network)
    return CompiledVault(
        profile=profile,
        network=network,
        witness_script=witness_script,
        address=address,
        script_pubkey=p2wsh_script_pubkey(witness_script.script),
    )


def compiled_vault_from_config(
    config: dict[str, Any], current_height: int | None = None, network: str | None = None
) -> CompiledVault:
    network = network or config.get("network") or "mainnet"
    return create_vault(profile_from_config(config, current_height), network)


def can_generate_address(config: dict[str, Any]) -> bool:
    """True when *config* carries enough valid material to derive an address."""
    try:
        profile_from_config(config, current_height=config.get("current_height"))
    except (InvalidProfileParameters, ValueError):
        return False
    return True
