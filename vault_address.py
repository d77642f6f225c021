"""
Address helpers: P2WSH derivation for vault scripts and destination parsing.

A vault address is the bech32 (BIP173) encoding of the version-0 witness
program sha256(witness_script) under the network's human-readable part.
"""

from __future__ import annotations

import hashlib
import logging

from bip_utils import (
    Base58ChecksumError,
    Base58Decoder,
    Bech32ChecksumError,
    P2WPKHAddrEncoder,
    SegwitBech32Decoder,
    SegwitBech32Encoder,
)

from vault_errors import AddressDerivationError, UnsupportedNetwork
from vault_keys import normalize_pubkey

log = logging.getLogger("vault.address")

# signet shares testnet's hrp and base58 versions
NETWORK_HRP = {"mainnet": "bc", "testnet": "tb", "signet": "tb"}

# (P2PKH, P2SH) base58check version bytes
_BASE58_VERSIONS = {"mainnet": (0x00, 0x05), "testnet": (0x6F, 0xC4), "signet": (0x6F, 0xC4)}

P2WSH_PROGRAM_LENGTH = 32


def get_address_prefix(network: str) -> str:
    """Bech32 human-readable part for *network*."""
    try:
        return NETWORK_HRP[network]
    except KeyError:
        raise UnsupportedNetwork(
            f"Unsupported network {network!r}. Expected one of {', '.join(NETWORK_HRP)}."
        ) from None


def p2wsh_script_pubkey(witness_script: bytes) -> bytes:
    """OP_0 <32-byte sha256(witness_script)>."""
    program = hashlib.sha256(witness_script).digest()
    return bytes([0x00, P2WSH_PROGRAM_LENGTH]) + program


def derive_address(witness_script: bytes, network: str) -> str:
    hrp = get_address_prefix(network)
    program = hashlib.sha256(witness_script).digest()
    try:
        address = SegwitBech32Encoder.Encode(hrp, 0, program)
    except (ValueError, TypeError) as exc:
        raise AddressDerivationError(f"Failed to encode P2WSH address: {exc}") from exc
    log.debug("Derived %s P2WSH address %s", network, address)
    return address


def p2wpkh_address(pubkey: str, network: str) -> str:
    """Native segwit single-key address for a (normalized) public key."""
    hrp = get_address_prefix(network)
    key = bytes.fromhex(normalize_pubkey(pubkey))
    try:
        return P2WPKHAddrEncoder.EncodeKey(key, hrp=hrp)
    except (ValueError, TypeError) as exc:
        raise AddressDerivationError(f"Failed to encode P2WPKH address: {exc}") from exc


def _segwit_script(version: int, program: bytes) -> bytes:
    op = 0x00 if version == 0 else 0x50 + version
    return bytes([op, len(program)]) + program


def address_to_script_pubkey(address: str, network: str) -> bytes:
    """
    Decode a destination address into its scriptPubKey.

    Accepts segwit (bech32 / bech32m) and legacy base58 P2PKH / P2SH
    addresses. Raises ValueError when the address is malformed or belongs to
    a different network.
    """
    hrp = get_address_prefix(network)
    address = address.strip()

    if address.lower().startswith(hrp + "1"):
        try:
            version, program = SegwitBech32Decoder.Decode(hrp, address)
        except (Bech32ChecksumError, ValueError) as exc:
            raise ValueError(f"Invalid {network} segwit address {address!r}: {exc}") from exc
        return _segwit_script(version, bytes(program))

    try:
        payload = Base58Decoder.CheckDecode(address)
    except (Base58ChecksumError, ValueError) as exc:
        raise ValueError(f"Invalid {network} address {address!r}: {exc}") from exc

    if len(payload) != 21:
        raise ValueError(f"Invalid {network} address {address!r}: unexpected payload length.")

    p2pkh_version, p2sh_version = _BASE58_VERSIONS[network]
    version, digest = payload[0], payload[1:]
    if version == p2pkh_version:
        # OP_DUP OP_HASH160 <20> OP_EQUALVERIFY OP_CHECKSIG
        return b"\x76\xa9\x14" + digest + b"\x88\xac"
    if version == p2sh_version:
        # OP_HASH160 <20> OP_EQUAL
        return b"\xa9\x14" + digest + b"\x87"
    raise ValueError(f"Address {address!r} does not belong to {network}.")


def validate_address(address: str, network: str) -> bool:
    try:
        address_to_script_pubkey(address, network)
    except ValueError:
        return False
    return True


def get_address_type(address: str) -> str:
    """
    Classify an address by its prefix: p2wpkh, p2wsh, p2tr, p2pkh, p2sh or
    unknown. Does not verify checksums; use validate_address() for that.
    """
    lower = address.strip().lower()
    for hrp in ("bc", "tb"):
        if lower.startswith(hrp + "1q"):
            # 20-byte program -> 42 chars, 32-byte program -> 62 chars
            return "p2wpkh" if len(lower) == 42 else "p2wsh"
        if lower.startswith(hrp + "1p"):
            return "p2tr"
    if address[:1] in ("1", "m", "n"):
        return "p2pkh"
    if address[:1] in ("3", "2"):
        return "p2sh"
    return "unknown"
