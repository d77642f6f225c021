"""
Key normalization for vault participants.

Callers hand us either a raw compressed public key in hex or an extended
public key copied out of a hardware wallet. Both are reduced to the same
canonical form: 66 lowercase hex characters (33 bytes, 02/03 prefix).

Only the key embedded at the given node of an extended key is extracted; no
derivation path is walked.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable

from bip_utils import Base58ChecksumError, Base58Decoder

from vault_errors import InvalidKeyFormat

log = logging.getLogger("vault.keys")

HEX_PUBKEY_RE = re.compile(r"^(02|03)[0-9a-fA-F]{64}$")
# xpub/tpub plus the SLIP-132 single-sig (y/z/u/v) and multisig (Y/Z/U/V) variants
EXTENDED_PUBKEY_RE = re.compile(r"^[xtuvyzUVYZ]pub[1-9A-HJ-NP-Za-km-z]{100,}$")

# BIP32 serialization: version(4) depth(1) fingerprint(4) child(4) chaincode(32) key(33)
EXTENDED_KEY_LENGTH = 78
COMPRESSED_PUBKEY_LENGTH = 33


def is_valid_hex_pubkey(key: str) -> bool:
    return bool(HEX_PUBKEY_RE.match(key))


def is_valid_extended_pubkey(key: str) -> bool:
    """Shape check only; checksum and payload are verified by normalize_pubkey()."""
    return bool(EXTENDED_PUBKEY_RE.match(key))


def _pubkey_from_extended(key: str) -> bytes:
    try:
        payload = Base58Decoder.CheckDecode(key)
    except (Base58ChecksumError, ValueError) as exc:
        raise InvalidKeyFormat(f"Extended public key failed base58check decoding: {exc}") from exc

    if len(payload) != EXTENDED_KEY_LENGTH:
        raise InvalidKeyFormat(
            f"Extended public key payload must be {EXTENDED_KEY_LENGTH} bytes, got {len(payload)}."
        )

    pubkey = payload[-COMPRESSED_PUBKEY_LENGTH:]
    if pubkey[0] not in (0x02, 0x03):
        # Private extended keys carry 0x00 here
        raise InvalidKeyFormat(
            f"Extended key does not embed a compressed public key (prefix 0x{pubkey[0]:02x})."
        )
    return pubkey


def normalize_pubkey(key: str) -> str:
    """
    Return the canonical lowercase 66-hex compressed public key for *key*.

    Raises InvalidKeyFormat for anything that is neither a compressed hex
    pubkey nor a decodable extended public key.
    """
    if not isinstance(key, str):
        raise InvalidKeyFormat(f"Public key must be a string, got {type(key).__name__}.")

    trimmed = key.strip()
    if is_valid_hex_pubkey(trimmed):
        return trimmed.lower()

    if is_valid_extended_pubkey(trimmed):
        pubkey = _pubkey_from_extended(trimmed)
        log.debug("Extracted node pubkey from extended key %s...", trimmed[:8])
        return pubkey.hex()

    raise InvalidKeyFormat(
        "Invalid key format. Enter a hex public key (02/03...) "
        "or extended public key (xpub/tpub...)"
    )


def validate_public_key(key: str) -> tuple[bool, str | None]:
    """
    Validate a user-supplied key and return (valid, error_message).

    Messages are meant to be shown to a person pasting a key.
    """
    if not key or not key.strip():
        return False, "Public key is required"

    trimmed = key.strip()

    if trimmed.startswith(("02", "03")):
        if is_valid_hex_pubkey(trimmed):
            return True, None
        return False, (
            "Invalid hex public key. Must be 02 or 03 followed by 64 hex characters (66 total)"
        )

    if re.match(r"^[xtuvyzUVYZ]pub", trimmed):
        try:
            normalize_pubkey(trimmed)
        except InvalidKeyFormat:
            return False, (
                "Invalid extended public key format. Verify you copied the complete xpub/tpub"
            )
        return True, None

    return False, (
        "Invalid key format. Enter a hex public key (02/03...) "
        "or extended public key (xpub/tpub...)"
    )


def sort_pubkeys(keys: Iterable[str]) -> list[str]:
    """BIP67 ordering: ascending byte-lexicographic order of the compressed keys."""
    return sorted(keys, key=bytes.fromhex)
