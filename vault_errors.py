"""
Error taxonomy for the vault engine.

Every failure in key handling, script compilation, PSBT handling and
finalization is a local, synchronous exception raised to the caller. None of
them are retried internally.
"""

from __future__ import annotations


class VaultError(Exception):
    """Base class for all vault engine errors."""

    pass


class InvalidKeyFormat(VaultError, ValueError):
    """Input is neither a compressed hex pubkey nor a usable extended pubkey."""

    pass


class InvalidProfileParameters(VaultError, ValueError):
    """Profile parameters would produce an ambiguous or unspendable script."""

    pass


class AddressDerivationError(VaultError, RuntimeError):
    """Internal fault while encoding a witness program as an address."""

    pass


class InsufficientFunds(VaultError, ValueError):
    """Vault UTXOs cannot cover the fee (or leave only dust)."""

    pass


class InvalidPsbtFormat(VaultError, ValueError):
    """Input is not a parseable BIP174 PSBT."""

    pass


class IncompletePsbt(VaultError, ValueError):
    """PSBT carries fewer signatures than the spend path requires."""

    pass


class SpendPathMismatch(VaultError, ValueError):
    """Signatures, scripts or timelocks do not match the chosen spend path."""

    pass


class UnsupportedNetwork(VaultError, ValueError):
    """Network name is not one of mainnet, testnet or signet."""

    pass


class VaultConfigError(VaultError):
    """Configuration error for the vault service."""

    pass


class ChainQueryError(VaultError, RuntimeError):
    """Blockchain API lookup or broadcast failed."""

    pass


class ScriptVerificationError(VaultError):
    """A witness failed script evaluation against its witness script."""

    pass
