import hashlib
import sys
from pathlib import Path

import pytest
from bitcoin.core.script import SIGHASH_ALL, SIGVERSION_WITNESS_V0, CScript, SignatureHash
from coincurve import PrivateKey

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

from vault_psbt import Psbt  # noqa: E402


def make_key(label: str) -> PrivateKey:
    return PrivateKey(hashlib.sha256(label.encode()).digest())


def pub(priv: PrivateKey) -> str:
    return priv.public_key.format(compressed=True).hex()


def sign_psbt(psbt_text: str, *privkeys: PrivateKey) -> str:
    """Add a SIGHASH_ALL partial signature from each key to every input."""
    psbt = Psbt.from_string(psbt_text)
    for i, inp in enumerate(psbt.inputs):
        sighash = SignatureHash(
            CScript(inp.witness_script),
            psbt.tx,
            i,
            SIGHASH_ALL,
            amount=inp.witness_utxo.nValue,
            sigversion=SIGVERSION_WITNESS_V0,
        )
        for priv in privkeys:
            sig = priv.sign(sighash, hasher=None) + bytes([SIGHASH_ALL])
            inp.partial_sigs[priv.public_key.format(compressed=True)] = sig
    return psbt.to_base64()


@pytest.fixture
def keys():
    return {name: make_key(name) for name in ("owner", "heir", "heir2", "heir3")}


@pytest.fixture
def pubkeys(keys):
    return {name: pub(priv) for name, priv in keys.items()}
