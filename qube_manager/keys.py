from __future__ import annotations

"""qube_manager.keys - node keypair management and Ed25519 signatures.

The keypair lives in ``<config_dir>/keys.json`` as raw hex::

    {"private_key": "<64 hex>", "public_key": "<64 hex>"}

A missing file is replaced by a freshly generated key.  A file that exists
but cannot be read is fatal: silently minting a new identity would change
who this node is to the rest of the fleet.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from .errors import KeyMaterialError

logger = logging.getLogger(__name__)

KEYS_FILENAME = "keys.json"


# ---------------------------------------------------------------------------
# Key management helpers
# ---------------------------------------------------------------------------


def _raw_public_hex(pub: ed25519.Ed25519PublicKey) -> str:
    return pub.public_bytes(
        encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw
    ).hex()


@dataclass(frozen=True)
class Keypair:
    private_key: str
    public_key: str

    @classmethod
    def generate(cls) -> "Keypair":
        priv = ed25519.Ed25519PrivateKey.generate()
        priv_hex = priv.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        ).hex()
        return cls(private_key=priv_hex, public_key=_raw_public_hex(priv.public_key()))

    @classmethod
    def from_private_hex(cls, private_hex: str) -> "Keypair":
        priv = ed25519.Ed25519PrivateKey.from_private_bytes(bytes.fromhex(private_hex))
        return cls(private_key=private_hex.lower(), public_key=_raw_public_hex(priv.public_key()))

    def sign(self, message: bytes) -> str:
        """Return the hex Ed25519 signature over *message*."""
        priv = ed25519.Ed25519PrivateKey.from_private_bytes(bytes.fromhex(self.private_key))
        return priv.sign(message).hex()


def verify(public_hex: str, message: bytes, signature_hex: str) -> bool:
    """Return **True** if *signature_hex* is valid for *message*, else **False**."""
    try:
        pub = ed25519.Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_hex))
        pub.verify(bytes.fromhex(signature_hex), message)
        return True
    except (InvalidSignature, ValueError, TypeError):
        return False


def load_or_create_keypair(config_dir: Path) -> Keypair:
    path = Path(config_dir) / KEYS_FILENAME
    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            kp = Keypair.from_private_hex(data["private_key"])
            stored_public = str(data.get("public_key", kp.public_key)).lower()
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            raise KeyMaterialError(f"Invalid key file {path}: {exc}") from exc
        if stored_public != kp.public_key:
            raise KeyMaterialError(f"Public key in {path} does not match private key")
        logger.info("Loaded keypair from %s (public key %s)", path, kp.public_key)
        return kp

    kp = Keypair.generate()
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({"private_key": kp.private_key, "public_key": kp.public_key}, f, indent=2)
    except OSError as exc:
        raise KeyMaterialError(f"Failed to write key file {path}: {exc}") from exc
    logger.info("Generated new keypair at %s (public key %s)", path, kp.public_key)
    return kp
