"""
Local identity keys.

An identity is controlled by a single 32-byte private seed. The Ed25519
signing key is the seed itself; the X25519 decryption key is derived from it,
so the whole identity can be restored from one secret.
"""

import os
import hashlib
from dataclasses import dataclass
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from .primitives import (
    KEY_SIZE,
    hkdf_derive,
    serialize_public_key,
    serialize_signing_public_key,
    deserialize_public_key,
    MalformedWireRecord,
)


X25519_INFO = b"identity-x25519"
PUBLIC_KEY_SIZE = 64  # x25519 || ed25519


def address_from_signing_key(verifying_key: bytes) -> str:
    """Address for a raw Ed25519 verifying key: 0x + last 20 bytes of its SHA-256"""
    return "0x" + hashlib.sha256(verifying_key).digest()[-20:].hex()


def split_public_key(public_key: str) -> tuple:
    """
    Split a published public key into its halves.

    Args:
        public_key: 128-char hex of x25519_pub || ed25519_pub

    Returns:
        Tuple of (x25519 bytes, ed25519 bytes)

    Raises:
        MalformedWireRecord: If the key is not valid hex of the right length
    """
    try:
        raw = bytes.fromhex(public_key.removeprefix("0x"))
    except ValueError:
        raise MalformedWireRecord("Public key is not hex")
    if len(raw) != PUBLIC_KEY_SIZE:
        raise MalformedWireRecord(f"Public key must be {PUBLIC_KEY_SIZE} bytes, got {len(raw)}")
    return raw[:KEY_SIZE], raw[KEY_SIZE:]


def address_from_public_key(public_key: str) -> str:
    """Compute the address a published public key belongs to"""
    _, verifying_key = split_public_key(public_key)
    return address_from_signing_key(verifying_key)


def encryption_key_from_public_key(public_key: str) -> X25519PublicKey:
    encryption_key, _ = split_public_key(public_key)
    return deserialize_public_key(encryption_key)


@dataclass
class Identity:
    """
    Keys for the local party. Never transmitted.

    Attributes:
        seed: 32-byte private seed
        signing_key: Ed25519 private key
        decryption_key: X25519 private key
    """
    seed: bytes
    signing_key: Ed25519PrivateKey
    decryption_key: X25519PrivateKey

    @classmethod
    def from_seed(cls, seed: bytes) -> "Identity":
        if len(seed) != KEY_SIZE:
            raise ValueError(f"Identity seed must be {KEY_SIZE} bytes")
        signing_key = Ed25519PrivateKey.from_private_bytes(seed)
        decryption_key = X25519PrivateKey.from_private_bytes(hkdf_derive(seed, X25519_INFO))
        return cls(seed=seed, signing_key=signing_key, decryption_key=decryption_key)

    @classmethod
    def generate(cls) -> "Identity":
        return cls.from_seed(os.urandom(KEY_SIZE))

    @property
    def verifying_key(self) -> bytes:
        return serialize_signing_public_key(self.signing_key.public_key())

    @property
    def encryption_key(self) -> bytes:
        return serialize_public_key(self.decryption_key.public_key())

    @property
    def public_key(self) -> str:
        """The key published to the Directory"""
        return (self.encryption_key + self.verifying_key).hex()

    @property
    def address(self) -> str:
        return address_from_signing_key(self.verifying_key)

    def __repr__(self) -> str:
        return f"Identity(address={self.address!r})"
