"""
Cryptographic Primitives for Blinded-Relay Messaging

This module provides the foundational operations used by the envelope codec
and the group ratchet: key generation, HKDF/HMAC derivation, AES-256-GCM and
raw key serialization.
"""

import os
import hmac
import hashlib
from typing import Tuple
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives import serialization, hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class DecryptionFailure(CryptoError):
    """Wrong key, or ciphertext that is corrupt or malformed"""
    pass


class SignatureMismatch(CryptoError):
    """Signature invalid, or signed by someone other than the expected signer"""
    pass


class MalformedWireRecord(CryptoError):
    """A record or payload that does not have the expected shape"""
    pass


def generate_dh_keypair() -> Tuple[X25519PrivateKey, X25519PublicKey]:
    """
    Generate a Curve25519 Diffie-Hellman keypair for key agreement.

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = X25519PrivateKey.generate()
    public_key = private_key.public_key()
    return private_key, public_key


def generate_signing_keypair() -> Tuple[Ed25519PrivateKey, Ed25519PublicKey]:
    """
    Generate an Ed25519 keypair for digital signatures.

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = Ed25519PrivateKey.generate()
    public_key = private_key.public_key()
    return private_key, public_key


def generate_chain_key() -> bytes:
    """Fresh 32-byte chain key from the OS CSPRNG, unrelated to any prior key"""
    return os.urandom(KEY_SIZE)


def dh_exchange(private_key: X25519PrivateKey, public_key: X25519PublicKey) -> bytes:
    """
    Perform Diffie-Hellman key exchange.

    Args:
        private_key: Our private key
        public_key: Their public key

    Returns:
        32-byte shared secret
    """
    return private_key.exchange(public_key)


def hkdf_derive(key_material: bytes, info: bytes, length: int = KEY_SIZE, salt: bytes = None) -> bytes:
    """
    Derive key material with HKDF-SHA256.

    Args:
        key_material: Input key material
        info: Context string for domain separation
        length: Number of bytes to derive
        salt: Optional salt

    Returns:
        Derived key bytes
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        info=info
    )
    return hkdf.derive(key_material)


def hmac_sha256(key: bytes, data: bytes) -> bytes:
    """
    Compute HMAC-SHA256.

    Args:
        key: HMAC key
        data: Data to authenticate

    Returns:
        32-byte HMAC tag
    """
    return hmac.new(key, data, hashlib.sha256).digest()


def sha256_hex(data: bytes) -> str:
    """Lowercase hex SHA-256 digest"""
    return hashlib.sha256(data).hexdigest()


def aead_encrypt(key: bytes, plaintext: bytes, associated_data: bytes = None) -> Tuple[bytes, bytes, bytes]:
    """
    Encrypt with AES-256-GCM under a fresh random nonce.

    Args:
        key: 32-byte encryption key
        plaintext: Message to encrypt
        associated_data: Additional authenticated data

    Returns:
        Tuple of (nonce, tag, ciphertext)
    """
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(key).encrypt(nonce, plaintext, associated_data)
    return nonce, sealed[-TAG_SIZE:], sealed[:-TAG_SIZE]


def aead_decrypt(key: bytes, nonce: bytes, tag: bytes, ciphertext: bytes, associated_data: bytes = None) -> bytes:
    """
    Decrypt and authenticate AES-256-GCM.

    Raises:
        DecryptionFailure: If the nonce or tag has the wrong size or the tag
            does not verify
    """
    if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
        raise DecryptionFailure("Bad nonce or tag length")

    try:
        return AESGCM(key).decrypt(nonce, ciphertext + tag, associated_data)
    except InvalidTag:
        raise DecryptionFailure("Authentication tag mismatch")


def serialize_public_key(public_key: X25519PublicKey) -> bytes:
    """Serialize X25519 public key to bytes"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def deserialize_public_key(key_bytes: bytes) -> X25519PublicKey:
    """Deserialize bytes to X25519 public key"""
    return X25519PublicKey.from_public_bytes(key_bytes)


def serialize_signing_public_key(public_key: Ed25519PublicKey) -> bytes:
    """Serialize Ed25519 public key to bytes"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def deserialize_signing_public_key(key_bytes: bytes) -> Ed25519PublicKey:
    """Deserialize bytes to Ed25519 public key"""
    return Ed25519PublicKey.from_public_bytes(key_bytes)


def serialize_signing_private_key(private_key: Ed25519PrivateKey) -> bytes:
    """Raw 32-byte Ed25519 private key"""
    return private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption()
    )


def deserialize_signing_private_key(key_bytes: bytes) -> Ed25519PrivateKey:
    return Ed25519PrivateKey.from_private_bytes(key_bytes)


def constant_time_compare(a: bytes, b: bytes) -> bool:
    """
    Constant-time comparison to prevent timing attacks.

    Args:
        a: First byte string
        b: Second byte string

    Returns:
        True if equal, False otherwise
    """
    return hmac.compare_digest(a, b)
