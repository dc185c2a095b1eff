"""
Envelope codec for one-to-one messages.

An envelope is encrypt-then-sign: the plaintext is sealed to the recipient's
X25519 key with an ephemeral key agreement and AES-256-GCM, and the resulting
ciphertext string is signed with the sender's Ed25519 key.

Opening and verifying are separate steps. A valid signature only proves the
ciphertext was signed by *some* key; the caller must compare the recovered
address with the address of the sender it expects, computed from a public
key it fetched independently.
"""

from dataclasses import dataclass
from typing import Union
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from .identity import address_from_signing_key, encryption_key_from_public_key
from .primitives import (
    KEY_SIZE,
    NONCE_SIZE,
    TAG_SIZE,
    generate_dh_keypair,
    dh_exchange,
    hkdf_derive,
    aead_encrypt,
    aead_decrypt,
    serialize_public_key,
    deserialize_public_key,
    serialize_signing_public_key,
    deserialize_signing_public_key,
    constant_time_compare,
    DecryptionFailure,
    SignatureMismatch,
    MalformedWireRecord,
)

ENVELOPE_INFO = b"envelope-v1"
SIGNATURE_SIZE = 64


@dataclass
class Envelope:
    """
    Wire form of a one-to-one message.

    Attributes:
        ciphertext: Lowercase hex of ephemeral_pub || nonce || ciphertext || tag
        signature: Lowercase hex of verifying_key || ed25519 signature over ciphertext
    """
    ciphertext: str
    signature: str

    def to_dict(self) -> dict:
        return {'message': self.ciphertext, 'signature': self.signature}

    @classmethod
    def from_dict(cls, data: dict) -> 'Envelope':
        """Build from a transport record; the signature is required here"""
        message = data.get('message')
        signature = data.get('signature')
        if not isinstance(message, str) or not isinstance(signature, str):
            raise MalformedWireRecord("Envelope record needs 'message' and 'signature'")
        return cls(ciphertext=message, signature=signature)

    def signer_address(self) -> str:
        """Address of whoever signed this envelope"""
        return recover_address(self.ciphertext, self.signature)

    def verify(self, expected_address: str) -> None:
        """
        Check the envelope was signed by the holder of `expected_address`.

        Raises:
            SignatureMismatch: If the signature is invalid or belongs to someone else
        """
        recovered = self.signer_address()
        if recovered.lower() != expected_address.lower():
            raise SignatureMismatch(f"Signed by {recovered}, expected {expected_address}")


def _key_info(ephemeral_public: bytes, recipient_public: bytes) -> bytes:
    return ENVELOPE_INFO + ephemeral_public + recipient_public


def encrypt_for(recipient_public_key: str, plaintext: bytes) -> str:
    """
    Hybrid-encrypt `plaintext` to a published public key.

    Args:
        recipient_public_key: Recipient's published key (hex)
        plaintext: Bytes to encrypt

    Returns:
        Lowercase hex ciphertext string
    """
    recipient = encryption_key_from_public_key(recipient_public_key)
    recipient_bytes = serialize_public_key(recipient)

    ephemeral_private, ephemeral_public = generate_dh_keypair()
    ephemeral_bytes = serialize_public_key(ephemeral_public)

    shared = dh_exchange(ephemeral_private, recipient)
    key = hkdf_derive(shared, _key_info(ephemeral_bytes, recipient_bytes))

    nonce, tag, ciphertext = aead_encrypt(key, plaintext, ephemeral_bytes)
    return (ephemeral_bytes + nonce + ciphertext + tag).hex()


def decrypt_with(private_key: X25519PrivateKey, ciphertext: str) -> bytes:
    """
    Decrypt a string produced by `encrypt_for`.

    Raises:
        DecryptionFailure: Wrong private key, or malformed/corrupt ciphertext
    """
    try:
        raw = bytes.fromhex(ciphertext)
    except ValueError:
        raise DecryptionFailure("Ciphertext is not hex")

    if len(raw) < KEY_SIZE + NONCE_SIZE + TAG_SIZE:
        raise DecryptionFailure("Ciphertext too short")

    ephemeral_bytes = raw[:KEY_SIZE]
    nonce = raw[KEY_SIZE:KEY_SIZE + NONCE_SIZE]
    body = raw[KEY_SIZE + NONCE_SIZE:]

    try:
        ephemeral_public = deserialize_public_key(ephemeral_bytes)
        shared = dh_exchange(private_key, ephemeral_public)
    except ValueError as e:
        raise DecryptionFailure(f"Bad ephemeral key: {e}")

    recipient_bytes = serialize_public_key(private_key.public_key())
    key = hkdf_derive(shared, _key_info(ephemeral_bytes, recipient_bytes))
    return aead_decrypt(key, nonce, body[-TAG_SIZE:], body[:-TAG_SIZE], ephemeral_bytes)


def sign(signing_key: Ed25519PrivateKey, message: str) -> str:
    """
    Sign a wire string.

    Returns:
        Lowercase hex of verifying_key || signature
    """
    verifying_key = serialize_signing_public_key(signing_key.public_key())
    signature = signing_key.sign(message.encode('utf-8'))
    return (verifying_key + signature).hex()


def _split_signature(signature: str) -> tuple:
    try:
        raw = bytes.fromhex(signature)
    except ValueError:
        raise SignatureMismatch("Signature is not hex")
    if len(raw) != KEY_SIZE + SIGNATURE_SIZE:
        raise SignatureMismatch("Signature has the wrong length")
    return raw[:KEY_SIZE], raw[KEY_SIZE:]


def recover_verifying_key(message: str, signature: str) -> bytes:
    """
    Verify `signature` over `message` and return the key that produced it.

    Raises:
        SignatureMismatch: If the signature does not verify
    """
    verifying_key, raw_signature = _split_signature(signature)
    try:
        deserialize_signing_public_key(verifying_key).verify(raw_signature, message.encode('utf-8'))
    except (InvalidSignature, ValueError):
        raise SignatureMismatch("Signature does not verify")
    return verifying_key


def recover_address(message: str, signature: str) -> str:
    """Address of the key that signed `message`"""
    return address_from_signing_key(recover_verifying_key(message, signature))


def verify_signature(message: str, signature: str, verifying_key: bytes) -> None:
    """
    Verify `message` was signed by the given Ed25519 key.

    Raises:
        SignatureMismatch: If invalid or signed by a different key
    """
    recovered = recover_verifying_key(message, signature)
    if not constant_time_compare(recovered, verifying_key):
        raise SignatureMismatch("Signed by an unexpected key")


def seal(plaintext: Union[str, bytes], recipient_public_key: str,
         sender_signing_key: Ed25519PrivateKey) -> Envelope:
    """
    Encrypt to the recipient, then sign the ciphertext.

    Args:
        plaintext: Message body; str is UTF-8 encoded
        recipient_public_key: Recipient's published key (hex)
        sender_signing_key: Sender's Ed25519 private key

    Returns:
        Envelope ready for the transport
    """
    if isinstance(plaintext, str):
        plaintext = plaintext.encode('utf-8')
    ciphertext = encrypt_for(recipient_public_key, plaintext)
    return Envelope(ciphertext=ciphertext, signature=sign(sender_signing_key, ciphertext))


def open_envelope(envelope: Envelope, recipient_private_key: X25519PrivateKey) -> bytes:
    """
    Decrypt an envelope. Does not check the signature; see `Envelope.verify`.

    Raises:
        DecryptionFailure: If the key does not match or the ciphertext is malformed
    """
    return decrypt_with(recipient_private_key, envelope.ciphertext)
