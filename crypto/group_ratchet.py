"""
Sender Keys group ratchet.

Each group member owns one sending chain. Every message advances the chain:

    message_key    = HMAC-SHA256(chain_key, "msg_key")
    next_chain_key = HMAC-SHA256(chain_key, "next_chain")

The two derivations are independent, so a leaked message key reveals nothing
about the next chain key, and no output leads back to an earlier chain key.
Callers must persist `next_chain_key` before using `message_key`.

Group ciphertexts travel as three colon-separated lowercase hex fields:
"<iv>:<authTag>:<ciphertext>" (AES-256-GCM, 12-byte IV, 16-byte tag).
"""

import logging
from dataclasses import dataclass
from typing import Tuple

from .outcome import Outcome, Skipped
from .primitives import (
    KEY_SIZE,
    NONCE_SIZE,
    TAG_SIZE,
    hmac_sha256,
    aead_encrypt,
    aead_decrypt,
    DecryptionFailure,
    MalformedWireRecord,
)

logger = logging.getLogger(__name__)

MESSAGE_KEY_LABEL = b"msg_key"
CHAIN_KEY_LABEL = b"next_chain"

# Lost messages a receiver will step over on one member's track
MAX_SKIP = 32


def advance(chain_key: bytes) -> Tuple[bytes, bytes]:
    """
    One ratchet step.

    Args:
        chain_key: Current 32-byte chain key

    Returns:
        Tuple of (message_key, next_chain_key)
    """
    if len(chain_key) != KEY_SIZE:
        raise ValueError(f"Chain key must be {KEY_SIZE} bytes")
    return hmac_sha256(chain_key, MESSAGE_KEY_LABEL), hmac_sha256(chain_key, CHAIN_KEY_LABEL)


def encrypt(plaintext: bytes, message_key: bytes) -> str:
    """Encrypt one group message and return the wire triplet"""
    nonce, tag, ciphertext = aead_encrypt(message_key, plaintext)
    return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"


@dataclass
class WireMessage:
    """Parsed group wire triplet"""
    nonce: bytes
    tag: bytes
    ciphertext: bytes

    @classmethod
    def parse(cls, wire: str) -> 'WireMessage':
        """
        Raises:
            MalformedWireRecord: Missing field, bad hex, or wrong IV/tag length
        """
        parts = wire.split(":") if isinstance(wire, str) else []
        if len(parts) != 3:
            raise MalformedWireRecord("Expected <iv>:<authTag>:<ciphertext>")
        try:
            nonce, tag, ciphertext = (bytes.fromhex(part) for part in parts)
        except ValueError:
            raise MalformedWireRecord("Wire field is not hex")
        if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
            raise MalformedWireRecord("Wrong IV or auth tag length")
        return cls(nonce=nonce, tag=tag, ciphertext=ciphertext)


@dataclass
class Received:
    """
    A group message decrypted on some member's track.

    Attributes:
        plaintext: Decrypted bytes
        next_chain_key: Chain key to persist for that member
        steps: Ratchet steps taken (1 when nothing was lost)
    """
    plaintext: bytes
    next_chain_key: bytes
    steps: int


def receive(wire: str, chain_key: bytes, max_skip: int = MAX_SKIP) -> Outcome[Received]:
    """
    Try to decrypt `wire` by running a member's chain forward.

    Tries the next key first, then up to `max_skip` further steps for
    messages that never arrived. Nothing is mutated; the caller persists
    `next_chain_key` on success.

    Returns:
        Received, or Skipped when the record is malformed or no key on the
        track (within the window) decrypts it
    """
    try:
        message = WireMessage.parse(wire)
    except MalformedWireRecord as e:
        return Skipped(str(e))

    current = chain_key
    for step in range(1, max_skip + 2):
        message_key, current = advance(current)
        try:
            plaintext = aead_decrypt(message_key, message.nonce, message.tag, message.ciphertext)
        except DecryptionFailure:
            continue
        if step > 1:
            logger.debug("Stepped over %d lost group message(s)", step - 1)
        return Received(plaintext=plaintext, next_chain_key=current, steps=step)

    return Skipped("No key on this track decrypts the message")
