"""
Cryptographic module for blinded-relay messaging.

Implements:
- Blinded inbox ids for the relay
- Encrypt-then-sign envelopes for one-to-one messages
- A Sender Keys ratchet for group messages
"""

from .primitives import (
    CryptoError,
    DecryptionFailure,
    SignatureMismatch,
    MalformedWireRecord,
)
from .blind import blind, blind_group
from .identity import Identity, address_from_public_key
from .envelope import Envelope, seal, open_envelope, recover_address
from .payloads import (
    TextMessage,
    GroupSetup,
    GroupKeyUpdate,
    GroupLeave,
    decode_payload,
)
from .outcome import Skipped

__all__ = [
    'CryptoError',
    'DecryptionFailure',
    'SignatureMismatch',
    'MalformedWireRecord',
    'blind',
    'blind_group',
    'Identity',
    'address_from_public_key',
    'Envelope',
    'seal',
    'open_envelope',
    'recover_address',
    'TextMessage',
    'GroupSetup',
    'GroupKeyUpdate',
    'GroupLeave',
    'decode_payload',
    'Skipped',
]
