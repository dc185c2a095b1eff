"""
Tests for the cryptographic layer: primitives, identity, blinding, the
envelope codec, payload decoding and the group ratchet.
"""

import json
import pytest

from crypto.primitives import (
    aead_encrypt,
    aead_decrypt,
    generate_chain_key,
    hkdf_derive,
    DecryptionFailure,
    SignatureMismatch,
    MalformedWireRecord,
)
from crypto.blind import blind, blind_group
from crypto.identity import Identity, address_from_public_key
from crypto.envelope import Envelope, seal, open_envelope, recover_address, sign, verify_signature
from crypto.payloads import TextMessage, GroupSetup, GroupLeave, GroupKeyUpdate, decode_payload
from crypto.outcome import Skipped
from crypto import group_ratchet


def test_aead_roundtrip_and_wrong_key():
    key = b"0" * 32
    nonce, tag, ciphertext = aead_encrypt(key, b"Hello, World!")

    assert len(nonce) == 12 and len(tag) == 16
    assert aead_decrypt(key, nonce, tag, ciphertext) == b"Hello, World!"

    with pytest.raises(DecryptionFailure):
        aead_decrypt(b"1" * 32, nonce, tag, ciphertext)


def test_hkdf_domain_separation():
    seed = b"s" * 32
    assert hkdf_derive(seed, b"a") != hkdf_derive(seed, b"b")
    assert len(hkdf_derive(seed, b"a", length=64)) == 64


def test_identity_restores_from_seed():
    alice = Identity.generate()
    restored = Identity.from_seed(alice.seed)

    assert restored.public_key == alice.public_key
    assert restored.address == alice.address
    assert len(alice.public_key) == 128
    assert alice.address.startswith("0x") and len(alice.address) == 42
    assert address_from_public_key(alice.public_key) == alice.address


def test_identity_repr_hides_secrets():
    alice = Identity.generate()
    assert alice.seed.hex() not in repr(alice)


def test_blind_is_deterministic_and_case_insensitive():
    assert blind("Alice") == blind("alice")
    assert blind("alice") == blind("alice")
    assert blind("alice") != blind("bob")
    assert len(blind("alice")) == 64
    assert "alice" not in blind("alice")


def test_blind_known_vector():
    # sha256("alice")
    assert blind("ALICE") == "2bd806c97f0e00af1a1fc3328fa763a9269723c8db8fac4f93af71db186d6e90"


def test_blind_group_depends_on_creator():
    alice, bob = Identity.generate(), Identity.generate()

    assert blind_group("team", alice.public_key) == blind_group("Team", alice.public_key)
    assert blind_group("team", alice.public_key) != blind_group("team", bob.public_key)
    assert blind_group("team", alice.public_key) != blind("team")


def test_envelope_roundtrip():
    alice, bob = Identity.generate(), Identity.generate()

    envelope = seal("hello bob", bob.public_key, alice.signing_key)

    assert open_envelope(envelope, bob.decryption_key) == b"hello bob"
    assert envelope.signer_address() == alice.address
    envelope.verify(alice.address)


def test_envelope_wrong_recipient_fails():
    alice, bob, eve = Identity.generate(), Identity.generate(), Identity.generate()
    envelope = seal("secret", bob.public_key, alice.signing_key)

    with pytest.raises(DecryptionFailure):
        open_envelope(envelope, eve.decryption_key)


def test_envelope_malformed_ciphertext_fails():
    bob = Identity.generate()
    with pytest.raises(DecryptionFailure):
        open_envelope(Envelope(ciphertext="zz", signature=""), bob.decryption_key)
    with pytest.raises(DecryptionFailure):
        open_envelope(Envelope(ciphertext="00" * 20, signature=""), bob.decryption_key)


def test_envelope_tamper_breaks_signature():
    alice, bob = Identity.generate(), Identity.generate()
    envelope = seal("pay 10", bob.public_key, alice.signing_key)

    for position in (0, len(envelope.ciphertext) // 2, len(envelope.ciphertext) - 1):
        flipped = "0" if envelope.ciphertext[position] != "0" else "1"
        tampered = envelope.ciphertext[:position] + flipped + envelope.ciphertext[position + 1:]
        with pytest.raises(SignatureMismatch):
            recover_address(tampered, envelope.signature)


def test_envelope_signed_by_someone_else():
    alice, bob, mallory = Identity.generate(), Identity.generate(), Identity.generate()
    envelope = seal("I am alice", bob.public_key, mallory.signing_key)

    # the signature is valid, just not alice's
    assert envelope.signer_address() == mallory.address
    with pytest.raises(SignatureMismatch):
        envelope.verify(alice.address)


def test_envelope_from_record_requires_signature():
    with pytest.raises(MalformedWireRecord):
        Envelope.from_dict({'message': 'abcd'})


def test_verify_signature_against_specific_key():
    alice, bob = Identity.generate(), Identity.generate()
    signature = sign(alice.signing_key, "notice")

    verify_signature("notice", signature, alice.verifying_key)
    with pytest.raises(SignatureMismatch):
        verify_signature("notice", signature, bob.verifying_key)
    with pytest.raises(SignatureMismatch):
        verify_signature("notice", "not-hex", alice.verifying_key)


def test_payload_shapes():
    message = json.loads(TextMessage(text="hi", sender_id="alice", created_at=1).to_json())
    assert message == {"type": "TEXT", "text": "hi", "senderId": "alice", "createdAt": 1}

    leave = json.loads(GroupLeave(group_id="team", sender_id="bob").to_json())
    assert leave == {"type": "GROUP_LEAVE", "groupId": "team", "senderId": "bob"}

    setup = json.loads(GroupSetup(
        group_id="team", group_inbox_id="ab", creator="alice",
        chain_key="00", signing_pub_key="11",
    ).to_json())
    assert setup == {
        "type": "GROUP_SETUP", "groupId": "team", "groupInboxId": "ab",
        "creator": "alice", "chainKey": "00", "signingPubKey": "11",
    }


def test_decode_payload_variants():
    update = GroupKeyUpdate(group_id="team", chain_key="00", signing_pub_key="11")
    assert decode_payload(update.to_json()) == update

    legacy = decode_payload('{"text": "hi", "senderId": "alice", "createdAt": 5}')
    assert isinstance(legacy, TextMessage) and legacy.sender_id == "alice"


@pytest.mark.parametrize("raw", [
    "not json",
    "[1, 2]",
    '{"type": "GROUP_PARTY", "groupId": "x"}',
    '{"type": "GROUP_LEAVE", "groupId": "x"}',
    '{"chainKey": "00"}',
])
def test_decode_payload_rejects(raw):
    with pytest.raises(MalformedWireRecord):
        decode_payload(raw)


def test_ratchet_advance_is_deterministic_one_way():
    chain_key = generate_chain_key()
    message_key, next_key = group_ratchet.advance(chain_key)

    assert group_ratchet.advance(chain_key) == (message_key, next_key)
    assert next_key != chain_key
    assert message_key != next_key


def test_ratchet_never_revisits():
    seen = set()
    current = generate_chain_key()
    for _ in range(1000):
        seen.add(current)
        message_key, current = group_ratchet.advance(current)
        assert current not in seen
        assert message_key not in seen
        seen.add(message_key)


def test_ratchet_rejects_bad_key_length():
    with pytest.raises(ValueError):
        group_ratchet.advance(b"short")


def test_group_wire_format():
    message_key, _ = group_ratchet.advance(generate_chain_key())
    wire = group_ratchet.encrypt(b'{"text": "hi"}', message_key)

    iv, tag, ciphertext = wire.split(":")
    assert len(iv) == 24 and len(tag) == 32
    assert wire == wire.lower()
    parsed = group_ratchet.WireMessage.parse(wire)
    assert aead_decrypt(message_key, parsed.nonce, parsed.tag, parsed.ciphertext) == b'{"text": "hi"}'


@pytest.mark.parametrize("wire", [
    "abcd:ef01",
    "zz:zz:zz",
    "00" * 12 + ":" + "00" * 8 + ":00",
    "",
])
def test_group_wire_malformed(wire):
    with pytest.raises(MalformedWireRecord):
        group_ratchet.WireMessage.parse(wire)
    assert isinstance(group_ratchet.receive(wire, generate_chain_key()), Skipped)


def test_receive_steps_over_lost_messages():
    chain_key = generate_chain_key()
    keys = []
    current = chain_key
    for _ in range(3):
        message_key, current = group_ratchet.advance(current)
        keys.append(message_key)

    third = group_ratchet.encrypt(b"third", keys[2])
    received = group_ratchet.receive(third, chain_key)

    assert received.plaintext == b"third"
    assert received.steps == 3
    assert received.next_chain_key == current


def test_receive_does_not_reach_beyond_window():
    chain_key = generate_chain_key()
    current = chain_key
    for _ in range(group_ratchet.MAX_SKIP + 2):
        message_key, current = group_ratchet.advance(current)

    far = group_ratchet.encrypt(b"far", message_key)
    assert isinstance(group_ratchet.receive(far, chain_key), Skipped)


def test_forward_secrecy_after_fresh_chain_key():
    old_chain = generate_chain_key()
    new_chain = generate_chain_key()
    message_key, _ = group_ratchet.advance(new_chain)
    wire = group_ratchet.encrypt(b"after rotation", message_key)

    # nothing derived from the old chain opens it, within any window
    assert isinstance(group_ratchet.receive(wire, old_chain, max_skip=500), Skipped)
