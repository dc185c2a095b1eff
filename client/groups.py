"""
Group membership coordinator.

Drives the Sender Keys protocol for groups:

- create: fresh chain key and group signing key, GroupSetup sealed to every
  invitee's personal inbox
- accept setup / key update: record another member's sending track
- send / read: ratchet-encrypted traffic on the group inbox
- leave: GroupLeave notice signed with the identity key, then local state
  is dropped
- departure: remaining members drop the leaver and rotate to a fresh chain
  key the leaver never saw, then redistribute it

Any state change that matters for key safety is saved to the store before
the key is used. Fan-out to several members runs concurrently, and one
member failing never undoes or blocks the others; the caller gets a
DistributionReport instead of an exception.
"""

import time
import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Union

from crypto import group_ratchet
from crypto.blind import blind, blind_group
from crypto.envelope import Envelope, seal, sign, verify_signature, recover_address
from crypto.identity import Identity
from crypto.outcome import Outcome, Skipped
from crypto.payloads import (
    Payload,
    TextMessage,
    GroupSetup,
    GroupKeyUpdate,
    GroupLeave,
    decode_payload,
)
from crypto.primitives import (
    KEY_SIZE,
    generate_chain_key,
    generate_signing_keypair,
    CryptoError,
    SignatureMismatch,
    MalformedWireRecord,
)
from .errors import ChatError, DiscoveryFailure, StoreInconsistency
from .relay import Directory, Transport, Record
from .storage import GroupState, GroupStore

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class DistributionReport:
    """
    Outcome of sealing key material to several members.

    Attributes:
        delivered: Members whose personal inbox accepted the envelope
        failed: Member -> reason, for members that were not reached
    """
    delivered: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.failed


@dataclass
class GroupMessage:
    group_id: str
    sender_id: str
    text: str
    created_at: int


@dataclass
class Departure:
    """A member left; our sending chain was rotated and redistributed"""
    group_id: str
    member: str
    report: DistributionReport


@dataclass
class GroupInbox:
    messages: List[GroupMessage] = field(default_factory=list)
    departures: List[Departure] = field(default_factory=list)
    skipped: List[Skipped] = field(default_factory=list)


def _decode_key(hex_key: str, name: str) -> bytes:
    try:
        key = bytes.fromhex(hex_key)
    except ValueError:
        raise MalformedWireRecord(f"{name} is not hex")
    if len(key) != KEY_SIZE:
        raise MalformedWireRecord(f"{name} must be {KEY_SIZE} bytes")
    return key


def _key_digest(key: bytes) -> str:
    return hashlib.sha256(key).hexdigest()


class GroupCoordinator:
    """
    Group operations for one local user.
    """

    def __init__(self, username: str, identity: Identity, directory: Directory,
                 transport: Transport, store: GroupStore):
        """
        Args:
            username: Our registered username
            identity: Our identity keys
            directory: Username -> public key lookups
            transport: Relay inbox access
            store: Local group state
        """
        self.username = username
        self.identity = identity
        self.directory = directory
        self.transport = transport
        self.store = store

    def _load(self, group_id: str) -> GroupState:
        state = self.store.get(group_id)
        if state is None:
            raise StoreInconsistency(group_id)
        return state

    def _is_me(self, name: str) -> bool:
        return name.lower() == self.username.lower()

    # ── Distribution ────────────────────────────────────────────────

    async def _deliver(self, member: str, payload: Payload):
        """Seal `payload` to one member's personal inbox"""
        entry = await self.directory.resolve(member)
        envelope = seal(payload.to_json(), entry.public_key, self.identity.signing_key)
        record = Record(message=envelope.ciphertext, signature=envelope.signature, sender_id=self.username)
        await self.transport.send(blind(member), record)

    async def _distribute(self, recipients: List[str], payload: Payload) -> DistributionReport:
        results = await asyncio.gather(
            *(self._deliver(member, payload) for member in recipients),
            return_exceptions=True
        )

        report = DistributionReport()
        for member, result in zip(recipients, results):
            if isinstance(result, (ChatError, CryptoError)):
                report.failed[member] = str(result)
            elif isinstance(result, BaseException):
                raise result
            else:
                report.delivered.append(member)

        if report.failed:
            logger.warning(
                "Key material for %s reached %d of %d member(s)",
                payload.group_id, len(report.delivered), len(recipients)
            )
        return report

    # ── Create / join ───────────────────────────────────────────────

    async def create_group(self, group_name: str, invitees: List[str]) -> DistributionReport:
        """
        Create a group and send each invitee the setup.

        Invitees that cannot be reached are dropped from the group; they are
        listed in the returned report.

        Raises:
            ChatError: If a group with this name already exists locally
        """
        if self.store.get(group_name) is not None:
            raise ChatError(f"Group '{group_name}' already exists")

        members = []
        for name in invitees:
            name = name.lower()
            if not self._is_me(name) and name not in members:
                members.append(name)

        signing_key, _ = generate_signing_keypair()
        state = GroupState(
            group_inbox_id=blind_group(group_name, self.identity.public_key),
            creator=self.username.lower(),
            my_chain_key=generate_chain_key(),
            my_signing_key=signing_key,
            members=list(members),
        )
        self.store.put(group_name, state)

        setup = GroupSetup(
            group_id=group_name,
            group_inbox_id=state.group_inbox_id,
            creator=state.creator,
            chain_key=state.my_chain_key.hex(),
            signing_pub_key=state.my_signing_pub_key.hex(),
            members=[state.creator] + members,
        )
        report = await self._distribute(members, setup)

        if report.failed:
            for member in report.failed:
                state.remove_member(member)
            self.store.put(group_name, state)

        logger.info("Created group %s with %d member(s)", group_name, len(state.members))
        return report

    async def accept_setup(self, setup: GroupSetup) -> Outcome[DistributionReport]:
        """
        Join a group announced by its creator.

        The setup is taken at its word: there is no sender check against the
        directory here. We then start our own sending chain and send it to
        every other member.
        """
        if self.store.get(setup.group_id) is not None:
            return Skipped(f"Already in group {setup.group_id}")

        try:
            creator_key = _decode_key(setup.chain_key, "chainKey")
            creator_signing = _decode_key(setup.signing_pub_key, "signingPubKey")
        except MalformedWireRecord as e:
            return Skipped(str(e))

        creator = setup.creator.lower()
        members = []
        for name in [m.lower() for m in (setup.members or [])] + [creator]:
            if not self._is_me(name) and name not in members:
                members.append(name)

        signing_key, _ = generate_signing_keypair()
        state = GroupState(
            group_inbox_id=setup.group_inbox_id,
            creator=creator,
            my_chain_key=generate_chain_key(),
            my_signing_key=signing_key,
            members=members,
            member_keys={creator: creator_key},
            signing_keys={creator: creator_signing},
        )
        self.store.put(setup.group_id, state)
        logger.info("Joined group %s created by %s", setup.group_id, creator)

        report = await self._distribute(state.members, self._key_update(setup.group_id, state))

        # roster names we cannot reach were most likely dropped by the creator too
        unreached = [m for m in report.failed if m != creator]
        if unreached:
            for member in unreached:
                state.remove_member(member)
            self.store.put(setup.group_id, state)
        return report

    def _key_update(self, group_id: str, state: GroupState) -> GroupKeyUpdate:
        return GroupKeyUpdate(
            group_id=group_id,
            chain_key=state.my_chain_key.hex(),
            signing_pub_key=state.my_signing_pub_key.hex(),
        )

    async def accept_key_update(self, update: GroupKeyUpdate, envelope: Envelope,
                                sender_id: Optional[str]) -> Outcome[str]:
        """
        Replace a member's sending track with the one they announced.

        Accepted only from a current member whose directory key signed the
        envelope, and only once per chain key.

        Returns:
            The member whose track was updated, or Skipped
        """
        state = self.store.get(update.group_id)
        if state is None:
            return Skipped(f"Not a member of group {update.group_id}")
        sender_id = sender_id.lower() if isinstance(sender_id, str) else None
        if not sender_id or sender_id not in state.members:
            return Skipped(f"Key update from non-member {sender_id!r}")

        try:
            entry = await self.directory.resolve(sender_id)
            envelope.verify(entry.address)
        except DiscoveryFailure:
            return Skipped(f"Key update sender {sender_id} not in directory")
        except SignatureMismatch:
            logger.warning("Forged key update for %s claiming to be from %s", update.group_id, sender_id)
            return Skipped("Key update signature mismatch")

        try:
            chain_key = _decode_key(update.chain_key, "chainKey")
            signing_pub = _decode_key(update.signing_pub_key, "signingPubKey")
        except MalformedWireRecord as e:
            return Skipped(str(e))

        digest = _key_digest(chain_key)
        if digest in state.seen_chain_keys:
            return Skipped("Key update already applied")

        state.member_keys[sender_id] = chain_key
        state.signing_keys[sender_id] = signing_pub
        state.seen_chain_keys.append(digest)
        self.store.put(update.group_id, state)
        logger.info("Updated %s's sending key in group %s", sender_id, update.group_id)
        return sender_id

    # ── Traffic ─────────────────────────────────────────────────────

    async def send(self, group_id: str, text: str) -> TextMessage:
        """
        Encrypt and post a message to the group inbox.

        The advanced chain key is saved before the message key is used, so a
        failed save means nothing was sent and no key is ever used twice.

        Raises:
            StoreInconsistency: If we are not in the group
            StoreError: If the ratchet step could not be saved
            TransportError: If the relay did not accept the message
        """
        state = self._load(group_id)

        message_key, state.my_chain_key = group_ratchet.advance(state.my_chain_key)
        self.store.put(group_id, state)

        payload = TextMessage(text=text, sender_id=self.username, created_at=now_ms())
        wire = group_ratchet.encrypt(payload.to_json().encode('utf-8'), message_key)
        record = Record(message=wire, signature=sign(state.my_signing_key, wire), sender_id=self.username)
        await self.transport.send(state.group_inbox_id, record)
        return payload

    async def read(self, group_id: str) -> GroupInbox:
        """
        Fetch and process the group inbox.

        Records that cannot be processed are skipped; the rest of the batch
        still runs. Leave notices trigger key rotation.

        Raises:
            StoreInconsistency: If we are not in the group
        """
        state = self._load(group_id)
        records = await self.transport.fetch(state.group_inbox_id)

        inbox = GroupInbox()
        for record in records:
            outcome = await self._receive(group_id, state, record)
            if isinstance(outcome, Skipped):
                logger.debug("Skipped group record %s: %s", record.id, outcome.reason)
                inbox.skipped.append(Skipped(outcome.reason, record.id))
            elif isinstance(outcome, Departure):
                inbox.departures.append(outcome)
            else:
                inbox.messages.append(outcome)
        return inbox

    async def _receive(self, group_id: str, state: GroupState,
                       record: Record) -> Union[GroupMessage, Departure, Skipped]:
        if not isinstance(record.sender_id, str) or not isinstance(record.message, str):
            return Skipped("Record has no sender or message")
        sender = record.sender_id.lower()
        if not sender:
            return Skipped("Record has no sender or message")
        if self._is_me(sender):
            return Skipped("Own message")

        if record.message.startswith("{"):
            return await self._receive_leave(group_id, state, sender, record)

        if sender not in state.member_keys:
            return Skipped(f"No sending key for {sender}")

        verifying_key = state.signing_keys.get(sender)
        if verifying_key is not None:
            try:
                verify_signature(record.message, record.signature or "", verifying_key)
            except SignatureMismatch:
                return Skipped(f"Bad group signature for {sender}")

        received = group_ratchet.receive(record.message, state.member_keys[sender])
        if isinstance(received, Skipped):
            return received

        state.member_keys[sender] = received.next_chain_key
        self.store.put(group_id, state)

        try:
            payload = decode_payload(received.plaintext)
        except MalformedWireRecord as e:
            return Skipped(str(e))
        if not isinstance(payload, TextMessage) or payload.sender_id.lower() != sender:
            return Skipped("Group payload does not match its sender")

        return GroupMessage(group_id=group_id, sender_id=sender, text=payload.text, created_at=payload.created_at)

    # ── Departure ───────────────────────────────────────────────────

    async def leave(self, group_id: str):
        """
        Announce our departure, then delete the group locally.

        The notice is signed with our identity key, so members who never
        received our group signing key can still verify it.

        Raises:
            StoreInconsistency: If we are not in the group
            TransportError: If the notice was not accepted; local state is kept
        """
        state = self._load(group_id)
        notice = GroupLeave(group_id=group_id, sender_id=self.username).to_json()
        record = Record(message=notice, signature=sign(self.identity.signing_key, notice), sender_id=self.username)
        await self.transport.send(state.group_inbox_id, record)
        self.store.delete(group_id)
        logger.info("Left group %s", group_id)

    async def _receive_leave(self, group_id: str, state: GroupState, sender: str,
                             record: Record) -> Outcome[Departure]:
        try:
            notice = decode_payload(record.message)
        except MalformedWireRecord as e:
            return Skipped(str(e))

        if (not isinstance(notice, GroupLeave) or notice.group_id != group_id
                or notice.sender_id.lower() != sender):
            return Skipped("Plaintext record is not a leave notice for this group")
        if sender not in state.members:
            return Skipped(f"Leave notice from unknown member {sender}")

        try:
            entry = await self.directory.resolve(sender)
            signer = recover_address(record.message, record.signature or "")
            if signer.lower() != entry.address.lower():
                raise SignatureMismatch(f"Signed by {signer}, expected {entry.address}")
        except DiscoveryFailure:
            return Skipped(f"Leave notice sender {sender} not in directory")
        except SignatureMismatch:
            logger.warning("Forged leave notice in %s claiming to be from %s", group_id, sender)
            return Skipped("Leave notice signature mismatch")

        state.remove_member(sender)
        logger.info("%s left group %s, rotating our sending key", sender, group_id)
        report = await self._rotate(group_id, state)
        return Departure(group_id=group_id, member=sender, report=report)

    async def _rotate(self, group_id: str, state: GroupState) -> DistributionReport:
        state.my_chain_key = generate_chain_key()
        self.store.put(group_id, state)
        return await self._distribute(list(state.members), self._key_update(group_id, state))

    async def rotate_keys(self, group_id: str) -> DistributionReport:
        """
        Start a fresh sending chain and redistribute it.

        Also the way to resync members a previous distribution missed.
        """
        return await self._rotate(group_id, self._load(group_id))
