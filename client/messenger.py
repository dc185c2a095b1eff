"""
One-to-one messaging over blinded personal inboxes.

Outbound: resolve the recipient, seal a TextMessage, post it to blind(to).
Inbound: open each record in blind(me), decode the payload, and only accept
a text message once the claimed sender's directory key matches the address
that signed the envelope. Group control payloads found in the inbox are
handed to the group coordinator.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, List, Union

from crypto.blind import blind
from crypto.envelope import Envelope, seal, open_envelope
from crypto.identity import Identity
from crypto.outcome import Skipped
from crypto.payloads import TextMessage, GroupSetup, GroupKeyUpdate, decode_payload
from crypto.primitives import DecryptionFailure, SignatureMismatch, MalformedWireRecord
from .errors import DiscoveryFailure
from .groups import GroupCoordinator, DistributionReport, now_ms
from .relay import Directory, Transport, Record

logger = logging.getLogger(__name__)


@dataclass
class InboxMessage:
    """A text message whose sender has been authenticated"""
    sender_id: str
    text: str
    created_at: int
    record_id: Optional[str] = None


@dataclass
class GroupJoin:
    group_id: str
    creator: str
    report: DistributionReport


@dataclass
class KeyUpdate:
    group_id: str
    member: str


@dataclass
class Inbox:
    messages: List[InboxMessage] = field(default_factory=list)
    joined: List[GroupJoin] = field(default_factory=list)
    key_updates: List[KeyUpdate] = field(default_factory=list)
    skipped: List[Skipped] = field(default_factory=list)


InboxItem = Union[InboxMessage, GroupJoin, KeyUpdate, Skipped]


class Messenger:
    """
    Personal inbox for one local user.
    """

    def __init__(self, username: str, identity: Identity, directory: Directory,
                 transport: Transport, groups: Optional[GroupCoordinator] = None):
        self.username = username
        self.identity = identity
        self.directory = directory
        self.transport = transport
        self.groups = groups

    @property
    def inbox_id(self) -> str:
        return blind(self.username)

    async def send(self, to: str, text: str) -> TextMessage:
        """
        Send an encrypted, signed message.

        Raises:
            DiscoveryFailure: If `to` is not registered
            TransportError: If the relay does not accept it
        """
        entry = await self.directory.resolve(to)
        payload = TextMessage(text=text, sender_id=self.username, created_at=now_ms())
        envelope = seal(payload.to_json(), entry.public_key, self.identity.signing_key)
        await self.transport.send(blind(to), Record(message=envelope.ciphertext, signature=envelope.signature))
        logger.info("Sent message to inbox %s...", blind(to)[:8])
        return payload

    async def read_inbox(self) -> Inbox:
        """
        Fetch and process the personal inbox.

        Each record is handled on its own; a record that cannot be opened or
        authenticated is skipped and the rest of the batch still runs.
        """
        inbox = Inbox()
        for record in await self.transport.fetch(self.inbox_id):
            item = await self._process(record)
            if isinstance(item, Skipped):
                logger.debug("Skipped inbox record %s: %s", record.id, item.reason)
                inbox.skipped.append(Skipped(item.reason, record.id))
            elif isinstance(item, InboxMessage):
                inbox.messages.append(item)
            elif isinstance(item, GroupJoin):
                inbox.joined.append(item)
            else:
                inbox.key_updates.append(item)
        return inbox

    async def _process(self, record: Record) -> InboxItem:
        try:
            envelope = Envelope.from_dict(record.to_dict())
            payload = decode_payload(open_envelope(envelope, self.identity.decryption_key))
        except (DecryptionFailure, MalformedWireRecord) as e:
            return Skipped(str(e))

        if isinstance(payload, TextMessage):
            return await self._authenticate(envelope, payload, record)
        if isinstance(payload, GroupSetup):
            return await self._join(payload)
        if isinstance(payload, GroupKeyUpdate):
            return await self._key_update(payload, envelope, record)
        return Skipped(f"Unexpected {payload.type} in personal inbox")

    async def _authenticate(self, envelope: Envelope, payload: TextMessage, record: Record) -> InboxItem:
        try:
            sender = await self.directory.resolve(payload.sender_id)
        except DiscoveryFailure:
            return Skipped(f"Claimed sender {payload.sender_id} is not in the directory")

        try:
            envelope.verify(sender.address)
        except SignatureMismatch:
            logger.warning("Received a message with a forged signature claiming to be from %s", payload.sender_id)
            return Skipped("Forged signature")

        return InboxMessage(
            sender_id=payload.sender_id,
            text=payload.text,
            created_at=payload.created_at,
            record_id=record.id,
        )

    async def _join(self, setup: GroupSetup) -> InboxItem:
        if self.groups is None:
            return Skipped("Group setup received but groups are not enabled")
        outcome = await self.groups.accept_setup(setup)
        if isinstance(outcome, Skipped):
            return outcome
        return GroupJoin(group_id=setup.group_id, creator=setup.creator, report=outcome)

    async def _key_update(self, update: GroupKeyUpdate, envelope: Envelope, record: Record) -> InboxItem:
        if self.groups is None:
            return Skipped("Key update received but groups are not enabled")
        outcome = await self.groups.accept_key_update(update, envelope, record.sender_id)
        if isinstance(outcome, Skipped):
            return outcome
        return KeyUpdate(group_id=update.group_id, member=outcome)
