"""
Shared fixtures: an in-memory relay standing in for the directory and the
blinded-inbox transport, and a helper to build a user on top of it.
"""

from dataclasses import dataclass
from typing import Dict, List, Set
import pytest

from crypto.blind import blind
from crypto.identity import Identity
from client.errors import DiscoveryFailure, TransportError
from client.groups import GroupCoordinator
from client.messenger import Messenger
from client.relay import DirectoryEntry, Record
from client.storage import MemoryGroupStore


class FakeRelay:
    """Directory and transport in one process. Inboxes are never drained."""

    def __init__(self):
        self.users: Dict[str, str] = {}
        self.inboxes: Dict[str, List[Record]] = {}
        self.down_inboxes: Set[str] = set()
        self.sent = 0

    def register(self, username: str, public_key: str):
        self.users[username.lower()] = public_key

    async def resolve(self, username: str) -> DirectoryEntry:
        public_key = self.users.get(username.lower())
        if public_key is None:
            raise DiscoveryFailure(username)
        return DirectoryEntry.from_public_key(username, public_key)

    async def send(self, inbox_id: str, record: Record) -> None:
        if inbox_id in self.down_inboxes:
            raise TransportError(f"inbox {inbox_id[:8]} unavailable")
        self.sent += 1
        stored = Record.from_dict({**record.to_dict(), 'id': str(self.sent)})
        self.inboxes.setdefault(inbox_id, []).append(stored)

    async def fetch(self, inbox_id: str) -> List[Record]:
        return list(self.inboxes.get(inbox_id, []))

    def take_down(self, username: str):
        self.down_inboxes.add(blind(username))


@dataclass
class User:
    name: str
    identity: Identity
    store: MemoryGroupStore
    groups: GroupCoordinator
    messenger: Messenger


@pytest.fixture
def relay():
    return FakeRelay()


@pytest.fixture
def make_user(relay):
    def _make(name: str) -> User:
        identity = Identity.generate()
        relay.register(name, identity.public_key)
        store = MemoryGroupStore()
        groups = GroupCoordinator(name, identity, relay, relay, store)
        messenger = Messenger(name, identity, relay, relay, groups)
        return User(name=name, identity=identity, store=store, groups=groups, messenger=messenger)
    return _make
