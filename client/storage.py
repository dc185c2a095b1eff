"""
Local group store.

Holds per-group protocol state: membership, the last chain key seen for each
member's sending track, their group signing keys, and our own sending chain.
`EncryptedStorage` keeps it on disk encrypted under a password-derived key,
together with the identity seed.

Contract for every store: `put` replaces a group's state atomically, and a
`put` that returns has made the new state durable. Serialising writers
across processes is left to whoever runs the store; one process at a time is
assumed.
"""

import os
import json
import time
import sqlite3
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Protocol
from pathlib import Path
from datetime import datetime, timezone
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from crypto.primitives import (
    serialize_signing_private_key,
    deserialize_signing_private_key,
    serialize_signing_public_key,
)
from .errors import StoreError

logger = logging.getLogger(__name__)


@dataclass
class GroupState:
    """
    Protocol state for one group.

    Attributes:
        group_inbox_id: Relay inbox for group traffic
        creator: Username of the group creator
        my_chain_key: Our current sending chain key
        my_signing_key: Our group-local Ed25519 key (not the identity key)
        members: Other members' usernames; never includes ourselves
        member_keys: Last known chain key per member track
        signing_keys: Raw Ed25519 verifying key per member
        seen_chain_keys: SHA-256 digests of chain keys already accepted from
            key updates, so a re-delivered update cannot rewind a track
        updated_at: Epoch milliseconds of the last put
    """
    group_inbox_id: str
    creator: str
    my_chain_key: bytes
    my_signing_key: Ed25519PrivateKey
    members: List[str] = field(default_factory=list)
    member_keys: Dict[str, bytes] = field(default_factory=dict)
    signing_keys: Dict[str, bytes] = field(default_factory=dict)
    seen_chain_keys: List[str] = field(default_factory=list)
    updated_at: int = 0

    @property
    def my_signing_pub_key(self) -> bytes:
        return serialize_signing_public_key(self.my_signing_key.public_key())

    def remove_member(self, member: str):
        """Drop a member and every key we hold for their track"""
        if member in self.members:
            self.members.remove(member)
        self.member_keys.pop(member, None)
        self.signing_keys.pop(member, None)

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization"""
        return {
            'groupInboxId': self.group_inbox_id,
            'creator': self.creator,
            'myChainKey': self.my_chain_key.hex(),
            'mySigningKey': serialize_signing_private_key(self.my_signing_key).hex(),
            'mySigningPubKey': self.my_signing_pub_key.hex(),
            'members': sorted(self.members),
            'memberKeys': {m: k.hex() for m, k in self.member_keys.items()},
            'signingKeys': {m: k.hex() for m, k in self.signing_keys.items()},
            'seenChainKeys': list(self.seen_chain_keys),
            'updatedAt': self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'GroupState':
        """Create from dictionary"""
        return cls(
            group_inbox_id=data['groupInboxId'],
            creator=data['creator'],
            my_chain_key=bytes.fromhex(data['myChainKey']),
            my_signing_key=deserialize_signing_private_key(bytes.fromhex(data['mySigningKey'])),
            members=list(data.get('members', [])),
            member_keys={m: bytes.fromhex(k) for m, k in data.get('memberKeys', {}).items()},
            signing_keys={m: bytes.fromhex(k) for m, k in data.get('signingKeys', {}).items()},
            seen_chain_keys=list(data.get('seenChainKeys', [])),
            updated_at=data.get('updatedAt', 0),
        )


class GroupStore(Protocol):
    """Group state keyed by group id"""

    def get(self, group_id: str) -> Optional[GroupState]: ...

    def put(self, group_id: str, state: GroupState) -> None: ...

    def delete(self, group_id: str) -> None: ...

    def list(self) -> List[str]: ...


def _now_ms() -> int:
    return int(time.time() * 1000)


class MemoryGroupStore:
    """
    In-process store. States are kept serialized, so callers never share a
    live object with the store and `get` always returns what was last put.
    """

    def __init__(self):
        self._groups: Dict[str, str] = {}

    def get(self, group_id: str) -> Optional[GroupState]:
        data = self._groups.get(group_id)
        return GroupState.from_dict(json.loads(data)) if data else None

    def put(self, group_id: str, state: GroupState) -> None:
        state.updated_at = _now_ms()
        self._groups[group_id] = json.dumps(state.to_dict())

    def delete(self, group_id: str) -> None:
        self._groups.pop(group_id, None)

    def list(self) -> List[str]:
        return sorted(self._groups)


class EncryptedStorage:
    """
    SQLite-backed group store and identity keyring.

    All rows are encrypted with AES-256-GCM under a key derived from the
    user's password. Each `put` runs in its own transaction.
    """

    CHECK_VALUE = b"storage-unlocked"

    def __init__(self, username: str, storage_dir: str = "client_data"):
        """
        Initialize encrypted storage.

        Args:
            username: Username for this storage
            storage_dir: Directory to store encrypted data
        """
        self.username = username
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

        self.db_path = self.storage_dir / f"{username.lower()}.db"
        self.salt_path = self.storage_dir / f"{username.lower()}.salt"
        self.encryption_key: Optional[bytes] = None
        self.db: Optional[sqlite3.Connection] = None

    def derive_key(self, password: str, salt: bytes) -> bytes:
        """
        Derive encryption key from password using PBKDF2.

        Args:
            password: User's password
            salt: Salt for key derivation

        Returns:
            32-byte encryption key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        return kdf.derive(password.encode())

    def unlock(self, password: str) -> bool:
        """
        Unlock storage with password, creating it on first use.

        Args:
            password: User's password

        Returns:
            True if unlocked, False if the password is wrong
        """
        if not self.salt_path.exists():
            salt = os.urandom(16)
            with open(self.salt_path, "wb") as f:
                f.write(salt)
            os.chmod(self.salt_path, 0o600)
        else:
            with open(self.salt_path, "rb") as f:
                salt = f.read()

        self.encryption_key = self.derive_key(password, salt)
        self._init_database()

        check = self._load_row("SELECT encrypted_data FROM keys WHERE key_type = ?", ("check",))
        if check is None:
            self._save_key("check", self.CHECK_VALUE)
            return True

        try:
            self._decrypt(check)
            return True
        except InvalidTag:
            logger.warning("Wrong password for local storage of %s", self.username)
            self.close()
            self.encryption_key = None
            return False

    def _init_database(self):
        """Initialize SQLite database"""
        self.db = sqlite3.connect(str(self.db_path))
        with self.db:
            self.db.execute("""
                CREATE TABLE IF NOT EXISTS groups (
                    group_id TEXT PRIMARY KEY,
                    encrypted_state BLOB NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self.db.execute("""
                CREATE TABLE IF NOT EXISTS keys (
                    key_type TEXT PRIMARY KEY,
                    encrypted_data BLOB NOT NULL
                )
            """)
        os.chmod(self.db_path, 0o600)

    def _encrypt(self, data: bytes) -> bytes:
        """Encrypt data with storage key"""
        if not self.encryption_key:
            raise StoreError("Storage not unlocked")

        nonce = os.urandom(12)
        aesgcm = AESGCM(self.encryption_key)
        ciphertext = aesgcm.encrypt(nonce, data, None)
        return nonce + ciphertext

    def _decrypt(self, encrypted_data: bytes) -> bytes:
        """Decrypt data with storage key"""
        if not self.encryption_key:
            raise StoreError("Storage not unlocked")

        nonce = encrypted_data[:12]
        ciphertext = encrypted_data[12:]

        aesgcm = AESGCM(self.encryption_key)
        return aesgcm.decrypt(nonce, ciphertext, None)

    def _require_db(self) -> sqlite3.Connection:
        if not self.db:
            raise StoreError("Storage not unlocked")
        return self.db

    def _load_row(self, query: str, params: tuple) -> Optional[bytes]:
        cursor = self._require_db().execute(query, params)
        result = cursor.fetchone()
        return result[0] if result else None

    def _save_key(self, key_type: str, data: bytes):
        db = self._require_db()
        try:
            with db:
                db.execute(
                    "INSERT OR REPLACE INTO keys (key_type, encrypted_data) VALUES (?, ?)",
                    (key_type, self._encrypt(data))
                )
        except sqlite3.Error as e:
            raise StoreError(f"Failed to save {key_type}: {e}")

    def get(self, group_id: str) -> Optional[GroupState]:
        encrypted = self._load_row("SELECT encrypted_state FROM groups WHERE group_id = ?", (group_id,))
        if encrypted is None:
            return None
        try:
            return GroupState.from_dict(json.loads(self._decrypt(encrypted)))
        except InvalidTag:
            raise StoreError(f"Stored state for group '{group_id}' is corrupt or was tampered with")

    def put(self, group_id: str, state: GroupState) -> None:
        """
        Replace a group's state in one transaction.

        Raises:
            StoreError: If the write did not commit; the previous state stands
        """
        db = self._require_db()
        state.updated_at = _now_ms()
        encrypted = self._encrypt(json.dumps(state.to_dict()).encode())
        timestamp = datetime.now(timezone.utc).isoformat()
        try:
            with db:
                db.execute(
                    "INSERT OR REPLACE INTO groups (group_id, encrypted_state, updated_at) VALUES (?, ?, ?)",
                    (group_id, encrypted, timestamp)
                )
        except sqlite3.Error as e:
            raise StoreError(f"Failed to save group {group_id}: {e}")

    def delete(self, group_id: str) -> None:
        db = self._require_db()
        try:
            with db:
                db.execute("DELETE FROM groups WHERE group_id = ?", (group_id,))
        except sqlite3.Error as e:
            raise StoreError(f"Failed to delete group {group_id}: {e}")

    def list(self) -> List[str]:
        cursor = self._require_db().execute("SELECT group_id FROM groups ORDER BY group_id")
        return [row[0] for row in cursor.fetchall()]

    def save_identity_seed(self, seed: bytes):
        """Save the identity's private seed"""
        self._save_key("identity", seed)

    def load_identity_seed(self) -> Optional[bytes]:
        encrypted = self._load_row("SELECT encrypted_data FROM keys WHERE key_type = ?", ("identity",))
        if encrypted is None:
            return None
        try:
            return self._decrypt(encrypted)
        except InvalidTag:
            raise StoreError("Stored identity is corrupt or was tampered with")

    def close(self):
        """Close database connection"""
        if self.db:
            self.db.close()
            self.db = None
