"""
Relay collaborators: the username directory and the blinded-inbox transport.

The protocol code only depends on the `Directory` and `Transport` protocols.
`HttpDirectory` and `HttpTransport` talk to the relay's REST API over a
shared httpx.AsyncClient.
"""

import logging
from dataclasses import dataclass
from typing import Optional, List, Dict, Protocol
import httpx

from crypto.identity import address_from_public_key
from crypto.primitives import MalformedWireRecord
from .errors import DiscoveryFailure, TransportError

logger = logging.getLogger(__name__)


@dataclass
class DirectoryEntry:
    """
    Attributes:
        username: Registered name
        public_key: Published public key (hex)
        address: Address computed from `public_key`
    """
    username: str
    public_key: str
    address: str

    @classmethod
    def from_public_key(cls, username: str, public_key: str) -> 'DirectoryEntry':
        """
        Raises:
            DiscoveryFailure: If the published key is not a valid public key
        """
        try:
            address = address_from_public_key(public_key)
        except MalformedWireRecord as e:
            raise DiscoveryFailure(username, f"has an unusable directory key: {e}")
        return cls(username=username, public_key=public_key, address=address)


@dataclass
class Record:
    """
    One item in a relay inbox.

    Attributes:
        message: Envelope ciphertext, group wire triplet, or signed plaintext
        signature: Signature over `message`, when the sender attached one
        sender_id: Claimed sender; a routing hint, never proof of identity
        id: Relay-assigned record id
    """
    message: str
    signature: Optional[str] = None
    sender_id: Optional[str] = None
    id: Optional[str] = None

    def to_dict(self) -> Dict:
        data = {'message': self.message}
        if self.signature is not None:
            data['signature'] = self.signature
        if self.sender_id is not None:
            data['senderId'] = self.sender_id
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'Record':
        record_id = data.get('id')
        return cls(
            message=data.get('message'),
            signature=data.get('signature'),
            sender_id=data.get('senderId'),
            id=str(record_id) if record_id is not None else None,
        )


class Directory(Protocol):
    async def resolve(self, username: str) -> DirectoryEntry:
        """Raises DiscoveryFailure when the name is not registered"""
        ...


class Transport(Protocol):
    async def send(self, inbox_id: str, record: Record) -> None:
        """Raises TransportError when the relay does not accept the record"""
        ...

    async def fetch(self, inbox_id: str) -> List[Record]: ...


class _HttpRelay:
    def __init__(self, base_url: str, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        """
        Args:
            base_url: Relay base URL, without the /api suffix
            http_client: Client to reuse; one is created when omitted
            timeout: Request timeout in seconds for a created client
        """
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self):
        await self.http_client.aclose()


class HttpDirectory(_HttpRelay):
    """Directory lookups against GET /api/user/{name}"""

    async def resolve(self, username: str) -> DirectoryEntry:
        try:
            response = await self.http_client.get(f"{self.base_url}/api/user/{username}")
        except httpx.HTTPError as e:
            raise TransportError(f"Directory lookup for {username} failed: {e}")

        if response.status_code == 404:
            raise DiscoveryFailure(username)
        if response.status_code != 200:
            raise TransportError(f"Directory lookup for {username} returned {response.status_code}")

        public_key = response.json().get("publicKey")
        if not public_key or not isinstance(public_key, str):
            raise DiscoveryFailure(username)
        return DirectoryEntry.from_public_key(username, public_key)

    async def register(self, username: str, public_key: str) -> Dict:
        """Publish our public key under `username`"""
        try:
            response = await self.http_client.post(
                f"{self.base_url}/api/register",
                json={"username": username, "publicKey": public_key}
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Registration failed: {e}")

        if response.status_code not in (200, 201):
            raise TransportError(f"Registration failed ({response.status_code}): {response.text}")
        return response.json()


class HttpTransport(_HttpRelay):
    """Inbox writes to POST /api/send and reads from GET /api/messages/{inboxId}"""

    async def send(self, inbox_id: str, record: Record) -> None:
        body = {"recipientHash": inbox_id, **record.to_dict()}
        try:
            response = await self.http_client.post(f"{self.base_url}/api/send", json=body)
        except httpx.HTTPError as e:
            raise TransportError(f"Send to inbox {inbox_id[:8]} failed: {e}")

        if response.status_code not in (200, 201):
            raise TransportError(f"Send to inbox {inbox_id[:8]} returned {response.status_code}")

    async def fetch(self, inbox_id: str) -> List[Record]:
        try:
            response = await self.http_client.get(f"{self.base_url}/api/messages/{inbox_id}")
        except httpx.HTTPError as e:
            raise TransportError(f"Fetch from inbox {inbox_id[:8]} failed: {e}")

        if response.status_code == 404:
            return []
        if response.status_code != 200:
            raise TransportError(f"Fetch from inbox {inbox_id[:8]} returned {response.status_code}")

        records = []
        for item in response.json():
            if isinstance(item, dict):
                records.append(Record.from_dict(item))
            else:
                logger.debug("Ignoring non-object record in inbox %s", inbox_id[:8])
        return records
