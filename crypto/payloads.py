"""
Plaintext payloads carried inside envelopes and group messages.

Every payload has a required `type` discriminant and is decoded through a
closed union: an unknown `type` is rejected, never passed through.
"""

import json
from typing import Annotated, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from .primitives import MalformedWireRecord


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class TextMessage(_Payload):
    """A one-to-one or group chat message. createdAt is epoch milliseconds."""
    type: Literal["TEXT"] = "TEXT"
    text: str
    sender_id: str
    created_at: int


class GroupSetup(_Payload):
    type: Literal["GROUP_SETUP"] = "GROUP_SETUP"
    group_id: str
    group_inbox_id: str
    creator: str
    chain_key: str
    signing_pub_key: str
    members: Optional[List[str]] = None


class GroupKeyUpdate(_Payload):
    type: Literal["GROUP_KEY_UPDATE"] = "GROUP_KEY_UPDATE"
    group_id: str
    chain_key: str
    signing_pub_key: str


class GroupLeave(_Payload):
    type: Literal["GROUP_LEAVE"] = "GROUP_LEAVE"
    group_id: str
    sender_id: str


Payload = Annotated[
    Union[TextMessage, GroupSetup, GroupKeyUpdate, GroupLeave],
    Field(discriminator="type"),
]

_payload_adapter = TypeAdapter(Payload)


def decode_payload(data: Union[str, bytes]) -> Payload:
    """
    Parse a JSON payload into its variant.

    A payload without `type` that has `text` and `senderId` is an older
    one-to-one message and decodes as TextMessage.

    Raises:
        MalformedWireRecord: Invalid JSON, unknown `type`, or missing fields
    """
    try:
        raw = json.loads(data)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedWireRecord(f"Payload is not JSON: {e}")

    if not isinstance(raw, dict):
        raise MalformedWireRecord("Payload must be a JSON object")
    if "type" not in raw and "text" in raw and "senderId" in raw:
        raw = {**raw, "type": "TEXT"}

    try:
        return _payload_adapter.validate_python(raw)
    except ValidationError as e:
        raise MalformedWireRecord(f"Unrecognised payload: {e.error_count()} error(s), type={raw.get('type')!r}")
