"""
Client-side errors.

Per-operation failures (discovery, a send that never reached the relay, a
group that is not in the local store) are raised to the caller. Per-message
problems while reading an inbox are skips, not errors; see crypto.outcome.
"""


class ChatError(Exception):
    """Base exception for client operations"""
    pass


class DiscoveryFailure(ChatError):
    """A username is not registered in the directory, or has no usable key"""

    def __init__(self, username: str, reason: str = "not found in directory"):
        super().__init__(f"User '{username}' {reason}")
        self.username = username


class TransportError(ChatError):
    """The relay could not be reached or rejected the request"""
    pass


class StoreError(ChatError):
    """The local store could not durably save a change"""
    pass


class StoreInconsistency(ChatError):
    """A group was referenced that is not in the local store"""

    def __init__(self, group_id: str):
        super().__init__(f"Not a member of group '{group_id}'")
        self.group_id = group_id
