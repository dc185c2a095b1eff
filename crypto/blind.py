"""
Blinded inbox addressing.

The relay stores and looks up records by an opaque inbox id. These helpers
map a human-readable name to that id with a one-way digest, so the relay
never sees who an inbox belongs to. No secret is involved: this hides the
identifier, not the content.
"""

from .primitives import sha256_hex


def blind(name: str) -> str:
    """
    Inbox id for a personal inbox.

    Args:
        name: Username; case-insensitive

    Returns:
        64-char lowercase hex digest
    """
    return sha256_hex(name.lower().encode("utf-8"))


def blind_group(group_name: str, creator_public_key: str) -> str:
    """
    Inbox id for a group.

    Mixing in the creator's public key keeps two creators who pick the same
    group name apart, and makes the id unpredictable without that key.
    """
    return sha256_hex(f"{group_name.lower()}:{creator_public_key}".encode("utf-8"))
