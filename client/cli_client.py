#!/usr/bin/env python3
"""
CLI Client for Blinded-Relay Messaging

Provides an interactive shell for:
- Identity creation and directory registration
- Encrypted, signed one-to-one messages to blinded inboxes
- Sender Keys group chats with key rotation when members leave
- Local encrypted storage of identity and group state
"""

import asyncio
import sys
import getpass
from typing import Optional
from datetime import datetime
import httpx
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from crypto.identity import Identity
from crypto.primitives import CryptoError
from client.config import Settings
from client.errors import ChatError
from client.groups import GroupCoordinator, DistributionReport
from client.messenger import Messenger
from client.relay import HttpDirectory, HttpTransport
from client.storage import EncryptedStorage


HELP_TEXT = """Commands:
  /whoami                          - Show your address and public key
  /send <user> <text>              - Send an encrypted message
  /inbox                           - Read your inbox
  /group create <name> <users...>  - Create a group
  /group send <name> <text>        - Send to a group
  /group read <name>               - Read a group
  /group leave <name>              - Leave a group
  /group rotate <name>             - Rotate and redistribute your group key
  /groups                          - List your groups
  /quit                            - Quit application"""


def _format_time(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000).strftime("%Y-%m-%d %H:%M")


def _print_report(action: str, report: DistributionReport):
    if report.delivered:
        print(f"{action}: reached {', '.join(report.delivered)}")
    for member, reason in report.failed.items():
        print(f"  warning: could not reach {member}: {reason}")


class ChatClient:
    """
    Interactive client for one local user.
    """

    def __init__(self, settings: Optional[Settings] = None, http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize chat client.

        Args:
            settings: Relay URL, data directory and timeouts
            http_client: Client for relay requests; one is created when omitted
        """
        self.settings = settings or Settings.from_env()
        self.http_client = http_client or httpx.AsyncClient(timeout=self.settings.http_timeout)
        self.directory = HttpDirectory(self.settings.api_url, self.http_client)
        self.transport = HttpTransport(self.settings.api_url, self.http_client)
        self.username: Optional[str] = None
        self.identity: Optional[Identity] = None
        self.storage: Optional[EncryptedStorage] = None
        self.messenger: Optional[Messenger] = None
        self.groups: Optional[GroupCoordinator] = None
        self.running = False

    def _open_storage(self, username: str, password: str) -> bool:
        self.storage = EncryptedStorage(username, self.settings.data_dir)
        if not self.storage.unlock(password):
            print("Failed to unlock storage with this password")
            self.storage = None
            return False
        return True

    def _attach(self, username: str, identity: Identity):
        self.username = username
        self.identity = identity
        self.groups = GroupCoordinator(username, identity, self.directory, self.transport, self.storage)
        self.messenger = Messenger(username, identity, self.directory, self.transport, self.groups)

    async def register(self, username: str, password: str) -> bool:
        """
        Create an identity, store it locally and publish its public key.

        Returns:
            True if successful
        """
        if not self._open_storage(username, password):
            return False
        if self.storage.load_identity_seed() is not None:
            print("An identity already exists for this user; log in instead")
            return False

        identity = Identity.generate()
        try:
            await self.directory.register(username, identity.public_key)
        except ChatError as e:
            print(f"Registration failed: {e}")
            return False

        self.storage.save_identity_seed(identity.seed)
        self._attach(username, identity)
        print(f"Registration successful! Welcome, {username}")
        print(f"Address: {identity.address}")
        return True

    def login(self, username: str, password: str) -> bool:
        """
        Restore a stored identity.

        Returns:
            True if successful
        """
        if not self._open_storage(username, password):
            return False

        seed = self.storage.load_identity_seed()
        if seed is None:
            print(f"No identity stored for {username}; register first")
            return False

        self._attach(username, Identity.from_seed(seed))
        print(f"Login successful! Welcome back, {username}")
        return True

    async def show_inbox(self):
        inbox = await self.messenger.read_inbox()
        for message in inbox.messages:
            print(f"\n[{_format_time(message.created_at)}] From {message.sender_id}:")
            print(f"> {message.text}")
        for join in inbox.joined:
            print(f"\n[Joined group '{join.group_id}' created by {join.creator}]")
            _print_report("Sent our group key", join.report)
        for update in inbox.key_updates:
            print(f"[{update.member} updated their key in '{update.group_id}']")
        if inbox.skipped:
            print(f"({len(inbox.skipped)} record(s) could not be read or verified)")
        if not (inbox.messages or inbox.joined or inbox.key_updates):
            print("No new messages")

    async def show_group(self, group_id: str):
        inbox = await self.groups.read(group_id)
        for message in inbox.messages:
            print(f"[{_format_time(message.created_at)}] {message.sender_id}: {message.text}")
        for departure in inbox.departures:
            print(f"[{departure.member} left '{group_id}'; your key was rotated]")
            _print_report("Sent new key", departure.report)
        if not inbox.messages:
            print("No new group messages")

    async def run_interactive(self):
        """Run interactive chat session"""
        self.running = True
        session = PromptSession()
        print()
        print(HELP_TEXT)
        print()

        try:
            while self.running:
                try:
                    with patch_stdout():
                        user_input = await session.prompt_async(f"[{self.username}] > ")

                    if not user_input.strip():
                        continue

                    if user_input.startswith("/"):
                        await self._handle_command(user_input)
                    else:
                        print("Unknown input. Type /help for help.")

                except (ChatError, CryptoError) as e:
                    print(f"Error: {e}")
                except KeyboardInterrupt:
                    break
                except EOFError:
                    break

        finally:
            self.running = False
            await self.http_client.aclose()
            if self.storage:
                self.storage.close()

    async def _handle_command(self, command: str):
        """Handle slash commands"""
        parts = command.split()
        cmd = parts[0].lower()

        if cmd == "/send" and len(parts) >= 3:
            text = command.split(maxsplit=2)[2]
            await self.messenger.send(parts[1], text)
            print(f"Message sent to {parts[1]}")
        elif cmd == "/inbox":
            await self.show_inbox()
        elif cmd == "/whoami":
            print(f"Username:   {self.username}")
            print(f"Address:    {self.identity.address}")
            print(f"Public key: {self.identity.public_key}")
        elif cmd == "/groups":
            names = self.storage.list()
            print("Groups:" if names else "No groups")
            for name in names:
                print(f"  - {name}")
        elif cmd == "/group" and len(parts) >= 3:
            await self._handle_group(parts[1].lower(), parts[2], command)
        elif cmd == "/quit":
            self.running = False
        elif cmd == "/help":
            print(HELP_TEXT)
        else:
            print("Unknown command. Type /help for help.")

    async def _handle_group(self, action: str, name: str, command: str):
        args = command.split(maxsplit=3)
        if action == "create" and len(args) == 4:
            report = await self.groups.create_group(name, args[3].split())
            _print_report(f"Created group '{name}'", report)
        elif action == "send" and len(args) == 4:
            await self.groups.send(name, args[3])
            print(f"Message sent to '{name}'")
        elif action == "read":
            await self.show_group(name)
        elif action == "leave":
            await self.groups.leave(name)
            print(f"Left group '{name}'")
        elif action == "rotate":
            _print_report(f"Rotated key for '{name}'", await self.groups.rotate_keys(name))
        else:
            print("Usage: /group create|send|read|leave|rotate <name> ...")


async def main():
    """Main entry point"""
    client = ChatClient()
    client.settings.configure_logging()

    print("=" * 50)
    print("Blinded-Relay Encrypted Messaging")
    print("=" * 50)
    print()

    while True:
        print("1. Register")
        print("2. Login")
        print("3. Quit")
        choice = input("Choose an option: ").strip()

        if choice == "1":
            username = input("Username: ").strip()
            password = getpass.getpass("Password: ")
            if await client.register(username, password):
                break
        elif choice == "2":
            username = input("Username: ").strip()
            password = getpass.getpass("Password: ")
            if client.login(username, password):
                break
        elif choice == "3":
            await client.http_client.aclose()
            return
        else:
            print("Invalid choice")

    await client.run_interactive()
    print("\nGoodbye!")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
