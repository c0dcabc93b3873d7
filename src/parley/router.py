"""
Parley - Message router.

Resolves each send request to its destination connections, encrypts
private text to the recipient's public key, persists the record and pushes
it to every resolved connection, the sender's own included, echoing the
sender's ``temp_id`` so the client can reconcile its optimistic copy.
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from . import crypto
from .constants import MAX_TEXT_MESSAGE_LENGTH
from .errors import (
    CryptoError,
    ErrorCode,
    InvalidDestination,
    InvalidPayload,
    PermissionDenied,
    RecipientKeyUnavailable,
    TransportFailure,
)
from .group import GroupManager, can_post
from .identity import AccountStore
from .message import (
    EncryptedTextContent,
    FileContent,
    FileDescriptor,
    Message,
    MessageContent,
    MessageStore,
    TextContent,
)
from .protocol import Event, Protocol
from .registry import Connection, ConnectionRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Destination:
    """Exactly one of a recipient user or a group."""

    recipient_id: Optional[str] = None
    group_id: Optional[str] = None

    def __post_init__(self):
        has_recipient = bool(self.recipient_id)
        has_group = bool(self.group_id)
        if has_recipient == has_group:
            raise InvalidDestination(
                "Message must have exactly one of recipient and group",
                {"recipient_id": self.recipient_id, "group_id": self.group_id},
            )
        for value in (self.recipient_id, self.group_id):
            if value is not None and not isinstance(value, str):
                raise InvalidDestination("Destination identifiers must be strings")

    @staticmethod
    def private(user_id: str) -> "Destination":
        return Destination(recipient_id=user_id)

    @staticmethod
    def group(group_id: str) -> "Destination":
        return Destination(group_id=group_id)

    @property
    def is_private(self) -> bool:
        return bool(self.recipient_id)


@dataclass(frozen=True)
class OutgoingPayload:
    """What the sender submitted: text, or an uploaded file descriptor."""

    text: Optional[str] = None
    file: Optional[FileDescriptor] = None

    def __post_init__(self):
        if (self.text is None) == (self.file is None):
            raise InvalidPayload("Message must carry exactly one of text and file")
        if self.text is not None and (not isinstance(self.text, str) or not self.text.strip()):
            raise InvalidPayload("Message text must be a non-empty string")

    @staticmethod
    def from_request(content: Any = None, file: Any = None) -> "OutgoingPayload":
        """
        Build a payload from raw ``send_message`` fields.

        Raises:
            InvalidPayload: If the fields are missing, both present or malformed
        """
        if file is not None:
            if content not in (None, ""):
                raise InvalidPayload("Message must carry exactly one of text and file")
            return OutgoingPayload(file=FileDescriptor.from_dict(file))
        if not isinstance(content, str):
            raise InvalidPayload("Message text must be a non-empty string")
        return OutgoingPayload(text=content)


class MessageRouter:
    """Gates, encrypts, persists and fans out messages.

    Persistence and fan-out for one conversation happen under a single
    lock, so each connection receives a conversation's messages in
    persistence order.
    """

    def __init__(
        self,
        accounts: AccountStore,
        groups: GroupManager,
        messages: MessageStore,
        registry: ConnectionRegistry,
        max_text_length: int = MAX_TEXT_MESSAGE_LENGTH,
    ):
        self.accounts = accounts
        self.groups = groups
        self.messages = messages
        self.registry = registry
        self.max_text_length = max_text_length
        # Entries vanish once no task holds or awaits the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @staticmethod
    def _conversation_key(sender_id: str, destination: Destination) -> str:
        if destination.is_private:
            low, high = sorted((sender_id, destination.recipient_id))
            return f"dm:{low}:{high}"
        return f"group:{destination.group_id}"

    async def send(
        self,
        sender_id: str,
        destination: Destination,
        payload: OutgoingPayload,
        temp_id: Optional[str] = None,
    ) -> str:
        """
        Route one message and return its durable identity.

        Raises:
            InvalidDestination: Unknown recipient
            InvalidPayload: Text over the length limit
            GroupError: Unknown group
            PermissionDenied: Sender may not post into the group
            RecipientKeyUnavailable: Recipient has no usable public key
            StorageFailure: The record could not be persisted; nothing was sent
        """
        sender = self.accounts.require_user(sender_id)

        if payload.text is not None and len(payload.text) > self.max_text_length:
            raise InvalidPayload(
                f"Message text exceeds {self.max_text_length} characters",
                {"length": len(payload.text)},
                code=ErrorCode.E403_MESSAGE_TOO_LARGE,
            )

        if destination.is_private:
            if self.accounts.get_user(destination.recipient_id) is None:
                raise InvalidDestination(
                    "Unknown recipient", {"recipient_id": destination.recipient_id}
                )
        else:
            self.groups.require_group(destination.group_id)

        content = await self._resolve_content(destination, payload)

        async with self._lock_for(self._conversation_key(sender_id, destination)):
            if not destination.is_private:
                # Re-read under the lock so a concurrent revoke is honoured
                group = self.groups.require_group(destination.group_id)
                if not can_post(sender_id, group):
                    logger.info(f"Denied send by {sender_id} into group {group.group_id}")
                    raise PermissionDenied(
                        "You don't have permission to send messages in this group",
                        {"group_id": group.group_id},
                    )

            message = Message(
                sender_id=sender_id,
                sender_name=sender.name,
                content=content,
                recipient_id=destination.recipient_id,
                group_id=destination.group_id,
                temp_id=temp_id,
            )
            await self.messages.add(message)

            targets = self._resolve_targets(message)
            await self._fan_out(message, targets)

        return message.message_id

    async def _resolve_content(
        self, destination: Destination, payload: OutgoingPayload
    ) -> MessageContent:
        if payload.file is not None:
            return FileContent(payload.file)

        if not destination.is_private:
            return TextContent(payload.text)

        public_key = self.accounts.get_public_key(destination.recipient_id)
        if not public_key:
            raise RecipientKeyUnavailable(details={"recipient_id": destination.recipient_id})
        try:
            ciphertext = await asyncio.to_thread(
                crypto.encrypt_for_recipient, payload.text, public_key
            )
        except CryptoError as e:
            raise RecipientKeyUnavailable(
                "Recipient public key is unusable",
                {"recipient_id": destination.recipient_id},
            ) from e
        return EncryptedTextContent(ciphertext=ciphertext, plaintext=payload.text)

    def _resolve_targets(self, message: Message) -> Set[Connection]:
        targets = self.registry.route_to(message.sender_id)
        if message.is_private:
            targets |= self.registry.route_to(message.recipient_id)
        else:
            targets |= self.registry.route_to_group(message.group_id)
        return targets

    async def _fan_out(self, message: Message, targets: Set[Connection]) -> int:
        """
        Push the record to each connection, as viewed by its user.

        Not transactional: a failed connection is logged and skipped.

        Returns:
            Number of connections that accepted the frame
        """
        frames: Dict[bool, bytes] = {}

        async def deliver(connection: Connection) -> bool:
            is_sender = connection.user_id == message.sender_id
            if is_sender not in frames:
                frames[is_sender] = Protocol.event(
                    Event.MESSAGE, message.view_for(connection.user_id)
                )
            try:
                await connection.send_frame(frames[is_sender])
                return True
            except TransportFailure as e:
                logger.warning(f"Fan-out of {message.message_id} to {connection} failed: {e}")
                return False

        ordered = sorted(targets, key=lambda c: c.connection_id)
        results = await asyncio.gather(*(deliver(c) for c in ordered))
        delivered = sum(1 for ok in results if ok)
        logger.debug(
            f"Message {message.message_id} delivered to {delivered}/{len(ordered)} connections"
        )
        return delivered

    def private_history(self, viewer_id: str, peer_id: str) -> List[Dict[str, Any]]:
        """Conversation between viewer and peer, as the viewer may see it."""
        return [
            msg.view_for(viewer_id) for msg in self.messages.private_history(viewer_id, peer_id)
        ]

    def group_history(self, viewer_id: str, group_id: str) -> List[Dict[str, Any]]:
        """
        Group conversation for a current member.

        Raises:
            GroupError: Unknown group
            PermissionDenied: Viewer is not a member
        """
        group = self.groups.require_group(group_id)
        if not group.is_member(viewer_id):
            raise PermissionDenied("Not a member of this group", {"group_id": group_id})
        return [msg.view_for(viewer_id) for msg in self.messages.group_history(group_id)]
