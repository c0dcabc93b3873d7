"""
Parley - Client-side message reconciliation.

Every message a client shows is one ChatEntry in an ordered map. A local
send is inserted immediately as PENDING under its ``temp_id``; when the
server's copy arrives with the same ``temp_id`` the entry is replaced in
place and becomes CONFIRMED. Messages from other users arrive as REMOTE.
Lookups go by ``temp_id`` first, then by durable ``message_id``, so echoes,
replays and history re-fetches never render one message twice.
"""

import itertools
import logging
from collections import OrderedDict
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from cryptography.hazmat.primitives.asymmetric import rsa

from . import crypto
from .constants import DECRYPTION_FAILED_PLACEHOLDER
from .errors import CryptoError, DecryptionFailure, InvalidDestination, InvalidPayload
from .message import (
    ContentKind,
    EncryptedTextContent,
    FileContent,
    FileDescriptor,
    Message,
    TextContent,
)

logger = logging.getLogger(__name__)


class MessageState(str, Enum):
    """Lifecycle of a rendered message."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    REMOTE = "remote"


@dataclass
class ChatEntry:
    """One rendered message as the local user sees it."""

    key: str
    state: MessageState
    sender_id: str
    kind: ContentKind
    text: Optional[str] = None
    file: Optional[FileDescriptor] = None
    recipient_id: Optional[str] = None
    group_id: Optional[str] = None
    temp_id: Optional[str] = None
    message_id: Optional[str] = None
    sender_name: str = ""
    timestamp: str = ""
    decryption_failed: bool = False

    @property
    def is_file(self) -> bool:
        return self.kind == ContentKind.FILE

    def conversation_key(self, viewer_id: str) -> str:
        """``group:<id>`` or ``dm:<peer id>`` from the viewer's side."""
        if self.group_id is not None:
            return group_conversation(self.group_id)
        peer = self.recipient_id if self.sender_id == viewer_id else self.sender_id
        return private_conversation(peer)


def private_conversation(peer_id: str) -> str:
    return f"dm:{peer_id}"


def group_conversation(group_id: str) -> str:
    return f"group:{group_id}"


class ReconciliationEngine:
    """Merges optimistic local sends with authoritative server records.

    Attributes:
        viewer_id: User id of the local user
        entries: Rendered entries in arrival order, keyed by a stable key
    """

    def __init__(self, viewer_id: str, private_key: Union[str, rsa.RSAPrivateKey, None] = None):
        self.viewer_id = viewer_id
        self.entries: "OrderedDict[str, ChatEntry]" = OrderedDict()
        # temp_ids are chosen by each sender, so they are only unique per sender
        self._by_temp_id: Dict[Tuple[str, str], str] = {}
        self._by_message_id: Dict[str, str] = {}
        self._keys = itertools.count(1)
        self._private_key: Union[str, rsa.RSAPrivateKey, None] = None
        self.set_private_key(private_key)

    def set_private_key(self, private_key: Union[str, rsa.RSAPrivateKey, None]) -> None:
        """
        Replace the key used for future decryptions.

        A PEM that cannot be parsed is kept as-is; every decryption with it
        then renders the failure placeholder.
        """
        if isinstance(private_key, str):
            try:
                private_key = crypto.load_private_key(private_key)
            except CryptoError:
                logger.warning("Private key could not be parsed; encrypted messages will not open")
        self._private_key = private_key

    def _next_key(self) -> str:
        return f"m{next(self._keys)}"

    def add_pending(
        self,
        temp_id: str,
        recipient_id: Optional[str] = None,
        group_id: Optional[str] = None,
        text: Optional[str] = None,
        file: Optional[FileDescriptor] = None,
        sender_name: str = "",
    ) -> ChatEntry:
        """Insert the local optimistic copy of a message being sent."""
        own = (self.viewer_id, temp_id)
        if own in self._by_temp_id:
            return self.entries[self._by_temp_id[own]]

        entry = ChatEntry(
            key=self._next_key(),
            state=MessageState.PENDING,
            sender_id=self.viewer_id,
            kind=ContentKind.FILE if file is not None else ContentKind.TEXT,
            text=text,
            file=file,
            recipient_id=recipient_id,
            group_id=group_id,
            temp_id=temp_id,
            sender_name=sender_name,
        )
        self.entries[entry.key] = entry
        self._by_temp_id[own] = entry.key
        return entry

    def receive(self, record: Dict[str, Any]) -> Optional[Tuple[ChatEntry, bool]]:
        """
        Merge one server record.

        Returns:
            ``(entry, is_new)`` where ``is_new`` is False when an existing
            entry was replaced, or None if the record is malformed
        """
        try:
            message = Message.from_dict(record)
        except (InvalidPayload, InvalidDestination) as e:
            logger.warning(f"Ignoring malformed message record: {e}")
            return None

        existing_key = self._match(message)
        existing = self.entries.get(existing_key) if existing_key else None

        if existing is not None:
            state = (
                MessageState.REMOTE if existing.state == MessageState.REMOTE else MessageState.CONFIRMED
            )
            key = existing.key
        else:
            state = MessageState.CONFIRMED if message.sender_id == self.viewer_id else MessageState.REMOTE
            key = self._next_key()

        entry = self._entry_from(key, state, message)
        self.entries[key] = entry
        if message.temp_id:
            self._by_temp_id[(message.sender_id, message.temp_id)] = key
        if message.message_id:
            self._by_message_id[message.message_id] = key
        return entry, existing is None

    def _match(self, message: Message) -> Optional[str]:
        if message.temp_id:
            key = self._by_temp_id.get((message.sender_id, message.temp_id))
            if key is not None:
                known = self.entries[key].message_id
                # A reused temp_id on a different durable message is a new message
                if not known or not message.message_id or known == message.message_id:
                    return key
        if message.message_id and message.message_id in self._by_message_id:
            return self._by_message_id[message.message_id]
        return None

    def load_history(self, records: Iterable[Dict[str, Any]]) -> List[ChatEntry]:
        """Merge a fetched history; returns the entries it produced, in order."""
        merged = []
        for record in records:
            result = self.receive(record)
            if result is not None:
                merged.append(result[0])
        return merged

    def reject(self, temp_id: str) -> Optional[ChatEntry]:
        """Drop a still-pending entry the server refused."""
        key = self._by_temp_id.get((self.viewer_id, temp_id))
        if key is None or self.entries[key].state != MessageState.PENDING:
            return None
        del self._by_temp_id[(self.viewer_id, temp_id)]
        return self.entries.pop(key)

    def get_by_temp_id(self, temp_id: str) -> Optional[ChatEntry]:
        """The viewer's own entry for a temp_id it sent."""
        key = self._by_temp_id.get((self.viewer_id, temp_id))
        return self.entries.get(key) if key else None

    def get_by_message_id(self, message_id: str) -> Optional[ChatEntry]:
        key = self._by_message_id.get(message_id)
        return self.entries.get(key) if key else None

    def conversation(self, conversation_key: str) -> List[ChatEntry]:
        """Entries of one conversation (see private_conversation/group_conversation)."""
        return [
            entry
            for entry in self.entries.values()
            if entry.conversation_key(self.viewer_id) == conversation_key
        ]

    def pending(self) -> List[ChatEntry]:
        return [e for e in self.entries.values() if e.state == MessageState.PENDING]

    def _entry_from(self, key: str, state: MessageState, message: Message) -> ChatEntry:
        entry = ChatEntry(
            key=key,
            state=state,
            sender_id=message.sender_id,
            kind=message.kind,
            recipient_id=message.recipient_id,
            group_id=message.group_id,
            temp_id=message.temp_id,
            message_id=message.message_id,
            sender_name=message.sender_name,
            timestamp=message.timestamp,
        )
        content = message.content
        if isinstance(content, FileContent):
            return replace(entry, file=content.file)
        if isinstance(content, TextContent):
            return replace(entry, text=content.text)
        return self._open(entry, message, content)

    def _open(self, entry: ChatEntry, message: Message, content: EncryptedTextContent) -> ChatEntry:
        # Group, own and ciphertext-less records render their plaintext as-is
        if message.is_group or message.sender_id == self.viewer_id or not content.ciphertext:
            return replace(entry, text=content.plaintext)

        try:
            if self._private_key is None:
                raise DecryptionFailure("No private key loaded")
            text = crypto.decrypt_with_private_key(content.ciphertext, self._private_key)
        except DecryptionFailure as e:
            logger.warning(f"Could not decrypt message {message.message_id}: {e.message}")
            return replace(entry, text=DECRYPTION_FAILED_PLACEHOLDER, decryption_failed=True)
        return replace(entry, text=text)
