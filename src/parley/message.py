"""
Parley - Message model and durable message storage.

A message has exactly one destination (a recipient user or a group) and
one content variant:

- TextContent: group text, stored and broadcast as plaintext
- EncryptedTextContent: private text; ciphertext addressed to the
  recipient's public key, with the plaintext retained for the sender
- FileContent: an uploaded attachment descriptor, never encrypted
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from . import crypto
from .constants import DEFAULT_MIME_TYPE
from .errors import InvalidDestination, InvalidPayload, StorageFailure
from .storage import read_json, write_json_atomic

logger = logging.getLogger(__name__)


class ContentKind(str, Enum):
    """Discriminant of the message content variant."""

    TEXT = "text"
    ENCRYPTED_TEXT = "encrypted_text"
    FILE = "file"


@dataclass(frozen=True)
class FileDescriptor:
    """Reference to an attachment uploaded out of band."""

    name: str
    url: str
    size: int
    mime_type: str = DEFAULT_MIME_TYPE

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    @property
    def size_kb(self) -> float:
        return self.size / 1024

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "url": self.url, "size": self.size, "mime_type": self.mime_type}

    @staticmethod
    def from_dict(data: Any) -> "FileDescriptor":
        """
        Build a descriptor from a wire or storage dictionary.

        Raises:
            InvalidPayload: If required fields are missing or mistyped
        """
        if not isinstance(data, dict):
            raise InvalidPayload("File descriptor must be an object")
        name = data.get("name")
        url = data.get("url")
        size = data.get("size")
        mime_type = data.get("mime_type") or DEFAULT_MIME_TYPE
        if not isinstance(name, str) or not name or not isinstance(url, str) or not url:
            raise InvalidPayload("File descriptor requires name and url", {"file": data})
        if isinstance(size, bool) or not isinstance(size, int) or size < 0:
            raise InvalidPayload("File descriptor size must be a non-negative integer")
        if not isinstance(mime_type, str):
            raise InvalidPayload("File descriptor mime_type must be a string")
        return FileDescriptor(name=name, url=url, size=size, mime_type=mime_type)


@dataclass(frozen=True)
class TextContent:
    text: str
    kind: ContentKind = field(default=ContentKind.TEXT, init=False)


@dataclass(frozen=True)
class EncryptedTextContent:
    """Private text. ``plaintext`` is only present in the sender's view."""

    ciphertext: str
    plaintext: Optional[str] = None
    kind: ContentKind = field(default=ContentKind.ENCRYPTED_TEXT, init=False)


@dataclass(frozen=True)
class FileContent:
    file: FileDescriptor
    kind: ContentKind = field(default=ContentKind.FILE, init=False)


MessageContent = Union[TextContent, EncryptedTextContent, FileContent]


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Message:
    """A routed message record."""

    sender_id: str
    content: MessageContent
    recipient_id: Optional[str] = None
    group_id: Optional[str] = None
    temp_id: Optional[str] = None
    message_id: Optional[str] = None
    sender_name: str = ""
    timestamp: str = field(default_factory=_utc_now)

    def __post_init__(self):
        if (self.recipient_id is None) == (self.group_id is None):
            raise InvalidDestination(
                "Message must have exactly one of recipient_id and group_id",
                {"recipient_id": self.recipient_id, "group_id": self.group_id},
            )

    @property
    def is_private(self) -> bool:
        return self.recipient_id is not None

    @property
    def is_group(self) -> bool:
        return self.group_id is not None

    @property
    def kind(self) -> ContentKind:
        return self.content.kind

    def to_dict(self) -> Dict[str, Any]:
        """Full record, including retained plaintext, for storage and the sender."""
        data: Dict[str, Any] = {
            "message_id": self.message_id,
            "sender_id": self.sender_id,
            "sender_name": self.sender_name,
            "recipient_id": self.recipient_id,
            "group_id": self.group_id,
            "kind": self.kind.value,
            "content": None,
            "encrypted_content": None,
            "file": None,
            "temp_id": self.temp_id,
            "timestamp": self.timestamp,
        }
        if isinstance(self.content, TextContent):
            data["content"] = self.content.text
        elif isinstance(self.content, EncryptedTextContent):
            data["content"] = self.content.plaintext
            data["encrypted_content"] = self.content.ciphertext
        else:
            data["file"] = self.content.file.to_dict()
        return data

    def view_for(self, viewer_id: str) -> Dict[str, Any]:
        """
        Record as delivered to ``viewer_id``.

        Only the sender's view of a private message carries the retained
        plaintext; everyone else gets the ciphertext alone.
        """
        data = self.to_dict()
        if self.kind == ContentKind.ENCRYPTED_TEXT and viewer_id != self.sender_id:
            data["content"] = None
        return data

    @staticmethod
    def from_dict(data: Any) -> "Message":
        """
        Parse a stored record or a received view.

        Raises:
            InvalidPayload: If the content fields do not match the kind
            InvalidDestination: If the record has both or neither destination
        """
        if not isinstance(data, dict):
            raise InvalidPayload("Message record must be an object")
        try:
            kind = ContentKind(data.get("kind"))
        except ValueError as e:
            raise InvalidPayload(f"Unknown message kind: {data.get('kind')!r}") from e

        content: MessageContent
        if kind == ContentKind.TEXT:
            text = data.get("content")
            if not isinstance(text, str):
                raise InvalidPayload("Text message without content")
            content = TextContent(text)
        elif kind == ContentKind.ENCRYPTED_TEXT:
            ciphertext = data.get("encrypted_content")
            if not isinstance(ciphertext, str):
                raise InvalidPayload("Encrypted message without ciphertext")
            content = EncryptedTextContent(ciphertext=ciphertext, plaintext=data.get("content"))
        else:
            content = FileContent(FileDescriptor.from_dict(data.get("file")))

        return Message(
            sender_id=data.get("sender_id", ""),
            content=content,
            recipient_id=data.get("recipient_id"),
            group_id=data.get("group_id"),
            temp_id=data.get("temp_id"),
            message_id=data.get("message_id"),
            sender_name=data.get("sender_name", ""),
            timestamp=data.get("timestamp") or _utc_now(),
        )


class MessageStore:
    """Durable message records, persisted as a JSON list in arrival order."""

    def __init__(self, messages_file: Path):
        self.messages_file = Path(messages_file)
        self.messages: List[Message] = []
        self._lock = asyncio.Lock()
        self._load_messages()

    def _load_messages(self) -> None:
        for record in read_json(self.messages_file, []):
            try:
                self.messages.append(Message.from_dict(record))
            except (InvalidPayload, InvalidDestination) as e:
                logger.warning(f"Skipping malformed stored message: {e}")
        if self.messages:
            logger.info(f"Loaded {len(self.messages)} messages from {self.messages_file}")

    async def add(self, message: Message) -> Message:
        """
        Persist a message and assign its durable identity.

        The record is visible to history queries only once the write
        succeeded.

        Raises:
            StorageFailure: If the record could not be written
        """
        async with self._lock:
            message.message_id = crypto.generate_uid()
            records = [msg.to_dict() for msg in self.messages]
            records.append(message.to_dict())
            try:
                await write_json_atomic(self.messages_file, records)
            except StorageFailure:
                message.message_id = None
                raise
            self.messages.append(message)
        logger.debug(f"Stored message {message.message_id} ({message.kind.value})")
        return message

    def get(self, message_id: str) -> Optional[Message]:
        for msg in self.messages:
            if msg.message_id == message_id:
                return msg
        return None

    def private_history(self, user_a: str, user_b: str) -> List[Message]:
        """All private messages exchanged between two users, oldest first."""
        pair = {user_a, user_b}
        return [
            msg
            for msg in self.messages
            if msg.is_private and {msg.sender_id, msg.recipient_id} == pair
        ]

    def group_history(self, group_id: str) -> List[Message]:
        """All messages posted into a group, oldest first."""
        return [msg for msg in self.messages if msg.group_id == group_id]
