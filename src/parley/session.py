"""
Parley - Client chat session.

ChatSession is the client's composition root: it owns the connection, the
user's private key, the reconciliation engine, notifications and the
cached directory of users and groups. The connection is acquired on
signup/login and released on close.

Example:
    async with ChatSession("127.0.0.1", 5300) as chat:
        await chat.login("ada@example.org", "password")
        await chat.open_private(peer_id)
        await chat.send_text("hello", recipient_id=peer_id)
"""

import asyncio
import base64
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from rich.text import Text

from . import crypto
from .client import ParleyClient
from .config import Config
from .constants import DEFAULT_HOST, DEFAULT_SERVER_PORT, IDENTITY_WAIT_TIMEOUT, NOTICE_LIFETIME
from .errors import AuthenticationFailure, ErrorCode, InvalidDestination, ParleyError, TransportFailure
from .group import Group, can_post
from .message import FileDescriptor
from .notification import NotificationCenter, PresenceMap
from .protocol import Event
from .reconcile import ChatEntry, ReconciliationEngine, group_conversation, private_conversation
from .render import render_transcript

logger = logging.getLogger(__name__)


class ChatSession:
    """One signed-in user's view of the messenger."""

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_SERVER_PORT,
        notice_lifetime: float = NOTICE_LIFETIME,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = ParleyClient(host, port)
        self.notifications = NotificationCenter(notice_lifetime, clock)
        self.presence = PresenceMap()
        self.engine: Optional[ReconciliationEngine] = None
        self.user: Optional[Dict[str, Any]] = None
        self.user_id: Optional[str] = None
        self.users: Dict[str, Dict[str, Any]] = {}
        self.groups: Dict[str, Group] = {}
        self.active_conversation: Optional[str] = None
        self._joined_group: Optional[str] = None
        self._identity = asyncio.Event()

        self.client.on(Event.IDENTITY, self._on_identity)
        self.client.on(Event.MESSAGE, self._on_message)
        self.client.on(Event.STATUS_UPDATE, self._on_status_update)
        self.client.on(Event.ERROR, self._on_error)

    @classmethod
    def from_config(cls, config: Config, host: Optional[str] = None) -> "ChatSession":
        """Session for the server and notice settings in ``config``.

        ``host`` replaces the configured listen address, which may be a
        wildcard such as 0.0.0.0.
        """
        return cls(
            host or config.get("server", "host", DEFAULT_HOST),
            config.get("server", "port", DEFAULT_SERVER_PORT),
            notice_lifetime=config.get("notifications", "notice_lifetime", NOTICE_LIFETIME),
        )

    async def __aenter__(self) -> "ChatSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def signed_in(self) -> bool:
        return self.engine is not None and self.client.connected

    # Lifecycle

    async def signup(
        self, name: str, email: str, password: str, location: str = "", designation: str = ""
    ) -> Dict[str, Any]:
        await self._connect()
        response = await self.client.signup(name, email, password, location, designation)
        await self._admit(response)
        return self.user

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        await self._connect()
        response = await self.client.login(email, password)
        await self._admit(response)
        return self.user

    async def close(self) -> None:
        """Log out and release the connection."""
        if self.client.connected and self.engine is not None:
            try:
                await self.client.logout()
            except ParleyError as e:
                logger.debug(f"Logout failed: {e}")
        await self.client.disconnect()
        self.engine = None
        self._identity.clear()

    async def _connect(self) -> None:
        if self.client.connected:
            return
        await self.client.connect()

    async def _admit(self, credentials: Dict[str, Any]) -> None:
        self.user = credentials["user"]
        self.engine = ReconciliationEngine(self.user["user_id"], credentials["private_key"])

        await self.client.authenticate(credentials["token"])
        try:
            await asyncio.wait_for(self._identity.wait(), timeout=IDENTITY_WAIT_TIMEOUT)
        except asyncio.TimeoutError as e:
            raise TransportFailure(
                ErrorCode.E202_CONNECTION_TIMEOUT, "Server did not send an identity"
            ) from e
        if self.user_id != self.user["user_id"]:
            raise AuthenticationFailure("Server assigned an unexpected identity")

        await self.refresh_users()
        await self.refresh_groups()
        logger.info(f"Signed in as {self.user_id}")

    def replace_private_key(self, private_key: str) -> None:
        """Swap the key used to open future private messages."""
        self._require_engine().set_private_key(private_key)

    def _require_engine(self) -> ReconciliationEngine:
        if self.engine is None:
            raise AuthenticationFailure("Not signed in")
        return self.engine

    # Directory

    async def refresh_users(self) -> List[Dict[str, Any]]:
        users = await self.client.fetch_users()
        self.users = {u["user_id"]: u for u in users}
        self.presence.load(users)
        return users

    async def refresh_groups(self) -> List[Group]:
        groups = [Group.from_dict(g) for g in await self.client.fetch_groups()]
        self.groups = {g.group_id: g for g in groups}
        return groups

    async def fetch_profile(self, user_id: str) -> Dict[str, Any]:
        return await self.client.fetch_user_profile(user_id)

    # Conversations

    async def open_private(self, peer_id: str) -> List[ChatEntry]:
        """Switch to a private conversation and resync its history."""
        engine = self._require_engine()
        await self._leave_joined_group()
        key = private_conversation(peer_id)
        self.active_conversation = key
        engine.load_history(await self.client.fetch_private_history(peer_id))
        self.notifications.mark_read(key)
        return engine.conversation(key)

    async def open_group(self, group_id: str) -> List[ChatEntry]:
        """Join a group's live view and resync its history."""
        engine = self._require_engine()
        if self._joined_group != group_id:
            await self._leave_joined_group()
            await self.client.join_group(group_id)
            self._joined_group = group_id
        key = group_conversation(group_id)
        self.active_conversation = key
        engine.load_history(await self.client.fetch_group_history(group_id))
        self.notifications.mark_read(key)
        return engine.conversation(key)

    async def leave_group(self, group_id: str) -> None:
        await self.client.leave_group(group_id)
        if self._joined_group == group_id:
            self._joined_group = None
        if self.active_conversation == group_conversation(group_id):
            self.active_conversation = None

    async def _leave_joined_group(self) -> None:
        if self._joined_group is not None:
            await self.leave_group(self._joined_group)

    def transcript(self, conversation_key: Optional[str] = None) -> List[Text]:
        """Rendered lines of a conversation, the active one by default."""
        engine = self._require_engine()
        key = conversation_key or self.active_conversation
        if key is None:
            return []
        return render_transcript(engine.conversation(key), engine.viewer_id)

    # Sending

    async def send_text(
        self, text: str, recipient_id: Optional[str] = None, group_id: Optional[str] = None
    ) -> ChatEntry:
        """
        Show the message immediately as pending and submit it.

        Raises:
            InvalidDestination: If not exactly one of recipient and group is given
            TransportFailure: If the message could not be written; the pending
                entry is removed
        """
        return await self._send(recipient_id, group_id, text=text)

    async def send_file(
        self,
        name: str,
        data: bytes,
        recipient_id: Optional[str] = None,
        group_id: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> ChatEntry:
        """Upload an attachment, then send its descriptor like a text message."""
        _check_destination(recipient_id, group_id)
        uploaded = await self.client.upload_attachment(
            name, base64.b64encode(data).decode("ascii"), mime_type
        )
        return await self._send(recipient_id, group_id, file=FileDescriptor.from_dict(uploaded))

    async def _send(
        self,
        recipient_id: Optional[str],
        group_id: Optional[str],
        text: Optional[str] = None,
        file: Optional[FileDescriptor] = None,
    ) -> ChatEntry:
        engine = self._require_engine()
        _check_destination(recipient_id, group_id)

        temp_id = crypto.generate_temp_id()
        entry = engine.add_pending(
            temp_id,
            recipient_id=recipient_id,
            group_id=group_id,
            text=text,
            file=file,
            sender_name=self.user.get("name", "") if self.user else "",
        )
        try:
            await self.client.send_message(
                temp_id,
                recipient_id=recipient_id,
                group_id=group_id,
                content=text,
                file=file.to_dict() if file is not None else None,
            )
        except TransportFailure:
            engine.reject(temp_id)
            raise
        return entry

    # Groups

    async def create_group(self, name: str) -> Group:
        group = Group.from_dict(await self.client.create_group(name))
        self.groups[group.group_id] = group
        return group

    async def add_member(self, group_id: str, user_id: str, can_send_messages: bool = False) -> Group:
        group = Group.from_dict(await self.client.add_member(group_id, user_id, can_send_messages))
        self.groups[group.group_id] = group
        return group

    async def set_permission(self, group_id: str, user_id: str, can_send_messages: bool) -> Group:
        group = Group.from_dict(
            await self.client.set_permission(group_id, user_id, can_send_messages)
        )
        self.groups[group.group_id] = group
        return group

    def can_send_in_group(self, group_id: str) -> bool:
        """Local hint for enabling the composer; the server decides."""
        group = self.groups.get(group_id)
        return group is not None and self.user_id is not None and can_post(self.user_id, group)

    # Server events

    def _on_identity(self, data: Dict[str, Any]) -> None:
        self.user_id = data.get("user_id")
        self._identity.set()

    def _on_message(self, data: Dict[str, Any]) -> None:
        if self.engine is None:
            return
        result = self.engine.receive(data)
        if result is None:
            return
        entry, is_new = result
        if is_new and entry.sender_id != self.engine.viewer_id:
            key = entry.conversation_key(self.engine.viewer_id)
            self.notifications.message_received(entry, key, viewing=key == self.active_conversation)

    def _on_status_update(self, data: Dict[str, Any]) -> None:
        user_id = data.get("user_id")
        status = data.get("status")
        if not user_id or not status:
            return
        self.presence.update(user_id, status)
        if user_id in self.users:
            self.users[user_id]["status"] = status

    def _on_error(self, data: Dict[str, Any]) -> None:
        temp_id = data.get("temp_id")
        message = data.get("message") or "Request failed"
        if not temp_id:
            # Not tied to a send, e.g. a refused join_group
            self.notifications.push(message, level="error")
            return

        if self.engine is not None:
            self.engine.reject(temp_id)
        if data.get("code") == ErrorCode.E004_PERMISSION_DENIED.value:
            self.notifications.send_rejected()
        else:
            self.notifications.send_rejected(message)


def _check_destination(recipient_id: Optional[str], group_id: Optional[str]) -> None:
    if bool(recipient_id) == bool(group_id):
        raise InvalidDestination("Message must have exactly one of recipient and group")
