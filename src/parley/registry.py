"""
Parley - Connection registry.

Maps authenticated users to their live connections and tracks which
groups each connection has joined. Group fan-out is resolved from durable
membership; join/leave subscriptions are a runtime hint only and never
decide delivery.
"""

import asyncio
import itertools
import logging
import weakref
from typing import Awaitable, Callable, Dict, List, Optional, Set

from .errors import ErrorCode, TransportFailure
from .group import GroupManager
from .protocol import Protocol

logger = logging.getLogger(__name__)

PresenceListener = Callable[[str, bool], Awaitable[None]]


class Connection:
    """
    One live transport session of an admitted user.

    Wraps the stream writer; frames written to it are serialized so
    concurrent fan-outs never interleave bytes.
    """

    def __init__(self, connection_id: int, user_id: str, writer):
        self.connection_id = connection_id
        self.user_id = user_id
        self.writer = writer
        self.subscriptions: Set[str] = set()
        self.closed = False
        self._write_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"Connection(id={self.connection_id}, user={self.user_id})"

    async def send_frame(self, frame: bytes) -> None:
        """
        Write one encoded frame.

        Raises:
            TransportFailure: If the connection is closed or the write fails
        """
        if self.closed:
            raise TransportFailure(
                ErrorCode.E203_CONNECTION_CLOSED,
                "Connection closed",
                {"connection_id": self.connection_id},
            )
        async with self._write_lock:
            try:
                self.writer.write(frame)
                await self.writer.drain()
            except (ConnectionError, OSError, RuntimeError) as e:
                raise TransportFailure(
                    ErrorCode.E204_SEND_FAILED,
                    f"Write failed: {e}",
                    {"connection_id": self.connection_id},
                ) from e

    async def push(self, event: str, data: Dict) -> None:
        """Send a server event to this connection."""
        await self.send_frame(Protocol.event(event, data))


class ConnectionRegistry:
    """Live connections by user, plus group subscriptions.

    Admission and disconnect are serialized per user so presence
    transitions are reported in order. Subscription changes contain no
    await points and are therefore atomic on the event loop.
    """

    def __init__(self, group_manager: GroupManager):
        self.group_manager = group_manager
        self.presence_listener: Optional[PresenceListener] = None

        self._connections: Dict[int, Connection] = {}
        self._by_user: Dict[str, Set[int]] = {}
        self._group_subscribers: Dict[str, Set[int]] = {}
        # Entries vanish once no task holds or awaits the lock
        self._user_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._ids = itertools.count(1)

    def _user_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        return lock

    async def admit(self, user_id: str, writer, greeting: Optional[bytes] = None) -> Connection:
        """
        Register a new live connection for an authenticated user.

        ``greeting`` (the ``identity`` event) is written before the
        connection becomes routable, so it precedes any message traffic.

        Raises:
            TransportFailure: If the greeting cannot be written; nothing is registered
        """
        async with self._user_lock(user_id):
            connection = Connection(next(self._ids), user_id, writer)
            if greeting is not None:
                await connection.send_frame(greeting)

            self._connections[connection.connection_id] = connection
            handles = self._by_user.setdefault(user_id, set())
            handles.add(connection.connection_id)
            first = len(handles) == 1

            logger.info(f"Admitted {connection} ({len(handles)} live for user)")
            if first:
                await self._notify_presence(user_id, True)

        return connection

    async def disconnect(self, connection: Connection) -> None:
        """
        Tear down a connection and its subscriptions.

        Durable group membership is untouched.
        """
        user_id = connection.user_id
        async with self._user_lock(user_id):
            if self._connections.pop(connection.connection_id, None) is None:
                return
            connection.closed = True

            for group_id in list(connection.subscriptions):
                self._drop_subscription(connection, group_id)

            handles = self._by_user.get(user_id, set())
            handles.discard(connection.connection_id)
            last = not handles
            if last:
                self._by_user.pop(user_id, None)

            logger.info(f"Disconnected {connection}")
            if last:
                await self._notify_presence(user_id, False)

    async def _notify_presence(self, user_id: str, online: bool) -> None:
        if self.presence_listener is None:
            return
        try:
            await self.presence_listener(user_id, online)
        except Exception as e:
            logger.error(f"Presence listener failed for {user_id}: {e}", exc_info=True)

    def subscribe(self, connection: Connection, group_id: str) -> None:
        """Mark a connection as actively viewing a group."""
        connection.subscriptions.add(group_id)
        self._group_subscribers.setdefault(group_id, set()).add(connection.connection_id)

    def unsubscribe(self, connection: Connection, group_id: str) -> None:
        self._drop_subscription(connection, group_id)

    def _drop_subscription(self, connection: Connection, group_id: str) -> None:
        connection.subscriptions.discard(group_id)
        subscribers = self._group_subscribers.get(group_id)
        if subscribers is not None:
            subscribers.discard(connection.connection_id)
            if not subscribers:
                del self._group_subscribers[group_id]

    def route_to(self, user_id: str) -> Set[Connection]:
        """Every live connection of a user (possibly none)."""
        return {self._connections[cid] for cid in self._by_user.get(user_id, ())}

    def route_to_group(self, group_id: str) -> Set[Connection]:
        """
        Every live connection of every current member, creator included.

        Raises:
            GroupError: If the group does not exist
        """
        group = self.group_manager.require_group(group_id)
        connections: Set[Connection] = set()
        for user_id in group.member_ids():
            connections |= self.route_to(user_id)
        return connections

    def group_viewers(self, group_id: str) -> Set[Connection]:
        """Connections currently subscribed to a group."""
        return {self._connections[cid] for cid in self._group_subscribers.get(group_id, ())}

    def all_connections(self) -> List[Connection]:
        return sorted(self._connections.values(), key=lambda c: c.connection_id)

    def is_online(self, user_id: str) -> bool:
        return bool(self._by_user.get(user_id))

    def connection_count(self) -> int:
        return len(self._connections)
