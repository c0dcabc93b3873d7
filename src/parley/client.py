"""
Parley - Client API for talking to a Parley server using asyncio.

This module provides the transport half of a chat client: a persistent
connection that correlates request/response frames by ``request_id`` and
dispatches server events (``identity``, ``message``, ``status_update``,
``error``) to registered callbacks.
"""

import asyncio
import contextlib
import itertools
import logging
from typing import Any, Callable, Dict, List, Optional

from .constants import CONNECTION_TIMEOUT, DEFAULT_HOST, DEFAULT_SERVER_PORT, READ_CHUNK_SIZE, REQUEST_TIMEOUT
from .errors import ErrorCode, ParleyError, TransportFailure, error_from_dict
from .protocol import Command, Event, FrameBuffer, FrameType, Protocol

# Configure logging
logger = logging.getLogger(__name__)


class ParleyClient:
    """Async client for communicating with a Parley server."""

    def __init__(self, host: str = DEFAULT_HOST, port: int = DEFAULT_SERVER_PORT):
        """
        Initialize client.

        Args:
            host: Server host
            port: Server port
        """
        self.host = host
        self.port = port
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.connected = False

        # Receive task
        self.receive_task: Optional[asyncio.Task] = None
        self.running = False
        self.frames = FrameBuffer()

        # Event callbacks
        self.event_callbacks: Dict[str, List[Callable]] = {}

        # Outstanding requests by request_id
        self._pending: Dict[str, asyncio.Future] = {}
        self._request_ids = itertools.count(1)
        self._write_lock = asyncio.Lock()

    async def connect(self) -> None:
        """
        Connect to server.

        Raises:
            TransportFailure: If the connection cannot be established
        """
        try:
            self.reader, self.writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=CONNECTION_TIMEOUT
            )
        except asyncio.TimeoutError as e:
            raise TransportFailure(
                ErrorCode.E202_CONNECTION_TIMEOUT, f"Timed out connecting to {self.host}:{self.port}"
            ) from e
        except OSError as e:
            raise TransportFailure(
                ErrorCode.E201_CONNECTION_FAILED, f"Cannot connect to {self.host}:{self.port}: {e}"
            ) from e

        self.connected = True
        self.running = True
        self.receive_task = asyncio.create_task(self._receive_loop())
        logger.info(f"Connected to server at {self.host}:{self.port}")

    async def disconnect(self) -> None:
        """Disconnect from server."""
        self.running = False
        self.connected = False

        if self.receive_task and not self.receive_task.done():
            self.receive_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.receive_task

        if self.writer:
            try:
                self.writer.close()
                await self.writer.wait_closed()
            except (ConnectionError, OSError, RuntimeError) as e:
                logger.debug(f"Error closing writer: {e}")
            self.writer = None

        self.reader = None
        self._fail_pending(TransportFailure(ErrorCode.E203_CONNECTION_CLOSED, "Disconnected"))

    async def _receive_loop(self) -> None:
        """Background task for receiving frames."""
        logger.debug("Receive loop started")

        try:
            while self.running:
                data = await self.reader.read(READ_CHUNK_SIZE)
                if not data:
                    logger.warning("Server closed connection")
                    break

                try:
                    lines = self.frames.feed(data)
                except TransportFailure as e:
                    logger.warning(f"Dropping oversized frame from server: {e}")
                    continue

                for line in lines:
                    try:
                        frame = Protocol.decode(line)
                    except TransportFailure as e:
                        logger.warning(f"Invalid frame from server: {e}")
                        continue
                    await self._handle_frame(frame)
        except asyncio.CancelledError:
            raise
        except (ConnectionError, OSError) as e:
            logger.warning(f"Connection lost: {e}")
        finally:
            self.connected = False
            self._fail_pending(TransportFailure(ErrorCode.E203_CONNECTION_CLOSED, "Connection closed"))
            logger.debug("Receive loop ended")

    def _fail_pending(self, error: ParleyError) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def _handle_frame(self, frame: Dict[str, Any]) -> None:
        if frame["type"] == FrameType.EVENT:
            await self._dispatch(frame["event"], frame.get("data") or {})
            return

        future = self._pending.pop(frame.get("request_id"), None)
        if future is None:
            logger.debug(f"Response for unknown request {frame.get('request_id')}")
        elif not future.done():
            future.set_result(frame)

    async def _dispatch(self, event_name: str, data: Dict[str, Any]) -> None:
        for callback in list(self.event_callbacks.get(event_name, [])):
            try:
                # Handle both sync and async callbacks
                if asyncio.iscoroutinefunction(callback):
                    await callback(data)
                else:
                    callback(data)
            except Exception as e:
                logger.error(f"Error in {event_name} callback: {e}", exc_info=True)

    async def _write(self, frame: bytes) -> None:
        if not self.connected or self.writer is None:
            raise TransportFailure(ErrorCode.E203_CONNECTION_CLOSED, "Not connected to server")
        async with self._write_lock:
            try:
                self.writer.write(frame)
                await self.writer.drain()
            except (ConnectionError, OSError, RuntimeError) as e:
                raise TransportFailure(ErrorCode.E204_SEND_FAILED, f"Write failed: {e}") from e

    async def request(
        self, command: str, params: Optional[Dict[str, Any]] = None, timeout: float = REQUEST_TIMEOUT
    ) -> Dict[str, Any]:
        """
        Send a request and wait for its response.

        Args:
            command: Command to execute
            params: Command parameters
            timeout: Timeout in seconds

        Returns:
            The successful response frame

        Raises:
            ParleyError: The server's error for a failed response
            TransportFailure: On timeout or a lost connection
        """
        request_id = str(next(self._request_ids))
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            await self._write(Protocol.request(request_id, command, params))
            response = await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"Request timeout for command: {command}")
            raise TransportFailure(
                ErrorCode.E202_CONNECTION_TIMEOUT, f"Request timeout: {command}"
            ) from e
        finally:
            self._pending.pop(request_id, None)

        if not response.get("success"):
            raise error_from_dict(response.get("error"))
        return response

    async def send_event(self, event_name: str, data: Dict[str, Any]) -> None:
        """Send a fire-and-forget event; failures come back as ``error`` events."""
        await self._write(Protocol.event(event_name, data))

    def on(self, event_name: str, callback: Callable):
        """
        Register callback for event.

        Args:
            event_name: Name of event to listen for
            callback: Function to call when event occurs
        """
        if event_name not in self.event_callbacks:
            self.event_callbacks[event_name] = []
        self.event_callbacks[event_name].append(callback)

    def off(self, event_name: str, callback: Callable):
        """
        Unregister callback for event.

        Args:
            event_name: Name of event
            callback: Callback to remove
        """
        if event_name in self.event_callbacks:
            with contextlib.suppress(ValueError):
                self.event_callbacks[event_name].remove(callback)

    # Server control

    async def ping(self) -> bool:
        """Ping server to check connectivity."""
        response = await self.request(Command.PING)
        return response.get("message") == "pong"

    # Accounts

    async def signup(
        self, name: str, email: str, password: str, location: str = "", designation: str = ""
    ) -> Dict[str, Any]:
        """Create an account; the response carries token, private key and user."""
        return await self.request(
            Command.SIGNUP,
            {
                "name": name,
                "email": email,
                "password": password,
                "location": location,
                "designation": designation,
            },
        )

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        return await self.request(Command.LOGIN, {"email": email, "password": password})

    async def authenticate(self, token: str) -> Dict[str, Any]:
        """Admit this connection; an ``identity`` event arrives before the response."""
        return await self.request(Command.AUTHENTICATE, {"token": token})

    async def logout(self) -> None:
        await self.request(Command.LOGOUT)

    # Directory

    async def fetch_users(self) -> List[Dict[str, Any]]:
        response = await self.request(Command.FETCH_USERS)
        return response.get("users", [])

    async def fetch_user_profile(self, user_id: str) -> Dict[str, Any]:
        response = await self.request(Command.FETCH_USER_PROFILE, {"user_id": user_id})
        return response["user"]

    async def fetch_groups(self) -> List[Dict[str, Any]]:
        response = await self.request(Command.FETCH_GROUPS)
        return response.get("groups", [])

    # History

    async def fetch_private_history(self, peer_id: str) -> List[Dict[str, Any]]:
        response = await self.request(Command.FETCH_PRIVATE_HISTORY, {"peer_id": peer_id})
        return response.get("messages", [])

    async def fetch_group_history(self, group_id: str) -> List[Dict[str, Any]]:
        response = await self.request(Command.FETCH_GROUP_HISTORY, {"group_id": group_id})
        return response.get("messages", [])

    # Groups

    async def create_group(self, name: str) -> Dict[str, Any]:
        response = await self.request(Command.CREATE_GROUP, {"name": name})
        return response["group"]

    async def add_member(
        self, group_id: str, user_id: str, can_send_messages: bool = False
    ) -> Dict[str, Any]:
        response = await self.request(
            Command.ADD_MEMBER,
            {"group_id": group_id, "user_id": user_id, "can_send_messages": can_send_messages},
        )
        return response["group"]

    async def set_permission(
        self, group_id: str, user_id: str, can_send_messages: bool
    ) -> Dict[str, Any]:
        response = await self.request(
            Command.SET_PERMISSION,
            {"group_id": group_id, "user_id": user_id, "can_send_messages": can_send_messages},
        )
        return response["group"]

    async def join_group(self, group_id: str) -> None:
        await self.send_event(Event.JOIN_GROUP, {"group_id": group_id})

    async def leave_group(self, group_id: str) -> None:
        await self.send_event(Event.LEAVE_GROUP, {"group_id": group_id})

    # Messaging

    async def send_message(
        self,
        temp_id: str,
        recipient_id: Optional[str] = None,
        group_id: Optional[str] = None,
        content: Optional[str] = None,
        file: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Submit a message. The outcome arrives as a ``message`` event echoing
        ``temp_id``, or as an ``error`` event carrying it.
        """
        data: Dict[str, Any] = {"temp_id": temp_id}
        if recipient_id is not None:
            data["recipient_id"] = recipient_id
        if group_id is not None:
            data["group_id"] = group_id
        if content is not None:
            data["content"] = content
        if file is not None:
            data["file"] = file
        await self.send_event(Event.SEND_MESSAGE, data)

    async def upload_attachment(
        self, name: str, data_b64: str, mime_type: Optional[str] = None
    ) -> Dict[str, Any]:
        """Upload base64 file data; returns the file descriptor."""
        params = {"name": name, "data": data_b64}
        if mime_type:
            params["mime_type"] = mime_type
        response = await self.request(Command.UPLOAD_ATTACHMENT, params)
        return response["file"]
