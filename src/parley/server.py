"""
Parley - Messaging server using asyncio.

Created by parley contributors

Accepts persistent client connections speaking newline-delimited JSON.
A connection is admitted once with a session token, is told its user
identity, and from then on may join/leave groups, send messages and call
the stateless request commands (history, groups, profiles, uploads).
"""

import asyncio
import base64
import binascii
import logging
import os
import platform
import signal
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from . import crypto
from .attachment import AttachmentStore
from .config import Config
from .constants import (
    GROUPS_FILENAME,
    LOG_FILENAME,
    MESSAGES_FILENAME,
    READ_CHUNK_SIZE,
    STATUS_OFFLINE,
    STATUS_ONLINE,
    USERS_FILENAME,
)
from .errors import (
    AuthenticationFailure,
    ErrorCode,
    InvalidPayload,
    ParleyError,
    PermissionDenied,
    ServerError,
    TransportFailure,
)
from .group import GroupManager
from .identity import AccountStore, User
from .message import MessageStore
from .protocol import (
    CLIENT_EVENTS,
    PRE_AUTH_COMMANDS,
    Command,
    Event,
    FrameBuffer,
    FrameType,
    Protocol,
)
from .registry import Connection, ConnectionRegistry
from .router import Destination, MessageRouter, OutgoingPayload

# Configure logging
logger = logging.getLogger(__name__)


class _Peer:
    """Per-transport state owned by one client handler task."""

    def __init__(self, writer: asyncio.StreamWriter):
        self.writer = writer
        self.connection: Optional[Connection] = None
        self.token: Optional[str] = None
        self.closing = False

    @property
    def user_id(self) -> Optional[str]:
        return self.connection.user_id if self.connection else None

    async def write(self, frame: bytes) -> None:
        if self.connection is not None:
            await self.connection.send_frame(frame)
            return
        try:
            self.writer.write(frame)
            await self.writer.drain()
        except (ConnectionError, OSError, RuntimeError) as e:
            raise TransportFailure(ErrorCode.E204_SEND_FAILED, f"Write failed: {e}") from e


class ParleyServer:
    """Connection-oriented messaging server: one handler task per connection."""

    def __init__(
        self,
        accounts: AccountStore,
        groups: GroupManager,
        messages: MessageStore,
        attachments: AttachmentStore,
        host: str = "127.0.0.1",
        port: int = 0,
        read_timeout: float = 60.0,
        max_text_length: Optional[int] = None,
    ):
        """
        Initialize server.

        Args:
            accounts: Account and key store
            groups: Group membership store
            messages: Durable message store
            attachments: Attachment blob store
            host: Listen address
            port: Listen port (0 picks a free port)
            read_timeout: Seconds between idle read wake-ups
        """
        self.accounts = accounts
        self.groups = groups
        self.messages = messages
        self.attachments = attachments
        self.host = host
        self.port = port
        self.read_timeout = read_timeout

        self.registry = ConnectionRegistry(groups)
        self.registry.presence_listener = self._handle_presence_change
        router_kwargs = {} if max_text_length is None else {"max_text_length": max_text_length}
        self.router = MessageRouter(accounts, groups, messages, self.registry, **router_kwargs)

        self.server: Optional[asyncio.AbstractServer] = None
        self.running = False
        self._stopped = asyncio.Event()
        self._writers: Set[asyncio.StreamWriter] = set()
        self._handlers: Dict[str, Callable[[_Peer, Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {
            Command.PING: self._handle_ping,
            Command.SIGNUP: self._handle_signup,
            Command.LOGIN: self._handle_login,
            Command.AUTHENTICATE: self._handle_authenticate,
            Command.LOGOUT: self._handle_logout,
            Command.FETCH_USERS: self._handle_fetch_users,
            Command.FETCH_USER_PROFILE: self._handle_fetch_user_profile,
            Command.FETCH_GROUPS: self._handle_fetch_groups,
            Command.FETCH_PRIVATE_HISTORY: self._handle_fetch_private_history,
            Command.FETCH_GROUP_HISTORY: self._handle_fetch_group_history,
            Command.CREATE_GROUP: self._handle_create_group,
            Command.ADD_MEMBER: self._handle_add_member,
            Command.SET_PERMISSION: self._handle_set_permission,
            Command.UPLOAD_ATTACHMENT: self._handle_upload_attachment,
        }

    @classmethod
    def from_config(cls, config: Config) -> "ParleyServer":
        """Build the stores and the server from configuration."""
        data_dir = config.data_dir
        data_dir.mkdir(parents=True, exist_ok=True)

        kdf_params = crypto.KdfParams(
            time_cost=config.get("crypto", "argon2_time_cost"),
            memory_cost=config.get("crypto", "argon2_memory_cost"),
            parallelism=config.get("crypto", "argon2_parallelism"),
        )
        accounts = AccountStore(
            data_dir / USERS_FILENAME,
            kdf_params=kdf_params,
            rsa_key_size=config.get("crypto", "rsa_key_size"),
        )
        groups = GroupManager(
            data_dir / GROUPS_FILENAME,
            max_name_length=config.get("limits", "max_group_name_length"),
        )
        messages = MessageStore(data_dir / MESSAGES_FILENAME)
        attachments = AttachmentStore(
            config.upload_dir,
            public_url=config.public_url,
            max_file_size=config.get("limits", "max_file_size"),
        )
        return cls(
            accounts,
            groups,
            messages,
            attachments,
            host=config.get("server", "host"),
            port=config.get("server", "port"),
            read_timeout=config.get("server", "read_timeout"),
            max_text_length=config.get("limits", "max_text_length"),
        )

    async def start(self) -> None:
        """
        Start listening for client connections.

        Raises:
            ServerError: If the listening socket cannot be opened
        """
        try:
            self.server = await asyncio.start_server(self._handle_client, self.host, self.port)
        except OSError as e:
            raise ServerError(
                ErrorCode.E801_SERVER_START_FAILED,
                f"Failed to start server on {self.host}:{self.port}: {e}",
            ) from e

        sockets = self.server.sockets or []
        if sockets:
            self.port = sockets[0].getsockname()[1]
        self.running = True
        self._stopped.clear()
        logger.info(f"Parley server listening on {self.host}:{self.port} (PID {os.getpid()})")

    async def stop(self) -> None:
        """Stop accepting clients and close every live connection."""
        if not self.running:
            return
        logger.info("Stopping server...")
        self.running = False

        if self.server:
            self.server.close()

        for writer in list(self._writers):
            try:
                writer.close()
            except (ConnectionError, OSError, RuntimeError) as e:
                logger.debug(f"Error closing client writer: {e}")

        if self.server:
            await self.server.wait_closed()

        self._stopped.set()
        logger.info("Server stopped")

    async def run(self) -> None:
        """Block until stop() is called."""
        await self._stopped.wait()

    def request_stop(self) -> None:
        """Schedule a graceful stop from a signal handler."""
        asyncio.get_running_loop().create_task(self.stop())

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """
        Serve one client connection until it closes.

        Frames are processed one at a time, so a client's sends are routed
        in the order it wrote them.
        """
        address = writer.get_extra_info("peername")
        logger.debug(f"Client connected from {address}")

        peer = _Peer(writer)
        frames = FrameBuffer()
        self._writers.add(writer)

        try:
            while self.running and not peer.closing:
                try:
                    data = await asyncio.wait_for(reader.read(READ_CHUNK_SIZE), timeout=self.read_timeout)
                except asyncio.TimeoutError:
                    continue
                if not data:
                    break

                try:
                    lines = frames.feed(data)
                except TransportFailure as e:
                    logger.warning(f"Dropping oversized frame from {address}")
                    await peer.write(Protocol.error_event(e))
                    continue

                for line in lines:
                    await self._process_line(peer, line)
                    if peer.closing:
                        break
        except TransportFailure as e:
            logger.info(f"Transport to {address} failed: {e}")
        except (ConnectionError, OSError) as e:
            logger.info(f"Connection from {address} lost: {e}")
        finally:
            self._writers.discard(writer)
            if peer.connection is not None:
                await self.registry.disconnect(peer.connection)
            try:
                writer.close()
                await writer.wait_closed()
            except (ConnectionError, OSError, RuntimeError) as e:
                logger.debug(f"Error closing writer: {e}")

    async def _process_line(self, peer: _Peer, line: bytes) -> None:
        try:
            frame = Protocol.decode(line)
        except TransportFailure as e:
            logger.warning(f"Invalid frame: {e}")
            await peer.write(Protocol.error_event(e))
            return

        frame_type = frame["type"]
        if frame_type == FrameType.REQUEST:
            await self._process_request(peer, frame)
        elif frame_type == FrameType.EVENT:
            await self._process_event(peer, frame)
        else:
            await peer.write(
                Protocol.error_event(
                    TransportFailure(ErrorCode.E206_INVALID_FRAME, "Clients may not send responses")
                )
            )

    async def _process_request(self, peer: _Peer, frame: Dict[str, Any]) -> None:
        """
        Run one request command and write its response.

        Every ParleyError becomes a failed response; anything unexpected is
        logged and reported as an unknown error.
        """
        request_id = frame["request_id"]
        command = frame["command"]
        params = frame.get("params") or {}

        try:
            handler = self._handlers.get(command)
            if handler is None:
                raise TransportFailure(
                    ErrorCode.E208_UNKNOWN_COMMAND, f"Unknown command: {command}"
                )
            if peer.connection is None and command not in PRE_AUTH_COMMANDS:
                raise AuthenticationFailure("Connection is not authenticated")
            payload = await handler(peer, params)
            frame_out = Protocol.response(request_id, payload)
        except ParleyError as e:
            logger.info(f"Command {command} failed: {e}")
            frame_out = Protocol.error_response(request_id, e)
        except Exception as e:
            logger.error(f"Unexpected error in command {command}: {e}", exc_info=True)
            frame_out = Protocol.error_response(
                request_id, ParleyError(ErrorCode.E001_UNKNOWN_ERROR, "Internal server error")
            )

        await peer.write(frame_out)

    async def _process_event(self, peer: _Peer, frame: Dict[str, Any]) -> None:
        """Handle a fire-and-forget client event; failures go back as error events."""
        name = frame["event"]
        data = frame.get("data") or {}
        temp_id = data.get("temp_id") if name == Event.SEND_MESSAGE else None

        try:
            if peer.connection is None:
                raise AuthenticationFailure("Connection is not authenticated")
            if name not in CLIENT_EVENTS:
                raise TransportFailure(ErrorCode.E208_UNKNOWN_COMMAND, f"Unknown event: {name}")

            if name == Event.SEND_MESSAGE:
                await self._handle_send_message(peer.connection, data)
            elif name == Event.JOIN_GROUP:
                self._handle_join_group(peer.connection, data)
            else:
                self._handle_leave_group(peer.connection, data)
        except ParleyError as e:
            logger.info(f"Event {name} rejected: {e}")
            await peer.write(Protocol.error_event(e, temp_id))
        except Exception as e:
            logger.error(f"Unexpected error in event {name}: {e}", exc_info=True)
            await peer.write(
                Protocol.error_event(
                    ParleyError(ErrorCode.E001_UNKNOWN_ERROR, "Internal server error"), temp_id
                )
            )

    # Events

    async def _handle_send_message(self, connection: Connection, data: Dict[str, Any]) -> None:
        temp_id = data.get("temp_id")
        if temp_id is not None and not isinstance(temp_id, str):
            raise InvalidPayload("temp_id must be a string")

        destination = Destination(
            recipient_id=data.get("recipient_id") or None,
            group_id=data.get("group_id") or None,
        )
        payload = OutgoingPayload.from_request(content=data.get("content"), file=data.get("file"))
        await self.router.send(connection.user_id, destination, payload, temp_id)

    def _handle_join_group(self, connection: Connection, data: Dict[str, Any]) -> None:
        group = self.groups.require_group(_require_str(data, "group_id"))
        if not group.is_member(connection.user_id):
            raise PermissionDenied("Not a member of this group", {"group_id": group.group_id})
        self.registry.subscribe(connection, group.group_id)

    def _handle_leave_group(self, connection: Connection, data: Dict[str, Any]) -> None:
        self.registry.unsubscribe(connection, _require_str(data, "group_id"))

    async def _handle_presence_change(self, user_id: str, online: bool) -> None:
        status = STATUS_ONLINE if online else STATUS_OFFLINE
        self.accounts.set_status(user_id, status)
        frame = Protocol.event(Event.STATUS_UPDATE, {"user_id": user_id, "status": status})

        async def deliver(connection: Connection) -> None:
            try:
                await connection.send_frame(frame)
            except TransportFailure as e:
                logger.debug(f"Status update to {connection} failed: {e}")

        await asyncio.gather(*(deliver(c) for c in self.registry.all_connections()))

    # Commands

    async def _handle_ping(self, peer: _Peer, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"message": "pong"}

    async def _handle_signup(self, peer: _Peer, params: Dict[str, Any]) -> Dict[str, Any]:
        token, private_key, user = await self.accounts.signup(
            name=_require_str(params, "name"),
            email=_require_str(params, "email"),
            password=_require_str(params, "password"),
            location=params.get("location") or "",
            designation=params.get("designation") or "",
        )
        return _credentials_payload(token, private_key, user)

    async def _handle_login(self, peer: _Peer, params: Dict[str, Any]) -> Dict[str, Any]:
        token, private_key, user = await self.accounts.login(
            _require_str(params, "email"), _require_str(params, "password")
        )
        return _credentials_payload(token, private_key, user)

    async def _handle_authenticate(self, peer: _Peer, params: Dict[str, Any]) -> Dict[str, Any]:
        if peer.connection is not None:
            raise AuthenticationFailure("Connection is already authenticated")

        token = params.get("token")
        user = self.accounts.authenticate(token)
        greeting = Protocol.event(Event.IDENTITY, {"user_id": user.user_id, "name": user.name})
        peer.connection = await self.registry.admit(user.user_id, peer.writer, greeting)
        peer.token = token
        return {"user": user.public_info()}

    async def _handle_logout(self, peer: _Peer, params: Dict[str, Any]) -> Dict[str, Any]:
        if peer.token:
            self.accounts.logout(peer.token)
        peer.closing = True
        return {}

    async def _handle_fetch_users(self, peer: _Peer, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"users": [user.summary() for user in self.accounts.list_users()]}

    async def _handle_fetch_user_profile(
        self, peer: _Peer, params: Dict[str, Any]
    ) -> Dict[str, Any]:
        user = self.accounts.require_user(_require_str(params, "user_id"))
        return {"user": user.public_info()}

    async def _handle_fetch_groups(self, peer: _Peer, params: Dict[str, Any]) -> Dict[str, Any]:
        groups = self.groups.get_user_groups(peer.user_id)
        return {"groups": [group.to_dict() for group in groups]}

    async def _handle_fetch_private_history(
        self, peer: _Peer, params: Dict[str, Any]
    ) -> Dict[str, Any]:
        peer_id = _require_str(params, "peer_id")
        return {"messages": self.router.private_history(peer.user_id, peer_id)}

    async def _handle_fetch_group_history(
        self, peer: _Peer, params: Dict[str, Any]
    ) -> Dict[str, Any]:
        group_id = _require_str(params, "group_id")
        return {"messages": self.router.group_history(peer.user_id, group_id)}

    async def _handle_create_group(self, peer: _Peer, params: Dict[str, Any]) -> Dict[str, Any]:
        group = await self.groups.create_group(_require_str(params, "name"), peer.user_id)
        return {"group": group.to_dict()}

    async def _handle_add_member(self, peer: _Peer, params: Dict[str, Any]) -> Dict[str, Any]:
        user_id = _require_str(params, "user_id")
        self.accounts.require_user(user_id)
        group = await self.groups.add_member(
            _require_str(params, "group_id"),
            peer.user_id,
            user_id,
            bool(params.get("can_send_messages", False)),
        )
        return {"group": group.to_dict()}

    async def _handle_set_permission(self, peer: _Peer, params: Dict[str, Any]) -> Dict[str, Any]:
        group = await self.groups.set_permission(
            _require_str(params, "group_id"),
            peer.user_id,
            _require_str(params, "user_id"),
            bool(params.get("can_send_messages", False)),
        )
        return {"group": group.to_dict()}

    async def _handle_upload_attachment(
        self, peer: _Peer, params: Dict[str, Any]
    ) -> Dict[str, Any]:
        try:
            data = base64.b64decode(_require_str(params, "data"), validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidPayload("Attachment data must be base64") from e
        descriptor = await self.attachments.upload(
            _require_str(params, "name"), data, params.get("mime_type") or None
        )
        return {"file": descriptor.to_dict()}


def _require_str(params: Dict[str, Any], name: str) -> str:
    value = params.get(name)
    if not isinstance(value, str) or not value:
        raise ParleyError(ErrorCode.E002_INVALID_ARGUMENT, f"Missing parameter: {name}")
    return value


def _credentials_payload(token: str, private_key: str, user: User) -> Dict[str, Any]:
    return {"token": token, "private_key": private_key, "user": user.public_info()}


def setup_logging(config: Config, debug: bool = False) -> None:
    """Configure the root logger from the ``logging`` config section."""
    level_name = "DEBUG" if debug else str(config.get("logging", "level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    root = logging.getLogger()
    root.setLevel(level)

    if config.get("logging", "console_logging", True):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)

    if config.get("logging", "file_logging", True):
        log_dir = config.data_dir
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / LOG_FILENAME, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


async def async_main(argv=None) -> int:
    """Async main entry point for the server."""
    import argparse

    parser = argparse.ArgumentParser(description="Parley Server - end-to-end encrypted messaging core")
    parser.add_argument("--config", type=str, default=None, help="Path to a TOML configuration file")
    parser.add_argument("--data-dir", type=str, default=None, help="Directory for users, groups, messages and uploads")
    parser.add_argument("--host", type=str, default=None, help="Listen address")
    parser.add_argument("--port", type=int, default=None, help="Listen port")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    config = Config(Path(args.config).expanduser() if args.config else None)
    if args.data_dir:
        config.set("storage", "data_dir", str(Path(args.data_dir).expanduser().resolve()))
    if args.host:
        config.set("server", "host", args.host)
    if args.port is not None:
        config.set("server", "port", args.port)

    setup_logging(config, args.debug)

    server = ParleyServer.from_config(config)
    try:
        await server.start()
    except ServerError as e:
        logger.error(str(e))
        return 1

    # Setup signal handlers (platform-specific)
    if platform.system() == "Windows":
        signal.signal(signal.SIGINT, lambda signum, frame: server.request_stop())
    else:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, server.request_stop)

    await server.run()
    return 0


def main():
    """Main entry point - runs async_main."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
