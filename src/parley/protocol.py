"""
Parley - Wire protocol definitions.

Every frame is one JSON object terminated by a newline. Three frame types
travel over a connection:

- request:  {"type": "request", "request_id", "command", "params"}
- response: {"type": "response", "request_id", "success", ...}
- event:    {"type": "event", "event", "data"}
"""

import json
from typing import Any, Dict, List, Optional

from .constants import MAX_FRAME_SIZE
from .errors import ErrorCode, ParleyError, TransportFailure


class FrameType:
    """Frame type tags."""

    REQUEST = "request"
    RESPONSE = "response"
    EVENT = "event"


class Event:
    """Event names, both directions."""

    # Server -> client
    IDENTITY = "identity"
    MESSAGE = "message"
    STATUS_UPDATE = "status_update"
    ERROR = "error"

    # Client -> server
    JOIN_GROUP = "join_group"
    LEAVE_GROUP = "leave_group"
    SEND_MESSAGE = "send_message"


class Command:
    """Request/response commands."""

    PING = "ping"
    SIGNUP = "signup"
    LOGIN = "login"
    AUTHENTICATE = "authenticate"
    LOGOUT = "logout"

    FETCH_USERS = "fetch_users"
    FETCH_USER_PROFILE = "fetch_user_profile"
    FETCH_GROUPS = "fetch_groups"
    FETCH_PRIVATE_HISTORY = "fetch_private_history"
    FETCH_GROUP_HISTORY = "fetch_group_history"
    CREATE_GROUP = "create_group"
    ADD_MEMBER = "add_member"
    SET_PERMISSION = "set_permission"
    UPLOAD_ATTACHMENT = "upload_attachment"


# Commands accepted before the connection is admitted
PRE_AUTH_COMMANDS = frozenset(
    {Command.PING, Command.SIGNUP, Command.LOGIN, Command.AUTHENTICATE}
)

CLIENT_EVENTS = frozenset({Event.JOIN_GROUP, Event.LEAVE_GROUP, Event.SEND_MESSAGE})


class Protocol:
    """Frame encoding and validation."""

    MAX_FRAME_SIZE = MAX_FRAME_SIZE

    @staticmethod
    def encode(frame: Dict[str, Any]) -> bytes:
        """
        Serialize a frame to one newline-terminated line.

        Raises:
            TransportFailure: If the encoded frame is too large
        """
        data = json.dumps(frame, ensure_ascii=False).encode("utf-8") + b"\n"
        if len(data) > Protocol.MAX_FRAME_SIZE:
            raise TransportFailure(
                ErrorCode.E207_FRAME_TOO_LARGE,
                f"Frame too large: {len(data)} bytes",
                {"size": len(data), "max_size": Protocol.MAX_FRAME_SIZE},
            )
        return data

    @staticmethod
    def event(name: str, data: Optional[Dict[str, Any]] = None) -> bytes:
        return Protocol.encode({"type": FrameType.EVENT, "event": name, "data": data or {}})

    @staticmethod
    def request(request_id: str, command: str, params: Optional[Dict[str, Any]] = None) -> bytes:
        return Protocol.encode(
            {
                "type": FrameType.REQUEST,
                "request_id": request_id,
                "command": command,
                "params": params or {},
            }
        )

    @staticmethod
    def response(request_id: Optional[str], payload: Optional[Dict[str, Any]] = None) -> bytes:
        frame = {"type": FrameType.RESPONSE, "request_id": request_id, "success": True}
        frame.update(payload or {})
        return Protocol.encode(frame)

    @staticmethod
    def error_response(request_id: Optional[str], error: ParleyError) -> bytes:
        return Protocol.encode(
            {
                "type": FrameType.RESPONSE,
                "request_id": request_id,
                "success": False,
                "error": error.to_dict(),
            }
        )

    @staticmethod
    def error_event(error: ParleyError, temp_id: Optional[str] = None) -> bytes:
        data = error.to_dict()
        if temp_id is not None:
            data["temp_id"] = temp_id
        return Protocol.event(Event.ERROR, data)

    @staticmethod
    def decode(line: bytes) -> Dict[str, Any]:
        """
        Parse and validate one frame.

        Raises:
            TransportFailure: If the line is not a well-formed frame
        """
        try:
            frame = json.loads(line.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise TransportFailure(
                ErrorCode.E206_INVALID_FRAME, f"Failed to parse frame: {e}"
            ) from e

        Protocol.validate_frame(frame)
        return frame

    @staticmethod
    def validate_frame(frame: Any) -> None:
        """
        Check the envelope fields required by each frame type.

        Raises:
            TransportFailure: If validation fails
        """
        if not isinstance(frame, dict):
            raise TransportFailure(ErrorCode.E206_INVALID_FRAME, "Frame must be a JSON object")

        frame_type = frame.get("type")
        if frame_type == FrameType.REQUEST:
            required = ["request_id", "command"]
        elif frame_type == FrameType.RESPONSE:
            required = ["request_id", "success"]
        elif frame_type == FrameType.EVENT:
            required = ["event"]
        else:
            raise TransportFailure(
                ErrorCode.E206_INVALID_FRAME,
                f"Unknown frame type: {frame_type!r}",
                {"type": frame_type},
            )

        for name in required:
            if name not in frame:
                raise TransportFailure(
                    ErrorCode.E206_INVALID_FRAME,
                    f"Missing required field: {name}",
                    {"type": frame_type, "field": name},
                )

        for name in ("params", "data"):
            if name in frame and not isinstance(frame[name], dict):
                raise TransportFailure(
                    ErrorCode.E206_INVALID_FRAME, f"Field {name} must be an object"
                )


class FrameBuffer:
    """Accumulates received bytes and splits them into frame lines.

    Bytes are appended in place and the newline search resumes where the
    previous one stopped, so a large frame arriving in small reads costs
    time linear in its size.
    """

    def __init__(self, max_frame_size: int = MAX_FRAME_SIZE):
        self.max_frame_size = max_frame_size
        self.buffer = bytearray()
        self._scanned = 0

    def feed(self, data: bytes) -> List[bytes]:
        """
        Add received bytes and return every complete, non-empty line.

        Raises:
            TransportFailure: If an unterminated frame outgrows the limit;
                the partial frame is discarded
        """
        self.buffer += data
        lines = []
        start = 0
        while True:
            end = self.buffer.find(b"\n", max(start, self._scanned))
            if end < 0:
                break
            line = bytes(self.buffer[start:end])
            if line.strip():
                lines.append(line)
            start = end + 1

        if start:
            del self.buffer[:start]
        # The remainder holds no newline
        self._scanned = len(self.buffer)

        if len(self.buffer) > self.max_frame_size:
            size = len(self.buffer)
            self.buffer = bytearray()
            self._scanned = 0
            raise TransportFailure(
                ErrorCode.E207_FRAME_TOO_LARGE,
                f"Frame too large: {size} bytes",
                {"size": size, "max_size": self.max_frame_size},
            )
        return lines
