"""
Parley - Client notifications and presence.

Transient notices for incoming messages and rejected sends, unread
counters per conversation, and the latest known online status of every
user.
"""

import itertools
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .constants import NOTICE_LIFETIME, PERMISSION_DENIED_NOTICE, STATUS_OFFLINE, STATUS_ONLINE
from .reconcile import ChatEntry


@dataclass
class Notice:
    """A dismissable, self-expiring notice."""

    notice_id: int
    text: str
    created_at: float
    level: str = "info"


def describe_entry(entry: ChatEntry) -> str:
    """Alert text for an incoming message."""
    name = entry.sender_name or entry.sender_id
    if entry.is_file:
        return f"{name} sent a file"
    return f"{name}: {entry.text}"


class NotificationCenter:
    """Notices and unread counters for one client session."""

    def __init__(self, lifetime: float = NOTICE_LIFETIME, clock: Callable[[], float] = time.monotonic):
        """
        Initialize notification center.

        Args:
            lifetime: Seconds a notice stays active unless dismissed
            clock: Monotonic time source
        """
        self.lifetime = lifetime
        self.clock = clock
        self._notices: Dict[int, Notice] = {}
        self._ids = itertools.count(1)
        self._unread: Dict[str, int] = {}

    def push(self, text: str, level: str = "info") -> Notice:
        notice = Notice(next(self._ids), text, self.clock(), level)
        self._notices[notice.notice_id] = notice
        return notice

    def dismiss(self, notice_id: int) -> bool:
        return self._notices.pop(notice_id, None) is not None

    def active(self) -> List[Notice]:
        """Unexpired notices, oldest first. Expired ones are dropped."""
        now = self.clock()
        expired = [nid for nid, n in self._notices.items() if now - n.created_at >= self.lifetime]
        for notice_id in expired:
            del self._notices[notice_id]
        return list(self._notices.values())

    def message_received(self, entry: ChatEntry, conversation_key: str, viewing: bool = False) -> Notice:
        """Raise the alert for an incoming message; count it unread unless it is being viewed."""
        if not viewing:
            self._unread[conversation_key] = self._unread.get(conversation_key, 0) + 1
        return self.push(describe_entry(entry))

    def send_rejected(self, message: Optional[str] = None) -> Notice:
        return self.push(message or PERMISSION_DENIED_NOTICE, level="error")

    def unread_count(self, conversation_key: str) -> int:
        return self._unread.get(conversation_key, 0)

    def total_unread(self) -> int:
        return sum(self._unread.values())

    def mark_read(self, conversation_key: str) -> None:
        self._unread.pop(conversation_key, None)


class PresenceMap:
    """Latest status per user, fed by the user list and status updates."""

    def __init__(self):
        self._status: Dict[str, str] = {}

    def update(self, user_id: str, status: str) -> None:
        self._status[user_id] = status

    def load(self, users: List[Dict]) -> None:
        for user in users:
            if user.get("user_id"):
                self._status[user["user_id"]] = user.get("status") or STATUS_OFFLINE

    def status(self, user_id: str) -> str:
        return self._status.get(user_id, STATUS_OFFLINE)

    def is_online(self, user_id: str) -> bool:
        return self.status(user_id) == STATUS_ONLINE

    def online_users(self) -> List[str]:
        return sorted(uid for uid, status in self._status.items() if status == STATUS_ONLINE)
