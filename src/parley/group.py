"""
Parley - Group membership and send permissions.

Created by parley contributors

A group keeps its creator and its membership list as two distinct fields.
The creator is never written into the membership list: creator rights are
implicit and cannot be revoked, while every other member posts only once
explicitly granted.
"""

import asyncio
import logging
import weakref
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import crypto
from .constants import MAX_GROUP_NAME_LENGTH
from .errors import ErrorCode, GroupError, PermissionDenied
from .storage import read_json, write_json_atomic

logger = logging.getLogger(__name__)


class Membership:
    """A user's durable participation in a group."""

    def __init__(self, user_id: str, can_send_messages: bool = False):
        self.user_id = user_id
        self.can_send_messages = can_send_messages
        self.joined_at = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "user_id": self.user_id,
            "can_send_messages": self.can_send_messages,
            "joined_at": self.joined_at,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Membership":
        """Create from dictionary."""
        membership = Membership(
            user_id=data["user_id"],
            can_send_messages=bool(data.get("can_send_messages", False)),
        )
        membership.joined_at = data.get("joined_at", membership.joined_at)
        return membership


class Group:
    """A named group with an implicit-admin creator."""

    def __init__(self, group_id: str, name: str, creator_id: str):
        self.group_id = group_id
        self.name = name
        self.creator_id = creator_id
        self.members: Dict[str, Membership] = {}  # user_id -> Membership
        self.created_at = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage and the wire."""
        return {
            "group_id": self.group_id,
            "name": self.name,
            "creator_id": self.creator_id,
            "members": [m.to_dict() for m in self.get_all_members()],
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Group":
        """Create from dictionary."""
        group = Group(group_id=data["group_id"], name=data["name"], creator_id=data["creator_id"])
        for member_data in data.get("members", []):
            membership = Membership.from_dict(member_data)
            if membership.user_id != group.creator_id:
                group.members[membership.user_id] = membership
        group.created_at = data.get("created_at", group.created_at)
        return group

    def get_member(self, user_id: str) -> Optional[Membership]:
        """Get a membership row by user id."""
        return self.members.get(user_id)

    def is_member(self, user_id: str) -> bool:
        """The creator counts as a member without a membership row."""
        return user_id == self.creator_id or user_id in self.members

    def get_all_members(self) -> List[Membership]:
        """Explicit membership rows sorted by join date."""
        return sorted(self.members.values(), key=lambda m: m.joined_at)

    def member_ids(self) -> List[str]:
        """Everyone who receives the group's traffic, creator first."""
        return [self.creator_id] + [uid for uid in self.members if uid != self.creator_id]


def is_admin(user_id: str, group: Group) -> bool:
    """Only the creator administers a group."""
    return user_id == group.creator_id


def can_post(user_id: str, group: Group) -> bool:
    """
    Decide whether ``user_id`` may send into ``group``.

    The creator always may, with or without a membership row. Anyone else
    needs a membership row with ``can_send_messages`` set.
    """
    if is_admin(user_id, group):
        return True
    membership = group.get_member(user_id)
    if membership is None:
        return False
    return membership.can_send_messages


def _updated_membership(
    user_id: str, previous: Optional[Membership], can_send_messages: bool
) -> Membership:
    membership = Membership(user_id, can_send_messages)
    if previous is not None:
        membership.joined_at = previous.joined_at
    return membership


class GroupManager:
    """Manages groups and their persistent storage.

    Mutations are serialized per group; reads take no lock.
    """

    def __init__(self, groups_file: Path, max_name_length: int = MAX_GROUP_NAME_LENGTH):
        self.groups_file = Path(groups_file)
        self.max_name_length = max_name_length
        self.groups: Dict[str, Group] = {}  # group_id -> Group
        # Entries vanish once no task holds or awaits the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._save_lock = asyncio.Lock()
        self._load_groups()

    def _load_groups(self) -> None:
        """Load groups from file."""
        data = read_json(self.groups_file, {})
        for group_id, group_data in data.items():
            self.groups[group_id] = Group.from_dict(group_data)
        if self.groups:
            logger.info(f"Loaded {len(self.groups)} groups from {self.groups_file}")

    async def save_groups(self) -> None:
        """Save groups to file asynchronously."""
        async with self._save_lock:
            data = {group_id: group.to_dict() for group_id, group in self.groups.items()}
            await write_json_atomic(self.groups_file, data)

    def _lock_for(self, group_id: str) -> asyncio.Lock:
        lock = self._locks.get(group_id)
        if lock is None:
            lock = self._locks[group_id] = asyncio.Lock()
        return lock

    def get_group(self, group_id: str) -> Optional[Group]:
        """Get a group by ID."""
        return self.groups.get(group_id)

    def require_group(self, group_id: str) -> Group:
        """
        Get a group by ID.

        Raises:
            GroupError: If no such group exists
        """
        group = self.groups.get(group_id)
        if group is None:
            raise GroupError(
                ErrorCode.E501_GROUP_NOT_FOUND, "Group not found", {"group_id": group_id}
            )
        return group

    def get_user_groups(self, user_id: str) -> List[Group]:
        """Groups the user created or belongs to, newest first."""
        user_groups = [g for g in self.groups.values() if g.is_member(user_id)]
        return sorted(user_groups, key=lambda g: g.created_at, reverse=True)

    async def create_group(self, name: str, creator_id: str) -> Group:
        """
        Create a group owned by ``creator_id``.

        Raises:
            GroupError: If the name is empty or too long
        """
        name = (name or "").strip()
        if not name or len(name) > self.max_name_length:
            raise GroupError(
                ErrorCode.E505_INVALID_GROUP,
                f"Group name must be 1-{self.max_name_length} characters",
            )

        group = Group(crypto.generate_group_uid(), name, creator_id)
        self.groups[group.group_id] = group
        try:
            await self.save_groups()
        except Exception:
            del self.groups[group.group_id]
            raise

        logger.info(f"Created group {group.group_id} for creator {creator_id}")
        return group

    async def _save_or_restore(
        self, group: Group, user_id: str, previous: Optional[Membership]
    ) -> None:
        """Persist a membership change, putting back ``previous`` if the write fails."""
        try:
            await self.save_groups()
        except Exception:
            if previous is None:
                del group.members[user_id]
            else:
                group.members[user_id] = previous
            raise

    def _require_creator(self, group: Group, actor_id: str) -> None:
        if not is_admin(actor_id, group):
            raise PermissionDenied(
                "Only the group creator can manage members",
                {"group_id": group.group_id},
            )

    async def add_member(
        self, group_id: str, actor_id: str, user_id: str, can_send_messages: bool = False
    ) -> Group:
        """
        Upsert a membership row.

        Adding the creator is a no-op: creator rights are implicit.

        Raises:
            GroupError: If the group does not exist
            PermissionDenied: If ``actor_id`` is not the creator
        """
        async with self._lock_for(group_id):
            group = self.require_group(group_id)
            self._require_creator(group, actor_id)

            if user_id == group.creator_id:
                return group

            previous = group.get_member(user_id)
            group.members[user_id] = _updated_membership(user_id, previous, can_send_messages)
            await self._save_or_restore(group, user_id, previous)

        logger.info(f"Member {user_id} upserted into group {group_id}")
        return group

    async def set_permission(
        self, group_id: str, actor_id: str, user_id: str, can_send_messages: bool
    ) -> Group:
        """
        Change an existing member's send permission.

        Granting to the creator is a no-op; restricting the creator is rejected.

        Raises:
            GroupError: If the group or membership does not exist, or the
                creator's right would be revoked
            PermissionDenied: If ``actor_id`` is not the creator
        """
        async with self._lock_for(group_id):
            group = self.require_group(group_id)
            self._require_creator(group, actor_id)

            if user_id == group.creator_id:
                if can_send_messages:
                    return group
                raise GroupError(
                    ErrorCode.E508_CREATOR_RIGHTS_LOCKED,
                    "The group creator's send right cannot be revoked",
                    {"group_id": group_id},
                )

            membership = group.get_member(user_id)
            if membership is None:
                raise GroupError(
                    ErrorCode.E509_NOT_GROUP_MEMBER,
                    "User is not a member of this group",
                    {"group_id": group_id, "user_id": user_id},
                )
            group.members[user_id] = _updated_membership(user_id, membership, can_send_messages)
            await self._save_or_restore(group, user_id, membership)

        logger.info(f"Permission for {user_id} in group {group_id} set to {can_send_messages}")
        return group
