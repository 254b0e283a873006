"""Data models for the collaboration server."""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import uuid4


def now_ms() -> int:
    """Current time as integer epoch milliseconds (the wire timestamp format)."""
    return int(time.time() * 1000)


@dataclass
class Connection:
    """A live WebSocket connection owned by the connection registry."""

    websocket: Any
    connection_id: str = field(default_factory=lambda: str(uuid4()))
    connected_at: int = field(default_factory=now_ms)
    outbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    open: bool = True
    # Collaboration state, set by join and cleared by leave
    project_id: Optional[str] = None
    user_name: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "connectionId": self.connection_id,
            "connectedAt": self.connected_at,
            "projectId": self.project_id,
            "userName": self.user_name,
        }


@dataclass
class Identity:
    """Client-asserted Scratch identity bound to a connection. Never verified."""

    username: str
    user_id: Optional[Any] = None
    avatar: Optional[str] = None
    profile_url: Optional[str] = None
    authenticated_at: int = field(default_factory=now_ms)

    @classmethod
    def from_scratch_auth(cls, scratch_auth: Any) -> Optional["Identity"]:
        """
        Build an identity from a ``scratchAuth`` payload.

        Returns None unless the payload is an object that claims to be logged
        in and names a username.
        """
        if not isinstance(scratch_auth, dict) or not scratch_auth.get("isLoggedIn"):
            return None
        username = scratch_auth.get("username")
        if not isinstance(username, str) or not username.strip():
            return None
        return cls(
            username=username,
            user_id=scratch_auth.get("userId"),
            avatar=scratch_auth.get("avatar"),
            profile_url=scratch_auth.get("profileUrl"),
        )

    def profile(self) -> dict:
        """Public profile snapshot shared with collaborators."""
        return {
            "username": self.username,
            "avatar": self.avatar,
            "profileUrl": self.profile_url,
        }


@dataclass
class Participant:
    """One connection's membership in a session."""

    connection_id: str
    user_name: str
    is_authenticated: bool = False
    profile: Optional[dict] = None
    joined_at: int = field(default_factory=now_ms)

    def to_dict(self) -> dict:
        return {
            "connectionId": self.connection_id,
            "userName": self.user_name,
            "joinedAt": self.joined_at,
            "profile": self.profile,
            "isAuthenticated": self.is_authenticated,
        }


@dataclass
class Session:
    """The set of participants collaborating on one project."""

    project_id: str
    created: int = field(default_factory=now_ms)
    participants: dict[str, Participant] = field(default_factory=dict)

    @property
    def participant_count(self) -> int:
        return len(self.participants)

    def summary(self) -> dict:
        return {
            "projectId": self.project_id,
            "participantCount": self.participant_count,
            "created": self.created,
        }


@dataclass
class FriendEdge:
    """One side of a symmetric friendship, stored in the owner's friend list."""

    username: str
    added_at: int = field(default_factory=now_ms)

    def to_dict(self, online: bool = False) -> dict:
        return {
            "username": self.username,
            "addedAt": self.added_at,
            "status": "online" if online else "offline",
        }


@dataclass
class FriendRequest:
    """A pending friend request. Accepted or declined requests are removed."""

    from_username: str
    to_username: str
    timestamp: int = field(default_factory=now_ms)
    status: str = "pending"

    def to_dict(self) -> dict:
        return {
            "from": self.from_username,
            "to": self.to_username,
            "timestamp": self.timestamp,
            "status": self.status,
        }


def _notification_id() -> str:
    return f"notif_{now_ms()}_{uuid4().hex[:9]}"


@dataclass
class Notification:
    """An entry in a user's notification center."""

    type: str
    title: str
    message: str
    data: dict = field(default_factory=dict)
    id: str = field(default_factory=_notification_id)
    timestamp: int = field(default_factory=now_ms)
    read: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp,
            "read": self.read,
        }
