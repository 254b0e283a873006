"""Friend graph and pending friend request queue."""

import logging

from collab_server.errors import PreconditionError
from collab_server.models import FriendEdge, FriendRequest

logger = logging.getLogger(__name__)


class SocialGraphStore:
    """
    Friendships and pending requests, keyed by username.

    Friendships are symmetric: both adjacency entries are written and removed
    together. Pending requests are indexed by recipient, then by sender, so at
    most one request exists per ordered (from, to) pair.
    """

    def __init__(self):
        self._friends: dict[str, dict[str, FriendEdge]] = {}
        self._requests: dict[str, dict[str, FriendRequest]] = {}

    # Friends

    def friends_of(self, username: str) -> list[FriendEdge]:
        """Snapshot of a user's friend list, in the order friendships were made."""
        return list(self._friends.get(username, {}).values())

    def are_friends(self, username: str, other: str) -> bool:
        """Check if ``other`` is in ``username``'s friend list."""
        return other in self._friends.get(username, {})

    def _link(self, username: str, other: str) -> None:
        self._friends.setdefault(username, {})[other] = FriendEdge(username=other)
        self._friends.setdefault(other, {})[username] = FriendEdge(username=username)

    def remove_friend(self, username: str, friend_username: str) -> None:
        """
        Remove a friendship from both sides.

        Raises:
            PreconditionError: If the two users are not friends.
        """
        if not self.are_friends(username, friend_username):
            raise PreconditionError(f"{friend_username} is not in your friends list")

        for owner, other in ((username, friend_username), (friend_username, username)):
            edges = self._friends.get(owner, {})
            edges.pop(other, None)
            if not edges:
                self._friends.pop(owner, None)

        logger.info(f"{username} and {friend_username} are no longer friends")

    # Requests

    def requests_for(self, username: str) -> list[FriendRequest]:
        """Snapshot of the pending requests addressed to a user."""
        return list(self._requests.get(username, {}).values())

    def has_pending_request(self, from_username: str, to_username: str) -> bool:
        """Check if a request from one user to the other is waiting."""
        return from_username in self._requests.get(to_username, {})

    def add_request(self, from_username: str, to_username: str) -> FriendRequest:
        """
        Queue a friend request.

        Raises:
            PreconditionError: If the users are already friends or the same
                request is already pending.
        """
        if self.are_friends(from_username, to_username):
            raise PreconditionError(f"You are already friends with {to_username}")
        if self.has_pending_request(from_username, to_username):
            raise PreconditionError(f"Friend request already sent to {to_username}")

        request = FriendRequest(from_username=from_username, to_username=to_username)
        self._requests.setdefault(to_username, {})[from_username] = request
        logger.info(f"Friend request queued: {from_username} -> {to_username}")
        return request

    def _pop_request(self, from_username: str, to_username: str) -> FriendRequest:
        pending = self._requests.get(to_username, {})
        request = pending.pop(from_username, None)
        if request is None:
            raise PreconditionError("Friend request not found")
        if not pending:
            self._requests.pop(to_username, None)
        return request

    def accept_request(self, requester_username: str, username: str) -> FriendRequest:
        """
        Accept a pending request and make the two users friends.

        A request pending in the opposite direction is dropped as well, since
        it is satisfied by the new friendship.

        Raises:
            PreconditionError: If no such request is pending.
        """
        request = self._pop_request(requester_username, username)
        if self.has_pending_request(username, requester_username):
            self._pop_request(username, requester_username)
        self._link(requester_username, username)
        logger.info(f"{requester_username} and {username} are now friends")
        return request

    def decline_request(self, requester_username: str, username: str) -> FriendRequest:
        """
        Drop a pending request without creating a friendship.

        Raises:
            PreconditionError: If no such request is pending.
        """
        request = self._pop_request(requester_username, username)
        logger.info(f"{username} declined friend request from {requester_username}")
        return request
