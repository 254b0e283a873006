"""Message dispatch and handlers for the collaboration protocol."""

import logging
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, StrictStr
from pydantic import ValidationError as FrameValidationError

from collab_server.broadcast import BroadcastRouter
from collab_server.config import Settings, get_settings
from collab_server.errors import CollabError, PreconditionError, ProtocolError, ValidationError
from collab_server.identity import IdentityRelay
from collab_server.models import Connection, Identity, Participant, now_ms
from collab_server.notifications import NotificationStore
from collab_server.registry import ConnectionRegistry
from collab_server.sessions import SessionStore
from collab_server.social import SocialGraphStore

logger = logging.getLogger(__name__)

Handler = Callable[[Connection, dict[str, Any]], None]


class InboundFrame(BaseModel):
    """Envelope every inbound frame must match: a JSON object with a string ``type``."""

    model_config = ConfigDict(extra="allow")

    type: StrictStr


class MessageDispatcher:
    """
    Routes inbound frames to handlers by their ``type`` tag.

    Handlers are plain synchronous methods. They mutate the stores and queue
    outbound frames through the registry without awaiting, so each frame is
    processed to completion before the next one starts. Handlers signal
    failures by raising ``CollabError``; the dispatcher turns those into an
    ``error`` frame for the calling connection only.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        identities: Optional[IdentityRelay] = None,
        sessions: Optional[SessionStore] = None,
        social: Optional[SocialGraphStore] = None,
        notifications: Optional[NotificationStore] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.registry = registry
        self.identities = identities if identities is not None else IdentityRelay()
        self.sessions = sessions if sessions is not None else SessionStore()
        self.social = social if social is not None else SocialGraphStore()
        self.notifications = (
            notifications
            if notifications is not None
            else NotificationStore(self.settings.max_notifications)
        )
        self.router = BroadcastRouter(registry, self.sessions, self.identities)

        self._handlers: dict[str, Handler] = {}
        self._register_builtin_handlers()

    def _register_builtin_handlers(self) -> None:
        builtin = {
            "join": self.handle_join,
            "authenticate": self.handle_authenticate,
            "leave": self.handle_leave,
            "projectUpdate": self.handle_project_update,
            "cursorMove": self.handle_cursor_move,
            "chatMessage": self.handle_chat_message,
            "ping": self.handle_ping,
            "friendInvitation": self.handle_add_friend,
            "addFriend": self.handle_add_friend,
            "removeFriend": self.handle_remove_friend,
            "getFriends": self.handle_get_friends,
            "getFriendRequests": self.handle_get_friend_requests,
            "acceptFriendRequest": self.handle_accept_friend_request,
            "declineFriendRequest": self.handle_decline_friend_request,
            "getNotifications": self.handle_get_notifications,
            "markNotificationRead": self.handle_mark_notification_read,
            "markAllNotificationsRead": self.handle_mark_all_notifications_read,
            "deleteNotification": self.handle_delete_notification,
            "clearAllNotifications": self.handle_clear_all_notifications,
        }
        for message_type, handler in builtin.items():
            self.register_handler(message_type, handler)

    def register_handler(self, message_type: str, handler: Handler) -> None:
        """
        Register (or replace) the handler for a message type.

        Args:
            message_type: The ``type`` tag the handler serves.
            handler: Callable taking the connection and the decoded frame.
        """
        self._handlers[message_type] = handler
        logger.debug(f"Registered message handler for type: {message_type}")

    @property
    def supported_types(self) -> list[str]:
        """Get list of all recognized message types."""
        return list(self._handlers.keys())

    # Entry points

    def handle(self, connection: Connection, message: str | bytes) -> None:
        """
        Main entry point for a raw inbound frame.

        Frames that are not a JSON object with a string ``type`` get an
        ``Invalid message format`` error; the connection stays open.
        """
        logger.debug(f"Received message from {connection.connection_id}: {message[:100]!r}")

        try:
            frame = InboundFrame.model_validate_json(message)
        except FrameValidationError:
            logger.warning(f"Invalid frame from {connection.connection_id}: {message[:100]!r}")
            self.registry.send(
                connection.connection_id,
                ProtocolError("Invalid message format").to_frame(),
            )
            return

        self.dispatch(connection, frame.model_dump())

    def dispatch(self, connection: Connection, data: dict[str, Any]) -> None:
        """Invoke exactly one handler for a decoded frame."""
        msg_type = data.get("type")
        try:
            handler = self._handlers.get(msg_type)
            if handler is None:
                raise ProtocolError(f"Unknown message type: {msg_type}")
            handler(connection, data)
        except CollabError as e:
            logger.info(
                f"Rejected {msg_type} from {connection.connection_id}: {e.message}"
            )
            self.registry.send(connection.connection_id, e.to_frame())

    def disconnect(self, connection: Connection) -> None:
        """Clean up collaboration state for a connection whose transport closed."""
        if connection.project_id is not None:
            self._leave(connection, connection.project_id)
        self.identities.unbind(connection.connection_id)

    # Helpers

    def _reply(self, connection: Connection, message: dict[str, Any]) -> None:
        """Send a frame to the calling connection, stamped with the current time."""
        message.setdefault("timestamp", now_ms())
        self.registry.send(connection.connection_id, message)

    def _require_identity(self, connection: Connection) -> Identity:
        """Return the connection's identity or raise ``Authentication required``."""
        identity = self.identities.get(connection.connection_id)
        if identity is None:
            raise PreconditionError("Authentication required")
        return identity

    def _require_project(self, connection: Connection, error_message: str) -> str:
        if connection.project_id is None:
            raise PreconditionError(error_message)
        return connection.project_id

    @staticmethod
    def _required_str(data: dict[str, Any], key: str, error_message: str) -> str:
        value = data.get(key)
        if not isinstance(value, str) or not value:
            raise ValidationError(error_message)
        return value

    def _is_valid_username(self, username: str) -> bool:
        # Superficial check only, nobody asks Scratch whether the user exists
        return bool(username.strip()) and len(username) <= self.settings.max_username_length

    def _leave(self, connection: Connection, project_id: str) -> None:
        """Remove the connection from a session and tell whoever remains."""
        participant, session = self.sessions.remove_participant(
            project_id, connection.connection_id
        )
        if connection.project_id == project_id:
            connection.project_id = None
            connection.user_name = None

        if participant is not None and session is not None:
            self.router.broadcast_to_project(
                project_id,
                {
                    "type": "userLeft",
                    "userName": participant.user_name,
                    "connectionId": connection.connection_id,
                    "participantCount": session.participant_count,
                    "timestamp": now_ms(),
                },
            )

    # Session handlers

    def handle_authenticate(self, connection: Connection, data: dict[str, Any]) -> None:
        """
        Bind the asserted Scratch identity to the connection.

        The payload is trusted as sent. An invalid payload gets an
        unsuccessful ``authenticated`` reply and leaves any earlier identity
        in place.
        """
        identity = Identity.from_scratch_auth(data.get("scratchAuth"))
        if identity is None:
            self._reply(
                connection,
                {
                    "type": "authenticated",
                    "success": False,
                    "message": "Invalid authentication data",
                },
            )
            return

        self.identities.bind(connection.connection_id, identity)
        self._reply(
            connection,
            {"type": "authenticated", "success": True, "username": identity.username},
        )

    def handle_join(self, connection: Connection, data: dict[str, Any]) -> None:
        """
        Add the connection to a project's session.

        Others learn about the newcomer first, then the newcomer receives the
        full participant list and finally its join confirmation. A connection
        already in another project leaves that project first.
        """
        project_id = data.get("projectId")
        user_name = data.get("userName")
        if not project_id or not user_name:
            raise ValidationError("Project ID and user name are required")
        project_id = str(project_id)

        if not self.identities.is_authenticated(connection.connection_id):
            identity = Identity.from_scratch_auth(data.get("scratchAuth"))
            if identity is not None:
                self.identities.bind(connection.connection_id, identity)

        if connection.project_id is not None and connection.project_id != project_id:
            self._leave(connection, connection.project_id)

        identity = self.identities.get(connection.connection_id)
        participant = Participant(
            connection_id=connection.connection_id,
            user_name=identity.username if identity else str(user_name),
            is_authenticated=identity is not None,
            profile=identity.profile() if identity else None,
        )
        session = self.sessions.add_participant(project_id, participant)
        connection.project_id = project_id
        connection.user_name = participant.user_name

        self.router.broadcast_to_project(
            project_id,
            {
                "type": "userJoined",
                "userName": participant.user_name,
                "connectionId": connection.connection_id,
                "participantCount": session.participant_count,
                "profile": participant.profile,
                "timestamp": now_ms(),
            },
            exclude_connection_id=connection.connection_id,
        )
        self._reply(
            connection,
            {
                "type": "participantsList",
                "participants": [p.to_dict() for p in session.participants.values()],
            },
        )
        self._reply(
            connection,
            {
                "type": "joined",
                "projectId": project_id,
                "participantCount": session.participant_count,
            },
        )

    def handle_leave(self, connection: Connection, data: dict[str, Any]) -> None:
        """Leave the named project, or the current one. Not being joined is a no-op."""
        project_id = data.get("projectId") or connection.project_id
        if not project_id:
            return
        self._leave(connection, str(project_id))

    # Live relay handlers

    def handle_project_update(self, connection: Connection, data: dict[str, Any]) -> None:
        """Relay a project change to every other participant."""
        project_id = self._require_project(connection, "Not joined to any project")
        self.router.broadcast_to_project(
            project_id,
            {
                "type": "projectUpdate",
                "userName": connection.user_name,
                "connectionId": connection.connection_id,
                "data": data.get("updateData"),
                "timestamp": now_ms(),
            },
            exclude_connection_id=connection.connection_id,
        )

    def handle_cursor_move(self, connection: Connection, data: dict[str, Any]) -> None:
        """Relay a cursor position to every other participant."""
        project_id = self._require_project(connection, "Not joined to any project")
        self.router.broadcast_to_project(
            project_id,
            {
                "type": "cursorMove",
                "userName": connection.user_name,
                "connectionId": connection.connection_id,
                "position": data.get("position"),
                "timestamp": now_ms(),
            },
            exclude_connection_id=connection.connection_id,
        )

    def handle_chat_message(self, connection: Connection, data: dict[str, Any]) -> None:
        """
        Broadcast a trimmed chat line to the whole session.

        Raises:
            PreconditionError: If the connection has not joined a project.
            ValidationError: If the message is empty or too long.
        """
        project_id = self._require_project(
            connection, "You must join a project before sending chat messages"
        )

        message = data.get("message")
        if not isinstance(message, str) or not message.strip():
            raise ValidationError("Message cannot be empty")
        if len(message) > self.settings.max_chat_length:
            raise ValidationError(
                f"Message too long (max {self.settings.max_chat_length} characters)"
            )

        # Sender included, so its UI shows the server's ordering
        self.router.broadcast_to_project(
            project_id,
            {
                "type": "chatMessage",
                "userName": connection.user_name,
                "connectionId": connection.connection_id,
                "message": message.strip(),
                "timestamp": now_ms(),
            },
        )

    def handle_ping(self, connection: Connection, data: dict[str, Any]) -> None:
        """Answer an application-level ping."""
        self._reply(connection, {"type": "pong"})

    # Friend handlers

    def handle_add_friend(self, connection: Connection, data: dict[str, Any]) -> None:
        """Queue a friend request (also serves the legacy ``friendInvitation``)."""
        identity = self._require_identity(connection)

        friend_username = self._required_str(
            data, "friendUsername", "Friend username is required"
        )
        if not self._is_valid_username(friend_username):
            raise ValidationError(f"User '{friend_username}' not found on Scratch")
        if friend_username == identity.username:
            raise ValidationError("You cannot add yourself as a friend")

        request = self.social.add_request(identity.username, friend_username)

        project_id = data.get("projectId")
        notification_data = {"from": identity.username, "type": "friendRequest"}
        if project_id:
            notification_data["projectId"] = project_id
        self.notifications.add(
            friend_username,
            "friendRequest",
            "Friend request",
            f"{identity.username} wants to be your friend",
            notification_data,
        )

        received = {
            "type": "friendRequestReceived",
            "from": identity.username,
            "timestamp": request.timestamp,
        }
        if project_id:
            received["projectId"] = project_id
        self.router.send_to_user(friend_username, received)

        self._reply(
            connection, {"type": "friendRequestSent", "friendUsername": friend_username}
        )

    def handle_remove_friend(self, connection: Connection, data: dict[str, Any]) -> None:
        """Remove a friendship from both users' lists."""
        identity = self._require_identity(connection)
        friend_username = self._required_str(
            data, "friendUsername", "Friend username is required"
        )

        self.social.remove_friend(identity.username, friend_username)
        self._reply(connection, {"type": "friendRemoved", "friendUsername": friend_username})

    def handle_get_friends(self, connection: Connection, data: dict[str, Any]) -> None:
        """Reply with the caller's friends and whether each is online."""
        identity = self._require_identity(connection)
        friends = [
            edge.to_dict(online=self.identities.is_online(edge.username))
            for edge in self.social.friends_of(identity.username)
        ]
        self._reply(connection, {"type": "friendsList", "friends": friends})

    def handle_get_friend_requests(self, connection: Connection, data: dict[str, Any]) -> None:
        """Reply with the requests waiting for the caller."""
        identity = self._require_identity(connection)
        requests = [r.to_dict() for r in self.social.requests_for(identity.username)]
        self._reply(connection, {"type": "friendRequests", "requests": requests})

    def handle_accept_friend_request(self, connection: Connection, data: dict[str, Any]) -> None:
        """
        Accept a pending request addressed to the caller.

        Both users get a ``friendAccepted`` notification and, on every
        connection they have open, a ``friendAdded`` push.
        """
        identity = self._require_identity(connection)
        requester = self._required_str(
            data, "requesterUsername", "Requester username is required"
        )

        username = identity.username
        self.social.accept_request(requester, username)

        self.notifications.add(
            requester,
            "friendAccepted",
            "Friend request accepted",
            f"{username} accepted your friend request",
            {"friendUsername": username, "type": "friendAccepted"},
        )
        self.notifications.add(
            username,
            "friendAccepted",
            "Friend request accepted",
            f"You accepted the friend request from {requester}",
            {"friendUsername": requester, "type": "friendAccepted"},
        )

        timestamp = now_ms()
        self.router.send_to_user(
            requester, {"type": "friendAdded", "friendUsername": username, "timestamp": timestamp}
        )
        self.router.send_to_user(
            username, {"type": "friendAdded", "friendUsername": requester, "timestamp": timestamp}
        )

        self._reply(connection, {"type": "friendRequestAccepted", "friendUsername": requester})

    def handle_decline_friend_request(self, connection: Connection, data: dict[str, Any]) -> None:
        """Drop a pending request without creating a friendship."""
        identity = self._require_identity(connection)
        requester = self._required_str(
            data, "requesterUsername", "Requester username is required"
        )

        self.social.decline_request(requester, identity.username)
        self._reply(
            connection, {"type": "friendRequestDeclined", "requesterUsername": requester}
        )

    # Notification handlers

    def handle_get_notifications(self, connection: Connection, data: dict[str, Any]) -> None:
        """Reply with the caller's notifications, newest first, and the unread count."""
        identity = self._require_identity(connection)
        notifications = self.notifications.notifications_for(identity.username)
        self._reply(
            connection,
            {
                "type": "notificationsList",
                "notifications": [n.to_dict() for n in notifications],
                "unreadCount": self.notifications.unread_count(identity.username),
            },
        )

    def handle_mark_notification_read(self, connection: Connection, data: dict[str, Any]) -> None:
        """Mark one notification read. Repeating the call is not an error."""
        identity = self._require_identity(connection)
        notification_id = self._required_str(
            data, "notificationId", "Notification ID is required"
        )

        self.notifications.mark_read(identity.username, notification_id)
        self._reply(
            connection, {"type": "notificationMarkedRead", "notificationId": notification_id}
        )

    def handle_mark_all_notifications_read(
        self, connection: Connection, data: dict[str, Any]
    ) -> None:
        """Mark every notification read. Succeeds even when nothing was unread."""
        identity = self._require_identity(connection)
        self.notifications.mark_all_read(identity.username)
        self._reply(connection, {"type": "allNotificationsMarkedRead"})

    def handle_delete_notification(self, connection: Connection, data: dict[str, Any]) -> None:
        """Delete one notification from the caller's list."""
        identity = self._require_identity(connection)
        notification_id = self._required_str(
            data, "notificationId", "Notification ID is required"
        )

        self.notifications.delete(identity.username, notification_id)
        self._reply(
            connection, {"type": "notificationDeleted", "notificationId": notification_id}
        )

    def handle_clear_all_notifications(self, connection: Connection, data: dict[str, Any]) -> None:
        """Empty the caller's notification list."""
        identity = self._require_identity(connection)
        self.notifications.clear(identity.username)
        self._reply(connection, {"type": "allNotificationsCleared"})
