"""Per-user notification center."""

import logging
from typing import Optional

from collab_server.errors import NotFoundError
from collab_server.models import Notification

logger = logging.getLogger(__name__)

DEFAULT_MAX_NOTIFICATIONS = 100


class NotificationStore:
    """Newest-first notification lists, capped per user."""

    def __init__(self, max_per_user: int = DEFAULT_MAX_NOTIFICATIONS):
        self.max_per_user = max_per_user
        self._notifications: dict[str, list[Notification]] = {}

    def add(
        self,
        username: str,
        type: str,
        title: str,
        message: str,
        data: Optional[dict] = None,
    ) -> Notification:
        """Prepend a notification, evicting the oldest past the cap."""
        notification = Notification(type=type, title=title, message=message, data=data or {})
        notifications = self._notifications.setdefault(username, [])
        notifications.insert(0, notification)
        del notifications[self.max_per_user:]
        logger.debug(f"Notification {notification.id} ({type}) added for {username}")
        return notification

    def notifications_for(self, username: str) -> list[Notification]:
        """Snapshot of a user's notifications, newest first."""
        return list(self._notifications.get(username, ()))

    def unread_count(self, username: str) -> int:
        """Number of notifications the user has not read yet."""
        return sum(1 for n in self._notifications.get(username, ()) if not n.read)

    def _find(self, username: str, notification_id: str) -> Notification:
        for notification in self._notifications.get(username, ()):
            if notification.id == notification_id:
                return notification
        raise NotFoundError("Notification not found")

    def mark_read(self, username: str, notification_id: str) -> Notification:
        """
        Mark one notification read. Marking it again is not an error.

        Raises:
            NotFoundError: If the user has no notification with that id.
        """
        notification = self._find(username, notification_id)
        notification.read = True
        return notification

    def mark_all_read(self, username: str) -> int:
        """Mark every notification read. Returns how many changed."""
        changed = 0
        for notification in self._notifications.get(username, ()):
            if not notification.read:
                notification.read = True
                changed += 1
        return changed

    def delete(self, username: str, notification_id: str) -> None:
        """
        Delete one notification.

        Raises:
            NotFoundError: If the user has no notification with that id.
        """
        notification = self._find(username, notification_id)
        self._notifications[username].remove(notification)

    def clear(self, username: str) -> None:
        """Delete every notification a user has. Clearing an empty list is fine."""
        self._notifications[username] = []
