"""Fan-out of frames to session participants and to users."""

import json
import logging
from typing import Optional

from collab_server.identity import IdentityRelay
from collab_server.registry import ConnectionRegistry
from collab_server.sessions import SessionStore

logger = logging.getLogger(__name__)


class BroadcastRouter:
    """Delivers one logical event to several connections."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        sessions: SessionStore,
        identities: IdentityRelay,
    ):
        self.registry = registry
        self.sessions = sessions
        self.identities = identities

    def broadcast_to_project(
        self,
        project_id: str,
        message: dict,
        exclude_connection_id: Optional[str] = None,
    ) -> int:
        """
        Send a message to every participant of a project's session.

        Args:
            project_id: Target session. Unknown projects are a no-op.
            message: Frame to send, serialized once for the whole fan-out.
            exclude_connection_id: Participant to skip, usually the sender.

        Returns:
            Number of connections the message was queued for.
        """
        session = self.sessions.get(project_id)
        if session is None:
            return 0

        text = json.dumps(message)
        delivered = 0
        for connection_id in session.participants:
            if connection_id == exclude_connection_id:
                continue
            if self.registry.send_text(connection_id, text):
                delivered += 1

        logger.debug(
            f"Broadcast {message.get('type')} to {delivered} connection(s) in {project_id}"
        )
        return delivered

    def send_to_user(self, username: str, message: dict) -> int:
        """Send a message to every live connection bound to ``username``."""
        text = json.dumps(message)
        delivered = 0
        for connection_id in self.identities.connections_for(username):
            if self.registry.send_text(connection_id, text):
                delivered += 1
        return delivered
