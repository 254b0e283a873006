"""In-memory registry of live WebSocket connections."""

import asyncio
import json
import logging
from typing import Any, Callable, Optional

from collab_server.models import Connection

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTBOX_FRAMES = 1000


class ConnectionRegistry:
    """
    Owns every live connection and delivers outbound frames by connection id.

    Frames are never written to the socket directly. ``send`` serializes the
    message and puts it on the connection's outbox, which the transport drains
    from a dedicated writer task. Handlers therefore never await, and a fan-out
    is issued completely before the next frame is processed.

    Outboxes are bounded. A connection whose outbox fills up is not reading
    its socket; it is marked closed and handed to ``on_overflow`` so the
    transport can drop it.
    """

    def __init__(
        self,
        max_outbox_frames: int = DEFAULT_MAX_OUTBOX_FRAMES,
        on_overflow: Optional[Callable[[Connection], None]] = None,
    ):
        self.max_outbox_frames = max_outbox_frames
        self.on_overflow = on_overflow
        self._connections: dict[str, Connection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def register(self, websocket: Any) -> Connection:
        """
        Register a new connection.

        Args:
            websocket: Transport handle, kept only so the server can close it.

        Returns:
            The created Connection object with a fresh connection id.
        """
        connection = Connection(
            websocket=websocket,
            outbox=asyncio.Queue(maxsize=self.max_outbox_frames),
        )
        self._connections[connection.connection_id] = connection
        logger.info(f"Registered connection {connection.connection_id}")
        return connection

    def unregister(self, connection_id: str) -> bool:
        """
        Remove a connection from the registry and mark it closed.

        Returns:
            True if the connection was removed, False if it didn't exist
        """
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            logger.warning(f"Connection {connection_id} not found for unregistration")
            return False
        connection.open = False
        logger.info(f"Unregistered connection {connection_id}")
        return True

    def get(self, connection_id: str) -> Optional[Connection]:
        """Retrieve a connection, or None if it is unknown."""
        return self._connections.get(connection_id)

    def all(self) -> list[Connection]:
        """Snapshot of every registered connection."""
        return list(self._connections.values())

    def send(self, connection_id: str, message: dict) -> bool:
        """
        Queue a message for delivery to one connection.

        Returns:
            True if the message was queued, False if the connection is gone.
        """
        return self.send_text(connection_id, json.dumps(message))

    def send_text(self, connection_id: str, text: str) -> bool:
        """
        Queue an already serialized frame.

        Closed connections are skipped. A full outbox closes the connection
        and the frame is dropped.

        Returns:
            True if the frame was queued.
        """
        connection = self._connections.get(connection_id)
        if connection is None or not connection.open:
            logger.debug(f"Skipping send to closed connection {connection_id}")
            return False
        try:
            connection.outbox.put_nowait(text)
        except asyncio.QueueFull:
            self._overflow(connection)
            return False
        return True

    def _overflow(self, connection: Connection) -> None:
        connection.open = False
        logger.warning(
            f"Outbox of {connection.connection_id} full "
            f"({self.max_outbox_frames} frames), dropping slow connection"
        )
        if self.on_overflow is not None:
            self.on_overflow(connection)
