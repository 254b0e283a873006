"""WebSocket server handler implementation."""

import asyncio
import contextlib
import json
import logging
import time
from typing import Optional

from websockets.asyncio.server import ServerConnection
from websockets.exceptions import ConnectionClosed

from collab_server.config import Settings
from collab_server.handlers import MessageDispatcher
from collab_server.models import Connection, now_ms

logger = logging.getLogger(__name__)


class WebSocketHandler:
    """Handles WebSocket connections and hands their frames to the dispatcher."""

    def __init__(self, dispatcher: MessageDispatcher, settings: Optional[Settings] = None):
        """Initialize handler with the message dispatcher and its stores."""
        self.dispatcher = dispatcher
        self.registry = dispatcher.registry
        self.settings = settings or dispatcher.settings
        self._started_at = time.monotonic()
        self._closing: set[asyncio.Task] = set()
        self.registry.on_overflow = self._drop_stalled_connection

    @property
    def active_connection_count(self) -> int:
        """Return the number of active connections."""
        return len(self.registry)

    @property
    def uptime(self) -> float:
        """Seconds since the handler was created."""
        return time.monotonic() - self._started_at

    async def close_all_connections(self, timeout: float = 5.0) -> None:
        """
        Gracefully close all active WebSocket connections.

        Sends a shutdown message to each client, closes the websocket, and
        releases the connection's session and identity state.

        Args:
            timeout: Maximum time in seconds to wait for all connections to close.
        """
        connections_to_close = self.registry.all()
        if not connections_to_close:
            logger.info("No active connections to close")
            return

        logger.info(f"Closing {len(connections_to_close)} active connection(s)...")

        async def close_single_connection(connection: Connection) -> None:
            """Close a single connection gracefully."""
            websocket = connection.websocket
            try:
                await websocket.send(
                    json.dumps(
                        {
                            "type": "shutdown",
                            "connectionId": connection.connection_id,
                            "message": "Server is shutting down",
                        }
                    )
                )
                # Close with 1001 (Going Away) status code
                await websocket.close(1001, "Server shutting down")
                logger.debug(f"Closed connection: {connection.connection_id}")
            except ConnectionClosed:
                logger.debug(f"Connection already closed: {connection.connection_id}")

        try:
            await asyncio.wait_for(
                asyncio.gather(
                    *(close_single_connection(c) for c in connections_to_close),
                    return_exceptions=True,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Timeout after {timeout}s while closing connections, "
                f"forcing cleanup of remaining connections"
            )

        for connection in connections_to_close:
            self._release(connection)

        logger.info("All connections closed and state cleaned up")

    def _release(self, connection: Connection) -> None:
        """Drop a connection from its session, the identity relay and the registry."""
        if connection.connection_id not in self.registry:
            return
        self.dispatcher.disconnect(connection)
        self.registry.unregister(connection.connection_id)

    async def handle_connection(self, websocket: ServerConnection) -> None:
        """
        Handle a WebSocket connection lifecycle.

        Validates the request path, registers the connection, processes
        messages, pings silent clients, and cleans up on disconnect.
        """
        path = websocket.request.path
        if not self.settings.is_valid_path(path):
            error_msg = f"Invalid path. Expected: {self.settings.ws_path}"
            logger.warning(f"Connection rejected ({path}): {error_msg}")
            await websocket.close(1008, error_msg)
            return

        connection = self.registry.register(websocket)
        writer = asyncio.create_task(self._write_outbox(websocket, connection))

        logger.info(f"Connection established: {connection.connection_id}")

        try:
            self.registry.send(
                connection.connection_id,
                {
                    "type": "welcome",
                    "connectionId": connection.connection_id,
                    "timestamp": now_ms(),
                },
            )

            while True:
                try:
                    message = await asyncio.wait_for(
                        websocket.recv(), timeout=self.settings.ping_interval
                    )
                except asyncio.TimeoutError:
                    # Silent client, make sure it is still there
                    if not await self._check_alive(websocket, connection):
                        break
                    continue
                except ConnectionClosed:
                    logger.info(f"Connection closed by client: {connection.connection_id}")
                    break

                self._handle_message(connection, message)

        except Exception as e:
            logger.error(f"Error handling connection: {e}", exc_info=True)
            raise

        finally:
            self._release(connection)
            writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await writer
            logger.info(f"Connection closed: {connection.connection_id}")

    async def _check_alive(self, websocket: ServerConnection, connection: Connection) -> bool:
        """Send a protocol ping and wait for the pong. Closes the connection on timeout."""
        try:
            logger.debug(f"Sending protocol ping over {connection.connection_id}")
            pong_waiter = await websocket.ping()
            await asyncio.wait_for(pong_waiter, timeout=self.settings.pong_timeout)
            logger.debug(f"Received protocol pong from {connection.connection_id}")
            return True
        except asyncio.TimeoutError:
            logger.warning(
                f"No pong response from {connection.connection_id} in "
                f"{self.settings.pong_timeout}s, closing connection"
            )
            await websocket.close(1008, "Pong timeout")
            return False
        except ConnectionClosed:
            logger.info(f"Connection closed by client: {connection.connection_id}")
            return False

    def _drop_stalled_connection(self, connection: Connection) -> None:
        """
        Close a connection whose outbox overflowed.

        Called synchronously from inside a handler, so the close runs as its
        own task. The receive loop then sees the close and releases the state.
        """
        task = asyncio.get_running_loop().create_task(
            connection.websocket.close(1013, "Outbound queue full")
        )
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _write_outbox(self, websocket: ServerConnection, connection: Connection) -> None:
        """Drain the connection's outbox into the socket, in queue order."""
        while True:
            text = await connection.outbox.get()
            try:
                await websocket.send(text)
            except ConnectionClosed:
                logger.debug(f"Dropping outbound frames for closed {connection.connection_id}")
                return

    def _handle_message(self, connection: Connection, message: str | bytes) -> None:
        """
        Handle an incoming WebSocket message.

        Errors the dispatcher does not expect are logged and reported to the
        client; the connection stays open.
        """
        try:
            self.dispatcher.handle(connection, message)
        except Exception as e:
            logger.error(
                f"Unhandled error processing message from {connection.connection_id}: {e}",
                exc_info=True,
            )
            self.registry.send(
                connection.connection_id,
                {"type": "error", "message": "Internal server error"},
            )
