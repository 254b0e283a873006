"""Entry point for the collaboration server."""

import asyncio
import logging
import signal
import sys

from aiohttp import web
from websockets.asyncio.server import serve

from collab_server.config import get_settings
from collab_server.handlers import MessageDispatcher
from collab_server.http import create_http_app
from collab_server.registry import ConnectionRegistry
from collab_server.server import WebSocketHandler

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


async def run_server() -> None:
    """Initialize and run the WebSocket server and HTTP API server."""
    settings = get_settings()

    logger.info(f"Starting WebSocket server on {settings.host}:{settings.port}")
    logger.info(f"Starting HTTP server on {settings.host}:{settings.http_port}")

    # All state lives in these objects for the lifetime of the process
    registry = ConnectionRegistry(settings.max_outbox_frames)
    dispatcher = MessageDispatcher(registry, settings=settings)
    handler = WebSocketHandler(dispatcher, settings)

    # Create HTTP app with access to WebSocket handler
    http_app = create_http_app(handler)

    # Set up graceful shutdown
    stop_event = asyncio.Event()

    def handle_shutdown():
        logger.info("Shutdown signal received, stopping servers...")
        stop_event.set()

    # Register signal handlers
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_shutdown)

    # Start the HTTP server
    http_runner = web.AppRunner(http_app)
    await http_runner.setup()
    http_site = web.TCPSite(http_runner, settings.host, settings.http_port)
    await http_site.start()

    logger.info(f"HTTP server listening on http://{settings.host}:{settings.http_port}")
    logger.info(f"Health endpoint: http://{settings.host}:{settings.http_port}/health")

    # Keepalive is handled by WebSocketHandler, so the library's own pings are off
    async with serve(
        handler.handle_connection,
        settings.host,
        settings.port,
        ping_interval=None,
        max_size=settings.max_message_size,
    ):
        logger.info(f"WebSocket server listening on ws://{settings.host}:{settings.port}{settings.ws_path}")

        # Wait for shutdown signal
        await stop_event.wait()

        logger.info("Initiating graceful shutdown...")
        await handler.close_all_connections(timeout=settings.shutdown_timeout)

    # Clean up HTTP server
    await http_runner.cleanup()

    logger.info("Servers stopped")


def main() -> None:
    """Main entry point."""
    configure_logging(get_settings().log_level)
    try:
        asyncio.run(run_server())
    except KeyboardInterrupt:
        logger.info("Server interrupted")


if __name__ == "__main__":
    main()
