"""End-to-end tests for the WebSocket handler over a real socket."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from websockets.asyncio.client import connect
from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from collab_server.config import Settings
from collab_server.handlers import MessageDispatcher
from collab_server.registry import ConnectionRegistry
from collab_server.server import WebSocketHandler


@pytest.fixture
def fast_settings():
    """Settings with short heartbeat intervals."""
    return Settings(
        host="127.0.0.1", port=0, ping_interval=0.2, pong_timeout=0.5, max_outbox_frames=20
    )


@pytest.fixture
def ws_handler(fast_settings):
    dispatcher = MessageDispatcher(
        ConnectionRegistry(fast_settings.max_outbox_frames), settings=fast_settings
    )
    return WebSocketHandler(dispatcher, fast_settings)


@pytest_asyncio.fixture
async def server_url(ws_handler):
    """Run the handler on an ephemeral port and yield its URL."""
    async with serve(ws_handler.handle_connection, "127.0.0.1", 0, ping_interval=None) as server:
        port = list(server.sockets)[0].getsockname()[1]
        yield f"ws://127.0.0.1:{port}"


async def receive(websocket) -> dict:
    return json.loads(await asyncio.wait_for(websocket.recv(), timeout=2.0))


async def receive_until(websocket, message_type: str) -> dict:
    while True:
        frame = await receive(websocket)
        if frame["type"] == message_type:
            return frame


async def wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestWebSocketHandler:
    """Tests for WebSocketHandler."""

    @pytest.mark.asyncio
    async def test_welcome_on_connect(self, server_url, ws_handler):
        """Test that a new connection is greeted with its id."""
        async with connect(f"{server_url}/") as websocket:
            welcome = await receive(websocket)

            assert welcome["type"] == "welcome"
            assert welcome["connectionId"] in ws_handler.registry
            assert ws_handler.active_connection_count == 1

    @pytest.mark.asyncio
    async def test_invalid_path_rejected(self, server_url, ws_handler):
        """Test that a connection to another path is closed with 1008."""
        async with connect(f"{server_url}/elsewhere") as websocket:
            with pytest.raises(ConnectionClosed):
                await websocket.recv()

            assert websocket.close_code == 1008
        assert ws_handler.active_connection_count == 0

    @pytest.mark.asyncio
    async def test_invalid_frame_keeps_connection_open(self, server_url):
        """Test that a bad frame gets an error and the socket stays usable."""
        async with connect(server_url) as websocket:
            await receive(websocket)

            await websocket.send("not json")
            assert await receive(websocket) == {"type": "error", "message": "Invalid message format"}

            await websocket.send(json.dumps({"type": "ping"}))
            assert (await receive(websocket))["type"] == "pong"

    @pytest.mark.asyncio
    async def test_collaboration_round_trip(self, server_url, ws_handler):
        """Test join and chat between two real clients."""
        async with connect(server_url) as ava, connect(server_url) as bo:
            await receive(ava)
            await receive(bo)

            await ava.send(json.dumps({"type": "join", "projectId": "42", "userName": "Ava"}))
            assert (await receive_until(ava, "joined"))["participantCount"] == 1

            await bo.send(json.dumps({"type": "join", "projectId": "42", "userName": "Bo"}))
            participants = await receive(bo)
            assert participants["type"] == "participantsList"
            assert {p["userName"] for p in participants["participants"]} == {"Ava", "Bo"}
            assert (await receive(ava))["userName"] == "Bo"

            await bo.send(json.dumps({"type": "chatMessage", "projectId": "42", "message": "hi"}))
            assert (await receive_until(ava, "chatMessage"))["message"] == "hi"
            assert (await receive_until(bo, "chatMessage"))["userName"] == "Bo"

        await wait_until(lambda: ws_handler.active_connection_count == 0)
        assert len(ws_handler.dispatcher.sessions) == 0

    @pytest.mark.asyncio
    async def test_disconnect_notifies_peers(self, server_url, ws_handler):
        """Test that closing a socket tells the remaining participants."""
        async with connect(server_url) as ava:
            await receive(ava)
            await ava.send(json.dumps({"type": "join", "projectId": "42", "userName": "Ava"}))
            await receive_until(ava, "joined")

            async with connect(server_url) as bo:
                await receive(bo)
                await bo.send(json.dumps({"type": "join", "projectId": "42", "userName": "Bo"}))
                await receive_until(bo, "joined")

            left = await receive_until(ava, "userLeft")
            assert left["userName"] == "Bo"
            assert left["participantCount"] == 1

    @pytest.mark.asyncio
    async def test_responsive_idle_client_is_kept(self, server_url, ws_handler):
        """Test that a silent client answering pings stays connected."""
        async with connect(server_url) as websocket:
            await receive(websocket)

            # Several ping intervals pass; the client library answers the pings
            await asyncio.sleep(0.7)

            await websocket.send(json.dumps({"type": "ping"}))
            assert (await receive(websocket))["type"] == "pong"

    @pytest.mark.asyncio
    async def test_close_all_connections(self, server_url, ws_handler):
        """Test that shutdown sends a notice and closes with 1001."""
        async with connect(server_url) as websocket:
            await receive(websocket)
            await websocket.send(json.dumps({"type": "join", "projectId": "42", "userName": "Ava"}))
            await receive_until(websocket, "joined")

            await ws_handler.close_all_connections(timeout=1.0)

            assert (await receive(websocket))["type"] == "shutdown"
            with pytest.raises(ConnectionClosed):
                await websocket.recv()
            assert websocket.close_code == 1001

        assert ws_handler.active_connection_count == 0
        assert len(ws_handler.dispatcher.sessions) == 0


class TestHeartbeat:
    """Tests for the pong timeout."""

    @pytest.mark.asyncio
    async def test_missing_pong_closes_connection(self, ws_handler):
        """Test that a missing pong closes the connection with 1008."""
        websocket = MagicMock()
        websocket.ping = AsyncMock(return_value=asyncio.get_running_loop().create_future())
        websocket.close = AsyncMock()
        connection = ws_handler.registry.register(websocket)

        alive = await ws_handler._check_alive(websocket, connection)

        assert alive is False
        websocket.close.assert_awaited_once_with(1008, "Pong timeout")

    @pytest.mark.asyncio
    async def test_pong_keeps_connection(self, ws_handler):
        """Test that a timely pong keeps the connection."""
        pong = asyncio.get_running_loop().create_future()
        pong.set_result(0.01)
        websocket = MagicMock()
        websocket.ping = AsyncMock(return_value=pong)
        websocket.close = AsyncMock()
        connection = ws_handler.registry.register(websocket)

        assert await ws_handler._check_alive(websocket, connection) is True
        websocket.close.assert_not_awaited()


class TestBackpressure:
    """Tests for connections that stop reading their socket."""

    @pytest.mark.asyncio
    async def test_full_outbox_closes_connection(self, ws_handler):
        """Test that overflowing a connection's outbox closes it with 1013."""
        websocket = MagicMock()
        websocket.close = AsyncMock()
        connection = ws_handler.registry.register(websocket)

        for _ in range(20):
            assert ws_handler.registry.send(connection.connection_id, {"type": "pong"})
        assert ws_handler.registry.send(connection.connection_id, {"type": "pong"}) is False
        await asyncio.sleep(0)

        assert connection.open is False
        assert connection.outbox.qsize() == 20
        websocket.close.assert_awaited_once_with(1013, "Outbound queue full")

    @pytest.mark.asyncio
    async def test_stalled_participant_dropped_during_broadcast(self, ws_handler):
        """Test that a flood of cursor moves drops the peer that never drains."""
        dispatcher = ws_handler.dispatcher
        fast, slow = MagicMock(), MagicMock()
        fast.close, slow.close = AsyncMock(), AsyncMock()
        fast_connection = ws_handler.registry.register(fast)
        slow_connection = ws_handler.registry.register(slow)
        for connection, name in ((fast_connection, "Fast"), (slow_connection, "Slow")):
            dispatcher.dispatch(connection, {"type": "join", "projectId": "1", "userName": name})

        for i in range(1000):
            dispatcher.dispatch(fast_connection, {"type": "cursorMove", "position": {"x": i}})
        await asyncio.sleep(0)

        assert slow_connection.outbox.qsize() <= 20
        slow.close.assert_awaited_once_with(1013, "Outbound queue full")
        fast.close.assert_not_awaited()
        assert fast_connection.open is True
