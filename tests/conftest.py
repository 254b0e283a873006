"""Shared fixtures for the collaboration server tests."""

import json
from unittest.mock import MagicMock

import pytest

from collab_server.config import Settings
from collab_server.handlers import MessageDispatcher
from collab_server.models import Connection
from collab_server.registry import ConnectionRegistry


def drain(connection: Connection) -> list[dict]:
    """Pop every frame queued for a connection, decoded."""
    frames = []
    while not connection.outbox.empty():
        frames.append(json.loads(connection.outbox.get_nowait()))
    return frames


def types_of(frames: list[dict]) -> list[str]:
    return [f["type"] for f in frames]


@pytest.fixture
def test_settings():
    """Create test settings."""
    return Settings(
        host="127.0.0.1",
        port=0,
        http_port=0,
        ping_interval=25.0,
        pong_timeout=10.0,
        max_chat_length=500,
        max_notifications=100,
        max_username_length=20,
        max_outbox_frames=50,
    )


@pytest.fixture
def registry(test_settings):
    return ConnectionRegistry(test_settings.max_outbox_frames)


@pytest.fixture
def dispatcher(registry, test_settings):
    """A dispatcher with fresh, isolated stores."""
    return MessageDispatcher(registry, settings=test_settings)


@pytest.fixture
def connect(registry):
    """Factory registering a connection backed by a mock websocket."""

    def _connect() -> Connection:
        return registry.register(MagicMock())

    return _connect


@pytest.fixture
def authenticated(dispatcher, connect):
    """Factory for a connection that has asserted the given Scratch username."""

    def _authenticated(username: str) -> Connection:
        connection = connect()
        dispatcher.dispatch(
            connection,
            {
                "type": "authenticate",
                "scratchAuth": {
                    "isLoggedIn": True,
                    "username": username,
                    "userId": 1,
                    "avatar": f"https://cdn.example/{username}.png",
                    "profileUrl": f"https://scratch.mit.edu/users/{username}/",
                },
            },
        )
        drain(connection)
        return connection

    return _authenticated
