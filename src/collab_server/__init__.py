"""Real-time collaboration relay server for Scratch projects."""

from collab_server.broadcast import BroadcastRouter
from collab_server.handlers import MessageDispatcher
from collab_server.identity import IdentityRelay
from collab_server.models import Connection
from collab_server.notifications import NotificationStore
from collab_server.registry import ConnectionRegistry
from collab_server.server import WebSocketHandler
from collab_server.sessions import SessionStore
from collab_server.social import SocialGraphStore

__version__ = "0.1.0"

__all__ = [
    "BroadcastRouter",
    "Connection",
    "ConnectionRegistry",
    "IdentityRelay",
    "MessageDispatcher",
    "NotificationStore",
    "SessionStore",
    "SocialGraphStore",
    "WebSocketHandler",
]
