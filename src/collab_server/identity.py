"""Advisory binding of connections to asserted Scratch identities."""

import logging
from typing import Optional

from collab_server.models import Identity

logger = logging.getLogger(__name__)


class IdentityRelay:
    """
    Caches the identity each connection claims to have.

    Nothing here is verified: whatever ``scratchAuth`` payload a client sends
    is trusted. A reverse index from username to connection ids allows
    delivering pushes to every tab a user has open.
    """

    def __init__(self):
        self._identities: dict[str, Identity] = {}
        self._connections_by_user: dict[str, set[str]] = {}

    def bind(self, connection_id: str, identity: Identity) -> None:
        """Bind (or rebind) an identity to a connection."""
        self.unbind(connection_id)
        self._identities[connection_id] = identity
        self._connections_by_user.setdefault(identity.username, set()).add(connection_id)
        logger.info(f"User {identity.username} authenticated on {connection_id}")

    def unbind(self, connection_id: str) -> Optional[Identity]:
        """Drop a connection's identity. Returns the identity that was bound, if any."""
        identity = self._identities.pop(connection_id, None)
        if identity is None:
            return None
        connection_ids = self._connections_by_user.get(identity.username)
        if connection_ids is not None:
            connection_ids.discard(connection_id)
            if not connection_ids:
                del self._connections_by_user[identity.username]
        return identity

    def get(self, connection_id: str) -> Optional[Identity]:
        """Identity bound to a connection, or None for guests."""
        return self._identities.get(connection_id)

    def is_authenticated(self, connection_id: str) -> bool:
        """Check if a connection has asserted an identity."""
        return connection_id in self._identities

    def connections_for(self, username: str) -> list[str]:
        """Connection ids currently bound to ``username``."""
        return list(self._connections_by_user.get(username, ()))

    def is_online(self, username: str) -> bool:
        """Check if the user has at least one authenticated connection open."""
        return username in self._connections_by_user
