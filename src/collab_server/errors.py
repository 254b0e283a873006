"""Error types raised by handlers and stores.

Every error carries a human readable message that is sent back to the
offending connection as an ``error`` frame (or mapped to an HTTP status by
the REST layer). None of them close the connection.
"""


class CollabError(Exception):
    """Base class for errors reported back to a single client."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_frame(self) -> dict:
        """Build the outbound ``error`` frame for this error."""
        return {"type": "error", "message": self.message}


class ProtocolError(CollabError):
    """Malformed frame or unknown message type."""


class ValidationError(CollabError):
    """A required field is missing or a value is out of bounds."""


class PreconditionError(CollabError):
    """The caller's state does not allow the operation (not joined, not authenticated, ...)."""


class NotFoundError(CollabError):
    """The addressed resource does not exist."""
