"""Per-project collaboration sessions."""

import logging
from typing import Optional

from collab_server.models import Participant, Session

logger = logging.getLogger(__name__)


class SessionStore:
    """
    Maps project ids to sessions.

    A session is created by the first join and deleted in the same call that
    removes its last participant, so the store never holds an empty session.
    """

    def __init__(self):
        self._sessions: dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, project_id: str) -> bool:
        return project_id in self._sessions

    def get(self, project_id: str) -> Optional[Session]:
        """Retrieve a project's session, or None if nobody is in it."""
        return self._sessions.get(project_id)

    def all(self) -> list[Session]:
        """Snapshot of every active session."""
        return list(self._sessions.values())

    def add_participant(self, project_id: str, participant: Participant) -> Session:
        """
        Add (or replace) a participant, creating the session if needed.

        Returns:
            The session the participant now belongs to.
        """
        session = self._sessions.get(project_id)
        if session is None:
            session = Session(project_id=project_id)
            self._sessions[project_id] = session
            logger.info(f"Session for project {project_id} created")
        session.participants[participant.connection_id] = participant
        logger.info(f"{participant.user_name} joined project {project_id}")
        return session

    def remove_participant(
        self, project_id: str, connection_id: str
    ) -> tuple[Optional[Participant], Optional[Session]]:
        """
        Remove a participant from a session.

        Returns:
            Tuple of (removed participant, remaining session). The participant
            is None if it was not in the session; the session is None if it no
            longer exists (unknown project or just emptied and deleted).
        """
        session = self._sessions.get(project_id)
        if session is None:
            return None, None

        participant = session.participants.pop(connection_id, None)
        if participant is None:
            return None, session

        logger.info(f"{participant.user_name} left project {project_id}")

        if not session.participants:
            del self._sessions[project_id]
            logger.info(f"Session for project {project_id} removed")
            return participant, None

        return participant, session
