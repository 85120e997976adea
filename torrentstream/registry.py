import dataclasses
import logging
import threading
import uuid

from torrentstream.errors import SessionNotFoundError
from torrentstream.models import Session, SessionState

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    In-memory table of live sessions, keyed by session id.

    Every read and write goes through the lock, so the idle timer, the
    metrics sampler and request handlers can race safely. The registry never
    touches engines, processes or disk: ``destroy`` hands the removed session
    back and the caller does the actual teardown.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions = {}

    def create(self, descriptor, engine, files):
        session_id = uuid.uuid4().hex
        session = Session(
            session_id=session_id,
            descriptor=descriptor,
            engine=engine,
            files=list(files),
        )
        with self._lock:
            self._sessions[session_id] = session
        logger.info(f"Registered session {session_id} with {len(session.files)} media files")
        return session_id

    def get(self, session_id):
        """Returns a snapshot copy of the session."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            return dataclasses.replace(session)

    def update(self, session_id, mutation):
        """Applies ``mutation(session)`` atomically and returns its result."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            return mutation(session)

    def destroy(self, session_id, only_if=None):
        """
        Removes a session and returns it, or None if it was already gone.
        With ``only_if``, the session is removed only when the predicate
        holds at removal time.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if only_if is not None and not only_if(session):
                return None
            del self._sessions[session_id]
            session.state = SessionState.TEARING_DOWN
            return session

    def sessions(self):
        with self._lock:
            return [dataclasses.replace(s) for s in self._sessions.values()]

    def session_ids(self):
        with self._lock:
            return list(self._sessions)

    def __contains__(self, session_id):
        with self._lock:
            return session_id in self._sessions

    def __len__(self):
        with self._lock:
            return len(self._sessions)
