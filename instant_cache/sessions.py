"""
Per-key load sessions with supersession.

When a new load starts for a key that already has one in flight, the older
session is cancelled and only the newest may write or surface its result.
"""
import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from .cancellation import CancellationToken

logger = logging.getLogger("cache.sessions")


@dataclass
class LoadSession:
    """Tracks one in-progress load for a key."""
    key: str
    sequence: int
    started_at: float
    token: CancellationToken = field(default_factory=CancellationToken)
    task: Optional["asyncio.Future[Any]"] = None
    _unlink: Callable[[], None] = field(default=lambda: None, repr=False)

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled


class SessionRegistry:
    """
    Holds at most one authoritative session per key.

    Pattern:
    - start() cancels the previous session for the key, if any
    - run() executes the producer as a task the session can abort
    - finish() releases the slot only if the session is still current

    Sessions are ordered by a monotonic sequence number, so two loads started
    in the same loop tick are still strictly ordered: the later call wins.
    """

    def __init__(self):
        self._sessions: Dict[str, LoadSession] = {}
        self._sequence = itertools.count(1)

    def start(self, key: str, parent: Optional[CancellationToken] = None) -> LoadSession:
        """Open a new session for key, superseding any in-flight one."""
        previous = self._sessions.get(key)
        if previous is not None:
            logger.debug(
                f"Superseding load for {key} "
                f"(session {previous.sequence} -> next)"
            )
            previous.token.cancel()

        session = LoadSession(
            key=key,
            sequence=next(self._sequence),
            started_at=asyncio.get_running_loop().time(),
        )
        session._unlink = session.token.link(parent)
        self._sessions[key] = session
        return session

    async def run(self, session: LoadSession, producer: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run producer under the session's cancellation token.

        Raises:
            CancellationError: If the session was cancelled before the producer started
            asyncio.CancelledError: If the session was cancelled while the producer ran
            Exception: Any error from producer is propagated
        """
        session.token.raise_if_cancelled(session.key)
        task = asyncio.ensure_future(producer())
        session.task = task
        remove = session.token.add_callback(task.cancel)
        try:
            return await task
        finally:
            remove()

    def is_current(self, session: LoadSession) -> bool:
        return self._sessions.get(session.key) is session and not session.cancelled

    def has_session(self, key: str) -> bool:
        return key in self._sessions

    def finish(self, session: LoadSession) -> None:
        """Release the session's slot if it still owns it."""
        session._unlink()
        if self._sessions.get(session.key) is session:
            del self._sessions[session.key]

    def cancel(self, key: str) -> bool:
        """
        Cancel the in-flight session for key.

        Returns:
            True if a session was found and cancelled
        """
        session = self._sessions.pop(key, None)
        if session is None:
            return False
        session.token.cancel()
        logger.debug(f"Cancelled load for {key}")
        return True

    def cancel_all(self) -> int:
        """Cancel every in-flight session. Returns the number cancelled."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            session.token.cancel()
        return len(sessions)

    @property
    def active_sessions(self) -> int:
        """Number of currently in-flight loads."""
        return len(self._sessions)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "active_sessions": len(self._sessions),
            "active_keys": list(self._sessions.keys()),
        }
