"""Session registry for the tcp-speedtest listener.

Maps session id ("ip:port") to the connection's stream and display state.
It is the only structure shared between the accept loop and the connection
threads; each entry is written by exactly one connection thread.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime

from common.connection import SessionNotFoundError
from common.io import MarkerStream
from common.protocol import Phase

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionEntry:
    """One accepted connection and the progress of its current session."""

    session_id: str
    peer_ip: str
    peer_port: int
    stream: MarkerStream
    connected_at: datetime = field(default_factory=datetime.now)
    phase: Phase = Phase.IDLE
    iteration_index: int = 0
    iteration_target: int = 0
    tests_completed: int = 0


class SessionRegistry:
    """Thread-safe map of session id to SessionEntry."""

    def __init__(self) -> None:
        self._entries: dict[str, SessionEntry] = {}
        self._lock = threading.Lock()

    def add(self, entry: SessionEntry) -> None:
        """Register a new connection. Raises ValueError if the id is taken."""
        with self._lock:
            if entry.session_id in self._entries:
                raise ValueError(f"Session {entry.session_id} already registered")
            self._entries[entry.session_id] = entry
        logger.debug(f"Registered session {entry.session_id}")

    def get(self, session_id: str) -> SessionEntry:
        """Look up a session.

        Raises:
            SessionNotFoundError: If no such session is registered.
        """
        with self._lock:
            try:
                return self._entries[session_id]
            except KeyError:
                raise SessionNotFoundError(f"No session registered for {session_id}")

    def update(self, session_id: str, **changes: object) -> SessionEntry:
        """Replace fields of a registered entry. Returns the new entry."""
        with self._lock:
            if session_id not in self._entries:
                raise SessionNotFoundError(f"No session registered for {session_id}")
            entry = replace(self._entries[session_id], **changes)  # type: ignore[arg-type]
            self._entries[session_id] = entry
            return entry

    def remove(self, session_id: str) -> SessionEntry | None:
        """Deregister a session. Returns the removed entry, if any."""
        with self._lock:
            entry = self._entries.pop(session_id, None)
        if entry is not None:
            logger.debug(f"Deregistered session {session_id}")
        return entry

    def snapshot(self) -> list[SessionEntry]:
        """Return the current entries ordered by connect time."""
        with self._lock:
            entries = list(self._entries.values())
        return sorted(entries, key=lambda e: e.connected_at)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._entries
