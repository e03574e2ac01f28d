"""Per-connection identity bookkeeping for the MCP server."""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from typing import Any
from weakref import WeakKeyDictionary

from utils import now_iso


@dataclass(frozen=True, slots=True)
class SessionState:
    session_id: str
    user_id: str
    connected_at: str


class SessionRegistry:
    """Maps live MCP sessions to the identity their prompts are stored under.

    Entries are added when a session is first seen. FastMCP exposes no
    disconnect hook, so entries are keyed weakly: once the transport tears a
    session down and drops it, its entry goes with it.
    """

    def __init__(self, user_prefix: str = "session") -> None:
        self._user_prefix = user_prefix
        self._sessions: WeakKeyDictionary[Any, SessionState] = WeakKeyDictionary()
        self._lock = threading.RLock()

    def connect(self, session: Any, user_id: str | None = None) -> SessionState:
        session_id = uuid.uuid4().hex
        state = SessionState(
            session_id=session_id,
            user_id=user_id or f"{self._user_prefix}-{session_id}",
            connected_at=now_iso(),
        )
        with self._lock:
            self._sessions[session] = state
        return state

    def get(self, session: Any) -> SessionState | None:
        with self._lock:
            return self._sessions.get(session)

    def resolve(self, session: Any) -> SessionState:
        """Existing state for ``session``, registering it on first sight."""
        with self._lock:
            state = self._sessions.get(session)
            return state if state is not None else self.connect(session)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
