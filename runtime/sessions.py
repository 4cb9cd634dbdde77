"""In-memory session store."""

from __future__ import annotations

import logging
import secrets
import threading
import time

from contracts.api import DEFAULT_CAPABILITIES, SessionInfo

logger = logging.getLogger(__name__)


def new_session_id() -> str:
    return f"{int(time.time() * 1000):x}{secrets.token_hex(6)}"


class SessionStore:
    """Session id → ``SessionInfo``.  Sessions are never expired."""

    def __init__(self) -> None:
        self._sessions: dict[str, SessionInfo] = {}
        self._lock = threading.Lock()

    def create(self, tools: list[str] | None = None) -> SessionInfo:
        """Start a session advertising *tools*, or the default capabilities."""
        session = SessionInfo(
            session_id=new_session_id(),
            capabilities=list(tools) if tools else list(DEFAULT_CAPABILITIES),
        )
        with self._lock:
            self._sessions[session.session_id] = session
        logger.info("Session %s initialised", session.session_id)
        return session

    def get(self, session_id: str) -> SessionInfo | None:
        with self._lock:
            return self._sessions.get(session_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
