"""
Bounded in-memory conversation history, one transcript per session id.

A single :class:`SessionHistoryStore` is created by the application and handed to whoever runs an
exchange.  Reads and writes for one session id are serialised by a per-session lock; different
sessions never wait on each other.  Each transcript keeps only the most recent ``limit`` turns,
evicting the oldest first.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import (
    AsyncIterator,
    Deque,
    Dict,
    List,
)

from agentdesk.core.schema import ChatTurn

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 20


class SessionHandle:
    """Access to one session's transcript while its lock is held."""

    def __init__(self, store: "SessionHistoryStore", session_id: str) -> None:
        self._store = store
        self.session_id = session_id

    def history(self) -> List[ChatTurn]:
        return self._store._snapshot(self.session_id)  # pylint: disable=protected-access

    def record(self, user_message: str, answer: str) -> int:
        """Append one user/model exchange and return the resulting history length."""
        return self._store._append(  # pylint: disable=protected-access
            self.session_id,
            [ChatTurn(role="user", content=user_message), ChatTurn(role="model", content=answer)],
        )


class SessionHistoryStore:
    """Process-wide map of session id -> bounded list of :class:`ChatTurn`."""

    def __init__(self, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self._histories: Dict[str, Deque[ChatTurn]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _locked(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_id] -= 1
            # locks of sessions without history are dropped once nobody holds or awaits them
            if not self._lock_users[session_id]:
                del self._lock_users[session_id]
                if session_id not in self._histories:
                    del self._locks[session_id]

    def _snapshot(self, session_id: str) -> List[ChatTurn]:
        return list(self._histories.get(session_id, ()))

    def _append(self, session_id: str, turns: List[ChatTurn]) -> int:
        history = self._histories.setdefault(session_id, deque(maxlen=self.limit))
        history.extend(turns)
        logger.debug("Session %s now holds %d turn(s)", session_id, len(history))
        return len(history)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    @asynccontextmanager
    async def session(self, session_id: str) -> AsyncIterator[SessionHandle]:
        """Hold *session_id*'s lock for a whole read-run-write exchange."""
        async with self._locked(session_id):
            yield SessionHandle(self, session_id)

    async def history(self, session_id: str) -> List[ChatTurn]:
        async with self._locked(session_id):
            return self._snapshot(session_id)

    async def append(self, session_id: str, *turns: ChatTurn) -> int:
        async with self._locked(session_id):
            return self._append(session_id, list(turns))

    async def clear(self, session_id: str) -> bool:
        """Forget *session_id*; returns whether it existed."""
        async with self._locked(session_id):
            existed = self._histories.pop(session_id, None) is not None
        return existed

    def session_ids(self) -> List[str]:
        return list(self._histories)
