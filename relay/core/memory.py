"""In-memory conversation history, keyed by client-supplied session id.

Nothing is persisted: sessions live until they sit idle for longer than the
session timeout and a sweep removes them. Each session keeps only the most
recent turns, trimmed so the retained window starts on a user turn.
"""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, List, Optional


logger = logging.getLogger("ollama_gateway.memory")

USER = "user"
ASSISTANT = "assistant"


@dataclass(frozen=True)
class Turn:
    role: str
    content: str


@dataclass
class Session:
    session_id: str
    turns: List[Turn] = field(default_factory=list)
    last_access: float = 0.0


class SessionStore:
    def __init__(
        self,
        history_length: int,
        session_timeout: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.history_length = history_length
        self.session_timeout = session_timeout
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def get_or_create(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            # Not stored until a turn is appended.
            session = Session(session_id=session_id, last_access=self._clock())
        return session

    def append_user_turn(self, session_id: str, content: str) -> Session:
        return self._append(session_id, Turn(USER, content))

    def append_assistant_turn(self, session_id: str, content: str) -> Session:
        return self._append(session_id, Turn(ASSISTANT, content))

    def discard_pending_user_turn(self, session_id: str) -> None:
        """Drop a trailing user turn that never got a reply."""
        session = self._sessions.get(session_id)
        if session is None or not session.turns or session.turns[-1].role != USER:
            return
        session.turns.pop()
        if not session.turns:
            del self._sessions[session_id]

    def sweep(self, now: Optional[float] = None) -> int:
        """Remove idle sessions; ids with an exchange in progress are kept."""
        now = self._clock() if now is None else now
        expired = [
            session_id
            for session_id, session in self._sessions.items()
            if now - session.last_access > self.session_timeout
            and session_id not in self._lock_users
        ]
        for session_id in expired:
            del self._sessions[session_id]
        if expired:
            logger.info("Swept %s idle session(s), %s active", len(expired), len(self._sessions))
        return len(expired)

    def is_busy(self, session_id: str) -> bool:
        return session_id in self._lock_users

    @asynccontextmanager
    async def lock(self, session_id: str) -> AsyncIterator[None]:
        """Serialize whole exchanges for one session id.

        The lock lives as long as someone holds or waits for it, counted per
        id, so a woken waiter always shares the lock with later arrivals.
        """
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_id] -= 1
            if not self._lock_users[session_id]:
                del self._lock_users[session_id]
                del self._locks[session_id]

    def _append(self, session_id: str, turn: Turn) -> Session:
        session = self.get_or_create(session_id)
        session.turns.append(turn)
        self._trim(session)
        session.last_access = self._clock()
        self._sessions[session_id] = session
        return session

    def _trim(self, session: Session) -> None:
        turns = session.turns
        if len(turns) <= self.history_length:
            return
        del turns[: len(turns) - self.history_length]
        # Keep the window starting on a user turn, unless that would empty it.
        if len(turns) > 1 and turns[0].role == ASSISTANT:
            del turns[0]


async def run_sweeper(store: SessionStore, interval: float) -> None:
    """Sweep idle sessions forever; cancel the task to stop."""
    while True:
        await asyncio.sleep(interval)
        store.sweep()
