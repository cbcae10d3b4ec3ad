from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from wizard_engine.form_engine.errors import WizardEngineError
from wizard_engine.form_engine.session import FormSession

logger = logging.getLogger("wizard_engine.registry")


class SessionNotFoundError(WizardEngineError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Unknown or expired session: {session_id}")
        self.session_id = session_id


class SessionRegistry:
    """
    In-memory sessions keyed by id, expiring `ttl_s` after their last touch.

    When a task group is attached each session's debounce consumers run in it.
    """

    def __init__(self, *, ttl_s: int = 3600, max_sessions: int = 500) -> None:
        self.ttl_s = max(1, int(ttl_s))
        self.max_sessions = max(1, int(max_sessions))
        self._sessions: Dict[str, FormSession] = {}
        self._task_group: Optional[Any] = None

    def attach(self, task_group: Any) -> None:
        self._task_group = task_group

    def __len__(self) -> int:
        return len(self._sessions)

    def _expired(self, session: FormSession, now: float) -> bool:
        return now >= session.touched_at + self.ttl_s

    async def _evict(self) -> None:
        now = time.time()
        for sid in [sid for sid, s in self._sessions.items() if self._expired(s, now)]:
            await self.remove(sid)
        while len(self._sessions) >= self.max_sessions:
            oldest = min(self._sessions.values(), key=lambda s: s.touched_at)
            logger.info("evicting session %s (registry full)", oldest.id)
            await self.remove(oldest.id)

    async def add(self, session: FormSession) -> FormSession:
        await self._evict()
        self._sessions[session.id] = session
        if self._task_group is not None:
            self._task_group.start_soon(session.run)
        return session

    async def get(self, session_id: str) -> FormSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if self._expired(session, time.time()):
            await self.remove(session_id)
            raise SessionNotFoundError(session_id)
        session.touched_at = time.time()
        return session

    async def remove(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        await session.aclose()
        return True

    async def close_all(self) -> None:
        for sid in list(self._sessions):
            await self.remove(sid)
