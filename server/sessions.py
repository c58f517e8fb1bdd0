"""Registry of live realtime chat sessions.

Each connected client is tracked by session id with a last-seen time.
Any inbound frame refreshes it; the periodic sweep closes connections
that stayed silent longer than the idle timeout. Removing a session
from the registry always ends it in the store.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from indexer.models import ChatSession

logger = logging.getLogger(__name__)


@dataclass
class LiveSession:
    session_id: str
    website_id: str
    session_token: str
    connection: Any = None
    connected_at: float = field(default_factory=time.monotonic)
    last_seen: float = field(default_factory=time.monotonic)


class SessionRegistry:
    def __init__(self, store, idle_timeout: float = 1800.0,
                 clock: Callable[[], float] = time.monotonic,
                 on_change: Optional[Callable[[int], None]] = None):
        self.store = store
        self.idle_timeout = idle_timeout
        self.clock = clock
        self.on_change = on_change
        self._sessions: Dict[str, LiveSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> Optional[LiveSession]:
        return self._sessions.get(session_id)

    def register(self, session: ChatSession, connection: Any = None) -> LiveSession:
        now = self.clock()
        live = LiveSession(
            session_id=session.id,
            website_id=session.website_id,
            session_token=session.session_token,
            connection=connection,
            connected_at=now,
            last_seen=now,
        )
        self._sessions[session.id] = live
        logger.info(f"Session {session.id} connected for website {session.website_id}")
        self._changed()
        return live

    def touch(self, session_id: str) -> bool:
        live = self._sessions.get(session_id)
        if live is None:
            return False
        live.last_seen = self.clock()
        return True

    async def unregister(self, session_id: str, reason: str = "disconnect") -> bool:
        """Forget a session and end it in the store. False if it was not live."""
        live = self._sessions.pop(session_id, None)
        if live is None:
            return False
        self._changed()
        await self.store.end_session(session_id)
        logger.info(f"Session {session_id} ended ({reason})")
        return True

    async def sweep(self) -> List[str]:
        """End sessions idle for longer than ``idle_timeout``."""
        cutoff = self.clock() - self.idle_timeout
        idle = [s for s in self._sessions.values() if s.last_seen < cutoff]

        ended = []
        for live in idle:
            await self._close_connection(live, code=1001)
            if await self.unregister(live.session_id, reason="idle timeout"):
                ended.append(live.session_id)

        if ended:
            logger.info(f"Idle sweep ended {len(ended)} sessions")
        return ended

    async def close_all(self):
        for session_id in list(self._sessions):
            live = self._sessions.get(session_id)
            if live:
                await self._close_connection(live, code=1001)
            await self.unregister(session_id, reason="shutdown")

    async def _close_connection(self, live: LiveSession, code: int):
        close = getattr(live.connection, "close", None)
        if close is None:
            return
        try:
            await close(code=code)
        except RuntimeError as e:
            # Already closed by the peer
            logger.debug(f"Close of session {live.session_id} skipped: {e}")

    def _changed(self):
        if self.on_change:
            self.on_change(len(self._sessions))
