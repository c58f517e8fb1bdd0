"""Chat turn handling shared by the HTTP and WebSocket endpoints."""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from indexer.models import ChatSession, MessageMetadata, Role, Website
from .composer import ResponseComposer

logger = logging.getLogger(__name__)

DEFAULT_WELCOME = "Hello! I'm here to help you with questions about {name}. How can I assist you today?"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ChatReply:
    content: str
    session_id: str
    sources: List[str] = field(default_factory=list)
    context_sources: int = 0
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "response",
            "content": self.content,
            "sessionId": self.session_id,
            "timestamp": self.timestamp,
            "metadata": {
                "sources": list(self.sources),
                "contextSources": self.context_sources,
            },
        }


class ChatService:
    """Stores turns, trims history and asks the composer for answers."""

    def __init__(self, store, composer: ResponseComposer, history_window: int = 10,
                 default_top_k: int = 5, default_threshold: float = 0.7):
        self.store = store
        self.composer = composer
        self.history_window = history_window
        self.default_top_k = default_top_k
        self.default_threshold = default_threshold

    def retrieval_params(self, website: Website) -> Tuple[int, float]:
        """Website overrides for top-k and threshold, else service defaults."""
        settings = website.settings
        limit = settings.top_k if settings.top_k is not None else self.default_top_k
        threshold = (settings.similarity_threshold
                     if settings.similarity_threshold is not None else self.default_threshold)
        return limit, threshold

    def welcome_message(self, website: Website) -> str:
        return website.settings.welcome_message or DEFAULT_WELCOME.format(name=website.name)

    async def resolve_session(self, website: Website, session_token: Optional[str] = None,
                              user_ip: Optional[str] = None,
                              user_agent: Optional[str] = None) -> ChatSession:
        """Return the website's active session for ``session_token`` or start a new one."""
        if session_token:
            session = await self.store.get_session(website.id, session_token)
            if session:
                return session
        session = await self.store.create_session(website.id, None, user_ip, user_agent)
        logger.info(f"Created chat session {session.id} for website {website.id}")
        return session

    async def handle_message(self, website: Website, session: ChatSession, message: str) -> ChatReply:
        """Record the user turn, compose an answer and record the assistant turn."""
        user_turn = await self.store.add_message(session.id, website.id, Role.USER, message)

        history = []
        if self.history_window > 0:
            recent = await self.store.recent_messages(session.id, self.history_window + 1)
            history = [m for m in recent if m.id != user_turn.id][-self.history_window:]

        limit, threshold = self.retrieval_params(website)
        composed = await self.composer.answer(
            message, website.id, history, limit=limit, threshold=threshold
        )

        await self.store.add_message(
            session.id, website.id, Role.ASSISTANT, composed.answer,
            MessageMetadata(sources=composed.sources, context_used=composed.context.total_sources)
        )

        return ChatReply(
            content=composed.answer,
            session_id=session.session_token,
            sources=composed.sources,
            context_sources=composed.context.total_sources,
        )
