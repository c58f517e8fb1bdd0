"""Chat turns and live session tracking."""

from unittest.mock import AsyncMock, Mock

import pytest

from indexer.models import ChunkMetadata, PendingChunk, Role, WebsiteSettings
from indexer.retriever import Retriever
from server.chat import ChatService
from server.composer import FALLBACK_ANSWER, ResponseComposer
from server.sessions import SessionRegistry

from helpers import FakeLLM, run


@pytest.fixture
def llm():
    return FakeLLM(reply="The starter plan is $10 per month.")


@pytest.fixture
def chat(store, embeddings, llm):
    composer = ResponseComposer(Retriever(store, embeddings), llm)
    return ChatService(store, composer)


@pytest.fixture
def indexed(store, website):
    run(store.insert_chunks([PendingChunk(
        website_id=website.id,
        content="Starter plan is $10 per month.",
        url="https://example.com/pricing",
        metadata=ChunkMetadata(source_domain=website.domain, chunk_index=0, total_chunks=1),
        embedding=[1.0, 0.0, 0.0],
    )]))
    return website


class TestChatService:

    def test_turns_are_persisted(self, store, chat, indexed):
        session = run(chat.resolve_session(indexed, None, "10.0.0.1", "pytest"))

        reply = run(chat.handle_message(indexed, session, "What is the pricing?"))

        assert reply.content == "The starter plan is $10 per month."
        assert reply.sources == ["https://example.com/pricing"]
        assert reply.context_sources == 1
        assert reply.session_id == session.session_token

        stored = run(store.recent_messages(session.id))
        assert [(m.role, m.content) for m in stored] == [
            (Role.USER, "What is the pricing?"),
            (Role.ASSISTANT, "The starter plan is $10 per month."),
        ]
        assert stored[1].metadata.sources == ["https://example.com/pricing"]
        assert stored[1].metadata.context_used == 1

    def test_history_excludes_current_turn(self, store, chat, indexed, llm):
        session = run(chat.resolve_session(indexed))
        run(chat.handle_message(indexed, session, "What is the pricing?"))
        run(chat.handle_message(indexed, session, "And for teams?"))

        first, second = llm.prompts
        assert "Previous conversation:" not in first
        assert "Previous conversation:\nUser: What is the pricing?\nAssistant: The starter plan" in second
        assert "User: And for teams?" not in second

    def test_history_window_limits_prompt(self, store, embeddings, llm, indexed):
        composer = ResponseComposer(Retriever(store, embeddings), llm, history_window=2)
        chat = ChatService(store, composer, history_window=2)
        session = run(chat.resolve_session(indexed))
        for i in range(3):
            run(chat.handle_message(indexed, session, f"question {i}"))

        last_prompt = llm.prompts[-1]
        assert "question 0" not in last_prompt
        assert "User: question 1\nAssistant:" in last_prompt

    def test_resolve_session_reuses_known_token(self, chat, website):
        session = run(chat.resolve_session(website))
        again = run(chat.resolve_session(website, session.session_token))
        fresh = run(chat.resolve_session(website, "never-issued"))

        assert again.id == session.id
        assert fresh.id != session.id
        assert fresh.session_token != "never-issued"

    def test_session_token_not_shared_across_websites(self, chat, website, other_website):
        session = run(chat.resolve_session(website))
        other = run(chat.resolve_session(other_website, session.session_token))
        assert other.id != session.id
        assert other.website_id == other_website.id

    def test_website_overrides_retrieval_params(self, chat, store):
        tuned = run(store.create_website(
            "tuned.test", "Tuned", settings=WebsiteSettings(top_k=2, similarity_threshold=0.4)
        ))
        plain = run(store.create_website("plain.test", "Plain"))

        assert chat.retrieval_params(tuned) == (2, 0.4)
        assert chat.retrieval_params(plain) == (5, 0.7)

    def test_welcome_message(self, chat, website, store):
        assert "Example Co" in chat.welcome_message(website)
        custom = run(store.create_website("hi.test", "Hi", settings=WebsiteSettings(welcome_message="Howdy")))
        assert chat.welcome_message(custom) == "Howdy"

    def test_llm_failure_stored_as_fallback(self, store, embeddings, indexed):
        composer = ResponseComposer(Retriever(store, embeddings), FakeLLM(error=RuntimeError("quota")))
        chat = ChatService(store, composer)
        session = run(chat.resolve_session(indexed))

        reply = run(chat.handle_message(indexed, session, "pricing?"))

        assert reply.content == FALLBACK_ANSWER
        assert reply.sources == []
        assert run(store.recent_messages(session.id))[-1].content == FALLBACK_ANSWER

    def test_reply_serialization(self, chat, indexed):
        session = run(chat.resolve_session(indexed))
        data = run(chat.handle_message(indexed, session, "pricing")).to_dict()

        assert data["type"] == "response"
        assert data["sessionId"] == session.session_token
        assert data["metadata"] == {"sources": ["https://example.com/pricing"], "contextSources": 1}
        assert isinstance(data["timestamp"], int)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestSessionRegistry:

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def session(self, store, website):
        return run(store.create_session(website.id))

    def test_register_and_unregister(self, store, website, session, clock):
        changes = []
        registry = SessionRegistry(store, idle_timeout=60, clock=clock, on_change=changes.append)

        registry.register(session)
        assert session.id in registry
        assert len(registry) == 1

        assert run(registry.unregister(session.id)) is True
        assert run(registry.unregister(session.id)) is False
        assert changes == [1, 0]
        assert run(store.get_session(website.id, session.session_token)) is None

    def test_sweep_closes_idle_sessions(self, store, website, session, clock):
        connection = Mock()
        connection.close = AsyncMock()
        registry = SessionRegistry(store, idle_timeout=60, clock=clock)
        registry.register(session, connection)

        clock.now += 30
        assert run(registry.sweep()) == []

        clock.now += 61
        assert run(registry.sweep()) == [session.id]
        connection.close.assert_awaited_once_with(code=1001)
        assert session.id not in registry
        assert run(store.get_session(website.id, session.session_token)) is None

    def test_touch_keeps_session_alive(self, store, session, clock):
        registry = SessionRegistry(store, idle_timeout=60, clock=clock)
        registry.register(session)

        clock.now += 50
        assert registry.touch(session.id) is True
        clock.now += 50
        assert run(registry.sweep()) == []
        assert registry.touch("unknown") is False

    def test_close_all(self, store, website, clock):
        registry = SessionRegistry(store, clock=clock)
        sessions = [run(store.create_session(website.id)) for _ in range(3)]
        for s in sessions:
            registry.register(s)

        run(registry.close_all())

        assert len(registry) == 0
        assert all(run(store.get_session(website.id, s.session_token)) is None for s in sessions)

    def test_already_closed_connection_ignored(self, store, session, clock):
        connection = Mock()
        connection.close = AsyncMock(side_effect=RuntimeError("already closed"))
        registry = SessionRegistry(store, idle_timeout=1, clock=clock)
        registry.register(session, connection)

        clock.now += 5
        assert run(registry.sweep()) == [session.id]
