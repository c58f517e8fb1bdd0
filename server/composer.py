"""Grounded answer composition.

Builds the prompt from retrieved chunks and recent chat history, asks the
completion provider for an answer and reports which pages it was based on.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from indexer.models import ChatMessage, Chunk, Role
from indexer.retriever import Retriever, RetrievalResult

logger = logging.getLogger(__name__)

FALLBACK_ANSWER = (
    "I'm sorry, I encountered an error while processing your question. Please try again."
)
NO_ANSWER = (
    "I don't have enough information about this website to answer that yet. "
    "Please try rephrasing your question or contact the site owner."
)

SYSTEM_INSTRUCTIONS = (
    "You are a helpful AI assistant for this website. Use the provided context "
    "to answer questions accurately and helpfully.\n\n"
    "Instructions:\n"
    "- Answer based primarily on the provided context\n"
    "- If the context doesn't contain relevant information, politely say so\n"
    "- Be conversational and friendly\n"
    "- Keep responses concise but informative\n"
    "- If referencing specific information, you can mention it's from the website"
)

ROLE_LABELS = {
    Role.USER: "User",
    Role.ASSISTANT: "Assistant",
    Role.SYSTEM: "System",
}


@dataclass
class ComposedAnswer:
    answer: str
    sources: List[str] = field(default_factory=list)
    context: RetrievalResult = field(default_factory=RetrievalResult)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "answer": self.answer,
            "sources": list(self.sources),
            "context": {
                "totalSources": self.context.total_sources,
                "similarityThreshold": self.context.threshold_used,
                "documents": [
                    {"url": c.url, "title": c.title, "similarity": c.similarity}
                    for c in self.context.chunks
                ],
            },
        }


def format_context(chunks: Sequence[Chunk]) -> str:
    return "\n\n".join(
        f"Source {i + 1} ({chunk.url}):\n{chunk.content}" for i, chunk in enumerate(chunks)
    )


def format_history(history: Sequence[ChatMessage], window: int) -> str:
    if window <= 0:
        return ""
    recent = list(history)[-window:]
    return "\n".join(f"{ROLE_LABELS[Role(m.role)]}: {m.content}" for m in recent)


def unique_sources(chunks: Sequence[Chunk]) -> List[str]:
    seen = set()
    sources = []
    for chunk in chunks:
        if chunk.url not in seen:
            seen.add(chunk.url)
            sources.append(chunk.url)
    return sources


class ResponseComposer:
    """Answers a question for one website. Never raises."""

    def __init__(self, retriever: Retriever, llm, history_window: int = 10, metrics_hook=None):
        self.retriever = retriever
        self.llm = llm
        self.history_window = history_window
        self.metrics_hook = metrics_hook

    def build_prompt(self, query: str, chunks: Sequence[Chunk],
                     history: Sequence[ChatMessage] = ()) -> str:
        context_block = format_context(chunks) or "No relevant context found."
        history_block = format_history(history, self.history_window)

        sections = [SYSTEM_INSTRUCTIONS, f"Context from website:\n{context_block}"]
        if history_block:
            sections.append(f"Previous conversation:\n{history_block}")
        sections.append(f"Current question: {query}")
        sections.append("Please provide a helpful response based on the context above:")
        return "\n\n".join(sections)

    async def answer(self,
                     query: str,
                     website_id: str,
                     history: Sequence[ChatMessage] = (),
                     limit: Optional[int] = None,
                     threshold: Optional[float] = None,
                     include_context: bool = True) -> ComposedAnswer:
        try:
            context = await self.retriever.retrieve(query, website_id, limit=limit, threshold=threshold)
            prompt = self.build_prompt(query, context.chunks, history)
            text = await self.llm.complete(prompt)
        except Exception as e:
            logger.error(f"Error generating answer for website {website_id}: {e}")
            self._record("error")
            fallback_threshold = self.retriever.default_threshold if threshold is None else threshold
            return ComposedAnswer(answer=FALLBACK_ANSWER, sources=[],
                                  context=RetrievalResult.empty(fallback_threshold))

        if not text or not text.strip():
            logger.warning(f"Empty completion for website {website_id}")
            text = NO_ANSWER
            self._record("empty")
        else:
            self._record("grounded" if context.chunks else "no_context")

        return ComposedAnswer(
            answer=text,
            sources=unique_sources(context.chunks),
            context=context if include_context else RetrievalResult.empty(context.threshold_used),
        )

    def _record(self, outcome: str):
        if self.metrics_hook:
            self.metrics_hook(outcome)
