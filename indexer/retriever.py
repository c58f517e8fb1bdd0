"""Tenant-scoped retrieval of relevant chunks for a query."""

import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

from .models import Chunk

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 5
DEFAULT_THRESHOLD = 0.7


@dataclass
class RetrievalResult:
    """Chunks found for a query, best first."""
    chunks: List[Chunk] = field(default_factory=list)
    total_sources: int = 0
    threshold_used: float = DEFAULT_THRESHOLD

    @classmethod
    def empty(cls, threshold: float) -> 'RetrievalResult':
        return cls(chunks=[], total_sources=0, threshold_used=threshold)


class Retriever:
    """Embeds a query and runs thresholded similarity search for one website."""

    def __init__(self, store, embeddings, default_limit: int = DEFAULT_LIMIT,
                 default_threshold: float = DEFAULT_THRESHOLD, metrics_hook=None):
        self.store = store
        self.embeddings = embeddings
        self.default_limit = default_limit
        self.default_threshold = default_threshold
        self.metrics_hook = metrics_hook

    async def retrieve(self, query: str, website_id: str, limit: Optional[int] = None,
                       threshold: Optional[float] = None) -> RetrievalResult:
        """Return up to ``limit`` chunks with similarity >= ``threshold``.

        Embedding or store failures produce an empty result instead of an
        exception.
        """
        limit = self.default_limit if limit is None else limit
        threshold = self.default_threshold if threshold is None else threshold
        start = time.time()

        try:
            query_vector = await self.embeddings.embed(query)
            if not query_vector:
                logger.warning(f"No query embedding for website {website_id}; returning no context")
                return RetrievalResult.empty(threshold)

            chunks = await self.store.similarity_search(
                website_id, query_vector, limit=limit, threshold=threshold
            )
        except Exception as e:
            logger.error(f"Error retrieving context for website {website_id}: {e}")
            return RetrievalResult.empty(threshold)

        if self.metrics_hook:
            self.metrics_hook(len(chunks), time.time() - start)

        logger.debug(f"Retrieved {len(chunks)} chunks for website {website_id} (threshold {threshold})")
        return RetrievalResult(chunks=chunks, total_sources=len(chunks), threshold_used=threshold)
