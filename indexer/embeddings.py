# SiteChat Embeddings Module
# Turns text into fixed-length vectors for indexing and retrieval

import asyncio
import logging
from typing import Callable, List, Optional

from openai import AsyncOpenAI
from sentence_transformers import SentenceTransformer

logger = logging.getLogger(__name__)


class SentenceTransformerBackend:
    """Local embedding model; encoding runs off the event loop."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model_name = model_name
        self.model: Optional[SentenceTransformer] = None

    def _load_model(self) -> SentenceTransformer:
        if self.model is None:
            logger.info(f"Loading embedding model: {self.model_name}")
            self.model = SentenceTransformer(self.model_name)
            logger.info(
                f"Model loaded successfully. Embedding dimension: "
                f"{self.model.get_sentence_embedding_dimension()}"
            )
        return self.model

    def _encode(self, text: str) -> List[float]:
        return self._load_model().encode(text, convert_to_numpy=True).tolist()

    async def embed(self, text: str) -> List[float]:
        return await asyncio.get_running_loop().run_in_executor(None, self._encode, text)


class OpenAIEmbeddingBackend:
    """Hosted embeddings through an OpenAI-compatible API."""

    def __init__(self, api_key: Optional[str], model_name: str = "text-embedding-3-small",
                 base_url: Optional[str] = None, dimensions: Optional[int] = None):
        self.model_name = model_name
        self.dimensions = dimensions
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def embed(self, text: str) -> List[float]:
        kwargs = {"model": self.model_name, "input": text}
        if self.dimensions:
            kwargs["dimensions"] = self.dimensions
        response = await self.client.embeddings.create(**kwargs)
        return list(response.data[0].embedding)


class EmbeddingManager:
    """Embeds text for indexing and queries.

    Never raises: a failed embedding comes back as an empty list and is
    logged, so callers can skip the item and carry on.
    """

    def __init__(self, backend, dimensions: Optional[int] = None,
                 batch_size: int = 5, batch_delay: float = 0.1,
                 on_failure: Optional[Callable[[], None]] = None):
        """
        Args:
            backend: object with ``async embed(text) -> List[float]``
            dimensions: expected vector length; mismatching vectors are dropped
            batch_size: how many texts are embedded concurrently
            batch_delay: pause in seconds between consecutive sub-batches
            on_failure: called once for every text that could not be embedded
        """
        self.backend = backend
        self.dimensions = dimensions
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay
        self.on_failure = on_failure
        self.failures = 0

    async def embed(self, text: str) -> List[float]:
        """Embed a single text; ``[]`` on any failure."""
        try:
            vector = await self.backend.embed(text)
        except Exception as e:
            self._failed()
            logger.error(f"Error generating embedding: {e}")
            return []

        vector = [float(v) for v in (vector or [])]
        if not vector:
            self._failed()
            logger.error("Embedding provider returned an empty vector")
            return []
        if self.dimensions and len(vector) != self.dimensions:
            self._failed()
            logger.error(
                f"Embedding has {len(vector)} dimensions, expected {self.dimensions}"
            )
            return []
        return vector

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed many texts, ``batch_size`` at a time.

        The result is aligned with ``texts``; failed items are ``[]``.
        """
        embeddings: List[List[float]] = []

        for start in range(0, len(texts), self.batch_size):
            if start and self.batch_delay:
                await asyncio.sleep(self.batch_delay)

            batch = texts[start:start + self.batch_size]
            embeddings.extend(await asyncio.gather(*(self.embed(text) for text in batch)))

        return embeddings

    def _failed(self):
        self.failures += 1
        if self.on_failure:
            self.on_failure()
