"""Text chunking for SiteChat.

Splits page text into overlapping chunks, preferring paragraph, line,
sentence and word boundaries before falling back to single characters.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_SEPARATORS = ["\n\n", "\n", ". ", " ", ""]


@dataclass
class TextChunk:
    """One piece of a page with its position in the page."""
    content: str
    chunk_index: int
    total_chunks: int


class RecursiveTextSplitter:
    """Recursive character splitter.

    Text is cut on the first separator that occurs in it; pieces that are
    still too long are cut again with the next separator. Small pieces are
    then merged back up to ``chunk_size`` characters, carrying up to
    ``chunk_overlap`` characters of the previous chunk into the next one.
    """

    def __init__(self,
                 chunk_size: int = 1000,
                 chunk_overlap: int = 200,
                 separators: Optional[Sequence[str]] = None):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValueError("chunk_overlap must be >= 0 and smaller than chunk_size")

        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.separators = list(separators) if separators is not None else list(DEFAULT_SEPARATORS)

    def split_text(self, text: str) -> List[str]:
        """Split ``text`` into chunks of at most ``chunk_size`` characters."""
        return self._split(text, self.separators)

    def create_chunks(self, text: str) -> List[TextChunk]:
        """Split ``text`` and number the pieces."""
        pieces = self.split_text(text)
        return [
            TextChunk(content=piece, chunk_index=i, total_chunks=len(pieces))
            for i, piece in enumerate(pieces)
        ]

    def _split(self, text: str, separators: List[str]) -> List[str]:
        separator = separators[-1] if separators else ""
        remaining: List[str] = []
        for i, candidate in enumerate(separators):
            if candidate == "":
                separator = candidate
                break
            if candidate in text:
                separator = candidate
                remaining = separators[i + 1:]
                break

        splits = [s for s in (text.split(separator) if separator else list(text)) if s]

        chunks: List[str] = []
        short: List[str] = []
        for piece in splits:
            if len(piece) < self.chunk_size:
                short.append(piece)
                continue

            if short:
                chunks.extend(self._merge(short, separator))
                short = []
            if remaining:
                chunks.extend(self._split(piece, remaining))
            else:
                chunks.append(piece)

        if short:
            chunks.extend(self._merge(short, separator))
        return chunks

    def _merge(self, splits: List[str], separator: str) -> List[str]:
        sep_len = len(separator)
        docs: List[str] = []
        current: List[str] = []
        total = 0

        for piece in splits:
            piece_len = len(piece)
            if total + piece_len + (sep_len if current else 0) > self.chunk_size:
                if total > self.chunk_size:
                    logger.warning(
                        f"Created a chunk of size {total}, which is longer than {self.chunk_size}"
                    )
                if current:
                    doc = self._join(current, separator)
                    if doc is not None:
                        docs.append(doc)
                    # Drop leading pieces until what is left fits as overlap
                    while total > self.chunk_overlap or (
                        total + piece_len + (sep_len if current else 0) > self.chunk_size
                        and total > 0
                    ):
                        total -= len(current[0]) + (sep_len if len(current) > 1 else 0)
                        current.pop(0)

            current.append(piece)
            total += piece_len + (sep_len if len(current) > 1 else 0)

        doc = self._join(current, separator)
        if doc is not None:
            docs.append(doc)
        return docs

    @staticmethod
    def _join(pieces: List[str], separator: str) -> Optional[str]:
        text = separator.join(pieces).strip()
        return text or None
