"""Storage, embeddings and retrieval for SiteChat."""

from .models import (
    ChatMessage,
    ChatSession,
    Chunk,
    ChunkMetadata,
    CrawlOptions,
    CrawlStatus,
    MessageMetadata,
    PendingChunk,
    Role,
    Website,
    WebsiteSettings,
)

__all__ = [
    'ChatMessage',
    'ChatSession',
    'Chunk',
    'ChunkMetadata',
    'CrawlOptions',
    'CrawlStatus',
    'MessageMetadata',
    'PendingChunk',
    'Role',
    'Website',
    'WebsiteSettings',
]
