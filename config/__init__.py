"""Configuration package for SiteChat."""

from .database import (
    DatabaseConfig,
    DatabaseFactory,
    DatabaseType,
    StoreAdapter,
)
from .settings import (
    AppSettings,
    CrawlConfig,
    EmbeddingConfig,
    LLMConfig,
    RetrievalConfig,
    SessionConfig,
)

__all__ = [
    'DatabaseConfig',
    'DatabaseFactory',
    'DatabaseType',
    'StoreAdapter',
    'AppSettings',
    'CrawlConfig',
    'EmbeddingConfig',
    'LLMConfig',
    'RetrievalConfig',
    'SessionConfig',
]
