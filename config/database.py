"""Database configuration and store factory for SiteChat.

The store is built explicitly at service start-up and closed at shutdown.
Callers receive the adapter through the service container instead of a
process-wide lookup.
"""

import os
import logging
from typing import Union, Optional
from enum import Enum
from pydantic import BaseModel, Field

from indexer.postgres_adapter import PostgresAdapter, PostgresConfig
from indexer.sqlite_adapter import SQLiteAdapter

logger = logging.getLogger(__name__)

StoreAdapter = Union[PostgresAdapter, SQLiteAdapter]


class DatabaseType(str, Enum):
    """Supported database types."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"


class DatabaseConfig(BaseModel):
    """Database configuration."""
    type: DatabaseType = Field(default=DatabaseType.SQLITE, description="Database type")

    sqlite_path: str = Field(default="sitechat.db", description="SQLite database path")
    postgres: PostgresConfig = Field(default_factory=PostgresConfig, description="PostgreSQL configuration")

    # Every stored chunk embedding must have exactly this many components
    embedding_dimensions: int = Field(default=384, ge=1, description="Embedding vector length")

    @classmethod
    def from_env(cls) -> 'DatabaseConfig':
        """Create configuration from environment variables."""
        db_type = os.getenv('SITECHAT_DB_TYPE', 'sqlite').lower()
        dimensions = int(os.getenv('EMBEDDING_DIMENSIONS', '384'))

        if db_type == 'postgresql':
            postgres_config = PostgresConfig(
                dsn=os.getenv('DATABASE_URL') or None,
                host=os.getenv('POSTGRES_HOST', 'localhost'),
                port=int(os.getenv('POSTGRES_PORT', '5432')),
                database=os.getenv('POSTGRES_DB', 'sitechat'),
                user=os.getenv('POSTGRES_USER', 'sitechat'),
                password=os.getenv('POSTGRES_PASSWORD', ''),
                min_connections=int(os.getenv('POSTGRES_MIN_CONNECTIONS', '2')),
                max_connections=int(os.getenv('POSTGRES_MAX_CONNECTIONS', '10')),
                command_timeout=int(os.getenv('POSTGRES_COMMAND_TIMEOUT', '60'))
            )
            return cls(
                type=DatabaseType.POSTGRESQL,
                postgres=postgres_config,
                embedding_dimensions=dimensions,
            )

        return cls(
            type=DatabaseType.SQLITE,
            sqlite_path=os.getenv('SQLITE_PATH', 'sitechat.db'),
            embedding_dimensions=dimensions,
        )


class DatabaseFactory:
    """Builds and owns one store adapter."""

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self._config = config or DatabaseConfig.from_env()
        self._adapter: Optional[StoreAdapter] = None

    async def initialize(self) -> StoreAdapter:
        """Create the adapter for the configured backend and open it."""
        config = self._config

        if config.type == DatabaseType.POSTGRESQL:
            logger.info("Initializing PostgreSQL adapter")
            adapter = PostgresAdapter(config.postgres, embedding_dimensions=config.embedding_dimensions)
        else:
            logger.info("Initializing SQLite adapter")
            adapter = SQLiteAdapter(config.sqlite_path, embedding_dimensions=config.embedding_dimensions)

        await adapter.initialize()
        self._adapter = adapter
        logger.info(f"Database adapter initialized: {config.type.value}")
        return adapter

    async def close(self):
        """Close database connections."""
        if self._adapter:
            await self._adapter.close()
            self._adapter = None
            logger.info("Database adapter closed")

    @property
    def config(self) -> DatabaseConfig:
        return self._config
