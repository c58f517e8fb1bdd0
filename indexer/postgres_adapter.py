"""PostgreSQL database adapter for SiteChat.

Production store backed by asyncpg and pgvector. Every chunk, session and
message query is filtered by website id.
"""

import json
import logging
import secrets
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import asyncpg
import numpy as np
from pgvector.asyncpg import register_vector
from pydantic import BaseModel

from .models import (
    ChatMessage,
    ChatSession,
    Chunk,
    ChunkMetadata,
    CrawlStatus,
    MessageMetadata,
    PendingChunk,
    Role,
    Website,
    WebsiteSettings,
)

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"


class PostgresConfig(BaseModel):
    """PostgreSQL connection configuration."""
    dsn: Optional[str] = None
    host: str = "localhost"
    port: int = 5432
    database: str = "sitechat"
    user: str = "sitechat"
    password: str = ""
    min_connections: int = 2
    max_connections: int = 10
    command_timeout: int = 60

    def connect_kwargs(self) -> Dict[str, Any]:
        if self.dsn:
            return {"dsn": self.dsn}
        return {
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "user": self.user,
            "password": self.password,
        }


async def _init_connection(conn: asyncpg.Connection):
    await register_vector(conn)
    await conn.set_type_codec('jsonb', encoder=json.dumps, decoder=json.loads, schema='pg_catalog')


class PostgresAdapter:
    """PostgreSQL database adapter with pgvector support."""

    def __init__(self, config: PostgresConfig, embedding_dimensions: int = 384):
        self.config = config
        self.embedding_dimensions = embedding_dimensions
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self):
        """Ensure extension and schema exist, then open the connection pool."""
        try:
            # The vector type must exist before pooled connections register its codec
            conn = await asyncpg.connect(**self.config.connect_kwargs())
            try:
                await conn.execute(self._schema_sql())
            finally:
                await conn.close()
            logger.info("pgvector extension and schema ensured")

            self.pool = await asyncpg.create_pool(
                **self.config.connect_kwargs(),
                min_size=self.config.min_connections,
                max_size=self.config.max_connections,
                command_timeout=self.config.command_timeout,
                init=_init_connection,
            )
            logger.info("PostgreSQL connection pool initialized")

        except Exception as e:
            logger.error(f"Failed to initialize PostgreSQL: {e}")
            raise

    def _schema_sql(self) -> str:
        with open(SCHEMA_PATH, 'r', encoding='utf-8') as f:
            schema_sql = f.read()
        return schema_sql.replace("{{EMBEDDING_DIMENSIONS}}", str(int(self.embedding_dimensions)))

    async def close(self):
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("PostgreSQL connection pool closed")

    async def ping(self) -> bool:
        async with self.pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
        return True

    # Websites

    @staticmethod
    def _row_to_website(row: asyncpg.Record) -> Website:
        return Website(
            id=row['id'],
            domain=row['domain'],
            name=row['name'],
            api_key=row['api_key'],
            crawl_status=CrawlStatus(row['crawl_status']),
            settings=WebsiteSettings.model_validate(row['settings'] or {}),
            is_active=row['is_active'],
            created_at=row['created_at'],
            updated_at=row['updated_at'],
            last_crawled_at=row['last_crawled_at'],
            crawl_started_at=row['crawl_started_at'],
        )

    async def create_website(self, domain: str, name: str, api_key: Optional[str] = None,
                             settings: Optional[WebsiteSettings] = None) -> Website:
        """Register a website and return it with its API key."""
        settings = settings or WebsiteSettings()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO websites (id, domain, name, api_key, settings)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING *
                """,
                str(uuid.uuid4()), domain, name, api_key or secrets.token_urlsafe(24),
                settings.model_dump(mode='json', exclude_none=True)
            )
        return self._row_to_website(row)

    async def get_website(self, ref: str, include_inactive: bool = False) -> Optional[Website]:
        """Look a website up by id or API key."""
        query = "SELECT * FROM websites WHERE (id = $1 OR api_key = $1)"
        if not include_inactive:
            query += " AND is_active"
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, ref)
        return self._row_to_website(row) if row else None

    async def find_website_by_domain(self, domain: str) -> Optional[Website]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM websites WHERE domain = $1", domain)
        return self._row_to_website(row) if row else None

    async def deactivate_website(self, website_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "UPDATE websites SET is_active = FALSE, updated_at = NOW() WHERE id = $1",
                website_id
            )
        return result.endswith(" 1")

    async def try_begin_crawl(self, website_id: str, stale_after: Optional[timedelta] = None) -> bool:
        """Atomically move a website to ``crawling`` unless a live crawl holds it."""
        if stale_after is None:
            query = """
                UPDATE websites
                SET crawl_status = 'crawling', crawl_started_at = NOW(), updated_at = NOW()
                WHERE id = $1 AND is_active AND crawl_status <> 'crawling'
                RETURNING id
            """
            args = (website_id,)
        else:
            query = """
                UPDATE websites
                SET crawl_status = 'crawling', crawl_started_at = NOW(), updated_at = NOW()
                WHERE id = $1 AND is_active
                  AND (crawl_status <> 'crawling'
                       OR crawl_started_at IS NULL
                       OR crawl_started_at < NOW() - $2::interval)
                RETURNING id
            """
            args = (website_id, stale_after)

        async with self.pool.acquire() as conn:
            claimed = await conn.fetchval(query, *args)
        return claimed is not None

    async def update_crawl_status(self, website_id: str, status: CrawlStatus):
        terminal = status in (CrawlStatus.COMPLETED, CrawlStatus.FAILED)
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE websites
                SET crawl_status = $2,
                    last_crawled_at = CASE WHEN $3 THEN NOW() ELSE last_crawled_at END,
                    updated_at = NOW()
                WHERE id = $1
                """,
                website_id, status.value, terminal
            )

    async def reset_stale_crawls(self, stale_after: timedelta) -> List[str]:
        """Mark crawls that outlived ``stale_after`` as failed; return their website ids."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                UPDATE websites
                SET crawl_status = 'failed', last_crawled_at = NOW(), updated_at = NOW()
                WHERE crawl_status = 'crawling'
                  AND (crawl_started_at IS NULL OR crawl_started_at < NOW() - $1::interval)
                RETURNING id
                """,
                stale_after
            )
        return [row['id'] for row in rows]

    # Chunks

    async def delete_chunks(self, website_id: str) -> int:
        async with self.pool.acquire() as conn:
            result = await conn.execute("DELETE FROM chunks WHERE website_id = $1", website_id)
        return int(result.split()[-1])

    async def count_chunks(self, website_id: str) -> int:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT COUNT(*) FROM chunks WHERE website_id = $1", website_id
            )

    async def insert_chunks(self, records: Sequence[PendingChunk]) -> Tuple[int, List[str]]:
        """Insert chunks in one transaction. Returns (created, errors).

        Each row runs in its own savepoint so a rejected row is reported
        without discarding the rest of the batch.
        """
        created = 0
        errors: List[str] = []

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                for record in records:
                    if not record.embedding:
                        errors.append(f"Error saving document: no embedding for {record.url}")
                        continue
                    if len(record.embedding) != self.embedding_dimensions:
                        errors.append(
                            f"Error saving document: embedding for {record.url} has "
                            f"{len(record.embedding)} dimensions, expected {self.embedding_dimensions}"
                        )
                        continue

                    try:
                        async with conn.transaction():
                            await conn.execute(
                                """
                                INSERT INTO chunks (id, website_id, content, url, title, embedding, metadata)
                                VALUES ($1, $2, $3, $4, $5, $6, $7)
                                """,
                                str(uuid.uuid4()), record.website_id, record.content, record.url,
                                record.title, np.asarray(record.embedding, dtype=np.float32),
                                record.metadata.model_dump(mode='json')
                            )
                        created += 1
                    except asyncpg.PostgresError as e:
                        errors.append(f"Error saving document: {e}")

        return created, errors

    async def similarity_search(self, website_id: str, query_vector: Sequence[float],
                                limit: int = 5, threshold: float = 0.7) -> List[Chunk]:
        """Rank one website's chunks by ``1 - cosine distance`` to ``query_vector``."""
        if not query_vector or limit <= 0:
            return []

        embedding = np.asarray(query_vector, dtype=np.float32)

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, website_id, content, url, title, metadata, created_at,
                       1 - (embedding <=> $2) AS similarity
                FROM chunks
                WHERE website_id = $1
                  AND 1 - (embedding <=> $2) >= $3
                ORDER BY embedding <=> $2
                LIMIT $4
                """,
                website_id, embedding, threshold, limit
            )

        return [
            Chunk(
                id=row['id'],
                website_id=row['website_id'],
                content=row['content'],
                url=row['url'],
                title=row['title'],
                metadata=ChunkMetadata.model_validate(row['metadata']),
                similarity=float(row['similarity']),
                created_at=row['created_at'],
            )
            for row in rows
        ]

    # Sessions and messages

    @staticmethod
    def _row_to_session(row: asyncpg.Record) -> ChatSession:
        return ChatSession(
            id=row['id'],
            website_id=row['website_id'],
            session_token=row['session_token'],
            user_ip=row['user_ip'],
            user_agent=row['user_agent'],
            is_active=row['is_active'],
            created_at=row['created_at'],
            ended_at=row['ended_at'],
        )

    async def create_session(self, website_id: str, session_token: Optional[str] = None,
                             user_ip: Optional[str] = None,
                             user_agent: Optional[str] = None) -> ChatSession:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO chat_sessions (id, website_id, session_token, user_ip, user_agent)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING *
                """,
                str(uuid.uuid4()), website_id, session_token or uuid.uuid4().hex, user_ip, user_agent
            )
        return self._row_to_session(row)

    async def get_session(self, website_id: str, session_token: str) -> Optional[ChatSession]:
        """Find an active session of this website by its client token."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM chat_sessions
                WHERE website_id = $1 AND session_token = $2 AND is_active
                """,
                website_id, session_token
            )
        return self._row_to_session(row) if row else None

    async def end_session(self, session_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE chat_sessions SET is_active = FALSE, ended_at = NOW()
                WHERE id = $1 AND is_active
                """,
                session_id
            )
        return result.endswith(" 1")

    async def add_message(self, session_id: str, website_id: str, role: Role, content: str,
                          metadata: Optional[MessageMetadata] = None) -> ChatMessage:
        metadata = metadata or MessageMetadata()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO chat_messages (id, session_id, website_id, role, content, metadata)
                VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING id, created_at
                """,
                str(uuid.uuid4()), session_id, website_id, Role(role).value, content,
                metadata.model_dump(mode='json')
            )
        return ChatMessage(
            id=row['id'],
            session_id=session_id,
            website_id=website_id,
            role=Role(role),
            content=content,
            metadata=metadata,
            created_at=row['created_at'],
        )

    async def recent_messages(self, session_id: str, limit: int = 10) -> List[ChatMessage]:
        """Last ``limit`` messages of a session in chronological order."""
        if limit <= 0:
            return []
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM chat_messages WHERE session_id = $1
                ORDER BY seq DESC LIMIT $2
                """,
                session_id, limit
            )
        return [
            ChatMessage(
                id=row['id'],
                session_id=row['session_id'],
                website_id=row['website_id'],
                role=Role(row['role']),
                content=row['content'],
                metadata=MessageMetadata.model_validate(row['metadata'] or {}),
                created_at=row['created_at'],
            )
            for row in reversed(rows)
        ]

    async def get_stats(self) -> Dict[str, Any]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT
                    (SELECT COUNT(*) FROM websites) AS websites,
                    (SELECT COUNT(*) FROM chunks) AS chunks,
                    (SELECT COUNT(*) FROM chat_sessions) AS chat_sessions,
                    (SELECT COUNT(*) FROM chat_messages) AS chat_messages
                """
            )
        return {"backend": "postgresql", **dict(row)}
