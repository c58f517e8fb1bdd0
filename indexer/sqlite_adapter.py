"""SQLite database adapter for SiteChat.

Development and test backend with the same interface as the PostgreSQL
adapter. Similarity search loads a website's vectors and ranks them with
numpy, so it is only suitable for small corpora.
"""

import json
import logging
import secrets
import sqlite3
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

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
    utcnow,
)

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema_sqlite.sql"


def _ts(value: Optional[datetime] = None) -> str:
    return (value or utcnow()).isoformat()


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteAdapter:
    """SQLite database adapter with the store interface."""

    def __init__(self, db_path: str, embedding_dimensions: int = 384):
        self.db_path = db_path
        self.embedding_dimensions = embedding_dimensions
        self.conn: Optional[sqlite3.Connection] = None

    async def initialize(self):
        """Open the connection and ensure the schema exists."""
        try:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA foreign_keys = ON")

            with open(SCHEMA_PATH, 'r', encoding='utf-8') as f:
                self.conn.executescript(f.read())
            self.conn.commit()

            logger.info(f"SQLite adapter initialized: {self.db_path}")

        except Exception as e:
            logger.error(f"Failed to initialize SQLite: {e}")
            raise

    async def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("SQLite connection closed")

    async def ping(self) -> bool:
        self.conn.execute("SELECT 1").fetchone()
        return True

    # Websites

    def _row_to_website(self, row: sqlite3.Row) -> Website:
        return Website(
            id=row['id'],
            domain=row['domain'],
            name=row['name'],
            api_key=row['api_key'],
            crawl_status=CrawlStatus(row['crawl_status']),
            settings=WebsiteSettings.model_validate(json.loads(row['settings'] or '{}')),
            is_active=bool(row['is_active']),
            created_at=_parse_ts(row['created_at']),
            updated_at=_parse_ts(row['updated_at']),
            last_crawled_at=_parse_ts(row['last_crawled_at']),
            crawl_started_at=_parse_ts(row['crawl_started_at']),
        )

    async def create_website(self, domain: str, name: str, api_key: Optional[str] = None,
                             settings: Optional[WebsiteSettings] = None) -> Website:
        """Register a website and return it with its API key."""
        website_id = str(uuid.uuid4())
        api_key = api_key or secrets.token_urlsafe(24)
        settings = settings or WebsiteSettings()
        now = _ts()

        self.conn.execute(
            """
            INSERT INTO websites (id, domain, name, api_key, settings, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (website_id, domain, name, api_key, settings.model_dump_json(exclude_none=True), now, now)
        )
        self.conn.commit()
        return await self.get_website(website_id)

    async def get_website(self, ref: str, include_inactive: bool = False) -> Optional[Website]:
        """Look a website up by id or API key."""
        query = "SELECT * FROM websites WHERE (id = ? OR api_key = ?)"
        if not include_inactive:
            query += " AND is_active = 1"
        row = self.conn.execute(query, (ref, ref)).fetchone()
        return self._row_to_website(row) if row else None

    async def find_website_by_domain(self, domain: str) -> Optional[Website]:
        row = self.conn.execute("SELECT * FROM websites WHERE domain = ?", (domain,)).fetchone()
        return self._row_to_website(row) if row else None

    async def deactivate_website(self, website_id: str) -> bool:
        cursor = self.conn.execute(
            "UPDATE websites SET is_active = 0, updated_at = ? WHERE id = ?",
            (_ts(), website_id)
        )
        self.conn.commit()
        return cursor.rowcount > 0

    async def try_begin_crawl(self, website_id: str, stale_after: Optional[timedelta] = None) -> bool:
        """Atomically move a website to ``crawling`` unless a live crawl holds it."""
        now = utcnow()
        params: List[Any] = [_ts(now), _ts(now), website_id]
        condition = "crawl_status != 'crawling'"
        if stale_after is not None:
            condition = (
                "(crawl_status != 'crawling' OR crawl_started_at IS NULL "
                "OR crawl_started_at < ?)"
            )
            params.append(_ts(now - stale_after))

        cursor = self.conn.execute(
            f"""
            UPDATE websites
            SET crawl_status = 'crawling', crawl_started_at = ?, updated_at = ?
            WHERE id = ? AND is_active = 1 AND {condition}
            """,
            params
        )
        self.conn.commit()
        return cursor.rowcount == 1

    async def update_crawl_status(self, website_id: str, status: CrawlStatus):
        now = _ts()
        if status in (CrawlStatus.COMPLETED, CrawlStatus.FAILED):
            self.conn.execute(
                """
                UPDATE websites SET crawl_status = ?, last_crawled_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (status.value, now, now, website_id)
            )
        else:
            self.conn.execute(
                "UPDATE websites SET crawl_status = ?, updated_at = ? WHERE id = ?",
                (status.value, now, website_id)
            )
        self.conn.commit()

    async def reset_stale_crawls(self, stale_after: timedelta) -> List[str]:
        """Mark crawls that outlived ``stale_after`` as failed; return their website ids."""
        now = utcnow()
        cutoff = _ts(now - stale_after)
        rows = self.conn.execute(
            """
            SELECT id FROM websites
            WHERE crawl_status = 'crawling' AND (crawl_started_at IS NULL OR crawl_started_at < ?)
            """,
            (cutoff,)
        ).fetchall()
        website_ids = [row['id'] for row in rows]
        for website_id in website_ids:
            self.conn.execute(
                """
                UPDATE websites SET crawl_status = 'failed', last_crawled_at = ?, updated_at = ?
                WHERE id = ? AND crawl_status = 'crawling'
                """,
                (_ts(now), _ts(now), website_id)
            )
        self.conn.commit()
        return website_ids

    # Chunks

    async def delete_chunks(self, website_id: str) -> int:
        cursor = self.conn.execute("DELETE FROM chunks WHERE website_id = ?", (website_id,))
        self.conn.commit()
        return cursor.rowcount

    async def count_chunks(self, website_id: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) AS n FROM chunks WHERE website_id = ?", (website_id,)
        ).fetchone()
        return row['n']

    def _check_embedding(self, record: PendingChunk) -> Optional[str]:
        if not record.embedding:
            return f"Error saving document: no embedding for {record.url}"
        if len(record.embedding) != self.embedding_dimensions:
            return (
                f"Error saving document: embedding for {record.url} has "
                f"{len(record.embedding)} dimensions, expected {self.embedding_dimensions}"
            )
        return None

    async def insert_chunks(self, records: Sequence[PendingChunk]) -> Tuple[int, List[str]]:
        """Insert chunks in one transaction. Returns (created, errors)."""
        created = 0
        errors: List[str] = []

        try:
            for record in records:
                problem = self._check_embedding(record)
                if problem:
                    errors.append(problem)
                    continue

                blob = np.asarray(record.embedding, dtype='<f4').tobytes()
                try:
                    self.conn.execute(
                        """
                        INSERT INTO chunks (id, website_id, content, url, title, embedding, metadata, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (str(uuid.uuid4()), record.website_id, record.content, record.url,
                         record.title, blob, record.metadata.model_dump_json(), _ts())
                    )
                    created += 1
                except sqlite3.Error as e:
                    errors.append(f"Error saving document: {e}")
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

        return created, errors

    async def similarity_search(self, website_id: str, query_vector: Sequence[float],
                                limit: int = 5, threshold: float = 0.7) -> List[Chunk]:
        """Rank one website's chunks by cosine similarity to ``query_vector``."""
        if not query_vector or limit <= 0:
            return []

        query = np.asarray(query_vector, dtype=np.float32)
        query_norm = np.linalg.norm(query)
        if query_norm == 0:
            return []

        rows = self.conn.execute(
            "SELECT * FROM chunks WHERE website_id = ?", (website_id,)
        ).fetchall()

        scored = []
        for row in rows:
            vector = np.frombuffer(row['embedding'], dtype='<f4')
            if vector.shape != query.shape:
                continue
            norm = np.linalg.norm(vector)
            if norm == 0:
                continue
            similarity = float(np.dot(query, vector) / (query_norm * norm))
            if similarity >= threshold:
                scored.append((similarity, row))

        scored.sort(key=lambda item: item[0], reverse=True)

        return [
            Chunk(
                id=row['id'],
                website_id=row['website_id'],
                content=row['content'],
                url=row['url'],
                title=row['title'],
                metadata=ChunkMetadata.model_validate(json.loads(row['metadata'])),
                similarity=similarity,
                created_at=_parse_ts(row['created_at']),
            )
            for similarity, row in scored[:limit]
        ]

    # Sessions and messages

    def _row_to_session(self, row: sqlite3.Row) -> ChatSession:
        return ChatSession(
            id=row['id'],
            website_id=row['website_id'],
            session_token=row['session_token'],
            user_ip=row['user_ip'],
            user_agent=row['user_agent'],
            is_active=bool(row['is_active']),
            created_at=_parse_ts(row['created_at']),
            ended_at=_parse_ts(row['ended_at']),
        )

    async def create_session(self, website_id: str, session_token: Optional[str] = None,
                             user_ip: Optional[str] = None,
                             user_agent: Optional[str] = None) -> ChatSession:
        session_id = str(uuid.uuid4())
        self.conn.execute(
            """
            INSERT INTO chat_sessions (id, website_id, session_token, user_ip, user_agent, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (session_id, website_id, session_token or uuid.uuid4().hex, user_ip, user_agent, _ts())
        )
        self.conn.commit()
        row = self.conn.execute("SELECT * FROM chat_sessions WHERE id = ?", (session_id,)).fetchone()
        return self._row_to_session(row)

    async def get_session(self, website_id: str, session_token: str) -> Optional[ChatSession]:
        """Find an active session of this website by its client token."""
        row = self.conn.execute(
            """
            SELECT * FROM chat_sessions
            WHERE website_id = ? AND session_token = ? AND is_active = 1
            """,
            (website_id, session_token)
        ).fetchone()
        return self._row_to_session(row) if row else None

    async def end_session(self, session_id: str) -> bool:
        cursor = self.conn.execute(
            "UPDATE chat_sessions SET is_active = 0, ended_at = ? WHERE id = ? AND is_active = 1",
            (_ts(), session_id)
        )
        self.conn.commit()
        return cursor.rowcount > 0

    async def add_message(self, session_id: str, website_id: str, role: Role, content: str,
                          metadata: Optional[MessageMetadata] = None) -> ChatMessage:
        message_id = str(uuid.uuid4())
        metadata = metadata or MessageMetadata()
        created_at = _ts()
        self.conn.execute(
            """
            INSERT INTO chat_messages (id, session_id, website_id, role, content, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (message_id, session_id, website_id, Role(role).value, content,
             metadata.model_dump_json(), created_at)
        )
        self.conn.commit()
        return ChatMessage(
            id=message_id,
            session_id=session_id,
            website_id=website_id,
            role=Role(role),
            content=content,
            metadata=metadata,
            created_at=_parse_ts(created_at),
        )

    async def recent_messages(self, session_id: str, limit: int = 10) -> List[ChatMessage]:
        """Last ``limit`` messages of a session in chronological order."""
        if limit <= 0:
            return []
        rows = self.conn.execute(
            """
            SELECT * FROM chat_messages WHERE session_id = ?
            ORDER BY seq DESC LIMIT ?
            """,
            (session_id, limit)
        ).fetchall()
        return [
            ChatMessage(
                id=row['id'],
                session_id=row['session_id'],
                website_id=row['website_id'],
                role=Role(row['role']),
                content=row['content'],
                metadata=MessageMetadata.model_validate(json.loads(row['metadata'])),
                created_at=_parse_ts(row['created_at']),
            )
            for row in reversed(rows)
        ]

    async def get_stats(self) -> Dict[str, Any]:
        counts = {}
        for table in ("websites", "chunks", "chat_sessions", "chat_messages"):
            counts[table] = self.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        return {"backend": "sqlite", "path": self.db_path, **counts}
