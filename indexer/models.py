"""Typed records shared by the store adapters, the crawler and the API.

JSON blobs kept alongside rows (website settings, chunk metadata, message
metadata) are versioned pydantic models and are validated whenever a row
crosses the store boundary.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_EXCLUDE_PATTERNS = [
    '/admin', '/wp-admin', '/login', '/checkout', '/cart',
    '.pdf', '.jpg', '.png', '.gif', '.zip', '.exe',
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CrawlStatus(str, Enum):
    """Website crawl lifecycle."""
    PENDING = "pending"
    CRAWLING = "crawling"
    COMPLETED = "completed"
    FAILED = "failed"


class Role(str, Enum):
    """Author of a chat message."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class CrawlOptions(BaseModel):
    """Per-crawl limits. Accepts camelCase keys from API clients."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    max_pages: int = Field(default=50, ge=1, alias="maxPages")
    max_depth: int = Field(default=3, ge=0, alias="maxDepth")
    exclude_patterns: List[str] = Field(
        default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS), alias="excludePatterns"
    )
    include_patterns: List[str] = Field(default_factory=list, alias="includePatterns")
    delay_between_requests: int = Field(default=1000, ge=0, alias="delayBetweenRequests")
    max_links_per_page: int = Field(default=10, ge=0, alias="maxLinksPerPage")


class WebsiteSettings(BaseModel):
    """Per-website overrides stored with the website row."""
    model_config = ConfigDict(extra="ignore")

    version: int = 1
    similarity_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    top_k: Optional[int] = Field(default=None, ge=1, le=50)
    crawl: Optional[CrawlOptions] = None
    welcome_message: Optional[str] = None


class ChunkMetadata(BaseModel):
    """Provenance of a stored chunk."""
    model_config = ConfigDict(extra="ignore")

    version: int = 1
    source_domain: str
    chunk_index: int = Field(ge=0)
    total_chunks: int = Field(ge=1)
    crawl_timestamp: datetime = Field(default_factory=utcnow)
    page_title: Optional[str] = None


class MessageMetadata(BaseModel):
    """What an assistant answer was grounded on."""
    model_config = ConfigDict(extra="ignore")

    version: int = 1
    sources: List[str] = Field(default_factory=list)
    context_used: int = 0


class Website(BaseModel):
    """A tenant: one registered site with its own chunks and sessions."""
    id: str
    domain: str
    name: str
    api_key: str
    crawl_status: CrawlStatus = CrawlStatus.PENDING
    settings: WebsiteSettings = Field(default_factory=WebsiteSettings)
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_crawled_at: Optional[datetime] = None
    crawl_started_at: Optional[datetime] = None

    @field_validator('settings', mode='before')
    @classmethod
    def _coerce_settings(cls, value: Any) -> Any:
        return value if value is not None else {}

    @property
    def root_url(self) -> str:
        if self.domain.startswith(('http://', 'https://')):
            return self.domain
        return f"https://{self.domain}"

    def public_dict(self) -> Dict[str, Any]:
        """Fields safe to return to API clients (no API key)."""
        return {
            "id": self.id,
            "domain": self.domain,
            "name": self.name,
            "crawl_status": self.crawl_status.value,
            "last_crawled_at": self.last_crawled_at.isoformat() if self.last_crawled_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "is_active": self.is_active,
        }


class PendingChunk(BaseModel):
    """A chunk produced by the crawler, waiting to be stored."""
    website_id: str
    content: str
    url: str
    title: Optional[str] = None
    metadata: ChunkMetadata
    embedding: List[float] = Field(default_factory=list)


class Chunk(BaseModel):
    """A stored chunk as returned by similarity search."""
    id: str
    website_id: str
    content: str
    url: str
    title: Optional[str] = None
    metadata: ChunkMetadata
    similarity: Optional[float] = None
    created_at: Optional[datetime] = None


class ChatSession(BaseModel):
    id: str
    website_id: str
    session_token: str
    user_ip: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


class ChatMessage(BaseModel):
    id: str
    session_id: str
    website_id: str
    role: Role
    content: str
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)
    created_at: Optional[datetime] = None
