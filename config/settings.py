"""Application settings for SiteChat.

All values come from environment variables (optionally loaded from a
``.env`` file) through ``AppSettings.from_env``.
"""

import os
import logging
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class LLMConfig(BaseModel):
    """Completion provider configuration (OpenAI-compatible API)."""
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    model: str = "gpt-4o-mini"
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    top_p: float = Field(default=0.95, gt=0.0, le=1.0)
    max_tokens: int = Field(default=1024, ge=1)
    timeout: float = Field(default=60.0, gt=0)


class EmbeddingConfig(BaseModel):
    """Embedding provider configuration."""
    provider: str = Field(default="local", pattern="^(local|openai)$")
    model_name: str = "all-MiniLM-L6-v2"
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    batch_size: int = Field(default=5, ge=1)
    batch_delay: float = Field(default=0.1, ge=0.0)


class RetrievalConfig(BaseModel):
    """Query-time retrieval defaults, overridable per website."""
    top_k: int = Field(default=5, ge=1)
    similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    history_window: int = Field(default=10, ge=0)


class CrawlConfig(BaseModel):
    """Crawler runtime settings."""
    user_agent: str = "Mozilla/5.0 (compatible; SiteChatBot/1.0; +https://sitechat.dev/bot)"
    request_timeout: float = Field(default=30.0, gt=0)
    stale_after_seconds: int = Field(default=7200, ge=60)
    reaper_interval_seconds: int = Field(default=300, ge=10)
    allow_private_networks: bool = False


class SessionConfig(BaseModel):
    """Realtime chat session liveness settings."""
    idle_timeout_seconds: int = Field(default=1800, ge=1)
    sweep_interval_seconds: int = Field(default=60, ge=1)


class AppSettings(BaseModel):
    """Top-level service settings."""
    service_name: str = "sitechat"
    log_level: str = "INFO"
    log_json: bool = False
    log_file: Optional[str] = None

    llm: LLMConfig = Field(default_factory=LLMConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    crawl: CrawlConfig = Field(default_factory=CrawlConfig)
    sessions: SessionConfig = Field(default_factory=SessionConfig)

    redis_url: Optional[str] = None
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    admin_token: Optional[str] = None

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> 'AppSettings':
        """Create settings from environment variables."""
        load_dotenv(env_file)

        llm = LLMConfig(
            api_key=os.getenv("OPENAI_API_KEY"),
            base_url=os.getenv("OPENAI_BASE_URL") or None,
            model=os.getenv("LLM_MODEL", os.getenv("OPENAI_MODEL", "gpt-4o-mini")),
            temperature=float(os.getenv("LLM_TEMPERATURE", "0.7")),
            top_p=float(os.getenv("LLM_TOP_P", "0.95")),
            max_tokens=int(os.getenv("LLM_MAX_TOKENS", "1024")),
            timeout=float(os.getenv("LLM_TIMEOUT", "60")),
        )
        provider = os.getenv("EMBEDDING_PROVIDER", "local").lower()
        default_model = "text-embedding-3-small" if provider == "openai" else "all-MiniLM-L6-v2"
        embedding = EmbeddingConfig(
            provider=provider,
            model_name=os.getenv("EMBEDDING_MODEL", default_model),
            api_key=os.getenv("EMBEDDING_API_KEY") or os.getenv("OPENAI_API_KEY"),
            base_url=os.getenv("EMBEDDING_BASE_URL") or None,
            batch_size=int(os.getenv("EMBEDDING_BATCH_SIZE", "5")),
            batch_delay=float(os.getenv("EMBEDDING_BATCH_DELAY", "0.1")),
        )
        retrieval = RetrievalConfig(
            top_k=int(os.getenv("RAG_TOP_K", "5")),
            similarity_threshold=float(os.getenv("RAG_SIMILARITY_THRESHOLD", "0.7")),
            history_window=int(os.getenv("RAG_HISTORY_WINDOW", "10")),
        )
        crawl = CrawlConfig(
            user_agent=os.getenv("CRAWL_USER_AGENT", CrawlConfig().user_agent),
            request_timeout=float(os.getenv("CRAWL_REQUEST_TIMEOUT", "30")),
            stale_after_seconds=int(os.getenv("CRAWL_STALE_AFTER_SECONDS", "7200")),
            reaper_interval_seconds=int(os.getenv("CRAWL_REAPER_INTERVAL_SECONDS", "300")),
            allow_private_networks=_env_bool("CRAWL_ALLOW_PRIVATE_NETWORKS", False),
        )
        sessions = SessionConfig(
            idle_timeout_seconds=int(os.getenv("SESSION_IDLE_TIMEOUT_SECONDS", "1800")),
            sweep_interval_seconds=int(os.getenv("SESSION_SWEEP_INTERVAL_SECONDS", "60")),
        )

        origins = os.getenv("CORS_ORIGINS", "*")

        return cls(
            service_name=os.getenv("SERVICE_NAME", "sitechat"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_json=_env_bool("LOG_JSON", False),
            log_file=os.getenv("LOG_FILE") or None,
            llm=llm,
            embedding=embedding,
            retrieval=retrieval,
            crawl=crawl,
            sessions=sessions,
            redis_url=os.getenv("REDIS_URL") or None,
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            admin_token=os.getenv("ADMIN_TOKEN") or None,
        )
