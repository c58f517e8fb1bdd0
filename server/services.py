"""Service container: builds, wires and tears down the runtime components.

Everything request handlers need hangs off one ``Services`` instance that
is created at start-up and stored on ``app.state``.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from functools import partial
from typing import Any, Callable, Optional

from config.database import DatabaseConfig, DatabaseFactory
from config.settings import AppSettings, EmbeddingConfig
from indexer.embeddings import EmbeddingManager, OpenAIEmbeddingBackend, SentenceTransformerBackend
from indexer.retriever import Retriever
from observability.prometheus_metrics import live_sessions, record_answer, record_embedding_failure, record_retrieval
from pipelines.crawler import PageFetcher
from .chat import ChatService
from .composer import ResponseComposer
from .job_handlers import reap_stale_crawls, register_job_handlers
from .jobs import JobManager
from .llm import CompletionProvider
from .sessions import SessionRegistry

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: AppSettings
    store: Any
    embeddings: EmbeddingManager
    retriever: Retriever
    composer: ResponseComposer
    chat: ChatService
    jobs: JobManager
    sessions: SessionRegistry
    fetcher_factory: Callable[[], Any]
    database: Optional[DatabaseFactory] = None

    @property
    def stale_after(self) -> timedelta:
        return timedelta(seconds=self.settings.crawl.stale_after_seconds)


def build_embedding_backend(config: EmbeddingConfig, dimensions: int):
    if config.provider == "openai":
        return OpenAIEmbeddingBackend(config.api_key, config.model_name,
                                      base_url=config.base_url, dimensions=dimensions)
    return SentenceTransformerBackend(config.model_name)


def build_llm(settings: AppSettings) -> CompletionProvider:
    llm = settings.llm
    return CompletionProvider(
        api_key=llm.api_key,
        model=llm.model,
        base_url=llm.base_url,
        temperature=llm.temperature,
        top_p=llm.top_p,
        max_tokens=llm.max_tokens,
        timeout=llm.timeout,
    )


def create_services(settings: AppSettings,
                    store,
                    embedding_backend=None,
                    llm=None,
                    jobs: Optional[JobManager] = None,
                    fetcher_factory: Optional[Callable[[], Any]] = None,
                    embedding_dimensions: Optional[int] = None) -> Services:
    """Wire components around an already opened store."""
    dimensions = embedding_dimensions or getattr(store, "embedding_dimensions", None)

    embeddings = EmbeddingManager(
        embedding_backend or build_embedding_backend(settings.embedding, dimensions),
        dimensions=dimensions,
        batch_size=settings.embedding.batch_size,
        batch_delay=settings.embedding.batch_delay,
        on_failure=record_embedding_failure,
    )
    retriever = Retriever(
        store, embeddings,
        default_limit=settings.retrieval.top_k,
        default_threshold=settings.retrieval.similarity_threshold,
        metrics_hook=record_retrieval,
    )
    composer = ResponseComposer(
        retriever, llm or build_llm(settings),
        history_window=settings.retrieval.history_window,
        metrics_hook=record_answer,
    )
    chat = ChatService(
        store, composer,
        history_window=settings.retrieval.history_window,
        default_top_k=settings.retrieval.top_k,
        default_threshold=settings.retrieval.similarity_threshold,
    )
    sessions = SessionRegistry(
        store,
        idle_timeout=settings.sessions.idle_timeout_seconds,
        on_change=live_sessions.set,
    )

    if fetcher_factory is None:
        fetcher_factory = partial(
            PageFetcher,
            user_agent=settings.crawl.user_agent,
            request_timeout=settings.crawl.request_timeout,
            allow_private_networks=settings.crawl.allow_private_networks,
        )

    return Services(
        settings=settings,
        store=store,
        embeddings=embeddings,
        retriever=retriever,
        composer=composer,
        chat=chat,
        jobs=jobs or JobManager(settings.redis_url),
        sessions=sessions,
        fetcher_factory=fetcher_factory,
    )


async def start_services(settings: AppSettings, db_config: Optional[DatabaseConfig] = None) -> Services:
    """Open the store, start the job manager and schedule maintenance."""
    database = DatabaseFactory(db_config)
    store = await database.initialize()

    services = create_services(settings, store, embedding_dimensions=database.config.embedding_dimensions)
    services.database = database

    await services.jobs.initialize()
    register_job_handlers(services)
    services.jobs.add_maintenance_task(
        "reap_stale_crawls",
        partial(reap_stale_crawls, store, services.stale_after),
        settings.crawl.reaper_interval_seconds,
    )
    services.jobs.add_maintenance_task(
        "sweep_idle_sessions", services.sessions.sweep, settings.sessions.sweep_interval_seconds
    )

    # Reap crawls orphaned by a previous process
    await reap_stale_crawls(store, services.stale_after)

    logger.info("SiteChat services started")
    return services


async def stop_services(services: Services):
    await services.sessions.close_all()
    await services.jobs.shutdown()
    if services.database:
        await services.database.close()
    logger.info("SiteChat services stopped")
