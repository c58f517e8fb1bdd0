"""Observability package for SiteChat."""

from .logging import setup_logging
from .prometheus_metrics import (
    setup_prometheus_metrics,
    record_answer,
    record_retrieval,
    record_embedding_failure,
    record_crawl_page,
    record_crawl_run,
    live_sessions,
    PrometheusMiddleware,
    sitechat_registry
)

__all__ = [
    'setup_logging',
    'setup_prometheus_metrics',
    'record_answer',
    'record_retrieval',
    'record_embedding_failure',
    'record_crawl_page',
    'record_crawl_run',
    'live_sessions',
    'PrometheusMiddleware',
    'sitechat_registry'
]
