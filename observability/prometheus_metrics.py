"""Prometheus metrics for the SiteChat API, crawler and answer path."""

import logging
import os
import re
import time
from typing import Optional

from fastapi import FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, Info, generate_latest
from prometheus_client.core import CollectorRegistry

logger = logging.getLogger(__name__)

sitechat_registry = CollectorRegistry()

request_count = Counter(
    'sitechat_http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=sitechat_registry
)

request_duration = Histogram(
    'sitechat_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=sitechat_registry
)

chat_answers = Counter(
    'sitechat_chat_answers_total',
    'Answers produced by the response composer',
    ['outcome'],
    registry=sitechat_registry
)

retrieval_results = Histogram(
    'sitechat_retrieval_results_count',
    'Chunks returned per retrieval',
    buckets=[0, 1, 2, 3, 5, 10, 20],
    registry=sitechat_registry
)

retrieval_duration = Histogram(
    'sitechat_retrieval_duration_seconds',
    'Query embedding plus similarity search time',
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
    registry=sitechat_registry
)

embedding_failures = Counter(
    'sitechat_embedding_failures_total',
    'Texts the embedding provider could not embed',
    registry=sitechat_registry
)

crawl_pages = Counter(
    'sitechat_crawl_pages_total',
    'Pages visited by the crawler',
    ['result'],
    registry=sitechat_registry
)

crawl_runs = Counter(
    'sitechat_crawl_runs_total',
    'Completed crawl runs',
    ['status'],
    registry=sitechat_registry
)

crawl_chunks = Histogram(
    'sitechat_crawl_chunks_created',
    'Chunks stored per crawl',
    buckets=[0, 10, 50, 100, 250, 500, 1000, 2500],
    registry=sitechat_registry
)

live_sessions = Gauge(
    'sitechat_live_sessions',
    'Realtime chat sessions currently connected',
    registry=sitechat_registry
)

app_info = Info(
    'sitechat_app',
    'SiteChat application information',
    registry=sitechat_registry
)

_UUID = re.compile(r'/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}')
_NUMERIC = re.compile(r'/\d+')


class PrometheusMiddleware:
    """ASGI middleware recording request counts and latency."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        method = request.method
        endpoint = self._normalize_endpoint(request.url.path)
        start_time = time.time()
        status_code = 500

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            request_count.labels(method=method, endpoint=endpoint, status_code=str(status_code)).inc()
            request_duration.labels(method=method, endpoint=endpoint).observe(time.time() - start_time)

    @staticmethod
    def _normalize_endpoint(path: str) -> str:
        path = _UUID.sub('/{id}', path)
        return _NUMERIC.sub('/{id}', path)


def setup_prometheus_metrics(app: FastAPI) -> None:
    """Install the request middleware and the ``/metrics`` endpoint."""
    app.add_middleware(PrometheusMiddleware)

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint():
        return Response(generate_latest(sitechat_registry), media_type=CONTENT_TYPE_LATEST)

    app_info.info({
        'version': os.getenv('APP_VERSION', 'unknown'),
        'environment': os.getenv('ENVIRONMENT', 'development'),
    })
    logger.info("Prometheus metrics configured")


def record_answer(outcome: str) -> None:
    chat_answers.labels(outcome=outcome).inc()


def record_retrieval(result_count: int, duration: float) -> None:
    retrieval_results.observe(result_count)
    retrieval_duration.observe(duration)


def record_embedding_failure() -> None:
    embedding_failures.inc()


def record_crawl_page(url: str, ok: bool) -> None:
    crawl_pages.labels(result="ok" if ok else "error").inc()


def record_crawl_run(success: bool, chunks_created: Optional[int] = None) -> None:
    crawl_runs.labels(status="completed" if success else "failed").inc()
    if chunks_created is not None:
        crawl_chunks.observe(chunks_created)
