"""Website crawler for SiteChat.

Walks one website depth-first from its root URL, extracts readable text,
splits it into chunks, embeds them and replaces the website's stored chunks.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from urllib.parse import urljoin, urlparse

import aiohttp

from indexer.models import ChunkMetadata, CrawlOptions, CrawlStatus, PendingChunk, Website, utcnow
from .chunker import RecursiveTextSplitter
from .html_ingest import ExtractedPage, extract_page, normalize_url
from .security import check_url_ssrf

logger = logging.getLogger(__name__)

MIN_CONTENT_LENGTH = 100
DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; SiteChatBot/1.0; +https://sitechat.dev/bot)"
RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}
REDIRECT_STATUS_CODES = {301, 302, 303, 307, 308}


class PageFetchError(Exception):
    """A single page could not be fetched."""


@dataclass
class FetchedPage:
    url: str
    html: str
    final_url: Optional[str] = None


@dataclass
class CrawlResult:
    """Outcome of one crawl of one website."""
    success: bool
    pages_processed: int = 0
    documents_created: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "pagesProcessed": self.pages_processed,
            "documentsCreated": self.documents_created,
            "errors": list(self.errors),
        }


class PageFetcher:
    """aiohttp page fetcher with SSRF checks and retry on transient errors."""

    def __init__(self,
                 user_agent: str = DEFAULT_USER_AGENT,
                 request_timeout: float = 30.0,
                 max_retries: int = 2,
                 retry_delay: float = 1.0,
                 allow_private_networks: bool = False,
                 max_redirects: int = 5):
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.allow_private_networks = allow_private_networks
        self.max_redirects = max_redirects
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        connector = aiohttp.TCPConnector(limit=4)
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        self.session = aiohttp.ClientSession(
            connector=connector,
            timeout=timeout,
            headers={'User-Agent': self.user_agent, 'Accept': 'text/html,application/xhtml+xml'}
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.close()
            self.session = None

    def _backoff(self, attempt: int) -> float:
        base = self.retry_delay * (2 ** attempt)
        return base + random.uniform(0.1, 0.3) * base

    async def _check_url(self, url: str):
        await asyncio.get_running_loop().run_in_executor(
            None, partial(check_url_ssrf, url, self.allow_private_networks)
        )

    async def fetch(self, url: str) -> FetchedPage:
        """Fetch one HTML page or raise ``PageFetchError``.

        Redirects are followed by hand so that every hop is checked against
        the SSRF guard and must stay on the host of ``url``.
        """
        if self.session is None:
            raise RuntimeError("PageFetcher used outside 'async with'")

        host = (urlparse(url).hostname or '').lower()
        current = url
        for _ in range(self.max_redirects + 1):
            await self._check_url(current)
            html, location = await self._get_with_retry(current)
            if location is None:
                return FetchedPage(url=url, html=html, final_url=current)

            target = urljoin(current, location)
            if (urlparse(target).hostname or '').lower() != host:
                raise PageFetchError(f"Redirect to another host: {target}")
            logger.debug(f"Following redirect {current} -> {target}")
            current = target

        raise PageFetchError(f"Too many redirects for {url}")

    async def _get_with_retry(self, url: str) -> Tuple[str, Optional[str]]:
        """Return ``(html, None)`` for a page or ``('', location)`` for a redirect."""
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            try:
                async with self.session.get(url, allow_redirects=False) as response:
                    if response.status in REDIRECT_STATUS_CODES:
                        location = response.headers.get('Location')
                        if not location:
                            raise PageFetchError(f"HTTP {response.status} without Location header")
                        return '', location
                    if response.status in RETRYABLE_STATUS_CODES and attempt < self.max_retries:
                        logger.warning(f"Retryable status {response.status} for {url}")
                        await asyncio.sleep(self._backoff(attempt))
                        continue
                    if response.status >= 400:
                        raise PageFetchError(f"HTTP {response.status}")

                    content_type = response.headers.get('content-type', '')
                    if 'html' not in content_type.lower():
                        raise PageFetchError(f"Non-HTML content type: {content_type or 'unknown'}")

                    return await response.text(errors='replace'), None

            except (asyncio.TimeoutError, aiohttp.ClientConnectionError) as e:
                last_error = e
                if attempt < self.max_retries:
                    delay = self._backoff(attempt)
                    logger.warning(f"Error fetching {url}: {e!r}, retrying in {delay:.2f}s")
                    await asyncio.sleep(delay)
                    continue
            except aiohttp.ClientError as e:
                raise PageFetchError(str(e)) from e

        raise PageFetchError(f"Giving up after {self.max_retries + 1} attempts: {last_error!r}")


class WebsiteCrawler:
    """Crawls one website and rebuilds its chunk index.

    Only one crawl per website runs at a time: the store's atomic
    ``try_begin_crawl`` decides who owns the website.
    """

    def __init__(self,
                 website: Website,
                 store,
                 embeddings,
                 options: Optional[CrawlOptions] = None,
                 fetcher=None,
                 splitter: Optional[RecursiveTextSplitter] = None,
                 stale_after: Optional[timedelta] = None,
                 min_content_length: int = MIN_CONTENT_LENGTH,
                 on_page: Optional[Callable[[str, bool], None]] = None,
                 claimed: bool = False):
        """Initialize crawler.

        Args:
            website: the website to crawl
            store: store adapter (chunk replacement and crawl status)
            embeddings: ``EmbeddingManager`` used for the new chunks
            options: traversal limits and URL filters
            fetcher: async context manager with ``fetch(url) -> FetchedPage``
            splitter: text splitter, defaults to 1000/200 characters
            stale_after: a ``crawling`` status older than this may be taken over
            min_content_length: pages with less cleaned text are not indexed
            on_page: callback ``(url, ok)`` invoked after each navigation
            claimed: the caller already moved the website to ``crawling``
        """
        self.website = website
        self.store = store
        self.embeddings = embeddings
        self.options = options or CrawlOptions()
        self.fetcher = fetcher or PageFetcher()
        self.splitter = splitter or RecursiveTextSplitter()
        self.stale_after = stale_after
        self.min_content_length = min_content_length
        self.on_page = on_page
        self.claimed = claimed

        self.root_url = normalize_url(website.root_url)
        self.root_host = (urlparse(self.root_url).hostname or '').lower()

        self.visited: Set[str] = set()
        self.redirect_targets: Set[str] = set()
        self.pending: List[PendingChunk] = []
        self.errors: List[str] = []
        self._last_navigation: Optional[float] = None

    async def crawl(self) -> CrawlResult:
        website_id = self.website.id

        if not self.claimed and not await self.store.try_begin_crawl(website_id, self.stale_after):
            logger.warning(f"Crawl rejected for website {website_id}: already crawling")
            return CrawlResult(success=False, errors=["Website is already being crawled"])

        logger.info(f"Starting crawl for {self.root_url} (website {website_id})")
        crawl_timestamp = utcnow()

        try:
            deleted = await self.store.delete_chunks(website_id)
            logger.info(f"Cleared {deleted} existing chunks for website {website_id}")

            async with self.fetcher:
                await self._crawl_url(self.root_url, 0, crawl_timestamp)

            created = await self._process_documents()
            await self.store.update_crawl_status(website_id, CrawlStatus.COMPLETED)

            logger.info(
                f"Crawl completed for website {website_id}: {len(self.visited)} pages, "
                f"{created} chunks, {len(self.errors)} errors"
            )
            return CrawlResult(
                success=True,
                pages_processed=len(self.visited),
                documents_created=created,
                errors=list(self.errors),
            )

        except Exception as e:
            logger.error(f"Crawl failed for website {website_id}: {e}")
            self.errors.append(f"General crawl error: {e}")
            try:
                await self.store.update_crawl_status(website_id, CrawlStatus.FAILED)
            except Exception as status_error:
                logger.error(f"Could not mark website {website_id} as failed: {status_error}")
            return CrawlResult(
                success=False,
                pages_processed=len(self.visited),
                documents_created=0,
                errors=list(self.errors),
            )

    def should_crawl_url(self, url: str) -> bool:
        """Apply exclude and include substring patterns, case-insensitively."""
        lowered = url.lower()
        if any(pattern.lower() in lowered for pattern in self.options.exclude_patterns):
            return False
        if self.options.include_patterns:
            return any(pattern.lower() in lowered for pattern in self.options.include_patterns)
        return True

    def is_internal_link(self, url: str) -> bool:
        try:
            return (urlparse(url).hostname or '').lower() == self.root_host
        except ValueError:
            return False

    async def _respect_delay(self):
        delay = self.options.delay_between_requests / 1000.0
        if self._last_navigation is not None and delay > 0:
            elapsed = time.monotonic() - self._last_navigation
            if elapsed < delay:
                await asyncio.sleep(delay - elapsed)
        self._last_navigation = time.monotonic()

    async def _crawl_url(self, url: str, depth: int, crawl_timestamp: datetime):
        if depth > self.options.max_depth:
            return
        if len(self.visited) >= self.options.max_pages:
            return
        if url in self.visited or url in self.redirect_targets:
            return
        if not self.should_crawl_url(url):
            return

        self.visited.add(url)

        try:
            await self._respect_delay()
            logger.info(f"Crawling: {url} (depth: {depth})")
            page = await self.fetcher.fetch(url)
            page_url = page.final_url or url
            if page_url != url:
                if not self.is_internal_link(page_url):
                    raise PageFetchError(f"Redirect to another host: {page_url}")
                if page_url in self.visited or page_url in self.redirect_targets:
                    logger.debug(f"Skipping {url}: redirects to already crawled {page_url}")
                    return
                self.redirect_targets.add(page_url)
            extracted = extract_page(page.html, page_url)

            if len(extracted.text) >= self.min_content_length:
                self._queue_chunks(extracted, crawl_timestamp)
            else:
                logger.debug(f"Skipping {url}: only {len(extracted.text)} characters of text")

            links = [link for link in extracted.links if self.is_internal_link(link)]
        except Exception as e:
            logger.warning(f"Error crawling {url}: {e}")
            self.errors.append(f"Error crawling {url}: {e}")
            if self.on_page:
                self.on_page(url, False)
            return

        if self.on_page:
            self.on_page(url, True)

        for link in links[:self.options.max_links_per_page]:
            await self._crawl_url(link, depth + 1, crawl_timestamp)

    def _queue_chunks(self, page: ExtractedPage, crawl_timestamp: datetime):
        title = page.title or None
        for piece in self.splitter.create_chunks(page.text):
            self.pending.append(PendingChunk(
                website_id=self.website.id,
                content=piece.content,
                url=page.url,
                title=title,
                metadata=ChunkMetadata(
                    source_domain=self.website.domain,
                    chunk_index=piece.chunk_index,
                    total_chunks=piece.total_chunks,
                    crawl_timestamp=crawl_timestamp,
                    page_title=title,
                ),
            ))

    async def _process_documents(self) -> int:
        if not self.pending:
            return 0

        try:
            logger.info(f"Embedding {len(self.pending)} chunks for website {self.website.id}")
            vectors = await self.embeddings.embed_batch([chunk.content for chunk in self.pending])
            for chunk, vector in zip(self.pending, vectors):
                chunk.embedding = vector

            created, errors = await self.store.insert_chunks(self.pending)
            self.errors.extend(errors)
            return created

        except Exception as e:
            logger.error(f"Error processing documents for website {self.website.id}: {e}")
            self.errors.append(f"Error processing documents: {e}")
            return 0
