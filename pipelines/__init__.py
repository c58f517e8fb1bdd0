"""Pipelines package for SiteChat.

Provides crawling, text extraction, chunking and outbound URL checks.
"""

from .chunker import RecursiveTextSplitter, TextChunk, DEFAULT_SEPARATORS
from .crawler import (
    CrawlResult,
    FetchedPage,
    PageFetcher,
    PageFetchError,
    WebsiteCrawler,
)
from .html_ingest import ExtractedPage, extract_page
from .security import SSRFError, check_url_ssrf

__all__ = [
    # Chunker
    'RecursiveTextSplitter',
    'TextChunk',
    'DEFAULT_SEPARATORS',

    # Crawler
    'CrawlResult',
    'FetchedPage',
    'PageFetcher',
    'PageFetchError',
    'WebsiteCrawler',

    # Extraction
    'ExtractedPage',
    'extract_page',

    # Security
    'SSRFError',
    'check_url_ssrf',
]
