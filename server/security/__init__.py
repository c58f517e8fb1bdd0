"""Security package for the SiteChat API."""

from .rate_limiting import (
    limiter,
    setup_rate_limiting,
    get_client_ip,
    CHAT_RATE_LIMIT,
    CRAWL_RATE_LIMIT,
)
from .cors import setup_cors

__all__ = [
    "limiter",
    "setup_rate_limiting",
    "get_client_ip",
    "CHAT_RATE_LIMIT",
    "CRAWL_RATE_LIMIT",
    "setup_cors",
]
