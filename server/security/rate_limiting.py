"""Rate limiting for the SiteChat API using slowapi."""

import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded

logger = logging.getLogger(__name__)

CHAT_RATE_LIMIT = os.getenv("CHAT_RATE_LIMIT", "30/minute")
CRAWL_RATE_LIMIT = os.getenv("CRAWL_RATE_LIMIT", "5/minute")


def get_client_ip(request: Request) -> str:
    """Client IP, honouring the first hop of proxy headers."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    return request.client.host if request.client else "unknown"


# Shared counters live in Redis when RATE_LIMIT_STORAGE_URI points at it
limiter = Limiter(
    key_func=get_client_ip,
    storage_uri=os.getenv("RATE_LIMIT_STORAGE_URI", "memory://"),
)


async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    retry_after = getattr(exc, 'retry_after', None) or 60
    response = JSONResponse(
        status_code=429,
        content={
            "error": "Rate limit exceeded",
            "detail": f"Rate limit exceeded: {exc.detail}",
        }
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


def setup_rate_limiting(app: FastAPI) -> None:
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    logger.info(f"Rate limiting enabled (chat: {CHAT_RATE_LIMIT}, crawl: {CRAWL_RATE_LIMIT})")
