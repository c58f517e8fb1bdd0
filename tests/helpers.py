"""Fakes shared by the test modules."""

import asyncio
from typing import Dict, Iterable, List, Optional

from pipelines.crawler import FetchedPage, PageFetchError

DIMENSIONS = 3


def run(coro):
    return asyncio.run(coro)


class KeywordEmbeddingBackend:
    """Maps text to fixed vectors by keyword so similarities are predictable."""

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None,
                 default: Iterable[float] = (0.0, 0.0, 1.0)):
        self.vectors = vectors if vectors is not None else {
            "pricing": [1.0, 0.0, 0.0],
            "contact": [0.0, 1.0, 0.0],
        }
        self.default = list(default)
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        lowered = text.lower()
        for keyword, vector in self.vectors.items():
            if keyword in lowered:
                return list(vector)
        return list(self.default)


class FailingEmbeddingBackend:
    async def embed(self, text: str) -> List[float]:
        raise RuntimeError("embedding service unavailable")


class FakeLLM:
    def __init__(self, reply: str = "Here is what I found on the website.",
                 error: Optional[Exception] = None):
        self.reply = reply
        self.error = error
        self.prompts: List[str] = []

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error:
            raise self.error
        return self.reply


class FakeFetcher:
    """Serves HTML from a dict; unknown URLs fail like a 404.

    ``redirects`` maps a requested URL to the URL whose page is served.
    """

    def __init__(self, pages: Dict[str, str], fail_on_start: bool = False,
                 redirects: Optional[Dict[str, str]] = None):
        self.pages = pages
        self.fail_on_start = fail_on_start
        self.redirects = redirects or {}
        self.fetched: List[str] = []

    async def __aenter__(self):
        if self.fail_on_start:
            raise RuntimeError("fetcher could not start")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False

    async def fetch(self, url: str) -> FetchedPage:
        self.fetched.append(url)
        final_url = self.redirects.get(url, url)
        if final_url not in self.pages:
            raise PageFetchError("HTTP 404")
        return FetchedPage(url=url, html=self.pages[final_url], final_url=final_url)


def html_page(title: str, body: str, links: Iterable[str] = ()) -> str:
    anchors = "".join(f'<a href="{href}">{href}</a>' for href in links)
    return (
        f"<html><head><title>{title}</title></head><body>"
        f"<header>Site header</header><nav>{anchors}</nav>"
        f"<main><h1>{title}</h1><p>{body}</p></main>"
        f"<footer>Copyright</footer></body></html>"
    )


def long_text(topic: str, sentences: int = 8) -> str:
    return " ".join(
        f"This paragraph explains {topic} in detail, sentence number {i}." for i in range(sentences)
    )
