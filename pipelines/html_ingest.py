# Readable-text and link extraction for crawled HTML pages.
# Link discovery runs on the full document; text extraction runs after
# navigation, headers, footers and scripts are stripped.

import re
import urllib.parse
from dataclasses import dataclass, field
from typing import List, Optional

from bs4 import BeautifulSoup

NON_CONTENT_SELECTOR = "script, style, nav, footer, header, .navigation, .menu, .sidebar"
CONTENT_SELECTORS = ["main", ".content", ".main-content", "article", ".post", ".entry-content", "body"]
SKIPPED_LINK_SCHEMES = ("mailto:", "tel:", "javascript:")

_WHITESPACE = re.compile(r"\s+")


@dataclass
class ExtractedPage:
    url: str
    title: str
    text: str
    links: List[str] = field(default_factory=list)


def normalize_url(url: str) -> str:
    """Drop the fragment so ``/a#x`` and ``/a`` count as one page."""
    return urllib.parse.urldefrag(url)[0]


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def discover_links(soup: BeautifulSoup, base_url: str) -> List[str]:
    out, seen = [], set()
    for a in soup.select("a[href]"):
        href = (a.get("href") or "").strip()
        if not href or href.lower().startswith(SKIPPED_LINK_SCHEMES):
            continue
        absolute = normalize_url(urllib.parse.urljoin(base_url, href))
        if urllib.parse.urlparse(absolute).scheme not in ("http", "https"):
            continue
        if absolute not in seen:
            seen.add(absolute)
            out.append(absolute)
    return out


def extract_main_text(soup: BeautifulSoup) -> str:
    for element in soup.select(NON_CONTENT_SELECTOR):
        element.decompose()

    for selector in CONTENT_SELECTORS:
        matches = soup.select(selector)
        if matches:
            text = collapse_whitespace(" ".join(m.get_text(" ") for m in matches))
            if text:
                return text

    return collapse_whitespace(soup.get_text(" "))


def extract_page(html: str, url: str, title: Optional[str] = None) -> ExtractedPage:
    soup = BeautifulSoup(html, "html.parser")
    links = discover_links(soup, url)
    if title is None:
        title = collapse_whitespace(soup.title.get_text()) if soup.title else ""
    return ExtractedPage(url=url, title=title, text=extract_main_text(soup), links=links)
