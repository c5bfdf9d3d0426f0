"""
Fetches recipe pages and condenses them into text a language model can read.
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup, NavigableString, Tag
from bs4.element import Comment, Declaration, Doctype, ProcessingInstruction

from ..core.config import get_settings
from ..core.errors import FetchFailure
from .json_ld import JsonLDRecipe, extract_json_ld_recipe, json_ld_blocks

log = logging.getLogger(__name__)

HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
        "AppleWebKit/605.1.15 (KHTML, like Gecko) "
        "Version/17.0 Safari/605.1.15"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}

SKIP_TAGS = {
    "script", "style", "noscript", "template", "svg", "canvas", "iframe",
    "head", "nav", "footer", "form", "button", "select", "input", "textarea",
}
BLOCK_TAGS = {
    "p", "div", "section", "article", "main", "header", "aside", "blockquote",
    "pre", "ul", "ol", "dl", "dt", "dd", "table", "tbody", "thead", "figure",
    "figcaption", "details", "summary",
}
HEADING_LEVELS = {f"h{n}": n for n in range(1, 7)}


@dataclass
class PageExtract:
    title: Optional[str]
    text: str
    json_ld: Optional[JsonLDRecipe]
    hero_image: Optional[str]


async def fetch_html(
    url: str,
    timeout: float | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str:
    """Download a page with browser-like headers; failures raise FetchFailure."""
    if timeout is None:
        timeout = get_settings().fetch_timeout
    try:
        async with httpx.AsyncClient(
            follow_redirects=True,
            timeout=timeout,
            headers=HEADERS,
            transport=transport,
        ) as client:
            response = await client.get(url)
            response.raise_for_status()
    except httpx.TimeoutException:
        raise FetchFailure(url, "request timed out", retryable=True)
    except httpx.HTTPStatusError as e:
        status = e.response.status_code
        raise FetchFailure(url, f"HTTP {status}", retryable=status >= 500 or status == 429)
    except httpx.HTTPError as e:
        raise FetchFailure(url, str(e) or type(e).__name__, retryable=True)

    log.info(f"🌐 Fetched {url}: {len(response.text)} characters")
    return response.text


def extract_page(html: str, url: Optional[str] = None) -> PageExtract:
    soup = BeautifulSoup(html, "html.parser")

    # JSON-LD lives in <script> tags, which the text rendering drops
    json_ld = extract_json_ld_recipe(json_ld_blocks(soup))

    title = None
    if soup.title is not None:
        title = _clean(soup.title.get_text()) or None

    return PageExtract(
        title=title,
        text=render_text(soup),
        json_ld=json_ld,
        hero_image=find_hero_image(soup, url),
    )


def find_hero_image(soup: BeautifulSoup, url: Optional[str] = None) -> Optional[str]:
    candidates = [
        soup.find("meta", attrs={"property": "og:image"}),
        soup.find("meta", attrs={"name": "og:image"}),
        soup.find("meta", attrs={"name": "twitter:image"}),
        soup.find("meta", attrs={"property": "twitter:image"}),
    ]
    for meta in candidates:
        if meta is not None and meta.get("content", "").strip():
            return _absolute(meta["content"].strip(), url)
    link = soup.find("link", attrs={"rel": "image_src"})
    if link is not None and link.get("href", "").strip():
        return _absolute(link["href"].strip(), url)
    return None


def _absolute(href: str, url: Optional[str]) -> str:
    return urljoin(url, href) if url else href


def render_text(soup: BeautifulSoup) -> str:
    """Render the visible document as condensed markdown; links become their text."""
    root = soup.body or soup
    writer = _MarkdownWriter()
    writer.walk(root)
    return writer.result()


class _MarkdownWriter:
    def __init__(self) -> None:
        self.lines: List[str] = []
        self.inline: List[str] = []

    def flush(self, prefix: str = "") -> None:
        text = _clean("".join(self.inline))
        self.inline = []
        if text:
            self.lines.append(prefix + text)

    def walk(self, node: Tag) -> None:
        for child in node.children:
            if isinstance(child, (Comment, Doctype, Declaration, ProcessingInstruction)):
                continue
            if isinstance(child, NavigableString):
                self.inline.append(str(child))
                continue
            if not isinstance(child, Tag):
                continue

            name = child.name
            if name in SKIP_TAGS or child.get("hidden") is not None:
                continue
            if name == "br":
                self.flush()
            elif name in HEADING_LEVELS:
                self.flush()
                self.inline.append(child.get_text(" "))
                self.flush("#" * HEADING_LEVELS[name] + " ")
            elif name == "li":
                self.flush()
                self.walk(child)
                self.flush("- ")
            elif name == "tr":
                self.flush()
                cells = [_clean(c.get_text(" ")) for c in child.find_all(["td", "th"])]
                row = " | ".join(c for c in cells if c)
                if row:
                    self.lines.append(row)
            elif name in BLOCK_TAGS:
                self.flush()
                self.walk(child)
                self.flush()
            else:
                self.walk(child)

    def result(self) -> str:
        self.flush()
        deduped = []
        for line in self.lines:
            if not deduped or deduped[-1] != line:
                deduped.append(line)
        return "\n".join(deduped)


def _clean(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()
