"""Concurrent content fetching and text extraction.

Responsibilities:
- Fetch a source URL with a per-request timeout and a cap on body size
- Extract readable text from HTML pages or RSS/Atom feeds
- Fetch a batch of sources in parallel with a bounded worker pool and an
  overall deadline, isolating each source's failure

Extraction heuristic:
- Feeds (RSS/Atom) → one ``ARTICLE:`` / ``LINK:`` / description block per item
- HTML → content containers (``article``, ``main``, ``.entry-content`` …) when
  they hold substantial text, otherwise headlines + paragraphs; feed-style
  ``item``/``entry`` elements embedded in the page are picked up as well
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlparse

import feedparser
import requests
from bs4 import BeautifulSoup

from core.errors import FetchError, InsufficientContentError
from core.models import Source

logger = logging.getLogger(__name__)

USER_AGENT = "TopicDigest/1.0 (news aggregator; periodic topic refresh)"
HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

#: Default per-request timeout in seconds.
REQUEST_TIMEOUT = 30.0
#: Default deadline for a whole batch in seconds.
BATCH_TIMEOUT = 300.0
#: Default number of parallel fetches.
PARALLEL_LIMIT = 2
#: Bytes of response body read before giving up on the rest.
MAX_BODY_BYTES = 2 * 1024 * 1024
#: Extracted text is cut to this many characters.
MAX_CONTENT_CHARS = 10_000
#: Extracted text shorter than this is treated as an extraction failure.
MIN_CONTENT_CHARS = 100

_CONTENT_SELECTOR = ", ".join([
    "article", "main", ".content", ".post", ".article",
    ".entry-content", "#content", "#main",
])


# ── Result types ───────────────────────────────────────────────────────────────


@dataclass
class ScrapedContent:
    """Text extracted from one source, ready for summarisation."""

    url: str
    source_name: str
    content: str
    source_id: Optional[int] = None


@dataclass
class FetchResult:
    """Outcome of fetching a single source: content xor error."""

    source: Source
    content: Optional[ScrapedContent] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.content is not None


@dataclass
class FetchBatch:
    """Outcomes of a batch, one per requested source."""

    results: list[FetchResult] = field(default_factory=list)

    @property
    def contents(self) -> list[ScrapedContent]:
        return [r.content for r in self.results if r.ok]

    @property
    def failures(self) -> list[FetchResult]:
        return [r for r in self.results if not r.ok]


# ── Text helpers ───────────────────────────────────────────────────────────────


def clean_text(text: str) -> str:
    """Collapse runs of whitespace into single spaces."""
    return " ".join((text or "").split())


def html_to_text(markup: str) -> str:
    """Plain text of an HTML fragment (feed descriptions are often HTML)."""
    if "<" not in markup:
        return clean_text(markup)
    return clean_text(BeautifulSoup(markup, "html.parser").get_text(" "))


def looks_like_feed(body: bytes, content_type: str = "") -> bool:
    """Return True if a response body is an RSS/Atom/RDF feed."""
    ct = content_type.lower()
    if "rss" in ct or "atom" in ct:
        return True
    head = body[:1024].lstrip().lower()
    if head.startswith(b"<rss") or head.startswith(b"<feed"):
        return True
    if head.startswith(b"<?xml"):
        return any(marker in head for marker in (b"<rss", b"<feed", b"<rdf"))
    return "xml" in ct and "html" not in ct


def extract_feed(body: bytes) -> tuple[str, str]:
    """Extract ``(text, feed_title)`` from an RSS/Atom document."""
    parsed = feedparser.parse(body)
    parts: list[str] = []

    for entry in parsed.entries:
        title = clean_text(entry.get("title", ""))
        if not title:
            continue
        parts.append(f"ARTICLE: {title}\n")
        link = entry.get("link", "")
        if link:
            parts.append(f"LINK: {link}\n")
        description = entry.get("summary", "")
        if not description and entry.get("content"):
            description = entry["content"][0].get("value", "")
        if description:
            parts.append(html_to_text(description) + "\n\n")

    return "".join(parts), clean_text(parsed.feed.get("title", ""))


def _embedded_items(soup: BeautifulSoup) -> list[str]:
    """Feed-style ``item``/``entry`` elements inside an HTML page."""
    parts: list[str] = []
    for item in soup.find_all(["item", "entry"]):
        title_tag = item.find("title")
        title = clean_text(title_tag.get_text()) if title_tag else ""
        if not title:
            continue
        parts.append(f"ARTICLE: {title}\n")

        link_tag = item.find("link")
        link = ""
        if link_tag is not None:
            link = link_tag.get("href") or clean_text(link_tag.get_text())
        if link:
            parts.append(f"LINK: {link}\n")

        desc_tag = item.find(["description", "summary", "content"])
        if desc_tag is not None:
            description = html_to_text(desc_tag.get_text())
            if description:
                parts.append(description + "\n\n")
    return parts


def extract_html(body: bytes | str, encoding: Optional[str] = None) -> tuple[str, str]:
    """Extract ``(text, page_title)`` from an HTML document."""
    if isinstance(body, bytes):
        soup = BeautifulSoup(body, "html.parser", from_encoding=encoding)
    else:
        soup = BeautifulSoup(body, "html.parser")

    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()

    title = clean_text(soup.title.get_text()) if soup.title else ""

    # Outermost matching containers only, so nested matches aren't repeated.
    containers: list[str] = []
    selected: set[int] = set()
    for element in soup.select(_CONTENT_SELECTOR):
        if any(id(parent) in selected for parent in element.parents):
            continue
        selected.add(id(element))
        text = clean_text(element.get_text(" "))
        if len(text) > 100:
            containers.append(text + "\n\n")

    headlines = []
    for heading in soup.find_all(["h1", "h2", "h3"]):
        text = clean_text(heading.get_text(" "))
        if 10 < len(text) < 200:
            headlines.append(f"HEADLINE: {text}\n")

    parts = headlines + containers
    if not containers:
        for paragraph in soup.find_all("p"):
            text = clean_text(paragraph.get_text(" "))
            if 50 < len(text) < 2000:
                parts.append(text + "\n")

    parts.extend(_embedded_items(soup))
    return "".join(parts), title


# ── Fetcher ────────────────────────────────────────────────────────────────────


class ContentFetcher:
    """Fetches and extracts text from topic sources.

    Args:
        concurrency: Maximum number of sources fetched at once.
        request_timeout: Per-request timeout in seconds.
        batch_timeout: Default deadline for :meth:`fetch_sources`.
        max_chars: Extracted text is truncated to this length.
        min_chars: Shorter extracted text is rejected.
    """

    def __init__(
        self,
        concurrency: int = PARALLEL_LIMIT,
        request_timeout: float = REQUEST_TIMEOUT,
        batch_timeout: float = BATCH_TIMEOUT,
        max_chars: int = MAX_CONTENT_CHARS,
        min_chars: int = MIN_CONTENT_CHARS,
    ) -> None:
        self.concurrency = max(1, concurrency)
        self.request_timeout = request_timeout
        self.batch_timeout = batch_timeout
        self.max_chars = max_chars
        self.min_chars = min_chars

    # ── Single source ──────────────────────────────────────────────────────

    def fetch_source(self, source: Source) -> ScrapedContent:
        """Download one source and extract its text.

        Raises:
            FetchError: On network errors, timeouts, or HTTP error statuses.
            InsufficientContentError: If too little text could be extracted.
        """
        url = source.url
        started = time.monotonic()
        try:
            response = requests.get(
                url, headers=HEADERS, timeout=self.request_timeout, stream=True
            )
        except requests.exceptions.Timeout as exc:
            raise FetchError(f"timed out fetching {url}") from exc
        except requests.exceptions.RequestException as exc:
            raise FetchError(f"failed to visit {url}: {exc}") from exc

        with response:
            if response.status_code >= 400:
                raise FetchError(f"scrape error for {url} (status: {response.status_code})")

            chunks: list[bytes] = []
            size = 0
            try:
                for chunk in response.iter_content(chunk_size=64 * 1024):
                    chunks.append(chunk)
                    size += len(chunk)
                    if size >= MAX_BODY_BYTES:
                        break
                    if time.monotonic() - started > self.request_timeout:
                        raise FetchError(f"timed out reading {url}")
            except requests.exceptions.RequestException as exc:
                raise FetchError(f"failed to read {url}: {exc}") from exc

            body = b"".join(chunks)[:MAX_BODY_BYTES]
            content_type = response.headers.get("Content-Type", "")
            encoding = response.encoding if "charset" in content_type.lower() else None

        return self.extract(source, body, content_type, encoding)

    def extract(
        self,
        source: Source,
        body: bytes,
        content_type: str = "",
        encoding: Optional[str] = None,
    ) -> ScrapedContent:
        """Turn a response body into ``ScrapedContent`` for *source*.

        Raises:
            InsufficientContentError: If fewer than ``min_chars`` were extracted.
        """
        if looks_like_feed(body, content_type):
            text, title = extract_feed(body)
        else:
            text, title = extract_html(body, encoding)

        text = text.strip()
        if len(text) < self.min_chars:
            raise InsufficientContentError(f"insufficient content scraped from {source.url}")
        if len(text) > self.max_chars:
            text = text[: self.max_chars] + "..."

        name = source.name or title or urlparse(source.url).hostname or source.url
        return ScrapedContent(
            url=source.url, source_name=name, content=text, source_id=source.id
        )

    # ── Batch ──────────────────────────────────────────────────────────────

    def _fetch_one(self, source: Source, stop: Optional[threading.Event]) -> FetchResult:
        if stop is not None and stop.is_set():
            return FetchResult(source, error=FetchError("fetch cancelled"))
        try:
            return FetchResult(source, content=self.fetch_source(source))
        except FetchError as exc:
            logger.warning("Failed to scrape %s: %s", source.url, exc)
            return FetchResult(source, error=exc)
        except Exception as exc:
            logger.exception("Unexpected error scraping %s", source.url)
            return FetchResult(source, error=FetchError(f"unexpected error: {exc}"))

    def fetch_sources(
        self,
        sources: list[Source],
        timeout: Optional[float] = None,
        stop: Optional[threading.Event] = None,
    ) -> FetchBatch:
        """Fetch *sources* concurrently, at most ``concurrency`` at a time.

        One source's failure never affects the others. When the deadline
        passes, sources still queued are cancelled and sources still running
        are left to hit their own request timeout; both are reported as
        failures. A set *stop* event keeps queued sources from starting.

        Args:
            sources: Sources to fetch.
            timeout: Deadline for the whole batch (defaults to ``batch_timeout``).
            stop: Optional cancellation signal.

        Returns:
            A ``FetchBatch`` with one result per source, in input order.
        """
        if not sources:
            return FetchBatch()
        timeout = self.batch_timeout if timeout is None else timeout

        executor = ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="fetch"
        )
        futures = {}
        try:
            for index, source in enumerate(sources):
                if stop is not None and stop.is_set():
                    break
                futures[executor.submit(self._fetch_one, source, stop)] = index
            done, _ = wait(futures, timeout=timeout)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        results: list[FetchResult] = []
        by_index = {index: future for future, index in futures.items()}
        for index, source in enumerate(sources):
            future = by_index.get(index)
            if future is None:
                results.append(FetchResult(source, error=FetchError("fetch cancelled")))
            elif future in done:
                results.append(future.result())
            else:
                logger.warning("Batch deadline passed before %s finished", source.url)
                results.append(
                    FetchResult(source, error=FetchError(f"batch timed out fetching {source.url}"))
                )

        batch = FetchBatch(results)
        logger.info(
            "Fetched %d/%d sources (%d failed)",
            len(batch.contents), len(sources), len(batch.failures),
        )
        return batch
