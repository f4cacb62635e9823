"""Background refresh scheduler.

Flow
────
start()
  └─ loop thread
       1. warm-up wait (interruptible)
       2. initialisation pass: discover sources for topics that have none
       3. repeat until stopped:
            reload interval → list topics → due subset →
            refresh each due topic in order (courtesy gap between topics) →
            wait before the next pass

refresh_topic(topic_id)
  in_progress → [discover if no active sources] → fetch (bounded, concurrent)
  → update source failure counters → summarise → store stories → prune
  → completed | failed

Topics in one pass are refreshed strictly one after another. Each refresh
holds an in-memory per-topic lease, so a manual refresh and a scheduled one
can never run on the same topic at the same time.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse

from core import status as refresh_status
from core.discovery import ResearcherFactory, SourceDiscovery
from core.errors import (
    ConfigurationError,
    RefreshCancelled,
    RefreshError,
    RefreshInProgressError,
    TopicDigestError,
    TopicNotFoundError,
)
from core.fetcher import ContentFetcher, FetchBatch, ScrapedContent
from core.models import AppSettings, RefreshStatus, Source, Story, SummarizedStory, Topic
from core.researcher import SourceResearcher
from core.store import Store
from core.summarizer import Summarizer

logger = logging.getLogger(__name__)

SummarizerFactory = Callable[[str], Summarizer]

DEFAULT_INTERVAL = timedelta(minutes=120)


def _match_source_id(url: str, contents: list[ScrapedContent]) -> Optional[int]:
    """Best-effort link from a story URL back to the source it came from."""
    if not url:
        return None
    normalised = url.rstrip("/").lower()
    for content in contents:
        if content.url.rstrip("/").lower() == normalised:
            return content.source_id
    host = (urlparse(url).hostname or "").removeprefix("www.")
    if not host:
        return None
    for content in contents:
        if (urlparse(content.url).hostname or "").removeprefix("www.") == host:
            return content.source_id
    return None


class Scheduler:
    """Drives periodic, staggered, fault-isolated topic refreshes.

    All mutable state (running flag, interval, loop thread, stop event and
    the set of topics currently being refreshed) is guarded by ``_lock``.

    Args:
        store: Storage collaborator.
        fetcher: Content fetcher (defaults to ``ContentFetcher()``).
        researcher_factory: Builds the AI discovery client from an API key.
        summarizer_factory: Builds the AI summarisation client from an API key.
        warmup_delay: Seconds to wait after start before doing anything.
        topic_delay: Courtesy gap between two topic refreshes in one pass.
        pass_delay: Wait between the end of one pass and the next.
        init_delay: Gap between discoveries in the initialisation pass.
        error_delay: Wait after the topic list could not be read.
        batch_timeout: Deadline for one topic's fetch batch.
    """

    def __init__(
        self,
        store: Store,
        fetcher: Optional[ContentFetcher] = None,
        researcher_factory: Optional[ResearcherFactory] = None,
        summarizer_factory: Optional[SummarizerFactory] = None,
        *,
        warmup_delay: float = 10.0,
        topic_delay: float = 30.0,
        pass_delay: float = 60.0,
        init_delay: float = 5.0,
        error_delay: float = 60.0,
        batch_timeout: float = 300.0,
    ) -> None:
        self.store = store
        self.fetcher = fetcher or ContentFetcher()
        self.summarizer_factory: SummarizerFactory = summarizer_factory or Summarizer
        self.discovery = SourceDiscovery(store, researcher_factory or SourceResearcher)

        self.warmup_delay = warmup_delay
        self.topic_delay = topic_delay
        self.pass_delay = pass_delay
        self.init_delay = init_delay
        self.error_delay = error_delay
        self.batch_timeout = batch_timeout

        self._lock = threading.Lock()
        self._running = False
        self._interval = DEFAULT_INTERVAL
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._refreshing: set[int] = set()

    # ── State accessors ────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def interval(self) -> timedelta:
        with self._lock:
            return self._interval

    def update_interval(self, minutes: int) -> None:
        """Change the refresh interval used for the next completed refresh."""
        if minutes < 1:
            raise ValueError("Refresh interval must be at least one minute.")
        with self._lock:
            self._interval = timedelta(minutes=minutes)
        logger.info("Scheduler interval updated to %d minutes", minutes)

    def is_refreshing(self, topic_id: int) -> bool:
        with self._lock:
            return topic_id in self._refreshing

    # ── Lifecycle ──────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the loop thread. No-op if it is already running."""
        with self._lock:
            if self._running:
                return
            self._running = True
            self._stop = threading.Event()
            self._thread = threading.Thread(
                target=self._run, args=(self._stop,), name="scheduler", daemon=True
            )
            thread = self._thread
        thread.start()
        logger.info("Scheduler started")

    def stop(self) -> None:
        """Signal the loop to stop and wait until it has exited."""
        with self._lock:
            thread = self._thread
            was_running = self._running
            self._running = False
            self._stop.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        if was_running:
            logger.info("Scheduler stopped")

    # ── Loop ───────────────────────────────────────────────────────────────

    def _run(self, stop: threading.Event) -> None:
        try:
            if stop.wait(self.warmup_delay):
                return
            self._safe_initialize_topics(stop)
            while not stop.is_set():
                if not self._run_pass(stop):
                    continue
                if stop.wait(self.pass_delay):
                    return
        except Exception:
            logger.exception("Scheduler loop crashed; marking scheduler as stopped")
        finally:
            with self._lock:
                if self._stop is stop:
                    self._running = False

    def _run_pass(self, stop: threading.Event) -> bool:
        """One sweep over all topics.

        Returns False if the topic list could not be read; the caller retries
        the pass straight after the error delay.
        """
        self._reload_interval()

        try:
            topics = self.store.list_topics()
        except Exception:
            logger.exception("Error getting topics; retrying in %.0fs", self.error_delay)
            stop.wait(self.error_delay)
            return False

        due = self.due_topics(topics)
        if due:
            logger.info("%d of %d topics due for refresh", len(due), len(topics))

        for index, topic in enumerate(due):
            if stop.is_set():
                break
            self._safe_refresh_topic(topic.id, stop)
            if index < len(due) - 1 and stop.wait(self.topic_delay):
                break
        return True

    def _reload_interval(self) -> None:
        try:
            minutes = self.store.get_settings().refresh_interval_minutes
        except Exception:
            logger.exception("Error reading settings; keeping interval %s", self.interval)
            return
        if minutes > 0:
            with self._lock:
                self._interval = timedelta(minutes=minutes)

    def due_topics(self, topics: list[Topic]) -> list[Topic]:
        """Return the topics whose refresh is due, in listing order."""
        now = refresh_status.utcnow()
        due: list[Topic] = []
        for topic in topics:
            if self.is_refreshing(topic.id):
                continue
            try:
                current = self.store.get_refresh_status(topic.id)
            except Exception:
                logger.exception("Error getting refresh status for topic %d", topic.id)
                continue
            if refresh_status.is_due(current, now):
                due.append(topic)
        return due

    def _safe_initialize_topics(self, stop: threading.Event) -> None:
        try:
            self.initialize_topics(stop)
        except Exception:
            logger.exception("Topic initialisation failed")

    def initialize_topics(self, stop: Optional[threading.Event] = None) -> None:
        """Discover sources for every topic that has none at all."""
        stop = stop or threading.Event()
        topics = self.store.list_topics()

        if not self.store.get_settings().anthropic_api_key:
            logger.info("Anthropic API key not configured, skipping topic initialisation")
            return

        pending = [t for t in topics if not self.store.list_sources(t.id)]
        for index, topic in enumerate(pending):
            if stop.is_set():
                return
            logger.info("Discovering sources for topic: %s", topic.name)
            try:
                self.discovery.discover(topic.id)
            except TopicDigestError as exc:
                logger.warning("Source discovery failed for topic %d: %s", topic.id, exc)
            if index < len(pending) - 1 and stop.wait(self.init_delay):
                return

    # ── Manual triggers ────────────────────────────────────────────────────

    def discover_sources(self, topic_id: int) -> list[Source]:
        """Run source discovery for one topic now. Raises on failure."""
        return self.discovery.discover(topic_id)

    def discover_sources_async(self, topic_id: int) -> threading.Thread:
        """Run source discovery on a background thread; errors are logged."""
        def target() -> None:
            try:
                self.discovery.discover(topic_id)
            except Exception:
                logger.exception("Error discovering sources for topic %d", topic_id)

        thread = threading.Thread(target=target, name=f"discover-{topic_id}", daemon=True)
        thread.start()
        return thread

    def refresh_topic_async(self, topic_id: int) -> threading.Thread:
        """Refresh one topic on a background thread; errors are recorded and logged."""
        thread = threading.Thread(
            target=self._safe_refresh_topic,
            args=(topic_id,),
            name=f"refresh-{topic_id}",
            daemon=True,
        )
        thread.start()
        return thread

    def _safe_refresh_topic(
        self, topic_id: int, stop: Optional[threading.Event] = None
    ) -> None:
        try:
            self.refresh_topic(topic_id, stop)
        except RefreshInProgressError as exc:
            logger.info("%s", exc)
        except TopicDigestError as exc:
            logger.warning("Error refreshing topic %d: %s", topic_id, exc)
        except Exception:
            logger.exception("Unexpected error refreshing topic %d", topic_id)

    # ── Single-topic refresh ───────────────────────────────────────────────

    def refresh_topic(self, topic_id: int, stop: Optional[threading.Event] = None) -> int:
        """Refresh one topic end to end.

        Args:
            topic_id: Topic to refresh.
            stop: Optional cancellation signal (the loop passes its own).

        Returns:
            The number of stories stored.

        Raises:
            RefreshInProgressError: If the topic is already being refreshed.
            TopicNotFoundError: If the topic does not exist.
            ConfigurationError: If no API key is configured.
            RefreshError: If any refresh step failed.
            RefreshCancelled: If *stop* was set mid-refresh.
        """
        with self._lock:
            if topic_id in self._refreshing:
                raise RefreshInProgressError(topic_id)
            self._refreshing.add(topic_id)
        try:
            return self._refresh(topic_id, stop or threading.Event())
        finally:
            with self._lock:
                self._refreshing.discard(topic_id)

    def _refresh(self, topic_id: int, stop: threading.Event) -> int:
        topic = self.store.get_topic(topic_id)
        if topic is None:
            raise TopicNotFoundError(topic_id)

        try:
            settings = self.store.get_settings()
        except Exception as exc:
            self._record_failure(topic_id, f"failed to get settings: {exc}")
            raise RefreshError(f"failed to get settings: {exc}") from exc

        if not settings.anthropic_api_key:
            message = "Anthropic API key not configured"
            self._record_failure(topic_id, message)
            raise ConfigurationError(message)

        try:
            self.store.upsert_refresh_status(refresh_status.in_progress(topic_id))
            logger.info("Refreshing topic: %s", topic.name)
            count = self._run_steps(topic, settings, stop)
            self.store.upsert_refresh_status(
                refresh_status.completed(topic_id, self.interval)
            )
        except RefreshCancelled:
            logger.info("Refresh of topic %r cancelled", topic.name)
            self._write_status(refresh_status.pending(topic_id))
            raise
        except TopicDigestError as exc:
            self._record_failure(topic_id, str(exc))
            raise
        except Exception as exc:
            self._record_failure(topic_id, f"unexpected error: {exc}")
            raise

        logger.info("Completed refresh for topic: %s (%d stories)", topic.name, count)
        return count

    def _run_steps(self, topic: Topic, settings: AppSettings, stop: threading.Event) -> int:
        sources = self._ensure_sources(topic)

        if stop.is_set():
            raise RefreshCancelled()
        batch = self.fetcher.fetch_sources(sources, timeout=self.batch_timeout, stop=stop)
        if stop.is_set():
            raise RefreshCancelled()
        self._apply_fetch_results(batch)

        contents = batch.contents
        if not contents:
            raise RefreshError("failed to scrape any content from active sources")

        try:
            summarizer = self.summarizer_factory(settings.anthropic_api_key)
            stories = summarizer.summarize_content(
                topic.name,
                contents,
                settings.global_summarizing_prompt,
                settings.stories_per_topic,
            )
        except TopicDigestError as exc:
            raise RefreshError(f"failed to summarize content: {exc}") from exc

        stored = self._store_stories(topic.id, stories, contents)

        try:
            self.store.prune_stories(topic.id, settings.stories_per_topic * 3)
        except TopicDigestError as exc:
            raise RefreshError(f"failed to prune old stories: {exc}") from exc

        return stored

    def _ensure_sources(self, topic: Topic) -> list[Source]:
        try:
            sources = self.store.list_active_sources(topic.id)
        except TopicDigestError as exc:
            raise RefreshError(f"failed to get sources: {exc}") from exc
        if sources:
            return sources

        try:
            self.discovery.discover(topic.id)
            sources = self.store.list_active_sources(topic.id)
        except TopicDigestError as exc:
            raise RefreshError(f"failed to discover sources: {exc}") from exc
        if not sources:
            raise RefreshError("no sources available for topic")
        return sources

    def _apply_fetch_results(self, batch: FetchBatch) -> None:
        """Update each source's failure counter from its fetch outcome."""
        for result in batch.results:
            source = result.source
            active, count = refresh_status.next_source_state(source.failure_count, result.ok)
            try:
                if not result.ok:
                    self.store.update_source_status(
                        source.id, active, count, refresh_status.truncate(str(result.error))
                    )
                    if not active:
                        logger.warning(
                            "Source disabled after %d failures: %s", count, source.url
                        )
                elif source.failure_count or not source.active:
                    self.store.update_source_status(source.id, True, 0, "")
            except TopicDigestError as exc:
                logger.error("Error updating status of source %d: %s", source.id, exc)

    def _store_stories(
        self,
        topic_id: int,
        stories: list[SummarizedStory],
        contents: list[ScrapedContent],
    ) -> int:
        stored = 0
        now = refresh_status.utcnow()
        for story in stories:
            try:
                self.store.create_story(Story(
                    topic_id=topic_id,
                    source_id=_match_source_id(story.source_url, contents),
                    title=story.title,
                    summary=story.summary,
                    source_url=story.source_url,
                    source_title=story.source_title,
                    published_at=now,
                ))
                stored += 1
            except TopicDigestError as exc:
                logger.error("Error creating story %r: %s", story.title, exc)
        return stored

    def _record_failure(self, topic_id: int, message: str) -> None:
        logger.error("Refresh error for topic %d: %s", topic_id, message)
        self._write_status(refresh_status.failed(topic_id, message))

    def _write_status(self, status: RefreshStatus) -> None:
        try:
            self.store.upsert_refresh_status(status)
        except Exception:
            logger.exception("Error writing refresh status for topic %d", status.topic_id)
