"""Tests for core/scheduler.py

The fetcher and both AI collaborators are replaced by fakes; the store is a
real temporary SQLite database. Delays are zero or a few milliseconds so the
loop tests finish quickly.

Run with: pytest tests/test_scheduler.py
"""

from __future__ import annotations

import threading
import time
from datetime import timedelta

import pytest
from unittest.mock import MagicMock

from core import status as refresh_status
from core.errors import (
    ConfigurationError,
    FetchError,
    RefreshCancelled,
    RefreshError,
    RefreshInProgressError,
    StorageError,
    TopicNotFoundError,
    UpstreamError,
)
from core.fetcher import FetchBatch, FetchResult, ScrapedContent
from core.models import DiscoveredSource, RefreshState, SummarizedStory
from core.scheduler import Scheduler, _match_source_id


# ── Fakes ──────────────────────────────────────────────────────────────────────


class FakeFetcher:
    """Succeeds for every URL except those in ``failing``."""

    def __init__(self, failing=(), gate: threading.Event | None = None):
        self.failing = set(failing)
        self.gate = gate
        self.entered = threading.Event()
        self.calls: list[list[str]] = []

    def fetch_sources(self, sources, timeout=None, stop=None):
        self.calls.append([s.url for s in sources])
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        results = []
        for source in sources:
            if source.url in self.failing:
                results.append(FetchResult(source, error=FetchError(f"timed out fetching {source.url}")))
            else:
                results.append(FetchResult(source, content=ScrapedContent(
                    url=source.url,
                    source_name=source.name or source.url,
                    content=f"News from {source.url} " * 10,
                    source_id=source.id,
                )))
        return FetchBatch(results)


def make_stories(*urls: str) -> list[SummarizedStory]:
    return [
        SummarizedStory(title=f"Story {i}", summary="...", source_url=url, source_title="Src")
        for i, url in enumerate(urls)
    ]


def make_scheduler(store, fetcher=None, proposals=(), stories=None, **overrides):
    researcher = MagicMock()
    researcher.discover_sources.return_value = list(proposals)
    summarizer = MagicMock()
    if isinstance(stories, Exception):
        summarizer.summarize_content.side_effect = stories
    else:
        summarizer.summarize_content.return_value = stories or []
    delays = dict(
        warmup_delay=0, topic_delay=0, pass_delay=0.01, init_delay=0, error_delay=0.01,
    )
    delays.update(overrides)
    scheduler = Scheduler(
        store,
        fetcher=fetcher or FakeFetcher(),
        researcher_factory=MagicMock(return_value=researcher),
        summarizer_factory=MagicMock(return_value=summarizer),
        **delays,
    )
    return scheduler, researcher, summarizer


def wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def add_sources(store, topic_id, *urls, **kwargs):
    return [store.add_source(topic_id, url, **kwargs) for url in urls]


# ── Source matching ────────────────────────────────────────────────────────────


class TestMatchSourceId:
    contents = [
        ScrapedContent(url="https://www.bbc.co.uk/news", source_name="BBC", content="", source_id=1),
        ScrapedContent(url="https://reuters.com/world/", source_name="Reuters", content="", source_id=2),
    ]

    def test_exact_url(self):
        assert _match_source_id("https://reuters.com/world", self.contents) == 2

    def test_same_host(self):
        assert _match_source_id("https://bbc.co.uk/news/articles/123", self.contents) == 1

    def test_no_match(self):
        assert _match_source_id("https://example.com/x", self.contents) is None
        assert _match_source_id("", self.contents) is None


# ── Refresh ────────────────────────────────────────────────────────────────────


class TestRefreshTopic:
    def test_discovers_when_topic_has_no_sources(self, keyed_store, topic):
        urls = [f"https://s{i}.example.com" for i in range(5)]
        fetcher = FakeFetcher()
        scheduler, researcher, _ = make_scheduler(
            keyed_store, fetcher,
            proposals=[DiscoveredSource(url=u, name=f"S{i}") for i, u in enumerate(urls)],
            stories=make_stories(urls[0], urls[1]),
        )

        assert scheduler.refresh_topic(topic.id) == 2

        sources = keyed_store.list_sources(topic.id)
        assert sorted(s.url for s in sources) == urls
        assert all(s.active and not s.is_manual for s in sources)
        assert sorted(fetcher.calls[0]) == urls
        researcher.discover_sources.assert_called_once()

    def test_success_stores_stories_and_completes(self, keyed_store, topic):
        add_sources(keyed_store, topic.id, "https://a.example.com", "https://b.example.com")
        scheduler, _, summarizer = make_scheduler(
            keyed_store,
            stories=make_stories("https://a.example.com/story", "https://elsewhere.org/x"),
        )
        scheduler.update_interval(45)

        scheduler.refresh_topic(topic.id)

        row = keyed_store.get_refresh_status(topic.id)
        assert row.status == RefreshState.COMPLETED
        assert row.error_message == ""
        assert row.next_refresh - row.last_refresh == timedelta(minutes=45)

        stories = keyed_store.list_stories(topic.id, limit=10)
        assert len(stories) == 2
        linked = {s.source_url: s.source_id for s in stories}
        assert linked["https://a.example.com/story"] is not None
        assert linked["https://elsewhere.org/x"] is None

        args = summarizer.summarize_content.call_args.args
        assert args[0] == topic.name
        assert len(args[2]) > 0
        assert args[3] == 5

    def test_missing_key_fails_without_fetching(self, store, topic):
        fetcher = FakeFetcher()
        scheduler, _, _ = make_scheduler(store, fetcher)

        with pytest.raises(ConfigurationError):
            scheduler.refresh_topic(topic.id)

        row = store.get_refresh_status(topic.id)
        assert row.status == RefreshState.FAILED
        assert "API key not configured" in row.error_message
        remaining = row.next_refresh - refresh_status.utcnow()
        assert timedelta(minutes=4) < remaining <= timedelta(minutes=5)
        assert fetcher.calls == []

    def test_unknown_topic_writes_no_status(self, keyed_store):
        scheduler, _, _ = make_scheduler(keyed_store)
        with pytest.raises(TopicNotFoundError):
            scheduler.refresh_topic(9999)
        assert keyed_store.list_refresh_statuses() == []

    def test_partial_fetch_failure_counts_against_failing_sources(self, keyed_store, topic):
        a, b, c, d = add_sources(
            keyed_store, topic.id,
            "https://a.example.com", "https://b.example.com",
            "https://c.example.com", "https://d.example.com",
        )
        fetcher = FakeFetcher(failing={b.url, d.url})
        scheduler, _, summarizer = make_scheduler(
            keyed_store, fetcher, stories=make_stories(a.url),
        )

        scheduler.refresh_topic(topic.id)

        counts = {s.url: s.failure_count for s in keyed_store.list_sources(topic.id)}
        assert counts == {a.url: 0, b.url: 1, c.url: 0, d.url: 1}
        assert "timed out" in keyed_store.get_source(b.id).last_error
        contents = summarizer.summarize_content.call_args.args[1]
        assert sorted(x.url for x in contents) == [a.url, c.url]
        assert keyed_store.get_refresh_status(topic.id).status == RefreshState.COMPLETED

    def test_third_failure_deactivates_source(self, keyed_store, topic):
        good, bad = add_sources(keyed_store, topic.id, "https://good.example.com", "https://bad.example.com")
        keyed_store.update_source_status(bad.id, active=True, failure_count=2)
        scheduler, _, _ = make_scheduler(
            keyed_store, FakeFetcher(failing={bad.url}), stories=make_stories(good.url),
        )

        scheduler.refresh_topic(topic.id)

        assert [s.id for s in keyed_store.list_active_sources(topic.id)] == [good.id]
        assert keyed_store.get_source(bad.id).failure_count == 3

    def test_success_resets_failure_count(self, keyed_store, topic):
        (flaky,) = add_sources(keyed_store, topic.id, "https://flaky.example.com")
        keyed_store.update_source_status(flaky.id, active=True, failure_count=2, last_error="old")
        scheduler, _, _ = make_scheduler(keyed_store, stories=make_stories(flaky.url))

        scheduler.refresh_topic(topic.id)

        stored = keyed_store.get_source(flaky.id)
        assert (stored.failure_count, stored.active, stored.last_error) == (0, True, "")

    def test_all_sources_failing(self, keyed_store, topic):
        sources = add_sources(keyed_store, topic.id, "https://a.example.com", "https://b.example.com")
        scheduler, _, summarizer = make_scheduler(
            keyed_store, FakeFetcher(failing={s.url for s in sources}),
        )

        with pytest.raises(RefreshError, match="failed to scrape any content"):
            scheduler.refresh_topic(topic.id)

        row = keyed_store.get_refresh_status(topic.id)
        assert row.status == RefreshState.FAILED
        assert row.error_message == "failed to scrape any content from active sources"
        summarizer.summarize_content.assert_not_called()

    def test_no_sources_after_discovery(self, keyed_store, topic):
        scheduler, _, _ = make_scheduler(
            keyed_store, proposals=[DiscoveredSource(url="ftp://nope.example.com")],
        )
        with pytest.raises(RefreshError, match="no sources available"):
            scheduler.refresh_topic(topic.id)
        assert keyed_store.get_refresh_status(topic.id).status == RefreshState.FAILED

    def test_summarizer_failure(self, keyed_store, topic):
        add_sources(keyed_store, topic.id, "https://a.example.com")
        scheduler, _, _ = make_scheduler(keyed_store, stories=UpstreamError("bad JSON"))

        with pytest.raises(RefreshError, match="failed to summarize content: bad JSON"):
            scheduler.refresh_topic(topic.id)

        row = keyed_store.get_refresh_status(topic.id)
        assert row.status == RefreshState.FAILED
        assert row.error_message.startswith("failed to summarize content")

    def test_failure_keeps_last_refresh(self, keyed_store, topic):
        add_sources(keyed_store, topic.id, "https://a.example.com")
        ok, _, _ = make_scheduler(keyed_store, stories=make_stories("https://a.example.com"))
        ok.refresh_topic(topic.id)
        last = keyed_store.get_refresh_status(topic.id).last_refresh

        broken, _, _ = make_scheduler(keyed_store, stories=UpstreamError("down"))
        with pytest.raises(RefreshError):
            broken.refresh_topic(topic.id)

        assert keyed_store.get_refresh_status(topic.id).last_refresh == last

    def test_old_stories_pruned(self, keyed_store, topic):
        settings = keyed_store.get_settings()
        keyed_store.update_settings(settings.model_copy(update={"stories_per_topic": 1}))
        add_sources(keyed_store, topic.id, "https://a.example.com")
        scheduler, _, _ = make_scheduler(
            keyed_store, stories=make_stories("https://a.example.com/1", "https://a.example.com/2"),
        )

        scheduler.refresh_topic(topic.id)
        scheduler.refresh_topic(topic.id)

        assert keyed_store.count_stories(topic.id) == 3

    def test_story_insert_failure_is_isolated(self, keyed_store, topic, monkeypatch):
        add_sources(keyed_store, topic.id, "https://a.example.com")
        scheduler, _, _ = make_scheduler(
            keyed_store, stories=make_stories("https://a.example.com/1", "https://a.example.com/2"),
        )
        real_create = keyed_store.create_story
        calls = iter([StorageError("disk full"), None])

        def flaky_create(story):
            error = next(calls)
            if error is not None:
                raise error
            return real_create(story)

        monkeypatch.setattr(keyed_store, "create_story", flaky_create)

        assert scheduler.refresh_topic(topic.id) == 1
        assert keyed_store.get_refresh_status(topic.id).status == RefreshState.COMPLETED

    def test_cancelled_refresh_returns_to_pending(self, keyed_store, topic):
        (source,) = add_sources(keyed_store, topic.id, "https://a.example.com")
        fetcher = FakeFetcher()
        scheduler, _, _ = make_scheduler(keyed_store, fetcher)
        stop = threading.Event()
        stop.set()

        with pytest.raises(RefreshCancelled):
            scheduler.refresh_topic(topic.id, stop)

        assert keyed_store.get_refresh_status(topic.id).status == RefreshState.PENDING
        assert keyed_store.get_source(source.id).failure_count == 0
        assert fetcher.calls == []

    def test_concurrent_refresh_of_same_topic_rejected(self, keyed_store, topic):
        add_sources(keyed_store, topic.id, "https://a.example.com")
        gate = threading.Event()
        fetcher = FakeFetcher(gate=gate)
        scheduler, _, _ = make_scheduler(
            keyed_store, fetcher, stories=make_stories("https://a.example.com"),
        )

        thread = scheduler.refresh_topic_async(topic.id)
        try:
            assert fetcher.entered.wait(5)
            assert scheduler.is_refreshing(topic.id)
            assert keyed_store.get_refresh_status(topic.id).status == RefreshState.IN_PROGRESS
            with pytest.raises(RefreshInProgressError):
                scheduler.refresh_topic(topic.id)
        finally:
            gate.set()
            thread.join(5)

        assert not scheduler.is_refreshing(topic.id)
        assert len(fetcher.calls) == 1
        assert keyed_store.get_refresh_status(topic.id).status == RefreshState.COMPLETED

    def test_sources_replaced_during_refresh_keep_stories(self, keyed_store, topic):
        add_sources(keyed_store, topic.id, "https://a.example.com")
        scheduler, _, summarizer = make_scheduler(keyed_store)

        def rediscover_then_summarise(*args):
            keyed_store.replace_ai_sources(
                topic.id, [DiscoveredSource(url="https://b.example.com")]
            )
            return make_stories("https://a.example.com/1", "https://a.example.com/2")

        summarizer.summarize_content.side_effect = rediscover_then_summarise

        assert scheduler.refresh_topic(topic.id) == 2

        stories = keyed_store.list_stories(topic.id, limit=10)
        assert len(stories) == 2
        assert all(s.source_id is None for s in stories)
        assert keyed_store.get_refresh_status(topic.id).status == RefreshState.COMPLETED

    def test_unexpected_error_recorded_as_failure(self, keyed_store, topic):
        add_sources(keyed_store, topic.id, "https://a.example.com")
        fetcher = MagicMock()
        fetcher.fetch_sources.side_effect = RuntimeError("boom")
        scheduler, _, _ = make_scheduler(keyed_store, fetcher)

        with pytest.raises(RuntimeError):
            scheduler.refresh_topic(topic.id)

        row = keyed_store.get_refresh_status(topic.id)
        assert row.status == RefreshState.FAILED
        assert row.error_message == "unexpected error: boom"
        assert not scheduler.is_refreshing(topic.id)


# ── Due topics ─────────────────────────────────────────────────────────────────


class TestDueTopics:
    def test_selection(self, store):
        fresh = store.create_topic("Never refreshed")
        done = store.create_topic("Recently done")
        retry = store.create_topic("Failed, retry elapsed")
        running = store.create_topic("Running")
        store.upsert_refresh_status(refresh_status.completed(done.id, timedelta(hours=2)))
        store.upsert_refresh_status(refresh_status.failed(
            retry.id, "boom", now=refresh_status.utcnow() - timedelta(minutes=6),
        ))
        store.upsert_refresh_status(refresh_status.in_progress(running.id))
        scheduler, _, _ = make_scheduler(store)

        due = scheduler.due_topics(store.list_topics())

        assert [t.id for t in due] == [fresh.id, retry.id]


# ── Passes ─────────────────────────────────────────────────────────────────────


class TestRunPass:
    def test_failing_topic_does_not_block_the_next(self, keyed_store):
        first = keyed_store.create_topic("First")
        second = keyed_store.create_topic("Second")
        add_sources(keyed_store, first.id, "https://a.example.com")
        add_sources(keyed_store, second.id, "https://b.example.com")
        scheduler, _, summarizer = make_scheduler(keyed_store)

        def summarise(topic_name, *args):
            if topic_name == "First":
                raise UpstreamError("model overloaded")
            return make_stories("https://b.example.com/1")

        summarizer.summarize_content.side_effect = summarise

        scheduler.start()
        try:
            assert wait_for(
                lambda: getattr(keyed_store.get_refresh_status(second.id), "status", None)
                == RefreshState.COMPLETED
            )
        finally:
            scheduler.stop()

        assert keyed_store.get_refresh_status(first.id).status == RefreshState.FAILED
        assert keyed_store.count_stories(second.id) == 1

    def test_stop_between_topics_skips_the_rest(self, keyed_store):
        first = keyed_store.create_topic("First")
        second = keyed_store.create_topic("Second")
        add_sources(keyed_store, first.id, "https://a.example.com")
        add_sources(keyed_store, second.id, "https://b.example.com")
        fetcher = FakeFetcher()
        scheduler, _, summarizer = make_scheduler(keyed_store, fetcher)
        stop = threading.Event()

        def summarise_then_stop(*args):
            stop.set()
            return make_stories("https://a.example.com/1")

        summarizer.summarize_content.side_effect = summarise_then_stop

        assert scheduler._run_pass(stop) is True

        assert keyed_store.get_refresh_status(first.id).status == RefreshState.COMPLETED
        assert keyed_store.get_refresh_status(second.id) is None
        assert fetcher.calls == [["https://a.example.com"]]

    def test_listing_failure_retries_after_error_delay_only(self, store, monkeypatch):
        scheduler, _, _ = make_scheduler(store, error_delay=0.2, pass_delay=30)
        calls: list[float] = []

        def failing_list_topics():
            calls.append(time.monotonic())
            raise StorageError("database is locked")

        monkeypatch.setattr(store, "list_topics", failing_list_topics)

        scheduler.start()
        try:
            assert wait_for(lambda: len(calls) >= 4)
        finally:
            scheduler.stop()

        # The first call comes from the initialisation pass.
        gaps = [b - a for a, b in zip(calls[1:], calls[2:])]
        assert all(0.15 <= gap < 5 for gap in gaps)

    def test_listing_failure_reported(self, store, monkeypatch):
        scheduler, _, _ = make_scheduler(store, error_delay=0)
        monkeypatch.setattr(store, "list_topics", MagicMock(side_effect=StorageError("locked")))
        assert scheduler._run_pass(threading.Event()) is False


# ── Lifecycle ──────────────────────────────────────────────────────────────────


class TestLifecycle:
    def test_start_stop(self, store):
        scheduler, _, _ = make_scheduler(store)
        scheduler.start()
        assert scheduler.is_running
        scheduler.stop()
        assert not scheduler.is_running

    def test_start_is_idempotent(self, store):
        scheduler, _, _ = make_scheduler(store)
        scheduler.start()
        first = scheduler._thread
        scheduler.start()
        try:
            assert scheduler._thread is first
        finally:
            scheduler.stop()

    def test_restart(self, store):
        scheduler, _, _ = make_scheduler(store)
        scheduler.start()
        scheduler.stop()
        scheduler.start()
        try:
            assert scheduler.is_running
            assert scheduler._thread.is_alive()
        finally:
            scheduler.stop()

    def test_stop_interrupts_warmup(self, store):
        scheduler, _, _ = make_scheduler(store, warmup_delay=60)
        scheduler.start()
        started = time.monotonic()
        scheduler.stop()
        assert time.monotonic() - started < 5

    def test_stop_when_never_started(self, store):
        scheduler, _, _ = make_scheduler(store)
        scheduler.stop()
        assert not scheduler.is_running

    def test_loop_crash_marks_not_running(self, store, monkeypatch):
        scheduler, _, _ = make_scheduler(store)
        monkeypatch.setattr(scheduler, "_run_pass", MagicMock(side_effect=RuntimeError("bug")))

        scheduler.start()

        assert wait_for(lambda: not scheduler.is_running)
        scheduler.stop()

    def test_topic_list_failure_keeps_loop_alive(self, store, monkeypatch):
        scheduler, _, _ = make_scheduler(store)
        list_topics = MagicMock(side_effect=StorageError("locked"))
        monkeypatch.setattr(store, "list_topics", list_topics)

        scheduler.start()
        try:
            assert wait_for(lambda: list_topics.call_count >= 3)
            assert scheduler.is_running
        finally:
            scheduler.stop()

    def test_loop_refreshes_due_topics(self, keyed_store, topic):
        add_sources(keyed_store, topic.id, "https://a.example.com")
        scheduler, _, _ = make_scheduler(keyed_store, stories=make_stories("https://a.example.com"))

        scheduler.start()
        try:
            assert wait_for(
                lambda: getattr(keyed_store.get_refresh_status(topic.id), "status", None)
                == RefreshState.COMPLETED
            )
        finally:
            scheduler.stop()

        assert keyed_store.count_stories(topic.id) == 1

    def test_loop_reloads_interval(self, store):
        settings = store.get_settings()
        store.update_settings(settings.model_copy(update={"refresh_interval_minutes": 30}))
        scheduler, _, _ = make_scheduler(store)

        scheduler.start()
        try:
            assert wait_for(lambda: scheduler.interval == timedelta(minutes=30))
        finally:
            scheduler.stop()


class TestInterval:
    def test_default(self, store):
        scheduler, _, _ = make_scheduler(store)
        assert scheduler.interval == timedelta(minutes=120)

    def test_update(self, store):
        scheduler, _, _ = make_scheduler(store)
        scheduler.update_interval(15)
        assert scheduler.interval == timedelta(minutes=15)

    def test_rejects_non_positive(self, store):
        scheduler, _, _ = make_scheduler(store)
        with pytest.raises(ValueError):
            scheduler.update_interval(0)


# ── Initialisation ─────────────────────────────────────────────────────────────


class TestInitializeTopics:
    def test_discovers_only_for_topics_without_sources(self, keyed_store):
        empty = keyed_store.create_topic("Empty")
        seeded = keyed_store.create_topic("Seeded")
        keyed_store.add_source(seeded.id, "https://manual.example.com", is_manual=True)
        scheduler, researcher, _ = make_scheduler(
            keyed_store, proposals=[DiscoveredSource(url="https://found.example.com")],
        )

        scheduler.initialize_topics()

        assert researcher.discover_sources.call_count == 1
        assert researcher.discover_sources.call_args.args[0] == "Empty"
        assert [s.url for s in keyed_store.list_sources(empty.id)] == ["https://found.example.com"]

    def test_skipped_without_key(self, store, topic):
        scheduler, researcher, _ = make_scheduler(store)
        scheduler.initialize_topics()
        researcher.discover_sources.assert_not_called()

    def test_discovery_failure_does_not_stop_other_topics(self, keyed_store):
        keyed_store.create_topic("First")
        keyed_store.create_topic("Second")
        scheduler, researcher, _ = make_scheduler(keyed_store)
        researcher.discover_sources.side_effect = [UpstreamError("down"), []]

        scheduler.initialize_topics()

        assert researcher.discover_sources.call_count == 2
