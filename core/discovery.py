"""Source discovery: AI candidates → validated, persisted AI sources.

Each run replaces every AI-discovered source of a topic (delete-then-insert
in one transaction). Manual sources are never touched, and a candidate that
duplicates a manual source is dropped.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from core.errors import ConfigurationError, InvalidURLError, TopicNotFoundError
from core.models import DiscoveredSource, Source
from core.researcher import SourceResearcher
from core.store import Store
from core.validator import validate_url

logger = logging.getLogger(__name__)

#: Upper bound on AI sources kept per topic.
MAX_DISCOVERED_SOURCES = 8

ResearcherFactory = Callable[[str], SourceResearcher]


def _normalise(url: str) -> str:
    return url.rstrip("/").lower()


def filter_candidates(
    candidates: list[DiscoveredSource],
    existing_urls: set[str] | None = None,
    limit: int = MAX_DISCOVERED_SOURCES,
) -> list[DiscoveredSource]:
    """Drop invalid, duplicate and already-known candidates.

    Args:
        candidates: Raw AI proposals.
        existing_urls: URLs that must not be added again (manual sources).
        limit: Maximum number of candidates returned.

    Returns:
        Validated candidates in their original order.
    """
    seen = {_normalise(u) for u in existing_urls or ()}
    kept: list[DiscoveredSource] = []

    for candidate in candidates:
        try:
            url = validate_url(candidate.url)
        except InvalidURLError as exc:
            logger.warning("Skipping invalid source URL %r: %s", candidate.url, exc)
            continue

        key = _normalise(url)
        if key in seen:
            logger.debug("Skipping duplicate source URL %r", url)
            continue
        seen.add(key)

        kept.append(candidate.model_copy(update={"url": url, "name": candidate.name.strip()}))
        if len(kept) >= limit:
            break

    return kept


class SourceDiscovery:
    """Runs the AI discovery call for a topic and persists the result.

    Args:
        store: Storage collaborator.
        researcher_factory: Builds a ``SourceResearcher`` from an API key.
    """

    def __init__(self, store: Store, researcher_factory: ResearcherFactory) -> None:
        self.store = store
        self.researcher_factory = researcher_factory

    def discover(self, topic_id: int) -> list[Source]:
        """Replace the topic's AI sources with freshly discovered ones.

        Returns:
            The topic's AI sources after the swap.

        Raises:
            TopicNotFoundError: If the topic does not exist.
            ConfigurationError: If no API key is configured.
            UpstreamError: If the AI call fails or returns malformed output.
        """
        topic = self.store.get_topic(topic_id)
        if topic is None:
            raise TopicNotFoundError(topic_id)

        settings = self.store.get_settings()
        if not settings.anthropic_api_key:
            raise ConfigurationError("Anthropic API key not configured")

        researcher = self.researcher_factory(settings.anthropic_api_key)
        candidates = researcher.discover_sources(
            topic.name, topic.description, settings.global_sourcing_prompt
        )

        manual_urls = {s.url for s in self.store.list_sources(topic_id) if s.is_manual}
        valid = filter_candidates(candidates, manual_urls)
        sources = self.store.replace_ai_sources(topic_id, valid)

        logger.info(
            "Discovered %d sources for topic %r (%d proposed)",
            len(sources), topic.name, len(candidates),
        )
        return sources
