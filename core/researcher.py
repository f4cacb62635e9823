"""
AI source researcher for Topic Digest.

Asks Claude to propose a handful of web sources (sites, RSS feeds, APIs) that
publish ongoing news for a topic.

Contract
────────
discover_sources(topic_name, description, instructions)
    → list[DiscoveredSource]   ({url, name, description} records)

Raises ``ConfigurationError`` when no API key is configured and
``UpstreamError`` on transport failures or malformed output. URL validation
and persistence are the caller's business (see ``core.discovery``).
"""

from __future__ import annotations

import logging

from pydantic import TypeAdapter, ValidationError

from core.errors import UpstreamError
from core.llm import ClaudeClient
from core.models import DiscoveredSource

logger = logging.getLogger(__name__)

RESEARCH_SYSTEM = (
    "You are a helpful assistant that discovers reliable web sources for news topics. "
    "Return only valid JSON, no commentary, no markdown fences."
)

_SOURCES_ADAPTER = TypeAdapter(list[DiscoveredSource])


def build_prompt(topic_name: str, description: str, instructions: str) -> str:
    return (
        f"Topic: {topic_name}\n"
        f"Description: {description}\n\n"
        f"{instructions}\n\n"
        "Find 4-8 reliable web sources (websites, RSS feeds, or APIs) that provide "
        "ongoing news and updates related to this topic. For each source, provide:\n"
        "1. The URL (must be a real, working URL)\n"
        "2. A short name for the source\n"
        "3. A brief description of what content it provides\n\n"
        "Format your response as a JSON array like this:\n"
        '[{"url": "https://example.com/feed", "name": "Example News", '
        '"description": "Daily updates on topic"}]'
    )


class SourceResearcher(ClaudeClient):
    """AI discovery collaborator."""

    def discover_sources(
        self,
        topic_name: str,
        description: str,
        instructions: str = "",
    ) -> list[DiscoveredSource]:
        """Ask Claude for candidate sources for a topic.

        Args:
            topic_name: Display name of the topic.
            description: Free-text description steering the search.
            instructions: Global sourcing instructions from the settings.

        Returns:
            Candidate sources, not yet validated.

        Raises:
            UpstreamError: If the reply is not a JSON array of source records.
        """
        logger.info("Discovering sources for topic=%r", topic_name)
        data = self.complete_json(
            RESEARCH_SYSTEM,
            build_prompt(topic_name, description, instructions),
            max_tokens=1500,
        )
        try:
            sources = _SOURCES_ADAPTER.validate_python(data)
        except ValidationError as exc:
            raise UpstreamError(f"failed to parse sources JSON: {exc}") from exc

        logger.info("AI proposed %d sources for topic=%r", len(sources), topic_name)
        return sources
