"""AI summarisation using the Claude API.

Turns the text scraped from a topic's sources into at most ``max_stories``
short news stories:

    summarize_content(topic_name, contents, instructions, max_stories)
        → list[SummarizedStory]   ({title, summary, source_url, source_title})

An empty ``contents`` list short-circuits to ``[]`` without touching the API.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import TypeAdapter, ValidationError

from core.errors import UpstreamError
from core.llm import ClaudeClient
from core.models import SummarizedStory

if TYPE_CHECKING:
    from core.fetcher import ScrapedContent

logger = logging.getLogger(__name__)

#: System prompt for the summarisation call.
_SUMMARY_SYSTEM = (
    "You are a news summarization assistant. Analyze scraped web content and "
    "create clear, informative news summaries. Return only valid JSON, no "
    "commentary, no markdown fences."
)

_STORIES_ADAPTER = TypeAdapter(list[SummarizedStory])


def format_contents(contents: list[ScrapedContent]) -> str:
    """Render scraped content as numbered blocks for the prompt."""
    return "".join(
        f"\n--- Source {i + 1}: {c.source_name} ---\nURL: {c.url}\n{c.content}\n"
        for i, c in enumerate(contents)
    )


class Summarizer(ClaudeClient):
    """Summarisation collaborator.

    Side-effect-free apart from the API call, so it is easy to unit-test
    with a mocked ``_client``.
    """

    def summarize_content(
        self,
        topic_name: str,
        contents: list[ScrapedContent],
        instructions: str = "",
        max_stories: int = 5,
    ) -> list[SummarizedStory]:
        """Condense scraped content into news stories.

        Args:
            topic_name: Display name of the topic.
            contents: Successfully scraped sources.
            instructions: Global summarising instructions from the settings.
            max_stories: Upper bound on the number of stories returned.

        Returns:
            At most *max_stories* stories, in the order Claude ranked them.

        Raises:
            UpstreamError: On API failures or malformed output.
        """
        if not contents:
            return []

        prompt = (
            f"Topic: {topic_name}\n\n"
            f"{instructions}\n\n"
            f"Scraped Content:\n{format_contents(contents)}\n"
            f"From the content above, identify the {max_stories} most interesting and "
            "relevant news stories. For each story:\n"
            "1. Create a compelling headline (title)\n"
            "2. Write a summary of 75-150 words focusing on key facts and why this "
            "story matters\n"
            "3. Include the source URL where the story was found\n"
            "4. Include the source name/title\n\n"
            "Format your response as a JSON array like this:\n"
            '[{"title": "Headline Here", "summary": "Summary text here...", '
            '"source_url": "https://source.com/article", "source_title": "Source Name"}]'
        )

        logger.info(
            "Summarising %d sources for topic=%r (max %d stories)",
            len(contents), topic_name, max_stories,
        )
        data = self.complete_json(_SUMMARY_SYSTEM, prompt, max_tokens=4096)
        try:
            stories = _STORIES_ADAPTER.validate_python(data)
        except ValidationError as exc:
            raise UpstreamError(f"failed to parse stories JSON: {exc}") from exc

        return stories[:max_stories]
