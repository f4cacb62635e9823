"""
Pydantic models shared across the Topic Digest core.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class Topic(BaseModel):
    """A user-defined subject whose stories are refreshed periodically."""

    id: int
    name: str
    description: str = ""
    position: int = 0
    created_at: datetime
    updated_at: datetime


class Source(BaseModel):
    """A URL feeding content for one topic."""

    id: int
    topic_id: int
    url: str
    name: str = ""
    is_manual: bool = False
    failure_count: int = 0
    active: bool = True
    last_error: str = ""
    created_at: datetime


class Story(BaseModel):
    """A summarised article attributed to a topic (and maybe a source)."""

    id: Optional[int] = None
    topic_id: int
    source_id: Optional[int] = None
    title: str
    summary: str
    source_url: str
    source_title: str = ""
    image_url: Optional[str] = None
    published_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class RefreshState(str, Enum):
    """Lifecycle of a topic refresh."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class RefreshStatus(BaseModel):
    """Per-topic scheduler state, one row per topic."""

    topic_id: int
    last_refresh: Optional[datetime] = None
    next_refresh: Optional[datetime] = None
    status: RefreshState = RefreshState.PENDING
    error_message: str = ""


DEFAULT_SOURCING_PROMPT = (
    "Find reliable, reputable news sources that provide regular updates. "
    "Prefer sources with RSS feeds or well-structured HTML. "
    "Avoid paywalled content when possible."
)
DEFAULT_SUMMARIZING_PROMPT = (
    "Summarize the news story in a clear, informative tone. Focus on the key "
    "facts and why this story matters. Keep the summary between 75-150 words."
)


class AppSettings(BaseModel):
    """User-editable settings stored as a singleton row."""

    refresh_interval_minutes: int = 120
    stories_per_topic: int = 5
    global_sourcing_prompt: str = DEFAULT_SOURCING_PROMPT
    global_summarizing_prompt: str = DEFAULT_SUMMARIZING_PROMPT
    anthropic_api_key: str = ""
    primary_color: str = "#2563eb"
    secondary_color: str = "#1e40af"
    dark_mode: bool = False
    dashboard_title: str = "Dashboard"
    dashboard_subtitle: str = "Your personalized news feed"

    def masked(self) -> AppSettings:
        """Return a copy safe to send to a browser."""
        key = self.anthropic_api_key
        if key:
            key = "********" + key[-4:]
        return self.model_copy(update={"anthropic_api_key": key})


class TopicWithStories(BaseModel):
    topic: Topic
    stories: list[Story]


# ── AI contracts ───────────────────────────────────────────────────────────────


class DiscoveredSource(BaseModel):
    """A candidate source proposed by the discovery call."""

    url: str
    name: str = ""
    description: str = ""


class SummarizedStory(BaseModel):
    """A story produced by the summarisation call."""

    title: str
    summary: str
    source_url: str = ""
    source_title: str = ""
