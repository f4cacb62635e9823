"""Exception hierarchy for the refresh pipeline.

Every error raised on purpose by ``core`` derives from ``TopicDigestError`` so
that callers (the scheduler, the Flask layer) can tell expected failures from
bugs.
"""

from __future__ import annotations


class TopicDigestError(Exception):
    """Base class for all expected pipeline failures."""


class ConfigurationError(TopicDigestError):
    """A required setting (usually the API key) is missing."""


class InvalidURLError(TopicDigestError, ValueError):
    """A source URL failed syntactic validation."""


class TopicNotFoundError(TopicDigestError, LookupError):
    """The requested topic does not exist."""

    def __init__(self, topic_id: int) -> None:
        super().__init__(f"topic not found: {topic_id}")
        self.topic_id = topic_id


class UpstreamError(TopicDigestError):
    """The AI collaborator failed or returned something unparseable."""


class FetchError(TopicDigestError):
    """A source could not be fetched."""


class InsufficientContentError(FetchError):
    """A source was fetched but yielded too little text to be useful."""


class StorageError(TopicDigestError):
    """The database rejected an operation."""


class RefreshError(TopicDigestError):
    """A refresh step failed; the message is what gets stored in the status row."""


class RefreshInProgressError(TopicDigestError):
    """Another refresh of the same topic is already running."""

    def __init__(self, topic_id: int) -> None:
        super().__init__(f"refresh already in progress for topic {topic_id}")
        self.topic_id = topic_id


class RefreshCancelled(TopicDigestError):
    """The scheduler was asked to stop while a refresh was running."""
