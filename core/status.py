"""Refresh status state machine and source failure policy.

States
──────
pending ──► in_progress ──► completed
                       └──► failed

- No status row at all means "never refreshed" and the topic is due at once.
- ``in_progress`` is written before any network I/O and is never due.
- ``completed`` schedules the next refresh one interval ahead.
- ``failed`` schedules a retry after a fixed five minutes, whatever the
  configured interval.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from core.models import RefreshState, RefreshStatus

#: Retry delay after any failed refresh.
RETRY_BACKOFF = timedelta(minutes=5)
#: Longest error message stored in a status or source row.
MAX_ERROR_LENGTH = 500
#: Consecutive failures after which a source is deactivated.
SOURCE_FAILURE_THRESHOLD = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def truncate(message: str, limit: int = MAX_ERROR_LENGTH) -> str:
    """Cap *message* at *limit* characters."""
    message = message or ""
    return message if len(message) <= limit else message[:limit]


def is_due(status: Optional[RefreshStatus], now: Optional[datetime] = None) -> bool:
    """Return True if a topic with this status should be refreshed now.

    Examples:
        >>> is_due(None)
        True
    """
    if status is None:
        return True
    if status.status == RefreshState.IN_PROGRESS:
        return False
    if status.next_refresh is None:
        return True
    return (now or utcnow()) >= status.next_refresh


def in_progress(topic_id: int) -> RefreshStatus:
    return RefreshStatus(topic_id=topic_id, status=RefreshState.IN_PROGRESS)


def pending(topic_id: int) -> RefreshStatus:
    return RefreshStatus(topic_id=topic_id, status=RefreshState.PENDING)


def completed(
    topic_id: int,
    interval: timedelta,
    now: Optional[datetime] = None,
) -> RefreshStatus:
    now = now or utcnow()
    return RefreshStatus(
        topic_id=topic_id,
        last_refresh=now,
        next_refresh=now + interval,
        status=RefreshState.COMPLETED,
    )


def failed(
    topic_id: int,
    message: str,
    now: Optional[datetime] = None,
) -> RefreshStatus:
    now = now or utcnow()
    return RefreshStatus(
        topic_id=topic_id,
        next_refresh=now + RETRY_BACKOFF,
        status=RefreshState.FAILED,
        error_message=truncate(message),
    )


def next_source_state(failure_count: int, ok: bool) -> tuple[bool, int]:
    """Apply one fetch outcome to a source's failure counter.

    Args:
        failure_count: The counter before this outcome.
        ok: Whether the fetch produced usable content.

    Returns:
        ``(active, failure_count)`` after the outcome. A success resets the
        counter and reactivates; the third consecutive failure deactivates.

    Examples:
        >>> next_source_state(2, ok=False)
        (False, 3)
        >>> next_source_state(3, ok=True)
        (True, 0)
    """
    if ok:
        return True, 0
    count = failure_count + 1
    return count < SOURCE_FAILURE_THRESHOLD, count
