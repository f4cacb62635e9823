"""
SQLite-backed storage for Topic Digest.

Schema
──────
table: topics          id, name, description, position, created_at, updated_at
table: sources         id, topic_id → topics (CASCADE), url, name, is_manual,
                       failure_count, active, last_error, created_at
table: stories         id, topic_id → topics (CASCADE),
                       source_id → sources (SET NULL), title, summary,
                       source_url, source_title, image_url, published_at,
                       created_at
table: settings        singleton row (id = 1)
table: refresh_status  topic_id → topics (CASCADE), last_refresh,
                       next_refresh, status, error_message

All timestamps are stored as ISO-8601 UTC text. A fresh connection is opened
per operation so the store can be shared between the scheduler thread, fetch
workers and Flask request threads.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from core.errors import StorageError
from core.models import (
    AppSettings,
    DiscoveredSource,
    RefreshState,
    RefreshStatus,
    Source,
    Story,
    Topic,
    TopicWithStories,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS topics (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    name        TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    position    INTEGER NOT NULL DEFAULT 0,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sources (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    topic_id      INTEGER NOT NULL,
    url           TEXT NOT NULL,
    name          TEXT NOT NULL DEFAULT '',
    is_manual     INTEGER NOT NULL DEFAULT 0,
    failure_count INTEGER NOT NULL DEFAULT 0,
    active        INTEGER NOT NULL DEFAULT 1,
    last_error    TEXT NOT NULL DEFAULT '',
    created_at    TEXT NOT NULL,
    FOREIGN KEY (topic_id) REFERENCES topics(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS stories (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    topic_id     INTEGER NOT NULL,
    source_id    INTEGER,
    title        TEXT NOT NULL,
    summary      TEXT NOT NULL,
    source_url   TEXT NOT NULL,
    source_title TEXT NOT NULL DEFAULT '',
    image_url    TEXT,
    published_at TEXT,
    created_at   TEXT NOT NULL,
    FOREIGN KEY (topic_id) REFERENCES topics(id) ON DELETE CASCADE,
    FOREIGN KEY (source_id) REFERENCES sources(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS settings (
    id                        INTEGER PRIMARY KEY CHECK (id = 1),
    refresh_interval_minutes  INTEGER NOT NULL,
    stories_per_topic         INTEGER NOT NULL,
    global_sourcing_prompt    TEXT NOT NULL,
    global_summarizing_prompt TEXT NOT NULL,
    anthropic_api_key         TEXT NOT NULL DEFAULT '',
    primary_color             TEXT NOT NULL,
    secondary_color           TEXT NOT NULL,
    dark_mode                 INTEGER NOT NULL DEFAULT 0,
    dashboard_title           TEXT NOT NULL,
    dashboard_subtitle        TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS refresh_status (
    topic_id      INTEGER PRIMARY KEY,
    last_refresh  TEXT,
    next_refresh  TEXT,
    status        TEXT NOT NULL DEFAULT 'pending',
    error_message TEXT NOT NULL DEFAULT '',
    FOREIGN KEY (topic_id) REFERENCES topics(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_sources_topic_id ON sources(topic_id);
CREATE INDEX IF NOT EXISTS idx_stories_topic_id ON stories(topic_id);
CREATE INDEX IF NOT EXISTS idx_stories_created_at ON stories(created_at DESC);
"""

_SETTINGS_FIELDS = tuple(AppSettings.model_fields)

_TOPIC_COLUMNS = "id, name, description, position, created_at, updated_at"
_SOURCE_COLUMNS = (
    "id, topic_id, url, name, is_manual, failure_count, active, last_error, created_at"
)
_STORY_COLUMNS = (
    "id, topic_id, source_id, title, summary, source_url, source_title, "
    "image_url, published_at, created_at"
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_text(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _to_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _topic(row: sqlite3.Row) -> Topic:
    return Topic(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        position=row["position"],
        created_at=_to_datetime(row["created_at"]),
        updated_at=_to_datetime(row["updated_at"]),
    )


def _source(row: sqlite3.Row) -> Source:
    return Source(
        id=row["id"],
        topic_id=row["topic_id"],
        url=row["url"],
        name=row["name"],
        is_manual=bool(row["is_manual"]),
        failure_count=row["failure_count"],
        active=bool(row["active"]),
        last_error=row["last_error"],
        created_at=_to_datetime(row["created_at"]),
    )


def _story(row: sqlite3.Row) -> Story:
    return Story(
        id=row["id"],
        topic_id=row["topic_id"],
        source_id=row["source_id"],
        title=row["title"],
        summary=row["summary"],
        source_url=row["source_url"],
        source_title=row["source_title"],
        image_url=row["image_url"],
        published_at=_to_datetime(row["published_at"]),
        created_at=_to_datetime(row["created_at"]),
    )


def _status(row: sqlite3.Row) -> RefreshStatus:
    return RefreshStatus(
        topic_id=row["topic_id"],
        last_refresh=_to_datetime(row["last_refresh"]),
        next_refresh=_to_datetime(row["next_refresh"]),
        status=RefreshState(row["status"]),
        error_message=row["error_message"] or "",
    )


class Store:
    """Storage collaborator used by the scheduler and the web layer.

    Args:
        db_path: SQLite database file; parent directories are created.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)

    @contextmanager
    def _connect(self):
        """Yield a connected sqlite3.Connection, creating the file/dir if needed.

        Commits on success, rolls back on error, and re-raises any
        ``sqlite3.Error`` as ``StorageError``.
        """
        conn = None
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), timeout=30)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            if conn is not None:
                conn.rollback()
            raise StorageError(str(exc)) from exc
        except Exception:
            if conn is not None:
                conn.rollback()
            raise
        finally:
            if conn is not None:
                conn.close()

    def init_db(self) -> None:
        """Create the tables if they don't exist yet."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(_SCHEMA)
        logger.info("Database initialised at %s", self.db_path)

    # ── Topics ─────────────────────────────────────────────────────────────

    def list_topics(self) -> list[Topic]:
        """Return all topics in display order."""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_TOPIC_COLUMNS} FROM topics ORDER BY position ASC, id ASC"
            ).fetchall()
        return [_topic(row) for row in rows]

    def get_topic(self, topic_id: int) -> Topic | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TOPIC_COLUMNS} FROM topics WHERE id = ?", (topic_id,)
            ).fetchone()
        return _topic(row) if row is not None else None

    def create_topic(self, name: str, description: str = "") -> Topic:
        """Insert a topic at the end of the display order."""
        now = _now()
        with self._connect() as conn:
            (max_pos,) = conn.execute("SELECT MAX(position) FROM topics").fetchone()
            position = 0 if max_pos is None else max_pos + 1
            cursor = conn.execute(
                "INSERT INTO topics (name, description, position, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (name, description, position, now, now),
            )
            topic_id = cursor.lastrowid
        logger.info("Created topic id=%d name=%r", topic_id, name)
        return self.get_topic(topic_id)

    def update_topic(self, topic_id: int, name: str, description: str) -> bool:
        """Rename / re-describe a topic. Returns False if it doesn't exist."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE topics SET name = ?, description = ?, updated_at = ? WHERE id = ?",
                (name, description, _now(), topic_id),
            )
        return cursor.rowcount > 0

    def delete_topic(self, topic_id: int) -> bool:
        """Delete a topic together with its sources, stories and status."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM topics WHERE id = ?", (topic_id,))
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted topic id=%d", topic_id)
        return deleted

    def reorder_topics(self, topic_ids: Iterable[int]) -> None:
        """Set each topic's position to its index in *topic_ids*."""
        with self._connect() as conn:
            conn.executemany(
                "UPDATE topics SET position = ? WHERE id = ?",
                [(position, topic_id) for position, topic_id in enumerate(topic_ids)],
            )

    # ── Sources ────────────────────────────────────────────────────────────

    def list_sources(self, topic_id: int) -> list[Source]:
        """Return every source of a topic, active or not."""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE topic_id = ? ORDER BY id",
                (topic_id,),
            ).fetchall()
        return [_source(row) for row in rows]

    def list_active_sources(self, topic_id: int) -> list[Source]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_SOURCE_COLUMNS} FROM sources "
                "WHERE topic_id = ? AND active = 1 ORDER BY id",
                (topic_id,),
            ).fetchall()
        return [_source(row) for row in rows]

    def get_source(self, source_id: int) -> Source | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE id = ?", (source_id,)
            ).fetchone()
        return _source(row) if row is not None else None

    def add_source(
        self,
        topic_id: int,
        url: str,
        name: str = "",
        is_manual: bool = False,
    ) -> Source:
        """Insert a single source and return it."""
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO sources (topic_id, url, name, is_manual, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (topic_id, url, name, int(is_manual), _now()),
            )
            source_id = cursor.lastrowid
        return self.get_source(source_id)

    def delete_source(self, source_id: int, topic_id: Optional[int] = None) -> bool:
        """Delete a source; stories that referenced it keep a NULL link."""
        query = "DELETE FROM sources WHERE id = ?"
        params: tuple = (source_id,)
        if topic_id is not None:
            query += " AND topic_id = ?"
            params = (source_id, topic_id)
        with self._connect() as conn:
            cursor = conn.execute(query, params)
        return cursor.rowcount > 0

    def replace_ai_sources(
        self,
        topic_id: int,
        candidates: Iterable[DiscoveredSource],
    ) -> list[Source]:
        """Swap all AI-discovered sources of a topic for *candidates*.

        The delete and the inserts run in one transaction. Manual sources
        are left alone.

        Returns:
            The topic's AI sources after the swap.
        """
        now = _now()
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM sources WHERE topic_id = ? AND is_manual = 0", (topic_id,)
            )
            conn.executemany(
                "INSERT INTO sources (topic_id, url, name, is_manual, created_at) "
                "VALUES (?, ?, ?, 0, ?)",
                [(topic_id, c.url, c.name, now) for c in candidates],
            )
        return [s for s in self.list_sources(topic_id) if not s.is_manual]

    def update_source_status(
        self,
        source_id: int,
        active: bool,
        failure_count: int,
        last_error: str = "",
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE sources SET active = ?, failure_count = ?, last_error = ? "
                "WHERE id = ?",
                (int(active), failure_count, last_error, source_id),
            )

    # ── Stories ────────────────────────────────────────────────────────────

    def list_stories(self, topic_id: int, limit: int = 5) -> list[Story]:
        """Return the *limit* most recent stories of a topic, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_STORY_COLUMNS} FROM stories WHERE topic_id = ? "
                "ORDER BY created_at DESC, id DESC LIMIT ?",
                (topic_id, limit),
            ).fetchall()
        return [_story(row) for row in rows]

    def count_stories(self, topic_id: int) -> int:
        with self._connect() as conn:
            (count,) = conn.execute(
                "SELECT COUNT(*) FROM stories WHERE topic_id = ?", (topic_id,)
            ).fetchone()
        return count

    def create_story(self, story: Story) -> Story:
        """Insert *story* and return it with ``id`` and ``created_at`` set.

        A ``source_id`` that no longer exists (the source was replaced while
        the story was being produced) is stored as NULL.
        """
        created_at = datetime.now(timezone.utc)
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO stories (topic_id, source_id, title, summary, source_url, "
                "source_title, image_url, published_at, created_at) "
                "VALUES (?, (SELECT id FROM sources WHERE id = ?), ?, ?, ?, ?, ?, ?, ?)",
                (
                    story.topic_id,
                    story.source_id,
                    story.title,
                    story.summary,
                    story.source_url,
                    story.source_title,
                    story.image_url,
                    _to_text(story.published_at),
                    created_at.isoformat(),
                ),
            )
            story_id = cursor.lastrowid
            (source_id,) = conn.execute(
                "SELECT source_id FROM stories WHERE id = ?", (story_id,)
            ).fetchone()
        return story.model_copy(
            update={"id": story_id, "source_id": source_id, "created_at": created_at}
        )

    def prune_stories(self, topic_id: int, keep: int) -> int:
        """Delete all but the *keep* most recent stories of a topic.

        Returns:
            The number of stories deleted.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM stories WHERE topic_id = ? AND id NOT IN ("
                "  SELECT id FROM stories WHERE topic_id = ? "
                "  ORDER BY created_at DESC, id DESC LIMIT ?"
                ")",
                (topic_id, topic_id, max(keep, 0)),
            )
        if cursor.rowcount:
            logger.info("Pruned %d old stories for topic id=%d", cursor.rowcount, topic_id)
        return cursor.rowcount

    def topics_with_stories(self, stories_per_topic: int) -> list[TopicWithStories]:
        return [
            TopicWithStories(topic=topic, stories=self.list_stories(topic.id, stories_per_topic))
            for topic in self.list_topics()
        ]

    # ── Settings ───────────────────────────────────────────────────────────

    def get_settings(self) -> AppSettings:
        """Return the settings row, inserting defaults on first use."""
        columns = ", ".join(_SETTINGS_FIELDS)
        with self._connect() as conn:
            row = conn.execute(f"SELECT {columns} FROM settings WHERE id = 1").fetchone()
            if row is None:
                defaults = AppSettings()
                self._write_settings(conn, defaults)
                return defaults
        data = dict(row)
        data["dark_mode"] = bool(data["dark_mode"])
        return AppSettings(**data)

    def update_settings(self, settings: AppSettings) -> None:
        with self._connect() as conn:
            self._write_settings(conn, settings)

    @staticmethod
    def _write_settings(conn: sqlite3.Connection, settings: AppSettings) -> None:
        values = settings.model_dump()
        values["dark_mode"] = int(values["dark_mode"])
        columns = ", ".join(_SETTINGS_FIELDS)
        placeholders = ", ".join("?" for _ in _SETTINGS_FIELDS)
        updates = ", ".join(f"{name} = excluded.{name}" for name in _SETTINGS_FIELDS)
        conn.execute(
            f"INSERT INTO settings (id, {columns}) VALUES (1, {placeholders}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates}",
            [values[name] for name in _SETTINGS_FIELDS],
        )

    # ── Refresh status ─────────────────────────────────────────────────────

    def get_refresh_status(self, topic_id: int) -> RefreshStatus | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT topic_id, last_refresh, next_refresh, status, error_message "
                "FROM refresh_status WHERE topic_id = ?",
                (topic_id,),
            ).fetchone()
        return _status(row) if row is not None else None

    def list_refresh_statuses(self) -> list[RefreshStatus]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT topic_id, last_refresh, next_refresh, status, error_message "
                "FROM refresh_status ORDER BY topic_id"
            ).fetchall()
        return [_status(row) for row in rows]

    def upsert_refresh_status(self, status: RefreshStatus) -> None:
        """Insert or replace a topic's status row.

        A status without ``last_refresh`` keeps the stored one.
        """
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO refresh_status "
                "(topic_id, last_refresh, next_refresh, status, error_message) "
                "VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT(topic_id) DO UPDATE SET "
                "  last_refresh = COALESCE(excluded.last_refresh, refresh_status.last_refresh),"
                "  next_refresh = excluded.next_refresh,"
                "  status = excluded.status,"
                "  error_message = excluded.error_message",
                (
                    status.topic_id,
                    _to_text(status.last_refresh),
                    _to_text(status.next_refresh),
                    status.status.value,
                    status.error_message,
                ),
            )

    def reset_interrupted_refreshes(self) -> int:
        """Mark rows left ``in_progress`` by a previous process as ``pending``."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE refresh_status SET status = ?, next_refresh = NULL "
                "WHERE status = ?",
                (RefreshState.PENDING.value, RefreshState.IN_PROGRESS.value),
            )
        if cursor.rowcount:
            logger.info("Reset %d interrupted refreshes to pending", cursor.rowcount)
        return cursor.rowcount
