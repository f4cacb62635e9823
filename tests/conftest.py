"""Shared fixtures: every test gets its own temporary SQLite database."""

from __future__ import annotations

import pytest

from core.store import Store


@pytest.fixture
def store(tmp_path) -> Store:
    """A freshly initialised store backed by a temp file."""
    db = Store(tmp_path / "test_topic_digest.db")
    db.init_db()
    return db


@pytest.fixture
def keyed_store(store: Store) -> Store:
    """A store whose settings carry an API key."""
    settings = store.get_settings()
    store.update_settings(settings.model_copy(update={"anthropic_api_key": "test-key"}))
    return store


@pytest.fixture
def topic(store: Store):
    return store.create_topic("Formula 1", "F1 racing news and results")
