"""Process settings — all configuration loaded from environment variables.

Usage:
    from config.settings import Settings
    settings = Settings()
    settings.validate()   # raises ValueError on nonsensical values

User-editable options (refresh interval, prompts, API key, colours) live in
the database instead; see ``core.models.AppSettings``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_DB_PATH = Path(__file__).parent.parent / "data" / "topic_digest.db"


def _env_float(name: str, default: str) -> float:
    return float(os.environ.get(name, default))


@dataclass
class Settings:
    """Centralised process configuration.

    All values are read from environment variables at instantiation time
    so that tests can override them by patching ``os.environ``.
    """

    # ── API Keys ────────────────────────────────────────────────────────────
    #: Seeds the stored settings when no key has been saved through the UI.
    anthropic_api_key: str = field(
        default_factory=lambda: os.environ.get("ANTHROPIC_API_KEY", "")
    )

    # ── Flask ───────────────────────────────────────────────────────────────
    debug: bool = field(
        default_factory=lambda: os.environ.get("FLASK_DEBUG", "0") == "1"
    )
    host: str = field(
        default_factory=lambda: os.environ.get("HOST", "0.0.0.0")
    )
    port: int = field(
        default_factory=lambda: int(os.environ.get("PORT", "7979"))
    )

    # ── Storage ─────────────────────────────────────────────────────────────
    db_path: Path = field(
        default_factory=lambda: Path(os.environ.get("DB_PATH", str(DEFAULT_DB_PATH)))
    )

    # ── AI Models ───────────────────────────────────────────────────────────
    #: Model used for both source discovery and summarisation.
    ai_model: str = field(
        default_factory=lambda: os.environ.get("AI_MODEL", "claude-haiku-4-5")
    )

    # ── Fetching ────────────────────────────────────────────────────────────
    #: Parallel fetches per batch. Keep low on small hosts.
    fetch_concurrency: int = field(
        default_factory=lambda: int(os.environ.get("FETCH_CONCURRENCY", "2"))
    )
    fetch_timeout: float = field(
        default_factory=lambda: _env_float("FETCH_TIMEOUT", "30")
    )
    batch_timeout: float = field(
        default_factory=lambda: _env_float("BATCH_TIMEOUT", "300")
    )

    # ── Scheduler (seconds) ─────────────────────────────────────────────────
    warmup_delay: float = field(
        default_factory=lambda: _env_float("SCHEDULER_WARMUP_DELAY", "10")
    )
    topic_delay: float = field(
        default_factory=lambda: _env_float("SCHEDULER_TOPIC_DELAY", "30")
    )
    pass_delay: float = field(
        default_factory=lambda: _env_float("SCHEDULER_PASS_DELAY", "60")
    )
    init_delay: float = field(
        default_factory=lambda: _env_float("SCHEDULER_INIT_DELAY", "5")
    )
    error_delay: float = field(
        default_factory=lambda: _env_float("SCHEDULER_ERROR_DELAY", "60")
    )

    def validate(self) -> None:
        """Raise ``ValueError`` if any setting is out of range."""
        if self.fetch_concurrency < 1:
            raise ValueError("FETCH_CONCURRENCY must be at least 1.")
        if self.fetch_timeout <= 0 or self.batch_timeout <= 0:
            raise ValueError("FETCH_TIMEOUT and BATCH_TIMEOUT must be positive.")
        delays = (
            self.warmup_delay, self.topic_delay, self.pass_delay,
            self.init_delay, self.error_delay,
        )
        if any(d < 0 for d in delays):
            raise ValueError("Scheduler delays must not be negative.")
