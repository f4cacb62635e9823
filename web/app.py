"""
Flask web server for Topic Digest.

Routes
──────
GET    /api/topics                         List topics
POST   /api/topics                         Create a topic (discovers sources in background)
PUT    /api/topics/<id>                    Update a topic (re-discovers if description changed)
DELETE /api/topics/<id>                    Delete a topic
POST   /api/topics/reorder                 Reorder topics by id list
POST   /api/topics/<id>/refresh            Refresh now (background; ?wait=1 runs inline)
POST   /api/topics/<id>/discover           Discover sources now (background; ?wait=1 inline)
POST   /api/topics/<id>/sources            Add a manual source
DELETE /api/topics/<id>/sources/<sid>      Delete a source
GET    /api/settings                       Read settings (API key masked)
PUT    /api/settings                       Update settings
GET    /api/status                         Refresh status of every topic
GET    /v1/stories                         Topics with their latest stories
GET    /v1/topics                          Topics
GET    /v1/topics/<id>/stories             Latest stories of one topic (?limit=N)

Every response uses the envelope ``{"success": bool, "data": ..., "error": str}``.
"""

from __future__ import annotations

import logging

from dotenv import load_dotenv
from flask import Flask, jsonify, request
from pydantic import ValidationError

from config.settings import Settings
from core.errors import (
    ConfigurationError,
    InvalidURLError,
    RefreshInProgressError,
    TopicDigestError,
    TopicNotFoundError,
)
from core.fetcher import ContentFetcher
from core.models import AppSettings
from core.researcher import SourceResearcher
from core.scheduler import Scheduler
from core.store import Store
from core.summarizer import Summarizer
from core.validator import validate_url

logger = logging.getLogger(__name__)

DEFAULT_TOPICS: list[tuple[str, str]] = [
    (
        "World News",
        "Major international news and current events from around the globe. Focus on "
        "significant political developments, international relations, and major world events.",
    ),
    (
        "Formula 1",
        "Formula 1 racing news including race results, driver standings, team updates, "
        "technical regulations, and breaking news from the F1 paddock.",
    ),
    (
        "Science News",
        "Latest scientific discoveries and research breakthroughs across all fields including "
        "physics, biology, astronomy, climate science, and medical research.",
    ),
    (
        "Tech News",
        "Technology industry news including product launches, company updates, software "
        "releases, AI developments, and emerging tech trends.",
    ),
]


def ok(data=None, status: int = 200):
    body = {"success": True}
    if data is not None:
        body["data"] = data
    return jsonify(body), status


def error(message: str, status: int):
    return jsonify({"success": False, "error": message}), status


def _json_object() -> dict | None:
    """The request body as a dict: ``{}`` when absent, None when not an object."""
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    return payload if isinstance(payload, dict) else None


def _wants_wait() -> bool:
    return request.args.get("wait", "0").lower() in {"1", "true", "yes"}


def create_app(store: Store, scheduler: Scheduler) -> Flask:
    """Build the Flask app around an existing store and scheduler."""
    app = Flask(__name__)

    # ── Topics ─────────────────────────────────────────────────────────────

    @app.route("/api/topics")
    @app.route("/v1/topics")
    def list_topics():
        return ok([t.model_dump(mode="json") for t in store.list_topics()])

    @app.route("/api/topics", methods=["POST"])
    def create_topic():
        payload = _json_object()
        if payload is None:
            return error("Request body must be a JSON object", 400)
        name = str(payload.get("name", "")).strip()
        if not name:
            return error("Topic name is required", 400)

        topic = store.create_topic(name, str(payload.get("description", "")).strip())
        scheduler.discover_sources_async(topic.id)
        return ok(topic.model_dump(mode="json"), 201)

    @app.route("/api/topics/<int:topic_id>", methods=["PUT"])
    def update_topic(topic_id: int):
        existing = store.get_topic(topic_id)
        if existing is None:
            return error("Topic not found", 404)

        payload = _json_object()
        if payload is None:
            return error("Request body must be a JSON object", 400)
        name = str(payload.get("name", existing.name)).strip() or existing.name
        description = str(payload.get("description", existing.description)).strip()

        store.update_topic(topic_id, name, description)
        if description != existing.description:
            scheduler.discover_sources_async(topic_id)
        return ok()

    @app.route("/api/topics/<int:topic_id>", methods=["DELETE"])
    def delete_topic(topic_id: int):
        if not store.delete_topic(topic_id):
            return error("Topic not found", 404)
        return ok()

    @app.route("/api/topics/reorder", methods=["POST"])
    def reorder_topics():
        payload = _json_object()
        if payload is None:
            return error("Request body must be a JSON object", 400)
        topic_ids = payload.get("topic_ids")
        if not isinstance(topic_ids, list) or not all(isinstance(i, int) for i in topic_ids):
            return error("topic_ids must be a list of integers", 400)
        store.reorder_topics(topic_ids)
        return ok()

    @app.route("/api/topics/<int:topic_id>/refresh", methods=["POST"])
    def refresh_topic(topic_id: int):
        if store.get_topic(topic_id) is None:
            return error("Topic not found", 404)
        if not _wants_wait():
            scheduler.refresh_topic_async(topic_id)
            return ok("Refresh started", 202)
        try:
            count = scheduler.refresh_topic(topic_id)
        except RefreshInProgressError as exc:
            return error(str(exc), 409)
        except TopicDigestError as exc:
            return error(str(exc), 502)
        return ok({"stories": count})

    @app.route("/api/topics/<int:topic_id>/discover", methods=["POST"])
    def discover_sources(topic_id: int):
        if store.get_topic(topic_id) is None:
            return error("Topic not found", 404)
        if not _wants_wait():
            scheduler.discover_sources_async(topic_id)
            return ok("Discovery started", 202)
        try:
            sources = scheduler.discover_sources(topic_id)
        except ConfigurationError as exc:
            return error(str(exc), 400)
        except TopicDigestError as exc:
            return error(str(exc), 502)
        return ok([s.model_dump(mode="json") for s in sources])

    # ── Sources ────────────────────────────────────────────────────────────

    @app.route("/api/topics/<int:topic_id>/sources")
    def list_sources(topic_id: int):
        if store.get_topic(topic_id) is None:
            return error("Topic not found", 404)
        return ok([s.model_dump(mode="json") for s in store.list_sources(topic_id)])

    @app.route("/api/topics/<int:topic_id>/sources", methods=["POST"])
    def add_source(topic_id: int):
        if store.get_topic(topic_id) is None:
            return error("Topic not found", 404)

        payload = _json_object()
        if payload is None:
            return error("Request body must be a JSON object", 400)
        try:
            url = validate_url(str(payload.get("url", "")))
        except InvalidURLError as exc:
            return error(str(exc), 400)

        source = store.add_source(
            topic_id, url, str(payload.get("name", "")).strip(), is_manual=True
        )
        return ok(source.model_dump(mode="json"), 201)

    @app.route("/api/topics/<int:topic_id>/sources/<int:source_id>", methods=["DELETE"])
    def delete_source(topic_id: int, source_id: int):
        if not store.delete_source(source_id, topic_id=topic_id):
            return error("Source not found", 404)
        return ok()

    # ── Settings ───────────────────────────────────────────────────────────

    @app.route("/api/settings")
    def get_settings():
        return ok(store.get_settings().masked().model_dump())

    @app.route("/api/settings", methods=["PUT"])
    def update_settings():
        payload = _json_object()
        if payload is None:
            return error("Request body must be a JSON object", 400)
        current = store.get_settings()

        # A blank or masked key means "keep the stored one".
        key = str(payload.get("anthropic_api_key", "") or "")
        if not key or key.startswith("********"):
            payload["anthropic_api_key"] = current.anthropic_api_key

        try:
            updated = AppSettings.model_validate({**current.model_dump(), **payload})
        except ValidationError as exc:
            return error(str(exc), 400)
        if updated.refresh_interval_minutes < 1 or updated.stories_per_topic < 1:
            return error("refresh_interval_minutes and stories_per_topic must be positive", 400)

        store.update_settings(updated)
        scheduler.update_interval(updated.refresh_interval_minutes)
        return ok()

    # ── Status & stories ───────────────────────────────────────────────────

    @app.route("/api/status")
    def refresh_statuses():
        return ok([s.model_dump(mode="json") for s in store.list_refresh_statuses()])

    @app.route("/v1/stories")
    def all_stories():
        per_topic = store.get_settings().stories_per_topic
        return ok([t.model_dump(mode="json") for t in store.topics_with_stories(per_topic)])

    @app.route("/v1/topics/<int:topic_id>/stories")
    def topic_stories(topic_id: int):
        topic = store.get_topic(topic_id)
        if topic is None:
            return error("Topic not found", 404)
        limit = request.args.get("limit", type=int)
        if not limit or limit < 1:
            limit = store.get_settings().stories_per_topic
        stories = store.list_stories(topic_id, limit)
        return ok({
            "topic": topic.model_dump(mode="json"),
            "stories": [s.model_dump(mode="json") for s in stories],
        })

    @app.errorhandler(TopicNotFoundError)
    def topic_not_found(exc: TopicNotFoundError):
        return error(str(exc), 404)

    @app.errorhandler(TopicDigestError)
    def pipeline_error(exc: TopicDigestError):
        logger.error("Request failed: %s", exc, exc_info=exc)
        return error(str(exc), 500)

    return app


def seed_default_topics(store: Store) -> None:
    """Add the default topics if the database has none."""
    if store.list_topics():
        return
    for name, description in DEFAULT_TOPICS:
        store.create_topic(name, description)
        logger.info("Created default topic: %s", name)


def build_scheduler(store: Store, config: Settings) -> Scheduler:
    return Scheduler(
        store,
        fetcher=ContentFetcher(
            concurrency=config.fetch_concurrency,
            request_timeout=config.fetch_timeout,
            batch_timeout=config.batch_timeout,
        ),
        researcher_factory=lambda key: SourceResearcher(key, model=config.ai_model),
        summarizer_factory=lambda key: Summarizer(key, model=config.ai_model),
        warmup_delay=config.warmup_delay,
        topic_delay=config.topic_delay,
        pass_delay=config.pass_delay,
        init_delay=config.init_delay,
        error_delay=config.error_delay,
        batch_timeout=config.batch_timeout,
    )


# ── Entry point ────────────────────────────────────────────────────────────


def main() -> None:
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
    )

    config = Settings()
    config.validate()

    store = Store(config.db_path)
    store.init_db()
    try:
        seed_default_topics(store)
    except TopicDigestError as exc:
        logger.warning("Failed to seed default topics: %s", exc)

    settings = store.get_settings()
    if not settings.anthropic_api_key and config.anthropic_api_key:
        store.update_settings(settings.model_copy(update={"anthropic_api_key": config.anthropic_api_key}))
        logger.info("Stored Anthropic API key from the environment")
    store.reset_interrupted_refreshes()

    scheduler = build_scheduler(store, config)
    scheduler.update_interval(settings.refresh_interval_minutes)
    app = create_app(store, scheduler)

    scheduler.start()
    try:
        logger.info("Server listening on http://%s:%d", config.host, config.port)
        app.run(debug=config.debug, host=config.host, port=config.port, use_reloader=False)
    finally:
        logger.info("Shutting down...")
        scheduler.stop()


if __name__ == "__main__":
    main()
