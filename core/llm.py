"""Thin wrapper around the Anthropic Messages API for JSON-returning prompts.

Both AI collaborators (source discovery and summarisation) send a single
prompt and expect a bare JSON array back. This module owns the parts they
share: the lazily-created client, text extraction from the response, and
stripping markdown fences before ``json.loads``.
"""

from __future__ import annotations

import json
import logging

import anthropic

from core.errors import ConfigurationError, UpstreamError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-haiku-4-5"
#: Per-request timeout in seconds.
REQUEST_TIMEOUT = 120.0


def clean_json_response(text: str) -> str:
    """Strip markdown code fences and surrounding whitespace.

    Examples:
        >>> clean_json_response('```json\\n[1, 2]\\n```')
        '[1, 2]'
    """
    text = text.strip()
    if text.startswith("```json"):
        text = text[len("```json"):]
    elif text.startswith("```"):
        text = text[len("```"):]
    if text.endswith("```"):
        text = text[: -len("```")]
    return text.strip()


def extract_text(response: object) -> str:
    """Concatenate the text blocks of a Messages API response."""
    parts: list[str] = []
    for block in getattr(response, "content", None) or []:
        if getattr(block, "type", None) == "text":
            parts.append(getattr(block, "text", "") or "")
    return "".join(parts)


class ClaudeClient:
    """Base class for the AI collaborators.

    The Anthropic client is lazy-initialised so that subclasses can be
    instantiated in tests and have ``_client`` replaced by a mock.

    Raises:
        ConfigurationError: If *api_key* is empty.
    """

    def __init__(self, api_key: str, model: str = DEFAULT_MODEL) -> None:
        if not api_key:
            raise ConfigurationError("Anthropic API key not configured")
        self.api_key = api_key
        self.model = model
        self._client: object = None  # Lazy-initialised anthropic.Anthropic

    @property
    def client(self) -> object:
        """Lazy-initialise and return the Anthropic SDK client."""
        if self._client is None:
            # max_retries=5 so the SDK backs off and retries on 429 rate-limit errors.
            self._client = anthropic.Anthropic(
                api_key=self.api_key,
                max_retries=5,
                timeout=REQUEST_TIMEOUT,
            )
        return self._client

    def complete_json(self, system: str, prompt: str, max_tokens: int) -> object:
        """Send one prompt and decode the reply as JSON.

        Raises:
            UpstreamError: On API failures, an empty reply, or invalid JSON.
        """
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as exc:
            raise UpstreamError(f"AI request failed: {exc}") from exc

        text = clean_json_response(extract_text(response))
        if not text:
            raise UpstreamError("empty response from AI")

        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            logger.debug("Unparseable AI response: %r", text[:500])
            raise UpstreamError(
                f"failed to parse AI response as JSON: {exc} (response: {text[:200]})"
            ) from exc
