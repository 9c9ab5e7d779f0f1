"""Validation and parsing helpers for LLM output."""

import json
import logging
import re
from typing import Any

from ..models import (
    ContentTooShortError,
    MalformedResponseError,
    NoResponseError,
    split_paragraphs,
)

logger = logging.getLogger(__name__)

# C0/C1 control characters except tab, newline and carriage return
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def strip_control_characters(text: str) -> str:
    """Remove control characters that break JSON parsing."""
    return CONTROL_CHARS.sub("", text)


def _candidate_payloads(text: str) -> list[str]:
    cleaned = CODE_FENCE.sub("", text.strip()).strip()
    candidates = [cleaned]
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if 0 <= start < end and (start, end) != (0, len(cleaned) - 1):
        candidates.append(cleaned[start : end + 1])
    return candidates


def parse_json_object(raw: str) -> dict[str, Any]:
    """
    Parse a JSON object from a model reply.

    Control characters are stripped first, and raw newlines inside string
    values are tolerated. Markdown code fences and prose around the object
    are ignored.

    Raises:
        MalformedResponseError: If no JSON object can be recovered. The
            original reply is kept in ``raw``.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise MalformedResponseError("Empty response where JSON was expected", raw=raw)

    sanitized = strip_control_characters(raw)
    last_error: Exception | None = None
    for candidate in _candidate_payloads(sanitized):
        try:
            parsed = json.loads(candidate, strict=False)
        except json.JSONDecodeError as e:
            last_error = e
            continue
        if not isinstance(parsed, dict):
            raise MalformedResponseError(
                f"Expected a JSON object, got {type(parsed).__name__}", raw=raw
            )
        return parsed

    logger.warning(f"Unparseable JSON from model: {raw[:200]!r}")
    raise MalformedResponseError(f"Response was not valid JSON: {last_error}", raw=raw)


def message_content(completion: Any) -> Any:
    """
    Return the first choice's message content.

    Raises:
        NoResponseError: If the completion has no choices or no message
    """
    choices = getattr(completion, "choices", None)
    if not choices:
        raise NoResponseError("Model returned no choices", raw=None)

    message = getattr(choices[0], "message", None)
    if message is None:
        raise NoResponseError("Model returned a choice without a message", raw=None)
    return message.content


def require_text(content: Any, context: str, allow_empty: bool = False) -> str:
    """Ensure message content is a string, non-empty unless ``allow_empty``."""
    if not isinstance(content, str):
        raise MalformedResponseError(
            f"{context}: expected text content, got {type(content).__name__}", raw=content
        )
    if not allow_empty and not content.strip():
        raise MalformedResponseError(f"{context}: empty text content", raw=content)
    return content


def validate_paragraph_count(text: str, minimum: int) -> list[str]:
    """
    Ensure text has at least ``minimum`` blank-line-delimited paragraphs.

    Raises:
        ContentTooShortError: If fewer paragraphs were produced
    """
    paragraphs = split_paragraphs(text)
    if len(paragraphs) < minimum:
        raise ContentTooShortError(
            f"Content too short: {len(paragraphs)} paragraphs, at least {minimum} required",
            raw=text,
            paragraph_count=len(paragraphs),
            required=minimum,
        )
    return paragraphs
