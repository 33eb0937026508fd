"""Recovery cascade for story payloads returned by language models.

Models are asked for a JSON object with ``story_text``, ``emoji`` and
``plain_text`` but frequently wrap it in markdown fences, prepend chatter or
return loose ``key: value`` text. Parsing tries, in order:

1. the raw text as JSON
2. the text with code fences, "Here is the JSON:" prefixes and trailing commas removed
3. the largest embedded ``{...}`` block that mentions ``story_text``
4. regex extraction of ``key: value`` fragments

Only a response where ``story_text`` cannot be recovered at all is rejected.
The recovered payload is then checked against the length and non-empty rules.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from storytime.services.ai.errors import AIErrorType, ProviderError
from storytime.services.ai.types import STORY_TEXT_MAX_CHARS, STORY_TEXT_MIN_CHARS, StoryPayload

logger = logging.getLogger(__name__)

PRIMARY_FIELD = "story_text"
DEFAULT_EMOJI = "📅"

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)
_PREFIX_PATTERN = re.compile(r"^.*?(?:here is the json|json response)\s*:\s*", re.IGNORECASE | re.DOTALL)
_TRAILING_COMMA_PATTERN = re.compile(r",\s*([}\]])")
_PLAIN_TEXT_STRIP_PATTERN = re.compile(r"[^\w\s.,!?-]")

_FIELD_KEYS = {
    "story_text": r"(?:story_text|story|text)",
    "emoji": r"(?:emoji)",
    "plain_text": r"(?:plain_text|plain)",
}


def _field_patterns(key_pattern: str) -> list[re.Pattern[str]]:
    lead = rf"\b{key_pattern}\b[\"']?\s*[:=]\s*"
    return [
        re.compile(lead + r'"((?:[^"\\]|\\.)+)"', re.IGNORECASE),
        re.compile(lead + r"'((?:[^'\\]|\\.)+)'", re.IGNORECASE),
        re.compile(lead + r"([^\n\r,}]+)", re.IGNORECASE),
    ]


_FIELD_PATTERNS = {name: _field_patterns(pattern) for name, pattern in _FIELD_KEYS.items()}


def strip_code_fences(text: str) -> str:
    match = _FENCE_PATTERN.search(text)
    if match:
        return match.group(1).strip()
    return text.replace("```", "").strip()


def clean_response_text(text: str) -> str:
    cleaned = strip_code_fences(text.strip())
    cleaned = _PREFIX_PATTERN.sub("", cleaned, count=1).strip()
    return _TRAILING_COMMA_PATTERN.sub(r"\1", cleaned)


def _loads_object(candidate: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(candidate)
    except (json.JSONDecodeError, ValueError):
        return None
    if isinstance(parsed, dict):
        return parsed
    return None


def _has_primary_field(data: dict[str, Any] | None) -> bool:
    return bool(data) and PRIMARY_FIELD in data


def embedded_objects(text: str) -> list[str]:
    """Balanced ``{...}`` substrings of ``text``, largest first."""
    found: list[str] = []
    for start, char in enumerate(text):
        if char != "{":
            continue
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            current = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif current == "\\":
                    escaped = True
                elif current == '"':
                    in_string = False
                continue
            if current == '"':
                in_string = True
            elif current == "{":
                depth += 1
            elif current == "}":
                depth -= 1
                if depth == 0:
                    found.append(text[start : index + 1])
                    break
    found.sort(key=len, reverse=True)
    return found


def _unescape(value: str) -> str:
    try:
        return json.loads(f'"{value}"')
    except (json.JSONDecodeError, ValueError):
        return value


def extract_fields(text: str) -> dict[str, str]:
    result: dict[str, str] = {}
    for name, patterns in _FIELD_PATTERNS.items():
        for pattern in patterns:
            match = pattern.search(text)
            if match and match.group(1).strip():
                value = _unescape(match.group(1)).strip().strip("\"'").strip()
                if value:
                    result[name] = value
                    break
    return result


def derive_plain_text(story_text: str) -> str:
    return " ".join(_PLAIN_TEXT_STRIP_PATTERN.sub("", story_text).split())


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    return ""


def _payload_from_mapping(data: dict[str, Any]) -> StoryPayload:
    return StoryPayload(
        story_text=_as_text(data.get("story_text")),
        emoji=_as_text(data.get("emoji")),
        plain_text=_as_text(data.get("plain_text")),
    )


def parse_story_response(raw_text: str | None, *, provider: str) -> StoryPayload:
    if not raw_text or not raw_text.strip():
        raise ProviderError(
            AIErrorType.parsing_error,
            "Empty or invalid response text",
            provider=provider,
        )

    direct = _loads_object(raw_text.strip())
    if _has_primary_field(direct):
        return _payload_from_mapping(direct)  # type: ignore[arg-type]

    cleaned = clean_response_text(raw_text)
    stripped = _loads_object(cleaned)
    if _has_primary_field(stripped):
        logger.debug("Recovered %s payload after stripping wrappers", provider)
        return _payload_from_mapping(stripped)  # type: ignore[arg-type]

    for candidate in embedded_objects(cleaned):
        if PRIMARY_FIELD not in candidate:
            continue
        embedded = _loads_object(_TRAILING_COMMA_PATTERN.sub(r"\1", candidate))
        if _has_primary_field(embedded):
            logger.debug("Recovered %s payload from embedded object", provider)
            return _payload_from_mapping(embedded)  # type: ignore[arg-type]

    fields = extract_fields(cleaned)
    story_text = fields.get("story_text")
    if not story_text:
        raise ProviderError(
            AIErrorType.parsing_error,
            f"Could not extract story text from response: {raw_text[:200]!r}",
            provider=provider,
        )
    logger.warning("Recovered %s payload from loose key/value text", provider)
    return StoryPayload(
        story_text=story_text,
        emoji=fields.get("emoji") or DEFAULT_EMOJI,
        plain_text=fields.get("plain_text") or derive_plain_text(story_text),
    )


def validate_story_payload(payload: StoryPayload, *, provider: str) -> StoryPayload:
    for name in ("story_text", "emoji", "plain_text"):
        if not getattr(payload, name):
            raise ProviderError(
                AIErrorType.parsing_error,
                f"AI response missing {name}",
                provider=provider,
            )

    length = len(payload.story_text)
    if length < STORY_TEXT_MIN_CHARS or length > STORY_TEXT_MAX_CHARS:
        raise ProviderError(
            AIErrorType.parsing_error,
            (
                "Story text length is outside expected range "
                f"({STORY_TEXT_MIN_CHARS}-{STORY_TEXT_MAX_CHARS} characters), got {length}"
            ),
            provider=provider,
        )
    return payload
