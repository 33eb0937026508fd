import json

import pytest

from storytime.services.ai.errors import AIErrorType, ProviderError
from storytime.services.ai.parsing import (
    clean_response_text,
    embedded_objects,
    parse_story_response,
    validate_story_payload,
)
from storytime.services.ai.types import StoryPayload

STORY = "Hail, Champion! The council of coin gathers at the third bell to divide the treasury."


def test_parses_plain_json_object():
    raw = json.dumps({"story_text": STORY, "emoji": "👑", "plain_text": "Budget meeting at 3 PM"})

    payload = parse_story_response(raw, provider="OPENAI")

    assert payload == StoryPayload(story_text=STORY, emoji="👑", plain_text="Budget meeting at 3 PM")


def test_strips_fences_prefix_and_trailing_commas():
    raw = (
        "Here is the JSON:\n```json\n"
        f'{{"story_text": "{STORY}", "emoji": "👑", "plain_text": "Budget meeting",}}\n```'
    )

    payload = parse_story_response(raw, provider="CLAUDE")

    assert payload.story_text == STORY
    assert payload.plain_text == "Budget meeting"


def test_recovers_embedded_object_from_chatter():
    body = json.dumps({"story_text": STORY, "emoji": "🐉", "plain_text": "Budget meeting"})
    raw = f"Sure! Here you go {body} Hope that helps {{\"note\": 1}}"

    payload = parse_story_response(raw, provider="GEMINI")

    assert payload.emoji == "🐉"
    assert payload.story_text == STORY


def test_extracts_loose_key_value_text_with_defaults():
    raw = "story_text: The dragon council gathers at dawn for the budget quest\nmood: epic"

    payload = parse_story_response(raw, provider="OPENAI")

    assert payload.story_text == "The dragon council gathers at dawn for the budget quest"
    assert payload.emoji == "📅"
    assert payload.plain_text == "The dragon council gathers at dawn for the budget quest"


def test_extracts_single_quoted_fields():
    raw = "{'story_text': 'The guild opens its forge at noon for all apprentices', 'emoji': '🔨'}"

    payload = parse_story_response(raw, provider="OPENAI")

    assert payload.story_text == "The guild opens its forge at noon for all apprentices"
    assert payload.emoji == "🔨"


@pytest.mark.parametrize("raw", ["", "   ", None, "I cannot help with that request."])
def test_unrecoverable_text_is_parsing_error(raw):
    with pytest.raises(ProviderError) as exc_info:
        parse_story_response(raw, provider="OPENAI")

    assert exc_info.value.kind is AIErrorType.parsing_error
    assert exc_info.value.provider == "OPENAI"


def test_clean_response_text_handles_unterminated_fence():
    assert clean_response_text('```json\n{"story_text": "x",}') == 'json\n{"story_text": "x"}'


def test_embedded_objects_orders_largest_first_and_ignores_braces_in_strings():
    text = 'a {"x": "}"} b {"story_text": "long enough", "n": {"y": 1}}'

    found = embedded_objects(text)

    assert found[0] == '{"story_text": "long enough", "n": {"y": 1}}'
    assert '{"x": "}"}' in found


def test_validate_rejects_short_story():
    payload = StoryPayload(story_text="Too short", emoji="⚔️", plain_text="Meeting")

    with pytest.raises(ProviderError) as exc_info:
        validate_story_payload(payload, provider="OPENAI")

    assert exc_info.value.kind is AIErrorType.parsing_error
    assert "got 9" in exc_info.value.message


def test_validate_rejects_overlong_story():
    payload = StoryPayload(story_text="x" * 801, emoji="⚔️", plain_text="Meeting")

    with pytest.raises(ProviderError):
        validate_story_payload(payload, provider="OPENAI")


def test_validate_accepts_bounds():
    for length in (30, 800):
        payload = StoryPayload(story_text="x" * length, emoji="⚔️", plain_text="Meeting")
        assert validate_story_payload(payload, provider="OPENAI") is payload


def test_validate_requires_every_field():
    payload = StoryPayload(story_text=STORY, emoji="", plain_text="Meeting")

    with pytest.raises(ProviderError) as exc_info:
        validate_story_payload(payload, provider="OPENAI")

    assert "emoji" in exc_info.value.message
