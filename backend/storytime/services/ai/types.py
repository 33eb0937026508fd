from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from storytime.db.models import AIProviderName, Theme

STORY_TEXT_MIN_CHARS = 30
STORY_TEXT_MAX_CHARS = 800


@dataclass(frozen=True, slots=True)
class PreviousStory:
    event_title: str
    story_text: str
    theme: Theme
    event_date: datetime


@dataclass(frozen=True, slots=True)
class GenerationContext:
    event_title: str
    start_time: datetime
    end_time: datetime
    user_timezone: str
    theme: Theme
    event_description: str | None = None
    location: str | None = None
    meeting_link: str | None = None
    attendee_count: int | None = None
    user_age: int | None = None
    user_gender: str | None = None
    previous_stories: tuple[PreviousStory, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True)
class NormalizedRequest:
    prompt: str
    api_key: str
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None

    def __repr__(self) -> str:
        return (
            f"NormalizedRequest(model={self.model!r}, max_tokens={self.max_tokens!r}, "
            f"temperature={self.temperature!r}, prompt_chars={len(self.prompt)})"
        )


@dataclass(frozen=True, slots=True)
class StoryPayload:
    story_text: str
    emoji: str
    plain_text: str


@dataclass(frozen=True, slots=True)
class NormalizedResponse:
    story_text: str
    emoji: str
    plain_text: str
    model: str
    provider: AIProviderName
    tokens_used: int | None = None


@dataclass(frozen=True, slots=True)
class ProviderCapabilities:
    provider: AIProviderName
    default_model: str
    supported_models: tuple[str, ...]
    max_tokens: int
    default_temperature: float
