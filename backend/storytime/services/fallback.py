from __future__ import annotations

import enum
import logging
import random
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from storytime.db.models import CalendarEvent, Theme
from storytime.services.ai.errors import AIErrorType
from storytime.services.prompts import format_clock, get_theme_config, to_local

logger = logging.getLogger(__name__)

ULTIMATE_EMOJI = "📅"
DEFAULT_LOCATION = "the gathering place"
MAX_TIERS = 3


class FallbackLevel(enum.StrEnum):
    template = "template"
    simple = "simple"
    basic = "basic"


class EventKind(enum.StrEnum):
    meeting = "meeting"
    call = "call"
    workshop = "workshop"
    interview = "interview"
    presentation = "presentation"
    social = "social"
    other = "other"


@dataclass(slots=True)
class FallbackResult:
    story_text: str
    emoji: str
    plain_text: str
    fallback_level: FallbackLevel
    confidence: float


_KIND_KEYWORDS: tuple[tuple[EventKind, tuple[str, ...]], ...] = (
    (EventKind.meeting, ("standup", "daily", "scrum")),
    (EventKind.call, ("call", "phone")),
    (EventKind.workshop, ("workshop", "training")),
    (EventKind.interview, ("interview",)),
    (EventKind.presentation, ("demo", "presentation")),
    (EventKind.social, ("lunch", "coffee", "social")),
    (EventKind.meeting, ("meeting", "sync")),
)

SMART_TEMPLATES: dict[Theme, dict[EventKind, tuple[str, ...]]] = {
    Theme.fantasy: {
        EventKind.meeting: (
            "{emoji} The council of {title} convenes at {time}! Rally the fellowship for this "
            "{timeContext} gathering.",
            "{emoji} Hear ye! The {title} assembly begins at {time}. Bring thy scrolls and wisdom "
            "to this {timeContext} conclave.",
            "{emoji} The knights gather for {title} at {time}. A quest of great importance awaits "
            "in this {timeContext} hour!",
        ),
        EventKind.call: (
            "{emoji} The crystal ball summons all for {title} at {time}! Answer the mystical call "
            "in this {timeContext} moment.",
            "{emoji} Hark! The enchanted horn calls for {title} at {time}. Join this {timeContext} "
            "gathering of voices!",
        ),
        EventKind.presentation: (
            "{emoji} Behold! The grand {title} spectacle begins at {time}. Witness this "
            "{timeContext} display of knowledge!",
            "{emoji} The scroll of {title} shall be unveiled at {time}. All shall gather for this "
            "{timeContext} revelation!",
        ),
        EventKind.workshop: (
            "{emoji} The guild of {title} opens its forge at {time}! {attendeeCount} apprentices "
            "hone their craft for {duration} this {timeContext}.",
        ),
    },
    Theme.genz: {
        EventKind.meeting: (
            "{emoji} {title} at {time} bestie! Time to gather the squad for this {timeContext} "
            "vibe check, no cap!",
            '{emoji} "{title}" hits different at {time} fr fr! Everyone pull up for this '
            "{timeContext} energy 💯",
            "{emoji} Squad assemble! {title} at {time} is about to be fire 🔥 This {timeContext} "
            "meeting bout to slay!",
        ),
        EventKind.call: (
            "{emoji} Ring ring! {title} calling at {time} bestie! Time to hop on this "
            "{timeContext} chat and spill the tea ☕",
            "{emoji} Phone check! {title} at {time} is gonna hit different! Join this "
            "{timeContext} conversation, periodt!",
        ),
        EventKind.presentation: (
            "{emoji} Main character energy! {title} presentation at {time} is about to serve "
            "looks 💅 This {timeContext} show bout to be iconic!",
            "{emoji} Y'all ready for {title} at {time}? This {timeContext} presentation "
            "understood the assignment fr!",
        ),
        EventKind.social: (
            "{emoji} {title} at {time} with {attendeeCount}? The {timeContext} hang we all needed, "
            "no cap ✨",
        ),
    },
    Theme.meme: {
        EventKind.meeting: (
            "{emoji} {title} at {time}... this is fine, everything is fine {emoji} *nervous "
            "{timeContext} meeting noises*",
            "{emoji} *narrator voice: they were not prepared for {title} at {time}* Plot twist: "
            "it's a {timeContext} meeting!",
            "{emoji} Achievement unlocked: Survived another {title} at {time}! Level up your "
            "{timeContext} meeting game 🎮",
        ),
        EventKind.call: (
            "{emoji} *connection loading...* {title} at {time} buffering... Please wait for this "
            "{timeContext} audio experience 📞",
            "{emoji} Error 404: Productivity not found during {title} at {time}. This "
            "{timeContext} call brought to you by chaos!",
        ),
        EventKind.presentation: (
            "{emoji} *PowerPoint has entered the chat* {title} at {time} serving slides and "
            "vibes! This {timeContext} show bout to be legendary 📊",
            "{emoji} Plot armor activated! {title} presentation at {time}, will they survive "
            "this {timeContext} performance? Find out next!",
        ),
        EventKind.interview: (
            "{emoji} *boss music intensifies* {title} at {time}. {duration} of {timeContext} "
            "questions incoming, respawn not available 😬",
        ),
    },
}

SIMPLE_TEMPLATES: dict[Theme, tuple[str, ...]] = {
    Theme.fantasy: (
        "{emoji} The {title} quest begins at {time}! Gather at {location} for this noble "
        "endeavor.",
        "{emoji} Heed the call! {title} awaits at {time}. Journey to {location} brave ones!",
        "{emoji} {title} summons all at {time}. The fellowship shall meet at {location}!",
    ),
    Theme.genz: (
        "{emoji} {title} at {time} is gonna be fire! Meet us at {location} bestie 🔥",
        "{emoji} Pull up to {title} at {time}! We're meeting at {location}, no cap!",
        "{emoji} {title} vibes at {time}! See y'all at {location}, this bout to slap!",
    ),
    Theme.meme: (
        "{emoji} {title} at {time}... *chuckles* I'm in danger 😅 Location: {location}",
        "{emoji} Plot twist: {title} at {time} actually matters! See you at {location}",
        "{emoji} *boss music starts* {title} final boss battle at {time}! Arena: {location}",
    ),
}

BASIC_TEMPLATES: dict[Theme, str] = {
    Theme.fantasy: '{emoji} The fellowship gathers for "{title}" at {time}. A quest awaits!',
    Theme.genz: '{emoji} "{title}" at {time} bestie! Time to slay, no cap!',
    Theme.meme: '{emoji} "{title}" at {time}... this is fine, everything is fine {emoji}',
}

THEMED_ERROR_WRAPPERS: dict[Theme, str] = {
    Theme.fantasy: r"(The magical scribes are resting - \1)",
    Theme.genz: r'(AI said "brb" - \1)',
    Theme.meme: r"(*AI has left the chat* - \1)",
}

_PLACEHOLDER_PATTERN = re.compile(r"\{(\w+)\}")
_PARENTHESIZED_PATTERN = re.compile(r"\(([^)]+)\)")


def classify_event(title: str) -> EventKind:
    lowered = title.lower()
    for kind, keywords in _KIND_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return kind
    return EventKind.other


def time_of_day(hour: int) -> str:
    if hour < 9:
        return "early morning"
    if hour < 12:
        return "morning"
    if hour < 14:
        return "midday"
    if hour < 17:
        return "afternoon"
    if hour < 20:
        return "evening"
    return "late evening"


def short_duration(start_time: datetime, end_time: datetime) -> str:
    minutes = (end_time - start_time).total_seconds() / 60
    if minutes < 60:
        return f"{round(minutes)}min"
    hours = int(minutes // 60)
    remainder = round(minutes % 60)
    return f"{hours}h {remainder}m" if remainder else f"{hours}h"


def fill_template(template: str, variables: dict[str, str]) -> str:
    return _PLACEHOLDER_PATTERN.sub(
        lambda match: variables.get(match.group(1), match.group(0)),
        template,
    )


def error_context(reason: AIErrorType | None, provider: str | None) -> str | None:
    label = provider or "AI"
    if reason is AIErrorType.quota_exceeded:
        return f"({label} quota exceeded - using backup story engine)"
    if reason is AIErrorType.rate_limit_exceeded:
        return f"({label} busy - backup story ready!)"
    if reason is AIErrorType.network_error:
        return "(Connection hiccup - local story engine activated)"
    return None


def themed_error_context(context: str, theme: Theme) -> str:
    wrapper = THEMED_ERROR_WRAPPERS.get(theme)
    if wrapper is None:
        return context
    return _PARENTHESIZED_PATTERN.sub(wrapper, context, count=1)


class FallbackGenerator:
    """Builds reminder text locally when no AI provider produced a story."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def generate(
        self,
        event: CalendarEvent,
        theme: Theme,
        error_reason: AIErrorType | None = None,
        *,
        provider: str | None = None,
        timezone: str = "UTC",
    ) -> FallbackResult:
        tiers: list[tuple[FallbackLevel, float, Callable[..., FallbackResult | None]]] = []
        if error_reason is not AIErrorType.quota_exceeded:
            tiers.append((FallbackLevel.template, 0.8, self._template_story))
        if error_reason is not AIErrorType.network_error:
            tiers.append((FallbackLevel.simple, 0.6, self._simple_story))
        tiers.append((FallbackLevel.basic, 0.4, self._basic_story))
        max_attempts = 1 if error_reason is AIErrorType.rate_limit_exceeded else MAX_TIERS

        result: FallbackResult | None = None
        for level, confidence, build in tiers[:max_attempts]:
            try:
                result = build(event, theme, timezone)
            except Exception:
                logger.warning("Fallback tier %s failed", level, exc_info=True)
                continue
            if result is not None:
                result.fallback_level = level
                result.confidence = confidence
                break

        if result is None:
            return self.ultimate(event, timezone=timezone)

        context = error_context(error_reason, provider)
        if context and result.confidence > 0.5:
            result.story_text = f"{result.story_text} {themed_error_context(context, theme)}"
        return result

    def ultimate(self, event: CalendarEvent, *, timezone: str = "UTC") -> FallbackResult:
        title = getattr(event, "title", None) or "Upcoming event"
        try:
            time_label = format_clock(to_local(event.start_time, timezone))
        except (AttributeError, TypeError, ValueError):
            time_label = "soon"
        return FallbackResult(
            story_text=f"{ULTIMATE_EMOJI} {title} at {time_label}",
            emoji=ULTIMATE_EMOJI,
            plain_text=f"{title} at {time_label}",
            fallback_level=FallbackLevel.basic,
            confidence=0.2,
        )

    def _template_story(
        self,
        event: CalendarEvent,
        theme: Theme,
        timezone: str,
    ) -> FallbackResult | None:
        by_kind = SMART_TEMPLATES[theme]
        templates = by_kind.get(classify_event(event.title)) or by_kind[EventKind.meeting]
        start = to_local(event.start_time, timezone)
        emoji = self._rng.choice(get_theme_config(theme).emojis)
        variables = {
            "emoji": emoji,
            "title": event.title,
            "time": format_clock(start),
            "timeContext": time_of_day(start.hour),
            "location": event.location or DEFAULT_LOCATION,
            "attendeeCount": str(event.attendee_count) if event.attendee_count else "the team",
            "duration": short_duration(event.start_time, event.end_time),
        }
        return FallbackResult(
            story_text=fill_template(self._rng.choice(templates), variables),
            emoji=emoji,
            plain_text=_plain_text(event, timezone),
            fallback_level=FallbackLevel.template,
            confidence=0.8,
        )

    def _simple_story(
        self,
        event: CalendarEvent,
        theme: Theme,
        timezone: str,
    ) -> FallbackResult | None:
        emoji = self._rng.choice(get_theme_config(theme).emojis)
        variables = {
            "emoji": emoji,
            "title": event.title,
            "time": format_clock(to_local(event.start_time, timezone)),
            "location": event.location or DEFAULT_LOCATION,
        }
        return FallbackResult(
            story_text=fill_template(self._rng.choice(SIMPLE_TEMPLATES[theme]), variables),
            emoji=emoji,
            plain_text=_plain_text(event, timezone),
            fallback_level=FallbackLevel.simple,
            confidence=0.6,
        )

    def _basic_story(
        self,
        event: CalendarEvent,
        theme: Theme,
        timezone: str,
    ) -> FallbackResult:
        emoji = get_theme_config(theme).emojis[0]
        variables = {
            "emoji": emoji,
            "title": event.title,
            "time": format_clock(to_local(event.start_time, timezone)),
        }
        return FallbackResult(
            story_text=fill_template(BASIC_TEMPLATES[theme], variables),
            emoji=emoji,
            plain_text=_plain_text(event, timezone),
            fallback_level=FallbackLevel.basic,
            confidence=0.4,
        )


def _plain_text(event: CalendarEvent, timezone: str) -> str:
    return f"{event.title} at {format_clock(to_local(event.start_time, timezone))}"
