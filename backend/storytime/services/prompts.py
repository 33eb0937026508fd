from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import UTC, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from storytime.db.models import Theme
from storytime.services.ai.types import GenerationContext

RESPONSE_FORMAT = (
    "Return JSON only:\n"
    '{"story_text": "Address user with their persona! Use gender/age-appropriate language! '
    'Epic themed story (2-3 sentences)", "emoji": "😀", "plain_text": "Professional version"}'
)

PROMPT_RULES = (
    "Make USER the hero/protagonist of this event",
    "Use theme-specific greeting/address for personal connection",
    "Respect user's gender and age in language/slang choices",
    "Transform event details into epic story elements",
    "Keep critical info (time/location) recognizable but themed",
    "2-3 sentences, complete adventure with user as star",
)


@dataclass(frozen=True, slots=True)
class ThemeConfig:
    theme: Theme
    description: str
    keywords: tuple[str, ...]
    emojis: tuple[str, ...]
    tone_description: str
    example_story: str
    example_emoji: str


THEME_CONFIGS: dict[Theme, ThemeConfig] = {
    Theme.fantasy: ThemeConfig(
        theme=Theme.fantasy,
        description=(
            "Epic fantasy adventures with rich medieval storytelling, magical elements, "
            "and heroic narratives"
        ),
        keywords=(
            "fellowship",
            "council of legends",
            "sacred quest",
            "legendary battle",
            "mystical alliance",
            "ancient guild",
            "enchanted realm",
            "kingdom of dreams",
            "mystical tavern",
            "ancient prophecy",
            "chosen champion",
            "blade of destiny",
        ),
        emojis=("⚔️", "🏰", "🛡️", "👑", "🧙", "📜", "🗡️", "🏹", "✨", "🔮", "🐉", "🦄"),
        tone_description=(
            "Epic, noble, magical and immersive with rich medieval fantasy language that makes "
            "mundane events feel like legendary adventures"
        ),
        example_story=(
            "👑 Hail, Noble Champion! At the 3rd hour past midday, you shall lead the Ancient "
            "Council of Treasury Guardians in their sacred quest! Your wisdom and valor are needed "
            "as the fellowship gathers to divine the mystical allocation of golden coffers."
        ),
        example_emoji="👑",
    ),
    Theme.genz: ThemeConfig(
        theme=Theme.genz,
        description=(
            "Ultra-modern Gen Z energy with authentic slang, social media vibes, and relatable "
            "cultural references"
        ),
        keywords=(
            "bestie",
            "no cap",
            "fr fr",
            "periodt",
            "slay queen",
            "main character energy",
            "understood the assignment",
            "living rent free",
            "its giving",
            "chef kiss",
            "hits different",
            "say less",
        ),
        emojis=("💯", "🔥", "✨", "💅", "👑", "💕", "🙌", "😭", "💀", "🤌", "👀", "🫶"),
        tone_description=(
            "Authentic Gen Z energy with internet culture, trending slang, and social media "
            "references that make events feel like the main character moment"
        ),
        example_story=(
            "💀 Bestie, you're about to absolutely SLAY this 3PM budget meeting! POV: You walking "
            "into that room like the main character you are, ready to serve financial wisdom 🔥 "
            'This is giving "I understood the assignment" energy!'
        ),
        example_emoji="💀",
    ),
    Theme.meme: ThemeConfig(
        theme=Theme.meme,
        description=(
            "Peak internet culture with viral meme references, relatable chaos, and "
            "perfectly-timed internet humor"
        ),
        keywords=(
            "this is fine meme energy",
            "*narrator voice*",
            "plot twist nobody asked for",
            "character development arc",
            "main character syndrome",
            "NPC behavior detected",
            "side quest activated",
            "achievement unlocked",
            "loading screen of life",
            "error 404 motivation not found",
            "uno reverse card",
            "brain.exe has stopped",
        ),
        emojis=("🔥", "😅", "💀", "🤡", "👀", "🙃", "😬", "🎭", "🚨", "🤯", "🥲", "🗿"),
        tone_description=(
            "Peak internet humor with viral meme references, relatable anxiety, and that perfect "
            "chaotic energy that makes everything hilariously relatable"
        ),
        example_story=(
            "🔥 Chosen One, your 3PM budget meeting awaits... this is fine, everything is fine 🔥 "
            "*narrator voice: Our hero was absolutely NOT prepared for this level of financial "
            "reality* Achievement unlocked: Adult Responsibilities Boss Battle! 💀"
        ),
        example_emoji="🔥",
    ),
}

_FANTASY_PERSONAS = ("Noble Adventurer", "Master of Time", "Champion of the Realm")
_GENZ_PERSONAS = ("Main Character", "Icon", "Bestie", "Legend", "Absolute Unit")
_MEME_PERSONAS = ("Fellow Human", "Chosen One", "Based Individual", "Legendary Being")


def get_theme_config(theme: Theme) -> ThemeConfig:
    return THEME_CONFIGS[theme]


def personas_for(theme: Theme, gender: str | None = None, age: int | None = None) -> list[str]:
    normalized_gender = (gender or "").strip().upper()

    if theme is Theme.fantasy:
        extras = {
            "MALE": ["Lord of Schedules", "Sir Hero", "Knight Commander", "Brave Warrior"],
            "FEMALE": ["Lady of Schedules", "Dame Hero", "Warrior Princess", "Noble Maiden"],
            "NON_BINARY": [
                "Noble of Schedules",
                "Legendary Champion",
                "Sage Warrior",
                "Mystic Guardian",
            ],
        }.get(normalized_gender, ["Hero of Seven Kingdoms", "Legendary Champion"])
        return [*_FANTASY_PERSONAS, *extras]

    if theme is Theme.genz:
        extras = {
            "MALE": ["King", "Boss", "Sigma King", "The GOAT", "Big Boss Energy"],
            "FEMALE": ["Queen", "Goddess", "Baddie", "Boss Babe", "Queen Energy"],
            "NON_BINARY": ["Monarch", "Supreme Ruler", "Royal Highness", "Legendary Icon"],
        }.get(normalized_gender, ["Supreme Being", "The Main Character"])
        return [*_GENZ_PERSONAS, *extras]

    if age is not None and age < 25:
        extras = ["Zoomer Legend", "Digital Native", "TikTok Main Character"]
        if normalized_gender == "MALE":
            extras += ["Meme Lord", "Sigma Grindset King"]
        elif normalized_gender == "FEMALE":
            extras += ["Meme Queen", "Girl Boss Energy"]
        else:
            extras += ["Meme Royalty", "Internet Legend"]
    elif age is not None and age >= 40:
        extras = ["Wise Meme Sage", "Elder Millennial", "Veteran Internet User"]
    else:
        extras = ["Ultimate Protagonist", "Meme Master"]
    return [*_MEME_PERSONAS, *extras]


def to_local(value: datetime, timezone_name: str | None) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    try:
        zone = ZoneInfo(timezone_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        zone = ZoneInfo("UTC")
    return value.astimezone(zone)


def format_clock(value: datetime) -> str:
    hour = value.hour % 12 or 12
    suffix = "AM" if value.hour < 12 else "PM"
    return f"{hour}:{value.minute:02d} {suffix}"


def format_event_start(start_time: datetime, timezone_name: str | None) -> str:
    start = to_local(start_time, timezone_name)
    return f"{start:%a}, {start:%b} {start.day}, {format_clock(start)}"


def format_event_time(start_time: datetime, end_time: datetime, timezone_name: str | None) -> str:
    end = to_local(end_time, timezone_name)
    return f"{format_event_start(start_time, timezone_name)} - {format_clock(end)}"


def format_duration(start_time: datetime, end_time: datetime) -> str:
    minutes = max(0, round((end_time - start_time).total_seconds() / 60))
    if minutes < 60:
        return f"{minutes} minutes"
    hours, remainder = divmod(minutes, 60)
    if remainder:
        return f"{hours}h {remainder}m"
    return f"{hours} hour{'s' if hours > 1 else ''}"


def _previous_story_lines(context: GenerationContext) -> list[str]:
    if not context.previous_stories:
        return []
    lines = ["", "Previous storylines (keep continuity, do not repeat):"]
    for story in context.previous_stories:
        summary = " ".join(story.story_text.split())[:160]
        lines.append(f'- {story.event_date:%b} {story.event_date.day} "{story.event_title}": {summary}')
    return lines


def build_prompt(context: GenerationContext, rng: random.Random | None = None) -> str:
    config = THEME_CONFIGS[context.theme]
    chooser = rng or random.Random()
    persona = chooser.choice(personas_for(context.theme, context.user_gender, context.user_age))

    details = [
        format_event_time(context.start_time, context.end_time, context.user_timezone),
        format_duration(context.start_time, context.end_time),
    ]
    if context.attendee_count:
        details.append(f"{context.attendee_count} people")
    if context.location:
        details.append(context.location)

    gender_hint = f" (Gender: {context.user_gender})" if context.user_gender else ""
    age_hint = f" (Age: {context.user_age})" if context.user_age else ""

    lines = [
        f'Transform "{context.event_title}" ({", ".join(details)}) into {config.theme.value} '
        "story starring the user.",
        "",
        f'USER: Address as "{persona}"{gender_hint}{age_hint} - make them the main character',
        f"STYLE: {' '.join(config.tone_description.split()[:8])}",
        f"KEYWORDS: {', '.join(config.keywords[:8])}",
        "",
        "RULES:",
        *(f"{index}. {rule}" for index, rule in enumerate(PROMPT_RULES, start=1)),
        "",
        f'EXAMPLE: "{config.example_story}"',
    ]
    lines.extend(_previous_story_lines(context))
    lines.extend(["", RESPONSE_FORMAT])
    return "\n".join(lines)
