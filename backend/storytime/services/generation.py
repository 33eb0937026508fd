from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storytime.core.config import Settings
from storytime.core.security import (
    DecryptionError,
    EncryptionKeyMismatchError,
    decrypt_secret,
    looks_encrypted,
)
from storytime.db.models import (
    AIProviderName,
    CalendarEvent,
    EventStatus,
    Storyline,
    Theme,
    User,
)
from storytime.schemas.storyline import StorylineRead, StorylineStats
from storytime.services.ai.errors import AIErrorType, ProviderError
from storytime.services.ai.registry import ProviderRegistry
from storytime.services.ai.types import (
    GenerationContext,
    NormalizedRequest,
    NormalizedResponse,
    PreviousStory,
)
from storytime.services.fallback import FallbackGenerator, FallbackResult
from storytime.services.notifications import NotificationPipeline
from storytime.services.prompts import build_prompt

logger = logging.getLogger(__name__)

KEY_MISMATCH_MESSAGE = (
    "Your API key was encrypted with a different encryption key and cannot be decrypted. "
    "Please go to AI Settings and re-enter your API key."
)
KEY_UNREADABLE_MESSAGE = (
    "Failed to decrypt API key. Please go to AI Settings and re-enter your API key "
    "to resolve this issue."
)


def _now() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class BatchTooLargeError(ValueError):
    pass


class UserNotFoundError(LookupError):
    pass


@dataclass(slots=True)
class GenerationOptions:
    force_regenerate: bool = False
    include_context: bool = True
    max_retries: int | None = None

    def __post_init__(self) -> None:
        if self.max_retries is not None and self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")


@dataclass(slots=True)
class GenerationResult:
    success: bool
    event_id: str
    storyline: StorylineRead | None = None
    error: str | None = None
    error_type: AIErrorType | None = None
    fallback_used: bool = False
    tokens_used: int | None = None
    cached: bool = False


@dataclass(slots=True)
class UserGenerationSummary:
    total_events: int
    successful: int
    failed: int
    results: list[GenerationResult] = field(default_factory=list)


@dataclass(slots=True)
class _StoryContent:
    story_text: str
    emoji: str
    plain_text: str
    ai_provider: AIProviderName | None = None
    ai_model: str | None = None
    tokens_used: int | None = None
    fallback_level: str | None = None
    error: ProviderError | None = None

    @classmethod
    def from_response(cls, response: NormalizedResponse) -> _StoryContent:
        return cls(
            story_text=response.story_text,
            emoji=response.emoji,
            plain_text=response.plain_text,
            ai_provider=response.provider,
            ai_model=response.model,
            tokens_used=response.tokens_used,
        )

    @classmethod
    def from_fallback(
        cls,
        result: FallbackResult,
        error: ProviderError | None = None,
    ) -> _StoryContent:
        return cls(
            story_text=result.story_text,
            emoji=result.emoji,
            plain_text=result.plain_text,
            fallback_level=result.fallback_level.value,
            error=error,
        )


class GenerationOrchestrator:
    def __init__(
        self,
        *,
        session_maker: async_sessionmaker[AsyncSession],
        registry: ProviderRegistry,
        fallback: FallbackGenerator,
        settings: Settings,
        notifications: NotificationPipeline | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _now,
        rng: random.Random | None = None,
    ) -> None:
        self._session_maker = session_maker
        self._registry = registry
        self._fallback = fallback
        self._settings = settings
        self._notifications = notifications
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()

    async def generate_for_event(
        self,
        event_id: str,
        user_id: str,
        theme: Theme | None = None,
        options: GenerationOptions | None = None,
    ) -> GenerationResult:
        options = options or GenerationOptions()

        async with self._session_maker() as session:
            event = await session.get(CalendarEvent, event_id)
            if event is None or event.user_id != user_id:
                return GenerationResult(
                    success=False,
                    event_id=event_id,
                    error="Event not found",
                    error_type=AIErrorType.invalid_request,
                )
            user = await session.get(User, user_id)
            if user is None:
                return GenerationResult(
                    success=False,
                    event_id=event_id,
                    error="User not found",
                    error_type=AIErrorType.invalid_request,
                )

            target_theme = theme or user.selected_theme
            if not options.force_regenerate:
                existing = await self._valid_storyline(session, event_id, target_theme)
                if existing is not None:
                    logger.info(
                        "Reusing storyline %s for event %s (%s)",
                        existing.id,
                        event_id,
                        target_theme,
                    )
                    return GenerationResult(
                        success=True,
                        event_id=event_id,
                        storyline=StorylineRead.model_validate(existing),
                        fallback_used=existing.ai_provider is None,
                        tokens_used=0,
                        cached=True,
                    )

            previous = (
                await self._previous_stories(
                    session,
                    user_id,
                    target_theme,
                    exclude_event_id=event_id,
                )
                if options.include_context
                else ()
            )

        context = GenerationContext(
            event_title=event.title,
            start_time=event.start_time,
            end_time=event.end_time,
            user_timezone=user.timezone,
            theme=target_theme,
            event_description=event.description,
            location=event.location,
            meeting_link=event.meeting_link,
            attendee_count=event.attendee_count,
            user_age=user.age,
            user_gender=user.gender,
            previous_stories=previous,
        )
        content = await self._story_content(user, event, context, options)

        async with self._session_maker() as session:
            storyline = await self._save_storyline(
                session, user_id, event_id, target_theme, content
            )
        logger.info(
            "Saved storyline %s for event %s via %s",
            storyline.id,
            event_id,
            content.ai_provider or f"fallback:{content.fallback_level}",
        )

        await self._schedule_notification(user, event, storyline)

        return GenerationResult(
            success=True,
            event_id=event_id,
            storyline=StorylineRead.model_validate(storyline),
            error=content.error.message if content.error else None,
            error_type=content.error.kind if content.error else None,
            fallback_used=content.ai_provider is None,
            tokens_used=content.tokens_used,
        )

    async def generate_for_events(
        self,
        event_ids: Sequence[str],
        user_id: str,
        theme: Theme | None = None,
        options: GenerationOptions | None = None,
    ) -> list[GenerationResult]:
        if len(event_ids) > self._settings.max_batch_size:
            raise BatchTooLargeError(
                f"Cannot generate more than {self._settings.max_batch_size} storylines at once"
            )

        semaphore = asyncio.Semaphore(self._settings.generation_concurrency)

        async def run(event_id: str) -> GenerationResult:
            async with semaphore:
                return await self.generate_for_event(event_id, user_id, theme, options)

        outcomes = await asyncio.gather(
            *(run(event_id) for event_id in event_ids),
            return_exceptions=True,
        )

        results: list[GenerationResult] = []
        for event_id, outcome in zip(event_ids, outcomes, strict=True):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.error("Storyline generation for event %s failed: %s", event_id, outcome)
                results.append(
                    GenerationResult(
                        success=False,
                        event_id=event_id,
                        error=str(outcome) or outcome.__class__.__name__,
                        error_type=AIErrorType.unknown_error,
                    )
                )
            else:
                results.append(outcome)
        return results

    async def generate_for_user(
        self,
        user_id: str,
        options: GenerationOptions | None = None,
    ) -> UserGenerationSummary:
        now = self._clock()
        window_end = now + timedelta(days=self._settings.generation_sync_window_days)
        async with self._session_maker() as session:
            user = await session.get(User, user_id)
            if user is None:
                raise UserNotFoundError(f"User {user_id} not found")
            event_ids = list(
                (
                    await session.scalars(
                        select(CalendarEvent.id)
                        .where(
                            CalendarEvent.user_id == user_id,
                            CalendarEvent.status == EventStatus.active,
                            CalendarEvent.start_time >= now,
                            CalendarEvent.start_time <= window_end,
                        )
                        .order_by(CalendarEvent.start_time)
                    )
                ).all()
            )
            theme = user.selected_theme

        results: list[GenerationResult] = []
        batch_size = self._settings.max_batch_size
        for start in range(0, len(event_ids), batch_size):
            results.extend(
                await self.generate_for_events(
                    event_ids[start : start + batch_size],
                    user_id,
                    theme,
                    options,
                )
            )

        successful = sum(1 for result in results if result.success)
        return UserGenerationSummary(
            total_events=len(event_ids),
            successful=successful,
            failed=len(results) - successful,
            results=results,
        )

    async def cleanup_expired(self) -> int:
        async with self._session_maker() as session:
            result = await session.execute(
                delete(Storyline).where(
                    or_(Storyline.expires_at < self._clock(), Storyline.is_active.is_(False))
                )
            )
            await session.commit()
        removed = result.rowcount or 0
        logger.info("Cleaned up %d expired storylines", removed)
        return removed

    async def storyline_stats(self, user_id: str) -> StorylineStats:
        async with self._session_maker() as session:
            storylines = (
                await session.scalars(
                    select(Storyline).where(
                        Storyline.user_id == user_id,
                        Storyline.is_active.is_(True),
                    )
                )
            ).all()

        stats = StorylineStats(
            total=len(storylines),
            by_theme={theme.value: 0 for theme in Theme},
            by_provider={provider.value: 0 for provider in AIProviderName},
        )
        for storyline in storylines:
            stats.by_theme[storyline.theme.value] += 1
            if storyline.ai_provider is None:
                stats.fallback_count += 1
                continue
            stats.by_provider[storyline.ai_provider.value] += 1
            stats.total_tokens_used += storyline.tokens_used or 0
        return stats

    async def _valid_storyline(
        self,
        session: AsyncSession,
        event_id: str,
        theme: Theme,
    ) -> Storyline | None:
        storyline = await self._storyline_for(session, event_id, theme)
        if storyline is None or not storyline.is_active:
            return None
        if _as_utc(storyline.expires_at) < self._clock():
            return None
        return storyline

    async def _storyline_for(
        self,
        session: AsyncSession,
        event_id: str,
        theme: Theme,
    ) -> Storyline | None:
        return await session.scalar(
            select(Storyline).where(Storyline.event_id == event_id, Storyline.theme == theme)
        )

    async def _previous_stories(
        self,
        session: AsyncSession,
        user_id: str,
        theme: Theme,
        *,
        exclude_event_id: str,
    ) -> tuple[PreviousStory, ...]:
        rows = await session.execute(
            select(Storyline, CalendarEvent)
            .join(CalendarEvent, CalendarEvent.id == Storyline.event_id)
            .where(
                Storyline.user_id == user_id,
                Storyline.theme == theme,
                Storyline.is_active.is_(True),
                Storyline.event_id != exclude_event_id,
            )
            .order_by(Storyline.created_at.desc())
            .limit(self._settings.previous_story_limit)
        )
        return tuple(
            PreviousStory(
                event_title=event.title,
                story_text=storyline.story_text,
                theme=storyline.theme,
                event_date=event.start_time,
            )
            for storyline, event in rows.all()
        )

    def _api_key(self, user: User) -> str:
        stored = user.ai_api_key or ""
        provider = str(user.ai_provider) if user.ai_provider else None
        try:
            return decrypt_secret(stored, secret_key=self._settings.encryption_key)
        except EncryptionKeyMismatchError as exc:
            raise ProviderError(
                AIErrorType.invalid_api_key,
                KEY_MISMATCH_MESSAGE,
                provider=provider,
            ) from exc
        except DecryptionError as exc:
            if stored and not looks_encrypted(stored):
                logger.warning(
                    "User %s has an unencrypted API key; re-save it in AI settings", user.id
                )
                return stored
            raise ProviderError(
                AIErrorType.invalid_api_key,
                KEY_UNREADABLE_MESSAGE,
                provider=provider,
            ) from exc

    async def _story_content(
        self,
        user: User,
        event: CalendarEvent,
        context: GenerationContext,
        options: GenerationOptions,
    ) -> _StoryContent:
        if not user.ai_provider or not user.ai_api_key:
            logger.info("User %s has no AI provider configured, using fallback", user.id)
            return self._fallback_content(user, event, context.theme, None)

        try:
            api_key = self._api_key(user)
            adapter = self._registry.get_adapter(user.ai_provider)
        except ProviderError as exc:
            logger.warning("AI generation unavailable for user %s: %s", user.id, exc)
            return self._fallback_content(user, event, context.theme, exc)

        request = NormalizedRequest(
            prompt=build_prompt(context, self._rng),
            api_key=api_key,
            model=user.ai_model or adapter.default_model,
            max_tokens=self._settings.ai_max_output_tokens,
            temperature=self._settings.ai_temperature,
        )
        max_retries = (
            options.max_retries
            if options.max_retries is not None
            else self._settings.ai_max_retries
        )
        last_error: ProviderError | None = None
        for attempt in range(max_retries):
            try:
                response = await adapter.generate_story(request, context)
            except ProviderError as exc:
                last_error = exc
                logger.warning(
                    "AI generation attempt %d/%d for event %s failed: %s",
                    attempt + 1,
                    max_retries,
                    event.id,
                    exc,
                )
                if attempt < max_retries - 1:
                    await self._sleep(self._settings.ai_backoff_base_seconds * 2**attempt)
                continue
            return _StoryContent.from_response(response)

        return self._fallback_content(user, event, context.theme, last_error)

    def _fallback_content(
        self,
        user: User,
        event: CalendarEvent,
        theme: Theme,
        error: ProviderError | None,
    ) -> _StoryContent:
        result = self._fallback.generate(
            event,
            theme,
            error.kind if error else None,
            provider=str(user.ai_provider) if user.ai_provider else None,
            timezone=user.timezone,
        )
        logger.info(
            "Using %s fallback (confidence %.1f) for event %s",
            result.fallback_level,
            result.confidence,
            event.id,
        )
        return _StoryContent.from_fallback(result, error)

    async def _save_storyline(
        self,
        session: AsyncSession,
        user_id: str,
        event_id: str,
        theme: Theme,
        content: _StoryContent,
    ) -> Storyline:
        values = {
            "story_text": content.story_text,
            "plain_text": content.plain_text,
            "emoji": content.emoji,
            "ai_provider": content.ai_provider,
            "ai_model": content.ai_model,
            "tokens_used": content.tokens_used,
            "fallback_level": content.fallback_level,
            "is_active": True,
            "expires_at": self._clock() + timedelta(hours=self._settings.storyline_ttl_hours),
        }

        storyline = await self._storyline_for(session, event_id, theme)
        if storyline is None:
            storyline = Storyline(user_id=user_id, event_id=event_id, theme=theme, **values)
            session.add(storyline)
            try:
                await session.commit()
                return storyline
            except IntegrityError:
                await session.rollback()
                storyline = await self._storyline_for(session, event_id, theme)
                if storyline is None:
                    raise

        for key, value in values.items():
            setattr(storyline, key, value)
        await session.commit()
        return storyline

    async def _schedule_notification(
        self,
        user: User,
        event: CalendarEvent,
        storyline: Storyline,
    ) -> None:
        if self._notifications is None:
            return
        try:
            await self._notifications.schedule(
                user_id=user.id,
                event_id=event.id,
                storyline_id=storyline.id,
                event_start_time=event.start_time,
                minutes_before=(
                    user.notification_minutes or self._settings.notification_minutes_before
                ),
            )
        except Exception:
            logger.warning(
                "Failed to schedule notification for event %s", event.id, exc_info=True
            )
