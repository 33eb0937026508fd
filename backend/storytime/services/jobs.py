"""Background jobs driven by APScheduler.

- notification delivery: every ``notification_poll_seconds``
- story generation for upcoming events: hourly at ``story_generation_minute``
- expired storyline cleanup: daily at ``cleanup_hour`` UTC
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storytime.core.config import Settings
from storytime.db.models import User
from storytime.services.generation import GenerationOptions, GenerationOrchestrator
from storytime.services.notifications import NotificationPipeline

logger = logging.getLogger(__name__)

NOTIFICATION_JOB_ID = "deliver_notifications"
STORY_JOB_ID = "generate_storylines"
CLEANUP_JOB_ID = "cleanup_storylines"
USER_BATCH_PAUSE_SECONDS = 1.0


@dataclass(slots=True)
class StoryJobSummary:
    users: int = 0
    events: int = 0
    successful: int = 0
    failed: int = 0


async def run_notification_delivery(notifications: NotificationPipeline) -> None:
    try:
        summary = await notifications.process_due()
    except Exception:
        logger.exception("Notification delivery job failed")
        return
    if summary.processed:
        logger.info("Notification delivery job processed %d records", summary.processed)


async def run_story_generation(
    *,
    orchestrator: GenerationOrchestrator,
    session_maker: async_sessionmaker[AsyncSession],
    settings: Settings,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> StoryJobSummary:
    summary = StoryJobSummary()
    try:
        async with session_maker() as session:
            user_ids = list(
                (await session.scalars(select(User.id).where(User.is_active.is_(True)))).all()
            )
    except Exception:
        logger.exception("Story generation job could not load users")
        return summary

    logger.info("Story generation job found %d active users", len(user_ids))
    options = GenerationOptions(force_regenerate=False, include_context=True, max_retries=1)
    batch_size = settings.generation_user_batch_size

    for start in range(0, len(user_ids), batch_size):
        batch = user_ids[start : start + batch_size]
        outcomes = await asyncio.gather(
            *(orchestrator.generate_for_user(user_id, options) for user_id in batch),
            return_exceptions=True,
        )
        for user_id, outcome in zip(batch, outcomes, strict=True):
            summary.users += 1
            if isinstance(outcome, BaseException):
                logger.error("Story generation failed for user %s: %s", user_id, outcome)
                summary.failed += 1
                continue
            summary.events += outcome.total_events
            summary.successful += outcome.successful
            summary.failed += outcome.failed
        if start + batch_size < len(user_ids):
            await sleep(USER_BATCH_PAUSE_SECONDS)

    logger.info(
        "Story generation job done: %d users, %d events, %d ok, %d failed",
        summary.users,
        summary.events,
        summary.successful,
        summary.failed,
    )
    return summary


async def run_storyline_cleanup(orchestrator: GenerationOrchestrator) -> None:
    try:
        await orchestrator.cleanup_expired()
    except Exception:
        logger.exception("Storyline cleanup job failed")


def setup_scheduler(
    *,
    orchestrator: GenerationOrchestrator,
    notifications: NotificationPipeline,
    session_maker: async_sessionmaker[AsyncSession],
    settings: Settings,
) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone="UTC")

    scheduler.add_job(
        run_notification_delivery,
        trigger=IntervalTrigger(seconds=settings.notification_poll_seconds),
        kwargs={"notifications": notifications},
        id=NOTIFICATION_JOB_ID,
        name="Deliver due notifications",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_story_generation,
        trigger=CronTrigger(minute=settings.story_generation_minute),
        kwargs={
            "orchestrator": orchestrator,
            "session_maker": session_maker,
            "settings": settings,
        },
        id=STORY_JOB_ID,
        name="Generate storylines for upcoming events",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_storyline_cleanup,
        trigger=CronTrigger(hour=settings.cleanup_hour, minute=0),
        kwargs={"orchestrator": orchestrator},
        id=CLEANUP_JOB_ID,
        name="Remove expired storylines",
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: notifications every %ds, storylines hourly at :%02d, "
        "cleanup daily at %02d:00 UTC",
        settings.notification_poll_seconds,
        settings.story_generation_minute,
        settings.cleanup_hour,
    )
    return scheduler


@asynccontextmanager
async def scheduler_lifespan(
    *,
    orchestrator: GenerationOrchestrator,
    notifications: NotificationPipeline,
    session_maker: async_sessionmaker[AsyncSession],
    settings: Settings,
) -> AsyncIterator[AsyncIOScheduler | None]:
    if not settings.jobs_enabled:
        logger.info("Background jobs disabled")
        yield None
        return

    scheduler = setup_scheduler(
        orchestrator=orchestrator,
        notifications=notifications,
        session_maker=session_maker,
        settings=settings,
    )
    scheduler.start()
    logger.info("Background scheduler started")
    try:
        yield scheduler
    finally:
        if scheduler.running:
            scheduler.shutdown(wait=False)
            logger.info("Background scheduler shut down")
