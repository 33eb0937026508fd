from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storytime.core.config import Settings
from storytime.db.models import (
    CalendarEvent,
    ChannelType,
    NotificationChannel,
    NotificationRecord,
    NotificationStatus,
    Storyline,
    User,
)
from storytime.schemas.notification import NotificationRecordRead, NotificationStats
from storytime.services.channels import ChannelRegistry, OutboundMessage
from storytime.services.prompts import format_event_start

logger = logging.getLogger(__name__)

OPEN_STATUSES = (NotificationStatus.pending, NotificationStatus.sent)


def _now() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def render_message(
    channel_type: str,
    *,
    storyline: Storyline,
    event: CalendarEvent,
    timezone: str | None = None,
) -> str:
    event_time = format_event_start(event.start_time, timezone)
    if channel_type == ChannelType.slack:
        location = f" • 📍 {event.location}" if event.location else ""
        return (
            f"{storyline.emoji} {storyline.story_text}\n\n"
            f"📅 {event.title} • {event_time}{location}"
        )
    return f"{storyline.emoji} {storyline.story_text}\n\n{event.title} at {event_time}"


def retry_delay(retry_count: int) -> timedelta:
    return timedelta(minutes=2 ** max(retry_count - 1, 0))


@dataclass(slots=True)
class DeliverySummary:
    processed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0


class NotificationPipeline:
    def __init__(
        self,
        *,
        session_maker: async_sessionmaker[AsyncSession],
        channels: ChannelRegistry,
        settings: Settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self._session_maker = session_maker
        self._channels = channels
        self._settings = settings
        self._sleep = sleep
        self._clock = clock

    @property
    def max_retries(self) -> int:
        return self._settings.notification_max_retries

    async def schedule(
        self,
        *,
        user_id: str,
        event_id: str,
        storyline_id: str,
        event_start_time: datetime,
        minutes_before: int | None = None,
        force_schedule: bool = False,
    ) -> NotificationRecordRead | None:
        lead_minutes = (
            minutes_before
            if minutes_before is not None
            else self._settings.notification_minutes_before
        )
        scheduled_for = _as_utc(event_start_time) - timedelta(minutes=lead_minutes)
        if scheduled_for < self._clock() and not force_schedule:
            logger.info("Skipping notification for past event %s (due %s)", event_id, scheduled_for)
            return None

        async with self._session_maker() as session:
            existing = await self._open_record(session, user_id=user_id, event_id=event_id)
            if existing is not None:
                logger.info(
                    "Notification %s already scheduled for event %s", existing.id, event_id
                )
                return None

            channel = await session.scalar(
                select(NotificationChannel)
                .where(
                    NotificationChannel.user_id == user_id,
                    NotificationChannel.is_active.is_(True),
                    NotificationChannel.is_primary.is_(True),
                )
                .order_by(NotificationChannel.created_at)
                .limit(1)
            )
            if channel is None:
                logger.warning("No active notification channel for user %s", user_id)
                return None

            storyline = await session.get(Storyline, storyline_id)
            if storyline is None:
                logger.error("Storyline %s not found for notification", storyline_id)
                return None
            event = await session.get(CalendarEvent, storyline.event_id)
            if event is None:
                logger.error("Event %s not found for notification", storyline.event_id)
                return None
            user = await session.get(User, user_id)

            record = NotificationRecord(
                user_id=user_id,
                event_id=event_id,
                storyline_id=storyline_id,
                channel_id=channel.id,
                status=NotificationStatus.pending,
                scheduled_for=scheduled_for,
                message_text=render_message(
                    channel.type,
                    storyline=storyline,
                    event=event,
                    timezone=user.timezone if user else None,
                ),
            )
            session.add(record)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("Notification for event %s was scheduled concurrently", event_id)
                return None

        logger.info(
            "Scheduled %s notification %s for event %s at %s",
            channel.type,
            record.id,
            event_id,
            scheduled_for.isoformat(),
        )
        return NotificationRecordRead.model_validate(record)

    async def _open_record(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        event_id: str,
    ) -> NotificationRecord | None:
        return await session.scalar(
            select(NotificationRecord)
            .where(
                NotificationRecord.user_id == user_id,
                NotificationRecord.event_id == event_id,
                NotificationRecord.status.in_(OPEN_STATUSES),
            )
            .limit(1)
        )

    async def process_due(self) -> DeliverySummary:
        summary = DeliverySummary()
        async with self._session_maker() as session:
            record_ids = list(
                (
                    await session.scalars(
                        select(NotificationRecord.id)
                        .where(
                            NotificationRecord.status == NotificationStatus.pending,
                            NotificationRecord.scheduled_for <= self._clock(),
                            NotificationRecord.retry_count < self.max_retries,
                        )
                        .order_by(NotificationRecord.scheduled_for)
                        .limit(self._settings.notification_batch_size)
                    )
                ).all()
            )
        if not record_ids:
            return summary

        logger.info("Processing %d due notifications", len(record_ids))
        for index, record_id in enumerate(record_ids):
            if index:
                await self._sleep(self._settings.notification_delivery_pause_seconds)
            outcome = await self._deliver(record_id)
            if outcome is None:
                summary.skipped += 1
                continue
            summary.processed += 1
            if outcome is NotificationStatus.sent:
                summary.sent += 1
            elif outcome is NotificationStatus.failed:
                summary.failed += 1
            else:
                summary.retried += 1

        logger.info(
            "Notification batch done: %d sent, %d retrying, %d failed, %d skipped",
            summary.sent,
            summary.retried,
            summary.failed,
            summary.skipped,
        )
        return summary

    async def _deliver(self, record_id: str) -> NotificationStatus | None:
        async with self._session_maker() as session:
            record = await session.get(NotificationRecord, record_id)
            if record is None or record.status is not NotificationStatus.pending:
                logger.info("Notification %s is no longer pending, skipping", record_id)
                return None

            error: str | None = None
            delivered = False
            try:
                channel = (
                    await session.get(NotificationChannel, record.channel_id)
                    if record.channel_id
                    else None
                )
                message = await self._outbound_message(session, record)
                delivered = await self._channels.send(
                    channel.type if channel else None,
                    record.user_id,
                    message,
                )
            except Exception as exc:
                logger.error("Delivery of notification %s raised: %s", record_id, exc)
                error = str(exc) or exc.__class__.__name__

            now = self._clock()
            if delivered:
                values = {
                    "status": NotificationStatus.sent,
                    "sent_at": now,
                    "error_message": None,
                }
            else:
                values = self._failure_values(
                    record_id,
                    retry_count=record.retry_count + 1,
                    error=error,
                    now=now,
                )

            # A cancel that lands while the channel call is in flight wins.
            try:
                result = await session.execute(
                    update(NotificationRecord)
                    .where(
                        NotificationRecord.id == record_id,
                        NotificationRecord.status == NotificationStatus.pending,
                        NotificationRecord.retry_count == record.retry_count,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
            except SQLAlchemyError:
                await session.rollback()
                logger.exception("Failed to persist delivery state for notification %s", record_id)
                return None

        if not result.rowcount:
            logger.warning(
                "Notification %s changed state during delivery, leaving it as is", record_id
            )
            return None
        if values["status"] is NotificationStatus.sent:
            logger.info("Notification %s delivered", record_id)
        return values["status"]

    def _failure_values(
        self,
        record_id: str,
        *,
        retry_count: int,
        error: str | None,
        now: datetime,
    ) -> dict[str, Any]:
        if retry_count >= self.max_retries:
            logger.error(
                "Notification %s permanently failed after %d attempts",
                record_id,
                retry_count,
            )
            return {
                "status": NotificationStatus.failed,
                "retry_count": retry_count,
                "error_message": error or "Max retries exceeded",
            }

        delay = retry_delay(retry_count)
        logger.warning(
            "Notification %s retry %d scheduled in %s",
            record_id,
            retry_count,
            delay,
        )
        return {
            "status": NotificationStatus.pending,
            "retry_count": retry_count,
            "scheduled_for": now + delay,
            "error_message": error or "Delivery failed",
        }

    async def _outbound_message(
        self,
        session: AsyncSession,
        record: NotificationRecord,
    ) -> OutboundMessage:
        storyline = (
            await session.get(Storyline, record.storyline_id) if record.storyline_id else None
        )
        event = await session.get(CalendarEvent, record.event_id)
        if storyline is None or event is None:
            return OutboundMessage(text=record.message_text)

        user = await session.get(User, record.user_id)
        return OutboundMessage(
            text=record.message_text,
            event_title=event.title,
            story_text=storyline.story_text,
            emoji=storyline.emoji,
            event_time=format_event_start(event.start_time, user.timezone if user else None),
            location=event.location,
            theme=storyline.theme.value,
        )

    async def cancel_event_notifications(self, event_id: str) -> int:
        async with self._session_maker() as session:
            result = await session.execute(
                update(NotificationRecord)
                .where(
                    NotificationRecord.event_id == event_id,
                    NotificationRecord.status == NotificationStatus.pending,
                )
                .values(status=NotificationStatus.cancelled)
            )
            await session.commit()
        cancelled = result.rowcount or 0
        logger.info("Cancelled %d pending notifications for event %s", cancelled, event_id)
        return cancelled

    async def notification_stats(self, user_id: str) -> NotificationStats:
        async with self._session_maker() as session:
            rows = await session.execute(
                select(NotificationRecord.status, func.count(NotificationRecord.id))
                .where(NotificationRecord.user_id == user_id)
                .group_by(NotificationRecord.status)
            )
            counts = {status: count for status, count in rows.all()}

        return NotificationStats(
            total=sum(counts.values()),
            sent=counts.get(NotificationStatus.sent, 0),
            pending=counts.get(NotificationStatus.pending, 0),
            failed=counts.get(NotificationStatus.failed, 0),
            cancelled=counts.get(NotificationStatus.cancelled, 0),
        )
