import enum
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from storytime.db.base import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


class Theme(enum.StrEnum):
    fantasy = "FANTASY"
    genz = "GENZ"
    meme = "MEME"


class AIProviderName(enum.StrEnum):
    openai = "OPENAI"
    claude = "CLAUDE"
    gemini = "GEMINI"


class EventStatus(enum.StrEnum):
    active = "active"
    cancelled = "cancelled"


class NotificationStatus(enum.StrEnum):
    pending = "pending"
    sent = "sent"
    failed = "failed"
    cancelled = "cancelled"


class ChannelType(enum.StrEnum):
    slack = "slack"


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC", nullable=False)
    selected_theme: Mapped[Theme] = mapped_column(
        Enum(Theme, native_enum=False),
        default=Theme.fantasy,
        nullable=False,
    )
    ai_provider: Mapped[AIProviderName | None] = mapped_column(
        Enum(AIProviderName, native_enum=False),
        nullable=True,
    )
    ai_api_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    ai_model: Mapped[str | None] = mapped_column(String(128), nullable=True)
    notification_minutes: Mapped[int] = mapped_column(Integer, default=15, nullable=False)
    age: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gender: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_now,
        nullable=False,
    )

    events: Mapped[list["CalendarEvent"]] = relationship(back_populates="owner")
    channels: Mapped[list["NotificationChannel"]] = relationship(back_populates="user")


class CalendarEvent(Base):
    __tablename__ = "calendar_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
    )
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    location: Mapped[str | None] = mapped_column(String(512), nullable=True)
    meeting_link: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    attendee_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[EventStatus] = mapped_column(
        Enum(EventStatus, native_enum=False),
        default=EventStatus.active,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_now,
        nullable=False,
    )

    owner: Mapped[User] = relationship(back_populates="events")


class Storyline(Base):
    __tablename__ = "storylines"
    __table_args__ = (UniqueConstraint("event_id", "theme", name="uq_storylines_event_theme"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
    )
    event_id: Mapped[str] = mapped_column(
        ForeignKey("calendar_events.id", ondelete="CASCADE"),
        index=True,
    )
    theme: Mapped[Theme] = mapped_column(Enum(Theme, native_enum=False), nullable=False)
    story_text: Mapped[str] = mapped_column(Text, nullable=False)
    plain_text: Mapped[str] = mapped_column(Text, nullable=False)
    emoji: Mapped[str] = mapped_column(String(32), nullable=False)
    ai_provider: Mapped[AIProviderName | None] = mapped_column(
        Enum(AIProviderName, native_enum=False),
        nullable=True,
    )
    ai_model: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tokens_used: Mapped[int | None] = mapped_column(Integer, nullable=True)
    fallback_level: Mapped[str | None] = mapped_column(String(16), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_now,
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class NotificationChannel(Base):
    __tablename__ = "notification_channels"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
    )
    type: Mapped[str] = mapped_column(String(32), default=ChannelType.slack, nullable=False)
    identifier: Mapped[str] = mapped_column(String(256), nullable=False)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_now,
        nullable=False,
    )

    user: Mapped[User] = relationship(back_populates="channels")


class NotificationRecord(Base):
    __tablename__ = "notification_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
    )
    event_id: Mapped[str] = mapped_column(
        ForeignKey("calendar_events.id", ondelete="CASCADE"),
        index=True,
    )
    storyline_id: Mapped[str | None] = mapped_column(
        ForeignKey("storylines.id", ondelete="SET NULL"),
        nullable=True,
    )
    channel_id: Mapped[str | None] = mapped_column(
        ForeignKey("notification_channels.id", ondelete="SET NULL"),
        nullable=True,
    )
    status: Mapped[NotificationStatus] = mapped_column(
        Enum(NotificationStatus, native_enum=False),
        default=NotificationStatus.pending,
        nullable=False,
    )
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    message_text: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_now,
        nullable=False,
    )


Index("ix_calendar_event_user_start", CalendarEvent.user_id, CalendarEvent.start_time)
Index("ix_storyline_user_theme_created", Storyline.user_id, Storyline.theme, Storyline.created_at)
Index(
    "ix_notification_status_scheduled",
    NotificationRecord.status,
    NotificationRecord.scheduled_for,
)
Index("ix_notification_user_event", NotificationRecord.user_id, NotificationRecord.event_id)
Index(
    "uq_notification_open_user_event",
    NotificationRecord.user_id,
    NotificationRecord.event_id,
    unique=True,
    postgresql_where=text("status IN ('pending', 'sent')"),
    sqlite_where=text("status IN ('pending', 'sent')"),
)
