from datetime import datetime

from pydantic import BaseModel, ConfigDict

from storytime.db.models import NotificationStatus


class NotificationRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    event_id: str
    storyline_id: str | None
    channel_id: str | None
    status: NotificationStatus
    scheduled_for: datetime
    sent_at: datetime | None
    retry_count: int
    error_message: str | None
    message_text: str
    created_at: datetime


class NotificationStats(BaseModel):
    total: int = 0
    sent: int = 0
    pending: int = 0
    failed: int = 0
    cancelled: int = 0
