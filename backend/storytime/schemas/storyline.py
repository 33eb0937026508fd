from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from storytime.db.models import AIProviderName, Theme


class StorylineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    event_id: str
    theme: Theme
    story_text: str
    plain_text: str
    emoji: str
    ai_provider: AIProviderName | None
    ai_model: str | None
    tokens_used: int | None
    fallback_level: str | None
    is_active: bool
    created_at: datetime
    expires_at: datetime


class StorylineStats(BaseModel):
    total: int = 0
    by_theme: dict[str, int] = Field(default_factory=dict)
    by_provider: dict[str, int] = Field(default_factory=dict)
    total_tokens_used: int = 0
    fallback_count: int = 0
