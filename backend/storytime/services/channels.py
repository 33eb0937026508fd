from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storytime.core.security import DecryptionError, decrypt_secret, looks_encrypted
from storytime.db.models import ChannelType, NotificationChannel

logger = logging.getLogger(__name__)

APP_SIGNATURE = "🎭 StoryTime Calendar"


@dataclass(frozen=True, slots=True)
class OutboundMessage:
    text: str
    event_title: str | None = None
    story_text: str | None = None
    emoji: str | None = None
    event_time: str | None = None
    location: str | None = None
    theme: str | None = None


class DeliveryChannel(Protocol):
    type: str

    async def send(self, user_id: str, message: OutboundMessage) -> bool: ...


class ChannelDeliveryError(RuntimeError):
    pass


def slack_blocks(message: OutboundMessage) -> list[dict[str, Any]]:
    if not (message.story_text and message.event_title):
        return [{"type": "section", "text": {"type": "mrkdwn", "text": message.text}}]

    details = f"📅 *{message.event_title}* • {message.event_time or ''}".rstrip(" •")
    if message.location:
        details += f" • 📍 {message.location}"
    return [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"{message.emoji or ''} *{message.story_text}*".strip()},
        },
        {"type": "context", "elements": [{"type": "mrkdwn", "text": details}]},
        {"type": "divider"},
        {
            "type": "context",
            "elements": [
                {"type": "mrkdwn", "text": f"{APP_SIGNATURE} • Theme: {message.theme or 'unknown'}"}
            ],
        },
    ]


class SlackChannel:
    """Direct-message delivery through the Slack Web API using the user's bot token."""

    type = ChannelType.slack.value

    def __init__(
        self,
        *,
        session_maker: async_sessionmaker[AsyncSession],
        client: httpx.AsyncClient,
        encryption_key: str,
        api_base_url: str = "https://slack.com/api",
        timeout_seconds: float = 10.0,
    ) -> None:
        self._session_maker = session_maker
        self._client = client
        self._encryption_key = encryption_key
        self._api_base_url = api_base_url.rstrip("/")
        self._timeout = timeout_seconds

    async def _active_integration(self, user_id: str) -> NotificationChannel | None:
        async with self._session_maker() as session:
            return await session.scalar(
                select(NotificationChannel)
                .where(
                    NotificationChannel.user_id == user_id,
                    NotificationChannel.type == self.type,
                    NotificationChannel.is_active.is_(True),
                )
                .order_by(NotificationChannel.is_primary.desc(), NotificationChannel.created_at)
                .limit(1)
            )

    def _access_token(self, integration: NotificationChannel) -> str:
        metadata = integration.metadata_json or {}
        token = metadata.get("access_token")
        if not token:
            raise ChannelDeliveryError("Slack integration has no access token")
        if not looks_encrypted(token):
            logger.warning("Slack token for channel %s is stored unencrypted", integration.id)
            return token
        try:
            return decrypt_secret(token, secret_key=self._encryption_key)
        except DecryptionError as exc:
            raise ChannelDeliveryError("Slack access token could not be decrypted") from exc

    async def send(self, user_id: str, message: OutboundMessage) -> bool:
        integration = await self._active_integration(user_id)
        if integration is None:
            raise ChannelDeliveryError("No active Slack integration found")

        access_token = self._access_token(integration)
        recipient = (integration.metadata_json or {}).get("slack_user_id") or integration.identifier
        fallback_text = (
            f"🎭 {message.event_title} reminder" if message.event_title else message.text
        )
        try:
            response = await self._client.post(
                f"{self._api_base_url}/chat.postMessage",
                json={
                    "channel": recipient,
                    "text": fallback_text,
                    "blocks": slack_blocks(message),
                    "unfurl_links": False,
                    "unfurl_media": False,
                },
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self._timeout,
            )
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ChannelDeliveryError(f"Slack request failed: {exc}") from exc

        if not data.get("ok"):
            logger.error("Slack delivery failed for user %s: %s", user_id, data.get("error"))
            return False

        logger.info("Slack message delivered to user %s (ts=%s)", user_id, data.get("ts"))
        return True


class ChannelRegistry:
    def __init__(self, channels: Iterable[DeliveryChannel] = ()) -> None:
        self._channels: dict[str, DeliveryChannel] = {}
        for channel in channels:
            self.register(channel)

    def register(self, channel: DeliveryChannel) -> None:
        self._channels[str(channel.type)] = channel

    def get(self, channel_type: str | None) -> DeliveryChannel | None:
        if channel_type is None:
            return None
        return self._channels.get(str(channel_type))

    def supported_types(self) -> list[str]:
        return sorted(self._channels)

    async def send(self, channel_type: str | None, user_id: str, message: OutboundMessage) -> bool:
        channel = self.get(channel_type)
        if channel is None:
            logger.warning("Unsupported notification channel type: %s", channel_type)
            return False
        return await channel.send(user_id, message)
