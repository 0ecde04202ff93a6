import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from telegram import Bot
from telegram.error import TelegramError

from src.bot.formatters import (
    format_critical_gap,
    format_new_content,
    format_stream_status_change,
    split_message,
)
from src.db.models import ContentItem

logger = logging.getLogger(__name__)


class EventType(Enum):
    CONTENT_FOUND = "content_found"
    STREAM_STATUS_CHANGED = "stream_status_changed"
    SCHEDULE_SUGGESTION_GENERATED = "schedule_suggestion_generated"
    CRITICAL_GAP_DETECTED = "critical_gap_detected"


@dataclass
class Event:
    type: EventType
    channel_id: Optional[str] = None
    schedule_id: Optional[int] = None
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class NotificationSink(ABC):
    """Receives new content as it is found. Delivery is best-effort."""

    @abstractmethod
    async def notify_new_content(self, item: ContentItem) -> None:
        ...

    @abstractmethod
    async def notify_stream_status_change(self, old: ContentItem, new: ContentItem) -> None:
        ...

    async def notify_critical_gap(self, gap: dict) -> None:
        return None

    async def notify_admin(self, text: str) -> None:
        return None


class TelegramNotificationSink(NotificationSink):
    def __init__(self, bot: Bot, target_chat_id: int, admin_chat_id: int):
        self.bot = bot
        self.target_chat_id = target_chat_id
        self.admin_chat_id = admin_chat_id

    async def _send(self, chat_id: int, text: str) -> None:
        for part in split_message(text):
            await self.bot.send_message(chat_id=chat_id, text=part, parse_mode="HTML")

    async def notify_new_content(self, item: ContentItem) -> None:
        caption = format_new_content(item)
        if item.thumbnail_url:
            try:
                await self.bot.send_photo(
                    chat_id=self.target_chat_id,
                    photo=item.thumbnail_url,
                    caption=caption,
                    parse_mode="HTML",
                )
                return
            except TelegramError as e:
                logger.warning(f"Failed to send thumbnail: {e}")
        await self._send(self.target_chat_id, caption)

    async def notify_stream_status_change(self, old: ContentItem, new: ContentItem) -> None:
        await self._send(self.target_chat_id, format_stream_status_change(old, new))

    async def notify_critical_gap(self, gap: dict) -> None:
        await self._send(self.admin_chat_id, format_critical_gap(gap))

    async def notify_admin(self, text: str) -> None:
        await self._send(self.admin_chat_id, text)
