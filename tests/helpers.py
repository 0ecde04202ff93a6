"""Fakes and builders shared by the test modules."""

import threading
from datetime import datetime, time, timedelta, timezone

from src.db.models import ChannelSchedule, ContentItem, TimeSlot, VideoDetail
from src.db.repositories import ScheduleRepository
from src.services.errors import FetchFailure
from src.services.notifications import NotificationSink

# Monday
MONDAY_9AM = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = MONDAY_9AM):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeFetcher:
    platform = "youtube"

    def __init__(self):
        self.content: dict[str, list[ContentItem]] = {}
        self.live_status: dict[str, str] = {}
        self.failing: set[str] = set()
        # channels whose uploads playlist needs a lookup call
        self.unresolved: set[str] = set()
        self.calls: list[str] = []
        self.detail_calls: list[list[str]] = []

    def needs_lookup(self, channel_id: str) -> bool:
        return channel_id in self.unresolved

    def resolve_uploads_playlist(self, channel_id: str) -> str:
        self.calls.append(f"lookup:{channel_id}")
        self.unresolved.discard(channel_id)
        return "UU" + channel_id

    def fetch_recent_content(self, channel_id: str) -> list[ContentItem]:
        self.calls.append(channel_id)
        if channel_id in self.failing:
            raise FetchFailure(f"boom for {channel_id}")
        return [
            ContentItem(
                content_id=item.content_id,
                channel_id=item.channel_id,
                title=item.title,
                published_at=item.published_at,
            )
            for item in self.content.get(channel_id, [])
        ]

    def fetch_video_details(self, video_ids: list[str]) -> list[VideoDetail]:
        self.detail_calls.append(video_ids)
        return [
            VideoDetail(
                video_id=video_id,
                channel_id="",
                title="",
                live_status=self.live_status.get(video_id, "none"),
            )
            for video_id in video_ids
        ]


class SlowFetcher(FakeFetcher):
    """Blocks every fetch until `release` is set."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def fetch_recent_content(self, channel_id: str) -> list[ContentItem]:
        self.release.wait(5)
        return super().fetch_recent_content(channel_id)

    def fetch_video_details(self, video_ids: list[str]) -> list[VideoDetail]:
        self.release.wait(5)
        return super().fetch_video_details(video_ids)


class FakeSink(NotificationSink):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.new_content: list[ContentItem] = []
        self.status_changes: list[tuple[ContentItem, ContentItem]] = []
        self.gaps: list[dict] = []
        self.admin_messages: list[str] = []

    async def notify_new_content(self, item: ContentItem) -> None:
        if self.fail:
            raise RuntimeError("telegram is down")
        self.new_content.append(item)

    async def notify_stream_status_change(self, old: ContentItem, new: ContentItem) -> None:
        self.status_changes.append((old, new))

    async def notify_critical_gap(self, gap: dict) -> None:
        self.gaps.append(gap)

    async def notify_admin(self, text: str) -> None:
        self.admin_messages.append(text)


async def no_sleep(_seconds: float) -> None:
    return None


def make_schedule(
    channel_id: str,
    slots: list[tuple[str, int, int]] = (),
    priority: int = 3,
    created_at: datetime = MONDAY_9AM - timedelta(days=30),
    timezone_name: str = "UTC",
) -> ChannelSchedule:
    return ScheduleRepository.create(
        ChannelSchedule(
            id=None,
            channel_id=channel_id,
            timezone=timezone_name,
            priority=priority,
            slots=[TimeSlot(day, time(hour, minute)) for day, hour, minute in slots],
            created_at=created_at,
        )
    )


