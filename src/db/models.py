from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum
from typing import Any, Optional
from zoneinfo import ZoneInfo

DAYS_OF_WEEK = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


class ScheduleType(Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    CUSTOM = "custom"


class ResultType(Enum):
    SCHEDULED = "scheduled"
    FALLBACK = "fallback"
    EMERGENCY = "emergency"


class CachePriority(Enum):
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


@dataclass
class TimeSlot:
    day_of_week: str
    time_of_day: time
    priority_modifier: int = 0
    temporary: bool = False
    revert_at: Optional[datetime] = None
    id: Optional[int] = None
    schedule_id: Optional[int] = None


@dataclass
class ChannelSchedule:
    id: Optional[int]
    channel_id: str
    platform: str = "youtube"
    schedule_type: ScheduleType = ScheduleType.DAILY
    timezone: str = "UTC"
    priority: int = 3
    active: bool = True
    slots: list[TimeSlot] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def local(self, when: datetime) -> datetime:
        return when.astimezone(self.zone)

    def slots_on(self, day_of_week: str) -> list[TimeSlot]:
        return [slot for slot in self.slots if slot.day_of_week == day_of_week]


@dataclass
class OutcomeRecord:
    id: Optional[int]
    schedule_id: Optional[int]
    check_time: datetime
    content_found: bool
    api_calls_made: int = 1
    result_type: ResultType = ResultType.SCHEDULED
    response_time_ms: Optional[int] = None
    channel_id: Optional[str] = None


@dataclass
class QuotaUsage:
    schedule_id: Optional[int]
    usage_date: str
    api_calls_used: int = 0
    videos_found: int = 0
    efficiency_score: float = 0.0


@dataclass
class LearnedPattern:
    schedule_id: int
    day_of_week: str
    hour: int
    success_count: int
    avg_response_time: Optional[float] = None


@dataclass
class ScheduleSuggestion:
    schedule_id: int
    type: str
    reason: str
    confidence: Optional[float] = None
    day_of_week: Optional[str] = None
    time_of_day: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None


@dataclass
class CacheEntry:
    key: str
    payload: str
    created_at: datetime
    checksum: str
    expires_at: datetime
    content_type: str = "content"
    tier_hint: str = "cold"


@dataclass
class ContentItem:
    content_id: str
    channel_id: str
    title: str
    platform: str = "youtube"
    published_at: Optional[datetime] = None
    live_status: str = "none"
    thumbnail_url: Optional[str] = None
    channel_name: Optional[str] = None
    tags: list[str] = field(default_factory=list)

    @property
    def url(self) -> str:
        return f"https://youtu.be/{self.content_id}"

    def to_payload(self) -> dict[str, Any]:
        return {
            "content_id": self.content_id,
            "channel_id": self.channel_id,
            "title": self.title,
            "platform": self.platform,
            "published_at": self.published_at.isoformat() if self.published_at else None,
            "live_status": self.live_status,
            "thumbnail_url": self.thumbnail_url,
            "channel_name": self.channel_name,
            "tags": list(self.tags),
        }


@dataclass
class VideoDetail:
    video_id: str
    channel_id: str
    title: str
    duration_seconds: int = 0
    live_status: str = "none"
    published_at: Optional[datetime] = None
    view_count: Optional[int] = None


@dataclass
class SchedulerState:
    id: int
    is_paused: bool
    last_run_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
