import os
from dataclasses import dataclass, field
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).parent.parent
DATA_DIR = BASE_DIR / "data"
DATA_DIR.mkdir(exist_ok=True)


@dataclass(frozen=True)
class QuotaSettings:
    daily_limit: int = 10000
    timezone: str = "America/Los_Angeles"
    moderate_threshold: float = 50.0
    high_threshold: float = 75.0
    critical_threshold: float = 90.0
    emergency_ratio: float = 0.10
    operation_costs: dict[str, int] = field(
        default_factory=lambda: {
            "search": 100,
            "videos": 1,
            "channels": 1,
            "playlistItems": 1,
            "playlists": 1,
        }
    )
    operation_priority: dict[str, tuple[str, ...]] = field(
        default_factory=lambda: {
            "high": ("videos", "playlistItems", "playlists"),
            "medium": ("channels",),
            "low": ("search",),
        }
    )


@dataclass(frozen=True)
class SchedulerSettings:
    priority_weights: dict[int, float] = field(
        default_factory=lambda: {1: 0.1, 2: 0.2, 3: 0.4, 4: 0.7, 5: 1.0}
    )
    max_score: float = 5.0
    near_window_minutes: int = 30
    far_window_minutes: int = 120
    far_window_bonus: float = 0.5
    learning_boost: float = 0.5
    # (utilization upper bound %, threshold)
    dispatch_thresholds: tuple[tuple[float, float], ...] = ((50.0, 1.0), (80.0, 2.0))
    scarce_threshold: float = 3.5
    effectiveness_window_days: int = 7
    low_effectiveness_percent: float = 20.0
    low_effectiveness_min_samples: int = 10
    fetch_operation: str = "playlistItems"
    fetch_timeout_seconds: float = 30.0
    fetch_max_attempts: int = 3
    fetch_backoff_seconds: float = 2.0
    content_cache_type: str = "video"


@dataclass(frozen=True)
class LearningSettings:
    min_data_points: int = 10
    learning_window_days: int = 30
    top_patterns: int = 3
    slot_match_minutes: int = 60
    remove_slot_below_percent: float = 10.0
    predictability_floor: float = 0.1
    priority_adjustment_below_percent: float = 30.0
    frequency_reduction_days: float = 3.0


@dataclass(frozen=True)
class FallbackSettings:
    staleness_hours: int = 4
    max_channels_per_pass: int = 5
    min_remaining_ratio: float = 0.2
    gap_window_hours: int = 24
    gap_success_ratio: float = 0.3
    high_severity_ratio: float = 0.1
    gap_last_check_hours: int = 6
    escalation_hours: int = 6
    revert_after_hours: int = 24
    analysis_days: int = 7


@dataclass(frozen=True)
class CacheSettings:
    ttls: dict[str, int] = field(
        default_factory=lambda: {
            "metadata": 3600,
            "content": 86400,
            "api": 300,
            "search": 1800,
            "video": 3600,
        }
    )
    default_ttl: int = 3600
    max_entry_age_days: int = 7
    video_grace_hours: int = 24
    refresh_threshold: float = 0.7
    max_related_keys: int = 5
    prefetch_queue_size: int = 100
    prefetch_batch_size: int = 10
    prefetch_max_age_seconds: int = 3600
    prefetch_max_access_bonus: int = 30


class Config:
    TELEGRAM_BOT_TOKEN: str = os.getenv("TELEGRAM_BOT_TOKEN", "")
    ADMIN_CHAT_ID: int = int(os.getenv("ADMIN_CHAT_ID", "0"))
    TARGET_CHAT_ID: int = int(os.getenv("TARGET_CHAT_ID", "0"))
    YOUTUBE_API_KEY: str = os.getenv("YOUTUBE_API_KEY", "")
    REDIS_URL: str = os.getenv("REDIS_URL", "")
    DATABASE_PATH: Path = Path(os.getenv("DATABASE_PATH", str(DATA_DIR / "scheduler.db")))

    QUOTA_DAILY_LIMIT: int = int(os.getenv("QUOTA_DAILY_LIMIT", "10000"))
    QUOTA_TIMEZONE: str = os.getenv("QUOTA_TIMEZONE", "America/Los_Angeles")
    SCHEDULER_TICK_MINUTES: int = int(os.getenv("SCHEDULER_TICK_MINUTES", "15"))
    FETCH_TIMEOUT_SECONDS: float = float(os.getenv("FETCH_TIMEOUT_SECONDS", "30"))
    FETCH_MAX_ATTEMPTS: int = int(os.getenv("FETCH_MAX_ATTEMPTS", "3"))
    FETCH_BACKOFF_SECONDS: float = float(os.getenv("FETCH_BACKOFF_SECONDS", "2"))
    CACHE_CLEANUP_MINUTES: int = int(os.getenv("CACHE_CLEANUP_MINUTES", "60"))
    PREFETCH_INTERVAL_MINUTES: int = int(os.getenv("PREFETCH_INTERVAL_MINUTES", "5"))
    DAILY_ANALYSIS_TIME: tuple[int, int] = (3, 0)

    @classmethod
    def validate(cls) -> list[str]:
        errors = []
        if not cls.TELEGRAM_BOT_TOKEN:
            errors.append("TELEGRAM_BOT_TOKEN is required")
        if not cls.ADMIN_CHAT_ID:
            errors.append("ADMIN_CHAT_ID is required")
        if not cls.TARGET_CHAT_ID:
            errors.append("TARGET_CHAT_ID is required")
        if not cls.YOUTUBE_API_KEY:
            errors.append("YOUTUBE_API_KEY is required")
        if cls.QUOTA_DAILY_LIMIT <= 0:
            errors.append("QUOTA_DAILY_LIMIT must be positive")
        return errors

    @classmethod
    def quota_settings(cls) -> QuotaSettings:
        return QuotaSettings(daily_limit=cls.QUOTA_DAILY_LIMIT, timezone=cls.QUOTA_TIMEZONE)

    @classmethod
    def scheduler_settings(cls) -> SchedulerSettings:
        return SchedulerSettings(
            fetch_timeout_seconds=cls.FETCH_TIMEOUT_SECONDS,
            fetch_max_attempts=cls.FETCH_MAX_ATTEMPTS,
            fetch_backoff_seconds=cls.FETCH_BACKOFF_SECONDS,
        )

    @classmethod
    def learning_settings(cls) -> LearningSettings:
        return LearningSettings()

    @classmethod
    def fallback_settings(cls) -> FallbackSettings:
        return FallbackSettings()

    @classmethod
    def cache_settings(cls) -> CacheSettings:
        return CacheSettings()
