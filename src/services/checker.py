import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol

from src.config import SchedulerSettings
from src.db.models import CachePriority, ContentItem, OutcomeRecord, ResultType, VideoDetail
from src.db.repositories import ContentRepository
from src.services.cache import CacheStore, make_key
from src.services.errors import CheckError, ErrorType, FetchFailure
from src.services.notifications import Event, EventType, NotificationSink
from src.services.quota import QuotaLedger

logger = logging.getLogger(__name__)


class Fetcher(Protocol):
    platform: str

    def needs_lookup(self, channel_id: str) -> bool:
        """True when fetching the channel first costs a separate lookup call."""

    def resolve_uploads_playlist(self, channel_id: str) -> str:
        ...

    def fetch_recent_content(self, channel_id: str) -> list[ContentItem]:
        ...

    def fetch_video_details(self, video_ids: list[str]) -> list[VideoDetail]:
        ...


@dataclass
class CheckResult:
    channel_id: str
    schedule_id: Optional[int]
    result_type: ResultType
    items: list[ContentItem] = field(default_factory=list)
    new_items: list[ContentItem] = field(default_factory=list)
    events: list[Event] = field(default_factory=list)
    api_calls: int = 1
    response_time_ms: int = 0
    outcome: Optional[OutcomeRecord] = None
    error: Optional[CheckError] = None

    @property
    def content_found(self) -> bool:
        return bool(self.new_items)


class ContentChecker:
    """Runs one admitted check of a channel.

    The first fetch uses the reservation the caller already holds. A channel
    whose uploads playlist is not yet known is looked up first under its own
    "channels" reservation. The outcome and usage rows are committed before
    any notification is sent.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        ledger: QuotaLedger,
        cache: CacheStore,
        sink: NotificationSink,
        settings: Optional[SchedulerSettings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.fetcher = fetcher
        self.ledger = ledger
        self.cache = cache
        self.sink = sink
        self.settings = settings or SchedulerSettings()
        self._sleep = sleep

    async def _call(self, func, *args):
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args),
            timeout=self.settings.fetch_timeout_seconds,
        )

    async def _resolve_channel(self, channel_id: str) -> tuple[Optional[CheckError], int]:
        """Run the channel lookup under its own reservation. Returns (error, api calls made)."""
        if not self.fetcher.needs_lookup(channel_id):
            return None, 0
        if not self.ledger.try_reserve("channels"):
            logger.warning(f"No quota to look up channel {channel_id}")
            return CheckError(ErrorType.QUOTA_EXHAUSTED, "Channel lookup denied", channel_id=channel_id), 0

        try:
            await self._call(self.fetcher.resolve_uploads_playlist, channel_id)
            return None, 1
        except asyncio.TimeoutError:
            error = CheckError(
                ErrorType.TIMEOUT,
                f"Channel lookup took longer than {self.settings.fetch_timeout_seconds}s",
                channel_id=channel_id,
            )
        except FetchFailure as e:
            error = CheckError(ErrorType.FETCH_FAILURE, str(e), channel_id=channel_id)
        logger.warning(f"Lookup of {channel_id} failed: {error.message}")
        return error, 1

    async def _fetch_with_retry(self, channel_id: str) -> tuple[list[ContentItem], Optional[CheckError], int]:
        """Return (items, error, api calls made)."""
        max_attempts = max(1, self.settings.fetch_max_attempts)
        calls = 0
        error: Optional[CheckError] = None

        for attempt in range(max_attempts):
            if attempt > 0:
                if not self.ledger.try_reserve(self.settings.fetch_operation):
                    logger.warning(f"No quota to retry fetch for {channel_id}")
                    break
                await self._sleep(self.settings.fetch_backoff_seconds * 2 ** (attempt - 1))

            calls += 1
            try:
                items = await self._call(self.fetcher.fetch_recent_content, channel_id)
                return items, None, calls
            except asyncio.TimeoutError:
                error = CheckError(
                    ErrorType.TIMEOUT,
                    f"No response within {self.settings.fetch_timeout_seconds}s",
                    channel_id=channel_id,
                )
            except FetchFailure as e:
                error = CheckError(ErrorType.FETCH_FAILURE, str(e), channel_id=channel_id)
            except Exception as e:
                logger.exception(f"Unexpected fetch error for {channel_id}")
                error = CheckError(ErrorType.UNKNOWN, str(e), channel_id=channel_id)

            logger.warning(
                f"Fetch attempt {attempt + 1}/{max_attempts} for {channel_id} failed: {error.message}"
            )

        logger.error(f"Fetch for {channel_id} failed after {calls} attempts")
        return [], error, calls

    async def _enrich(self, items: list[ContentItem]) -> bool:
        """Fill in live status from video details. Returns True if a call was made."""
        if not items or not self.ledger.try_reserve("videos"):
            return False
        try:
            details = await self._call(self.fetcher.fetch_video_details, [item.content_id for item in items][:50])
        except (asyncio.TimeoutError, FetchFailure) as e:
            logger.warning(f"Video details unavailable, keeping playlist data: {e}")
            return True

        by_id = {detail.video_id: detail for detail in details}
        for item in items:
            detail = by_id.get(item.content_id)
            if detail:
                item.live_status = detail.live_status
                item.published_at = item.published_at or detail.published_at
        return True

    def _reconcile(self, channel_id: str, items: list[ContentItem]) -> tuple[list, list]:
        """Store unseen items. Returns (new items, [(old, new)] live status changes)."""
        baseline = not ContentRepository.channel_has_content(channel_id)
        new_items = []
        status_changes = []
        for item in items:
            existing = ContentRepository.get(item.content_id)
            if existing is None:
                ContentRepository.create(item)
                if not baseline:
                    new_items.append(item)
            elif existing.live_status != item.live_status:
                ContentRepository.update_live_status(item.content_id, item.live_status)
                status_changes.append((existing, item))
        if baseline and items:
            logger.info(f"Recorded {len(items)} existing items as baseline for {channel_id}")
        return new_items, status_changes

    def _cache_items(self, channel_id: str, items: list[ContentItem]) -> None:
        platform = getattr(self.fetcher, "platform", "youtube")
        for item in items:
            priority = CachePriority.HIGH if item.live_status == "live" else CachePriority.NORMAL
            self.cache.set(
                make_key(platform, self.settings.content_cache_type, item.content_id),
                item.to_payload(),
                self.settings.content_cache_type,
                priority=priority,
            )
        self.cache.set(
            make_key(platform, "content", channel_id),
            [item.to_payload() for item in items],
            "content",
            related_keys=[
                make_key(platform, self.settings.content_cache_type, item.content_id) for item in items
            ],
        )

    async def check(
        self,
        channel_id: str,
        schedule_id: Optional[int],
        result_type: ResultType = ResultType.SCHEDULED,
    ) -> CheckResult:
        started = time.monotonic()
        error, calls = await self._resolve_channel(channel_id)
        items: list[ContentItem] = []
        if error is None:
            items, error, fetch_calls = await self._fetch_with_retry(channel_id)
            calls += fetch_calls
        if await self._enrich(items):
            calls += 1

        new_items, status_changes = self._reconcile(channel_id, items) if items else ([], [])
        response_time_ms = int((time.monotonic() - started) * 1000)

        outcome = self.ledger.record_outcome(
            schedule_id,
            len(new_items),
            response_time_ms,
            result_type=result_type,
            channel_id=channel_id,
            api_calls_made=calls,
        )

        result = CheckResult(
            channel_id=channel_id,
            schedule_id=schedule_id,
            result_type=result_type,
            items=items,
            new_items=new_items,
            api_calls=calls,
            response_time_ms=response_time_ms,
            outcome=outcome,
            error=error,
        )
        if items:
            self._cache_items(channel_id, items)

        for item in new_items:
            logger.info(f"New content on {channel_id}: {item.title}")
            result.events.append(
                Event(EventType.CONTENT_FOUND, channel_id, schedule_id, item.to_payload())
            )
            await self._notify(self.sink.notify_new_content(item), f"new content {item.content_id}")

        for old, new in status_changes:
            logger.info(f"Stream status of {new.content_id} changed: {old.live_status} -> {new.live_status}")
            result.events.append(
                Event(
                    EventType.STREAM_STATUS_CHANGED,
                    channel_id,
                    schedule_id,
                    {"content_id": new.content_id, "old": old.live_status, "new": new.live_status},
                )
            )
            await self._notify(
                self.sink.notify_stream_status_change(old, new), f"status change {new.content_id}"
            )

        return result

    async def _notify(self, coro: Awaitable[None], what: str) -> None:
        try:
            await coro
        except Exception as e:
            logger.warning(f"Notification for {what} failed: {e}")

    async def fetch_for_cache(self, key: str, content_type: str) -> Optional[Any]:
        """Load the data behind a cache key under a fresh reservation, or None."""
        content_id = key.rsplit(":", 1)[-1]
        try:
            if content_type == "video":
                if not self.ledger.try_reserve("videos"):
                    return None
                details = await self._call(self.fetcher.fetch_video_details, [content_id])
                return asdict(details[0]) if details else None
            if content_type == "content":
                error, _ = await self._resolve_channel(content_id)
                if error or not self.ledger.try_reserve(self.settings.fetch_operation):
                    return None
                items = await self._call(self.fetcher.fetch_recent_content, content_id)
                return [item.to_payload() for item in items]
        except asyncio.TimeoutError:
            logger.warning(f"Prefetch of {key} timed out after {self.settings.fetch_timeout_seconds}s")
        except FetchFailure as e:
            logger.warning(f"Prefetch of {key} failed: {e}")
        return None
