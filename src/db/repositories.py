import json
from datetime import datetime, time, timezone
from typing import Any, Optional

from src.db.database import get_db
from src.db.models import (
    DAYS_OF_WEEK,
    CacheEntry,
    ChannelSchedule,
    ContentItem,
    LearnedPattern,
    OutcomeRecord,
    QuotaUsage,
    ResultType,
    ScheduleSuggestion,
    ScheduleType,
    SchedulerState,
    TimeSlot,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Serialize an aware datetime as a sortable UTC ISO string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _row_to_slot(row) -> TimeSlot:
    return TimeSlot(
        id=row["id"],
        schedule_id=row["schedule_id"],
        day_of_week=row["day_of_week"],
        time_of_day=time.fromisoformat(row["check_time"]),
        priority_modifier=row["priority_modifier"],
        temporary=bool(row["temporary"]),
        revert_at=from_db_time(row["revert_at"]),
    )


def _row_to_schedule(row, slots: list[TimeSlot]) -> ChannelSchedule:
    return ChannelSchedule(
        id=row["id"],
        channel_id=row["channel_id"],
        platform=row["platform"],
        schedule_type=ScheduleType(row["schedule_type"]),
        timezone=row["timezone"],
        priority=row["priority"],
        active=bool(row["active"]),
        slots=slots,
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
    )


def _row_to_outcome(row) -> OutcomeRecord:
    return OutcomeRecord(
        id=row["id"],
        schedule_id=row["schedule_id"],
        channel_id=row["channel_id"],
        check_time=from_db_time(row["check_time"]),
        content_found=bool(row["content_found"]),
        api_calls_made=row["api_calls_made"],
        result_type=ResultType(row["result_type"]),
        response_time_ms=row["response_time_ms"],
    )


class ScheduleRepository:
    @staticmethod
    def create(schedule: ChannelSchedule) -> ChannelSchedule:
        now = utcnow()
        created_at = schedule.created_at or now
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO schedules
                    (channel_id, platform, schedule_type, timezone, priority, active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    schedule.channel_id,
                    schedule.platform,
                    schedule.schedule_type.value,
                    schedule.timezone,
                    schedule.priority,
                    schedule.active,
                    to_db_time(created_at),
                    to_db_time(now),
                ),
            )
            schedule.id = cursor.lastrowid
            schedule.created_at = created_at
            schedule.updated_at = now
            for slot in schedule.slots:
                ScheduleRepository._insert_slot(cursor, schedule.id, slot)
            return schedule

    @staticmethod
    def _insert_slot(cursor, schedule_id: int, slot: TimeSlot) -> None:
        cursor.execute(
            """
            INSERT INTO schedule_slots
                (schedule_id, day_of_week, check_time, priority_modifier, temporary, revert_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                schedule_id,
                slot.day_of_week.lower(),
                slot.time_of_day.strftime("%H:%M:%S"),
                slot.priority_modifier,
                slot.temporary,
                to_db_time(slot.revert_at),
            ),
        )
        slot.id = cursor.lastrowid
        slot.schedule_id = schedule_id

    @staticmethod
    def _load_slots(cursor, schedule_ids: list[int]) -> dict[int, list[TimeSlot]]:
        slots: dict[int, list[TimeSlot]] = {schedule_id: [] for schedule_id in schedule_ids}
        if not schedule_ids:
            return slots
        placeholders = ",".join("?" for _ in schedule_ids)
        cursor.execute(
            f"""
            SELECT * FROM schedule_slots
            WHERE schedule_id IN ({placeholders})
            ORDER BY schedule_id, check_time
            """,
            schedule_ids,
        )
        for row in cursor.fetchall():
            slots[row["schedule_id"]].append(_row_to_slot(row))
        for schedule_slots in slots.values():
            # stable sort keeps check_time order within a day
            schedule_slots.sort(key=lambda slot: DAYS_OF_WEEK.index(slot.day_of_week))
        return slots

    @staticmethod
    def get(schedule_id: int) -> Optional[ChannelSchedule]:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM schedules WHERE id = ?", (schedule_id,))
            row = cursor.fetchone()
            if row:
                slots = ScheduleRepository._load_slots(cursor, [row["id"]])
                return _row_to_schedule(row, slots[row["id"]])
            return None

    @staticmethod
    def get_by_channel_id(channel_id: str) -> Optional[ChannelSchedule]:
        """Get the active schedule of a channel."""
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM schedules WHERE channel_id = ? AND active = 1 ORDER BY id DESC LIMIT 1",
                (channel_id,),
            )
            row = cursor.fetchone()
            if row:
                slots = ScheduleRepository._load_slots(cursor, [row["id"]])
                return _row_to_schedule(row, slots[row["id"]])
            return None

    @staticmethod
    def get_active() -> list[ChannelSchedule]:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM schedules WHERE active = 1 ORDER BY id")
            rows = cursor.fetchall()
            slots = ScheduleRepository._load_slots(cursor, [row["id"] for row in rows])
            return [_row_to_schedule(row, slots[row["id"]]) for row in rows]

    @staticmethod
    def deactivate(schedule_id: int) -> bool:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE schedules SET active = 0, updated_at = ? WHERE id = ?",
                (to_db_time(utcnow()), schedule_id),
            )
            return cursor.rowcount > 0

    @staticmethod
    def update_priority(schedule_id: int, priority: int) -> bool:
        if not 1 <= priority <= 5:
            raise ValueError(f"priority must be between 1 and 5, got {priority}")
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE schedules SET priority = ?, updated_at = ? WHERE id = ?",
                (priority, to_db_time(utcnow()), schedule_id),
            )
            return cursor.rowcount > 0

    @staticmethod
    def add_slots(schedule_id: int, slots: list[TimeSlot]) -> list[TimeSlot]:
        with get_db() as conn:
            cursor = conn.cursor()
            for slot in slots:
                ScheduleRepository._insert_slot(cursor, schedule_id, slot)
            cursor.execute(
                "UPDATE schedules SET updated_at = ? WHERE id = ?",
                (to_db_time(utcnow()), schedule_id),
            )
            return slots

    @staticmethod
    def has_temporary_slots(schedule_id: int) -> bool:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT 1 FROM schedule_slots WHERE schedule_id = ? AND temporary = 1 LIMIT 1",
                (schedule_id,),
            )
            return cursor.fetchone() is not None

    @staticmethod
    def delete_expired_temporary_slots(now: datetime) -> dict[int, int]:
        """Delete temporary slots due for reversal. Returns {schedule_id: removed}."""
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT schedule_id, COUNT(*) AS removed FROM schedule_slots
                WHERE temporary = 1 AND revert_at IS NOT NULL AND revert_at <= ?
                GROUP BY schedule_id
                """,
                (to_db_time(now),),
            )
            removed = {row["schedule_id"]: row["removed"] for row in cursor.fetchall()}
            cursor.execute(
                """
                DELETE FROM schedule_slots
                WHERE temporary = 1 AND revert_at IS NOT NULL AND revert_at <= ?
                """,
                (to_db_time(now),),
            )
            return removed


class OutcomeRepository:
    @staticmethod
    def record_check(outcome: OutcomeRecord, videos_found: int, usage_date: str) -> OutcomeRecord:
        """Upsert the daily quota usage row and append the outcome in one transaction."""
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE quota_usage
                SET api_calls_used = api_calls_used + ?,
                    videos_found = videos_found + ?
                WHERE schedule_id IS ? AND usage_date = ?
                """,
                (outcome.api_calls_made, videos_found, outcome.schedule_id, usage_date),
            )
            if cursor.rowcount == 0:
                cursor.execute(
                    """
                    INSERT INTO quota_usage (schedule_id, usage_date, api_calls_used, videos_found)
                    VALUES (?, ?, ?, ?)
                    """,
                    (outcome.schedule_id, usage_date, outcome.api_calls_made, videos_found),
                )
            cursor.execute(
                """
                UPDATE quota_usage
                SET efficiency_score = CASE
                    WHEN api_calls_used > 0 THEN (videos_found * 100.0) / api_calls_used
                    ELSE 0
                END
                WHERE schedule_id IS ? AND usage_date = ?
                """,
                (outcome.schedule_id, usage_date),
            )
            cursor.execute(
                """
                INSERT INTO outcomes
                    (schedule_id, channel_id, check_time, content_found, api_calls_made,
                     result_type, response_time_ms)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    outcome.schedule_id,
                    outcome.channel_id,
                    to_db_time(outcome.check_time),
                    outcome.content_found,
                    outcome.api_calls_made,
                    outcome.result_type.value,
                    outcome.response_time_ms,
                ),
            )
            outcome.id = cursor.lastrowid
            return outcome

    @staticmethod
    def get_for_schedule(schedule_id: int, since: datetime) -> list[OutcomeRecord]:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT * FROM outcomes
                WHERE schedule_id = ? AND check_time >= ?
                ORDER BY check_time
                """,
                (schedule_id, to_db_time(since)),
            )
            return [_row_to_outcome(row) for row in cursor.fetchall()]

    @staticmethod
    def get_since(since: datetime) -> list[OutcomeRecord]:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM outcomes WHERE check_time >= ? ORDER BY check_time",
                (to_db_time(since),),
            )
            return [_row_to_outcome(row) for row in cursor.fetchall()]

    @staticmethod
    def get_schedule_ids_since(since: datetime) -> list[int]:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT DISTINCT schedule_id FROM outcomes
                WHERE schedule_id IS NOT NULL AND check_time >= ?
                ORDER BY schedule_id
                """,
                (to_db_time(since),),
            )
            return [row["schedule_id"] for row in cursor.fetchall()]

    @staticmethod
    def get_latest_check_time(schedule_id: int) -> Optional[datetime]:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT MAX(check_time) AS latest FROM outcomes WHERE schedule_id = ?",
                (schedule_id,),
            )
            row = cursor.fetchone()
            if row and row["latest"]:
                return from_db_time(row["latest"])
            return None

    @staticmethod
    def count_for_schedule(schedule_id: int, since: datetime) -> tuple[int, int]:
        """Return (total checks, checks that found content) since a point in time."""
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN content_found = 1 THEN 1 ELSE 0 END), 0) AS found
                FROM outcomes
                WHERE schedule_id = ? AND check_time >= ?
                """,
                (schedule_id, to_db_time(since)),
            )
            row = cursor.fetchone()
            return row["total"], row["found"]

    @staticmethod
    def prune_before(cutoff: datetime) -> int:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM outcomes WHERE check_time < ?", (to_db_time(cutoff),))
            return cursor.rowcount


class QuotaUsageRepository:
    @staticmethod
    def get(schedule_id: Optional[int], usage_date: str) -> Optional[QuotaUsage]:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM quota_usage WHERE schedule_id IS ? AND usage_date = ?",
                (schedule_id, usage_date),
            )
            row = cursor.fetchone()
            if row:
                return QuotaUsage(
                    schedule_id=row["schedule_id"],
                    usage_date=row["usage_date"],
                    api_calls_used=row["api_calls_used"],
                    videos_found=row["videos_found"],
                    efficiency_score=row["efficiency_score"],
                )
            return None

    @staticmethod
    def get_daily_totals(usage_date: str) -> dict[str, float]:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT COALESCE(SUM(api_calls_used), 0) AS total_calls,
                       COALESCE(SUM(videos_found), 0) AS total_videos,
                       COALESCE(AVG(efficiency_score), 0) AS avg_efficiency
                FROM quota_usage
                WHERE usage_date = ?
                """,
                (usage_date,),
            )
            row = cursor.fetchone()
            return {
                "total_calls": row["total_calls"],
                "total_videos": row["total_videos"],
                "avg_efficiency": row["avg_efficiency"],
            }

    @staticmethod
    def get_average_efficiency_by_channel(since_date: str) -> dict[str, float]:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT s.channel_id AS channel_id, AVG(q.efficiency_score) AS avg_efficiency
                FROM quota_usage q
                JOIN schedules s ON s.id = q.schedule_id
                WHERE q.usage_date >= ?
                GROUP BY s.channel_id
                """,
                (since_date,),
            )
            return {row["channel_id"]: row["avg_efficiency"] for row in cursor.fetchall()}


class LearnedPatternRepository:
    @staticmethod
    def replace_all(patterns: list[LearnedPattern]) -> None:
        """Replace the whole learned pattern set. Rank follows list order per schedule."""
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM learned_patterns")
            ranks: dict[int, int] = {}
            for pattern in patterns:
                rank = ranks.get(pattern.schedule_id, 0)
                ranks[pattern.schedule_id] = rank + 1
                cursor.execute(
                    """
                    INSERT INTO learned_patterns
                        (schedule_id, day_of_week, hour, success_count, avg_response_time, rank)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        pattern.schedule_id,
                        pattern.day_of_week,
                        pattern.hour,
                        pattern.success_count,
                        pattern.avg_response_time,
                        rank,
                    ),
                )

    @staticmethod
    def get_for_schedule(schedule_id: int) -> list[LearnedPattern]:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM learned_patterns WHERE schedule_id = ? ORDER BY rank",
                (schedule_id,),
            )
            return [
                LearnedPattern(
                    schedule_id=row["schedule_id"],
                    day_of_week=row["day_of_week"],
                    hour=row["hour"],
                    success_count=row["success_count"],
                    avg_response_time=row["avg_response_time"],
                )
                for row in cursor.fetchall()
            ]

    @staticmethod
    def get_all() -> list[LearnedPattern]:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM learned_patterns ORDER BY schedule_id, rank")
            return [
                LearnedPattern(
                    schedule_id=row["schedule_id"],
                    day_of_week=row["day_of_week"],
                    hour=row["hour"],
                    success_count=row["success_count"],
                    avg_response_time=row["avg_response_time"],
                )
                for row in cursor.fetchall()
            ]


class SuggestionRepository:
    @staticmethod
    def replace_for_schedule(schedule_id: int, kind: str, suggestions: list[ScheduleSuggestion]) -> None:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "DELETE FROM schedule_suggestions WHERE schedule_id = ? AND kind = ?",
                (schedule_id, kind),
            )
            for suggestion in suggestions:
                cursor.execute(
                    """
                    INSERT INTO schedule_suggestions
                        (schedule_id, kind, suggestion_type, day_of_week, check_time,
                         reason, confidence, details, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        schedule_id,
                        kind,
                        suggestion.type,
                        suggestion.day_of_week,
                        suggestion.time_of_day,
                        suggestion.reason,
                        suggestion.confidence,
                        json.dumps(suggestion.details),
                        to_db_time(suggestion.created_at or utcnow()),
                    ),
                )

    @staticmethod
    def get_for_schedule(schedule_id: int, kind: Optional[str] = None) -> list[ScheduleSuggestion]:
        with get_db() as conn:
            cursor = conn.cursor()
            if kind:
                cursor.execute(
                    "SELECT * FROM schedule_suggestions WHERE schedule_id = ? AND kind = ? ORDER BY id",
                    (schedule_id, kind),
                )
            else:
                cursor.execute(
                    "SELECT * FROM schedule_suggestions WHERE schedule_id = ? ORDER BY id",
                    (schedule_id,),
                )
            return [
                ScheduleSuggestion(
                    schedule_id=row["schedule_id"],
                    type=row["suggestion_type"],
                    reason=row["reason"],
                    confidence=row["confidence"],
                    day_of_week=row["day_of_week"],
                    time_of_day=row["check_time"],
                    details=json.loads(row["details"]) if row["details"] else {},
                    created_at=from_db_time(row["created_at"]),
                )
                for row in cursor.fetchall()
            ]


class InsightRepository:
    @staticmethod
    def save(name: str, payload: dict[str, Any]) -> None:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO insights (name, payload, created_at) VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET payload = excluded.payload, created_at = excluded.created_at
                """,
                (name, json.dumps(payload), to_db_time(utcnow())),
            )

    @staticmethod
    def get(name: str) -> Optional[dict[str, Any]]:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT payload FROM insights WHERE name = ?", (name,))
            row = cursor.fetchone()
            if row:
                return json.loads(row["payload"])
            return None


class CacheRepository:
    @staticmethod
    def replace(entry: CacheEntry) -> None:
        """Delete and reinsert an entry."""
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM cache_entries WHERE cache_key = ?", (entry.key,))
            cursor.execute(
                """
                INSERT INTO cache_entries
                    (cache_key, content_type, payload, checksum, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.key,
                    entry.content_type,
                    entry.payload,
                    entry.checksum,
                    to_db_time(entry.created_at),
                    to_db_time(entry.expires_at),
                ),
            )

    @staticmethod
    def get(key: str) -> Optional[CacheEntry]:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM cache_entries WHERE cache_key = ?", (key,))
            row = cursor.fetchone()
            if row:
                return CacheEntry(
                    key=row["cache_key"],
                    content_type=row["content_type"],
                    payload=row["payload"],
                    checksum=row["checksum"],
                    created_at=from_db_time(row["created_at"]),
                    expires_at=from_db_time(row["expires_at"]),
                )
            return None

    @staticmethod
    def delete(key: str) -> bool:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM cache_entries WHERE cache_key = ?", (key,))
            return cursor.rowcount > 0

    @staticmethod
    def delete_by_type(content_type: Optional[str] = None) -> int:
        with get_db() as conn:
            cursor = conn.cursor()
            if content_type:
                cursor.execute("DELETE FROM cache_entries WHERE content_type = ?", (content_type,))
            else:
                cursor.execute("DELETE FROM cache_entries")
            return cursor.rowcount

    @staticmethod
    def delete_expired(now: datetime, grace_type: str, grace_cutoff: datetime) -> int:
        """Delete expired rows, keeping `grace_type` rows created after `grace_cutoff`."""
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                DELETE FROM cache_entries
                WHERE expires_at < ?
                AND NOT (content_type = ? AND created_at >= ?)
                """,
                (to_db_time(now), grace_type, to_db_time(grace_cutoff)),
            )
            return cursor.rowcount


class ContentRepository:
    @staticmethod
    def get(content_id: str) -> Optional[ContentItem]:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM content_items WHERE content_id = ?", (content_id,))
            row = cursor.fetchone()
            if row:
                return ContentItem(
                    content_id=row["content_id"],
                    channel_id=row["channel_id"],
                    platform=row["platform"],
                    title=row["title"],
                    live_status=row["live_status"],
                    published_at=from_db_time(row["published_at"]),
                )
            return None

    @staticmethod
    def create(item: ContentItem) -> ContentItem:
        now = to_db_time(utcnow())
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO content_items
                    (content_id, channel_id, platform, title, live_status, published_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item.content_id,
                    item.channel_id,
                    item.platform,
                    item.title,
                    item.live_status,
                    to_db_time(item.published_at),
                    now,
                    now,
                ),
            )
            return item

    @staticmethod
    def channel_has_content(channel_id: str) -> bool:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT 1 FROM content_items WHERE channel_id = ? LIMIT 1", (channel_id,))
            return cursor.fetchone() is not None

    @staticmethod
    def update_live_status(content_id: str, live_status: str) -> bool:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE content_items SET live_status = ?, updated_at = ? WHERE content_id = ?",
                (live_status, to_db_time(utcnow()), content_id),
            )
            return cursor.rowcount > 0


class KeyValueRepository:
    @staticmethod
    def get(key: str, now: datetime) -> Optional[str]:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT value FROM kv_store
                WHERE store_key = ? AND (expires_at IS NULL OR expires_at > ?)
                """,
                (key, to_db_time(now)),
            )
            row = cursor.fetchone()
            return row["value"] if row else None

    @staticmethod
    def set(key: str, value: str, expires_at: Optional[datetime]) -> None:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO kv_store (store_key, value, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(store_key) DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at
                """,
                (key, value, to_db_time(expires_at)),
            )

    @staticmethod
    def delete(key: str) -> bool:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM kv_store WHERE store_key = ?", (key,))
            return cursor.rowcount > 0

    @staticmethod
    def incr(key: str, amount: int, now: datetime, expires_at: Optional[datetime]) -> int:
        """Atomically add `amount` to an integer value. Expired values restart from zero."""
        now_text = to_db_time(now)
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO kv_store (store_key, value, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(store_key) DO UPDATE SET
                    value = CASE
                        WHEN kv_store.expires_at IS NOT NULL AND kv_store.expires_at <= ?
                            THEN excluded.value
                        ELSE CAST(CAST(kv_store.value AS INTEGER) + ? AS TEXT)
                    END,
                    expires_at = CASE
                        WHEN kv_store.expires_at IS NOT NULL AND kv_store.expires_at <= ?
                            THEN excluded.expires_at
                        ELSE COALESCE(kv_store.expires_at, excluded.expires_at)
                    END
                """,
                (key, str(amount), to_db_time(expires_at), now_text, amount, now_text),
            )
            cursor.execute("SELECT value FROM kv_store WHERE store_key = ?", (key,))
            return int(cursor.fetchone()["value"])

    @staticmethod
    def delete_expired(now: datetime) -> int:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "DELETE FROM kv_store WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (to_db_time(now),),
            )
            return cursor.rowcount


class SchedulerStateRepository:
    @staticmethod
    def get() -> SchedulerState:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM scheduler_state WHERE id = 1")
            row = cursor.fetchone()
            return SchedulerState(
                id=row["id"],
                is_paused=bool(row["is_paused"]),
                last_run_at=from_db_time(row["last_run_at"]),
                updated_at=from_db_time(row["updated_at"]),
            )

    @staticmethod
    def set_paused(is_paused: bool) -> None:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE scheduler_state
                SET is_paused = ?, updated_at = ?
                WHERE id = 1
                """,
                (is_paused, to_db_time(utcnow())),
            )

    @staticmethod
    def update_last_run(now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE scheduler_state
                SET last_run_at = ?, updated_at = ?
                WHERE id = 1
                """,
                (to_db_time(now), to_db_time(now)),
            )
