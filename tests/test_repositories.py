from datetime import datetime, time, timedelta, timezone

import pytest

from src.db.database import get_db
from src.db.models import (
    CacheEntry,
    ContentItem,
    LearnedPattern,
    OutcomeRecord,
    ScheduleSuggestion,
    TimeSlot,
)
from src.db.repositories import (
    CacheRepository,
    ContentRepository,
    InsightRepository,
    KeyValueRepository,
    LearnedPatternRepository,
    OutcomeRepository,
    QuotaUsageRepository,
    ScheduleRepository,
    SchedulerStateRepository,
    SuggestionRepository,
    from_db_time,
    to_db_time,
)
from src.services.errors import PersistenceFailure
from tests.helpers import MONDAY_9AM, make_schedule


class TestTimes:
    def test_stored_times_are_utc_and_sortable(self):
        seoul = timezone(timedelta(hours=9))
        early = to_db_time(datetime(2026, 3, 2, 17, 0, tzinfo=seoul))
        late = to_db_time(datetime(2026, 3, 2, 9, 0, 0, 1, tzinfo=timezone.utc))
        assert early == "2026-03-02T08:00:00.000000+00:00"
        assert early < late

    def test_naive_values_are_read_as_utc(self):
        assert from_db_time("2026-03-02T09:00:00").tzinfo == timezone.utc
        assert from_db_time(None) is None


class TestSchedules:
    def test_create_and_load_with_slots(self):
        created = make_schedule(
            "UCa",
            slots=[("friday", 18, 30), ("monday", 9, 0), ("monday", 7, 15)],
            timezone_name="Asia/Seoul",
        )

        loaded = ScheduleRepository.get(created.id)
        assert loaded.channel_id == "UCa"
        assert loaded.timezone == "Asia/Seoul"
        assert [(s.day_of_week, s.time_of_day) for s in loaded.slots] == [
            ("monday", time(7, 15)),
            ("monday", time(9, 0)),
            ("friday", time(18, 30)),
        ]
        assert loaded.created_at == created.created_at

    def test_deactivated_schedules_are_not_active(self):
        kept = make_schedule("UCa")
        dropped = make_schedule("UCb")
        assert ScheduleRepository.deactivate(dropped.id) is True

        assert [s.id for s in ScheduleRepository.get_active()] == [kept.id]
        assert ScheduleRepository.get_by_channel_id("UCb") is None

    def test_priority_must_be_in_range(self):
        schedule = make_schedule("UCa")
        assert ScheduleRepository.update_priority(schedule.id, 5) is True
        assert ScheduleRepository.get(schedule.id).priority == 5
        with pytest.raises(ValueError):
            ScheduleRepository.update_priority(schedule.id, 6)

    def test_temporary_slots(self):
        schedule = make_schedule("UCa", slots=[("monday", 9, 0)])
        assert ScheduleRepository.has_temporary_slots(schedule.id) is False

        revert_at = MONDAY_9AM + timedelta(hours=24)
        ScheduleRepository.add_slots(
            schedule.id, [TimeSlot("monday", time(10, 0), 1, temporary=True, revert_at=revert_at)]
        )
        assert ScheduleRepository.has_temporary_slots(schedule.id) is True
        assert ScheduleRepository.delete_expired_temporary_slots(revert_at) == {schedule.id: 1}
        assert ScheduleRepository.has_temporary_slots(schedule.id) is False


class TestOutcomes:
    def record(self, schedule_id, when, found, usage_date="2026-03-02", calls=1):
        return OutcomeRepository.record_check(
            OutcomeRecord(
                id=None,
                schedule_id=schedule_id,
                check_time=when,
                content_found=found,
                api_calls_made=calls,
            ),
            1 if found else 0,
            usage_date,
        )

    def test_record_check_updates_usage_in_one_step(self):
        schedule = make_schedule("UCa")
        self.record(schedule.id, MONDAY_9AM, True, calls=2)
        self.record(schedule.id, MONDAY_9AM + timedelta(minutes=15), False)

        usage = QuotaUsageRepository.get(schedule.id, "2026-03-02")
        assert usage.api_calls_used == 3
        assert usage.videos_found == 1
        assert usage.efficiency_score == pytest.approx(100 / 3)

        totals = QuotaUsageRepository.get_daily_totals("2026-03-02")
        assert totals["total_calls"] == 3
        assert totals["total_videos"] == 1

    def test_queries(self):
        schedule = make_schedule("UCa")
        other = make_schedule("UCb")
        self.record(schedule.id, MONDAY_9AM - timedelta(days=2), True)
        self.record(schedule.id, MONDAY_9AM - timedelta(hours=1), False)
        self.record(other.id, MONDAY_9AM - timedelta(hours=2), True)

        since = MONDAY_9AM - timedelta(days=1)
        assert len(OutcomeRepository.get_for_schedule(schedule.id, since)) == 1
        assert len(OutcomeRepository.get_since(since)) == 2
        assert sorted(OutcomeRepository.get_schedule_ids_since(since)) == [schedule.id, other.id]
        assert OutcomeRepository.get_latest_check_time(schedule.id) == MONDAY_9AM - timedelta(hours=1)
        assert OutcomeRepository.count_for_schedule(schedule.id, MONDAY_9AM - timedelta(days=3)) == (2, 1)
        assert OutcomeRepository.prune_before(since) == 1

    def test_failed_write_rolls_back(self):
        schedule = make_schedule("UCa")
        with get_db() as conn:
            conn.execute("DROP TABLE outcomes")

        with pytest.raises(PersistenceFailure):
            self.record(schedule.id, MONDAY_9AM, True)
        assert QuotaUsageRepository.get(schedule.id, "2026-03-02") is None


class TestLearningTables:
    def test_patterns_are_replaced_wholesale(self):
        schedule = make_schedule("UCa")
        LearnedPatternRepository.replace_all([LearnedPattern(schedule.id, "monday", 10, 12, 80.0)])
        LearnedPatternRepository.replace_all(
            [
                LearnedPattern(schedule.id, "tuesday", 11, 20, None),
                LearnedPattern(schedule.id, "monday", 10, 15, 90.0),
            ]
        )

        patterns = LearnedPatternRepository.get_for_schedule(schedule.id)
        assert [(p.day_of_week, p.success_count) for p in patterns] == [("tuesday", 20), ("monday", 15)]
        assert len(LearnedPatternRepository.get_all()) == 2

    def test_suggestions_are_replaced_per_kind(self):
        schedule = make_schedule("UCa")
        SuggestionRepository.replace_for_schedule(
            schedule.id,
            "slot",
            [ScheduleSuggestion(schedule.id, "add_slot", "busy hour", day_of_week="monday", time_of_day="10:00")],
        )
        SuggestionRepository.replace_for_schedule(
            schedule.id,
            "optimization",
            [ScheduleSuggestion(schedule.id, "frequency_reduction", "rare", details={"avg_interval_hours": 100.0})],
        )
        SuggestionRepository.replace_for_schedule(schedule.id, "slot", [])

        stored = SuggestionRepository.get_for_schedule(schedule.id)
        assert [s.type for s in stored] == ["frequency_reduction"]
        assert stored[0].details == {"avg_interval_hours": 100.0}

    def test_insight_upsert(self):
        InsightRepository.save("report", {"a": 1})
        InsightRepository.save("report", {"a": 2})
        assert InsightRepository.get("report") == {"a": 2}
        assert InsightRepository.get("missing") is None


class TestContentAndCache:
    def test_content_items(self):
        assert ContentRepository.channel_has_content("UCa") is False
        ContentRepository.create(ContentItem("v1", "UCa", "First", live_status="upcoming"))

        assert ContentRepository.channel_has_content("UCa") is True
        assert ContentRepository.update_live_status("v1", "live") is True
        assert ContentRepository.get("v1").live_status == "live"

    def test_cache_entries(self):
        def entry(key, content_type, expires_in):
            return CacheEntry(
                key=key,
                payload="{}",
                checksum="x",
                created_at=MONDAY_9AM,
                expires_at=MONDAY_9AM + timedelta(seconds=expires_in),
                content_type=content_type,
            )

        CacheRepository.replace(entry("sf:youtube:video:a", "video", 10))
        CacheRepository.replace(entry("sf:youtube:content:b", "content", 10))
        CacheRepository.replace(entry("sf:youtube:api:c", "api", 1000))

        removed = CacheRepository.delete_expired(MONDAY_9AM + timedelta(minutes=1), "video", MONDAY_9AM - timedelta(hours=1))
        assert removed == 1
        assert CacheRepository.get("sf:youtube:video:a") is not None
        assert CacheRepository.delete_by_type("api") == 1
        assert CacheRepository.delete("sf:youtube:video:a") is True


class TestKeyValueAndState:
    def test_incr_restarts_after_expiry(self):
        expires = MONDAY_9AM + timedelta(minutes=1)
        assert KeyValueRepository.incr("n", 2, MONDAY_9AM, expires) == 2
        assert KeyValueRepository.incr("n", 3, MONDAY_9AM, MONDAY_9AM + timedelta(days=9)) == 5

        later = MONDAY_9AM + timedelta(minutes=2)
        assert KeyValueRepository.get("n", later) is None
        assert KeyValueRepository.incr("n", 1, later, later + timedelta(minutes=1)) == 1

    def test_scheduler_state(self):
        assert SchedulerStateRepository.get().is_paused is False
        SchedulerStateRepository.set_paused(True)
        SchedulerStateRepository.update_last_run(MONDAY_9AM)

        state = SchedulerStateRepository.get()
        assert state.is_paused is True
        assert state.last_run_at == MONDAY_9AM
