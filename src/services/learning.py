import logging
import math
import statistics
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from src.config import LearningSettings
from src.db.models import DAYS_OF_WEEK, ChannelSchedule, LearnedPattern, ScheduleSuggestion
from src.db.repositories import (
    LearnedPatternRepository,
    OutcomeRepository,
    ScheduleRepository,
    SuggestionRepository,
)

logger = logging.getLogger(__name__)


def _bucket(schedule: Optional[ChannelSchedule], when: datetime) -> tuple[str, int]:
    local = schedule.local(when) if schedule else when.astimezone(timezone.utc)
    return DAYS_OF_WEEK[local.weekday()], local.hour


class PatternLearner:
    """Mines outcome history for the hours in which channels publish."""

    def __init__(
        self,
        settings: Optional[LearningSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings or LearningSettings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _window_start(self, now: datetime) -> datetime:
        return now - timedelta(days=self.settings.learning_window_days)

    def update_patterns(self, now: Optional[datetime] = None) -> list[LearnedPattern]:
        """Recompute the full learned pattern set from outcome history."""
        now = now or self._clock()
        outcomes = OutcomeRepository.get_since(self._window_start(now))

        schedules: dict[int, Optional[ChannelSchedule]] = {}
        buckets: dict[int, dict[tuple[str, int], list[Optional[int]]]] = defaultdict(
            lambda: defaultdict(list)
        )
        for outcome in outcomes:
            if outcome.schedule_id is None or not outcome.content_found:
                continue
            if outcome.schedule_id not in schedules:
                schedules[outcome.schedule_id] = ScheduleRepository.get(outcome.schedule_id)
            bucket = _bucket(schedules[outcome.schedule_id], outcome.check_time)
            buckets[outcome.schedule_id][bucket].append(outcome.response_time_ms)

        patterns: list[LearnedPattern] = []
        for schedule_id in sorted(buckets):
            schedule_patterns = []
            for (day, hour), response_times in buckets[schedule_id].items():
                if len(response_times) < self.settings.min_data_points:
                    continue
                timed = [value for value in response_times if value is not None]
                schedule_patterns.append(
                    LearnedPattern(
                        schedule_id=schedule_id,
                        day_of_week=day,
                        hour=hour,
                        success_count=len(response_times),
                        avg_response_time=sum(timed) / len(timed) if timed else None,
                    )
                )
            schedule_patterns.sort(
                key=lambda p: (-p.success_count, DAYS_OF_WEEK.index(p.day_of_week), p.hour)
            )
            patterns.extend(schedule_patterns)

        LearnedPatternRepository.replace_all(patterns)
        logger.info(f"Learned {len(patterns)} patterns across {len(buckets)} schedules")
        return patterns

    def bucket_success_rate(
        self,
        schedule: ChannelSchedule,
        day_of_week: str,
        hour: int,
        now: Optional[datetime] = None,
    ) -> Optional[float]:
        """Share of checks in a (day, hour) bucket that found content. None without samples."""
        now = now or self._clock()
        total = 0
        found = 0
        for outcome in OutcomeRepository.get_for_schedule(schedule.id, self._window_start(now)):
            if _bucket(schedule, outcome.check_time) == (day_of_week, hour):
                total += 1
                found += outcome.content_found
        if total == 0:
            return None
        return found / total

    def effectiveness(self, schedule_id: int, days: int, now: Optional[datetime] = None) -> tuple[int, float]:
        """Return (samples, success percent) over the last `days` days."""
        now = now or self._clock()
        total, found = OutcomeRepository.count_for_schedule(schedule_id, now - timedelta(days=days))
        return total, (found / total * 100 if total else 0.0)

    def generate_schedule_suggestion(
        self, schedule: ChannelSchedule, now: Optional[datetime] = None
    ) -> list[ScheduleSuggestion]:
        """Suggest slots to add from learned patterns and slots to drop for low yield."""
        now = now or self._clock()
        suggestions: list[ScheduleSuggestion] = []
        patterns = LearnedPatternRepository.get_for_schedule(schedule.id)[: self.settings.top_patterns]

        for pattern in patterns:
            pattern_minutes = pattern.hour * 60
            covered = any(
                abs(slot.time_of_day.hour * 60 + slot.time_of_day.minute - pattern_minutes)
                <= self.settings.slot_match_minutes
                for slot in schedule.slots_on(pattern.day_of_week)
            )
            if covered:
                continue
            suggestions.append(
                ScheduleSuggestion(
                    schedule_id=schedule.id,
                    type="add_slot",
                    day_of_week=pattern.day_of_week,
                    time_of_day=f"{pattern.hour:02d}:00",
                    reason=f"Content found {pattern.success_count} times around this hour",
                    confidence=min(100.0, pattern.success_count / self.settings.min_data_points * 100),
                    created_at=now,
                )
            )

        history = OutcomeRepository.get_for_schedule(schedule.id, self._window_start(now))
        for slot in schedule.slots:
            bucket = (slot.day_of_week, slot.time_of_day.hour)
            samples = [o for o in history if _bucket(schedule, o.check_time) == bucket]
            found = sum(1 for o in samples if o.content_found)
            effectiveness = found / len(samples) * 100 if samples else 0.0
            if effectiveness < self.settings.remove_slot_below_percent:
                suggestions.append(
                    ScheduleSuggestion(
                        schedule_id=schedule.id,
                        type="remove_slot",
                        day_of_week=slot.day_of_week,
                        time_of_day=slot.time_of_day.strftime("%H:%M"),
                        reason=f"Slot effectiveness is {effectiveness:.1f}%",
                        confidence=100 - effectiveness,
                        details={"samples": len(samples), "found": found},
                        created_at=now,
                    )
                )

        SuggestionRepository.replace_for_schedule(schedule.id, "slot", suggestions)
        return suggestions

    def analyze_content_frequency(
        self, schedule: ChannelSchedule, now: Optional[datetime] = None
    ) -> dict:
        now = now or self._clock()
        found_times = [
            o.check_time
            for o in OutcomeRepository.get_for_schedule(schedule.id, self._window_start(now))
            if o.content_found
        ]
        intervals = [
            (later - earlier).total_seconds() / 3600
            for earlier, later in zip(found_times, found_times[1:])
        ]
        if not intervals:
            return {"content_count": len(found_times), "avg_interval_hours": None}
        return {
            "content_count": len(found_times),
            "avg_interval_hours": round(statistics.mean(intervals), 2),
            "min_interval_hours": round(min(intervals), 2),
            "max_interval_hours": round(max(intervals), 2),
            "predictability": self.predictability_score(schedule.id, now),
        }

    def predictability_score(self, schedule_id: int, now: Optional[datetime] = None) -> float:
        """1 / (1 + coefficient of variation) of the gaps between successful checks."""
        now = now or self._clock()
        found_times = [
            o.check_time
            for o in OutcomeRepository.get_for_schedule(schedule_id, self._window_start(now))
            if o.content_found
        ]
        if len(found_times) < 3:
            return self.settings.predictability_floor

        intervals = [(b - a).total_seconds() for a, b in zip(found_times, found_times[1:])]
        mean = statistics.mean(intervals)
        if mean <= 0:
            return self.settings.predictability_floor
        cv = statistics.pstdev(intervals) / mean
        return max(self.settings.predictability_floor, 1 / (1 + cv))

    def generate_optimization_suggestions(
        self, schedule: ChannelSchedule, now: Optional[datetime] = None
    ) -> list[ScheduleSuggestion]:
        now = now or self._clock()
        suggestions: list[ScheduleSuggestion] = []

        samples, effectiveness = self.effectiveness(schedule.id, 7, now)
        if samples and effectiveness < self.settings.priority_adjustment_below_percent:
            suggested = min(5, max(1, math.ceil(effectiveness / 10)))
            if suggested != schedule.priority:
                suggestions.append(
                    ScheduleSuggestion(
                        schedule_id=schedule.id,
                        type="priority_adjustment",
                        reason=f"7-day effectiveness is {effectiveness:.1f}%",
                        details={"current_priority": schedule.priority, "suggested_priority": suggested},
                        created_at=now,
                    )
                )

        frequency = self.analyze_content_frequency(schedule, now)
        avg_hours = frequency.get("avg_interval_hours")
        if avg_hours is not None and avg_hours > self.settings.frequency_reduction_days * 24:
            suggestions.append(
                ScheduleSuggestion(
                    schedule_id=schedule.id,
                    type="frequency_reduction",
                    reason=f"Content arrives every {avg_hours / 24:.1f} days on average",
                    details={"avg_interval_hours": avg_hours},
                    created_at=now,
                )
            )

        SuggestionRepository.replace_for_schedule(schedule.id, "optimization", suggestions)
        return suggestions

    def _next_occurrence(self, schedule: ChannelSchedule, pattern: LearnedPattern, now: datetime) -> datetime:
        local_now = schedule.local(now)
        days_ahead = (DAYS_OF_WEEK.index(pattern.day_of_week) - local_now.weekday()) % 7
        candidate = (local_now + timedelta(days=days_ahead)).replace(
            hour=pattern.hour, minute=0, second=0, microsecond=0
        )
        if candidate <= local_now:
            candidate += timedelta(days=7)
        return candidate

    def get_predictive_insights(self, schedule: ChannelSchedule, now: Optional[datetime] = None) -> dict:
        now = now or self._clock()
        samples, effectiveness = self.effectiveness(schedule.id, 7, now)
        patterns = LearnedPatternRepository.get_for_schedule(schedule.id)

        next_content = None
        confidence = 0.0
        if patterns:
            upcoming = min(patterns, key=lambda p: self._next_occurrence(schedule, p, now))
            next_content = self._next_occurrence(schedule, upcoming, now).isoformat()
            confidence = min(100.0, upcoming.success_count / self.settings.min_data_points * 100)

        return {
            "schedule_id": schedule.id,
            "channel_id": schedule.channel_id,
            "samples": samples,
            "effectiveness": round(effectiveness, 2),
            "patterns": [
                {"day_of_week": p.day_of_week, "hour": p.hour, "success_count": p.success_count}
                for p in patterns[: self.settings.top_patterns]
            ],
            "suggestions": [s.type for s in SuggestionRepository.get_for_schedule(schedule.id)],
            "next_likely_content": next_content,
            "confidence": round(confidence, 2),
            "predictability": round(self.predictability_score(schedule.id, now), 3),
        }

    def prune_history(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock()
        removed = OutcomeRepository.prune_before(self._window_start(now))
        if removed:
            logger.info(f"Pruned {removed} outcome records older than {self.settings.learning_window_days} days")
        return removed
