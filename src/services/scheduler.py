import asyncio
import logging
import time as clock_time
from dataclasses import asdict, dataclass, field
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from telegram.ext import Application, ContextTypes

from src.bot.formatters import format_quota_stats, format_suggestions
from src.config import Config, SchedulerSettings
from src.db.models import DAYS_OF_WEEK, ChannelSchedule, ResultType, ScheduleSuggestion
from src.db.repositories import ScheduleRepository, SchedulerStateRepository, SuggestionRepository
from src.services.cache import CacheStore
from src.services.checker import CheckResult, ContentChecker
from src.services.errors import PersistenceFailure
from src.services.fallback import FallbackReport, FallbackRunner
from src.services.learning import PatternLearner
from src.services.notifications import Event, EventType, NotificationSink
from src.services.quota import QuotaLedger
from src.services.stores import SqliteStore

logger = logging.getLogger(__name__)

TICK_JOB_NAME = "scheduler_tick_job"
ANALYSIS_JOB_NAME = "daily_analysis_job"
CACHE_CLEANUP_JOB_NAME = "cache_cleanup_job"
PREFETCH_JOB_NAME = "prefetch_job"
PRUNE_JOB_NAME = "history_prune_job"


def suggestion_signature(suggestions: list[ScheduleSuggestion]) -> frozenset:
    return frozenset((s.type, s.day_of_week, s.time_of_day) for s in suggestions)


class TickPhase(Enum):
    IDLE = "idle"
    SCORING = "scoring"
    RANKING = "ranking"
    DISPATCHING = "dispatching"
    FALLBACK_PASS = "fallback_pass"
    LEARNING_UPDATE = "learning_update"


@dataclass
class ScoredSchedule:
    schedule: ChannelSchedule
    score: float
    predictability: float


@dataclass
class TickReport:
    started_at: datetime
    paused: bool = False
    checks: list[CheckResult] = field(default_factory=list)
    skipped: int = 0
    failed: int = 0
    stopped_for_quota: bool = False
    reverted_slots: int = 0
    events: list[Event] = field(default_factory=list)
    fallback: Optional[FallbackReport] = None
    phase_ms: dict[str, int] = field(default_factory=dict)

    @property
    def content_found(self) -> int:
        return sum(len(check.new_items) for check in self.checks)


class PriorityScheduler:
    """Scores active schedules and spends quota on the most promising ones."""

    def __init__(
        self,
        ledger: QuotaLedger,
        learner: PatternLearner,
        checker: ContentChecker,
        settings: Optional[SchedulerSettings] = None,
        fallback: Optional[FallbackRunner] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ledger = ledger
        self.learner = learner
        self.checker = checker
        self.settings = settings or SchedulerSettings()
        self.fallback = fallback
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.phase = TickPhase.IDLE
        self._lock = asyncio.Lock()

    def priority_weight(self, priority: int) -> float:
        weights = self.settings.priority_weights
        return weights[min(max(priority, min(weights)), max(weights))]

    def score(self, schedule: ChannelSchedule, now: Optional[datetime] = None) -> float:
        now = now or self._clock()
        local = schedule.local(now)
        today = DAYS_OF_WEEK[local.weekday()]
        today_slots = schedule.slots_on(today)

        bonus = 0.0
        if not today_slots:
            base = self.priority_weight(1)
        else:
            modifier = max(slot.priority_modifier for slot in today_slots)
            base = self.priority_weight(schedule.priority + modifier)
            now_minutes = local.hour * 60 + local.minute + local.second / 60
            for slot in today_slots:
                minutes = abs(now_minutes - (slot.time_of_day.hour * 60 + slot.time_of_day.minute))
                if minutes <= self.settings.near_window_minutes:
                    bonus = max(bonus, 2.0 - minutes / self.settings.near_window_minutes)
                elif minutes <= self.settings.far_window_minutes:
                    bonus = max(bonus, self.settings.far_window_bonus)

        rate = self.learner.bucket_success_rate(schedule, today, local.hour, now)
        multiplier = 1.0 + self.settings.learning_boost * rate if rate is not None else 1.0

        score = min(self.settings.max_score, base * (1 + bonus) * multiplier)
        logger.debug(
            f"Score for {schedule.channel_id}: {score:.3f} "
            f"(base={base}, bonus={bonus:.2f}, multiplier={multiplier:.2f})"
        )
        return score

    def dynamic_threshold(self, utilization: float) -> float:
        for upper_bound, threshold in self.settings.dispatch_thresholds:
            if utilization < upper_bound:
                return threshold
        return self.settings.scarce_threshold

    def should_dispatch(
        self, schedule: ChannelSchedule, force: bool = False, score: Optional[float] = None
    ) -> bool:
        """Pass a precomputed `score` to skip rescoring the schedule."""
        if force:
            return True
        if self.ledger.remaining() <= 0:
            return False
        if score is None:
            score = self.score(schedule)
        return score >= self.dynamic_threshold(self.ledger.utilization())

    def rank(self, schedules: list[ChannelSchedule], now: datetime) -> list[ScoredSchedule]:
        self.phase = TickPhase.SCORING
        scored = [
            ScoredSchedule(schedule, self.score(schedule, now), self.learner.predictability_score(schedule.id, now))
            for schedule in schedules
            if schedule.slots
        ]
        self.phase = TickPhase.RANKING
        scored.sort(key=lambda entry: (entry.score, entry.predictability), reverse=True)
        return scored

    def update_schedule_effectiveness(self, schedule: ChannelSchedule, now: datetime) -> list[Event]:
        """Ask the learner for suggestions when a schedule keeps coming back empty.

        An event is emitted only when the stored suggestions change.
        """
        samples, effectiveness = self.learner.effectiveness(
            schedule.id, self.settings.effectiveness_window_days, now
        )
        if (
            samples < self.settings.low_effectiveness_min_samples
            or effectiveness >= self.settings.low_effectiveness_percent
        ):
            return []

        logger.info(
            f"Schedule #{schedule.id} effectiveness {effectiveness:.1f}% over {samples} checks, "
            f"generating suggestions"
        )
        previous = suggestion_signature(SuggestionRepository.get_for_schedule(schedule.id))
        suggestions = self.learner.generate_schedule_suggestion(schedule, now)
        suggestions += self.learner.generate_optimization_suggestions(schedule, now)
        if not suggestions or suggestion_signature(suggestions) == previous:
            return []
        return [
            Event(
                EventType.SCHEDULE_SUGGESTION_GENERATED,
                schedule.channel_id,
                schedule.id,
                {
                    "effectiveness": round(effectiveness, 2),
                    "suggestions": [
                        {k: v for k, v in asdict(s).items() if k != "created_at"} for s in suggestions
                    ],
                },
            )
        ]

    def _timed(self, report: TickReport, phase: TickPhase, started: float) -> float:
        now = clock_time.monotonic()
        report.phase_ms[phase.value] = int((now - started) * 1000)
        return now

    async def run_tick(self, now: Optional[datetime] = None) -> TickReport:
        async with self._lock:
            return await self._run_tick(now or self._clock())

    async def _run_tick(self, now: datetime) -> TickReport:
        report = TickReport(started_at=now)
        if SchedulerStateRepository.get().is_paused:
            logger.info("Scheduler is paused, skipping tick")
            report.paused = True
            return report

        logger.info("Starting scheduler tick")
        if self.fallback:
            report.reverted_slots = self.fallback.revert_expired_escalations(now)

        started = clock_time.monotonic()
        ranked = self.rank(ScheduleRepository.get_active(), now)
        started = self._timed(report, TickPhase.RANKING, started)

        self.phase = TickPhase.DISPATCHING
        for entry in ranked:
            if self.ledger.remaining() <= 0:
                report.stopped_for_quota = True
                logger.warning("Daily quota exhausted, stopping dispatch")
                break
            if not self.should_dispatch(entry.schedule, score=entry.score):
                report.skipped += 1
                continue
            if not self.ledger.try_reserve(self.settings.fetch_operation):
                report.skipped += 1
                continue

            schedule = entry.schedule
            try:
                result = await self.checker.check(schedule.channel_id, schedule.id, ResultType.SCHEDULED)
                report.checks.append(result)
                report.events.extend(result.events)
                if result.error:
                    report.failed += 1
                report.events.extend(self.update_schedule_effectiveness(schedule, now))
            except PersistenceFailure as e:
                report.failed += 1
                logger.error(f"Check of {schedule.channel_id} could not be recorded: {e}")
        started = self._timed(report, TickPhase.DISPATCHING, started)

        if self.fallback:
            self.phase = TickPhase.FALLBACK_PASS
            try:
                report.fallback = await self.fallback.run(now)
                report.events.extend(report.fallback.events)
            except PersistenceFailure as e:
                logger.error(f"Fallback pass failed: {e}")
            started = self._timed(report, TickPhase.FALLBACK_PASS, started)

        self.phase = TickPhase.LEARNING_UPDATE
        try:
            self.learner.update_patterns(now)
        except PersistenceFailure as e:
            logger.error(f"Pattern update failed: {e}")
        self._timed(report, TickPhase.LEARNING_UPDATE, started)

        self.phase = TickPhase.IDLE
        SchedulerStateRepository.update_last_run(now)
        logger.info(
            f"Tick completed: {len(report.checks)} checks, {report.content_found} new items, "
            f"{report.skipped} skipped, {report.failed} failed"
        )
        return report

    async def trigger_immediate_check(self, channel_id: str) -> Optional[CheckResult]:
        """Check a channel now regardless of score. Falls back to emergency quota."""
        operation = self.settings.fetch_operation
        admitted = self.ledger.try_reserve(operation) or self.ledger.borrow_emergency(
            self.ledger.cost_of(operation)
        )
        if not admitted:
            logger.warning(f"No quota for immediate check of {channel_id}")
            return None

        schedule = ScheduleRepository.get_by_channel_id(channel_id)
        return await self.checker.check(
            channel_id, schedule.id if schedule else None, ResultType.EMERGENCY
        )

    def get_next_check_times(self, limit: int = 10, now: Optional[datetime] = None) -> list[dict]:
        now = now or self._clock()
        upcoming = []
        for schedule in ScheduleRepository.get_active():
            local_now = schedule.local(now)
            candidates = []
            for slot in schedule.slots:
                days_ahead = (DAYS_OF_WEEK.index(slot.day_of_week) - local_now.weekday()) % 7
                candidate = datetime.combine(
                    local_now.date() + timedelta(days=days_ahead), slot.time_of_day, tzinfo=schedule.zone
                )
                if candidate <= local_now:
                    candidate += timedelta(days=7)
                candidates.append((candidate, slot))
            if not candidates:
                continue
            next_time, slot = min(candidates, key=lambda pair: pair[0])
            upcoming.append(
                {
                    "schedule_id": schedule.id,
                    "channel_id": schedule.channel_id,
                    "next_check": next_time,
                    "temporary": slot.temporary,
                    "score": round(self.score(schedule, next_time), 3),
                }
            )
        upcoming.sort(key=lambda item: item["next_check"])
        return upcoming[:limit]

    def pause(self) -> None:
        SchedulerStateRepository.set_paused(True)
        logger.info("Scheduler paused")

    def resume(self) -> None:
        SchedulerStateRepository.set_paused(False)
        logger.info("Scheduler resumed")


@dataclass
class Core:
    ledger: QuotaLedger
    cache: CacheStore
    learner: PatternLearner
    checker: ContentChecker
    scheduler: PriorityScheduler
    fallback: FallbackRunner
    sink: NotificationSink


async def handle_events(core: Core, events: list[Event]) -> None:
    """Deliver tick events that need operator attention."""
    for event in events:
        try:
            if event.type == EventType.CRITICAL_GAP_DETECTED:
                await core.sink.notify_critical_gap(event.payload)
            elif event.type == EventType.SCHEDULE_SUGGESTION_GENERATED:
                await core.sink.notify_admin(
                    format_suggestions(event.channel_id, event.payload["suggestions"])
                )
        except Exception as e:
            logger.warning(f"Failed to deliver {event.type.value} event: {e}")


async def run_scheduled_tick(context: ContextTypes.DEFAULT_TYPE) -> None:
    core: Core = context.bot_data["core"]
    report = await core.scheduler.run_tick()
    await handle_events(core, report.events)


async def run_daily_analysis(context: ContextTypes.DEFAULT_TYPE) -> None:
    core: Core = context.bot_data["core"]
    insight = await asyncio.to_thread(core.fallback.analyze_missed_content)
    for issue in insight["critical_issues"]:
        logger.warning(f"Critical content gap on {issue['channel_id']}: {issue['success_rate']}%")

    state = SchedulerStateRepository.get()
    last_run = state.last_run_at.strftime("%Y-%m-%d %H:%M UTC") if state.last_run_at else None
    try:
        await core.sink.notify_admin(format_quota_stats(core.ledger.get_stats(), last_run))
    except Exception as e:
        logger.warning(f"Failed to send daily quota report: {e}")


async def run_cache_cleanup(context: ContextTypes.DEFAULT_TYPE) -> None:
    core: Core = context.bot_data["core"]
    await asyncio.to_thread(core.cache.cleanup)


async def run_prefetch(context: ContextTypes.DEFAULT_TYPE) -> None:
    core: Core = context.bot_data["core"]
    await core.cache.process_prefetch_queue(core.checker.fetch_for_cache)


async def run_history_pruning(context: ContextTypes.DEFAULT_TYPE) -> None:
    core: Core = context.bot_data["core"]
    await asyncio.to_thread(core.learner.prune_history)
    if isinstance(core.ledger.store, SqliteStore):
        await asyncio.to_thread(core.ledger.store.purge_expired)


def setup_scheduler(application: Application, core: Core) -> None:
    """Register the periodic jobs on the application's job queue."""
    application.bot_data["core"] = core
    job_queue = application.job_queue

    job_queue.run_repeating(
        run_scheduled_tick,
        interval=timedelta(minutes=Config.SCHEDULER_TICK_MINUTES),
        first=10,
        name=TICK_JOB_NAME,
    )
    job_queue.run_repeating(
        run_cache_cleanup,
        interval=timedelta(minutes=Config.CACHE_CLEANUP_MINUTES),
        name=CACHE_CLEANUP_JOB_NAME,
    )
    job_queue.run_repeating(
        run_prefetch,
        interval=timedelta(minutes=Config.PREFETCH_INTERVAL_MINUTES),
        name=PREFETCH_JOB_NAME,
    )

    hour, minute = Config.DAILY_ANALYSIS_TIME
    job_queue.run_daily(run_daily_analysis, time=time(hour=hour, minute=minute), name=ANALYSIS_JOB_NAME)
    job_queue.run_daily(run_history_pruning, time=time(hour=(hour + 1) % 24, minute=minute), name=PRUNE_JOB_NAME)
    logger.info(
        f"Scheduler set up: tick every {Config.SCHEDULER_TICK_MINUTES} min, "
        f"daily analysis at {hour:02d}:{minute:02d}"
    )
