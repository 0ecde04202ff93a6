import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Callable, Optional

from src.config import FallbackSettings
from src.db.models import DAYS_OF_WEEK, ChannelSchedule, ResultType, TimeSlot
from src.db.repositories import (
    InsightRepository,
    OutcomeRepository,
    QuotaUsageRepository,
    ScheduleRepository,
)
from src.services.checker import CheckResult, ContentChecker
from src.services.errors import PersistenceFailure
from src.services.notifications import Event, EventType
from src.services.quota import QuotaLedger

logger = logging.getLogger(__name__)

INSIGHT_NAME = "missed_content_analysis"


@dataclass
class FallbackReport:
    checks: list[CheckResult] = field(default_factory=list)
    gaps: list[dict] = field(default_factory=list)
    escalated: list[int] = field(default_factory=list)
    events: list[Event] = field(default_factory=list)
    skipped_reason: Optional[str] = None


class FallbackRunner:
    """Finds channels that went unchecked and checks them on emergency quota."""

    def __init__(
        self,
        ledger: QuotaLedger,
        checker: ContentChecker,
        settings: Optional[FallbackSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ledger = ledger
        self.checker = checker
        self.settings = settings or FallbackSettings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def get_channels_needing_fallback(self, now: Optional[datetime] = None) -> list[ChannelSchedule]:
        """Active schedules older than the staleness cutoff with no check since it."""
        now = now or self._clock()
        cutoff = now - timedelta(hours=self.settings.staleness_hours)
        stale = []
        for schedule in ScheduleRepository.get_active():
            if schedule.created_at and schedule.created_at > cutoff:
                continue
            last_check = OutcomeRepository.get_latest_check_time(schedule.id)
            if last_check is None or last_check < cutoff:
                stale.append(schedule)
        return stale

    async def run_fallback_checks(self, now: Optional[datetime] = None) -> FallbackReport:
        now = now or self._clock()
        report = FallbackReport()

        minimum = self.ledger.daily_limit * self.settings.min_remaining_ratio
        if self.ledger.remaining() < minimum:
            report.skipped_reason = "insufficient quota"
            logger.info(f"Skipping fallback checks: less than {minimum:.0f} units remain")
            return report

        candidates = self.get_channels_needing_fallback(now)[: self.settings.max_channels_per_pass]
        for schedule in candidates:
            if not self.ledger.borrow_emergency(1):
                report.skipped_reason = "emergency allowance exhausted"
                break
            logger.info(f"Fallback check for {schedule.channel_id}")
            await self._emergency_check(schedule, report)
        return report

    async def _emergency_check(self, schedule: ChannelSchedule, report: FallbackReport) -> bool:
        """Run one check already paid for from the emergency allowance."""
        try:
            result = await self.checker.check(schedule.channel_id, schedule.id, ResultType.FALLBACK)
        except PersistenceFailure as e:
            logger.error(f"Fallback check for {schedule.channel_id} not recorded: {e}")
            return False
        report.checks.append(result)
        report.events.extend(result.events)
        return True

    def detect_missed_content_patterns(self, now: Optional[datetime] = None) -> list[dict]:
        """Flag channels with a poor 24h success ratio or no recent check."""
        now = now or self._clock()
        outcomes = OutcomeRepository.get_since(now - timedelta(hours=self.settings.gap_window_hours))

        by_channel = defaultdict(list)
        for outcome in outcomes:
            if outcome.channel_id:
                by_channel[outcome.channel_id].append(outcome)

        gaps = []
        last_check_cutoff = now - timedelta(hours=self.settings.gap_last_check_hours)
        for channel_id, records in sorted(by_channel.items()):
            successes = sum(1 for record in records if record.content_found)
            ratio = successes / len(records)
            last_check = max(record.check_time for record in records)
            if ratio >= self.settings.gap_success_ratio and last_check >= last_check_cutoff:
                continue
            gaps.append(
                {
                    "channel_id": channel_id,
                    "checks": len(records),
                    "successes": successes,
                    "success_rate": ratio * 100,
                    "last_check": last_check.isoformat(),
                    "severity": "high" if ratio < self.settings.high_severity_ratio else "medium",
                }
            )
        return gaps

    def escalate_schedule(self, schedule: ChannelSchedule, now: Optional[datetime] = None) -> list[TimeSlot]:
        """Add temporary hourly slots for the next hours. No-op while an escalation is active."""
        now = now or self._clock()
        if ScheduleRepository.has_temporary_slots(schedule.id):
            return []

        revert_at = now + timedelta(hours=self.settings.revert_after_hours)
        slots = []
        for offset in range(1, self.settings.escalation_hours + 1):
            local = schedule.local(now + timedelta(hours=offset))
            slots.append(
                TimeSlot(
                    day_of_week=DAYS_OF_WEEK[local.weekday()],
                    time_of_day=time(local.hour, 0),
                    priority_modifier=1,
                    temporary=True,
                    revert_at=revert_at,
                )
            )
        ScheduleRepository.add_slots(schedule.id, slots)
        logger.info(
            f"Escalated {schedule.channel_id}: {len(slots)} hourly slots until {revert_at.isoformat()}"
        )
        return slots

    def revert_expired_escalations(self, now: Optional[datetime] = None) -> int:
        removed = ScheduleRepository.delete_expired_temporary_slots(now or self._clock())
        for schedule_id, count in removed.items():
            logger.info(f"Reverted escalation of schedule #{schedule_id} ({count} slots)")
        return sum(removed.values())

    async def run(self, now: Optional[datetime] = None) -> FallbackReport:
        """Fallback checks, then gap detection.

        Every flagged channel not yet checked in this pass gets an emergency
        check while the pass has room. Severe gaps are also escalated.
        """
        now = now or self._clock()
        report = await self.run_fallback_checks(now)
        checked = {result.channel_id for result in report.checks}

        report.gaps = self.detect_missed_content_patterns(now)
        for gap in report.gaps:
            schedule = ScheduleRepository.get_by_channel_id(gap["channel_id"])
            if schedule is None:
                continue
            gap["schedule_id"] = schedule.id
            gap["checked"] = gap["channel_id"] in checked
            if (
                not gap["checked"]
                and len(report.checks) < self.settings.max_channels_per_pass
                and self.ledger.borrow_emergency(1)
            ):
                logger.info(f"Gap check for {gap['channel_id']} ({gap['severity']} severity)")
                gap["checked"] = await self._emergency_check(schedule, report)

            if gap["severity"] != "high":
                continue
            gap["escalated"] = bool(self.escalate_schedule(schedule, now))
            if gap["escalated"]:
                report.escalated.append(schedule.id)
                report.events.append(
                    Event(EventType.CRITICAL_GAP_DETECTED, gap["channel_id"], schedule.id, dict(gap))
                )
        return report

    def analyze_missed_content(self, now: Optional[datetime] = None) -> dict:
        """Seven-day rollup per channel, stored as an insight snapshot."""
        now = now or self._clock()
        since = now - timedelta(days=self.settings.analysis_days)
        efficiency = QuotaUsageRepository.get_average_efficiency_by_channel(self.ledger.day_key(since))

        by_channel = defaultdict(lambda: [0, 0])
        for outcome in OutcomeRepository.get_since(since):
            if outcome.channel_id:
                by_channel[outcome.channel_id][0] += 1
                by_channel[outcome.channel_id][1] += outcome.content_found

        issues = []
        critical = []
        for channel_id, (total, found) in sorted(by_channel.items()):
            success_rate = found / total * 100
            avg_efficiency = efficiency.get(channel_id, 0.0)
            if success_rate >= 50 and avg_efficiency >= 30:
                continue
            issues.append(
                {
                    "channel_id": channel_id,
                    "checks": total,
                    "success_rate": round(success_rate, 2),
                    "avg_efficiency": round(avg_efficiency, 2),
                }
            )
            if success_rate < 20:
                critical.append(
                    {
                        "channel_id": channel_id,
                        "success_rate": round(success_rate, 2),
                        "recommendation": (
                            "Review the check schedule against the channel's publishing times "
                            "or lower its priority."
                        ),
                    }
                )

        insight = {
            "generated_at": now.isoformat(),
            "days": self.settings.analysis_days,
            "channels_analyzed": len(by_channel),
            "channels_with_issues": issues,
            "critical_issues": critical,
        }
        InsightRepository.save(INSIGHT_NAME, insight)
        logger.info(
            f"Missed content analysis: {len(issues)} channels with issues, {len(critical)} critical"
        )
        return insight

    def get_fallback_stats(self, now: Optional[datetime] = None) -> dict:
        now = now or self._clock()
        outcomes = [
            outcome
            for outcome in OutcomeRepository.get_since(now - timedelta(days=self.settings.analysis_days))
            if outcome.result_type == ResultType.FALLBACK
        ]
        successes = sum(1 for outcome in outcomes if outcome.content_found)
        insight = InsightRepository.get(INSIGHT_NAME) or {}
        return {
            "fallback_checks": len(outcomes),
            "successful": successes,
            "success_rate": round(successes / len(outcomes) * 100, 2) if outcomes else 0.0,
            "emergency_used": self.ledger.emergency_used(),
            "channels_with_issues": len(insight.get("channels_with_issues", [])),
            "critical_issues": len(insight.get("critical_issues", [])),
            "last_analysis": insight.get("generated_at"),
        }
