import logging
import threading
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from src.config import QuotaSettings
from src.db.models import OutcomeRecord, ResultType
from src.db.repositories import OutcomeRepository, QuotaUsageRepository
from src.services.stores import KeyValueStore

logger = logging.getLogger(__name__)

# Counters outlive their day so stats for "yesterday" stay readable after rollover.
COUNTER_TTL_SECONDS = 2 * 24 * 3600


class QuotaStatus(Enum):
    NORMAL = "normal"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"


class QuotaLedger:
    """Daily budget of API cost units.

    Counters live in a KeyValueStore keyed by the calendar day in the
    ledger's timezone, so a new day starts from zero without any reset job.
    """

    def __init__(
        self,
        store: KeyValueStore,
        settings: Optional[QuotaSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.settings = settings or QuotaSettings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._tz = ZoneInfo(self.settings.timezone)
        self._lock = threading.Lock()

    @property
    def daily_limit(self) -> int:
        return self.settings.daily_limit

    @property
    def emergency_allowance(self) -> int:
        return int(self.settings.daily_limit * self.settings.emergency_ratio)

    def now(self) -> datetime:
        return self._clock()

    def day_key(self, when: Optional[datetime] = None) -> str:
        when = when or self._clock()
        return when.astimezone(self._tz).date().isoformat()

    def _key(self, day: str, suffix: str) -> str:
        return f"quota:{day}:{suffix}"

    def _read_int(self, key: str) -> int:
        value = self.store.get(key)
        return int(value) if value else 0

    def cost_of(self, operation: str) -> int:
        return self.settings.operation_costs.get(operation, 1)

    def priority_of(self, operation: str) -> str:
        for level, operations in self.settings.operation_priority.items():
            if operation in operations:
                return level
        return "low"

    def used(self, day: Optional[str] = None) -> int:
        return self._read_int(self._key(day or self.day_key(), "used"))

    def is_locked_out(self, day: Optional[str] = None) -> bool:
        return self.store.get(self._key(day or self.day_key(), "lockout")) is not None

    def remaining(self, day: Optional[str] = None) -> int:
        day = day or self.day_key()
        if self.is_locked_out(day):
            return 0
        return max(0, self.daily_limit - self.used(day))

    def utilization(self, day: Optional[str] = None) -> float:
        return self.used(day) / self.daily_limit * 100

    def emergency_used(self, day: Optional[str] = None) -> int:
        return self._read_int(self._key(day or self.day_key(), "emergency"))

    def status(self, day: Optional[str] = None) -> QuotaStatus:
        percent = self.utilization(day)
        if percent >= self.settings.critical_threshold:
            return QuotaStatus.CRITICAL
        if percent >= self.settings.high_threshold:
            return QuotaStatus.HIGH
        if percent >= self.settings.moderate_threshold:
            return QuotaStatus.MODERATE
        return QuotaStatus.NORMAL

    def _blocked_by_tier(self, operation: str, percent: float) -> bool:
        level = self.priority_of(operation)
        if percent >= self.settings.critical_threshold:
            return level != "high"
        if percent >= self.settings.high_threshold:
            return level == "low"
        return False

    def try_reserve(self, operation: str, cost: Optional[int] = None) -> bool:
        """Admit an operation if the budget allows it. All-or-nothing."""
        cost = self.cost_of(operation) if cost is None else cost
        day = self.day_key()
        used_key = self._key(day, "used")

        with self._lock:
            if self.is_locked_out(day):
                logger.debug(f"Quota locked out for {day}, denied {operation}")
                return False

            percent = self._read_int(used_key) / self.daily_limit * 100
            if self._blocked_by_tier(operation, percent):
                logger.warning(
                    f"Quota at {percent:.1f}%, denied {self.priority_of(operation)}-priority "
                    f"operation {operation}"
                )
                return False

            new_used = self.store.incr(used_key, cost, ttl=COUNTER_TTL_SECONDS)
            if new_used >= self.daily_limit:
                self.store.incr(used_key, -cost)
                self.store.set(self._key(day, "lockout"), "1", ttl=COUNTER_TTL_SECONDS)
                logger.warning(
                    f"Reservation of {cost} units for {operation} would exceed daily limit "
                    f"{self.daily_limit}, locking out until rollover"
                )
                return False

            self.store.incr(self._key(day, f"ops:{operation}"), 1, ttl=COUNTER_TTL_SECONDS)
            return True

    def borrow_emergency(self, amount: int = 1) -> bool:
        """Borrow from the day's emergency allowance. Ignores lockout."""
        key = self._key(self.day_key(), "emergency")
        with self._lock:
            borrowed = self.store.incr(key, amount, ttl=COUNTER_TTL_SECONDS)
            if borrowed > self.emergency_allowance:
                self.store.incr(key, -amount)
                logger.warning(
                    f"Emergency allowance exhausted ({self.emergency_allowance} units), "
                    f"denied borrow of {amount}"
                )
                return False
            logger.info(f"Borrowed {amount} emergency units ({borrowed}/{self.emergency_allowance})")
            return True

    def record_outcome(
        self,
        schedule_id: Optional[int],
        videos_found: int,
        response_time_ms: Optional[int],
        result_type: ResultType = ResultType.SCHEDULED,
        check_time: Optional[datetime] = None,
        channel_id: Optional[str] = None,
        api_calls_made: int = 1,
    ) -> OutcomeRecord:
        """Update the schedule's daily usage row and append an outcome record."""
        check_time = check_time or self._clock()
        outcome = OutcomeRecord(
            id=None,
            schedule_id=schedule_id,
            channel_id=channel_id,
            check_time=check_time,
            content_found=videos_found > 0,
            api_calls_made=max(1, api_calls_made),
            result_type=result_type,
            response_time_ms=response_time_ms,
        )
        return OutcomeRepository.record_check(outcome, videos_found, self.day_key(check_time))

    def estimate_cost(self, operations: dict[str, int]) -> int:
        """Total cost of {operation: count}."""
        return sum(self.cost_of(operation) * count for operation, count in operations.items())

    def next_reset(self, when: Optional[datetime] = None) -> datetime:
        local = (when or self._clock()).astimezone(self._tz)
        tomorrow = local.date() + timedelta(days=1)
        return datetime.combine(tomorrow, time(0, 0), tzinfo=self._tz)

    def get_stats(self, day: Optional[str] = None) -> dict:
        day = day or self.day_key()
        used = self.used(day)
        totals = QuotaUsageRepository.get_daily_totals(day)
        return {
            "day": day,
            "daily_limit": self.daily_limit,
            "used": used,
            "remaining": self.remaining(day),
            "utilization_percent": round(used / self.daily_limit * 100, 2),
            "status": self.status(day).value,
            "locked_out": self.is_locked_out(day),
            "emergency_used": self.emergency_used(day),
            "emergency_allowance": self.emergency_allowance,
            "operations": {
                operation: self._read_int(self._key(day, f"ops:{operation}"))
                for operation in self.settings.operation_costs
            },
            "videos_found": totals["total_videos"],
            "average_efficiency": round(totals["avg_efficiency"], 2),
            "next_reset": self.next_reset().isoformat(),
        }

    def reset(self, day: Optional[str] = None) -> None:
        day = day or self.day_key()
        with self._lock:
            for suffix in ("used", "lockout", "emergency"):
                self.store.delete(self._key(day, suffix))
            for operation in self.settings.operation_costs:
                self.store.delete(self._key(day, f"ops:{operation}"))
        logger.info(f"Quota counters reset for {day}")

    def force_reset(self, new_usage: int = 0) -> None:
        """Overwrite today's usage and lift any lockout."""
        day = self.day_key()
        with self._lock:
            self.store.set(self._key(day, "used"), str(max(0, new_usage)), ttl=COUNTER_TTL_SECONDS)
            self.store.delete(self._key(day, "lockout"))
        logger.warning(f"Quota usage for {day} forced to {new_usage}")
