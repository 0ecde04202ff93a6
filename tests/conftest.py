import pytest

from src.config import (
    CacheSettings,
    Config,
    FallbackSettings,
    LearningSettings,
    QuotaSettings,
    SchedulerSettings,
)
from src.db.database import init_db
from src.services.cache import CacheStore
from src.services.checker import ContentChecker
from src.services.fallback import FallbackRunner
from src.services.learning import PatternLearner
from src.services.quota import QuotaLedger
from src.services.scheduler import PriorityScheduler
from src.services.stores import MemoryStore
from tests.helpers import FakeClock, FakeFetcher, FakeSink, no_sleep


@pytest.fixture(autouse=True)
def db(tmp_path, monkeypatch):
    monkeypatch.setattr(Config, "DATABASE_PATH", tmp_path / "test.db")
    init_db()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def quota_settings():
    return QuotaSettings(daily_limit=1000, timezone="UTC")


@pytest.fixture
def ledger(clock, quota_settings):
    return QuotaLedger(MemoryStore(), quota_settings, clock=clock)


@pytest.fixture
def cache(clock):
    return CacheStore(hot=MemoryStore(), warm=None, settings=CacheSettings(), clock=clock)


@pytest.fixture
def learner(clock):
    return PatternLearner(LearningSettings(), clock=clock)


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def scheduler_settings():
    return SchedulerSettings(fetch_max_attempts=2, fetch_backoff_seconds=0, fetch_timeout_seconds=5)


@pytest.fixture
def checker(fetcher, ledger, cache, sink, scheduler_settings):
    return ContentChecker(fetcher, ledger, cache, sink, scheduler_settings, sleep=no_sleep)


@pytest.fixture
def fallback(ledger, checker, clock):
    return FallbackRunner(ledger, checker, FallbackSettings(), clock=clock)


@pytest.fixture
def scheduler(ledger, learner, checker, scheduler_settings, clock):
    return PriorityScheduler(ledger, learner, checker, scheduler_settings, clock=clock)
