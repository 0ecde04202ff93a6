import logging
import sys

from telegram import Bot
from telegram.ext import Application

from src.config import Config
from src.db.database import init_db
from src.services.cache import CacheStore
from src.services.checker import ContentChecker
from src.services.fallback import FallbackRunner
from src.services.learning import PatternLearner
from src.services.notifications import TelegramNotificationSink
from src.services.quota import QuotaLedger
from src.services.scheduler import Core, PriorityScheduler, setup_scheduler
from src.services.stores import MemoryStore, RedisStore, SqliteStore
from src.services.youtube import YouTubeFetcher

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=logging.INFO,
)
logger = logging.getLogger(__name__)


def build_core(bot: Bot) -> Core:
    """Wire the scheduling core with its production collaborators."""
    scheduler_settings = Config.scheduler_settings()

    ledger = QuotaLedger(SqliteStore(), Config.quota_settings())

    warm = None
    if Config.REDIS_URL:
        warm = RedisStore(Config.REDIS_URL)
    else:
        logger.info("REDIS_URL not set, warm cache tier disabled")
    cache = CacheStore(hot=MemoryStore(), warm=warm, settings=Config.cache_settings())

    learner = PatternLearner(Config.learning_settings())
    sink = TelegramNotificationSink(bot, Config.TARGET_CHAT_ID, Config.ADMIN_CHAT_ID)
    checker = ContentChecker(
        YouTubeFetcher(Config.YOUTUBE_API_KEY),
        ledger,
        cache,
        sink,
        scheduler_settings,
    )
    fallback = FallbackRunner(ledger, checker, Config.fallback_settings())
    scheduler = PriorityScheduler(ledger, learner, checker, scheduler_settings, fallback)

    return Core(
        ledger=ledger,
        cache=cache,
        learner=learner,
        checker=checker,
        scheduler=scheduler,
        fallback=fallback,
        sink=sink,
    )


def main() -> None:
    """Run the scheduler."""
    errors = Config.validate()
    if errors:
        for error in errors:
            logger.error(error)
        sys.exit(1)

    init_db()
    logger.info("Database initialized")

    application = Application.builder().token(Config.TELEGRAM_BOT_TOKEN).build()
    core = build_core(application.bot)
    setup_scheduler(application, core)

    logger.info(f"Scheduler starting with a daily budget of {core.ledger.daily_limit} units")
    application.run_polling()


if __name__ == "__main__":
    main()
