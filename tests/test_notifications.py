from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from telegram.error import TelegramError

from src.db.models import ContentItem
from src.services.notifications import Event, EventType, NotificationSink, TelegramNotificationSink
from src.services.scheduler import Core, handle_events, run_daily_analysis
from tests.helpers import FakeSink


@pytest.fixture
def bot():
    return AsyncMock()


@pytest.fixture
def telegram_sink(bot):
    return TelegramNotificationSink(bot, target_chat_id=100, admin_chat_id=200)


class TestTelegramSink:
    @pytest.mark.asyncio
    async def test_new_content_with_thumbnail_sends_photo(self, telegram_sink, bot):
        item = ContentItem("v1", "UCa", "Title", thumbnail_url="https://img/v1.jpg")
        await telegram_sink.notify_new_content(item)

        bot.send_photo.assert_awaited_once()
        assert bot.send_photo.call_args.kwargs["chat_id"] == 100
        bot.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_photo_failure_falls_back_to_text(self, telegram_sink, bot):
        bot.send_photo.side_effect = TelegramError("wrong file identifier")
        item = ContentItem("v1", "UCa", "Title", thumbnail_url="https://img/v1.jpg")
        await telegram_sink.notify_new_content(item)

        bot.send_message.assert_awaited_once()
        assert bot.send_message.call_args.kwargs["parse_mode"] == "HTML"

    @pytest.mark.asyncio
    async def test_admin_messages_are_split(self, telegram_sink, bot):
        await telegram_sink.notify_admin("\n".join(["z" * 1000] * 6))

        assert bot.send_message.await_count == 2
        assert all(call.kwargs["chat_id"] == 200 for call in bot.send_message.call_args_list)

    @pytest.mark.asyncio
    async def test_critical_gap_goes_to_admin(self, telegram_sink, bot):
        await telegram_sink.notify_critical_gap({"channel_id": "UCa", "success_rate": 0.0, "checks": 9})
        assert bot.send_message.call_args.kwargs["chat_id"] == 200


class TestEventDelivery:
    def make_core(self, sink, ledger=None, fallback=None):
        return Core(
            ledger=ledger,
            cache=None,
            learner=None,
            checker=None,
            scheduler=None,
            fallback=fallback,
            sink=sink,
        )

    @pytest.mark.asyncio
    async def test_operator_events_reach_the_sink(self):
        sink = FakeSink()
        events = [
            Event(EventType.CONTENT_FOUND, "UCa", 1, {"content_id": "v1"}),
            Event(EventType.CRITICAL_GAP_DETECTED, "UCb", 2, {"channel_id": "UCb"}),
            Event(
                EventType.SCHEDULE_SUGGESTION_GENERATED,
                "UCc",
                3,
                {"suggestions": [{"type": "remove_slot", "reason": "never finds anything"}]},
            ),
        ]

        await handle_events(self.make_core(sink), events)

        assert sink.gaps == [{"channel_id": "UCb"}]
        assert len(sink.admin_messages) == 1
        assert "remove_slot" in sink.admin_messages[0]

    @pytest.mark.asyncio
    async def test_delivery_errors_are_contained(self):
        sink = FakeSink()
        sink.notify_critical_gap = AsyncMock(side_effect=RuntimeError("down"))
        events = [
            Event(EventType.CRITICAL_GAP_DETECTED, "UCb", 2, {"channel_id": "UCb"}),
            Event(EventType.SCHEDULE_SUGGESTION_GENERATED, "UCc", 3, {"suggestions": []}),
        ]

        await handle_events(self.make_core(sink), events)
        assert len(sink.admin_messages) == 1

    @pytest.mark.asyncio
    async def test_daily_analysis_reports_quota(self, ledger, fallback):
        sink = FakeSink()
        context = SimpleNamespace(bot_data={"core": self.make_core(sink, ledger, fallback)})

        await run_daily_analysis(context)

        assert len(sink.admin_messages) == 1
        assert "Quota" in sink.admin_messages[0]


class QuietSink(NotificationSink):
    async def notify_new_content(self, item):
        pass

    async def notify_stream_status_change(self, old, new):
        pass


@pytest.mark.asyncio
async def test_operator_notifications_are_optional():
    sink = QuietSink()
    assert await sink.notify_critical_gap({"channel_id": "UCa"}) is None
    assert await sink.notify_admin("hello") is None
