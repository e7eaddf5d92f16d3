import asyncio

import pytest
from telegram.error import Forbidden, NetworkError

from conftest import FakeNotifier
from dispatcher import (
    DEFAULT_TITLE, DeliveryStatus, Notification, NotificationUnavailable,
    PermissionNotGranted, TelegramNotifier, build_notification, deliver,
    scheduled_payload, threshold_payload,
)
from models import ReminderRecord


class FakeBot:
    def __init__(self, error=None):
        self.error = error
        self.messages = []

    async def send_message(self, chat_id, text):
        if self.error is not None:
            raise self.error
        self.messages.append((chat_id, text))

    async def get_chat(self, chat_id):
        if self.error is not None:
            raise self.error
        return {"id": chat_id}


def test_payload_defaults():
    record = ReminderRecord(id="r-1-5", due_at=5)
    assert build_notification(record) == Notification(DEFAULT_TITLE, "", "r-1-5")
    assert scheduled_payload(None, "08:00") == ("Scheduled dose", "08:00")
    assert scheduled_payload("Pill", "08:00") == ("Pill", "Pill 08:00")
    assert threshold_payload(None, 62.5) == ("Level threshold", "Threshold: 62.5 pg/mL")


@pytest.mark.parametrize("error, status", [
    (None, DeliveryStatus.DELIVERED),
    (NotificationUnavailable("no bot"), DeliveryStatus.UNAVAILABLE),
    (PermissionNotGranted("blocked"), DeliveryStatus.DENIED),
])
def test_deliver_statuses(error, status):
    record = ReminderRecord(id="x", due_at=1, title="T", body="B")
    assert asyncio.run(deliver(FakeNotifier(error=error), record)) == status


def test_telegram_notifier_sends_and_skips_repeats():
    bot = FakeBot()
    notifier = TelegramNotifier(bot, chat_id=42)
    note = Notification("Injection", "Injection 08:00", "rec-1-100")
    asyncio.run(notifier.notify(note))
    asyncio.run(notifier.notify(note))
    assert bot.messages == [(42, "⏰ Injection\nInjection 08:00")]


def test_telegram_notifier_error_mapping():
    with pytest.raises(NotificationUnavailable):
        asyncio.run(TelegramNotifier(None, 42).notify(Notification("a", "b", "c")))
    with pytest.raises(PermissionNotGranted):
        asyncio.run(TelegramNotifier(FakeBot(), None).notify(Notification("a", "b", "c")))
    with pytest.raises(PermissionNotGranted):
        asyncio.run(TelegramNotifier(FakeBot(Forbidden("bot was blocked")), 42).notify(Notification("a", "b", "c")))
    with pytest.raises(NotificationUnavailable):
        asyncio.run(TelegramNotifier(FakeBot(NetworkError("timeout")), 42).notify(Notification("a", "b", "c")))


def test_telegram_permission_check():
    assert asyncio.run(TelegramNotifier(FakeBot(), 42).check_permission()) is True
    assert asyncio.run(TelegramNotifier(FakeBot(), None).check_permission()) is False
    assert asyncio.run(TelegramNotifier(FakeBot(Forbidden("blocked")), 42).check_permission()) is False
    # an outage leaves the feature on; each send reports it instead
    assert asyncio.run(TelegramNotifier(FakeBot(NetworkError("timed out")), 42).check_permission()) is True


def test_sent_tags_outside_the_window_are_dropped():
    notifier = TelegramNotifier(FakeBot(), chat_id=42, replace_window=0)
    asyncio.run(notifier.notify(Notification("a", "a", "rec-1")))
    asyncio.run(notifier.notify(Notification("b", "b", "rec-2")))
    assert list(notifier._sent) == ["rec-2"]
