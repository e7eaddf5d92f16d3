"""Shared pytest fixtures: a throwaway SQLite store, a fixed clock and a
notifier that records what it was asked to send."""
import datetime

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from database import ReminderStore


def ms(*args):
    return int(datetime.datetime(*args, tzinfo=datetime.timezone.utc).timestamp() * 1000)


class FixedClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class FakeNotifier:
    def __init__(self, permission=True, error=None):
        self.permission = permission
        self.error = error
        self.sent = []
        self.chat_id = None

    async def check_permission(self):
        return self.permission

    async def notify(self, notification):
        if self.error is not None:
            raise self.error
        self.sent.append(notification)


@pytest.fixture
def store(tmp_path):
    return ReminderStore.from_url(f"sqlite:///{tmp_path / 'reminders.db'}")


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def clock():
    # Monday 2026-10-19 12:00 UTC
    return FixedClock(ms(2026, 10, 19, 12, 0))


@pytest.fixture
def aps():
    return AsyncIOScheduler(timezone="UTC")
