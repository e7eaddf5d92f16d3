# worker.py
# Background context: wakes on an interval (or once, on request) and sweeps
# the shared reminder store. Runs without the foreground bot.
import argparse
import asyncio
import datetime
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from telegram import Bot

from config import Settings
from database import ReminderStore
from dispatcher import TelegramNotifier
from reminders import PREF_CHAT_ID
from sweeper import BackgroundSweeper

logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)
logger = logging.getLogger(__name__)


def build_sweeper(settings, bot):
    store = ReminderStore.from_url(settings.db_url)
    notifier = TelegramNotifier(bot, settings.notify_chat_id)
    return BackgroundSweeper(store, notifier, settings.lookahead_ms, settings.timezone)


async def wake(sweeper, settings):
    # the chat may have been registered by the bot since the last wake
    if settings.notify_chat_id is None:
        sweeper.notifier.chat_id = sweeper.store.get_preference(PREF_CHAT_ID)
    await sweeper.run_once()


async def run(settings, once=False):
    bot = Bot(settings.telegram_bot_token) if settings.telegram_bot_token else None
    sweeper = build_sweeper(settings, bot)
    if bot is not None:
        await bot.initialize()
    try:
        if once:
            await wake(sweeper, settings)
            return
        scheduler = AsyncIOScheduler(timezone="UTC")
        scheduler.add_job(
            wake, "interval",
            minutes=settings.sweep_interval_minutes,
            args=[sweeper, settings],
            id="sweeper",
            next_run_time=datetime.datetime.now(datetime.timezone.utc),
            coalesce=True,
            max_instances=1,
        )
        scheduler.start()
        logger.info(f"Sweeper started, waking every {settings.sweep_interval_minutes} min.")
        try:
            await asyncio.Event().wait()
        finally:
            scheduler.shutdown(wait=False)
    finally:
        if bot is not None:
            await bot.shutdown()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Deliver due dose reminders in the background.")
    parser.add_argument("--once", action="store_true", help="run a single sweep and exit")
    args = parser.parse_args(argv)
    settings = Settings.from_env()
    logging.getLogger().setLevel(settings.log_level)
    try:
        asyncio.run(run(settings, once=args.once))
    except KeyboardInterrupt:
        logger.info("Sweeper stopped by user.")


if __name__ == "__main__":
    main()
