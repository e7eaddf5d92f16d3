# dispatcher.py
# Shared delivery path for the foreground timers and the background sweeper,
# so both produce the same payload and dedupe tag.
import logging
import time
from dataclasses import dataclass
from enum import Enum

from telegram.error import BadRequest, Forbidden, TelegramError

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Dose reminder"
SCHEDULED_TITLE = "Scheduled dose"
THRESHOLD_TITLE = "Level threshold"


class NotificationUnavailable(Exception):
    pass


class PermissionNotGranted(Exception):
    pass


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    UNAVAILABLE = "unavailable"
    DENIED = "denied"


@dataclass(frozen=True)
class Notification:
    title: str
    body: str
    dedupe_tag: str


def scheduled_payload(label, time_of_day):
    return label or SCHEDULED_TITLE, f"{label or ''} {time_of_day}".strip()


def threshold_payload(label, threshold):
    return label or THRESHOLD_TITLE, f"Threshold: {threshold:g} pg/mL"


def build_notification(record):
    return Notification(
        title=record.title or DEFAULT_TITLE,
        body=record.body or "",
        dedupe_tag=record.id,
    )


async def deliver_notification(notifier, notification):
    try:
        await notifier.notify(notification)
    except NotificationUnavailable as e:
        logger.info(f"Notifications unavailable, dropping {notification.dedupe_tag}: {e}")
        return DeliveryStatus.UNAVAILABLE
    except PermissionNotGranted as e:
        logger.info(f"Notification permission not granted, dropping {notification.dedupe_tag}: {e}")
        return DeliveryStatus.DENIED
    return DeliveryStatus.DELIVERED


async def deliver(notifier, record):
    return await deliver_notification(notifier, build_notification(record))


class TelegramNotifier:
    """Sends notifications as Telegram messages to one chat.

    A message whose dedupe tag was already sent within ``replace_window``
    seconds is not sent again, standing in for the tag replacement that
    system notification centres do.
    """

    def __init__(self, bot, chat_id=None, replace_window=60):
        self.bot = bot
        self.chat_id = chat_id
        self.replace_window = replace_window
        self._sent = {}

    async def check_permission(self):
        if self.bot is None or self.chat_id is None:
            return False
        try:
            await self.bot.get_chat(chat_id=self.chat_id)
        except (Forbidden, BadRequest) as e:
            logger.warning(f"Cannot reach chat {self.chat_id}: {e}")
            return False
        except TelegramError as e:
            # an outage says nothing about the chat; sends report it per message
            logger.warning(f"Could not check chat {self.chat_id}, assuming access: {e}")
        return True

    async def notify(self, notification):
        if self.bot is None:
            raise NotificationUnavailable("no Telegram bot configured")
        if self.chat_id is None:
            raise PermissionNotGranted("no chat has started the bot yet")
        now = time.monotonic()
        last = self._sent.get(notification.dedupe_tag)
        if last is not None and now - last < self.replace_window:
            logger.info(f"Skipping repeat of {notification.dedupe_tag}")
            return
        text = f"⏰ {notification.title}"
        if notification.body and notification.body != notification.title:
            text += f"\n{notification.body}"
        try:
            await self.bot.send_message(chat_id=self.chat_id, text=text)
        except Forbidden as e:
            raise PermissionNotGranted(str(e)) from e
        except TelegramError as e:
            raise NotificationUnavailable(str(e)) from e
        self._sent = {
            tag: sent_at for tag, sent_at in self._sent.items()
            if now - sent_at < self.replace_window
        }
        self._sent[notification.dedupe_tag] = now
