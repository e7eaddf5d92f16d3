# config.py
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _int_env(name, default):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


@dataclass
class Settings:
    telegram_bot_token: Optional[str] = None
    notify_chat_id: Optional[int] = None
    db_url: str = "sqlite:///reminders.db"
    timezone: str = "UTC"
    curve_path: Optional[str] = None
    sweep_interval_minutes: int = 15
    lookahead_slack_seconds: int = 60
    refresh_interval_minutes: int = 1
    refire_cooldown_minutes: int = 360
    default_notify_before_minutes: int = 0
    log_level: str = "INFO"

    @property
    def lookahead_ms(self):
        return self.lookahead_slack_seconds * 1000

    @property
    def refire_cooldown_ms(self):
        return self.refire_cooldown_minutes * 60000

    @classmethod
    def from_env(cls):
        chat_id = os.getenv("NOTIFY_CHAT_ID")
        return cls(
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN"),
            notify_chat_id=int(chat_id) if chat_id else None,
            db_url=os.getenv("DB_URL", "sqlite:///reminders.db"),
            timezone=os.getenv("TIMEZONE", "UTC"),
            curve_path=os.getenv("CURVE_PATH"),
            sweep_interval_minutes=_int_env("SWEEP_INTERVAL_MINUTES", 15),
            lookahead_slack_seconds=_int_env("LOOKAHEAD_SLACK_SECONDS", 60),
            refresh_interval_minutes=_int_env("REFRESH_INTERVAL_MINUTES", 1),
            refire_cooldown_minutes=_int_env("REFIRE_COOLDOWN_MINUTES", 360),
            default_notify_before_minutes=_int_env("DEFAULT_NOTIFY_BEFORE_MINUTES", 0),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
