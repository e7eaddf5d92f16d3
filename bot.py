import logging
from functools import wraps

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from telegram import Update
from telegram.ext import Application, CommandHandler, ContextTypes

from config import Settings
from crossing import load_curve
from database import ReminderStore
from dispatcher import TelegramNotifier
from models import NotifyMode
from recurrence import format_ms
from reminders import PREF_CHAT_ID, InvalidRuleError, ReminderService
from scheduler import ForegroundScheduler
from sweeper import BackgroundSweeper

# --- Logging ---
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)
logger = logging.getLogger(__name__)

DAY_NAMES = {
    "sun": 0, "mon": 1, "tue": 2, "wed": 3, "thu": 4, "fri": 5, "sat": 6,
}
WEEKDAY_LABELS = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
MODE_ALIASES = {
    "cross": NotifyMode.AT_CROSS,
    "at_cross": NotifyMode.AT_CROSS,
    "below": NotifyMode.IMMEDIATE_IF_BELOW,
    "now": NotifyMode.IMMEDIATE_IF_BELOW,
    "immediate_if_below": NotifyMode.IMMEDIATE_IF_BELOW,
}

HELP_TEXT = (
    "Dose reminders.\n"
    "Commands:\n"
    "/weekly <days> <HH:MM> [label] - e.g. /weekly mon,thu 08:00 Injection\n"
    "/threshold <pg/mL> [cross|below] [label] - alert when the level drops below\n"
    "/rules - list your rules\n"
    "/delete <rule id> - remove a rule and its pending reminders\n"
    "/notify on|off - enable or disable notifications\n"
    "/lead <minutes> - notify this many minutes before scheduled doses\n"
    "/pending - show queued reminders\n"
    "/sweep - deliver anything that is due now"
)

settings = None
store = None
notifier = None
service = None
sweeper = None
scheduler = AsyncIOScheduler(timezone="UTC")


def parse_weekdays(arg):
    """"1,3,5" or "mon,wed,fri" -> ["1", "3", "5"]. Range checks happen in the
    rule service."""
    days = []
    for token in arg.split(","):
        token = token.strip().lower()
        if not token:
            continue
        if token[:3] in DAY_NAMES and not token.isdigit():
            days.append(str(DAY_NAMES[token[:3]]))
        else:
            days.append(token)
    return days


def parse_threshold_args(args):
    """[value, mode?, label...] -> (value, NotifyMode, label)."""
    if not args:
        raise InvalidRuleError("a threshold value is required")
    value, rest = args[0], list(args[1:])
    mode = NotifyMode.AT_CROSS
    if rest and rest[0].lower() in MODE_ALIASES:
        mode = MODE_ALIASES[rest.pop(0).lower()]
    return value, mode, " ".join(rest) or None


def describe_rules(recurrences, thresholds):
    lines = []
    for rule in recurrences:
        days = ",".join(WEEKDAY_LABELS[d] for d in rule.weekdays)
        lines.append(f"- [{rule.id}] {rule.label or 'Scheduled dose'}: {days} at {rule.time_of_day}")
    for rule in thresholds:
        mode = "at crossing" if rule.notify_mode == NotifyMode.AT_CROSS.value else "immediately when below"
        lines.append(f"- [{rule.id}] {rule.label or 'Level threshold'}: below {rule.threshold:g} pg/mL, {mode}")
    return lines


def user_only(func):
    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE):
        if update.effective_user is None:
            return
        return await func(update, context)
    return wrapper


# --- Telegram Bot Handlers ---

@user_only
async def start(update: Update, context: ContextTypes.DEFAULT_TYPE):
    chat_id = update.effective_chat.id
    store.set_preference(PREF_CHAT_ID, chat_id)
    notifier.chat_id = chat_id
    await update.message.reply_text("Hi! Reminders will be sent to this chat.\n\n" + HELP_TEXT)


@user_only
async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await update.message.reply_text(HELP_TEXT)


@user_only
async def weekly(update: Update, context: ContextTypes.DEFAULT_TYPE):
    args = context.args or []
    if len(args) < 2:
        await update.message.reply_text("Usage: /weekly <days> <HH:MM> [label]")
        return
    try:
        rule = await service.create_recurrence(parse_weekdays(args[0]), args[1], " ".join(args[2:]) or None)
    except InvalidRuleError as e:
        await update.message.reply_text(f"Sorry, I couldn't add that: {e}")
        return
    days = ",".join(WEEKDAY_LABELS[d] for d in rule.weekdays)
    await update.message.reply_text(f"Weekly reminder [{rule.id}] set: {days} at {rule.time_of_day}")


@user_only
async def threshold(update: Update, context: ContextTypes.DEFAULT_TYPE):
    try:
        value, mode, label = parse_threshold_args(context.args or [])
        rule = await service.create_threshold(value, mode, label)
    except InvalidRuleError as e:
        await update.message.reply_text(f"Sorry, I couldn't add that: {e}")
        return
    await update.message.reply_text(f"Threshold reminder [{rule.id}] set at {rule.threshold:g} pg/mL")


@user_only
async def list_rules(update: Update, context: ContextTypes.DEFAULT_TYPE):
    lines = describe_rules(service.list_recurrences(), service.list_thresholds())
    if not lines:
        await update.message.reply_text("You have no reminder rules.")
        return
    state = "on" if service.notifications_enabled else "off"
    await update.message.reply_text(f"Notifications are {state}.\nYour rules:\n" + "\n".join(lines))


@user_only
async def delete_rule(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not context.args:
        await update.message.reply_text("Usage: /delete <rule id>")
        return
    if await service.delete_rule(context.args[0]):
        await update.message.reply_text("Rule deleted.")
    else:
        await update.message.reply_text("Rule not found.")


@user_only
async def notify(update: Update, context: ContextTypes.DEFAULT_TYPE):
    arg = (context.args or [""])[0].lower()
    if arg not in ("on", "off"):
        await update.message.reply_text("Usage: /notify on|off")
        return
    if arg == "off":
        await service.set_enabled(False)
        await update.message.reply_text("Notifications disabled.")
        return
    notifier.chat_id = update.effective_chat.id
    store.set_preference(PREF_CHAT_ID, notifier.chat_id)
    if await service.set_enabled(True):
        await update.message.reply_text("Notifications enabled.")
    else:
        await update.message.reply_text("I can't message this chat, so notifications stay off.")


@user_only
async def lead(update: Update, context: ContextTypes.DEFAULT_TYPE):
    try:
        await service.set_notify_before((context.args or [None])[0])
    except InvalidRuleError as e:
        await update.message.reply_text(f"Sorry: {e}")
        return
    await update.message.reply_text(f"Scheduled reminders will arrive {service.notify_before_minutes} min early.")


@user_only
async def pending(update: Update, context: ContextTypes.DEFAULT_TYPE):
    records = store.list_all()
    if not records:
        await update.message.reply_text("Nothing is queued.")
        return
    msg = "Queued reminders:\n"
    for r in records:
        msg += f"- {r.title} at {format_ms(r.due_at, settings.timezone)}\n"
    await update.message.reply_text(msg)


@user_only
async def sweep_now(update: Update, context: ContextTypes.DEFAULT_TYPE):
    statuses = await sweeper.run_once()
    await update.message.reply_text(f"Swept {len(statuses)} due reminder(s).")


# --- Background jobs ---

async def refresh_curve():
    curve = load_curve(settings.curve_path)
    if not await service.set_curve(curve):
        # the level moves with time even when the curve does not
        await service.refresh()


def report_permission_denied():
    logger.warning("Telegram chat unreachable; notifications have been switched off. Send /notify on to retry.")


async def on_startup(app: Application):
    notifier.bot = app.bot
    scheduler.start()
    await service.start(load_curve(settings.curve_path))
    scheduler.add_job(refresh_curve, "interval", minutes=settings.refresh_interval_minutes, id="curve_refresh")
    logger.info("Bot started.")


# --- Main Application Setup ---

def build_application(config=None):
    global settings, store, notifier, service, sweeper
    settings = config or Settings.from_env()
    logging.getLogger().setLevel(settings.log_level)
    store = ReminderStore.from_url(settings.db_url)
    chat_id = settings.notify_chat_id or store.get_preference(PREF_CHAT_ID)
    notifier = TelegramNotifier(None, chat_id)
    foreground = ForegroundScheduler(
        scheduler, store, notifier,
        tz=settings.timezone,
        refire_cooldown_ms=settings.refire_cooldown_ms,
    )
    service = ReminderService(
        store, foreground,
        tz=settings.timezone,
        lookahead_ms=settings.lookahead_ms,
        default_notify_before_minutes=settings.default_notify_before_minutes,
    )
    service.on_permission_denied = report_permission_denied
    sweeper = BackgroundSweeper(store, notifier, settings.lookahead_ms, settings.timezone)

    application = Application.builder().token(settings.telegram_bot_token).post_init(on_startup).build()
    application.add_handler(CommandHandler("start", start))
    application.add_handler(CommandHandler("help", help_command))
    application.add_handler(CommandHandler("weekly", weekly))
    application.add_handler(CommandHandler("threshold", threshold))
    application.add_handler(CommandHandler("rules", list_rules))
    application.add_handler(CommandHandler("delete", delete_rule))
    application.add_handler(CommandHandler("notify", notify))
    application.add_handler(CommandHandler("lead", lead))
    application.add_handler(CommandHandler("pending", pending))
    application.add_handler(CommandHandler("sweep", sweep_now))
    return application


def main():
    application = build_application()
    try:
        application.run_polling(allowed_updates=Update.ALL_TYPES)
    except KeyboardInterrupt:
        logger.info("Bot stopped by user.")
    except Exception as e:
        logger.error(f"Bot crashed: {e}")
        raise
    finally:
        if scheduler.running:
            scheduler.shutdown(wait=False)


if __name__ == "__main__":
    main()
