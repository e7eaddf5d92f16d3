# sweeper.py
# One background pass: claim every record due by now + slack, regenerate
# weekly successors, then deliver what was claimed.
import logging

from sqlalchemy.exc import SQLAlchemyError

from dispatcher import deliver
from models import ReminderRecord, SourceKind
from recurrence import next_occurrence, now_ms, scheduled_record_id

logger = logging.getLogger(__name__)

LOOKAHEAD_SLACK_MS = 60 * 1000


def successor_of(record, now, tz=None):
    """Next-week record for a consumed scheduled record, or None."""
    if record.source_kind != SourceKind.SCHEDULED.value:
        return None
    meta = record.meta or {}
    if meta.get("recurrence_id") is None or meta.get("weekday") is None:
        logger.warning(f"Scheduled record {record.id} has no recurrence meta; not regenerating")
        return None
    weekday = int(meta["weekday"])
    time_of_day = meta.get("time_of_day")
    due_at = next_occurrence(weekday, time_of_day, record.due_at, tz)
    if due_at <= now:
        # the sweeper slept through more than a week
        due_at = next_occurrence(weekday, time_of_day, now, tz)
    return ReminderRecord(
        id=scheduled_record_id(meta["recurrence_id"], weekday, due_at),
        due_at=due_at,
        title=record.title,
        body=record.body,
        source_kind=record.source_kind,
        meta=dict(meta),
    )


def sweep(store, now, lookahead_ms=LOOKAHEAD_SLACK_MS, tz=None):
    """Claim due records. Returns the records this call consumed, in due order.

    Each record is consumed in its own transaction so a storage failure on one
    leaves it in place for the next sweep without blocking its siblings.
    """
    try:
        due = store.query_due_by(now + lookahead_ms)
    except SQLAlchemyError as e:
        logger.error(f"Could not query due reminders: {e}")
        return []
    claimed = []
    for record in due:
        try:
            successor = successor_of(record, now, tz)
            if not store.consume(record, successor):
                logger.info(f"Reminder {record.id} already consumed elsewhere")
                continue
        except SQLAlchemyError as e:
            logger.error(f"Could not consume reminder {record.id}: {e}")
            continue
        if successor is not None:
            logger.info(f"Regenerated {record.id} as {successor.id}")
        claimed.append(record)
    return claimed


class BackgroundSweeper:
    """Entry point for the background wake mechanism. Never raises."""

    def __init__(self, store, notifier, lookahead_ms=LOOKAHEAD_SLACK_MS, tz=None, clock=now_ms):
        self.store = store
        self.notifier = notifier
        self.lookahead_ms = lookahead_ms
        self.tz = tz
        self.clock = clock

    async def run_once(self):
        now = self.clock()
        claimed = sweep(self.store, now, self.lookahead_ms, self.tz)
        statuses = []
        for record in claimed:
            try:
                statuses.append(await deliver(self.notifier, record))
            except Exception as e:
                logger.error(f"Error delivering reminder {record.id}: {e}")
        if claimed:
            logger.info(f"Sweep delivered {len(claimed)} reminder(s)")
        return statuses
