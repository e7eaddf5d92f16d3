# scheduler.py
import datetime
import inspect
import logging

import pytz
from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.date import DateTrigger
from sqlalchemy.exc import SQLAlchemyError

from crossing import find_crossing, level_at
from dispatcher import DeliveryStatus, deliver
from models import NotifyMode, SourceKind, make_scheduled_record, make_threshold_record
from recurrence import DAY_MS, get_timezone, next_occurrence, now_ms
from sweeper import successor_of

logger = logging.getLogger(__name__)

HORIZON_MS = 7 * DAY_MS
REFIRE_COOLDOWN_MS = 6 * 3600 * 1000


class ForegroundScheduler:
    """In-memory timers mirroring every reminder derivable from the rules.

    Any change to the inputs (rules, curve, lead time, enablement) is handled
    by ``recompute()``, which drops every timer and arms them again from
    scratch. Timers are APScheduler date jobs on ``scheduler``.
    """

    def __init__(self, scheduler, store, notifier, tz=None,
                 refire_cooldown_ms=REFIRE_COOLDOWN_MS, clock=now_ms,
                 on_permission_denied=None):
        self.scheduler = scheduler
        self.store = store
        self.notifier = notifier
        self.tz = get_timezone(tz)
        self.refire_cooldown_ms = refire_cooldown_ms
        self.clock = clock
        self.on_permission_denied = on_permission_denied

        self.enabled = False
        self.notify_before_minutes = 0
        self.recurrences = []
        self.thresholds = []
        self.curve = []

        self._job_ids = []
        self._last_fired = {}
        self._denial_reported = False

    @property
    def timer_count(self):
        return len(self._job_ids)

    # --- Enablement ---

    async def enable(self):
        if not await self.notifier.check_permission():
            await self._permission_denied()
            return False
        self.enabled = True
        self._denial_reported = False
        await self.recompute()
        return True

    def disable(self):
        self.enabled = False
        self.clear()

    def clear(self):
        for job_id in self._job_ids:
            try:
                self.scheduler.remove_job(job_id)
            except JobLookupError:
                pass  # already fired
        self._job_ids = []

    # --- Derivation ---

    def derive(self, now):
        """(fire_at_ms, record) for every scheduled and at-cross reminder."""
        lead_ms = self.notify_before_minutes * 60000
        timers = []
        for rule in self.recurrences:
            for weekday in rule.weekdays:
                occurrence = next_occurrence(weekday, rule.time_of_day, now, self.tz)
                record = make_scheduled_record(rule.id, weekday, rule.time_of_day, rule.label, occurrence)
                timers.append((occurrence - lead_ms, record))
        for rule in self.thresholds:
            if rule.notify_mode != NotifyMode.AT_CROSS.value:
                continue
            crossing = find_crossing(self.curve, rule.threshold, now)
            if crossing is None:
                continue
            timers.append((crossing, make_threshold_record(rule.id, rule.threshold, rule.label, crossing)))
        timers.sort(key=lambda t: t[0])
        return timers

    async def recompute(self, now=None):
        now = self.clock() if now is None else now
        self.clear()
        if not self.enabled:
            return
        for fire_at, record in self.derive(now):
            delay = fire_at - now
            if delay > HORIZON_MS:
                continue
            if delay > 0:
                self._arm(fire_at, record)
                continue
            await self._fire(record, immediate=True)
            if not self.enabled:
                return
        level = level_at(self.curve, now)
        for rule in self.thresholds:
            if rule.notify_mode != NotifyMode.IMMEDIATE_IF_BELOW.value:
                continue
            if level is not None and level < rule.threshold:
                await self._fire_below(rule, now)
                if not self.enabled:
                    return
        logger.info(f"Armed {self.timer_count} reminder timer(s)")

    def _arm(self, fire_at, record):
        run_date = datetime.datetime.fromtimestamp(fire_at / 1000.0, pytz.utc)
        job = self.scheduler.add_job(
            self._fire,
            trigger=DateTrigger(run_date=run_date, timezone=pytz.utc),
            args=[record],
            id=f"reminder_{record.id}",
            replace_existing=True,
            misfire_grace_time=None,
        )
        self._job_ids.append(job.id)

    # --- Firing ---

    def _cooldown_key(self, record):
        if record.source_kind == SourceKind.THRESHOLD.value:
            return record.rule_id
        return record.id

    def _cooling_down(self, key, now):
        last = self._last_fired.get(key)
        return last is not None and now - last < self.refire_cooldown_ms

    def _claim(self, record, now):
        """Consume the matching store record so the sweeper won't repeat it.

        False only when the other context has visibly handled this occurrence
        already (its successor is in the store).
        """
        successor = successor_of(record, now, self.tz)
        try:
            if record.source_kind == SourceKind.THRESHOLD.value:
                return self._claim_crossing(record)
            if self.store.consume(record, successor):
                return True
            if successor is not None:
                pending = self.store.records_for_rule(record.rule_id, SourceKind.SCHEDULED.value)
                if any(r.id == successor.id for r in pending):
                    logger.info(f"Reminder {record.id} was already delivered in the background")
                    return False
        except SQLAlchemyError as e:
            logger.error(f"Could not consume reminder {record.id}: {e}")
        return True

    def _claim_crossing(self, record):
        """Claim a crossing through the store and its crossing ledger.

        A crossing the sweeper already consumed, or one that lies within the
        refire cooldown of a consumed crossing of the same rule, is skipped.
        A crossing that was never queued (inside the sweep slack, or already
        past when derived) is entered in the ledger and delivered once.
        """
        if self.store.consume(record):
            return True
        claimed = False
        # an earlier estimate of the same crossing may still be queued
        for pending in self.store.records_for_rule(record.rule_id, SourceKind.THRESHOLD.value):
            if pending.due_at <= record.due_at and self.store.consume(pending):
                claimed = True
        if claimed:
            self.store.mark_consumed(record)
            return True
        for done in self.store.consumed_crossings(record.rule_id):
            if done.id == record.id or abs(done.due_at - record.due_at) < self.refire_cooldown_ms:
                logger.info(f"Crossing {record.id} was already delivered as {done.id}")
                return False
        return self.store.mark_consumed(record)

    async def _fire(self, record, immediate=False):
        now = self.clock()
        key = self._cooldown_key(record)
        if immediate and self._cooling_down(key, now):
            logger.info(f"Suppressing repeat of {record.id} inside cooldown")
            return None
        if not self._claim(record, now):
            return None
        return await self._deliver(record, key, now)

    async def _fire_below(self, rule, now):
        if self._cooling_down(rule.id, now):
            return None
        record = None
        try:
            # a "now" record left by rule creation is delivered here instead
            for pending in self.store.records_for_rule(rule.id, SourceKind.THRESHOLD.value):
                if pending.due_at <= now and self.store.consume(pending):
                    record = pending
        except SQLAlchemyError as e:
            logger.error(f"Could not consume pending records of {rule.id}: {e}")
        if record is None:
            record = make_threshold_record(rule.id, rule.threshold, rule.label, now, kind="now")
        return await self._deliver(record, rule.id, now)

    async def _deliver(self, record, key, now):
        status = await deliver(self.notifier, record)
        self._last_fired[key] = now
        if status == DeliveryStatus.DENIED:
            await self._permission_denied()
        return status

    async def _permission_denied(self):
        self.disable()
        if self._denial_reported:
            return
        self._denial_reported = True
        logger.warning("Notification permission denied; reminders disabled")
        if self.on_permission_denied is not None:
            result = self.on_permission_denied()
            if inspect.isawaitable(result):
                await result
