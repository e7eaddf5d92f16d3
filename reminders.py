# reminders.py
# Rule CRUD surface used by the UI layer. Creating a rule populates the store
# right away; deleting one purges its records; both re-derive the foreground
# timers.
import logging
import inspect
import math
import uuid

from crossing import find_crossing, level_at
from models import (
    NotifyMode, Recurrence, SourceKind, ThresholdRule,
    make_scheduled_record, make_threshold_record,
)
from recurrence import get_timezone, next_occurrence, now_ms, validate_time_of_day
from sweeper import LOOKAHEAD_SLACK_MS

logger = logging.getLogger(__name__)

PREF_ENABLED = "notifications_enabled"
PREF_NOTIFY_BEFORE = "notify_before_minutes"
PREF_CHAT_ID = "chat_id"


class InvalidRuleError(ValueError):
    pass


def _new_id():
    return uuid.uuid4().hex[:12]


def validate_weekdays(weekdays):
    days = set()
    for d in weekdays or []:
        try:
            day = int(d)
        except (TypeError, ValueError):
            raise InvalidRuleError(f"weekday must be a number 0-6, got {d!r}")
        if not 0 <= day <= 6 or str(d).strip() != str(day):
            raise InvalidRuleError(f"weekday must be 0 (Sun) to 6 (Sat), got {d!r}")
        days.add(day)
    if not days:
        raise InvalidRuleError("at least one weekday is required")
    return sorted(days)


def validate_threshold(value):
    try:
        threshold = float(value)
    except (TypeError, ValueError):
        raise InvalidRuleError(f"threshold must be a number, got {value!r}")
    if not math.isfinite(threshold):
        raise InvalidRuleError("threshold must be finite")
    return threshold


class ReminderService:
    def __init__(self, store, foreground=None, tz=None, clock=now_ms,
                 lookahead_ms=LOOKAHEAD_SLACK_MS, default_notify_before_minutes=0):
        self.store = store
        self.foreground = foreground
        self.tz = get_timezone(tz)
        self.clock = clock
        self.lookahead_ms = lookahead_ms
        self.default_notify_before_minutes = default_notify_before_minutes
        self.curve = []
        self.on_permission_denied = None
        if foreground is not None:
            foreground.on_permission_denied = self._permission_denied

    # --- Startup ---

    async def start(self, curve=None):
        """Restore preferences, heal missing occurrences and arm timers."""
        self.curve = list(curve or [])
        self.heal_scheduled()
        if self.foreground is None:
            return
        self.foreground.curve = self.curve
        self.foreground.notify_before_minutes = self.notify_before_minutes
        self._load_rules()
        if self.notifications_enabled:
            if not await self.foreground.enable():
                self.store.set_preference(PREF_ENABLED, False)
        else:
            self.foreground.disable()

    def heal_scheduled(self):
        """Put back the next occurrence of any (recurrence, weekday) pair that
        has no pending record, e.g. after a crash between delete and insert."""
        now = self.clock()
        healed = 0
        for rule in self.list_recurrences():
            pending = {
                (r.meta or {}).get("weekday")
                for r in self.store.records_for_rule(rule.id, SourceKind.SCHEDULED.value)
            }
            for weekday in rule.weekdays:
                if weekday in pending:
                    continue
                occurrence = next_occurrence(weekday, rule.time_of_day, now, self.tz)
                self.store.put(make_scheduled_record(rule.id, weekday, rule.time_of_day, rule.label, occurrence))
                healed += 1
        if healed:
            logger.info(f"Restored {healed} missing scheduled occurrence(s)")
        return healed

    # --- Recurrences ---

    async def create_recurrence(self, weekdays, time_of_day, label=None):
        days = validate_weekdays(weekdays)
        try:
            time_of_day = validate_time_of_day(time_of_day)
        except ValueError as e:
            raise InvalidRuleError(str(e)) from e
        rule = Recurrence(id=_new_id(), weekdays=days, time_of_day=time_of_day, label=label or None)
        with self.store.transaction() as db:
            db.add(rule)
        now = self.clock()
        for weekday in days:
            occurrence = next_occurrence(weekday, time_of_day, now, self.tz)
            self.store.put(make_scheduled_record(rule.id, weekday, time_of_day, rule.label, occurrence))
        logger.info(f"Created recurrence {rule.id} on {days} at {time_of_day}")
        await self.refresh()
        return rule

    async def delete_recurrence(self, rule_id):
        with self.store.transaction() as db:
            found = db.query(Recurrence).filter(Recurrence.id == rule_id).delete(synchronize_session=False)
        removed = self.store.delete_for_rule(rule_id, SourceKind.SCHEDULED.value)
        logger.info(f"Deleted recurrence {rule_id} and {removed} pending record(s)")
        await self.refresh()
        return bool(found)

    def list_recurrences(self):
        with self.store.transaction() as db:
            return db.query(Recurrence).order_by(Recurrence.created_at, Recurrence.id).all()

    # --- Threshold rules ---

    async def create_threshold(self, threshold, notify_mode=NotifyMode.AT_CROSS, label=None):
        threshold = validate_threshold(threshold)
        try:
            mode = NotifyMode(notify_mode)
        except ValueError:
            raise InvalidRuleError(f"unknown notify mode {notify_mode!r}")
        rule = ThresholdRule(id=_new_id(), threshold=threshold, notify_mode=mode.value, label=label or None)
        with self.store.transaction() as db:
            db.add(rule)
        now = self.clock()
        if mode == NotifyMode.AT_CROSS:
            crossing = find_crossing(self.curve, threshold, now)
            if crossing is not None and crossing >= now:
                self.store.put(make_threshold_record(rule.id, threshold, rule.label, crossing))
        else:
            level = level_at(self.curve, now)
            if level is not None and level < threshold:
                self.store.put(make_threshold_record(rule.id, threshold, rule.label, now, kind="now"))
        logger.info(f"Created threshold rule {rule.id} at {threshold:g} ({mode.value})")
        await self.refresh()
        return rule

    async def delete_threshold(self, rule_id):
        with self.store.transaction() as db:
            found = db.query(ThresholdRule).filter(ThresholdRule.id == rule_id).delete(synchronize_session=False)
        removed = self.store.delete_for_rule(rule_id, SourceKind.THRESHOLD.value)
        self.store.forget_consumed(rule_id)
        logger.info(f"Deleted threshold rule {rule_id} and {removed} pending record(s)")
        await self.refresh()
        return bool(found)

    def list_thresholds(self):
        with self.store.transaction() as db:
            return db.query(ThresholdRule).order_by(ThresholdRule.created_at, ThresholdRule.id).all()

    async def delete_rule(self, rule_id):
        with self.store.transaction() as db:
            is_recurrence = db.get(Recurrence, rule_id) is not None
        if is_recurrence:
            return await self.delete_recurrence(rule_id)
        return await self.delete_threshold(rule_id)

    def refresh_threshold_records(self, now=None):
        """Move stored crossing records to the crossings of the current curve.

        Only crossings beyond the sweep slack are stored; nearer ones belong
        to the foreground, which keeps consumed crossings from coming back.
        """
        now = self.clock() if now is None else now
        for rule in self.list_thresholds():
            if rule.notify_mode != NotifyMode.AT_CROSS.value:
                continue
            crossing = find_crossing(self.curve, rule.threshold, now)
            wanted = None
            if crossing is not None and crossing > now + self.lookahead_ms:
                wanted = make_threshold_record(rule.id, rule.threshold, rule.label, crossing)
            for record in self.store.records_for_rule(rule.id, SourceKind.THRESHOLD.value):
                if record.due_at > now + self.lookahead_ms and (wanted is None or record.id != wanted.id):
                    self.store.delete(record.id)
            if wanted is not None:
                self.store.put(wanted)

    # --- Preferences ---

    @property
    def notifications_enabled(self):
        return bool(self.store.get_preference(PREF_ENABLED, False))

    @property
    def notify_before_minutes(self):
        return int(self.store.get_preference(PREF_NOTIFY_BEFORE, self.default_notify_before_minutes))

    async def set_enabled(self, enabled):
        if not enabled:
            self.store.set_preference(PREF_ENABLED, False)
            if self.foreground is not None:
                self.foreground.disable()
            return False
        ok = True
        if self.foreground is not None:
            self._load_rules()
            ok = await self.foreground.enable()
        self.store.set_preference(PREF_ENABLED, ok)
        return ok

    async def set_notify_before(self, minutes):
        try:
            minutes = int(minutes)
        except (TypeError, ValueError):
            raise InvalidRuleError(f"lead time must be whole minutes, got {minutes!r}")
        if minutes < 0:
            raise InvalidRuleError("lead time cannot be negative")
        self.store.set_preference(PREF_NOTIFY_BEFORE, minutes)
        if self.foreground is not None:
            self.foreground.notify_before_minutes = minutes
        await self.refresh()

    async def set_curve(self, curve):
        curve = list(curve or [])
        if curve == self.curve:
            return False
        self.curve = curve
        self.refresh_threshold_records()
        if self.foreground is not None:
            self.foreground.curve = curve
        await self.refresh()
        return True

    # --- Foreground ---

    def _load_rules(self):
        self.foreground.recurrences = self.list_recurrences()
        self.foreground.thresholds = self.list_thresholds()

    async def refresh(self):
        if self.foreground is None:
            return
        self._load_rules()
        await self.foreground.recompute()

    async def _permission_denied(self):
        self.store.set_preference(PREF_ENABLED, False)
        if self.on_permission_denied is not None:
            result = self.on_permission_denied()
            if inspect.isawaitable(result):
                await result
