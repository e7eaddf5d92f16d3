# models.py
from enum import Enum

from sqlalchemy import Column, String, BigInteger, Float, DateTime, JSON
from sqlalchemy.sql import func

from database import Base
from dispatcher import scheduled_payload, threshold_payload
from recurrence import scheduled_record_id


class SourceKind(str, Enum):
    SCHEDULED = "scheduled"
    THRESHOLD = "threshold"


class NotifyMode(str, Enum):
    AT_CROSS = "at_cross"
    IMMEDIATE_IF_BELOW = "immediate_if_below"


class ReminderRecord(Base):
    """One unit of durable notification work, consumed exactly once."""
    __tablename__ = "reminder_records"
    id = Column(String, primary_key=True)          # "{recurrence_id}-{weekday}-{due_at}"
    due_at = Column(BigInteger, nullable=False, index=True)   # epoch ms
    title = Column(String)
    body = Column(String)
    source_kind = Column(String)         # "scheduled" / "threshold"
    meta = Column(JSON)

    @property
    def rule_id(self):
        meta = self.meta or {}
        return meta.get("recurrence_id") or meta.get("threshold_id")

    def __repr__(self):
        return f"<ReminderRecord(id={self.id!r}, due_at={self.due_at})>"


class Recurrence(Base):
    __tablename__ = "recurrences"
    id = Column(String, primary_key=True)
    weekdays = Column(JSON, nullable=False)        # [0..6], 0 = Sunday
    time_of_day = Column(String, nullable=False)   # "HH:MM"
    label = Column(String)
    created_at = Column(DateTime, server_default=func.now())


class ThresholdRule(Base):
    __tablename__ = "threshold_rules"
    id = Column(String, primary_key=True)
    threshold = Column(Float, nullable=False)
    notify_mode = Column(String, nullable=False, default=NotifyMode.AT_CROSS.value)
    label = Column(String)
    created_at = Column(DateTime, server_default=func.now())


class ConsumedCrossing(Base):
    """Threshold crossings already handed to delivery by either context."""
    __tablename__ = "consumed_crossings"
    id = Column(String, primary_key=True)          # record id of the crossing
    rule_id = Column(String, nullable=False, index=True)
    due_at = Column(BigInteger, nullable=False)


class Preference(Base):
    __tablename__ = "preferences"
    key = Column(String, primary_key=True)   # notifications_enabled, notify_before_minutes, chat_id
    value = Column(JSON)


def make_scheduled_record(recurrence_id, weekday, time_of_day, label, due_at):
    title, body = scheduled_payload(label, time_of_day)
    return ReminderRecord(
        id=scheduled_record_id(recurrence_id, weekday, due_at),
        due_at=due_at,
        title=title,
        body=body,
        source_kind=SourceKind.SCHEDULED.value,
        meta={"recurrence_id": recurrence_id, "weekday": weekday, "time_of_day": time_of_day},
    )


def make_threshold_record(threshold_id, threshold, label, due_at, kind="cross"):
    # kind: "cross" for a predicted crossing, "now" when already below
    title, body = threshold_payload(label, threshold)
    return ReminderRecord(
        id=f"{threshold_id}-{kind}-{due_at}",
        due_at=due_at,
        title=title,
        body=body,
        source_kind=SourceKind.THRESHOLD.value,
        meta={"threshold_id": threshold_id, "threshold_value": threshold},
    )
