# database.py
import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

DB_URL = "sqlite:///reminders.db"

Base = declarative_base()

logger = logging.getLogger(__name__)


def make_engine(url=DB_URL):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


def init_db(engine):
    from models import ReminderRecord, Recurrence, ThresholdRule, ConsumedCrossing, Preference  # noqa
    Base.metadata.create_all(bind=engine)


class ReminderStore:
    """Durable queue of reminder records, ordered by due time.

    Every public method runs in its own transaction. Errors roll back and
    propagate as ``SQLAlchemyError``; callers decide whether a failure is
    fatal for them.
    """

    def __init__(self, engine):
        self.engine = engine
        self.SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url=DB_URL):
        engine = make_engine(url)
        init_db(engine)
        return cls(engine)

    def transaction(self):
        return self.SessionLocal.begin()

    # --- Reminder records ---

    def put(self, record):
        with self.transaction() as db:
            db.merge(record)
        logger.debug(f"Stored reminder record {record.id} due at {record.due_at}")

    def query_due_by(self, before_ms):
        from models import ReminderRecord
        with self.transaction() as db:
            return db.query(ReminderRecord).filter(
                ReminderRecord.due_at <= before_ms
            ).order_by(ReminderRecord.due_at, ReminderRecord.id).all()

    def delete(self, record_id):
        from models import ReminderRecord
        with self.transaction() as db:
            removed = db.query(ReminderRecord).filter(
                ReminderRecord.id == record_id
            ).delete(synchronize_session=False)
        return removed > 0

    def list_all(self):
        from models import ReminderRecord
        with self.transaction() as db:
            return db.query(ReminderRecord).order_by(
                ReminderRecord.due_at, ReminderRecord.id
            ).all()

    def records_for_rule(self, rule_id, source_kind=None):
        # no index on meta, so this is a full scan
        return [
            r for r in self.list_all()
            if r.rule_id == rule_id and (source_kind is None or r.source_kind == source_kind)
        ]

    def delete_for_rule(self, rule_id, source_kind=None):
        from models import ReminderRecord
        ids = [r.id for r in self.records_for_rule(rule_id, source_kind)]
        if not ids:
            return 0
        with self.transaction() as db:
            return db.query(ReminderRecord).filter(
                ReminderRecord.id.in_(ids)
            ).delete(synchronize_session=False)

    def consume(self, record, successor=None):
        """Delete ``record`` and insert its successor in one transaction.

        The delete is issued first. Returns False, touching nothing, when the
        record is already gone because another actor consumed it. Consumed
        threshold records are also entered in the crossing ledger.
        """
        from models import ConsumedCrossing, ReminderRecord, SourceKind
        with self.transaction() as db:
            removed = db.query(ReminderRecord).filter(
                ReminderRecord.id == record.id
            ).delete(synchronize_session=False)
            if not removed:
                return False
            if successor is not None:
                db.merge(successor)
            if record.source_kind == SourceKind.THRESHOLD.value and record.rule_id is not None:
                db.merge(ConsumedCrossing(id=record.id, rule_id=record.rule_id, due_at=record.due_at))
        return True

    # --- Crossing ledger ---

    def mark_consumed(self, record):
        """Enter a crossing that was never queued. False if already there."""
        from models import ConsumedCrossing
        with self.transaction() as db:
            if db.get(ConsumedCrossing, record.id) is not None:
                return False
            db.add(ConsumedCrossing(id=record.id, rule_id=record.rule_id, due_at=record.due_at))
        return True

    def consumed_crossings(self, rule_id):
        from models import ConsumedCrossing
        with self.transaction() as db:
            return db.query(ConsumedCrossing).filter(
                ConsumedCrossing.rule_id == rule_id
            ).order_by(ConsumedCrossing.due_at).all()

    def forget_consumed(self, rule_id):
        from models import ConsumedCrossing
        with self.transaction() as db:
            return db.query(ConsumedCrossing).filter(
                ConsumedCrossing.rule_id == rule_id
            ).delete(synchronize_session=False)

    # --- Preferences ---

    def get_preference(self, key, default=None):
        from models import Preference
        with self.transaction() as db:
            pref = db.get(Preference, key)
            return default if pref is None else pref.value

    def set_preference(self, key, value):
        from models import Preference
        with self.transaction() as db:
            db.merge(Preference(key=key, value=value))
