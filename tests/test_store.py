from models import ReminderRecord, make_scheduled_record, make_threshold_record


def record(id, due_at, **kw):
    return ReminderRecord(id=id, due_at=due_at, title=kw.get("title"), source_kind="threshold",
                          meta=kw.get("meta"))


def test_put_is_an_upsert(store):
    store.put(record("a", 10, title="first"))
    store.put(record("a", 10, title="first"))
    store.put(record("a", 20, title="second"))
    (only,) = store.list_all()
    assert only.due_at == 20
    assert only.title == "second"


def test_query_due_by_is_ordered_and_inclusive(store):
    for id, due in [("c", 30), ("a", 10), ("b", 20), ("d", 40)]:
        store.put(record(id, due))
    assert [r.id for r in store.query_due_by(30)] == ["a", "b", "c"]
    assert store.query_due_by(5) == []


def test_delete(store):
    store.put(record("a", 10))
    assert store.delete("a") is True
    assert store.delete("a") is False
    assert store.list_all() == []


def test_records_for_rule_filters_on_meta(store):
    store.put(make_scheduled_record("r1", 1, "08:00", None, 100))
    store.put(make_scheduled_record("r1", 3, "08:00", None, 200))
    store.put(make_scheduled_record("r2", 1, "08:00", None, 150))
    store.put(make_threshold_record("t1", 50.0, None, 120))
    assert [r.id for r in store.records_for_rule("r1")] == ["r1-1-100", "r1-3-200"]
    assert [r.id for r in store.records_for_rule("t1")] == ["t1-cross-120"]
    assert store.delete_for_rule("r1") == 2
    assert sorted(r.id for r in store.list_all()) == ["r2-1-150", "t1-cross-120"]
    assert store.delete_for_rule("nope") == 0


def test_rule_lookups_can_be_scoped_to_one_kind(store):
    store.put(make_scheduled_record("x1", 1, "08:00", None, 100))
    store.put(make_threshold_record("x1", 50.0, None, 120))
    assert [r.id for r in store.records_for_rule("x1", "threshold")] == ["x1-cross-120"]
    assert store.delete_for_rule("x1", "scheduled") == 1
    assert [r.id for r in store.list_all()] == ["x1-cross-120"]


def test_consume_replaces_with_successor(store):
    first = make_scheduled_record("r1", 1, "08:00", None, 100)
    store.put(first)
    successor = make_scheduled_record("r1", 1, "08:00", None, 200)
    assert store.consume(first, successor) is True
    assert [r.id for r in store.list_all()] == ["r1-1-200"]


def test_consume_of_missing_record_changes_nothing(store):
    gone = make_scheduled_record("r1", 1, "08:00", None, 100)
    successor = make_scheduled_record("r1", 1, "08:00", None, 200)
    assert store.consume(gone, successor) is False
    assert store.list_all() == []


def test_preferences(store):
    assert store.get_preference("notifications_enabled", False) is False
    store.set_preference("notifications_enabled", True)
    store.set_preference("notify_before_minutes", 15)
    assert store.get_preference("notifications_enabled") is True
    assert store.get_preference("notify_before_minutes") == 15


def test_consumed_crossings_are_ledgered(store):
    crossing = make_threshold_record("t1", 50.0, None, 120)
    store.put(crossing)
    assert store.consume(crossing) is True
    assert [c.id for c in store.consumed_crossings("t1")] == ["t1-cross-120"]
    assert store.mark_consumed(crossing) is False

    unqueued = make_threshold_record("t1", 50.0, None, 300)
    assert store.mark_consumed(unqueued) is True
    assert [c.due_at for c in store.consumed_crossings("t1")] == [120, 300]
    assert store.forget_consumed("t1") == 2
    assert store.consumed_crossings("t1") == []


def test_scheduled_records_are_not_ledgered(store):
    occurrence = make_scheduled_record("r1", 1, "08:00", None, 100)
    store.put(occurrence)
    store.consume(occurrence)
    assert store.consumed_crossings("r1") == []
