from types import SimpleNamespace

import pytest

from bot import describe_rules, parse_threshold_args, parse_weekdays
from models import NotifyMode
from reminders import InvalidRuleError


def test_parse_weekdays():
    assert parse_weekdays("1,3,5") == ["1", "3", "5"]
    assert parse_weekdays("Mon, thursday,sun,") == ["1", "4", "0"]
    assert parse_weekdays("9") == ["9"]


def test_parse_threshold_args():
    assert parse_threshold_args(["50"]) == ("50", NotifyMode.AT_CROSS, None)
    assert parse_threshold_args(["50", "below", "Low", "E2"]) == ("50", NotifyMode.IMMEDIATE_IF_BELOW, "Low E2")
    assert parse_threshold_args(["50", "Trough"]) == ("50", NotifyMode.AT_CROSS, "Trough")
    with pytest.raises(InvalidRuleError):
        parse_threshold_args([])


def test_describe_rules():
    recurrences = [SimpleNamespace(id="r1", weekdays=[1, 4], time_of_day="08:00", label=None)]
    thresholds = [SimpleNamespace(id="t1", threshold=55.0, notify_mode="immediate_if_below", label="Low")]
    assert describe_rules(recurrences, thresholds) == [
        "- [r1] Scheduled dose: Mon,Thu at 08:00",
        "- [t1] Low: below 55 pg/mL, immediately when below",
    ]
