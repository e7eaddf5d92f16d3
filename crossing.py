# crossing.py
# Threshold crossings over a simulated concentration curve. Sample times are
# hours since the Unix epoch, strictly increasing.
import json
import logging
from collections import namedtuple

from recurrence import HOUR_MS

logger = logging.getLogger(__name__)

CurveSample = namedtuple("CurveSample", ["time_hours", "concentration"])


def find_crossing(curve, threshold, now_ms):
    """First instant (epoch ms) at which the curve drops below ``threshold``.

    Only descending crossings count. If there is none but the last sample is
    already below the threshold, ``now_ms`` is returned. An empty curve, or
    one that never goes below, gives None.
    """
    if not curve:
        return None
    for (t1, a), (t2, b) in zip(curve, curve[1:]):
        if a >= threshold and b < threshold:
            ratio = (a - threshold) / (a - b)
            t_cross = t1 + (t2 - t1) * ratio
            return int(round(t_cross * HOUR_MS))
    if curve[-1][1] < threshold:
        return now_ms
    return None


def level_at(curve, at_ms):
    """Linearly interpolated concentration at ``at_ms``.

    None before the first sample; the last value once past the end.
    """
    if not curve:
        return None
    h = at_ms / HOUR_MS
    if h < curve[0][0]:
        return None
    for (t1, a), (t2, b) in zip(curve, curve[1:]):
        if t1 <= h <= t2:
            if t2 == t1:
                return b
            return a + (b - a) * (h - t1) / (t2 - t1)
    return curve[-1][1]


def parse_curve(data):
    """Accepts a list of {"timeHours", "concentration"} objects or the
    columnar {"timeH": [...], "concPGmL": [...]} form."""
    if isinstance(data, dict):
        times = data.get("timeH") or []
        concs = data.get("concPGmL") or []
        pairs = zip(times, concs)
    else:
        pairs = ((p["timeHours"], p["concentration"]) for p in data)
    curve = [CurveSample(float(t), float(c)) for t, c in pairs]
    for prev, cur in zip(curve, curve[1:]):
        if cur.time_hours <= prev.time_hours:
            raise ValueError("curve sample times must be strictly increasing")
    return curve


def load_curve(path):
    """Read the simulator's curve file. A missing file means no dose history."""
    if not path:
        return []
    try:
        with open(path, "r", encoding="utf-8") as f:
            return parse_curve(json.load(f))
    except FileNotFoundError:
        logger.info(f"No curve file at {path}; threshold rules have nothing to evaluate")
        return []
