"""Query windows and Grafana time series helpers.

A window is the dict built from a Grafana query body:
    {"now": datetime, "from": datetime, "to": datetime,
     "intervalMs": int, "maxDataPoints": int}

Series are lists of [value, epochMillis] pairs.
"""

import math
from datetime import datetime, timedelta, timezone

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
TWO_WEEKS = timedelta(days=14)
FORTNIGHT_MS = 14 * 24 * 60 * 60 * 1000


def to_epoch_ms(value: datetime) -> int:
    """Floor a datetime to integer epoch milliseconds."""
    return (value - EPOCH) // timedelta(milliseconds=1)


def from_epoch_ms(value: int) -> datetime:
    return EPOCH + timedelta(milliseconds=value)


def window_end(window: dict) -> datetime:
    """The effective upper bound of a window: min(to, now)."""
    return window["now"] if window["to"] > window["now"] else window["to"]


def iter_samples(window: dict):
    """Yield sample instants from window.from to window_end inclusive."""
    interval_ms = window.get("intervalMs") or 0
    if interval_ms <= 0:
        raise ValueError(f"intervalMs must be positive, got {interval_ms}")

    step = timedelta(milliseconds=interval_ms)
    current = window["from"]
    end = window_end(window)
    while current <= end:
        yield current
        current += step


def filter_from_window(data_points: list, window: dict) -> list:
    """Points at or after the start of the window (a new list)."""
    start = to_epoch_ms(window["from"])
    return [point for point in data_points if point[1] >= start]


def filter_to_window(data_points: list, window: dict) -> list:
    """Points inside [from, to] (a new list)."""
    start = to_epoch_ms(window["from"])
    end = to_epoch_ms(window["to"])
    return [point for point in data_points if start <= point[1] <= end]


def pad_start_to_window(data_points: list, window: dict):
    """Add a first point at the start of the window with the first value."""
    if not data_points:
        return
    start = to_epoch_ms(window["from"])
    if data_points[0][1] != start:
        data_points.insert(0, [data_points[0][0], start])


def clip_to_window_start(data_points: list, window: dict) -> list:
    """Points from the start of the window on, beginning with the value in effect then.

    Step series only record changes, so the value at window.from is the last
    point before it (or the first point after it if nothing came before).
    """
    start = to_epoch_ms(window["from"])
    earlier = [point for point in data_points if point[1] < start]
    clipped = filter_from_window(data_points, window)
    if earlier and (not clipped or clipped[0][1] != start):
        clipped.insert(0, [earlier[-1][0], start])
    else:
        pad_start_to_window(clipped, window)
    return clipped


def pad_end_to_window(data_points: list, window: dict):
    """Add a last point at the end of the window with the last value."""
    if not data_points:
        return
    end = to_epoch_ms(window["to"])
    if data_points[-1][1] != end:
        data_points.append([data_points[-1][0], end])


def is_missing(value) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


def highest_value(*values) -> float:
    """Largest value ignoring missing ones; 0 when nothing is left."""
    present = [v for v in values if not is_missing(v)]
    return max(present) if present else 0
