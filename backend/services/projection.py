"""Burnup projection from velocity bounds."""

import logging
from datetime import datetime
from typing import Optional

from services.timeseries import (
    FORTNIGHT_MS, filter_from_window, highest_value, is_missing, to_epoch_ms
)

logger = logging.getLogger(__name__)

VELOCITY_SOURCES = ("Explicit", "Limits")
DEFAULT_VELOCITY_SOURCE = "Limits"


def get_explicit_velocity_bounds(target_data: dict) -> dict:
    """Velocity bounds supplied on the dashboard target, defaulting to 0.

    Raises:
        ValueError: if vBounds isn't an object
    """
    v_bounds = target_data.get("vBounds") or {}
    if not isinstance(v_bounds, dict):
        raise ValueError(f"vBounds must be an object with max, cur and min, got {v_bounds!r}")
    bounds = {}
    for bound in ("max", "cur", "min"):
        value = v_bounds.get(bound)
        try:
            bounds[bound] = float(value) if value is not None else 0.0
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-numeric velocity bound {bound}={value!r}")
            bounds[bound] = 0.0
    return bounds


def get_velocity_bounds_from_series(velocities: list, window: dict) -> dict:
    """Highest, latest and lowest velocity inside the displayed window.

    An empty series (nothing ever completed) gives NaN bounds, so the
    projections come out missing rather than flat.
    """
    in_window = filter_from_window(velocities, window)
    values = [point[0] for point in in_window if not is_missing(point[0])]
    if not values:
        nan = float("nan")
        return {"max": nan, "cur": nan, "min": nan}

    return {
        "max": max(values),
        "cur": values[-1],
        "min": min(values)
    }


def fortnights_between(start: datetime, end: datetime) -> float:
    return (to_epoch_ms(end) - to_epoch_ms(start)) / FORTNIGHT_MS


def project_done(done_now: float, fortnights: float, velocity: float) -> float:
    """Points done after the given number of fortnights at a constant velocity."""
    return done_now + fortnights * velocity


def vertical_line(moment: datetime, name: str, height: float) -> dict:
    position = to_epoch_ms(moment)
    return {
        "target": name,
        "datapoints": [[0, position], [height, position]]
    }


def build_projection(scope_data: list, burnup_data: list, v_bounds: dict, window: dict,
                     release_date: Optional[datetime] = None) -> list:
    """Scope, burnup and (if the window reaches into the future) their projections.

    Args:
        scope_data: Scope series, already restricted to the window
        burnup_data: Burnup series, already restricted to the window
        v_bounds: {"max", "cur", "min"} velocities in points per fortnight
        window: The query window
        release_date: Optional target release date, drawn as a vertical line

    Returns:
        List of {"target", "datapoints"} series.
    """
    result = [
        {"target": "Scope", "datapoints": scope_data},
        {"target": "Burnup", "datapoints": burnup_data},
    ]

    # Only add projections if we need to
    if window["to"] <= window["now"]:
        return result

    now_ms = to_epoch_ms(window["now"])
    to_ms = to_epoch_ms(window["to"])
    fortnights = fortnights_between(window["now"], window["to"])
    scope_now = scope_data[-1][0] if scope_data else 0
    done_now = burnup_data[-1][0] if burnup_data else 0

    projected = {}
    for bound, name in (("max", "Max V projection"), ("cur", "Cur V projection"),
                        ("min", "Min V projection")):
        projected[bound] = project_done(done_now, fortnights, v_bounds[bound])
        result.append({
            "target": name,
            "datapoints": [[done_now, now_ms], [projected[bound], to_ms]]
        })

    result.append({
        "target": "Scope projection",
        "datapoints": [[scope_now, now_ms], [scope_now, to_ms]]
    })

    highest_point = highest_value(
        *[point[0] for point in scope_data],
        *[point[0] for point in burnup_data],
        projected["max"]
    )

    # Add the time vertical interception lines, including "now"
    result.append(vertical_line(window["now"], "Now", highest_point))
    if release_date is not None:
        result.append(vertical_line(release_date, "Target", highest_point))

    return result
