"""Rolling two week average cycle time per point."""

import logging
from collections import Counter
from datetime import datetime
from typing import Optional

from services.issue_fields import filter_work_items, get_created, get_issue_size
from services.timeseries import TWO_WEEKS, iter_samples, to_epoch_ms
from services.workflow import get_completion_events, get_status_changes_by_issue

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


def calculate_cycle_time(status_changes: list, created: Optional[datetime],
                         from_statuses: list, to_statuses: list,
                         to_datetime: datetime) -> Optional[float]:
    """Cycle time in days for one issue.

    Measured from the first transition out of the from statuses to the last
    transition into the to statuses at or before to_datetime. Issues created
    further down the value stream (never seen leaving a from status) are
    measured from creation.

    Args:
        status_changes: Datetime ascending list of status changes
        created: Issue creation time
        from_statuses: Statuses before work starts
        to_statuses: Statuses that count as complete
        to_datetime: Later status changes are in the future and disregarded

    Returns:
        Days as a float, or None if no start time can be determined.
    """
    from_set = set(from_statuses)
    to_set = set(to_statuses)

    start = None
    for change in status_changes:
        if change["fromStatus"] in from_set and change["toStatus"] not in from_set:
            start = change["timestamp"]
            break
    if start is None:
        start = created
    if start is None and status_changes:
        start = status_changes[0]["timestamp"]
    if start is None:
        return None

    end = None
    for change in reversed(status_changes):
        if change["timestamp"] > to_datetime:
            continue
        if change["toStatus"] in to_set and change["fromStatus"] not in to_set:
            end = change["timestamp"]
            break
    if end is None:
        # Only completed issues should get here, but don't crash if one doesn't
        end = to_datetime

    return (end - start).total_seconds() / SECONDS_PER_DAY


def calculate_average_cycle_time_per_point(status_change_map: dict, from_statuses: list,
                                           to_statuses: list, to_datetime: datetime,
                                           field_map: Optional[dict] = None) -> float:
    """Average of cycle time / size across the given (completed) issues.

    Zero point issues are left out of the average. If nothing is left, the
    average is NaN rather than 0: nothing moved, so there is no cycle time.
    """
    total_per_point = 0.0
    counted = 0

    for entry in status_change_map.values():
        issue = entry["issue"]
        size = get_issue_size(issue, field_map)
        # Ignore "0" point stories in cycle time calculations
        if size == 0:
            continue

        cycle_time = calculate_cycle_time(
            entry["statusChanges"], get_created(issue), from_statuses, to_statuses, to_datetime
        )
        if cycle_time is None:
            logger.warning(f"Could not determine cycle time start for {issue.get('key')}")
            continue

        total_per_point += cycle_time / size
        counted += 1

    if counted == 0:
        return float("nan")
    return total_per_point / counted


def calculate_cycle_time_series(issues: list, from_statuses: list, to_statuses: list,
                                window: dict, project_key: Optional[str] = None,
                                field_map: Optional[dict] = None) -> list:
    """Average cycle time per point of issues completed in the two weeks before each sample.

    Returns:
        [[daysPerPoint, epochMillis], ...]; NaN where no sized issue completed.
    """
    work_items = filter_work_items(issues, project_key)
    status_change_map = get_status_changes_by_issue(work_items)
    completions = get_completion_events(status_change_map, to_statuses, completion_only=True)

    output = []
    in_window = Counter()
    head = 0
    tail = 0
    for sample_time in iter_samples(window):
        while head < len(completions) and completions[head]["timestamp"] <= sample_time:
            in_window[str(completions[head]["issue"].get("id"))] += 1
            head += 1

        cutoff = sample_time - TWO_WEEKS
        while tail < head and completions[tail]["timestamp"] < cutoff:
            issue_id = str(completions[tail]["issue"].get("id"))
            in_window[issue_id] -= 1
            if in_window[issue_id] <= 0:
                del in_window[issue_id]
            tail += 1

        recent = {issue_id: status_change_map[issue_id] for issue_id in in_window}
        average = calculate_average_cycle_time_per_point(
            recent, from_statuses, to_statuses, sample_time, field_map
        )
        output.append([average, to_epoch_ms(sample_time)])

    return output
