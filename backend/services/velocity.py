"""Rolling two week velocity."""

import logging
from typing import Optional

from services.issue_fields import filter_work_items, get_issue_size
from services.timeseries import TWO_WEEKS, iter_samples, to_epoch_ms
from services.workflow import get_completion_events, get_status_changes_by_issue

logger = logging.getLogger(__name__)


def get_signed_transitions(issues: list, completion_statuses: list,
                           field_map: Optional[dict] = None) -> list:
    """Completions (+size) and regressions (-size), oldest first.

    Returns a list of (timestamp, delta) tuples.
    """
    status_change_map = get_status_changes_by_issue(issues)
    transitions = []
    for event in get_completion_events(status_change_map, completion_statuses):
        size = get_issue_size(event["issue"], field_map)
        if event["transitionType"] == "regression":
            # If it's a regression then we subtract it from the velocity
            size = -size
        transitions.append((event["timestamp"], size))
    return transitions


def calculate_velocity_series(issues: list, completion_statuses: list, window: dict,
                              project_key: Optional[str] = None,
                              field_map: Optional[dict] = None) -> list:
    """Velocity in points per 14 calendar days, sampled across the window.

    Each sample at instant t is the signed size of every transition in
    [t - 14 days, t]. Two pointers advance through the sorted transitions, so
    the whole series is a single pass.

    Args:
        issues: The issue corpus
        completion_statuses: Statuses that count as "done"
        window: Query window; samples run from window["from"] to min(to, now)
        project_key: Only count issues from this project if given
        field_map: Jira field ids (see services.issue_fields)

    Returns:
        [[velocity, epochMillis], ...]
    """
    work_items = filter_work_items(issues, project_key)
    transitions = get_signed_transitions(work_items, completion_statuses, field_map)

    velocities = []
    running_total = 0
    head = 0  # first transition not yet added
    tail = 0  # first transition still inside the lookback
    for sample_time in iter_samples(window):
        while head < len(transitions) and transitions[head][0] <= sample_time:
            running_total += transitions[head][1]
            head += 1

        cutoff = sample_time - TWO_WEEKS
        while tail < head and transitions[tail][0] < cutoff:
            running_total -= transitions[tail][1]
            tail += 1

        velocities.append([running_total, to_epoch_ms(sample_time)])

    return velocities
