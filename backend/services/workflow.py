"""Value stream statuses and status transition extraction."""

import logging
from typing import Optional

from services.issue_fields import get_status_changes

logger = logging.getLogger(__name__)

# Statuses in value stream order
DEFAULT_STATUSES = [
    "Backlog",
    "Prioritised",
    "Test Analysis",
    "Design",
    "Dev",
    "In Review",
    "Dev Review",
    "Test Review",
    "Staging Review",
    "Business Acceptance",
    "Deploy Queue",
    "Deploy",
    "Deployed",
    "Done",
    "Not Doing",
]
DEFAULT_CANCELLED_STATUSES = ["Not Doing"]
DEFAULT_FROM_STATUS = "Backlog"
DEFAULT_TO_STATUS = "Deploy Queue"


class Workflow:
    """An ordered status list and the status sets derived from it."""

    def __init__(self, statuses: Optional[list] = None,
                 cancelled_statuses: Optional[list] = None,
                 default_from_status: Optional[str] = None,
                 default_to_status: Optional[str] = None):
        self.statuses = list(statuses or DEFAULT_STATUSES)
        self.cancelled_statuses = list(
            DEFAULT_CANCELLED_STATUSES if cancelled_statuses is None else cancelled_statuses
        )
        self.default_from_status = default_from_status or DEFAULT_FROM_STATUS
        self.default_to_status = default_to_status or DEFAULT_TO_STATUS

    @classmethod
    def from_config(cls, config: dict) -> "Workflow":
        return cls(
            statuses=config.get("statuses"),
            cancelled_statuses=config.get("cancelledStatuses"),
            default_from_status=config.get("defaultFromStatus"),
            default_to_status=config.get("defaultToStatus")
        )

    def future_statuses(self, to_status: str, completion_only: bool = False) -> list:
        """Every status from to_status onwards.

        Args:
            to_status: The first status considered "complete"
            completion_only: If True, cancelled statuses are removed
        """
        if to_status not in self.statuses:
            logger.warning(f"Status '{to_status}' is not part of the workflow")
            future = [to_status]
        else:
            future = self.statuses[self.statuses.index(to_status):]

        if completion_only:
            future = [s for s in future if s not in self.cancelled_statuses]
        return future

    def previous_statuses(self, from_status: str) -> list:
        """Every status up to and including from_status."""
        if from_status not in self.statuses:
            logger.warning(f"Status '{from_status}' is not part of the workflow")
            return [from_status]
        return self.statuses[:self.statuses.index(from_status) + 1]


def get_status_changes_by_issue(issues: list) -> dict:
    """Map issue id to {issue, statusChanges} with changes oldest first."""
    return {
        str(issue.get("id")): {"issue": issue, "statusChanges": get_status_changes(issue)}
        for issue in issues
    }


def get_completion_events(status_change_map: dict, to_statuses: list,
                          completion_only: bool = False) -> list:
    """Transitions into (completion) and out of (regression) the to_statuses.

    Returns a datetime ascending list of
    {"timestamp", "transitionType", "issue"} dicts.
    """
    to_set = set(to_statuses)
    completion_events = []

    for entry in status_change_map.values():
        for status_change in entry["statusChanges"]:
            from_done = status_change["fromStatus"] in to_set
            to_done = status_change["toStatus"] in to_set

            if to_done and not from_done:
                transition_type = "completion"
            elif from_done and not to_done and not completion_only:
                transition_type = "regression"
            else:
                continue

            completion_events.append({
                "timestamp": status_change["timestamp"],
                "transitionType": transition_type,
                "issue": entry["issue"]
            })

    completion_events.sort(key=lambda e: e["timestamp"])
    return completion_events
