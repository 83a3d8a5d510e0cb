"""Event log construction from Jira issue changelogs.

Every issue contributes a synthesized "created" event plus one event per
relevant changelog item. Jira records no "initial value" for a field, so the
created event starts from the issue's current values and is corrected the
first time the history shows that field changing.
"""

import logging
from typing import Optional

from services.issue_fields import (
    get_created, get_field_map, get_issue_size, get_issue_type,
    get_parent_identifier, get_sorted_histories, get_version_ids,
    id_sort_key, normalize_id, parse_date, parse_size
)

logger = logging.getLogger(__name__)

EVENT_KINDS = (
    "created",
    "parentChange",
    "sizeChange",
    "addChild",
    "removeChild",
    "addVersion",
    "removeVersion",
    "resolutionChange",
)


def make_event(timestamp, issue_id, kind: str, **details) -> dict:
    return {
        "timestamp": timestamp,
        "issueId": normalize_id(issue_id),
        "kind": kind,
        "details": details
    }


class _IssueEventBuilder:
    """Builds the events for a single issue, correcting its created event."""

    def __init__(self, issue: dict, field_map: dict):
        self.issue = issue
        self.field_map = field_map
        self.issue_id = normalize_id(issue.get("id"))
        self.created_at = get_created(issue)
        self.created = make_event(
            self.created_at, self.issue_id, "created",
            issueKey=issue.get("key"),
            size=get_issue_size(issue, field_map),
            type=get_issue_type(issue),
            parentId=get_parent_identifier(issue, "id", field_map),
            parentKey=get_parent_identifier(issue, "key", field_map),
            resolution=None,
            versions=get_version_ids(issue)
        )
        self.events = []
        self._parent_corrected = False
        self._size_corrected = False
        self._versions_corrected = set()

        self._handlers = {
            field_map["epicLink"]: self._on_parent_change,
            field_map["parentLink"]: self._on_parent_change,
            field_map["size"]: self._on_size_change,
            "fixVersions": self._on_version_change,
            "resolution": self._on_resolution_change,
        }

    def build(self) -> list:
        for history in get_sorted_histories(self.issue):
            timestamp = parse_date(history.get("created"))
            if timestamp is None:
                logger.warning(
                    f"Skipping history {history.get('id')} of {self.issue.get('key')}: no timestamp"
                )
                continue
            # A change can't precede the issue it belongs to
            timestamp = max(timestamp, self.created_at)

            for item in history.get("items", []):
                if item.get("field") == self.field_map["epicChild"]:
                    self._on_epic_child(timestamp, item)
                    continue
                handler = self._handlers.get(item.get("fieldId"))
                if handler is not None:
                    handler(timestamp, item)

        return [self.created] + self.events

    def _emit(self, timestamp, kind: str, **details):
        self.events.append(make_event(timestamp, self.issue_id, kind, **details))

    def _on_parent_change(self, timestamp, item: dict):
        # Epic Link items hold ids in from/to and keys in fromString/toString.
        # Parent Link items only hold the parent id, in fromString/toString.
        if item.get("fieldId") == self.field_map["epicLink"]:
            old_id, old_key = normalize_id(item.get("from")), item.get("fromString")
            new_id, new_key = normalize_id(item.get("to")), item.get("toString")
        else:
            old_id, old_key = normalize_id(item.get("fromString")), None
            new_id, new_key = normalize_id(item.get("toString")), None

        if not self._parent_corrected:
            self.created["details"]["parentId"] = old_id
            self.created["details"]["parentKey"] = old_key or None
            self._parent_corrected = True

        self._emit(timestamp, "parentChange", parentId=new_id, parentKey=new_key or None)

    def _on_size_change(self, timestamp, item: dict):
        # Story point values live in fromString/toString; from/to are null
        if not self._size_corrected:
            self.created["details"]["size"] = parse_size(item.get("fromString"))
            self._size_corrected = True

        self._emit(timestamp, "sizeChange", size=parse_size(item.get("toString")))

    def _on_epic_child(self, timestamp, item: dict):
        if item.get("from") is None:
            self._emit(timestamp, "addChild", childId=normalize_id(item.get("to")))
        else:
            self._emit(timestamp, "removeChild", childId=normalize_id(item.get("from")))

    def _on_version_change(self, timestamp, item: dict):
        added = item.get("from") is None
        version_id = normalize_id(item.get("to") if added else item.get("from"))
        self._emit(timestamp, "addVersion" if added else "removeVersion", versionId=version_id)

        # The first add of a version means the issue didn't start with it, the
        # first removal means it did. Wrong if the history has been truncated.
        if version_id not in self._versions_corrected:
            versions = self.created["details"]["versions"]
            if added and version_id in versions:
                versions.remove(version_id)
            elif not added and version_id not in versions:
                versions.append(version_id)
            self._versions_corrected.add(version_id)

    def _on_resolution_change(self, timestamp, item: dict):
        self._emit(timestamp, "resolutionChange", resolution=item.get("toString"))


def build_issue_events(issue: dict, field_map: Optional[dict] = None) -> list:
    """Events for one issue, created event first and history in order."""
    field_map = field_map or get_field_map()
    if get_created(issue) is None:
        logger.warning(f"Issue {issue.get('key')} has no creation date, leaving it out of the event log")
        return []
    return _IssueEventBuilder(issue, field_map).build()


def build_event_log(issues: list, field_map: Optional[dict] = None) -> list:
    """Build the globally time ordered event log for an issue corpus.

    Ordering is (timestamp, created before changes, issue id, position in the
    issue's history), which makes replays reproducible. Everything created at
    an instant exists before any change at that instant is replayed, and one
    issue's changes keep their history order.
    """
    field_map = field_map or get_field_map()
    keyed_events = []

    for issue in issues:
        for position, event in enumerate(build_issue_events(issue, field_map)):
            sort_key = (
                event["timestamp"],
                0 if event["kind"] == "created" else 1,
                id_sort_key(event["issueId"]),
                position
            )
            keyed_events.append((sort_key, event))

    keyed_events.sort(key=lambda pair: pair[0])
    return [event for _, event in keyed_events]
