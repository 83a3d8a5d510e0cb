"""Scope and burnup reconstruction by replaying the event log.

A target is either an Initiative, whose scope is every issue below it in the
Initiative > Epic > Story/Bug hierarchy, or a Release (fix version), whose
scope is every Story and Bug carrying that version. Hierarchy and version
membership both change over time, so the state at each instant is rebuilt by
replaying the event log forwards into an arena of issue snapshots.
"""

import logging
from typing import Optional

from services.issue_fields import DEFAULT_STORY_SIZE, WORK_ITEM_TYPES, normalize_id
from services.timeseries import to_epoch_ms, window_end

logger = logging.getLogger(__name__)


class IssueSnapshot:
    """An issue as it stood at the current point of a replay.

    Children are referenced by id; the arena in ReplayState owns every
    snapshot.
    """

    def __init__(self, issue_id: str, key: str, issue_type: str, size: Optional[int],
                 parent_id: Optional[str], parent_key: Optional[str], versions: list):
        self.id = issue_id
        self.key = key
        self.type = issue_type
        self.size = DEFAULT_STORY_SIZE if size is None else size
        self.resolved = False
        self.parent_id = parent_id
        self.parent_key = parent_key
        self.children = set()
        self.versions = set(versions or [])


class ReplayState:
    """Mutable replay state for a single target.

    Owned by one replay run. Parent pointers and children sets are only ever
    changed together, through _attach/_detach, so subtree sums (which walk
    children) and ancestry checks (which walk parents) always agree.
    """

    def __init__(self, target_id, is_release: bool):
        self.target_id = normalize_id(target_id)
        self.is_release = is_release
        self.issues = {}
        self.key_to_id = {}
        self.total_scope = 0
        self.total_done = 0
        # Snapshots whose parent hasn't been created (or was deleted), by reference
        self._waiting = {}

        self._handlers = {
            "created": self._on_created,
            "parentChange": self._on_parent_change,
            "sizeChange": self._on_size_change,
            "addChild": self._on_add_child,
            "removeChild": self._on_remove_child,
            "addVersion": self._on_add_version,
            "removeVersion": self._on_remove_version,
            "resolutionChange": self._on_resolution_change,
        }

    # Lookups

    def lookup(self, issue_id=None, issue_key=None) -> Optional[IssueSnapshot]:
        """Find a snapshot by id, falling back to key."""
        if issue_id is not None and issue_id in self.issues:
            return self.issues[issue_id]
        if issue_key is not None:
            mapped_id = self.key_to_id.get(issue_key)
            if mapped_id is not None:
                return self.issues.get(mapped_id)
        return None

    def parent_of(self, snapshot: IssueSnapshot) -> Optional[IssueSnapshot]:
        return self.lookup(snapshot.parent_id, snapshot.parent_key)

    def is_descendant(self, snapshot: IssueSnapshot, ancestor_id) -> bool:
        """True if ancestor_id appears anywhere above snapshot.

        A parent missing from the arena (not created yet, or deleted) ends the
        walk at False.
        """
        ancestor_id = normalize_id(ancestor_id)
        seen = {snapshot.id}
        current = snapshot
        while True:
            parent = self.parent_of(current)
            if parent is None:
                return False
            if parent.id == ancestor_id:
                return True
            if parent.id in seen:
                logger.warning(f"Parent cycle detected above issue {snapshot.key}")
                return False
            seen.add(parent.id)
            current = parent

    def subtree_size(self, snapshot: IssueSnapshot, only_resolved: bool) -> int:
        """Size of an issue plus all of its descendants.

        Args:
            snapshot: The issue to calculate the size of
            only_resolved: If True, only resolved issues contribute their size
        """
        total = 0
        for child_id in snapshot.children:
            child = self.issues.get(child_id)
            if child is not None:
                total += self.subtree_size(child, only_resolved)
        if not only_resolved or snapshot.resolved:
            total += snapshot.size
        return total

    # Membership

    def counts(self, snapshot: IssueSnapshot) -> bool:
        """Does this issue's own size count towards the target right now."""
        if self.is_release:
            return snapshot.type in WORK_ITEM_TYPES and self.target_id in snapshot.versions
        return self.is_descendant(snapshot, self.target_id)

    def counted_totals(self, snapshot: IssueSnapshot) -> tuple:
        """(scope, done) contributed to the target by snapshot's subtree."""
        if self.is_release:
            if self.counts(snapshot):
                return self.subtree_size(snapshot, False), self.subtree_size(snapshot, True)
            return 0, 0

        if snapshot.id == self.target_id:
            # The target's own size is not part of its scope
            scope = done = 0
            for child_id in snapshot.children:
                child = self.issues.get(child_id)
                if child is not None:
                    scope += self.subtree_size(child, False)
                    done += self.subtree_size(child, True)
            return scope, done

        if self.is_descendant(snapshot, self.target_id):
            return self.subtree_size(snapshot, False), self.subtree_size(snapshot, True)
        return 0, 0

    # Structure maintenance

    def _wait_key(self, snapshot: IssueSnapshot) -> Optional[tuple]:
        if snapshot.parent_id is not None:
            return ("id", snapshot.parent_id)
        if snapshot.parent_key is not None:
            return ("key", snapshot.parent_key)
        return None

    def _attach(self, snapshot: IssueSnapshot):
        parent = self.parent_of(snapshot)
        if parent is not None:
            parent.children.add(snapshot.id)
            return
        wait_key = self._wait_key(snapshot)
        if wait_key is not None:
            self._waiting.setdefault(wait_key, set()).add(snapshot.id)

    def _detach(self, snapshot: IssueSnapshot):
        parent = self.parent_of(snapshot)
        if parent is not None:
            parent.children.discard(snapshot.id)
        wait_key = self._wait_key(snapshot)
        if wait_key is not None and wait_key in self._waiting:
            self._waiting[wait_key].discard(snapshot.id)

    def _adopt_waiting(self, snapshot: IssueSnapshot):
        for wait_key in (("id", snapshot.id), ("key", snapshot.key)):
            for child_id in self._waiting.pop(wait_key, set()):
                child = self.issues.get(child_id)
                if child is None:
                    continue
                if self.is_descendant(snapshot, child_id):
                    logger.warning(
                        f"Issue {child.key} and {snapshot.key} are each other's ancestors, "
                        f"dropping the parent of {child.key}"
                    )
                    child.parent_id = None
                    child.parent_key = None
                    continue
                snapshot.children.add(child_id)

    def reparent(self, snapshot: IssueSnapshot, parent_id, parent_key) -> bool:
        """Point snapshot at a new parent, keeping both sides in sync."""
        new_parent = self.lookup(parent_id, parent_key)
        if new_parent is not None and (
                new_parent.id == snapshot.id or self.is_descendant(new_parent, snapshot.id)):
            logger.warning(
                f"Ignoring move of {snapshot.key} under {new_parent.key}: it would create a cycle"
            )
            return False

        self._detach(snapshot)
        snapshot.parent_id = parent_id
        snapshot.parent_key = parent_key
        self._attach(snapshot)
        return True

    def _apply_delta(self, before: tuple, after: tuple):
        self.total_scope += after[0] - before[0]
        self.total_done += after[1] - before[1]

    # Event handlers

    def apply(self, event: dict):
        handler = self._handlers.get(event["kind"])
        if handler is None:
            logger.warning(f"Unknown event kind '{event['kind']}' for issue {event['issueId']}")
            return
        handler(event)

    def _get_issue(self, event: dict) -> Optional[IssueSnapshot]:
        snapshot = self.issues.get(event["issueId"])
        if snapshot is None:
            logger.warning(
                f"Event {event['kind']} refers to unknown issue {event['issueId']}, skipping"
            )
        return snapshot

    def _on_created(self, event: dict):
        details = event["details"]
        issue_id = event["issueId"]
        if issue_id in self.issues:
            logger.warning(f"Issue {issue_id} created twice in the event log, skipping")
            return

        snapshot = IssueSnapshot(
            issue_id=issue_id,
            key=details.get("issueKey"),
            issue_type=details.get("type"),
            size=details.get("size"),
            parent_id=normalize_id(details.get("parentId")),
            parent_key=details.get("parentKey"),
            versions=[normalize_id(v) for v in details.get("versions") or []]
        )
        self.issues[issue_id] = snapshot
        if snapshot.key:
            self.key_to_id[snapshot.key] = issue_id

        self._attach(snapshot)
        self._adopt_waiting(snapshot)
        self._apply_delta((0, 0), self.counted_totals(snapshot))

    def _on_parent_change(self, event: dict):
        snapshot = self._get_issue(event)
        if snapshot is None:
            return
        details = event["details"]
        before = self.counted_totals(snapshot)
        self.reparent(snapshot, normalize_id(details.get("parentId")), details.get("parentKey"))
        self._apply_delta(before, self.counted_totals(snapshot))

    def _on_size_change(self, event: dict):
        snapshot = self._get_issue(event)
        if snapshot is None:
            return
        new_size = event["details"].get("size")
        new_size = DEFAULT_STORY_SIZE if new_size is None else new_size
        delta = new_size - snapshot.size
        snapshot.size = new_size

        if self.counts(snapshot):
            self.total_scope += delta
            if snapshot.resolved:
                self.total_done += delta

    def _on_add_child(self, event: dict):
        parent = self._get_issue(event)
        if parent is None:
            return
        child = self.issues.get(normalize_id(event["details"].get("childId")))
        # Jira allows deletion, so children may reference issues we never saw
        if child is None:
            logger.warning(
                f"Epic {parent.key} gained unknown child {event['details'].get('childId')}"
            )
            return

        before = self.counted_totals(child)
        self.reparent(child, parent.id, parent.key)
        self._apply_delta(before, self.counted_totals(child))

    def _on_remove_child(self, event: dict):
        parent = self._get_issue(event)
        if parent is None:
            return
        child = self.issues.get(normalize_id(event["details"].get("childId")))
        if child is None:
            logger.warning(
                f"Epic {parent.key} lost unknown child {event['details'].get('childId')}"
            )
            return

        # Already moved elsewhere by the child's own parent change
        current_parent = self.parent_of(child)
        if current_parent is None or current_parent.id != parent.id:
            return

        before = self.counted_totals(child)
        self.reparent(child, None, None)
        self._apply_delta(before, self.counted_totals(child))

    def _on_add_version(self, event: dict):
        snapshot = self._get_issue(event)
        if snapshot is None:
            return
        version_id = normalize_id(event["details"].get("versionId"))
        if version_id in snapshot.versions:
            logger.warning(
                f"Tried to add version {version_id} to issue {snapshot.key} but it was already present"
            )
            return

        before = self.counted_totals(snapshot)
        snapshot.versions.add(version_id)
        self._apply_delta(before, self.counted_totals(snapshot))

    def _on_remove_version(self, event: dict):
        snapshot = self._get_issue(event)
        if snapshot is None:
            return
        version_id = normalize_id(event["details"].get("versionId"))
        if version_id not in snapshot.versions:
            logger.warning(
                f"Tried to remove version {version_id} from issue {snapshot.key} but it was not present"
            )
            return

        before = self.counted_totals(snapshot)
        snapshot.versions.discard(version_id)
        self._apply_delta(before, self.counted_totals(snapshot))

    def _on_resolution_change(self, event: dict):
        snapshot = self._get_issue(event)
        if snapshot is None:
            return
        resolved = event["details"].get("resolution") == "Done"
        if resolved == snapshot.resolved:
            return
        snapshot.resolved = resolved

        # An issue being done doesn't mean its children are; they're handled independently
        if self.counts(snapshot):
            self.total_done += snapshot.size if resolved else -snapshot.size


def calculate_scope_and_burnup(event_log: list, target_id, is_release: bool,
                               window: dict) -> dict:
    """Replay the event log for one target.

    Args:
        event_log: Time ordered events (see services.event_log)
        target_id: Jira id of the Initiative or Release (version)
        is_release: True if target_id is a version id, False for an Initiative
        window: The query window; events after window["to"] are not replayed

    Returns:
        Dict with scopeData and burnupData ([[value, epochMillis]]) and the
        lastUpdateTime the series are valid up to.
    """
    state = ReplayState(target_id, is_release)
    scope_data = []
    burnup_data = []
    previous_scope = None
    previous_done = None

    for event in event_log:
        timestamp = event["timestamp"]
        # Don't bother processing events after the end of the required range
        if timestamp > window["to"]:
            break

        state.apply(event)

        if state.total_scope != previous_scope:
            scope_data.append([state.total_scope, to_epoch_ms(timestamp)])
            previous_scope = state.total_scope
        if state.total_done != previous_done:
            burnup_data.append([state.total_done, to_epoch_ms(timestamp)])
            previous_done = state.total_done

    end = window_end(window)
    scope_data.append([state.total_scope, to_epoch_ms(end)])
    burnup_data.append([state.total_done, to_epoch_ms(end)])

    return {
        "scopeData": scope_data,
        "burnupData": burnup_data,
        "lastUpdateTime": end
    }
