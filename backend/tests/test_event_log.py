"""Tests for event log construction."""

import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from conftest import day
from services.event_log import EVENT_KINDS, build_event_log, build_issue_events
from services.scope_burnup import ReplayState, calculate_scope_and_burnup


def events_of_kind(events, kind):
    return [e for e in events if e["kind"] == kind]


class TestCreatedEventCorrection:
    """Test retroactive correction of the synthesized created event."""

    def test_created_uses_current_values_without_history(self, make_issue):
        """With no history the created event carries the current field values."""
        issue = make_issue(1, "ENG-1", size=5, epic_key="ENG-2", fix_versions=[10])
        created = build_issue_events(issue)[0]

        assert created["kind"] == "created"
        assert created["issueId"] == "1"
        assert created["details"]["issueKey"] == "ENG-1"
        assert created["details"]["size"] == 5
        assert created["details"]["parentKey"] == "ENG-2"
        assert created["details"]["parentId"] is None
        assert created["details"]["versions"] == ["10"]
        assert created["details"]["resolution"] is None

    def test_size_corrected_from_first_change(self, make_issue, make_history, items):
        """Created size should be the value before the first size change."""
        issue = make_issue(1, "ENG-1", size=5, histories=[
            make_history(1, day(3), items.size("3", "5")),
        ])
        events = build_issue_events(issue)

        assert events[0]["details"]["size"] == 3
        size_changes = events_of_kind(events, "sizeChange")
        assert [e["details"]["size"] for e in size_changes] == [5]

    def test_size_corrected_only_once(self, make_issue, make_history, items):
        """Later changes must not overwrite the corrected initial size."""
        issue = make_issue(1, "ENG-1", size=3, histories=[
            make_history(1, day(2), items.size("1", "2")),
            make_history(2, day(3), items.size("2", "3")),
        ])
        events = build_issue_events(issue)

        assert events[0]["details"]["size"] == 1
        assert [e["details"]["size"] for e in events_of_kind(events, "sizeChange")] == [2, 3]

    def test_unset_initial_size_is_none(self, make_issue, make_history, items):
        """An estimate added later means the issue started without one."""
        issue = make_issue(1, "ENG-1", size=8, histories=[
            make_history(1, day(2), items.size(None, "8.0")),
        ])
        events = build_issue_events(issue)

        assert events[0]["details"]["size"] is None
        assert events_of_kind(events, "sizeChange")[0]["details"]["size"] == 8

    def test_epic_link_corrected(self, make_issue, make_history, items):
        """A story linked to its epic later started with no parent."""
        issue = make_issue(5, "ENG-5", epic_key="ENG-2", histories=[
            make_history(1, day(2), items.epic_link(to_id="2", to_key="ENG-2")),
        ])
        events = build_issue_events(issue)

        assert events[0]["details"]["parentId"] is None
        assert events[0]["details"]["parentKey"] is None
        parent_change = events_of_kind(events, "parentChange")[0]
        assert parent_change["details"] == {"parentId": "2", "parentKey": "ENG-2"}

    def test_parent_link_uses_strings_for_ids(self, make_issue, make_history, items):
        """Parent Link items keep the parent id in fromString/toString."""
        issue = make_issue(2, "ENG-2", issue_type="Epic",
                           parent_link={"id": "1", "key": "ENG-1"},
                           histories=[
                               make_history(1, day(2), items.parent_link(from_id="7", to_id="1")),
                           ])
        events = build_issue_events(issue)

        assert events[0]["details"]["parentId"] == "7"
        assert events_of_kind(events, "parentChange")[0]["details"] == {
            "parentId": "1", "parentKey": None
        }

    def test_epic_parent_read_from_parent_link(self, make_issue):
        """Epics take their parent id and key from the Parent Link field."""
        issue = make_issue(2, "ENG-2", issue_type="Epic", parent_link={"id": 1, "key": "ENG-1"})
        created = build_issue_events(issue)[0]

        assert created["details"]["parentId"] == "1"
        assert created["details"]["parentKey"] == "ENG-1"

    def test_first_version_add_removes_it_from_creation(self, make_issue, make_history, items):
        """A version first seen being added wasn't there at creation."""
        issue = make_issue(1, "ENG-1", fix_versions=[10], histories=[
            make_history(1, day(2), items.fix_version(added="10")),
        ])
        events = build_issue_events(issue)

        assert events[0]["details"]["versions"] == []
        assert events_of_kind(events, "addVersion")[0]["details"]["versionId"] == "10"

    def test_first_version_removal_adds_it_to_creation(self, make_issue, make_history, items):
        """A version first seen being removed was there at creation."""
        issue = make_issue(1, "ENG-1", fix_versions=[], histories=[
            make_history(1, day(2), items.fix_version(removed="11")),
        ])
        events = build_issue_events(issue)

        assert events[0]["details"]["versions"] == ["11"]
        assert events_of_kind(events, "removeVersion")[0]["details"]["versionId"] == "11"


class TestEventExtraction:
    """Test mapping of changelog items to events."""

    def test_epic_child_items(self, make_issue, make_history, items):
        """Epic Child items become addChild and removeChild events."""
        epic = make_issue(2, "ENG-2", issue_type="Epic", histories=[
            make_history(1, day(2), items.epic_child(added="5")),
            make_history(2, day(3), items.epic_child(removed="5")),
        ])
        events = build_issue_events(epic)

        assert [e["kind"] for e in events] == ["created", "addChild", "removeChild"]
        assert events[1]["details"]["childId"] == "5"
        assert events[2]["details"]["childId"] == "5"

    def test_resolution_items(self, make_issue, make_history, items):
        """Resolution items carry the new resolution name."""
        issue = make_issue(1, "ENG-1", histories=[
            make_history(1, day(4), items.resolution("Done")),
            make_history(2, day(5), items.resolution(None)),
        ])
        changes = events_of_kind(build_issue_events(issue), "resolutionChange")

        assert [e["details"]["resolution"] for e in changes] == ["Done", None]

    def test_status_items_ignored(self, completed_story):
        """Status changes are read by the velocity and cycle time engines instead."""
        events = build_issue_events(completed_story)
        assert [e["kind"] for e in events] == ["created"]

    def test_histories_processed_oldest_first(self, make_issue, make_history, items):
        """Out of order histories are sorted before correction."""
        issue = make_issue(1, "ENG-1", size=3, histories=[
            make_history(2, day(3), items.size("2", "3")),
            make_history(1, day(2), items.size("1", "2")),
        ])
        events = build_issue_events(issue)

        assert events[0]["details"]["size"] == 1
        assert [e["details"]["size"] for e in events[1:]] == [2, 3]

    def test_change_before_creation_is_clamped(self, make_issue, make_history, items):
        """History timestamps can't precede the issue's creation."""
        issue = make_issue(1, "ENG-1", size=2, created=day(5), histories=[
            make_history(1, day(4), items.size("1", "2")),
        ])
        events = build_issue_events(issue)

        assert events[1]["timestamp"] == day(5)

    def test_missing_creation_date_skips_issue(self, make_issue):
        """An issue without a creation date contributes no events."""
        issue = make_issue(1, "ENG-1")
        issue["fields"]["created"] = None
        assert build_issue_events(issue) == []


class TestEventLogOrdering:
    """Test the global ordering of the event log."""

    def test_sorted_by_timestamp(self, make_issue, make_history, items):
        """Events from different issues interleave by time."""
        first = make_issue(1, "ENG-1", size=2, created=day(1), histories=[
            make_history(1, day(5), items.size("1", "2")),
        ])
        second = make_issue(2, "ENG-2", created=day(3))

        log = build_event_log([first, second])
        assert [(e["issueId"], e["kind"]) for e in log] == [
            ("1", "created"), ("2", "created"), ("1", "sizeChange")
        ]

    def test_created_before_changes_at_same_instant(self, make_issue, make_history, items):
        """Everything created at an instant exists before changes at that instant."""
        epic = make_issue(2, "ENG-2", issue_type="Epic", created=day(1), histories=[
            make_history(1, day(2), items.epic_child(added="9")),
        ])
        story = make_issue(9, "ENG-9", created=day(2))

        log = build_event_log([epic, story])
        assert [(e["issueId"], e["kind"]) for e in log] == [
            ("2", "created"), ("9", "created"), ("2", "addChild")
        ]

    def test_ties_broken_by_numeric_id(self, make_issue):
        """Issue ids order numerically, not as strings."""
        log = build_event_log([
            make_issue(10, "ENG-10", created=day(1)),
            make_issue(9, "ENG-9", created=day(1)),
        ])
        assert [e["issueId"] for e in log] == ["9", "10"]

    def test_deterministic(self, make_issue, make_history, items, completed_story):
        """Building the log twice gives the same order."""
        issues = [
            completed_story,
            make_issue(3, "ENG-3", size=1, histories=[
                make_history(1, day(2), items.size("0", "1")),
            ]),
        ]
        assert build_event_log(issues) == build_event_log(list(reversed(issues)))

    def test_same_instant_changes_keep_history_order(self, make_issue, make_history, items,
                                                     make_window):
        """A version removed and re-added in one instant ends up present."""
        story = make_issue(5, "ENG-5", size=3, fix_versions=[100], histories=[
            make_history(1, day(3), items.fix_version(removed="100")),
            make_history(2, day(3), items.fix_version(added="100")),
        ])

        log = build_event_log([story])
        assert [e["kind"] for e in log] == ["created", "removeVersion", "addVersion"]

        result = calculate_scope_and_burnup(log, "100", True, make_window(day(1), day(10)))
        assert result["scopeData"][-1] == [3, result["scopeData"][-1][1]]

    def test_same_instant_child_moves_keep_history_order(self, make_issue, make_history, items):
        epic = make_issue(2, "ENG-2", issue_type="Epic", histories=[
            make_history(1, day(3), items.epic_child(removed="5")),
            make_history(2, day(3), items.epic_child(added="5")),
        ])

        log = build_event_log([epic])
        assert [e["kind"] for e in log] == ["created", "removeChild", "addChild"]


class TestReplayRoundTrip:
    """Replaying from the corrected created event reproduces the issue's history."""

    @pytest.fixture
    def busy_story(self, make_issue, make_history, items):
        """Story resized, moved between epics and moved between releases."""
        return make_issue(1, "ENG-1", size=5, epic_key="ENG-3", fix_versions=[101], histories=[
            make_history(10, day(2), items.size(None, "2"),
                         items.epic_link(to_id="2", to_key="ENG-2"),
                         items.fix_version(added="100")),
            make_history(11, day(4), items.size("2", "3"),
                         items.fix_version(removed="100"),
                         items.fix_version(added="101")),
            make_history(12, day(6), items.size("3", "5"),
                         items.epic_link(from_id="2", from_key="ENG-2", to_id="3", to_key="ENG-3")),
        ])

    def replay_states(self, issues, issue_id):
        """State of one issue after each instant of the replay."""
        log = build_event_log(issues)
        assert all(e["kind"] in EVENT_KINDS for e in log)

        state = ReplayState("101", True)
        states = {}
        for event in log:
            state.apply(event)
            snapshot = state.issues.get(issue_id)
            if snapshot is not None:
                states[event["timestamp"]] = (
                    snapshot.size, snapshot.parent_key, sorted(snapshot.versions)
                )
        return states, state

    def test_every_historical_state_reproduced(self, busy_story, make_issue):
        epics = [make_issue(2, "ENG-2", issue_type="Epic"),
                 make_issue(3, "ENG-3", issue_type="Epic")]

        states, _ = self.replay_states(epics + [busy_story], "1")

        assert states == {
            day(1): (0, None, []),
            day(2): (2, "ENG-2", ["100"]),
            day(4): (3, "ENG-2", ["101"]),
            day(6): (5, "ENG-3", ["101"]),
        }

    def test_final_state_matches_current_fields(self, busy_story, make_issue):
        """The last replayed state is the issue as Jira shows it now."""
        epics = [make_issue(2, "ENG-2", issue_type="Epic"),
                 make_issue(3, "ENG-3", issue_type="Epic")]

        _, state = self.replay_states(epics + [busy_story], "1")
        snapshot = state.issues["1"]
        fields = busy_story["fields"]

        assert snapshot.size == fields["customfield_10016"]
        assert snapshot.parent_key == fields["customfield_10008"]
        assert state.parent_of(snapshot).key == "ENG-3"
        assert snapshot.versions == {v["id"] for v in fields["fixVersions"]}
        assert state.total_scope == 5
