"""Tests for Jira issue readers and the workflow."""

import sys
import os
from datetime import datetime, timezone, timedelta

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from conftest import day
from services.issue_fields import (
    filter_work_items, get_field_map, get_issue_size, get_parent_identifier,
    get_status_changes, id_sort_key, normalize_id, parse_date, parse_size
)
from services.workflow import Workflow, get_completion_events, get_status_changes_by_issue


class TestParseDate:
    """Test date parsing."""

    def test_parse_jira_format(self):
        """Should parse Jira's offset format."""
        result = parse_date("2024-10-31T12:11:56.289-0400")
        assert result == datetime(2024, 10, 31, 16, 11, 56, 289000, tzinfo=timezone.utc)
        assert result.utcoffset() == timedelta(hours=-4)

    def test_parse_grafana_format(self):
        """Grafana sends UTC with a Z suffix."""
        assert parse_date("2024-01-05T00:00:00.000Z") == day(5)

    def test_parse_date_only(self):
        assert parse_date("2024-01-20") == day(20)

    def test_parse_none(self):
        assert parse_date(None) is None
        assert parse_date("") is None

    def test_parse_invalid(self):
        assert parse_date("next tuesday") is None


class TestIssueFields:
    """Test field readers."""

    def test_parse_size(self):
        assert parse_size("3") == 3
        assert parse_size("2.0") == 2
        assert parse_size(None) is None
        assert parse_size("big") is None

    def test_missing_size_defaults_to_zero(self, make_issue):
        assert get_issue_size(make_issue(1, "ENG-1")) == 0
        assert get_issue_size(make_issue(1, "ENG-1", size=5.0)) == 5

    def test_normalize_id(self):
        """Numbers and strings compare equal once normalized."""
        assert normalize_id(100) == "100"
        assert normalize_id(100.0) == "100"
        assert normalize_id("") is None

    def test_id_sort_key(self):
        assert sorted(["10", "9", "abc"], key=id_sort_key) == ["9", "10", "abc"]

    def test_field_overrides(self):
        """Configured field ids replace the defaults; empty values are ignored."""
        field_map = get_field_map({"size": "customfield_10002", "epicLink": ""})
        assert field_map["size"] == "customfield_10002"
        assert field_map["epicLink"] == "customfield_10008"

    def test_parent_identifiers(self, make_issue):
        """Stories know their Epic's key; Epics know their Initiative's id and key."""
        story = make_issue(5, "ENG-5", epic_key="ENG-2")
        epic = make_issue(2, "ENG-2", issue_type="Epic",
                          parent_link={"id": 1, "key": "ENG-1"})
        initiative = make_issue(1, "ENG-1", issue_type="Initiative")

        assert get_parent_identifier(story, "key") == "ENG-2"
        assert get_parent_identifier(story, "id") is None
        assert get_parent_identifier(epic, "id") == "1"
        assert get_parent_identifier(epic, "key") == "ENG-1"
        assert get_parent_identifier(initiative, "key") is None

    def test_status_changes_sorted(self, make_issue, make_history, items):
        """Histories are read oldest first whatever order Jira returns them in."""
        issue = make_issue(1, "ENG-1", histories=[
            make_history(3, day(4), items.status("Dev", "Done")),
            make_history(2, day(2), items.status("Backlog", "Dev"), items.size("1", "2")),
        ])

        changes = get_status_changes(issue)
        assert [(c["fromStatus"], c["toStatus"]) for c in changes] == [
            ("Backlog", "Dev"), ("Dev", "Done")
        ]
        assert changes[0]["timestamp"] == day(2)

    def test_filter_work_items(self, make_issue):
        issues = [
            make_issue(1, "ENG-1", issue_type="Epic"),
            make_issue(2, "ENG-2"),
            make_issue(3, "OPS-3", issue_type="Bug", project="OPS"),
        ]
        assert [i["key"] for i in filter_work_items(issues)] == ["ENG-2", "OPS-3"]
        assert [i["key"] for i in filter_work_items(issues, "OPS")] == ["OPS-3"]


class TestWorkflow:
    """Test status sets derived from the workflow."""

    def test_future_statuses(self):
        workflow = Workflow()
        assert workflow.future_statuses("Deployed") == ["Deployed", "Done", "Not Doing"]
        assert workflow.future_statuses("Deployed", completion_only=True) == ["Deployed", "Done"]

    def test_previous_statuses(self):
        assert Workflow().previous_statuses("Prioritised") == ["Backlog", "Prioritised"]

    def test_unknown_status(self):
        """An unknown status stands alone."""
        workflow = Workflow()
        assert workflow.future_statuses("Shipped") == ["Shipped"]
        assert workflow.previous_statuses("Icebox") == ["Icebox"]

    def test_from_config(self):
        workflow = Workflow.from_config({
            "statuses": ["Open", "Doing", "Closed", "Won't Do"],
            "cancelledStatuses": ["Won't Do"],
            "defaultToStatus": "Closed"
        })
        assert workflow.future_statuses(workflow.default_to_status, completion_only=True) == [
            "Closed"
        ]
        assert workflow.default_from_status == "Backlog"

    def test_completion_events(self, make_issue, make_history, items):
        """Moves into the done set complete; moves out of it regress."""
        issue = make_issue(1, "ENG-1", histories=[
            make_history(1, day(2), items.status("Dev", "Deploy Queue")),
            make_history(2, day(3), items.status("Deploy Queue", "Deploy")),
            make_history(3, day(4), items.status("Deploy", "Dev")),
            make_history(4, day(5), items.status("Dev", "Not Doing")),
        ])
        status_change_map = get_status_changes_by_issue([issue])
        to_statuses = Workflow().future_statuses("Deploy Queue")

        events = get_completion_events(status_change_map, to_statuses)
        assert [(e["transitionType"], e["timestamp"]) for e in events] == [
            ("completion", day(2)), ("regression", day(4)), ("completion", day(5))
        ]

        completion_only = Workflow().future_statuses("Deploy Queue", completion_only=True)
        events = get_completion_events(status_change_map, completion_only, completion_only=True)
        assert [e["timestamp"] for e in events] == [day(2)]
