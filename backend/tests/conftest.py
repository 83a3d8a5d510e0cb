"""Shared fixtures for Jira metrics datasource tests."""

import os
import sys
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

BASE_DATE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def day(number: float) -> datetime:
    """Day number of January 2024 as a UTC datetime (day(1) is Jan 1st)."""
    return BASE_DATE + timedelta(days=number - 1)


def jira_date(value: datetime) -> str:
    """Format a datetime the way Jira does: 2024-01-01T09:00:00.000+0000."""
    return value.strftime("%Y-%m-%dT%H:%M:%S.000%z")


def _make_issue(issue_id, key, issue_type="Story", size=None, created=None,
                project="ENG", epic_key=None, parent_link=None, fix_versions=None,
                histories=None, summary=None):
    fields = {
        "summary": summary or f"{issue_type} {key}",
        "issuetype": {"name": issue_type},
        "project": {"key": project},
        "created": jira_date(created or day(1)),
        "resolution": None,
        "fixVersions": [{"id": str(v), "name": f"v{v}"} for v in (fix_versions or [])],
        "customfield_10016": size,
        "customfield_10008": epic_key,
        "customfield_10009": {"data": parent_link} if parent_link else None,
    }
    return {
        "id": str(issue_id),
        "key": key,
        "fields": fields,
        "changelog": {"histories": histories or []}
    }


def _make_history(history_id, created, *items):
    return {"id": str(history_id), "created": jira_date(created), "items": list(items)}


class JiraItems:
    """Changelog item builders."""

    @staticmethod
    def status(from_status, to_status):
        return {"field": "status", "fieldId": "status", "from": None,
                "fromString": from_status, "to": None, "toString": to_status}

    @staticmethod
    def size(from_size, to_size):
        return {"field": "Story point estimate", "fieldId": "customfield_10016",
                "from": None, "fromString": from_size, "to": None, "toString": to_size}

    @staticmethod
    def epic_link(from_id=None, from_key=None, to_id=None, to_key=None):
        return {"field": "Epic Link", "fieldId": "customfield_10008",
                "from": from_id, "fromString": from_key, "to": to_id, "toString": to_key}

    @staticmethod
    def parent_link(from_id=None, to_id=None):
        return {"field": "Parent Link", "fieldId": "customfield_10009",
                "from": None, "fromString": from_id, "to": None, "toString": to_id}

    @staticmethod
    def epic_child(added=None, removed=None):
        return {"field": "Epic Child", "fieldId": None,
                "from": removed, "fromString": None, "to": added, "toString": None}

    @staticmethod
    def fix_version(added=None, removed=None):
        return {"field": "Fix Version", "fieldId": "fixVersions",
                "from": removed, "fromString": None, "to": added, "toString": None}

    @staticmethod
    def resolution(to_resolution):
        return {"field": "resolution", "fieldId": "resolution", "from": None,
                "fromString": None, "to": None, "toString": to_resolution}


def _make_window(start, end, now=None, interval_ms=24 * 60 * 60 * 1000):
    return {
        "now": now or end,
        "from": start,
        "to": end,
        "intervalMs": interval_ms,
        "maxDataPoints": 1000
    }


@pytest.fixture
def make_issue():
    """Factory for raw Jira issues with changelog."""
    return _make_issue


@pytest.fixture
def make_history():
    """Factory for changelog histories."""
    return _make_history


@pytest.fixture
def items():
    """Changelog item builders."""
    return JiraItems


@pytest.fixture
def make_window():
    """Factory for query windows."""
    return _make_window


@pytest.fixture
def completed_story(make_issue, make_history, items):
    """Story sized 3, started on day 2 and completed on day 5."""
    return make_issue(
        10, "ENG-10", size=3, created=day(1), epic_key="ENG-2",
        histories=[
            make_history(100, day(2), items.status("Backlog", "Dev")),
            make_history(101, day(5), items.status("Dev", "Deploy Queue")),
        ]
    )


@pytest.fixture
def mock_jira_credentials():
    """Mock Jira credentials for testing."""
    return {
        "server": "https://test.atlassian.net",
        "username": "test@example.com",
        "token": "test-token-123"
    }


@pytest.fixture
def metrics_service():
    """Stand-in for the TeamMetricsService behind the routes."""
    return Mock()


@pytest.fixture
def app(metrics_service):
    """Create Flask test app."""
    from app import create_app
    app = create_app({"TESTING": True, "HTTP_USER": None}, metrics_service=metrics_service)
    return app


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()
