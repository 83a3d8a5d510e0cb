"""Readers for the raw Jira issue JSON the metrics engine consumes."""

from datetime import datetime, timezone
from typing import Optional

# Story size used if none is specified (note: this doesn't override a size specifically set to 0)
DEFAULT_STORY_SIZE = 0

# Jira custom fields and changelog field names the engine reads
DEFAULT_FIELD_MAP = {
    "size": "customfield_10016",        # Story Points
    "epicLink": "customfield_10008",    # Epic Link (Story/Bug -> Epic)
    "parentLink": "customfield_10009",  # Parent Link (Epic -> Initiative)
    "epicChild": "Epic Child",          # Changelog field recorded on the Epic
    "acceptanceCriteria": "customfield_10060",
    "highVizStatus": "customfield_10059",  # Select list shown next to the status
}

ISSUE_TYPES = ("Initiative", "Epic", "Story", "Bug")
WORK_ITEM_TYPES = ("Story", "Bug")
CONTAINER_TYPES = ("Initiative", "Epic")

DATE_FORMATS = [
    "%Y-%m-%dT%H:%M:%S.%f%z",  # With milliseconds and timezone
    "%Y-%m-%dT%H:%M:%S%z",     # Without milliseconds, with timezone
    "%Y-%m-%dT%H:%M:%S.%f",    # With milliseconds, no timezone
    "%Y-%m-%dT%H:%M:%S",       # Basic ISO format
    "%Y-%m-%d",                # Date only
]


def get_field_map(overrides: Optional[dict] = None) -> dict:
    """Return the default field map with any configured overrides applied."""
    field_map = dict(DEFAULT_FIELD_MAP)
    if overrides:
        field_map.update({k: v for k, v in overrides.items() if v})
    return field_map


def parse_date(date_str) -> Optional[datetime]:
    """Parse a Jira or Grafana date string into a timezone-aware datetime.

    Jira formats look like "2024-10-31T12:11:56.289-0400"; Grafana sends
    "2024-10-31T16:11:56.289Z". Strings without an offset are taken as UTC.
    """
    if not date_str:
        return None

    if isinstance(date_str, datetime):
        parsed = date_str
    else:
        parsed = None
        for fmt in DATE_FORMATS:
            try:
                parsed = datetime.strptime(date_str, fmt)
                break
            except ValueError:
                continue
        if parsed is None:
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_id(value) -> Optional[str]:
    """Jira hands ids out as numbers in some places and strings in others."""
    if value is None or value == "":
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


def id_sort_key(value) -> tuple:
    """Sort numeric ids numerically and anything else after them."""
    text = normalize_id(value) or ""
    if text.isdigit():
        return (0, int(text), "")
    return (1, 0, text)


def parse_size(value) -> Optional[int]:
    """Parse a story point value ("3", "3.0", 3.0) into an int, or None."""
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def get_issue_size(issue: dict, field_map: Optional[dict] = None) -> int:
    """Current size of an issue, falling back to DEFAULT_STORY_SIZE."""
    field_map = field_map or DEFAULT_FIELD_MAP
    size = parse_size(issue.get("fields", {}).get(field_map["size"]))
    return DEFAULT_STORY_SIZE if size is None else size


def get_issue_type(issue: dict) -> str:
    return (issue.get("fields", {}).get("issuetype") or {}).get("name", "")


def get_project_key(issue: dict) -> Optional[str]:
    return (issue.get("fields", {}).get("project") or {}).get("key")


def get_created(issue: dict) -> Optional[datetime]:
    return parse_date(issue.get("fields", {}).get("created"))


def get_version_ids(issue: dict) -> list:
    versions = issue.get("fields", {}).get("fixVersions") or []
    return [normalize_id(v.get("id")) for v in versions if v.get("id") is not None]


def get_parent_identifier(issue: dict, id_type: str, field_map: Optional[dict] = None):
    """Current parent of an issue, by "key" or "id".

    Epics point at their Initiative through the Parent Link field, which carries
    both id and key. Stories and Bugs point at their Epic through the Epic Link
    field, which only holds the key. Initiatives have no parent.
    """
    field_map = field_map or DEFAULT_FIELD_MAP
    fields = issue.get("fields", {})
    issue_type = get_issue_type(issue)

    if issue_type == "Epic":
        parent_link = fields.get(field_map["parentLink"]) or {}
        data = parent_link.get("data") if isinstance(parent_link, dict) else None
        if not data:
            return None
        return data.get("key") if id_type == "key" else normalize_id(data.get("id"))

    if issue_type == "Initiative":
        return None

    if id_type == "key":
        return fields.get(field_map["epicLink"])
    return None


def get_sorted_histories(issue: dict) -> list:
    """Changelog histories oldest first (by timestamp, then history id)."""
    changelog = issue.get("changelog") or issue.get("fields", {}).get("changelog") or {}
    histories = changelog.get("histories", []) if isinstance(changelog, dict) else []
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(
        histories,
        key=lambda h: (parse_date(h.get("created")) or epoch, id_sort_key(h.get("id")))
    )


def get_status_changes(issue: dict) -> list:
    """Datetime ascending list of {fromStatus, toStatus, timestamp} for an issue."""
    status_changes = []
    for history in get_sorted_histories(issue):
        timestamp = parse_date(history.get("created"))
        if timestamp is None:
            continue
        for item in history.get("items", []):
            if item.get("field") == "status":
                status_changes.append({
                    "fromStatus": item.get("fromString"),
                    "toStatus": item.get("toString"),
                    "timestamp": timestamp
                })
    return status_changes


def filter_work_items(issues: list, project_key: Optional[str] = None) -> list:
    """Drop Epics and Initiatives, and optionally issues outside a project."""
    work_items = [i for i in issues if get_issue_type(i) not in CONTAINER_TYPES]
    if project_key is not None:
        work_items = [i for i in work_items if get_project_key(i) == project_key]
    return work_items
