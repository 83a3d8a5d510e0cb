"""The tracked issue set, fetched incrementally from Jira."""

import logging
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from services.issue_fields import ISSUE_TYPES, id_sort_key

logger = logging.getLogger(__name__)

CORPUS_JQL = f"issuetype in ({', '.join(ISSUE_TYPES)})"
JQL_DATE_FORMAT = "%Y-%m-%d %H:%M"


def build_corpus_jql(last_update_time: Optional[datetime] = None,
                     jira_timezone: str = "UTC") -> str:
    """JQL for the corpus, limited to issues updated since the last fetch.

    JQL dates only go down to the minute and are read in the Jira user's
    timezone, so the bound is rounded down and converted; re-fetching a few
    already known issues is harmless.
    """
    if last_update_time is None:
        return CORPUS_JQL
    zone = timezone.utc if jira_timezone in (None, "", "UTC") else ZoneInfo(jira_timezone)
    local_time = last_update_time.astimezone(zone)
    return f'{CORPUS_JQL} AND updatedDate >= "{local_time.strftime(JQL_DATE_FORMAT)}"'


def merge_issues(existing: list, updates: list) -> list:
    """Replace updated issues by id and add new ones.

    Returns a new list sorted by numeric id; existing is left untouched.
    """
    by_id = {str(issue.get("id")): issue for issue in existing}
    for issue in updates:
        by_id[str(issue.get("id"))] = issue
    return sorted(by_id.values(), key=lambda issue: id_sort_key(issue.get("id")))


def fetch_issue_corpus(client, previous_entry, window: dict, request_id: str = "",
                       jira_timezone: str = "UTC") -> tuple:
    """Recompute the issue corpus cache entry.

    Args:
        client: JiraClient
        previous_entry: The current CacheEntry, or None on a cold start
        window: The query window; window["now"] becomes the new last update time
        request_id: Grafana request id for log lines
        jira_timezone: Timezone Jira reads JQL dates in

    Returns:
        (issues, last_update_time). If Jira fails part way through, JiraFetchError
        propagates and nothing is merged.
    """
    existing = previous_entry.value if previous_entry is not None else []
    last_update_time = previous_entry.last_update_time if previous_entry is not None else None

    jql = build_corpus_jql(last_update_time, jira_timezone)
    logger.info(f"{request_id}: Executing issue corpus update ({jql})")

    updates = client.search_all(jql, expand="changelog", request_id=request_id)
    issues = merge_issues(existing, updates)

    logger.info(
        f"{request_id}: Issue corpus now holds {len(issues)} issues ({len(updates)} updated)"
    )
    return issues, window["now"]
