"""Jira REST API client."""

import logging
from typing import Optional

import requests

logger = logging.getLogger(__name__)


class JiraFetchError(Exception):
    """Jira couldn't be reached or returned an error."""


class JiraClient:
    """Thin wrapper over the Jira REST API v2 using basic auth."""

    def __init__(self, server: str, username: str, token: str,
                 page_size: int = 100, timeout: int = 30):
        if server and not server.startswith(("http://", "https://")):
            server = f"https://{server}"
        self.server = (server or "").rstrip("/")
        self.username = username
        self.token = token
        self.page_size = page_size
        self.timeout = timeout

    def _request(self, endpoint: str, params: Optional[dict] = None) -> dict:
        """Make authenticated request to Jira API."""
        try:
            response = requests.get(
                f"{self.server}{endpoint}",
                auth=(self.username, self.token),
                headers={"Accept": "application/json"},
                params=params,
                timeout=self.timeout
            )
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            raise JiraFetchError(f"Jira request to {endpoint} failed: {e}") from e
        except ValueError as e:
            raise JiraFetchError(f"Jira returned invalid JSON for {endpoint}: {e}") from e

    def search(self, jql: str, start_at: int = 0, max_results: Optional[int] = None,
               expand: Optional[str] = "changelog", fields: Optional[str] = None) -> dict:
        """One page of a JQL search."""
        params = {
            "jql": jql,
            "startAt": start_at,
            "maxResults": max_results or self.page_size,
        }
        if expand:
            params["expand"] = expand
        if fields:
            params["fields"] = fields
        return self._request("/rest/api/2/search", params=params)

    def iter_search_pages(self, jql: str, expand: Optional[str] = "changelog",
                          fields: Optional[str] = None, request_id: str = ""):
        """Yield each page's issues in turn.

        Pages are requested one after another since each cursor depends on the
        previous response's startAt, maxResults and total.
        """
        start_at = 0
        while True:
            data = self.search(jql, start_at=start_at, expand=expand, fields=fields)
            issues = data.get("issues", [])
            total = data.get("total", 0)
            max_results = data.get("maxResults") or self.page_size

            logger.info(
                f"{request_id}: Fetched issues {start_at}-{start_at + len(issues)} of {total}"
            )
            yield issues

            if not issues or start_at + max_results >= total:
                break
            start_at += max_results

    def search_all(self, jql: str, expand: Optional[str] = "changelog",
                   fields: Optional[str] = None, request_id: str = "") -> list:
        """Every issue matching jql, across all pages."""
        all_issues = []
        for issues in self.iter_search_pages(jql, expand=expand, fields=fields,
                                             request_id=request_id):
            all_issues.extend(issues)
        return all_issues

    def get_version(self, version_id) -> dict:
        """Release (fix version) details, including its name."""
        return self._request(f"/rest/api/2/version/{version_id}")

    def get_myself(self) -> dict:
        """The authenticated user; used to check the connection."""
        return self._request("/rest/api/2/myself")
