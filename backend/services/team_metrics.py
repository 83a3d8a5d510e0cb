"""Team metrics service backing the Grafana datasource.

Resolves each dashboard target (a metric name plus its "data" parameters) into
cached engine calls and shapes the result into Grafana time series or tables.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Optional

from services.cache_coordinator import CacheCoordinator
from services.cycle_time import calculate_cycle_time_series
from services.event_log import build_event_log
from services.issue_corpus import fetch_issue_corpus
from services.issue_fields import get_field_map, normalize_id, parse_date
from services.jira_client import JiraFetchError
from services.projection import (
    DEFAULT_VELOCITY_SOURCE, VELOCITY_SOURCES, build_projection,
    get_explicit_velocity_bounds, get_velocity_bounds_from_series
)
from services.scope_burnup import calculate_scope_and_burnup
from services.timeseries import (
    clip_to_window_start, filter_from_window, pad_end_to_window, to_epoch_ms, window_end
)
from services.velocity import calculate_velocity_series
from services.workflow import Workflow

logger = logging.getLogger(__name__)

METRICS = [
    "Current 2 week velocity",
    "Rolling 2 week velocity",
    "Current 2 week average cycle time per point",
    "Rolling 2 week average cycle time per point",
    "Release Progress",
    "Acceptance Criteria conformance",
    "New tickets started in the last week",
    "Tickets finished in the last week",
    "High visibility tickets",
    "Initiative Release Projection",
    "Release Projection",
    "Release Epics",
]

TICKET_COLUMNS = [
    {"text": "Key", "type": "string"},
    {"text": "Title", "type": "string"},
    {"text": "Epic Key", "type": "string"},
]
EPIC_COLUMNS = [
    {"text": "Key", "type": "string"},
    {"text": "Title", "type": "string"},
]
HIGH_VIZ_COLUMNS = [
    {"text": "Key", "type": "string"},
    {"text": "Title", "type": "string"},
    {"text": "Status", "type": "string"},
]

DEFAULT_HIGH_VIZ_LABEL = "high-viz"


def get_target_data(target: dict) -> dict:
    """The target's "data" parameters.

    Raises:
        ValueError: if data isn't a JSON object
    """
    data = target.get("data") or {}
    if not isinstance(data, dict):
        raise ValueError(f"{target.get('target')} data must be an object, got {data!r}")
    return data


def _quote_list(values: list) -> str:
    return ", ".join(f'"{value}"' for value in values)


def _ensure_list(value) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


class TeamMetricsService:
    """Answers datasource queries from cached Jira data."""

    def __init__(self, client, coordinator: Optional[CacheCoordinator] = None,
                 workflow: Optional[Workflow] = None, field_map: Optional[dict] = None,
                 default_project_key: Optional[str] = None, jira_timezone: str = "UTC",
                 high_viz_label: Optional[str] = None, max_workers: int = 6):
        self.client = client
        self.coordinator = coordinator or CacheCoordinator()
        self.workflow = workflow or Workflow()
        self.field_map = get_field_map(field_map)
        self.default_project_key = default_project_key
        self.jira_timezone = jira_timezone
        self.high_viz_label = high_viz_label or DEFAULT_HIGH_VIZ_LABEL
        self.max_workers = max_workers

        self._metric_handlers = {
            "Current 2 week velocity": self.current_velocity,
            "Rolling 2 week velocity": self.rolling_velocity,
            "Current 2 week average cycle time per point": self.current_cycle_time,
            "Rolling 2 week average cycle time per point": self.rolling_cycle_time,
            "Release Progress": self.release_progress,
            "Acceptance Criteria conformance": self.acceptance_criteria_conformance,
            "New tickets started in the last week": self.new_tickets_started,
            "Tickets finished in the last week": self.tickets_finished,
            "High visibility tickets": self.high_viz_tickets,
            "Initiative Release Projection": self.initiative_projection,
            "Release Projection": self.release_projection,
            "Release Epics": self.release_epics,
        }

    # Target parameters

    def get_to_status(self, target: dict) -> str:
        return get_target_data(target).get("toStatus") or self.workflow.default_to_status

    def get_from_status(self, target: dict) -> str:
        return get_target_data(target).get("fromStatus") or self.workflow.default_from_status

    def get_project_key(self, target: dict) -> Optional[str]:
        """Project to restrict to; None means all projects."""
        return get_target_data(target).get("projectKey")

    def get_table_project_key(self, target: dict) -> Optional[str]:
        return self.get_project_key(target) or self.default_project_key

    def get_label(self, target: dict) -> str:
        return get_target_data(target).get("label") or self.high_viz_label

    def get_velocity_source(self, target: dict) -> str:
        v_source = get_target_data(target).get("vSource") or DEFAULT_VELOCITY_SOURCE
        if v_source not in VELOCITY_SOURCES:
            logger.warning(f"Unknown velocity source '{v_source}', using {DEFAULT_VELOCITY_SOURCE}")
            v_source = DEFAULT_VELOCITY_SOURCE
        return v_source

    def get_release_date(self, target: dict):
        release_date = get_target_data(target).get("releaseDate")
        if release_date is None:
            return None
        parsed = parse_date(release_date)
        if parsed is None:
            logger.warning(f"Ignoring unparseable release date '{release_date}'")
        return parsed

    def _require_id(self, target: dict, field: str) -> str:
        value = normalize_id(get_target_data(target).get(field))
        if value is None:
            raise ValueError(f"{target.get('target')} needs '{field}' in its data")
        return value

    def get_version_ids(self, target: dict) -> list:
        ids = [normalize_id(v) for v in _ensure_list(get_target_data(target).get("versionIds"))]
        return [v for v in ids if v is not None]

    # Cached computations

    def get_issue_corpus(self, request_id: str, window: dict):
        """CacheEntry holding every Initiative, Epic, Story and Bug."""
        return self.coordinator.get_or_recompute(
            "issueCorpus", {}, window,
            lambda previous: fetch_issue_corpus(
                self.client, previous, window, request_id, self.jira_timezone
            )
        )

    def get_event_log(self, request_id: str, window: dict):
        corpus = self.get_issue_corpus(request_id, window)

        def recompute(previous):
            logger.info(f"{request_id}: Executing event log build ({len(corpus.value)} issues)")
            return build_event_log(corpus.value, self.field_map), corpus.last_update_time

        return self.coordinator.get_or_recompute(
            "eventLog", {"corpusUpdated": corpus.last_update_time.isoformat()}, window, recompute
        )

    def get_velocity_series(self, request_id: str, window: dict, completion_statuses: list,
                            project_key: Optional[str]) -> list:
        corpus = self.get_issue_corpus(request_id, window)
        params = {
            "completionStatuses": list(completion_statuses),
            "from": to_epoch_ms(window["from"]),
            "end": to_epoch_ms(window_end(window)),
            "intervalMs": window["intervalMs"],
            "corpusUpdated": corpus.last_update_time.isoformat(),
        }

        def recompute(previous):
            logger.info(f"{request_id}: Executing velocity (projectKey={project_key})")
            velocities = calculate_velocity_series(
                corpus.value, completion_statuses, window, project_key, self.field_map
            )
            return velocities, window_end(window)

        entry = self.coordinator.get_or_recompute(
            f"velocity:{project_key}:{','.join(completion_statuses)}", params, window, recompute
        )
        return entry.value

    def get_cycle_time_series(self, request_id: str, window: dict, from_statuses: list,
                              to_statuses: list, project_key: Optional[str]) -> list:
        corpus = self.get_issue_corpus(request_id, window)
        params = {
            "fromStatuses": list(from_statuses),
            "toStatuses": list(to_statuses),
            "from": to_epoch_ms(window["from"]),
            "end": to_epoch_ms(window_end(window)),
            "intervalMs": window["intervalMs"],
            "corpusUpdated": corpus.last_update_time.isoformat(),
        }

        def recompute(previous):
            logger.info(f"{request_id}: Executing cycle time (projectKey={project_key})")
            cycle_times = calculate_cycle_time_series(
                corpus.value, from_statuses, to_statuses, window, project_key, self.field_map
            )
            return cycle_times, window_end(window)

        entry = self.coordinator.get_or_recompute(
            f"cycleTime:{project_key}:{','.join(from_statuses)}:{','.join(to_statuses)}",
            params, window, recompute
        )
        return entry.value

    def get_scope_and_burnup(self, request_id: str, window: dict, target_id: str,
                             is_release: bool) -> dict:
        event_log = self.get_event_log(request_id, window)
        kind = "release" if is_release else "initiative"
        params = {
            "end": to_epoch_ms(window_end(window)),
            "eventLogUpdated": event_log.last_update_time.isoformat(),
        }

        def recompute(previous):
            logger.info(f"{request_id}: Executing scope and burnup ({kind}={target_id})")
            result = calculate_scope_and_burnup(event_log.value, target_id, is_release, window)
            return result, result["lastUpdateTime"]

        entry = self.coordinator.get_or_recompute(
            f"scope:{kind}:{target_id}", params, window, recompute
        )
        return entry.value

    # Metrics

    def _completion_statuses(self, target: dict) -> list:
        return self.workflow.future_statuses(self.get_to_status(target), completion_only=True)

    def _cycle_time_statuses(self, target: dict) -> tuple:
        from_statuses = self.workflow.previous_statuses(self.get_from_status(target))
        to_statuses = self.workflow.future_statuses(self.get_to_status(target))
        return from_statuses, to_statuses

    def current_velocity(self, request_id: str, window: dict, target: dict) -> list:
        velocities = self.get_velocity_series(
            request_id, window, self._completion_statuses(target), self.get_project_key(target)
        )
        return [{"target": target["target"], "datapoints": velocities[-1:]}]

    def rolling_velocity(self, request_id: str, window: dict, target: dict) -> list:
        velocities = filter_from_window(self.get_velocity_series(
            request_id, window, self._completion_statuses(target), self.get_project_key(target)
        ), window)
        # Carry the latest velocity on to the end of a window reaching into the future
        pad_end_to_window(velocities, window)
        return [{"target": target["target"], "datapoints": velocities}]

    def current_cycle_time(self, request_id: str, window: dict, target: dict) -> list:
        from_statuses, to_statuses = self._cycle_time_statuses(target)
        cycle_times = self.get_cycle_time_series(
            request_id, window, from_statuses, to_statuses, self.get_project_key(target)
        )
        return [{"target": target["target"], "datapoints": cycle_times[-1:]}]

    def rolling_cycle_time(self, request_id: str, window: dict, target: dict) -> list:
        from_statuses, to_statuses = self._cycle_time_statuses(target)
        cycle_times = filter_from_window(self.get_cycle_time_series(
            request_id, window, from_statuses, to_statuses, self.get_project_key(target)
        ), window)
        pad_end_to_window(cycle_times, window)
        return [{"target": target["target"], "datapoints": cycle_times}]

    def _single_release_progress(self, request_id: str, window: dict, version_id: str) -> dict:
        version = self.client.get_version(version_id)
        scope_and_burnup = self.get_scope_and_burnup(request_id, window, version_id, True)

        scope = scope_and_burnup["scopeData"][-1][0]
        done = scope_and_burnup["burnupData"][-1][0]
        # A release with nothing in it has no meaningful progress
        complete_pct = done / scope * 100 if scope != 0 else float("nan")

        return {
            "target": version.get("name") or version_id,
            "datapoints": [[complete_pct, to_epoch_ms(scope_and_burnup["lastUpdateTime"])]]
        }

    def release_progress(self, request_id: str, window: dict, target: dict) -> list:
        """Percent complete of each release in versionIds, fetched in parallel."""
        version_ids = self.get_version_ids(target)
        if not version_ids:
            return []

        results = {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(version_ids))) as executor:
            futures = {
                executor.submit(self._single_release_progress, request_id, window, v): v
                for v in version_ids
            }
            for future in as_completed(futures):
                results[futures[future]] = future.result()

        return [results[v] for v in version_ids]

    def _projection(self, request_id: str, window: dict, target: dict, target_id: str,
                    is_release: bool) -> list:
        scope_and_burnup = self.get_scope_and_burnup(request_id, window, target_id, is_release)
        scope_data = clip_to_window_start(scope_and_burnup["scopeData"], window)
        burnup_data = clip_to_window_start(scope_and_burnup["burnupData"], window)

        v_bounds = None
        if window["to"] > window["now"]:
            v_bounds = self.get_velocity_bounds(request_id, window, target)

        return build_projection(
            scope_data, burnup_data, v_bounds, window, self.get_release_date(target)
        )

    def get_velocity_bounds(self, request_id: str, window: dict, target: dict) -> dict:
        if self.get_velocity_source(target) == "Explicit":
            return get_explicit_velocity_bounds(get_target_data(target))

        project_key = self.get_project_key(target)
        velocities = self.get_velocity_series(
            request_id, window, self._completion_statuses(target), project_key
        )
        logger.info(f"{request_id}: Executing velocity bounds (projectKey={project_key})")
        return get_velocity_bounds_from_series(velocities, window)

    def initiative_projection(self, request_id: str, window: dict, target: dict) -> list:
        initiative_id = self._require_id(target, "initiativeId")
        return self._projection(request_id, window, target, initiative_id, False)

    def release_projection(self, request_id: str, window: dict, target: dict) -> list:
        release_id = self._require_id(target, "releaseId")
        return self._projection(request_id, window, target, release_id, True)

    def release_epics(self, request_id: str, window: dict, target: dict) -> list:
        """Table of the Epics whose Stories or Bugs are in any of the releases."""
        version_ids = self.get_version_ids(target)
        rows = []
        if version_ids:
            epic_link = self.field_map["epicLink"]
            jql = f"fixVersion IN ({', '.join(version_ids)}) AND issuetype IN (Story, Bug)"
            logger.info(f"{request_id}: Executing release epics ({jql})")
            issues = self.client.search_all(
                jql, expand=None, fields=f"issuetype,{epic_link}", request_id=request_id
            )

            epic_keys = []
            for issue in issues:
                epic_key = issue.get("fields", {}).get(epic_link)
                if epic_key and epic_key not in epic_keys:
                    epic_keys.append(epic_key)

            if epic_keys:
                epics = self.client.search_all(
                    f"key IN ({', '.join(epic_keys)})", expand=None, fields="summary",
                    request_id=request_id
                )
                rows = [[epic.get("key"), epic.get("fields", {}).get("summary")] for epic in epics]

        return [{"target": target["target"], "columns": EPIC_COLUMNS, "rows": rows, "type": "table"}]

    def _project_jql(self, target: dict, jql: str) -> str:
        project_key = self.get_table_project_key(target)
        if project_key:
            return f'project = "{project_key}" AND {jql}'
        return jql

    def _tickets_table(self, request_id: str, target: dict, jql: str) -> list:
        jql = self._project_jql(target, jql)
        logger.info(f"{request_id}: Executing tickets table ({jql})")

        epic_link = self.field_map["epicLink"]
        issues = self.client.search_all(
            jql, expand=None, fields=f"summary,{epic_link}", request_id=request_id
        )
        rows = [
            [issue.get("key"), issue.get("fields", {}).get("summary"),
             issue.get("fields", {}).get(epic_link)]
            for issue in issues
        ]
        return [{"target": target["target"], "columns": TICKET_COLUMNS, "rows": rows, "type": "table"}]

    def new_tickets_started(self, request_id: str, window: dict, target: dict) -> list:
        not_started = _quote_list(self.workflow.previous_statuses(self.get_from_status(target)))
        jql = f"status changed from ({not_started}) after -1w AND status not in ({not_started})"
        return self._tickets_table(request_id, target, jql)

    def tickets_finished(self, request_id: str, window: dict, target: dict) -> list:
        finished = _quote_list(self._completion_statuses(target))
        jql = f"status changed to ({finished}) after -1w AND status in ({finished})"
        return self._tickets_table(request_id, target, jql)

    def high_viz_tickets(self, request_id: str, window: dict, target: dict) -> list:
        """Table of the labelled tickets with their status and status detail."""
        jql = self._project_jql(target, f'labels = "{self.get_label(target)}"')
        logger.info(f"{request_id}: Executing high visibility tickets ({jql})")

        status_detail = self.field_map["highVizStatus"]
        issues = self.client.search_all(
            jql, expand=None, fields=f"summary,status,{status_detail}", request_id=request_id
        )

        rows = []
        for issue in issues:
            fields = issue.get("fields", {})
            status = (fields.get("status") or {}).get("name", "")
            detail = fields.get(status_detail)
            # Select list values come back as {"value": ...}
            if isinstance(detail, dict):
                detail = detail.get("value")
            if detail:
                status = f"{status} {detail}"
            rows.append([issue.get("key"), fields.get("summary"), status])

        return [{"target": target["target"], "columns": HIGH_VIZ_COLUMNS, "rows": rows,
                 "type": "table"}]

    def acceptance_criteria_conformance(self, request_id: str, window: dict,
                                        target: dict) -> list:
        """Percentage of the labelled tickets that have acceptance criteria.

        No matching tickets gives a missing value rather than 0%.
        """
        jql = self._project_jql(target, f'labels = "{self.get_label(target)}"')
        logger.info(f"{request_id}: Executing acceptance criteria conformance ({jql})")

        ac_field = self.field_map["acceptanceCriteria"]
        issues = self.client.search_all(jql, expand=None, fields=ac_field, request_id=request_id)

        with_ac = sum(
            1 for issue in issues if issue.get("fields", {}).get(ac_field) not in (None, "")
        )
        conformance = with_ac / len(issues) * 100 if issues else float("nan")
        return [{"target": target["target"],
                 "datapoints": [[conformance, to_epoch_ms(window["now"])]]}]

    # Queries

    def run_target(self, request_id: str, window: dict, target: dict) -> list:
        """Results for one dashboard target (possibly several series)."""
        name = target.get("target")
        handler = self._metric_handlers.get(name)
        if handler is None:
            logger.warning(f"{request_id}: Ignoring unknown metric '{name}'")
            return []
        return handler(request_id, window, target)

    def query(self, request_id: str, window: dict, targets: list) -> list:
        """Run every target in parallel, keeping the request's target order.

        A target that fails (Jira unreachable, missing parameters) is reported as
        {"target", "error"} without affecting the others.
        """
        results = {}

        def run(target):
            try:
                return self.run_target(request_id, window, target)
            except (JiraFetchError, ValueError) as e:
                logger.error(f"{request_id}: Failed to calculate '{target.get('target')}': {e}")
                return [{"target": target.get("target"), "error": str(e)}]

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {executor.submit(run, t): i for i, t in enumerate(targets)}
            for future in as_completed(futures):
                results[futures[future]] = future.result()

        output = []
        for i in range(len(targets)):
            output.extend(results[i])
        return output
