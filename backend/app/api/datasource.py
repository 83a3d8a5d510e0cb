"""Grafana simple JSON datasource endpoints."""

import math
from datetime import datetime, timezone

from flask import Blueprint, Response, current_app, jsonify, request

from services.issue_fields import parse_date
from services.jira_client import JiraFetchError
from services.team_metrics import METRICS

bp = Blueprint("datasource", __name__)

DEFAULT_INTERVAL_MS = 24 * 60 * 60 * 1000


def get_metrics_service():
    return current_app.extensions["team_metrics"]


def sanitize(value):
    """Replace NaN (no data) with None so it serializes as JSON null."""
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, dict):
        return {k: sanitize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [sanitize(v) for v in value]
    return value


def build_window(body: dict, now: datetime) -> dict:
    """Build the query window from a Grafana /query body.

    Body fields used:
        - range: {"from": ISO datetime, "to": ISO datetime}
        - intervalMs: Sample spacing in milliseconds
        - maxDataPoints: Passed through

    Raises:
        ValueError: if the range is missing or unparseable
    """
    time_range = body.get("range") or {}
    window_from = parse_date(time_range.get("from"))
    window_to = parse_date(time_range.get("to"))
    if window_from is None or window_to is None:
        raise ValueError("Request needs a range with 'from' and 'to' datetimes")

    try:
        interval_ms = int(body.get("intervalMs") or DEFAULT_INTERVAL_MS)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid intervalMs: {body.get('intervalMs')!r}")

    return {
        "now": now,
        "from": window_from,
        "to": window_to,
        "intervalMs": interval_ms,
        "maxDataPoints": body.get("maxDataPoints"),
    }


@bp.route("/", methods=["GET"])
def index():
    """Connection check used by Grafana when the datasource is saved."""
    now = datetime.now(timezone.utc)
    return Response(f"{now.isoformat()}: OK", mimetype="text/plain")


@bp.route("/test-jira", methods=["GET"])
def test_jira():
    """Check the configured Jira credentials by fetching the current user."""
    try:
        return jsonify(get_metrics_service().client.get_myself())
    except JiraFetchError as e:
        current_app.logger.warning(f"Jira connection test failed: {e}")
        return jsonify({"error": str(e)}), 502


@bp.route("/search", methods=["GET", "POST"])
def search():
    """Metric names offered in the Grafana query editor."""
    return jsonify(METRICS)


@bp.route("/query", methods=["POST"])
def query():
    """Answer a Grafana query.

    Expects JSON body with:
        - requestId: Grafana's request id, e.g. "Q12" (used in logs)
        - range, intervalMs, maxDataPoints: see build_window
        - targets: [{"target": metric name, "refId": ..., "data": {...}}]

    Returns:
        List of time series ({target, datapoints}) and tables
        ({target, columns, rows, type}); targets that failed come back as
        {target, error}.
    """
    now = datetime.now(timezone.utc)
    body = request.get_json(silent=True)

    if not body or not isinstance(body, dict):
        return jsonify({"error": "Missing request body"}), 400

    targets = [t for t in body.get("targets") or [] if isinstance(t, dict) and t.get("target")]
    if not targets:
        return jsonify({"error": "No targets in request"}), 400

    try:
        window = build_window(body, now)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    request_id = body.get("requestId") or "Q?"
    current_app.logger.info(
        f"{request_id}: Query for {', '.join(t['target'] for t in targets)} "
        f"({window['from'].isoformat()} to {window['to'].isoformat()})"
    )

    results = get_metrics_service().query(request_id, window, targets)
    return jsonify(sanitize(results))
