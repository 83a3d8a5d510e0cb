"""Flask application factory."""

import atexit
import hmac
import json
import os
from flask import Flask, Response, request
from flask_cors import CORS

from services.cache_coordinator import CacheCoordinator
from services.cache_store import SnapshotStore
from services.jira_client import JiraClient
from services.team_metrics import TeamMetricsService
from services.workflow import Workflow

BACKEND_DIR = os.path.join(os.path.dirname(__file__), "..")
DEFAULT_CONFIG_PATH = os.path.join(BACKEND_DIR, "config", "metrics-config.json")
DEFAULT_CACHE_DIR = os.path.join(BACKEND_DIR, "caches")


def load_metrics_config(app):
    """Load workflow, field and cache settings from the metrics config file."""
    config_path = os.environ.get("METRICS_CONFIG", DEFAULT_CONFIG_PATH)

    if os.path.exists(config_path):
        try:
            with open(config_path, "r") as f:
                config = json.load(f)
                app.logger.info(f"Loaded metrics config from {config_path}")
                return config
        except (json.JSONDecodeError, IOError) as e:
            app.logger.warning(f"Failed to load metrics config: {e}")
            return {}
    else:
        app.logger.info("No metrics-config.json found, using default workflow and fields")
        return {}


def build_metrics_service(app, config):
    """Create the metrics service with its Jira client and restored caches."""
    client = JiraClient(
        app.config["JIRA_HOST"],
        app.config["JIRA_USERNAME"],
        app.config["JIRA_PASSWORD"]
    )
    if not app.config["JIRA_HOST"]:
        app.logger.warning("JIRA_HOST is not set, Jira requests will fail")

    cache_dir = app.config["CACHE_DIR"] or config.get("cacheDir") or DEFAULT_CACHE_DIR
    coordinator = CacheCoordinator(store=SnapshotStore(cache_dir))
    coordinator.restore()
    # Snapshots are also written after every corpus update; this catches the rest
    atexit.register(coordinator.close)

    return TeamMetricsService(
        client,
        coordinator=coordinator,
        workflow=Workflow.from_config(config),
        field_map=config.get("fields"),
        default_project_key=config.get("defaultProjectKey"),
        jira_timezone=config.get("jiraTimezone", "UTC"),
        high_viz_label=config.get("highVizLabel")
    )


def require_basic_auth(app):
    """Require HTTP basic auth on every route but /health if HTTP_USER is set."""

    @app.before_request
    def check_credentials():
        user = app.config.get("HTTP_USER")
        if not user or request.path == "/health" or request.method == "OPTIONS":
            return None

        auth = request.authorization
        if auth is not None and hmac.compare_digest(auth.username or "", user) and \
                hmac.compare_digest(auth.password or "", app.config.get("HTTP_PASS") or ""):
            return None

        return Response(
            "Unauthorized", 401, {"WWW-Authenticate": 'Basic realm="jira-metrics"'}
        )


def create_app(test_config=None, metrics_service=None):
    """Create and configure the Flask application.

    Args:
        test_config: Config values overriding the environment
        metrics_service: Prebuilt service (tests); built from config if omitted
    """
    app = Flask(__name__)
    app.config.from_mapping(
        JIRA_HOST=os.environ.get("JIRA_HOST", ""),
        JIRA_USERNAME=os.environ.get("JIRA_USERNAME", ""),
        JIRA_PASSWORD=os.environ.get("JIRA_PASSWORD", ""),
        HTTP_USER=os.environ.get("HTTP_USER"),
        HTTP_PASS=os.environ.get("HTTP_PASS"),
        CACHE_DIR=os.environ.get("CACHE_DIR"),
    )
    if test_config is not None:
        app.config.from_mapping(test_config)

    config = load_metrics_config(app)

    # Grafana calls the datasource from the browser when in "direct" access mode
    CORS(app, resources={
        r"/*": {
            "origins": config.get("corsOrigins", ["http://localhost:3000"]),
            "methods": ["GET", "POST", "OPTIONS"],
            "allow_headers": ["Content-Type", "Authorization"]
        }
    })

    if metrics_service is None:
        metrics_service = build_metrics_service(app, config)
    app.extensions["team_metrics"] = metrics_service

    require_basic_auth(app)

    # Register blueprints
    from app.api import datasource
    app.register_blueprint(datasource.bp)

    # Health check endpoint
    @app.route("/health")
    def health():
        return {"status": "ok"}

    return app
