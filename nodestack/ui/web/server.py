"""
Web server: Flask app factory.

A thin HTTP surface over one Runtime: the SSE event stream plus JSON
endpoints for profiles, resolution, state and background tasks.
"""

from __future__ import annotations

import logging

from flask import Flask, current_app

from nodestack.core.use_cases.runtime import Runtime

logger = logging.getLogger(__name__)

_EXTENSION = "nodestack"


def create_app(runtime: Runtime) -> Flask:
    """Create and configure the Flask application.

    Args:
        runtime: Wired installer components shared by every request.

    Returns:
        Configured Flask application.
    """
    app = Flask(__name__)
    app.extensions[_EXTENSION] = runtime
    app.config["MOCK_MODE"] = runtime.mock

    from nodestack.ui.web.routes_api import api_bp
    from nodestack.ui.web.routes_events import events_bp
    from nodestack.ui.web.routes_tasks import tasks_bp

    app.register_blueprint(api_bp, url_prefix="/api")
    app.register_blueprint(events_bp, url_prefix="/api")
    app.register_blueprint(tasks_bp, url_prefix="/api")

    logger.info("Web app created (state=%s)", runtime.settings.state_dir)
    return app


def get_runtime() -> Runtime:
    """The Runtime of the app handling the current request."""
    return current_app.extensions[_EXTENSION]


def run_server(
    app: Flask,
    host: str = "127.0.0.1",
    port: int = 8000,
    debug: bool = False,
) -> None:
    """Run the Flask development server."""
    logger.info("Starting web API on %s:%d", host, port)
    app.run(host=host, port=port, debug=debug, use_reloader=False, threaded=True)
