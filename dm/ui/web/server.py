"""
HTTP API server — Flask app factory.

Creates the Flask application exposing the engine operations as a
JSON API under ``/api``.  Every handler is a thin caller; error
categories map to status codes in ``helpers.error_response``.
"""

from __future__ import annotations

import logging
from pathlib import Path

from flask import Flask

logger = logging.getLogger(__name__)


def create_app(home: Path | None = None) -> Flask:
    """Create and configure the Flask application.

    Args:
        home: dm home directory (default: $DM_HOME or ~/.dm).

    Returns:
        Configured Flask application.
    """
    from dm.core.config.loader import resolve_home
    from dm.core.context import set_home

    app = Flask(__name__)

    resolved = Path(home) if home is not None else resolve_home()
    app.config["DM_HOME"] = str(resolved)
    set_home(resolved)

    # Register blueprints
    from dm.ui.web.routes_runtime import runtime_bp
    from dm.ui.web.routes_versions import versions_bp

    app.register_blueprint(versions_bp, url_prefix="/api")
    app.register_blueprint(runtime_bp, url_prefix="/api")

    from dm.core.errors import DmError
    from dm.ui.web.helpers import error_response

    @app.errorhandler(DmError)
    def _handle_dm_error(err: DmError):  # type: ignore[no-untyped-def]
        return error_response(err)

    logger.info("HTTP API app created (home=%s)", resolved)
    return app


def run_server(
    app: Flask,
    host: str = "127.0.0.1",
    port: int = 3210,
    debug: bool = False,
) -> None:
    """Run the Flask development server."""
    logger.info("Starting HTTP API on %s:%d", host, port)
    app.run(host=host, port=port, debug=debug, use_reloader=False, threaded=True)
