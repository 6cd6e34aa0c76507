"""
HTTP API shared helpers.

Functions used across the route blueprints: the home directory of
the running app and the error → status code mapping.
"""

from __future__ import annotations

from pathlib import Path

from flask import current_app, jsonify

from dm.core.errors import ENVIRONMENT, INTERNAL, TRANSIENT, USER, DmError

_CATEGORY_STATUS = {
    USER: 400,
    TRANSIENT: 503,
    ENVIRONMENT: 424,
    INTERNAL: 500,
}

# User errors that are about state rather than input
_CODE_STATUS = {
    "not_found": 404,
    "not_installed": 404,
    "in_use": 409,
    "already_running": 409,
    "not_running": 409,
    "no_active_version": 409,
    "cancelled": 409,
}


def home() -> Path:
    return Path(current_app.config["DM_HOME"])


def status_for(err: DmError) -> int:
    return _CODE_STATUS.get(err.code) or _CATEGORY_STATUS.get(err.category, 500)


def error_response(err: DmError):  # type: ignore[no-untyped-def]
    return jsonify(err.to_dict()), status_for(err)
