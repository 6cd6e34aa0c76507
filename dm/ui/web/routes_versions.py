"""
Version store routes — list, install (SSE), use, uninstall.

Blueprint: versions_bp
Prefix: /api
Routes:
    /api/versions     GET   installed + available
    /api/install      POST  {"version": "0.3.9"}  → text/event-stream
    /api/use          POST  {"version": "0.3.9"}
    /api/uninstall    POST  {"version": "0.3.8", "force": false}
"""

from __future__ import annotations

import json
import logging

from flask import Blueprint, Response, jsonify, request, stream_with_context

from dm.core.errors import DmError, InvalidVersionSpec
from dm.ui.web.helpers import error_response, home

logger = logging.getLogger(__name__)

versions_bp = Blueprint("versions", __name__)


def _version_param(body: dict) -> str:
    version = body.get("version")
    if not isinstance(version, str) or not version.strip():
        raise InvalidVersionSpec("Request body must include a non-empty 'version'")
    return version


@versions_bp.route("/versions")
def versions_list():  # type: ignore[no-untyped-def]
    """Installed versions; ``?installed=1`` skips the release catalog."""
    from dm.core.models import VersionsReport
    from dm.core.services.version_registry import list_versions, versions_report

    if request.args.get("installed"):
        report = VersionsReport(installed=list_versions(home()))
    else:
        report = versions_report(home())
    return jsonify(report.model_dump(mode="json"))


@versions_bp.route("/install", methods=["POST"])
def versions_install():  # type: ignore[no-untyped-def]
    """Stream install progress as server-sent events.

    Each event is ``data: {...}``; progress events carry ``stage``, the
    last one carries ``done: true`` with either ``result`` or the error.
    """
    from dm.core.models import parse_version_spec
    from dm.core.services.install import InstallRun

    body = request.get_json(silent=True) or {}
    version = body.get("version")
    try:
        if version is not None and not isinstance(version, str):
            raise InvalidVersionSpec("'version' must be a string")
        version = version or None
        parse_version_spec(version)
    except DmError as e:
        return error_response(e)

    dm_home = home()

    def generate():
        run = InstallRun(dm_home, version)
        finished = False
        try:
            for event in run:
                yield f"data: {event.model_dump_json()}\n\n"
            try:
                result = run.result()
            except DmError as e:
                payload = {"done": True, "ok": False, **e.to_dict()}
            else:
                data = result.model_dump(mode="json")
                data["version"] = result.version
                payload = {"done": True, "ok": True, "result": data}
            finished = True
            yield f"data: {json.dumps(payload)}\n\n"
        finally:
            if not finished:
                # Client went away mid-stream
                logger.info("Install stream closed early — cancelling")
                run.cancel()

    return Response(
        stream_with_context(generate()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@versions_bp.route("/use", methods=["POST"])
def versions_use():  # type: ignore[no-untyped-def]
    from dm.core.services.version_registry import use_version

    body = request.get_json(silent=True) or {}
    installed = use_version(home(), _version_param(body))
    return jsonify(installed.model_dump(mode="json"))


@versions_bp.route("/uninstall", methods=["POST"])
def versions_uninstall():  # type: ignore[no-untyped-def]
    from dm.core.services.version_registry import uninstall

    body = request.get_json(silent=True) or {}
    removed = uninstall(home(), _version_param(body), force=bool(body.get("force")))
    return jsonify({"uninstalled": removed.version, "was_active": removed.active})
