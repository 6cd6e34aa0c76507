"""
Runtime routes — status, up, down, doctor, setup, events.

Blueprint: runtime_bp
Prefix: /api
Routes:
    /api/status   GET
    /api/up       POST
    /api/down     POST
    /api/doctor   GET
    /api/setup    POST
    /api/events   GET   ?n=50

The server owns the processes it starts: they are stopped when the
server's supervisor stops them, not left behind as pid files.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request

from dm.ui.web.helpers import home

runtime_bp = Blueprint("runtime", __name__)


@runtime_bp.route("/status")
def runtime_status():  # type: ignore[no-untyped-def]
    from dm.core.services.runtime import status

    return jsonify(status(home()).to_dict())


@runtime_bp.route("/up", methods=["POST"])
def runtime_up():  # type: ignore[no-untyped-def]
    from dm.core.services.runtime import up

    return jsonify(up(home()).to_dict())


@runtime_bp.route("/down", methods=["POST"])
def runtime_down():  # type: ignore[no-untyped-def]
    from dm.core.services.runtime import down

    return jsonify(down(home()).to_dict())


@runtime_bp.route("/doctor")
def runtime_doctor():  # type: ignore[no-untyped-def]
    from dm.core.services.runtime import doctor

    return jsonify(doctor(home()).to_dict())


@runtime_bp.route("/setup", methods=["POST"])
def runtime_setup():  # type: ignore[no-untyped-def]
    """Install uv and the latest dora when missing; returns the SetupReport."""
    from dm.core.services.runtime import setup

    return jsonify(setup(home()).to_dict())


@runtime_bp.route("/events")
def runtime_events():  # type: ignore[no-untyped-def]
    from dm.core.config.loader import events_path
    from dm.core.persistence.events import NdjsonEventSink

    n = request.args.get("n", 50, type=int)
    recent = NdjsonEventSink(events_path(home())).read_recent(n)
    return jsonify({"events": [e.model_dump(mode="json") for e in recent]})
