"""
API routes: catalog, resolution and installation state.

All endpoints return JSON. Grouped under /api/ prefix.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from nodestack.ui.web.server import get_runtime

logger = logging.getLogger(__name__)

api_bp = Blueprint("api", __name__)


# ── Catalog ──────────────────────────────────────────────────────────


@api_bp.route("/profiles")
def api_profiles():  # type: ignore[no-untyped-def]
    catalog = get_runtime().catalog
    return jsonify({
        "profiles": [p.model_dump(mode="json") for p in catalog.profiles.values()],
        "templates": [t.model_dump(mode="json") for t in catalog.templates.values()],
    })


@api_bp.route("/resolve", methods=["POST"])
def api_resolve():  # type: ignore[no-untyped-def]
    """Resolve ``{"profiles": [...]}``. Problems come back as data, 200."""
    body = request.get_json(silent=True) or {}
    profiles = body.get("profiles")
    if not isinstance(profiles, list) or not all(isinstance(p, str) for p in profiles):
        return jsonify({"error": "Body must be {\"profiles\": [\"id\", ...]}"}), 400

    resolution = get_runtime().engine.plan(profiles)
    return jsonify(resolution.model_dump(mode="json") | {"valid": resolution.valid})


# ── State ────────────────────────────────────────────────────────────


@api_bp.route("/state")
def api_state():  # type: ignore[no-untyped-def]
    state = get_runtime().store.current()
    if state is None:
        return jsonify({"error": "No installation in progress"}), 404
    return jsonify(state.to_json_dict())


@api_bp.route("/state/can-resume")
def api_can_resume():  # type: ignore[no-untyped-def]
    check = get_runtime().store.can_resume()
    return jsonify(check.model_dump())


@api_bp.route("/state/history")
def api_state_history():  # type: ignore[no-untyped-def]
    return jsonify({"snapshots": get_runtime().store.history()})


@api_bp.route("/state/clear", methods=["POST"])
def api_state_clear():  # type: ignore[no-untyped-def]
    get_runtime().engine.start_over()
    logger.info("State cleared via web API")
    return jsonify({"cleared": True})
