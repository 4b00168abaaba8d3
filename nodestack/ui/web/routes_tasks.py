"""
Background task routes: list tasks and pause / resume / cancel / check them.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request

from nodestack.core.errors import InvalidTransitionError, TaskNotFoundError
from nodestack.ui.web.server import get_runtime

tasks_bp = Blueprint("tasks", __name__)

_ACTIONS = ("pause", "resume", "cancel", "check")


@tasks_bp.route("/tasks")
def api_tasks():  # type: ignore[no-untyped-def]
    """Active tasks; ``?all=1`` includes finished ones."""
    include = request.args.get("all", "") in ("1", "true", "yes")
    tasks = get_runtime().monitor.list(include_finished=include)
    return jsonify({"tasks": [t.to_dict() for t in tasks]})


@tasks_bp.route("/tasks/<task_id>/<action>", methods=["POST"])
def api_task_action(task_id: str, action: str):  # type: ignore[no-untyped-def]
    if action not in _ACTIONS:
        return jsonify({"error": f"Unknown action '{action}'", "actions": list(_ACTIONS)}), 400

    monitor = get_runtime().monitor
    try:
        if action == "check":
            check = monitor.check_now(task_id)
            return jsonify({
                "task_id": task_id,
                "check": check.model_dump(mode="json") if check else None,
            })
        task = getattr(monitor, action)(task_id)
    except TaskNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except InvalidTransitionError as e:
        return jsonify({"error": str(e)}), 409

    return jsonify({"task": task.to_dict()})
