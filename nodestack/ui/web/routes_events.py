"""
SSE event stream endpoint.

Provides ``GET /api/events``, a Server-Sent Events stream of installer
events: task progress and completion, node readiness, install phases.

Wire format (Server-Sent Events)::

    event: task:progress
    id: 47
    data: {"v":1,"ts":1739648400.123,"seq":47,"type":"task:progress","key":"task-...","data":{...}}

On reconnect the browser sends ``Last-Event-Id`` and the stream replays
from the bus's ring buffer.
"""

from __future__ import annotations

import json

from flask import Blueprint, Response, request

from nodestack.ui.web.server import get_runtime

events_bp = Blueprint("events", __name__)


@events_bp.route("/events")
def event_stream():  # type: ignore[no-untyped-def]
    """SSE endpoint: streams events to the client.

    Query params:
        since (int): Resume from this sequence number. Overridden
            by ``Last-Event-Id`` header if present.
        heartbeat (float): Seconds between heartbeats when idle.
    """
    since = request.args.get("since", 0, type=int)
    heartbeat = request.args.get("heartbeat", 30.0, type=float)

    last_event_id = request.headers.get("Last-Event-Id")
    if last_event_id is not None and last_event_id.isdigit():
        since = max(since, int(last_event_id))

    bus = get_runtime().event_bus

    def generate():  # type: ignore[no-untyped-def]
        for event in bus.subscribe(since=since, heartbeat_interval=heartbeat):
            yield (
                f"event: {event['type']}\n"
                f"id: {event['seq']}\n"
                f"data: {json.dumps(event, default=str)}\n\n"
            )

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
    )
