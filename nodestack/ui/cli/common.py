"""
Shared CLI plumbing: one Runtime per invocation.
"""

from __future__ import annotations

import json
import sys
from typing import Any

import click

from nodestack.core.config.loader import ConfigError
from nodestack.core.use_cases.runtime import Runtime, build_runtime


def get_runtime(ctx: click.Context, *, mock: bool = False) -> Runtime:
    """The invocation's Runtime, built on first use.

    Tests pass a pre-built one as ``obj={"runtime": ...}``.
    """
    obj = ctx.find_root().ensure_object(dict)
    runtime = obj.get("runtime")
    if runtime is None:
        try:
            runtime = build_runtime(config_path=obj.get("config_path"), mock=mock or obj.get("mock", False))
        except ConfigError as e:
            click.secho(f"❌ {e}", fg="red", err=True)
            sys.exit(2)
        obj["runtime"] = runtime
    return runtime


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


STATUS_ICONS = {
    "healthy": ("💚", "green"),
    "degraded": ("🟡", "yellow"),
    "unhealthy": ("🔴", "red"),
    "unknown": ("❔", "white"),
}

SERVICE_COLORS = {
    "pending": "white",
    "building": "cyan",
    "starting": "cyan",
    "syncing": "yellow",
    "running": "green",
    "error": "red",
}
