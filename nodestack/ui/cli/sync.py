"""
CLI commands for node sync progress.
"""

from __future__ import annotations

import sys

import click

from nodestack.ui.cli.common import echo_json, get_runtime


@click.group()
def sync() -> None:
    """Node sync: one-off progress check."""


@sync.command()
@click.option("--samples", "-n", default=2, type=int, show_default=True,
              help="Readings to take (two or more give a rate and ETA).")
@click.option("--interval", default=5.0, type=float, show_default=True, help="Seconds between readings.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, samples: int, interval: float, as_json: bool) -> None:
    """Poll the local node and show height, percentage and ETA."""
    import time

    from nodestack.core.models.sync import Disconnected
    from nodestack.core.sync.tracker import format_eta

    runtime = get_runtime(ctx)
    key = runtime.rpc.endpoint
    result = None
    for n in range(max(samples, 1)):
        if n:
            time.sleep(interval)
        result = runtime.tracker.check(key, runtime.rpc)
        if isinstance(result, Disconnected):
            break

    assert result is not None
    if as_json:
        echo_json(result.model_dump(mode="json"))
        sys.exit(1 if isinstance(result, Disconnected) else 0)

    if isinstance(result, Disconnected):
        reason = "timed out" if result.timed_out else result.error
        click.secho(f"🔌 Node not reachable at {key}: {reason}", fg="red")
        sys.exit(1)

    if result.is_synced:
        click.secho(f"✅ Synced at height {result.current_height}", fg="green")
        return

    click.secho(f"⏳ {result.percentage:.2f}% ({result.current_height}/{result.target_height})",
                fg="yellow", bold=True)
    click.echo(f"   Blocks remaining: {result.blocks_remaining}")
    rate = f"{result.rate_blocks_per_sec:.1f} blocks/s" if result.rate_blocks_per_sec is not None else "unknown"
    click.echo(f"   Rate: {rate}")
    click.echo(f"   ETA:  {format_eta(result.eta_seconds)}")
