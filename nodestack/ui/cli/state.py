"""
CLI commands for the saved installation state.

Thin wrappers over ``InstallationStateStore``.
"""

from __future__ import annotations

import sys

import click

from nodestack.ui.cli.common import SERVICE_COLORS, echo_json, get_runtime


@click.group()
def state() -> None:
    """Installation state: show, can-resume, history, clear."""


@state.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def show(ctx: click.Context, as_json: bool) -> None:
    """Show where the installation currently is."""
    store = get_runtime(ctx).store
    current = store.current()

    if as_json:
        echo_json(current.to_json_dict() if current else None)
        return

    if current is None:
        click.secho("No installation in progress.", fg="yellow")
        return

    click.secho(f"\n📋 {current.installation_id}", fg="cyan", bold=True)
    click.echo(f"   Phase:    {current.phase.value}")
    click.echo(f"   Step:     {current.current_step}")
    click.echo(f"   Profiles: {', '.join(current.selection.profiles) or '-'}")
    click.echo(f"   Started:  {current.started_at}")
    click.echo(f"   Activity: {current.last_activity}")

    if current.services:
        click.secho("\n   Services:", bold=True)
        for svc in current.services:
            line = f"     • {svc.name}: {svc.status.value}"
            if svc.error:
                line += f" ({svc.error})"
            click.secho(line, fg=SERVICE_COLORS.get(svc.status.value, "white"))

    if current.sync_operations:
        click.secho("\n   Sync operations:", bold=True)
        for op in current.sync_operations:
            click.echo(f"     • {op.service}: {op.status} {op.progress_pct:.1f}%")

    if current.user_decisions and ctx.obj.get("verbose"):
        click.secho("\n   Decisions:", bold=True)
        for decision in current.user_decisions:
            click.echo(f"     • {decision.timestamp} {decision.decision}: {decision.context}")
    click.echo()


@state.command("can-resume")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def can_resume(ctx: click.Context, as_json: bool) -> None:
    """Tell whether the saved installation can be resumed (exit 1 if not)."""
    check = get_runtime(ctx).store.can_resume()

    if as_json:
        echo_json(check.model_dump())
    elif check.can_resume:
        click.secho(f"✅ {check.message}", fg="green")
    else:
        click.secho(f"⊘ {check.message} ({check.reason})", fg="yellow")

    if not check.can_resume:
        sys.exit(1)


@state.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def history(ctx: click.Context, as_json: bool) -> None:
    """List saved snapshots, newest first."""
    entries = get_runtime(ctx).store.history()

    if as_json:
        echo_json(entries)
        return

    if not entries:
        click.secho("No snapshots.", fg="yellow")
        return

    for entry in entries:
        if "error" in entry:
            click.secho(f"   {entry['timestamp']}  {entry['error']}", fg="red")
            continue
        profiles = ", ".join(entry.get("profiles") or []) or "-"
        click.echo(f"   {entry['timestamp']}  {entry.get('phase')}  {entry.get('current_step')}  [{profiles}]")


@state.command()
@click.option("--yes", "-y", is_flag=True, help="Don't ask for confirmation.")
@click.pass_context
def clear(ctx: click.Context, yes: bool) -> None:
    """Drop the saved installation and cancel background tasks."""
    if not yes:
        click.confirm("Clear the saved installation state?", abort=True)
    get_runtime(ctx).engine.start_over()
    click.secho("🗑️  Installation state cleared", fg="green")
