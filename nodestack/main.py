"""
nodestack: CLI entrypoint.

Usage:
    nodestack --help
    nodestack profiles
    nodestack resolve core indexer-services
    nodestack install --template home-node
"""

from __future__ import annotations

import sys
import time
from pathlib import Path

import click

from nodestack import __version__
from nodestack.core.observability.logging_config import setup_from_env
from nodestack.ui.cli.common import STATUS_ICONS, SERVICE_COLORS, echo_json, get_runtime


@click.group()
@click.version_option(version=__version__, prog_name="nodestack")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to nodestack.yml (default: auto-detect).",
)
@click.option("--mock", is_flag=True, help="Use the mock container runtime and node.")
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
    mock: bool,
) -> None:
    """nodestack: install and watch a profile-based node stack."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["mock"] = mock

    # ── Logging setup (once, at process start) ──────────────────
    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = None
    setup_from_env(level)


# ── Catalog ─────────────────────────────────────────────────────────


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def profiles(ctx: click.Context, as_json: bool) -> None:
    """List installable profiles."""
    catalog = get_runtime(ctx).catalog

    if as_json:
        echo_json([p.model_dump(mode="json") for p in catalog.profiles.values()])
        return

    click.secho(f"\n📦 Profiles ({len(catalog.profiles)})", fg="cyan", bold=True)
    for profile in sorted(catalog.profiles.values(), key=lambda p: (p.startup_rank, p.id)):
        click.secho(f"\n   {profile.id}", bold=True, nl=False)
        click.echo(f"  {profile.name} [rank {profile.startup_rank}]")
        if profile.description:
            click.echo(f"     {profile.description}")
        click.echo(f"     Services: {', '.join(profile.service_names)}")
        r = profile.resources
        click.echo(f"     Needs: {r.cpu_cores:g} CPU, {r.ram_gb:g} GB RAM, {r.disk_gb:g} GB disk")
        if profile.dependencies:
            click.echo(f"     Depends on: {', '.join(profile.dependencies)}")
        if profile.prerequisites:
            click.echo(f"     Requires one of: {', '.join(profile.prerequisites)}")
        if profile.conflicts:
            click.secho(f"     Conflicts with: {', '.join(profile.conflicts)}", fg="yellow")
    click.echo()


@cli.command()
@click.argument("profile_ids", nargs=-1, required=True)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def resolve(ctx: click.Context, profile_ids: tuple[str, ...], as_json: bool) -> None:
    """Resolve a profile selection and show the startup plan."""
    resolution = get_runtime(ctx).engine.plan(list(profile_ids))

    if as_json:
        echo_json(resolution.model_dump(mode="json") | {"valid": resolution.valid})
        sys.exit(0 if resolution.valid else 1)

    if resolution.valid:
        click.secho("✅ Selection resolves", fg="green", bold=True)
    else:
        click.secho("❌ Selection has problems:", fg="red", bold=True)
        for issue in resolution.errors:
            click.echo(f"   • [{issue.type.value}] {issue.message}")
            if issue.alternatives:
                click.echo(f"     Add one of: {', '.join(issue.alternatives)}")

    for warning in resolution.warnings:
        click.secho(f"   ⚠️  {warning.message}", fg="yellow")

    click.echo(f"\n   Resolved: {', '.join(resolution.resolved) or '-'}")
    r = resolution.resources
    click.echo(f"   Needs: {r.cpu_cores:g} CPU, {r.ram_gb:g} GB RAM, {r.disk_gb:g} GB disk")

    if resolution.startup_plan:
        click.secho("\n   Startup plan:", bold=True)
        for n, phase in enumerate(resolution.startup_plan, 1):
            click.echo(f"     {n}. {', '.join(phase.services)}")
    click.echo()

    if not resolution.valid:
        sys.exit(1)


@cli.command()
@click.option("--ram", type=float, default=None, help="Available RAM (GB) to rank templates for.")
@click.option("--cpu", type=float, default=None, help="Available CPU cores.")
@click.option("--disk", type=float, default=None, help="Available disk (GB).")
@click.option("--use-case", default=None, help="personal, community, development, mining...")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def templates(
    ctx: click.Context,
    ram: float | None,
    cpu: float | None,
    disk: float | None,
    use_case: str | None,
    as_json: bool,
) -> None:
    """List installation templates, ranked when resources are given."""
    from nodestack.core.models.profile import Resources
    from nodestack.core.resolver.templates import recommend_templates

    catalog = get_runtime(ctx).catalog

    if ram is None and cpu is None and disk is None:
        if as_json:
            echo_json([t.model_dump(mode="json") for t in catalog.templates.values()])
            return
        click.secho(f"\n🧩 Templates ({len(catalog.templates)})", fg="cyan", bold=True)
        for tpl in catalog.templates.values():
            click.secho(f"   {tpl.id}", bold=True, nl=False)
            click.echo(f"  {tpl.name}: {', '.join(tpl.profiles)}")
        click.echo()
        return

    system = Resources(cpu_cores=cpu or 0, ram_gb=ram or 0, disk_gb=disk or 0)
    ranked = recommend_templates(catalog, system, use_case)

    if as_json:
        echo_json([r.model_dump(mode="json") for r in ranked])
        return

    click.secho("\n🧩 Recommended templates", fg="cyan", bold=True)
    for rec in ranked:
        marker = "⭐" if rec.recommended else ("❌" if rec.suitability == "insufficient" else "  ")
        click.echo(f"   {marker} {rec.template.id} (score {rec.score})")
        if ctx.obj.get("verbose"):
            for reason in rec.reasons:
                click.echo(f"        {reason}")
    click.echo()


# ── Install ─────────────────────────────────────────────────────────


def _wait_for_syncs(ctx: click.Context, poll_s: float = 2.0) -> None:
    from nodestack.core.sync.tracker import format_eta

    monitor = get_runtime(ctx).monitor
    last: dict[str, float | None] = {}
    while tasks := monitor.list():
        for task in tasks:
            pct = task.last_progress.percentage if task.last_progress else None
            if last.get(task.id) != pct:
                eta = format_eta(task.last_progress.eta_seconds if task.last_progress else None)
                shown = f"{pct:.1f}%" if pct is not None else "?"
                click.echo(f"   ⏳ {task.service}: {shown} (ETA {eta})")
                last[task.id] = pct
        time.sleep(poll_s)


def _print_report(report, as_json: bool) -> None:  # type: ignore[no-untyped-def]
    if as_json:
        echo_json(report.to_dict())
        return
    icon = "✅" if report.complete else "⏳"
    click.secho(f"{icon} Installation {report.installation_id}: {report.phase}", bold=True)
    for name, status in report.services.items():
        click.secho(f"   • {name}: {status}", fg=SERVICE_COLORS.get(status, "white"))
    if report.sync_tasks:
        click.echo(f"   Background syncs: {', '.join(report.sync_tasks)}")
    click.echo()


def _run_install(ctx: click.Context, fn, as_json: bool, wait: bool) -> None:  # type: ignore[no-untyped-def]
    from nodestack.core.errors import FatalOrchestrationError, NoStateError, ValidationError

    runtime = get_runtime(ctx)
    try:
        report = fn(runtime.engine)
    except ValidationError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        for issue in e.issues:
            alternatives = getattr(issue, "alternatives", None)
            if alternatives:
                click.echo(f"   Add one of: {', '.join(alternatives)}", err=True)
        sys.exit(1)
    except NoStateError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(1)
    except FatalOrchestrationError as e:
        click.secho(f"❌ Installation halted at {e.stage}", fg="red", bold=True, err=True)
        click.echo(f"   {e.service}: {e}", err=True)
        click.echo("   Fix the cause, then run `nodestack resume` (or `nodestack state clear`).", err=True)
        sys.exit(1)

    if wait and report.sync_tasks:
        _wait_for_syncs(ctx)
        state = runtime.store.current()
        if state is not None:
            report.phase = state.phase.value
            report.services = {s.name: s.status.value for s in state.services}
    _print_report(report, as_json)


@cli.command()
@click.argument("profile_ids", nargs=-1)
@click.option("--template", "-t", default=None, help="Install from a template.")
@click.option("--set", "settings", multiple=True, metavar="KEY=VALUE", help="Configuration value.")
@click.option("--public-while-syncing", is_flag=True,
              help="Use public endpoints for dependents until the local node is synced.")
@click.option("--wait/--no-wait", default=False, help="Block until background syncs finish.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def install(
    ctx: click.Context,
    profile_ids: tuple[str, ...],
    template: str | None,
    settings: tuple[str, ...],
    public_while_syncing: bool,
    wait: bool,
    as_json: bool,
) -> None:
    """Install the given profiles (or a template)."""
    if not profile_ids and not template:
        raise click.UsageError("Give profile ids or --template")

    configuration: dict[str, str] = {}
    for item in settings:
        key, sep, value = item.partition("=")
        if not sep:
            raise click.BadParameter(f"Expected KEY=VALUE, got {item!r}", param_hint="--set")
        configuration[key.strip()] = value.strip()

    _run_install(
        ctx,
        lambda engine: engine.install(
            list(profile_ids) or None,
            configuration,
            template=template,
            public_while_syncing=public_while_syncing,
        ),
        as_json,
        wait,
    )


@cli.command()
@click.option("--public-while-syncing", is_flag=True,
              help="Use public endpoints for dependents until the local node is synced.")
@click.option("--wait/--no-wait", default=False, help="Block until background syncs finish.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def resume(ctx: click.Context, public_while_syncing: bool, wait: bool, as_json: bool) -> None:
    """Continue an interrupted installation."""
    _run_install(
        ctx,
        lambda engine: engine.resume(public_while_syncing=public_while_syncing),
        as_json,
        wait,
    )


# ── Health ──────────────────────────────────────────────────────────


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def health(ctx: click.Context, as_json: bool) -> None:
    """Show installer health: container runtime, node, state, tasks."""
    from nodestack.core.observability.health import check_system_health

    runtime = get_runtime(ctx)
    system_health = check_system_health(
        driver=runtime.driver,
        rpc=runtime.rpc,
        store=runtime.store,
        monitor=runtime.monitor,
    )

    if as_json:
        echo_json(system_health.to_dict())
        return

    icon, color = STATUS_ICONS.get(system_health.status, ("❔", "white"))
    click.echo()
    click.secho(f"{icon} System Health: {system_health.status.upper()}", fg=color, bold=True)
    click.echo(f"   {system_health.timestamp}")
    click.echo()

    for component in system_health.components:
        c_icon, c_color = STATUS_ICONS.get(component.status, ("❔", "white"))
        click.secho(f"   {c_icon} {component.name}", fg=c_color, bold=True)
        click.echo(f"      {component.message}")
        if ctx.obj.get("verbose") and component.details:
            for key, val in component.details.items():
                click.echo(f"      {key}: {val}")

    click.echo()


# ── Web ─────────────────────────────────────────────────────────────


@cli.command()
@click.option("--host", default="127.0.0.1", help="Bind address.")
@click.option("--port", "-p", default=8000, type=int, help="Port number.")
@click.pass_context
def web(ctx: click.Context, host: str, port: int) -> None:
    """Serve the event stream and state API over HTTP."""
    from nodestack.ui.web.server import create_app, run_server

    runtime = get_runtime(ctx)
    app = create_app(runtime)
    debug = ctx.obj.get("debug", False)

    click.echo()
    click.secho("⚡ nodestack — web API", bold=True)
    click.echo(f"   API:    http://{host}:{port}/api")
    click.echo(f"   State:  {runtime.settings.state_dir}")
    if runtime.mock:
        click.secho("   Mode: mock (no real containers)", fg="yellow")
    click.echo()

    run_server(app, host=host, port=port, debug=debug)


# ── Register sub-command groups from nodestack/ui/cli/ ─────────────

from nodestack.ui.cli.fallback import fallback  # noqa: E402
from nodestack.ui.cli.state import state  # noqa: E402
from nodestack.ui.cli.sync import sync  # noqa: E402

cli.add_command(state)
cli.add_command(sync)
cli.add_command(fallback)


if __name__ == "__main__":
    cli()
