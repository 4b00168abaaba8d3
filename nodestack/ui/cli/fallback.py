"""
CLI commands for failed-service fallback.

``detect`` only reports and lists the options; nothing changes until the
operator runs ``apply`` with an explicit strategy.
"""

from __future__ import annotations

import sys

import click

from nodestack.core.models.fallback import FallbackStrategy
from nodestack.ui.cli.common import echo_json, get_runtime


@click.group()
def fallback() -> None:
    """Fallback: detect failed services and choose a recovery."""


@fallback.command()
@click.argument("service")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def detect(ctx: click.Context, service: str, as_json: bool) -> None:
    """Health-check SERVICE and list recovery options (exit 1 if it failed)."""
    controller = get_runtime(ctx).fallback
    report = controller.detect_failure(service)
    options = controller.dialog(report) if report else []

    if as_json:
        echo_json({
            "failed": report is not None,
            "report": report.model_dump(mode="json") if report else None,
            "options": [o.model_dump(mode="json") for o in options],
        })
        sys.exit(1 if report else 0)

    if report is None:
        click.secho(f"✅ {service} passes all health checks", fg="green")
        return

    click.secho(f"❌ {service}: {report.failure_class.value}", fg="red", bold=True)
    for check in report.checks:
        mark = "✓" if check.passed else "✗"
        click.echo(f"   {mark} {check.name}{': ' + check.detail if check.detail else ''}")
    if report.dependents:
        click.echo(f"   Affects: {', '.join(report.dependents)}")

    click.secho("\n   Options:", bold=True)
    for option in options:
        star = " (recommended)" if option.recommended else ""
        click.echo(f"     {option.strategy.value}{star}: {option.label}")
        click.echo(f"        {option.description}")
    click.echo(f"\n   Apply with: nodestack fallback apply {service} <strategy>")
    sys.exit(1)


@fallback.command()
@click.argument("service")
@click.argument("strategy", type=click.Choice([s.value for s in FallbackStrategy]))
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def apply(ctx: click.Context, service: str, strategy: str, as_json: bool) -> None:
    """Apply STRATEGY for a failed SERVICE."""
    from nodestack.core.errors import ValidationError

    runtime = get_runtime(ctx)
    try:
        config = runtime.engine.apply_fallback(service, strategy)
    except ValidationError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(1)

    if as_json:
        echo_json(config.model_dump(mode="json"))
        return

    if config.strategy == FallbackStrategy.TROUBLESHOOT:
        info = runtime.fallback.troubleshoot(service)
        click.secho(f"🔧 {service}: {info.message}", bold=True)
        for tip in info.suggestions:
            click.echo(f"   • {tip}")
        if info.logs:
            click.secho("\n   Recent logs:", bold=True)
            for line in info.logs:
                click.echo(f"     {line}")
        return

    if config.strategy == FallbackStrategy.RETRY_LOCAL:
        if config.recovered:
            click.secho(f"✅ {service} recovered after {config.attempts} attempt(s)", fg="green")
        else:
            click.secho(f"❌ {service} still unhealthy after {config.attempts} attempt(s)", fg="red")
            for line in config.troubleshooting:
                click.echo(f"   • {line}")
            sys.exit(1)
        return

    click.secho(f"🌐 Dependents of {service} now use the public endpoint", fg="green")
    for dependent, url in config.endpoints.items():
        click.echo(f"   {dependent} → {url}")
    if config.skip_local:
        click.echo(f"   {service} was stopped and skipped")
