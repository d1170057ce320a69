"""Main CLI for the agent supervisor."""

import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from ..core.config import ConfigError, load_config, resolve_team
from ..core.state import StateCorruptError
from ..core.supervisor import MemberState, Supervisor, SupervisorError
from ..daemon.controller import DaemonController, format_timestamp
from ..daemon.models import DaemonError, DaemonMode
from ..errors.translator import ErrorTranslator

console = Console()

STATUS_STYLES = {
    MemberState.RUNNING: "green",
    MemberState.CRASHED: "red",
    MemberState.STOPPED: "dim",
}

HANDLED_ERRORS = (ConfigError, StateCorruptError, SupervisorError, DaemonError)


def _fail(error: Exception) -> None:
    translator = ErrorTranslator()
    console.print(translator.format_for_cli(translator.translate(error)))
    sys.exit(1)


def _load(ctx, team_name):
    config_file = ctx.obj["config_file"]
    config = load_config(config_file)
    return config, resolve_team(config, team_name)


def _role(member: str) -> str:
    return member.split("-", 1)[0]


@click.group()
@click.option("--config", "-c", "config_file", type=click.Path(path_type=Path), default=None,
              help="Config file (default: ~/.agent-supervisor/config.yml)")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.pass_context
def cli(ctx, config_file, verbose):
    """Agent Supervisor - run and watch worker agents for a team."""
    ctx.ensure_object(dict)
    ctx.obj["config_file"] = config_file
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@click.option("--team", "-t", help="Team name (default: default_team)")
@click.pass_context
def start(ctx, team):
    """Start every member of the team that is not already running."""
    try:
        config, team_entry = _load(ctx, team)
        report = Supervisor(config, team_entry).start()
    except HANDLED_ERRORS as e:
        _fail(e)

    for key in report.cleaned:
        console.print(f"[dim]Cleaned stale entry {key}[/]")
    for member, pid in report.skipped.items():
        console.print(f"  {member}: already running (PID {pid})")
    for member, pid in report.launched.items():
        console.print(f"  [green]{member}: started (PID {pid})[/]")
    for member, error in report.errors.items():
        console.print(f"  [red]{member}: {error}[/]")

    console.print(f"\n[bold]{report.summary()}[/]")
    if not report.ok:
        sys.exit(1)


@cli.command()
@click.option("--team", "-t", help="Team name (default: default_team)")
@click.option("--force", "-f", is_flag=True, help="Kill immediately instead of a graceful stop")
@click.pass_context
def stop(ctx, team, force):
    """Stop every running member of the team."""
    try:
        config, team_entry = _load(ctx, team)
        report = Supervisor(config, team_entry).stop(force=force)
    except HANDLED_ERRORS as e:
        _fail(e)

    for member in report.already_exited:
        console.print(f"  {member}: already exited")
    for member in report.stopped:
        console.print(f"  [green]{member}: stopped[/]")
    for member, error in report.errors.items():
        console.print(f"  [red]{member}: {error}[/]")

    console.print(f"\n[bold]{report.summary()}[/]")
    if not report.ok:
        sys.exit(1)


@cli.command()
@click.option("--team", "-t", help="Team name (default: default_team)")
@click.pass_context
def status(ctx, team):
    """Show member status and clean up entries for crashed workers."""
    try:
        config, team_entry = _load(ctx, team)
        statuses = Supervisor(config, team_entry).status(heal=True)
        daemon_status = DaemonController(config, team_entry).status()
    except HANDLED_ERRORS as e:
        _fail(e)

    table = Table(title=f"Team: {team_entry.name}")
    table.add_column("Member")
    table.add_column("Status")
    table.add_column("PID")
    table.add_column("Started")

    for member, member_status in statuses:
        style = STATUS_STYLES[member_status.state]
        table.add_row(
            member,
            f"[{style}]{member_status.label}[/]",
            str(member_status.pid) if member_status.pid else "-",
            format_timestamp(member_status.started_at) if member_status.started_at else "-",
        )

    console.print(table)
    console.print(f"Daemon: {daemon_status.describe()}")


@cli.command()
@click.option("--team", "-t", help="Team name (default: default_team)")
@click.pass_context
def members(ctx, team):
    """List hired members with their role and status."""
    try:
        config, team_entry = _load(ctx, team)
        statuses = Supervisor(config, team_entry).status(heal=False)
    except HANDLED_ERRORS as e:
        _fail(e)

    if not statuses:
        console.print(f"[yellow]No members hired for team '{team_entry.name}'[/]")
        return

    table = Table(title=f"Members of {team_entry.name}")
    table.add_column("Member")
    table.add_column("Role")
    table.add_column("Status")

    for member, member_status in statuses:
        style = STATUS_STYLES[member_status.state]
        table.add_row(member, _role(member), f"[{style}]{member_status.label}[/]")

    console.print(table)


@cli.group()
def daemon():
    """Manage the background daemon that launches members on repository activity."""


@daemon.command("start")
@click.option("--team", "-t", help="Team name (default: default_team)")
@click.option("--mode", "-m", default=DaemonMode.WEBHOOK.value, help="webhook or poll")
@click.option("--port", "-p", type=int, default=None, help="Webhook listen port")
@click.option("--interval", "-i", type=int, default=None, help="Poll interval in seconds")
@click.pass_context
def daemon_start(ctx, team, mode, port, interval):
    """Start the daemon in the background."""
    try:
        config, team_entry = _load(ctx, team)
        controller = DaemonController(config, team_entry, config_file=ctx.obj["config_file"])
        record = controller.start(mode=mode, port=port, interval=interval)
    except HANDLED_ERRORS as e:
        _fail(e)

    console.print(f"[green]✓ Daemon started for team '{team_entry.name}' (PID {record.pid})[/]")
    if record.mode is DaemonMode.WEBHOOK:
        console.print(f"  Mode: webhook, listening on port {record.port}")
    else:
        console.print(f"  Mode: poll, every {record.interval_secs}s")
    console.print(f"  Log: {controller.paths.log_file}")


@daemon.command("stop")
@click.option("--team", "-t", help="Team name (default: default_team)")
@click.pass_context
def daemon_stop(ctx, team):
    """Stop the daemon (SIGTERM, then SIGKILL after the timeout)."""
    try:
        config, team_entry = _load(ctx, team)
        pid = DaemonController(config, team_entry).stop()
    except HANDLED_ERRORS as e:
        _fail(e)

    console.print(f"[green]✓ Daemon stopped for team '{team_entry.name}' (PID {pid})[/]")


@daemon.command("status")
@click.option("--team", "-t", help="Team name (default: default_team)")
@click.pass_context
def daemon_status(ctx, team):
    """Show whether the daemon is running."""
    try:
        config, team_entry = _load(ctx, team)
        controller = DaemonController(config, team_entry)
        result = controller.status()
    except HANDLED_ERRORS as e:
        _fail(e)

    console.print(f"Daemon for team '{team_entry.name}': {result.describe()}")

    record = result.record
    if record is not None:
        console.print(f"  Mode:    {record.mode.value}")
        if record.mode is DaemonMode.WEBHOOK:
            console.print(f"  Port:    {record.port}")
        else:
            console.print(f"  Interval: {record.interval_secs}s")
        console.print(f"  Started: {format_timestamp(record.started_at)}")
    if result.running:
        console.print(f"  Log:     {controller.paths.log_file}")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
