"""Entry point for running the daemon as a detached subprocess."""

import logging
import sys
from pathlib import Path

import click

from .core.config import ConfigError, load_config, resolve_team
from .daemon.controller import DaemonController
from .daemon.models import DaemonError, DaemonPaths
from .utils.rich_logging import setup_daemon_logging


@click.command()
@click.option("--team", "-t", required=True, help="Team to run the daemon for")
@click.option("--mode", type=click.Choice(["webhook", "poll"]), required=True)
@click.option("--port", type=int, default=8484, help="Webhook listen port")
@click.option("--interval", type=int, default=60, help="Poll interval in seconds")
@click.option("--config", "config_file", type=click.Path(path_type=Path), default=None)
def main(team, mode, port, interval, config_file):
    """Run the supervisor daemon in the foreground until signalled."""
    paths = DaemonPaths.for_team(team)

    try:
        config = load_config(config_file)
    except ConfigError as e:
        print(f"[FATAL] {e}", file=sys.stderr)
        sys.exit(1)

    setup_daemon_logging(paths.log_file, max_bytes=config.daemon.max_log_bytes)
    logger = logging.getLogger("agent_supervisor.run_daemon")

    try:
        team_entry = resolve_team(config, team)
        controller = DaemonController(config, team_entry, config_file=config_file, paths=paths)
        controller.run(mode, port, interval)
    except (ConfigError, DaemonError) as e:
        logger.error(str(e))
        sys.exit(1)
    except Exception as e:
        logger.exception(f"Daemon crashed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
