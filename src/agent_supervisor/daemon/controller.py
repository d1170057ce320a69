"""Daemon lifecycle: detached start, stop, status and the blocking run loop."""

import logging
import os
import subprocess
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple

from pydantic import ValidationError

from ..core.config import SupervisorConfig, TeamEntry, load_config, require_gh_token, resolve_team
from ..core.state import utc_now_iso
from ..utils.atomic_io import PRIVATE_FILE_MODE, atomic_write_model, atomic_write_text
from ..utils.process_utils import force_kill, is_alive, terminate
from .events import GitHubEventSource
from .launcher import MemberLauncher
from .models import DaemonError, DaemonMode, DaemonPaths, DaemonRecord
from .poller import EventPoller
from .shutdown import ShutdownToken, install_signal_handlers
from .webhook import WebhookHandler, WebhookServer, create_app

logger = logging.getLogger(__name__)

DISPLAY_TIME_FORMAT = "%Y-%m-%d %H:%M:%S UTC"


def format_timestamp(value: str) -> str:
    """Render an ISO 8601 timestamp for display; unparsable values pass through."""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).strftime(DISPLAY_TIME_FORMAT)


def read_pid_file(path: Path) -> int:
    """
    Read a PID file.

    Raises:
        FileNotFoundError: If there is no PID file
        ValueError: If the content is not a decimal PID
    """
    return int(path.read_text().strip())


def _unlink(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


@dataclass
class DaemonStatus:
    running: bool
    pid: Optional[int] = None
    record: Optional[DaemonRecord] = None
    # "corrupt" or "stale" when a leftover PID file was cleaned up
    cleaned: Optional[str] = None

    def describe(self) -> str:
        if self.running:
            return f"running (PID {self.pid})"
        if self.cleaned == "corrupt":
            return "not running (corrupt PID file removed)"
        if self.cleaned == "stale":
            return f"not running (stale PID {self.pid} cleaned up)"
        return "not running"


class DaemonController:
    """Controls the background daemon of one team."""

    def __init__(
        self,
        config: SupervisorConfig,
        team: TeamEntry,
        config_file: Optional[Path] = None,
        paths: Optional[DaemonPaths] = None,
    ):
        self.config = config
        self.team = team
        self.config_file = Path(config_file) if config_file is not None else None
        self.paths = paths or DaemonPaths.for_team(team.name)

    # ------------------------------------------------------------------ start

    def _daemon_command(self, mode: DaemonMode, port: int, interval: int) -> list:
        cmd = [
            sys.executable, "-m", "agent_supervisor.run_daemon",
            "--team", self.team.name,
            "--mode", mode.value,
            "--port", str(port),
            "--interval", str(interval),
        ]
        if self.config_file is not None:
            cmd += ["--config", str(self.config_file)]
        return cmd

    def start(
        self,
        mode: str = DaemonMode.WEBHOOK.value,
        port: Optional[int] = None,
        interval: Optional[int] = None,
    ) -> DaemonRecord:
        """
        Spawn the daemon detached from the terminal.

        Raises:
            DaemonError: Invalid mode, daemon already running, or it died on start
            ConfigError: If the team has no GitHub token
        """
        daemon_mode = DaemonMode.parse(mode)
        port = port if port is not None else self.config.daemon.default_port
        interval = interval if interval is not None else self.config.daemon.default_interval
        require_gh_token(self.team)

        pid_file = self.paths.pid_file
        if pid_file.exists():
            try:
                existing = read_pid_file(pid_file)
            except (OSError, ValueError):
                existing = None
            if existing is not None and is_alive(existing):
                raise DaemonError(
                    f"Daemon already running for team '{self.team.name}' (PID {existing})"
                )
            logger.info(f"Removing stale PID file {pid_file}")
            _unlink(pid_file)

        _unlink(self.paths.ready_file)
        self.paths.logs_dir.mkdir(parents=True, exist_ok=True)
        log_file = open(self.paths.log_file, "a")
        try:
            proc = subprocess.Popen(
                self._daemon_command(daemon_mode, port, interval),
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        finally:
            log_file.close()

        record = DaemonRecord(
            team=self.team.name,
            mode=daemon_mode,
            port=port,
            interval_secs=interval,
            pid=proc.pid,
            started_at=utc_now_iso(),
        )
        atomic_write_text(pid_file, str(proc.pid), mode=PRIVATE_FILE_MODE)
        atomic_write_model(self.paths.record_file, record, mode=PRIVATE_FILE_MODE)

        self._wait_until_ready(proc)

        logger.info(f"Daemon started for team '{self.team.name}' (PID {proc.pid})")
        return record

    def _wait_until_ready(self, proc: subprocess.Popen) -> None:
        """
        Block until the daemon reports ready, exits, or ``start_timeout`` passes.

        Raises:
            DaemonError: If the daemon exited or never became ready; its
                PID and record files are removed
        """
        settings = self.config.daemon
        deadline = time.monotonic() + settings.start_timeout
        while True:
            if proc.poll() is not None:
                self._clear_files()
                raise DaemonError(
                    f"Daemon exited immediately (exit code {proc.returncode}). "
                    f"Check logs: {self.paths.log_file}"
                )
            if self.paths.ready_file.exists():
                return
            if time.monotonic() >= deadline:
                break
            time.sleep(settings.start_check_delay)

        logger.warning(f"Daemon PID {proc.pid} not ready after {settings.start_timeout}s, killing it")
        force_kill(proc.pid)
        try:
            proc.wait(timeout=settings.stop_timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Daemon PID {proc.pid} did not exit after SIGKILL")
        self._clear_files()
        raise DaemonError(
            f"Daemon did not become ready within {settings.start_timeout}s. "
            f"Check logs: {self.paths.log_file}"
        )

    def _clear_files(self) -> None:
        _unlink(self.paths.pid_file)
        _unlink(self.paths.record_file)
        _unlink(self.paths.ready_file)

    # ------------------------------------------------------------------- stop

    def stop(self) -> int:
        """
        Stop the daemon: SIGTERM, up to ``stop_timeout`` seconds, then SIGKILL.

        Returns:
            PID of the stopped daemon

        Raises:
            DaemonError: If no daemon is running for the team
        """
        pid_file = self.paths.pid_file
        try:
            pid = read_pid_file(pid_file)
        except FileNotFoundError:
            raise DaemonError(f"Daemon not running for team '{self.team.name}'") from None
        except (OSError, ValueError) as e:
            _unlink(pid_file)
            raise DaemonError(f"Corrupt PID file {pid_file} removed: {e}") from e

        if is_alive(pid):
            terminate(pid)
            for _ in range(self.config.daemon.stop_timeout):
                if not is_alive(pid):
                    break
                time.sleep(1)
            else:
                if is_alive(pid):
                    logger.warning(f"Daemon PID {pid} did not exit after SIGTERM, sending SIGKILL")
                    force_kill(pid)
        else:
            logger.info(f"Daemon PID {pid} was not running")

        self._clear_files()
        _unlink(self.paths.cursor_file)
        return pid

    # ----------------------------------------------------------------- status

    def load_record(self) -> Optional[DaemonRecord]:
        path = self.paths.record_file
        if not path.exists():
            return None
        try:
            return DaemonRecord.model_validate_json(path.read_text())
        except (OSError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable daemon record {path}: {e}")
            return None

    def status(self) -> DaemonStatus:
        """Report the daemon's state, cleaning up corrupt or stale PID files."""
        pid_file = self.paths.pid_file
        try:
            pid = read_pid_file(pid_file)
        except FileNotFoundError:
            return DaemonStatus(running=False)
        except (OSError, ValueError):
            _unlink(pid_file)
            return DaemonStatus(running=False, cleaned="corrupt")

        if not is_alive(pid):
            self._clear_files()
            return DaemonStatus(running=False, pid=pid, cleaned="stale")

        return DaemonStatus(running=True, pid=pid, record=self.load_record())

    # -------------------------------------------------------------------- run

    def _current(self) -> Tuple[SupervisorConfig, TeamEntry]:
        """Freshly loaded config and team entry."""
        config = load_config(self.config_file)
        return config, resolve_team(config, self.team.name)

    def _mark_ready(self) -> None:
        atomic_write_text(self.paths.ready_file, str(os.getpid()), mode=PRIVATE_FILE_MODE)

    def run(self, mode: str, port: int, interval: int) -> None:
        """
        Run the daemon in the foreground until SIGTERM/SIGINT.

        Called from ``run_daemon`` in the detached child process. The ready
        file exists while the daemon is serving.
        """
        daemon_mode = DaemonMode.parse(mode)
        shutdown = ShutdownToken()
        install_signal_handlers(shutdown)

        logger.info(f"Daemon starting in {daemon_mode.value} mode (PID {os.getpid()})")
        launcher = MemberLauncher(self._current, shutdown, self.paths)

        try:
            if daemon_mode is DaemonMode.WEBHOOK:
                secret = self.team.credentials.webhook_secret
                if not secret:
                    logger.warning("No webhook_secret configured; signatures are not verified")
                app = create_app(secret, WebhookHandler(launcher.handle_trigger))
                WebhookServer(app, port, shutdown).serve(on_ready=self._mark_ready)
            else:
                source = GitHubEventSource(
                    require_gh_token(self.team), max_events=self.config.daemon.max_events
                )
                poller = EventPoller(
                    source=source,
                    resolve_repo=lambda: self._current()[1].github_repo,
                    trigger=launcher.handle_trigger,
                    cursor_path=self.paths.cursor_file,
                    interval=interval,
                    shutdown=shutdown,
                )
                self._mark_ready()
                poller.run()
        finally:
            _unlink(self.paths.ready_file)

        logger.info("Daemon stopped")
