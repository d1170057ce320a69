"""Start, stop and inspect the worker processes of a team.

Every invocation rebuilds its view from the runtime state file and the OS
process table; nothing is kept in memory between commands.
"""

import logging
import os
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Dict, List, Optional, Tuple, Union

from ..utils.process_utils import force_kill, is_alive
from ..utils.subprocess_utils import SubprocessError, run_in_workspace
from ..workspace.manager import WorkspaceManager
from . import topology
from .config import SupervisorConfig, TeamEntry, WorkerConfig, require_gh_token
from .state import RuntimeEntry, RuntimeState, StateStore, member_key, utc_now_iso

logger = logging.getLogger(__name__)

TELEGRAM_TOKEN_ENV = "RALPH_TELEGRAM_BOT_TOKEN"
GH_TOKEN_ENV = "GH_TOKEN"
GRACEFUL_POLL_INTERVAL = 1.0


class SupervisorError(Exception):
    """A start/stop request could not be fully satisfied."""


class WorkspaceNotFoundError(SupervisorError):
    """Member has no provisioned workspace. Not retried."""


class LaunchError(SupervisorError):
    """Worker could not be spawned, or exited before the grace period ended."""


class GracefulStopError(SupervisorError):
    """Worker's stop hook failed or the worker outlived the stop timeout."""


class MemberState(str, Enum):
    RUNNING = "running"
    CRASHED = "crashed"
    STOPPED = "stopped"


@dataclass
class MemberStatus:
    """Status of a member derived from its runtime entry and a liveness probe."""
    state: MemberState
    pid: Optional[int] = None
    started_at: Optional[str] = None

    @property
    def label(self) -> str:
        return self.state.value

    @classmethod
    def stopped(cls) -> "MemberStatus":
        return cls(MemberState.STOPPED)


@dataclass
class StartReport:
    launched: Dict[str, int] = field(default_factory=dict)
    skipped: Dict[str, int] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    cleaned: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def summary(self) -> str:
        return (
            f"Started {len(self.launched)} member(s), skipped {len(self.skipped)} "
            f"(already running), {len(self.errors)} error(s)."
        )


@dataclass
class StopReport:
    stopped: List[str] = field(default_factory=list)
    already_exited: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def summary(self) -> str:
        total = len(self.stopped) + len(self.already_exited)
        return f"Stopped {total} member(s), {len(self.errors)} error(s)."


def build_worker_env(
    team: TeamEntry,
    worker: WorkerConfig,
    gh_token: Optional[str],
    base_env: Optional[Dict[str, str]] = None,
) -> Dict[str, str]:
    """Environment for a worker: credentials injected, recursion markers stripped."""
    env = dict(os.environ if base_env is None else base_env)
    for name in worker.strip_env:
        env.pop(name, None)
    if gh_token:
        env[GH_TOKEN_ENV] = gh_token
    if team.credentials.telegram_bot_token:
        env[TELEGRAM_TOKEN_ENV] = team.credentials.telegram_bot_token
    return env


def spawn_worker(
    workspace: Path,
    worker: WorkerConfig,
    env: Dict[str, str],
    output: Union[int, IO, None] = subprocess.DEVNULL,
) -> subprocess.Popen:
    """
    Spawn the worker executable in ``workspace`` with stdin closed.

    The worker gets its own session so signals sent to its group reach any
    children it starts, and so it survives the invoking terminal.

    Raises:
        LaunchError: If the executable cannot be started
    """
    cmd = [worker.executable, *worker.run_args]
    try:
        return subprocess.Popen(
            cmd,
            cwd=workspace,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=output,
            stderr=subprocess.STDOUT if output is not subprocess.DEVNULL else subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as e:
        raise LaunchError(f"Failed to spawn {worker.executable} in {workspace}: {e}") from e


def resolve_member_status(state: RuntimeState, team_name: str, member: str) -> MemberStatus:
    """Classify a member as running, crashed (entry but dead process) or stopped (no entry)."""
    entry = state.get(team_name, member)
    if entry is None:
        return MemberStatus.stopped()
    if is_alive(entry.pid):
        return MemberStatus(MemberState.RUNNING, entry.pid, entry.started_at)
    return MemberStatus(MemberState.CRASHED, entry.pid, entry.started_at)


class Supervisor:
    """
    Process supervisor for one team.

    Ported from the start/stop flow of the local formation: workers are
    spawned detached and tracked only through the runtime state file.
    """

    def __init__(
        self,
        config: SupervisorConfig,
        team: TeamEntry,
        store: Optional[StateStore] = None,
    ):
        self.config = config
        self.team = team
        self.worker = config.worker
        self.store = store or StateStore()
        self.workspaces = WorkspaceManager(team, config.workzone, self.worker.workspace_marker)
        # Children spawned by this process. Polling them reaps zombies, which
        # a bare signal-0 probe would still report as alive.
        self._children: Dict[int, subprocess.Popen] = {}

    @property
    def topology_path(self) -> Path:
        return topology.topology_path(self.config.workzone, self.team.name)

    def _alive(self, pid: int) -> bool:
        proc = self._children.get(pid)
        if proc is not None:
            return proc.poll() is None
        return is_alive(pid)

    def _reap(self, pid: int) -> None:
        proc = self._children.pop(pid, None)
        if proc is not None:
            try:
                proc.wait(timeout=1)
            except subprocess.TimeoutExpired:
                self._children[pid] = proc

    # ------------------------------------------------------------------ start

    def start(self) -> StartReport:
        """
        Launch every member that is not already running.

        Already-launched workers are left running when another member fails.
        The topology file is only written when every member came up.

        Returns:
            StartReport with launched/skipped/errored members

        Raises:
            ConfigError: If the team has no GitHub token
            SupervisorError: If the team has no members
            StateCorruptError: If the runtime state file is unreadable
        """
        gh_token = require_gh_token(self.team)

        members = self.workspaces.member_names()
        if not members:
            raise SupervisorError(
                f"No members hired for team '{self.team.name}' "
                f"(looked in {self.workspaces.members_dir})."
            )

        state = self.store.load()
        report = StartReport()
        report.cleaned = self.store.reconcile(state)
        if report.cleaned:
            self.store.save(state)

        env = build_worker_env(self.team, self.worker, gh_token)

        for member in members:
            entry = state.get(self.team.name, member)
            if entry is not None and self._alive(entry.pid):
                logger.info(f"{member}: already running (PID {entry.pid})")
                report.skipped[member] = entry.pid
                continue

            try:
                pid = self._launch_member(state, member, env)
            except SupervisorError as e:
                logger.error(f"{member}: {e}")
                report.errors[member] = str(e)
                continue

            report.launched[member] = pid

        logger.info(report.summary())

        if report.ok:
            self._write_topology(state)

        return report

    def _launch_member(self, state: RuntimeState, member: str, env: Dict[str, str]) -> int:
        workspace = self.workspaces.find_workspace(member)
        if workspace is None:
            raise WorkspaceNotFoundError(
                f"no workspace found under {self.workspaces.team_ws_base / member}. "
                "Sync the team workspaces first."
            )

        proc = spawn_worker(workspace, self.worker, env)
        self._children[proc.pid] = proc

        # Recorded before verification
        state.put(
            self.team.name,
            member,
            RuntimeEntry(pid=proc.pid, started_at=utc_now_iso(), workspace=workspace),
        )
        self.store.save(state)

        time.sleep(self.worker.launch_grace_period)
        if not self._alive(proc.pid):
            state.remove(self.team.name, member)
            self.store.save(state)
            self._reap(proc.pid)
            raise LaunchError(
                f"process exited immediately (PID {proc.pid}, exit code {proc.returncode}). "
                f"Check the workspace logs in {workspace}."
            )

        logger.info(f"{member}: started (PID {proc.pid})")
        return proc.pid

    def _write_topology(self, state: RuntimeState) -> None:
        members = {}
        for member, entry in state.for_team(self.team.name):
            if not self._alive(entry.pid):
                continue
            members[member] = topology.MemberTopology(
                status=MemberState.RUNNING.value,
                endpoint=topology.LocalEndpoint(pid=entry.pid, workspace=entry.workspace),
            )
        topology.save(
            self.topology_path,
            topology.Topology(formation="local", created_at=utc_now_iso(), members=members),
        )

    # ------------------------------------------------------------------- stop

    def stop(self, force: bool = False) -> StopReport:
        """
        Stop every tracked member of the team.

        Graceful mode asks each worker to stop itself and waits up to
        ``graceful_stop_timeout``; a worker that outlives it is reported as an
        error and left running. Only ``force`` sends SIGKILL.
        """
        state = self.store.load()
        report = StopReport()
        running = list(state.for_team(self.team.name))

        if not running:
            logger.info(f"No members running for team '{self.team.name}'")

        for member, entry in running:
            if not self._alive(entry.pid):
                logger.info(f"{member}: already exited")
                state.remove(self.team.name, member)
                self.store.save(state)
                self._reap(entry.pid)
                report.already_exited.append(member)
                continue

            if force:
                logger.info(f"Stopping {member} (force, PID {entry.pid})")
                force_kill(entry.pid)
                time.sleep(self.worker.force_settle_delay)
                self._reap(entry.pid)
                state.remove(self.team.name, member)
                self.store.save(state)
                report.stopped.append(member)
                continue

            logger.info(f"Stopping {member} (PID {entry.pid})")
            try:
                self._graceful_stop(entry)
            except GracefulStopError as e:
                logger.error(f"{member}: {e}")
                report.errors[member] = str(e)
                continue

            self._reap(entry.pid)
            state.remove(self.team.name, member)
            self.store.save(state)
            report.stopped.append(member)

        logger.info(report.summary())

        if report.ok:
            topology.remove(self.topology_path)

        return report

    def _graceful_stop(self, entry: RuntimeEntry) -> None:
        """
        Run the worker's own stop hook in its workspace, then wait for exit.

        ``graceful_stop_timeout`` bounds the hook and the wait together.
        """
        cmd = [self.worker.executable, *self.worker.stop_args]
        timeout = self.worker.graceful_stop_timeout
        deadline = time.monotonic() + timeout
        try:
            run_in_workspace(cmd, entry.workspace, timeout=timeout)
        except SubprocessError as e:
            raise GracefulStopError(f"Stop hook failed: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise GracefulStopError(f"{' '.join(cmd)} did not finish within {timeout}s") from e
        except OSError as e:
            raise GracefulStopError(f"Failed to run {' '.join(cmd)}: {e}") from e

        while time.monotonic() < deadline:
            if not self._alive(entry.pid):
                return
            time.sleep(min(GRACEFUL_POLL_INTERVAL, max(deadline - time.monotonic(), 0)))

        if not self._alive(entry.pid):
            return

        raise GracefulStopError(
            f"Process {entry.pid} did not exit after {timeout}s. Use --force to kill it."
        )

    # ----------------------------------------------------------------- status

    def member_status(self, member: str, state: Optional[RuntimeState] = None) -> MemberStatus:
        if state is None:
            state = self.store.load()
        return resolve_member_status(state, self.team.name, member)

    def status(self, heal: bool = False) -> List[Tuple[str, MemberStatus]]:
        """
        Status of every discovered member plus any tracked member not on disk.

        A pure listing leaves crashed entries in place. With ``heal`` the
        crashed entries are removed after being reported.
        """
        state = self.store.load()
        names = set(self.workspaces.member_names())
        names.update(member for member, _ in state.for_team(self.team.name))

        statuses = [(name, resolve_member_status(state, self.team.name, name)) for name in sorted(names)]

        if heal:
            crashed = [name for name, status in statuses if status.state is MemberState.CRASHED]
            for name in crashed:
                logger.info(f"Removing stale entry for {member_key(self.team.name, name)}")
                state.remove(self.team.name, name)
            if crashed:
                self.store.save(state)

        return statuses
