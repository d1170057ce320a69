"""One-shot member launches triggered by the daemon.

Unlike ``supervisor start``, a one-shot launch waits for every worker to
exit and never touches the runtime state file.
"""

import logging
import signal
import subprocess
import threading
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from ..core.config import SupervisorConfig, TeamEntry
from ..core.supervisor import LaunchError, build_worker_env, spawn_worker
from ..utils.process_utils import kill_process_tree
from ..utils.rich_logging import rotate_log_file
from ..workspace.manager import WorkspaceManager
from .models import DaemonPaths
from .shutdown import ShutdownToken

logger = logging.getLogger(__name__)

WAIT_TICK = 0.5

ConfigProvider = Callable[[], Tuple[SupervisorConfig, TeamEntry]]


def wait_interruptible(
    proc: subprocess.Popen,
    shutdown: ShutdownToken,
    term_grace: float = 5.0,
    tick: float = WAIT_TICK,
) -> Optional[int]:
    """
    Wait for ``proc`` to exit, checking for shutdown every ``tick`` seconds.

    On shutdown the child gets SIGTERM, ``term_grace`` seconds to exit, then
    SIGKILL.

    Returns:
        The exit code, or None if the child was terminated because of shutdown
    """
    while True:
        code = proc.poll()
        if code is not None:
            return code

        if shutdown.is_set():
            kill_process_tree(proc.pid, signal.SIGTERM)
            for _ in range(max(1, int(term_grace / tick))):
                try:
                    proc.wait(timeout=tick)
                    return None
                except subprocess.TimeoutExpired:
                    continue
            logger.warning(f"PID {proc.pid} ignored SIGTERM, sending SIGKILL")
            kill_process_tree(proc.pid, signal.SIGKILL)
            proc.wait()
            return None

        shutdown.wait(tick)


class MemberLauncher:
    """Spawns every member of a team once and waits for all of them."""

    def __init__(
        self,
        config_provider: ConfigProvider,
        shutdown: ShutdownToken,
        paths: DaemonPaths,
    ):
        self.config_provider = config_provider
        self.shutdown = shutdown
        self.paths = paths
        # Launches never overlap
        self._lock = threading.Lock()
        # At most one trigger waits behind a running launch; later ones fold into it
        self._pending_lock = threading.Lock()
        self._pending = False

    def _open_member_log(self, member: str, max_bytes: int):
        log_path = self.paths.member_log(member)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        if rotate_log_file(log_path, max_bytes):
            logger.info(f"Rotated {log_path.name}")
        return open(log_path, "a")

    def _spawn(
        self, workspace: Path, member: str, config: SupervisorConfig, env
    ) -> subprocess.Popen:
        log_file = self._open_member_log(member, config.daemon.max_log_bytes)
        try:
            return spawn_worker(workspace, config.worker, env, output=log_file)
        finally:
            # The child holds its own descriptor
            log_file.close()

    def launch_all(self) -> int:
        """
        Launch all members of the team and block until they exit.

        Members without a workspace are skipped with a warning and a member
        that fails to spawn does not stop the others.

        Returns:
            Number of members launched
        """
        with self._lock:
            return self._launch_all()

    def _launch_all(self) -> int:
        config, team = self.config_provider()
        workspaces = WorkspaceManager(team, config.workzone, config.worker.workspace_marker)

        members = workspaces.member_names()
        if not members:
            logger.warning(f"No members found in {workspaces.members_dir}")
            return 0

        env = build_worker_env(team, config.worker, team.credentials.gh_token)
        children: List[Tuple[str, subprocess.Popen]] = []

        for member in members:
            if self.shutdown.is_set():
                break

            workspace = workspaces.find_workspace(member)
            if workspace is None:
                logger.warning(f"{member}: no workspace found, skipping")
                continue

            try:
                proc = self._spawn(workspace, member, config, env)
            except (LaunchError, OSError) as e:
                logger.error(f"{member}: failed to launch: {e}")
                continue

            logger.info(f"{member}: launched (PID {proc.pid})")
            children.append((member, proc))

        for member, proc in children:
            code = wait_interruptible(proc, self.shutdown, config.daemon.child_term_grace)
            if code is None:
                logger.info(f"{member}: terminated due to shutdown")
            else:
                logger.info(f"{member}: exited (code {code})")

        return len(children)

    def handle_trigger(self, reason: str) -> None:
        """
        Run a launch; failures are logged, never raised.

        A trigger arriving while another is already queued is folded into
        the queued launch.
        """
        with self._pending_lock:
            if self._pending:
                logger.info(f"Launch already queued, folding in: {reason}")
                return
            self._pending = True

        with self._lock:
            with self._pending_lock:
                self._pending = False
            logger.info(f"Triggering one-shot launch: {reason}")
            try:
                count = self._launch_all()
            except Exception as e:
                logger.error(f"Member launch failed: {e}")
                return
            logger.info(f"One-shot run complete: {count} member(s) processed")
