"""Short-lived helper commands run inside a member workspace."""

import logging
import subprocess
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class SubprocessError(Exception):
    """A helper command exited non-zero."""

    def __init__(self, cmd: List[str], returncode: int, stderr: str):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        detail = f": {stderr}" if stderr else ""
        super().__init__(f"`{' '.join(cmd)}` exited with code {returncode}{detail}")


def run_in_workspace(
    cmd: List[str],
    workspace: Path,
    *,
    timeout: float,
    env: Optional[Dict[str, str]] = None,
) -> str:
    """
    Run ``cmd`` in ``workspace`` with stdin closed and wait for it.

    Returns:
        Captured stdout

    Raises:
        SubprocessError: If the command exits non-zero
        subprocess.TimeoutExpired: If it runs longer than ``timeout``
        OSError: If the executable cannot be started
    """
    logger.debug(f"Running {' '.join(cmd)} in {workspace}")
    result = subprocess.run(
        cmd,
        cwd=workspace,
        env=env,
        stdin=subprocess.DEVNULL,
        capture_output=True,
        text=True,
        timeout=timeout,
    )
    if result.returncode != 0:
        raise SubprocessError(cmd, result.returncode, (result.stderr or "").strip())
    return result.stdout
