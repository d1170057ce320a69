"""Process liveness and signalling helpers."""

import os
import signal


def is_alive(pid: int) -> bool:
    """Return True if ``pid`` refers to a live process.

    Uses signal 0, which performs the existence and permission checks
    without delivering anything to the target.
    """
    if pid <= 0:
        # 0 and negatives address process groups, not a single process
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    except OverflowError:
        return False
    return True


def kill_process_tree(pid: int, sig: int) -> None:
    """Send signal to the process group led by ``pid``, falling back to the process.

    Workers are spawned with start_new_session=True so they lead their own
    group and killpg reaches their children too. A pid that is not a group
    leader is signalled directly so we never hit the caller's own group.
    """
    try:
        pgid = os.getpgid(pid)
    except (ProcessLookupError, PermissionError):
        return

    try:
        if pgid == pid:
            os.killpg(pgid, sig)
        else:
            os.kill(pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


def force_kill(pid: int) -> None:
    """SIGKILL a worker and its process group."""
    kill_process_tree(pid, signal.SIGKILL)


def terminate(pid: int) -> None:
    """SIGTERM a worker and its process group."""
    kill_process_tree(pid, signal.SIGTERM)
