"""Shared utility functions for the supervisor."""

from .atomic_io import PRIVATE_FILE_MODE, atomic_write_model, atomic_write_text
from .process_utils import force_kill, is_alive, kill_process_tree, terminate
from .rich_logging import DaemonLogFormatter, rotate_log_file, setup_daemon_logging
from .subprocess_utils import SubprocessError, run_in_workspace

__all__ = [
    # Atomic I/O
    "PRIVATE_FILE_MODE",
    "atomic_write_model",
    "atomic_write_text",
    # Process management
    "force_kill",
    "is_alive",
    "kill_process_tree",
    "terminate",
    # Logging
    "DaemonLogFormatter",
    "rotate_log_file",
    "setup_daemon_logging",
    # Subprocess utilities
    "SubprocessError",
    "run_in_workspace",
]
