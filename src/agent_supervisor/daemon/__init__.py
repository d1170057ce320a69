"""Background daemon reacting to repository activity."""

from .controller import DaemonController, DaemonStatus, format_timestamp
from .events import is_relevant_event, validate_signature
from .models import DaemonError, DaemonMode, DaemonPaths, DaemonRecord, PollCursor
from .shutdown import ShutdownToken

__all__ = [
    "DaemonController",
    "DaemonStatus",
    "format_timestamp",
    "is_relevant_event",
    "validate_signature",
    "DaemonError",
    "DaemonMode",
    "DaemonPaths",
    "DaemonRecord",
    "PollCursor",
    "ShutdownToken",
]
