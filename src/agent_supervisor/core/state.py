"""Runtime state: which worker process runs each team member.

Stored as a single JSON file shared by every CLI invocation and the daemon.
There is no locking. Writes are atomic (temp file + rename) so a crash never
leaves a truncated file, and concurrent writers race at file granularity
(last writer wins).
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from ..utils.atomic_io import PRIVATE_FILE_MODE, atomic_write_model
from ..utils.process_utils import is_alive
from .config import config_dir

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "state.json"


class StateCorruptError(Exception):
    """The state file exists but cannot be parsed.

    Never silently replaced with an empty state: that would lose track of
    live worker processes.
    """


def member_key(team: str, member: str) -> str:
    """Unique worker-slot identifier, ``<team>/<member>``."""
    return f"{team}/{member}"


def split_member_key(key: str) -> Tuple[str, str]:
    team, _, member = key.partition("/")
    return team, member


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RuntimeEntry(BaseModel):
    """A spawned worker. Presence does not imply the process is still alive."""
    pid: int
    started_at: str  # ISO 8601
    workspace: Path


class RuntimeState(BaseModel):
    """Full member-key → entry mapping."""
    members: Dict[str, RuntimeEntry] = Field(default_factory=dict)

    def get(self, team: str, member: str) -> Optional[RuntimeEntry]:
        return self.members.get(member_key(team, member))

    def put(self, team: str, member: str, entry: RuntimeEntry) -> None:
        self.members[member_key(team, member)] = entry

    def remove(self, team: str, member: str) -> Optional[RuntimeEntry]:
        return self.members.pop(member_key(team, member), None)

    def for_team(self, team: str) -> Iterator[Tuple[str, RuntimeEntry]]:
        """Yield ``(member, entry)`` for every entry of ``team``, sorted by member."""
        prefix = f"{team}/"
        for key in sorted(self.members):
            if key.startswith(prefix):
                yield key[len(prefix):], self.members[key]


def state_path() -> Path:
    return config_dir() / STATE_FILE_NAME


class StateStore:
    """Loads, saves and reconciles the runtime state file."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else state_path()

    def load(self) -> RuntimeState:
        """Load state. Missing file → empty state; unreadable file → StateCorruptError."""
        if not self.path.exists():
            return RuntimeState()

        try:
            raw = self.path.read_text()
        except OSError as e:
            raise StateCorruptError(f"Failed to read {self.path}: {e}") from e

        try:
            return RuntimeState.model_validate_json(raw)
        except ValidationError as e:
            raise StateCorruptError(
                f"Failed to parse {self.path}. Inspect or remove it by hand once no "
                f"workers are running: {e}"
            ) from e

    def save(self, state: RuntimeState) -> None:
        atomic_write_model(self.path, state, mode=PRIVATE_FILE_MODE)

    def reconcile(self, state: RuntimeState) -> List[str]:
        """Drop entries whose process is gone. Returns the removed member keys."""
        return reconcile(state)


def reconcile(state: RuntimeState) -> List[str]:
    """Remove entries for dead processes from ``state`` in place."""
    stale = [key for key, entry in state.members.items() if not is_alive(entry.pid)]
    for key in stale:
        del state.members[key]
        logger.info(f"Removed stale runtime entry for {key}")
    return stale
