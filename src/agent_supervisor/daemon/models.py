"""Persistent daemon records and their file locations."""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from ..core.config import config_dir


class DaemonError(Exception):
    """Daemon lifecycle failure (already running, not running, died on start)."""


class DaemonMode(str, Enum):
    WEBHOOK = "webhook"
    POLL = "poll"

    @classmethod
    def parse(cls, value: str) -> "DaemonMode":
        try:
            return cls(value)
        except ValueError:
            valid = ", ".join(m.value for m in cls)
            raise DaemonError(f"Invalid daemon mode '{value}'. Expected one of: {valid}") from None


class DaemonRecord(BaseModel):
    """What a running daemon was started with. Written next to the PID file."""
    team: str
    mode: DaemonMode
    port: int
    interval_secs: int
    pid: int
    started_at: str  # ISO 8601


class PollCursor(BaseModel):
    """Last event seen by the poll loop. Advisory: a lost cursor only re-triggers a launch."""
    last_event_id: Optional[str] = None
    last_poll_at: Optional[str] = None


@dataclass
class DaemonPaths:
    """Per-team daemon files under the supervisor home directory."""
    home: Path
    team: str

    @property
    def pid_file(self) -> Path:
        return self.home / f"daemon-{self.team}.pid"

    @property
    def record_file(self) -> Path:
        return self.home / f"daemon-{self.team}.json"

    @property
    def cursor_file(self) -> Path:
        return self.home / f"daemon-{self.team}-poll.json"

    @property
    def ready_file(self) -> Path:
        return self.home / f"daemon-{self.team}.ready"

    @property
    def logs_dir(self) -> Path:
        return self.home / "logs"

    @property
    def log_file(self) -> Path:
        return self.logs_dir / f"daemon-{self.team}.log"

    def member_log(self, member: str) -> Path:
        return self.logs_dir / f"member-{self.team}-{member}.log"

    @classmethod
    def for_team(cls, team: str) -> "DaemonPaths":
        return cls(home=config_dir(), team=team)
