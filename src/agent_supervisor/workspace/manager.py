"""Member discovery and workspace lookup for a team."""

import logging
from pathlib import Path
from typing import List, Optional

from ..core.config import TeamEntry

logger = logging.getLogger(__name__)

DEFAULT_MARKER = ".botminter"


def list_member_dirs(members_dir: Path) -> List[str]:
    """Sorted names of the member directories under ``members_dir``.

    Hidden entries and plain files are ignored. A missing directory yields [].
    """
    members_dir = Path(members_dir)
    if not members_dir.is_dir():
        return []
    return sorted(
        entry.name
        for entry in members_dir.iterdir()
        if entry.is_dir() and not entry.name.startswith(".")
    )


def find_workspace(
    team_ws_base: Path,
    member: str,
    marker: str = DEFAULT_MARKER,
) -> Optional[Path]:
    """
    Locate a member's workspace.

    Looks for ``<base>/<member>/<project>/`` containing the marker directory
    first, then falls back to ``<base>/<member>/`` itself.

    Returns:
        The workspace path, or None if the member has not been provisioned
    """
    member_ws = Path(team_ws_base) / member
    if not member_ws.is_dir():
        return None

    for entry in sorted(member_ws.iterdir()):
        if entry.is_dir() and not entry.name.startswith(".") and (entry / marker).is_dir():
            return entry

    if (member_ws / marker).is_dir():
        return member_ws

    return None


class WorkspaceManager:
    """Resolves the members of a team and where each one works."""

    def __init__(self, team: TeamEntry, workzone: Path, marker: str = DEFAULT_MARKER):
        self.team = team
        self.workzone = Path(workzone)
        self.marker = marker

    @property
    def team_repo(self) -> Path:
        return Path(self.team.path) / "team"

    @property
    def members_dir(self) -> Path:
        return self.team_repo / "team"

    @property
    def team_ws_base(self) -> Path:
        return self.workzone / self.team.name

    def member_names(self) -> List[str]:
        members = list_member_dirs(self.members_dir)
        if not members:
            logger.debug(f"No members found under {self.members_dir}")
        return members

    def find_workspace(self, member: str) -> Optional[Path]:
        return find_workspace(self.team_ws_base, member, self.marker)
