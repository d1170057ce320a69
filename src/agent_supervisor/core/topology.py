"""Topology file describing where each team member runs.

Written after a successful local start and removed once the whole team is
stopped. External placement tooling reads and writes the same file, so the
endpoint variants are a closed, tagged union: unknown ``type`` values fail
to load instead of being dropped.
"""

from pathlib import Path
from typing import Annotated, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from ..utils.atomic_io import PRIVATE_FILE_MODE, atomic_write_model

TOPOLOGY_FILE_NAME = "topology.json"


class LocalEndpoint(BaseModel):
    """Member runs as a local process."""
    type: Literal["local"] = "local"
    pid: int
    workspace: Path


class RemoteEndpoint(BaseModel):
    """Member runs in a container managed by an external placement backend."""
    type: Literal["remote"] = "remote"
    namespace: str
    pod: str
    container: str
    context: str


Endpoint = Annotated[Union[LocalEndpoint, RemoteEndpoint], Field(discriminator="type")]


class MemberTopology(BaseModel):
    status: str
    endpoint: Endpoint


class Topology(BaseModel):
    formation: str
    created_at: str  # ISO 8601
    members: Dict[str, MemberTopology] = Field(default_factory=dict)


class TopologyError(Exception):
    """Topology file exists but cannot be parsed."""


def topology_path(workzone: Path, team_name: str) -> Path:
    return Path(workzone) / team_name / TOPOLOGY_FILE_NAME


def load(path: Path) -> Optional[Topology]:
    """Load a topology file. Returns None if it doesn't exist."""
    path = Path(path)
    if not path.exists():
        return None
    try:
        return Topology.model_validate_json(path.read_text())
    except (OSError, ValidationError) as e:
        raise TopologyError(f"Failed to parse topology file {path}: {e}") from e


def save(path: Path, topology: Topology) -> None:
    """Atomically write the topology with owner-only permissions (it holds PIDs and paths)."""
    atomic_write_model(Path(path), topology, mode=PRIVATE_FILE_MODE)


def remove(path: Path) -> None:
    """Remove the topology file if it exists."""
    try:
        Path(path).unlink()
    except FileNotFoundError:
        pass
