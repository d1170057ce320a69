"""Core models, configuration and process supervision."""

from .config import ConfigError, SupervisorConfig, TeamEntry, load_config, resolve_team
from .state import RuntimeEntry, RuntimeState, StateCorruptError, StateStore
from .supervisor import (
    GracefulStopError,
    LaunchError,
    MemberState,
    MemberStatus,
    Supervisor,
    SupervisorError,
    WorkspaceNotFoundError,
)
from .topology import Topology, TopologyError

__all__ = [
    "ConfigError",
    "SupervisorConfig",
    "TeamEntry",
    "load_config",
    "resolve_team",
    "RuntimeEntry",
    "RuntimeState",
    "StateCorruptError",
    "StateStore",
    "GracefulStopError",
    "LaunchError",
    "MemberState",
    "MemberStatus",
    "Supervisor",
    "SupervisorError",
    "WorkspaceNotFoundError",
    "Topology",
    "TopologyError",
]
