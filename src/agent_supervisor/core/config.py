"""Configuration loading and validation."""

import logging
import os
import stat
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..utils.atomic_io import PRIVATE_FILE_MODE, atomic_write_text

logger = logging.getLogger(__name__)

CONFIG_DIR_NAME = ".agent-supervisor"
CONFIG_FILE_NAME = "config.yml"
HOME_ENV_VAR = "SUPERVISOR_HOME"


class ConfigError(Exception):
    """Missing or invalid configuration. Fatal, never retried."""


class Credentials(BaseModel):
    """Stored credentials for a team (tokens)."""
    gh_token: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    # Enables signature verification in webhook mode
    webhook_secret: Optional[str] = None


class TeamEntry(BaseModel):
    """A registered team."""
    name: str
    path: Path
    profile: str = ""
    github_repo: str = ""
    credentials: Credentials = Field(default_factory=Credentials)

    @field_validator("github_repo")
    @classmethod
    def validate_github_repo(cls, v: str) -> str:
        if v and v.count("/") != 1:
            raise ValueError(f"github_repo must look like 'owner/name', got '{v}'")
        return v


class WorkerConfig(BaseModel):
    """How worker processes are launched and stopped."""
    executable: str = "ralph"
    run_args: List[str] = Field(default_factory=lambda: ["run", "-p", "PROMPT.md"])
    stop_args: List[str] = Field(default_factory=lambda: ["loops", "stop"])

    graceful_stop_timeout: int = 60  # Seconds for the stop hook plus the wait for exit
    launch_grace_period: float = 2.0  # Re-check liveness after this long
    force_settle_delay: float = 0.5

    # Variables that would make the worker believe it is already supervised
    strip_env: List[str] = Field(default_factory=lambda: ["CLAUDECODE"])

    # Directory that marks a member workspace as provisioned
    workspace_marker: str = ".botminter"

    @field_validator("graceful_stop_timeout")
    @classmethod
    def validate_stop_timeout(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"graceful_stop_timeout must be >= 1, got {v}")
        return v


class DaemonSettings(BaseModel):
    """Background daemon tuning."""
    default_port: int = 8484
    default_interval: int = 60
    stop_timeout: int = 30
    child_term_grace: float = 5.0
    max_log_bytes: int = 10 * 1024 * 1024
    start_check_delay: float = 0.5  # Interval between readiness checks on start
    start_timeout: float = 20.0  # Ceiling for the daemon to report ready
    max_events: int = 100

    @field_validator("default_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError(f"default_port must be between 1 and 65535, got {v}")
        return v


class SupervisorConfig(BaseSettings):
    """Top-level supervisor configuration."""
    workzone: Path = Field(default_factory=lambda: Path.home() / "workzone")
    default_team: Optional[str] = None
    teams: List[TeamEntry] = Field(default_factory=list)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    daemon: DaemonSettings = Field(default_factory=DaemonSettings)

    model_config = SettingsConfigDict(env_prefix="SUPERVISOR_", extra="ignore")

    def team_names(self) -> List[str]:
        return [t.name for t in self.teams]


def config_dir() -> Path:
    """Directory holding config, runtime state, daemon files and logs."""
    override = os.environ.get(HOME_ENV_VAR)
    if override:
        return Path(override)
    return Path.home() / CONFIG_DIR_NAME


def config_path() -> Path:
    return config_dir() / CONFIG_FILE_NAME


def logs_dir() -> Path:
    return config_dir() / "logs"


def _expand_env_vars(data: Any, _path: str = "") -> Any:
    """Recursively expand ``${VAR}`` strings from the environment.

    Args:
        data: Config data to process
        _path: Internal tracking for error messages (e.g., "teams[0].credentials.gh_token")
    """
    if isinstance(data, dict):
        return {k: _expand_env_vars(v, f"{_path}.{k}" if _path else k) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item, f"{_path}[{i}]") for i, item in enumerate(data)]
    elif isinstance(data, str) and data.startswith("${") and data.endswith("}"):
        env_var = data[2:-1]
        value = os.environ.get(env_var)
        if value is None:
            logger.warning(
                f"Environment variable '{env_var}' not set (referenced at config path: {_path or 'root'}). "
                f"The literal string '{data}' will be used, which may cause errors."
            )
            return data
        return value
    return data


def check_permissions(path: Path) -> None:
    """Warn when the config file is readable by anyone but its owner."""
    try:
        mode = stat.S_IMODE(path.stat().st_mode)
    except OSError:
        return
    if mode != PRIVATE_FILE_MODE:
        logger.warning(
            f"Config file {path} has permissions {mode:04o} (expected {PRIVATE_FILE_MODE:04o}). "
            f"This file contains secrets, consider running: chmod 600 {path}"
        )


def load_config(path: Optional[Path] = None) -> SupervisorConfig:
    """Load the supervisor configuration from YAML.

    Raises:
        ConfigError: If the file is missing or cannot be parsed/validated
    """
    path = Path(path) if path is not None else config_path()
    if not path.exists():
        raise ConfigError(
            f"No teams configured: {path} not found. "
            "Create it with a workzone and at least one team entry."
        )

    check_permissions(path)

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level")

    try:
        return SupervisorConfig(**_expand_env_vars(data))
    except ValidationError as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e


def save_config(config: SupervisorConfig, path: Optional[Path] = None) -> None:
    """Save the configuration as YAML with owner-only permissions."""
    path = Path(path) if path is not None else config_path()
    data: Dict[str, Any] = config.model_dump(mode="json", exclude_none=True)
    atomic_write_text(
        path,
        yaml.safe_dump(data, sort_keys=False),
        mode=PRIVATE_FILE_MODE,
    )


def resolve_team(config: SupervisorConfig, name: Optional[str] = None) -> TeamEntry:
    """Resolve which team to operate on: explicit name > default_team > error."""
    team_name = name or config.default_team
    if not team_name:
        raise ConfigError(
            "No default team set. Use `-t <team>` or set default_team in the config."
        )

    for team in config.teams:
        if team.name == team_name:
            return team

    available = ", ".join(config.team_names()) or "(none)"
    raise ConfigError(f"Team '{team_name}' not found. Available teams: {available}")


def require_gh_token(team: TeamEntry) -> str:
    """Return the team's GitHub token, failing with an actionable message when absent."""
    token = team.credentials.gh_token
    if not token:
        raise ConfigError(
            f"No GH token configured for team '{team.name}'. "
            f"Add credentials.gh_token for this team in {config_path()}."
        )
    return token
