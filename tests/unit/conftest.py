"""Shared test fixtures for unit tests."""

import os
import signal
import stat
from pathlib import Path

import pytest

from agent_supervisor.core.config import (
    Credentials,
    DaemonSettings,
    SupervisorConfig,
    TeamEntry,
    WorkerConfig,
)
from agent_supervisor.core.state import StateStore
from agent_supervisor.utils.process_utils import is_alive

TEAM = "alpha"

# Stand-in for the worker executable. `run` records its PID in the workspace
# and becomes a sleep; `loops stop` optionally stalls, then kills that PID
# unless told to ignore it.
FAKE_WORKER = """#!/bin/sh
case "$1" in
  run)
    echo $$ > worker.pid
    exec sleep "${FAKE_WORKER_SECONDS:-30}"
    ;;
  loops)
    if [ -n "$FAKE_WORKER_STOP_DELAY" ]; then
      sleep "$FAKE_WORKER_STOP_DELAY"
    fi
    if [ -n "$FAKE_WORKER_IGNORE_STOP" ]; then
      exit 0
    fi
    kill "$(cat worker.pid)"
    ;;
  *)
    exit 2
    ;;
esac
"""


def make_member(team_path: Path, workzone: Path, member: str, with_workspace: bool = True,
                project: str = "") -> Path:
    """Create a hired member in the team repo and, optionally, its workspace."""
    (team_path / "team" / "team" / member).mkdir(parents=True, exist_ok=True)
    workspace = workzone / TEAM / member
    if project:
        workspace = workspace / project
    if with_workspace:
        (workspace / ".botminter").mkdir(parents=True, exist_ok=True)
    return workspace


@pytest.fixture
def supervisor_home(tmp_path, monkeypatch):
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("SUPERVISOR_HOME", str(home))
    monkeypatch.delenv("FAKE_WORKER_SECONDS", raising=False)
    monkeypatch.delenv("FAKE_WORKER_IGNORE_STOP", raising=False)
    monkeypatch.delenv("FAKE_WORKER_STOP_DELAY", raising=False)
    return home


@pytest.fixture
def fake_worker(tmp_path):
    script = tmp_path / "bin" / "fake-worker"
    script.parent.mkdir()
    script.write_text(FAKE_WORKER)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


@pytest.fixture
def team_entry(tmp_path):
    path = tmp_path / "teams" / TEAM
    (path / "team" / "team").mkdir(parents=True)
    return TeamEntry(
        name=TEAM,
        path=path,
        github_repo="acme/widgets",
        credentials=Credentials(gh_token="ghp_test", telegram_bot_token="tg_test"),
    )


@pytest.fixture
def config(tmp_path, team_entry, fake_worker, supervisor_home):
    workzone = tmp_path / "workzone"
    workzone.mkdir()
    return SupervisorConfig(
        workzone=workzone,
        default_team=TEAM,
        teams=[team_entry],
        worker=WorkerConfig(
            executable=str(fake_worker),
            launch_grace_period=0.3,
            force_settle_delay=0.1,
            graceful_stop_timeout=5,
        ),
        daemon=DaemonSettings(stop_timeout=2, child_term_grace=1.0, start_check_delay=0.1),
    )


@pytest.fixture
def store(supervisor_home):
    """State store in the temporary home. Kills anything still tracked on teardown."""
    state_store = StateStore()
    yield state_store

    if not state_store.path.exists():
        return
    for entry in state_store.load().members.values():
        if is_alive(entry.pid):
            try:
                os.killpg(entry.pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                pass


@pytest.fixture
def add_member(config, team_entry):
    """Hire a member into the test team; returns its workspace path."""
    def _add(member: str, with_workspace: bool = True, project: str = "") -> Path:
        return make_member(team_entry.path, config.workzone, member, with_workspace, project)
    return _add
