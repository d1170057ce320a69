"""Tests for daemon start/stop/status."""

import os
import signal
import socket
import stat
import subprocess
import sys
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from agent_supervisor.core.config import ConfigError, Credentials, save_config
from agent_supervisor.daemon.controller import DaemonController, format_timestamp
from agent_supervisor.daemon.models import DaemonError, DaemonMode, DaemonPaths, DaemonRecord
from agent_supervisor.utils.process_utils import is_alive

_real_popen = subprocess.Popen


def spawn_reaped(cmd):
    """Spawn a detached child that is reaped as soon as it exits."""
    proc = subprocess.Popen(cmd, start_new_session=True)
    threading.Thread(target=proc.wait, daemon=True).start()
    return proc


def spawn_polled(cmd, **kwargs):
    """Spawn a child reaped by polling, leaving poll() usable by the caller."""
    proc = _real_popen(cmd, **kwargs)

    def reap():
        while proc.poll() is None:
            time.sleep(0.05)

    threading.Thread(target=reap, daemon=True).start()
    return proc


def ready_popen(controller, pid=4242):
    """Popen stand-in for a daemon that reports ready as soon as it is spawned."""
    proc = MagicMock(pid=pid)
    proc.poll.return_value = None

    def spawn(*args, **kwargs):
        controller.paths.ready_file.write_text(str(pid))
        return proc

    return spawn


@pytest.fixture
def controller(config, team_entry, supervisor_home):
    return DaemonController(config, team_entry, paths=DaemonPaths(supervisor_home, team_entry.name))


def write_record(controller, pid, mode=DaemonMode.POLL):
    record = DaemonRecord(
        team=controller.team.name, mode=mode, port=8484, interval_secs=30,
        pid=pid, started_at="2026-02-03T04:05:06+00:00",
    )
    controller.paths.record_file.write_text(record.model_dump_json())
    return record


class TestFormatTimestamp:
    def test_iso_offset(self):
        assert format_timestamp("2026-01-02T03:04:05.123456+00:00") == "2026-01-02 03:04:05 UTC"

    def test_z_suffix(self):
        assert format_timestamp("2026-01-02T03:04:05Z") == "2026-01-02 03:04:05 UTC"

    def test_converts_to_utc(self):
        assert format_timestamp("2026-01-02T05:04:05+02:00") == "2026-01-02 03:04:05 UTC"

    def test_unparsable_passthrough(self):
        assert format_timestamp("yesterday") == "yesterday"


class TestDaemonPaths:
    def test_layout(self, tmp_path):
        paths = DaemonPaths(tmp_path, "alpha")
        assert paths.pid_file == tmp_path / "daemon-alpha.pid"
        assert paths.record_file == tmp_path / "daemon-alpha.json"
        assert paths.cursor_file == tmp_path / "daemon-alpha-poll.json"
        assert paths.ready_file == tmp_path / "daemon-alpha.ready"
        assert paths.log_file == tmp_path / "logs" / "daemon-alpha.log"
        assert paths.member_log("dev-1") == tmp_path / "logs" / "member-alpha-dev-1.log"

    def test_for_team_uses_home(self, supervisor_home):
        assert DaemonPaths.for_team("alpha").home == supervisor_home


class TestStatus:
    def test_not_running(self, controller):
        result = controller.status()
        assert not result.running
        assert result.cleaned is None
        assert result.describe() == "not running"

    def test_corrupt_pid_file(self, controller):
        controller.paths.pid_file.write_text("not-a-pid")

        result = controller.status()

        assert not result.running
        assert result.cleaned == "corrupt"
        assert not controller.paths.pid_file.exists()

    def test_stale_pid_file(self, controller):
        proc = subprocess.Popen(["true"])
        proc.wait()
        controller.paths.pid_file.write_text(str(proc.pid))
        write_record(controller, proc.pid)

        result = controller.status()

        assert not result.running
        assert result.cleaned == "stale"
        assert result.pid == proc.pid
        assert not controller.paths.pid_file.exists()
        assert not controller.paths.record_file.exists()

    def test_running_with_record(self, controller):
        controller.paths.pid_file.write_text(str(os.getpid()))
        record = write_record(controller, os.getpid())

        result = controller.status()

        assert result.running
        assert result.pid == os.getpid()
        assert result.record == record
        assert "running" in result.describe()

    def test_running_without_record(self, controller):
        controller.paths.pid_file.write_text(f"{os.getpid()}\n")
        result = controller.status()
        assert result.running
        assert result.record is None


class TestStart:
    def test_invalid_mode(self, controller):
        with pytest.raises(DaemonError, match="Invalid daemon mode 'socket'"):
            controller.start(mode="socket")
        assert not controller.paths.pid_file.exists()

    def test_requires_gh_token(self, controller):
        controller.team.credentials = Credentials()
        with pytest.raises(ConfigError):
            controller.start(mode="poll")

    def test_double_start_rejected(self, controller):
        controller.paths.pid_file.write_text(str(os.getpid()))
        with pytest.raises(DaemonError, match="already running"):
            controller.start(mode="poll")

    def test_spawns_detached_and_records(self, controller):
        with patch("agent_supervisor.daemon.controller.subprocess.Popen",
                   side_effect=ready_popen(controller)) as popen:
            record = controller.start(mode="poll", interval=15)

        cmd = popen.call_args.args[0]
        assert cmd[:3] == [sys.executable, "-m", "agent_supervisor.run_daemon"]
        assert cmd[cmd.index("--mode") + 1] == "poll"
        assert cmd[cmd.index("--interval") + 1] == "15"
        assert popen.call_args.kwargs["start_new_session"] is True
        assert popen.call_args.kwargs["stdin"] == subprocess.DEVNULL

        assert record.pid == 4242
        assert record.port == 8484
        assert controller.paths.pid_file.read_text() == "4242"
        assert stat.S_IMODE(controller.paths.pid_file.stat().st_mode) == 0o600
        assert stat.S_IMODE(controller.paths.record_file.stat().st_mode) == 0o600
        assert controller.load_record() == record
        assert controller.paths.log_file.parent.is_dir()

    def test_passes_config_file(self, config, team_entry, supervisor_home, tmp_path):
        controller = DaemonController(config, team_entry, config_file=tmp_path / "custom.yml")

        with patch("agent_supervisor.daemon.controller.subprocess.Popen",
                   side_effect=ready_popen(controller)) as popen:
            controller.start(mode="webhook", port=9000)

        cmd = popen.call_args.args[0]
        assert cmd[cmd.index("--config") + 1] == str(tmp_path / "custom.yml")
        assert cmd[cmd.index("--port") + 1] == "9000"

    def test_removes_stale_pid_file(self, controller):
        controller.paths.pid_file.write_text("garbage")

        with patch("agent_supervisor.daemon.controller.subprocess.Popen",
                   side_effect=ready_popen(controller)):
            controller.start(mode="poll")

        assert controller.paths.pid_file.read_text() == "4242"

    def test_immediate_exit_cleans_up(self, controller):
        proc = MagicMock(pid=4242, returncode=1)
        proc.poll.return_value = 1

        with patch("agent_supervisor.daemon.controller.subprocess.Popen", return_value=proc):
            with pytest.raises(DaemonError, match="exited immediately"):
                controller.start(mode="poll")

        assert not controller.paths.pid_file.exists()
        assert not controller.paths.record_file.exists()

    def test_never_ready_is_killed(self, controller):
        controller.config.daemon.start_timeout = 0.3
        proc = MagicMock(pid=4242)
        proc.poll.return_value = None

        with patch("agent_supervisor.daemon.controller.subprocess.Popen", return_value=proc), \
                patch("agent_supervisor.daemon.controller.force_kill") as kill:
            with pytest.raises(DaemonError, match="did not become ready"):
                controller.start(mode="poll")

        kill.assert_called_once_with(4242)
        assert not controller.paths.pid_file.exists()
        assert not controller.paths.record_file.exists()

    def test_leftover_ready_file_does_not_count(self, controller):
        controller.config.daemon.start_timeout = 0.3
        controller.paths.ready_file.write_text("1")
        proc = MagicMock(pid=4242)
        proc.poll.return_value = None

        with patch("agent_supervisor.daemon.controller.subprocess.Popen", return_value=proc), \
                patch("agent_supervisor.daemon.controller.force_kill"):
            with pytest.raises(DaemonError, match="did not become ready"):
                controller.start(mode="poll")

        assert not controller.paths.ready_file.exists()


class TestStartDetachedDaemon:
    @pytest.fixture
    def live_controller(self, config, team_entry, supervisor_home):
        config_file = supervisor_home / "config.yml"
        save_config(config, config_file)
        return DaemonController(
            config, team_entry, config_file=config_file,
            paths=DaemonPaths(supervisor_home, team_entry.name),
        )

    def test_port_in_use_fails_start(self, live_controller):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as taken:
            taken.bind(("0.0.0.0", 0))
            taken.listen()
            port = taken.getsockname()[1]

            with pytest.raises(DaemonError, match="exited immediately"):
                live_controller.start(mode="webhook", port=port)

        assert not live_controller.paths.pid_file.exists()
        assert not live_controller.paths.record_file.exists()
        assert f"failed to start on port {port}" in live_controller.paths.log_file.read_text()

    def test_webhook_daemon_ready_then_stopped(self, live_controller):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
            probe.bind(("0.0.0.0", 0))
            port = probe.getsockname()[1]

        with patch("agent_supervisor.daemon.controller.subprocess.Popen", side_effect=spawn_polled):
            record = live_controller.start(mode="webhook", port=port)

        try:
            assert live_controller.paths.ready_file.exists()
            assert live_controller.status().running
            with socket.create_connection(("127.0.0.1", port), timeout=2):
                pass
        finally:
            live_controller.stop()

        deadline = time.monotonic() + 5
        while is_alive(record.pid) and time.monotonic() < deadline:
            time.sleep(0.05)
        assert not is_alive(record.pid)
        assert not live_controller.paths.ready_file.exists()


class TestStop:
    def test_not_running(self, controller):
        with pytest.raises(DaemonError, match="Daemon not running"):
            controller.stop()

    def test_corrupt_pid_file(self, controller):
        controller.paths.pid_file.write_text("???")
        with pytest.raises(DaemonError, match="Corrupt PID file"):
            controller.stop()
        assert not controller.paths.pid_file.exists()

    def test_terminates_and_cleans_up(self, controller):
        proc = spawn_reaped(["sleep", "30"])
        controller.paths.pid_file.write_text(str(proc.pid))
        write_record(controller, proc.pid)
        controller.paths.cursor_file.write_text("{}")

        assert controller.stop() == proc.pid

        proc.wait(timeout=5)
        assert proc.returncode == -signal.SIGTERM
        assert not controller.paths.pid_file.exists()
        assert not controller.paths.record_file.exists()
        assert not controller.paths.cursor_file.exists()

    def test_escalates_to_sigkill(self, controller):
        proc = spawn_reaped(["sh", "-c", 'trap "" TERM; while true; do sleep 0.1; done'])
        time.sleep(0.3)
        controller.paths.pid_file.write_text(str(proc.pid))

        controller.stop()

        proc.wait(timeout=5)
        assert proc.returncode == -signal.SIGKILL
        assert not is_alive(proc.pid)

    def test_dead_daemon_still_cleans_up(self, controller):
        proc = subprocess.Popen(["true"])
        proc.wait()
        controller.paths.pid_file.write_text(str(proc.pid))
        write_record(controller, proc.pid)

        controller.stop()

        assert not controller.paths.pid_file.exists()
        assert not controller.paths.record_file.exists()


class TestRun:
    @pytest.fixture(autouse=True)
    def no_signal_handlers(self):
        with patch("agent_supervisor.daemon.controller.install_signal_handlers") as install:
            yield install

    def test_webhook_mode_serves_app(self, controller, no_signal_handlers):
        with patch("agent_supervisor.daemon.controller.WebhookServer") as server_cls:
            controller.run("webhook", 9090, 30)

        no_signal_handlers.assert_called_once()
        app, port, shutdown = server_cls.call_args.args
        assert port == 9090
        assert any(getattr(route, "path", None) == "/webhook" for route in app.routes)
        server_cls.return_value.serve.assert_called_once()

    def test_poll_mode_runs_poller(self, controller):
        with patch("agent_supervisor.daemon.controller.EventPoller") as poller_cls, \
                patch("agent_supervisor.daemon.controller.GitHubEventSource") as source_cls:
            controller.run("poll", 8484, 15)

        source_cls.assert_called_once_with("ghp_test", max_events=controller.config.daemon.max_events)
        kwargs = poller_cls.call_args.kwargs
        assert kwargs["interval"] == 15
        assert kwargs["cursor_path"] == controller.paths.cursor_file
        poller_cls.return_value.run.assert_called_once()

    def test_ready_file_exists_only_while_polling(self, controller):
        seen = []
        with patch("agent_supervisor.daemon.controller.EventPoller") as poller_cls, \
                patch("agent_supervisor.daemon.controller.GitHubEventSource"):
            poller_cls.return_value.run.side_effect = lambda: seen.append(
                controller.paths.ready_file.exists()
            )
            controller.run("poll", 8484, 15)

        assert seen == [True]
        assert not controller.paths.ready_file.exists()

    def test_webhook_ready_once_listening(self, controller):
        with patch("agent_supervisor.daemon.controller.WebhookServer") as server_cls:
            controller.run("webhook", 9090, 30)

        on_ready = server_cls.return_value.serve.call_args.kwargs["on_ready"]
        on_ready()
        assert controller.paths.ready_file.read_text() == str(os.getpid())

    def test_invalid_mode(self, controller):
        with pytest.raises(DaemonError, match="Invalid daemon mode"):
            controller.run("socket", 8484, 15)
