"""Tests for the local execution environment.

These start real (short-lived) Python subprocesses: one that listens on a
free port and one that exits immediately after writing to stderr.
"""

from __future__ import annotations

import os
import shlex
import socket
import sys
import time
from pathlib import Path

import psutil
import pytest

from gatewarden.core.models import ProcessStatus
from gatewarden.sandbox.environment import (
    LaunchError,
    LaunchRegistry,
    LocalEnvironment,
    LocalProcess,
    _read_tail,
)

LISTENER = """
import socket, sys, time
s = socket.socket()
s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
s.bind(("127.0.0.1", int(sys.argv[1])))
s.listen(5)
print("listening", flush=True)
time.sleep(60)
"""

CRASHER = """
import sys
print("booting", flush=True)
sys.stderr.write("fatal: config invalid\\n")
sys.exit(3)
"""


def _free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def _python(script: str, *args: str) -> str:
    return shlex.join([sys.executable, "-c", script, *args])


@pytest.fixture
def local_env(tmp_path: Path):
    env = LocalEnvironment(logs_dir=tmp_path / "logs", registry_path=tmp_path / "launches.json")
    started: list[LocalProcess] = []
    original_start = env.start

    def tracking_start(*args, **kwargs):
        handle = original_start(*args, **kwargs)
        started.append(handle)
        return handle

    env.start = tracking_start  # type: ignore[method-assign]
    yield env
    for handle in started:
        if psutil.pid_exists(handle.pid):
            handle.kill()


class TestLocalEnvironment:
    def test_start_and_wait_for_port(self, local_env):
        port = _free_port()
        handle = local_env.start(_python(LISTENER, str(port)), launch_tag="gateway")

        assert handle.wait_for_port(port, timeout=20) is True
        assert handle.status == ProcessStatus.RUNNING
        assert handle.port == port
        assert handle.launch_tag == "gateway"

    def test_status_starting_before_ready(self, local_env):
        handle = local_env.start(_python(LISTENER, str(_free_port())))
        assert handle.status == ProcessStatus.STARTING

    def test_kill(self, local_env):
        port = _free_port()
        handle = local_env.start(_python(LISTENER, str(port)))
        assert handle.wait_for_port(port, timeout=20)

        handle.kill()
        assert not handle.status.is_alive
        assert not psutil.pid_exists(handle.pid) or (
            psutil.Process(handle.pid).status() == psutil.STATUS_ZOMBIE
        )

    def test_kill_already_exited(self, local_env):
        handle = local_env.start(_python(CRASHER))
        handle._popen.wait(timeout=20)
        handle.kill()  # does not raise

    def test_crashed_process_fails_fast(self, local_env):
        handle = local_env.start(_python(CRASHER))
        started = time.monotonic()
        assert handle.wait_for_port(_free_port(), timeout=20) is False
        assert time.monotonic() - started < 15
        assert handle.status == ProcessStatus.FAILED

    def test_logs_captured(self, local_env):
        handle = local_env.start(_python(CRASHER))
        handle._popen.wait(timeout=20)
        logs = handle.get_logs()
        assert "booting" in logs.stdout
        assert "fatal: config invalid" in logs.stderr

    def test_env_passed_to_process(self, local_env, tmp_path: Path):
        out = tmp_path / "env.txt"
        script = "import os, sys; open(sys.argv[1], 'w').write(os.environ.get('CLAWDBOT_DEV_MODE', ''))"
        handle = local_env.start(_python(script, str(out)), env={"CLAWDBOT_DEV_MODE": "true"})
        handle._popen.wait(timeout=20)
        assert out.read_text() == "true"

    def test_empty_command(self, local_env):
        with pytest.raises(LaunchError):
            local_env.start("   ")

    def test_missing_executable(self, local_env, tmp_path: Path):
        with pytest.raises(LaunchError):
            local_env.start(str(tmp_path / "no-such-binary"))

    def test_list_processes_recognizes_launch_tag(self, local_env):
        port = _free_port()
        handle = local_env.start(_python(LISTENER, str(port)), launch_tag="gateway")
        assert handle.wait_for_port(port, timeout=20)

        found = [p for p in local_env.list_processes() if p.pid == handle.pid]
        assert len(found) == 1
        assert found[0].launch_tag == "gateway"
        assert found[0].status.is_alive
        assert "-c" in found[0].command

    def test_list_processes_excludes_self(self, local_env):
        assert os.getpid() not in {p.pid for p in local_env.list_processes()}

    def test_set_env_vars(self, local_env, monkeypatch):
        monkeypatch.delenv("GATEWARDEN_TEST_VAR", raising=False)
        local_env.set_env_vars({"GATEWARDEN_TEST_VAR": "1"})
        assert os.environ["GATEWARDEN_TEST_VAR"] == "1"
        monkeypatch.delenv("GATEWARDEN_TEST_VAR")


class TestLaunchRegistry:
    def test_record_and_lookup(self, tmp_path: Path):
        registry = LaunchRegistry(tmp_path / "launches.json")
        registry.record(os.getpid(), {"tag": "gateway", "create_time": 100.0})
        assert registry.lookup(os.getpid(), 100.4)["tag"] == "gateway"

    def test_recycled_pid_not_matched(self, tmp_path: Path):
        registry = LaunchRegistry(tmp_path / "launches.json")
        registry.record(os.getpid(), {"tag": "gateway", "create_time": 100.0})
        assert registry.lookup(os.getpid(), 500.0) is None

    def test_corrupt_registry_ignored(self, tmp_path: Path):
        path = tmp_path / "launches.json"
        path.write_text("{not json")
        assert LaunchRegistry(path).load() == {}


class TestReadTail:
    def test_truncates_to_tail(self, tmp_path: Path):
        log = tmp_path / "out.log"
        log.write_text("a" * 100 + "END")
        text = _read_tail(log, 10)
        assert text.endswith("aaaaaaaEND")
        assert "TRUNCATED" in text

    def test_missing_file(self, tmp_path: Path):
        assert _read_tail(tmp_path / "missing.log", 10) == ""
        assert _read_tail(None, 10) == ""
