# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the gatewarden test suite.

This module provides foundational fixtures used across all test modules:
- Configurations rooted in a temporary directory
- Local state trees (config, workspace, skills) and a fake durable store
- An in-memory execution environment with scriptable process handles
- Test databases for the event log
- Git remotes for repository backup tests

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

import json
import shutil
import subprocess
from pathlib import Path

import pytest

from gatewarden.core.config import WardenConfig
from gatewarden.core.models import ProcessStatus
from gatewarden.core.state import Database
from gatewarden.sandbox.environment import ExecutionEnvironment, ProcessHandle, ProcessLogs
from gatewarden.sandbox.mount import MountAdapter, StorageCredentials


# =============================================================================
# Fake Execution Environment
# =============================================================================


class FakeHandle(ProcessHandle):
    """Scriptable process handle.

    Attributes:
        ready: Whether wait_for_port() succeeds.
        kill_error: Exception raised by kill(), if any.
        killed: Set once kill() succeeds.
    """

    def __init__(
        self,
        pid: int,
        command: str,
        launch_tag: str | None = None,
        ready: bool = True,
        status: ProcessStatus = ProcessStatus.RUNNING,
        logs: ProcessLogs | None = None,
    ):
        super().__init__(pid, command, launch_tag)
        self.ready = ready
        self._status = status
        self.logs = logs or ProcessLogs()
        self.kill_error: Exception | None = None
        self.killed = False
        self.port_waits: list[tuple[int, float]] = []

    @property
    def status(self) -> ProcessStatus:
        return self._status

    def wait_for_port(self, port: int, timeout: float) -> bool:
        self.port_waits.append((port, timeout))
        if self.ready:
            self.port = port
        return self.ready

    def kill(self) -> None:
        if self.kill_error is not None:
            raise self.kill_error
        self.killed = True
        self._status = ProcessStatus.STOPPED

    def get_logs(self) -> ProcessLogs:
        return self.logs


class FakeEnvironment(ExecutionEnvironment):
    """In-memory execution environment.

    Processes started here show up in list_processes() until killed.
    Set `next_ready` to control whether newly started processes become
    reachable, and `start_error` / `list_error` to inject failures.
    """

    def __init__(self) -> None:
        self.processes: list[FakeHandle] = []
        self.started: list[FakeHandle] = []
        self.start_calls: list[dict] = []
        self.env_vars: dict[str, str] = {}
        self.next_pid = 1000
        self.next_ready = True
        self.next_logs: ProcessLogs | None = None
        self.start_error: Exception | None = None
        self.list_error: Exception | None = None
        self.env_error: Exception | None = None

    def add_process(self, command: str, launch_tag: str | None = None, **kwargs) -> FakeHandle:
        handle = FakeHandle(self._pid(), command, launch_tag=launch_tag, **kwargs)
        self.processes.append(handle)
        return handle

    def _pid(self) -> int:
        self.next_pid += 1
        return self.next_pid

    def start(self, command, env=None, launch_tag=None) -> FakeHandle:
        self.start_calls.append({"command": command, "env": dict(env or {}), "tag": launch_tag})
        if self.start_error is not None:
            raise self.start_error
        handle = FakeHandle(
            self._pid(),
            command,
            launch_tag=launch_tag,
            ready=self.next_ready,
            status=ProcessStatus.STARTING,
            logs=self.next_logs,
        )
        self.processes.append(handle)
        self.started.append(handle)
        return handle

    def list_processes(self) -> list[ProcessHandle]:
        if self.list_error is not None:
            raise self.list_error
        return [p for p in self.processes if not p.killed]

    def set_env_vars(self, env: dict[str, str]) -> None:
        if self.env_error is not None:
            raise self.env_error
        self.env_vars.update(env)


@pytest.fixture
def fake_env() -> FakeEnvironment:
    """In-memory execution environment with no processes."""
    return FakeEnvironment()


# =============================================================================
# Configuration and State Fixtures
# =============================================================================


@pytest.fixture
def config(tmp_path: Path) -> WardenConfig:
    """Configuration with every path inside tmp_path and short timeouts.

    Layout:
        tmp_path/home/.openclaw     config_dir
        tmp_path/home/clawd         workspace_dir (skills_dir inside it)
        tmp_path/store              mount_path (the "durable store")
        tmp_path/mounts             mount table (empty: nothing mounted)
        tmp_path/state              state_dir
    """
    (tmp_path / "mounts").write_text("")
    return WardenConfig(
        config_dir=tmp_path / "home" / ".openclaw",
        workspace_dir=tmp_path / "home" / "clawd",
        skills_dir=tmp_path / "home" / "clawd" / "skills",
        mount_path=tmp_path / "store",
        mount_table_path=tmp_path / "mounts",
        state_dir=tmp_path / "state",
        gateway_command="/usr/local/bin/start-moltbot.sh",
        startup_timeout=5.0,
        mount_timeout=5.0,
        sync_timeout=30.0,
        git_timeout=30.0,
        lock_timeout=5.0,
        repo_clone_dir=tmp_path / "clone",
    )


@pytest.fixture
def local_state(config: WardenConfig) -> WardenConfig:
    """Populate config, workspace and skills with a small realistic tree.

    Creates:
        config_dir/openclaw.json (with credentials inside)
        workspace_dir/IDENTITY.md, USER.md, memory/2026-01-09.md
        workspace_dir/node_modules/pkg/index.js (excluded from backups)
        skills_dir/weather/SKILL.md
    """
    config.config_dir.mkdir(parents=True)
    (config.config_dir / "openclaw.json").write_text(
        json.dumps(
            {
                "gateway": {"port": 18789, "auth": {"token": "gw-secret-token"}},
                "channels": {"telegram": {"botToken": "123:telegram", "enabled": True}},
                "agents": {"defaults": {"workspace": str(config.workspace_dir), "maxTokens": 4096}},
            },
            indent=2,
        )
    )
    ws = config.workspace_dir
    (ws / "memory").mkdir(parents=True)
    (ws / "IDENTITY.md").write_text("# Identity\nI am the gateway bot.\n")
    (ws / "USER.md").write_text("# User\nPrefers short answers.\n")
    (ws / "memory" / "2026-01-09.md").write_text("Talked about the weather.\n")
    (ws / "node_modules" / "pkg").mkdir(parents=True)
    (ws / "node_modules" / "pkg" / "index.js").write_text("module.exports = {};\n")
    (config.skills_dir / "weather").mkdir(parents=True)
    (config.skills_dir / "weather" / "SKILL.md").write_text("# Weather skill\n")
    return config


@pytest.fixture
def store_backup(config: WardenConfig) -> Path:
    """Populate the durable store with a complete backup dated 2026-01-10.

    Creates:
        store/openclaw/openclaw.json
        store/workspace/IDENTITY.md, memory/2026-01-10.md
        store/skills/search/SKILL.md
        store/.last-sync
    """
    store = config.mount_path
    (store / "openclaw").mkdir(parents=True)
    (store / "openclaw" / "openclaw.json").write_text('{"gateway": {"port": 18789}}\n')
    (store / "workspace" / "memory").mkdir(parents=True)
    (store / "workspace" / "IDENTITY.md").write_text("# Identity\nRestored identity.\n")
    (store / "workspace" / "memory" / "2026-01-10.md").write_text("Remembered conversation.\n")
    (store / "skills" / "search").mkdir(parents=True)
    (store / "skills" / "search" / "SKILL.md").write_text("# Search skill\n")
    (store / ".last-sync").write_text("2026-01-10T12:00:00+00:00\n")
    return store


@pytest.fixture
def mounted(config: WardenConfig) -> WardenConfig:
    """Record config.mount_path in the mount table so the store counts as mounted."""
    config.mount_path.mkdir(parents=True, exist_ok=True)
    config.mount_table_path.write_text(
        "proc /proc proc rw 0 0\n"
        f"s3fs {config.mount_path} fuse.s3fs rw,nosuid,nodev 0 0\n"
    )
    return config


@pytest.fixture
def mount_adapter(config: WardenConfig) -> MountAdapter:
    return MountAdapter(
        config.mount_path,
        config.mount_table_path,
        timeout=config.mount_timeout,
        passwd_file=config.state_dir / ".passwd-s3fs",
    )


@pytest.fixture
def storage_credentials() -> StorageCredentials:
    return StorageCredentials(
        access_key_id="AKIDEXAMPLE",
        secret_access_key="wJalrXUtnFEMI",
        account_id="acct123",
    )


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create a test database for the event log."""
    return Database(tmp_path / "state" / "events.db")


# =============================================================================
# Git Fixtures
# =============================================================================


def _git_available() -> bool:
    return shutil.which("git") is not None


@pytest.fixture
def bare_remote(tmp_path: Path) -> Path:
    """Create an empty bare git repository to push backups to.

    Skips the test when git is not installed.
    """
    if not _git_available():
        pytest.skip("git is not installed")
    remote = tmp_path / "remote.git"
    subprocess.run(["git", "init", "-q", "--bare", str(remote)], check=True, capture_output=True)
    return remote


def git_log(remote: Path, branch: str = "main") -> list[str]:
    """Commit subjects on a branch of a bare repository, newest first."""
    result = subprocess.run(
        ["git", "--git-dir", str(remote), "log", "--format=%s", branch],
        capture_output=True,
        text=True,
    )
    if result.returncode != 0:
        return []
    return result.stdout.splitlines()


def git_show(remote: Path, path: str, branch: str = "main") -> str:
    """Contents of a file at the tip of a branch of a bare repository."""
    return subprocess.run(
        ["git", "--git-dir", str(remote), "show", f"{branch}:{path}"],
        capture_output=True,
        text=True,
        check=True,
    ).stdout


@pytest.fixture
def remote_log():
    return git_log


@pytest.fixture
def remote_show():
    return git_show
