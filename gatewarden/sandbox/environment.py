"""Execution environment: launching, listing and terminating processes.

The supervisor talks to processes only through ExecutionEnvironment and
ProcessHandle. LocalEnvironment implements them on the host with
subprocess (launch and output capture) and psutil (enumeration, status,
termination).

Launches are recorded in a small JSON launch registry keyed by pid and
process start time, so a process started by us can be recognized later by
its launch tag rather than by its command line.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import socket
import subprocess
import time
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import psutil
from pydantic import BaseModel

from gatewarden.core.models import ProcessInfo, ProcessStatus

logger = logging.getLogger(__name__)

# Tail of captured output returned by get_logs()
DEFAULT_MAX_LOG_BYTES = 64 * 1024


class SandboxError(Exception):
    """Error talking to the execution environment."""

    pass


class LaunchError(SandboxError):
    """A process could not be started."""

    pass


class ProcessLogs(BaseModel):
    """Captured output of a process."""

    stdout: str = ""
    stderr: str = ""


def _read_tail(path: Path | None, max_bytes: int) -> str:
    """Read the last max_bytes of a log file, noting any truncation.

    Startup failures are reported at the END of the output, so the tail is
    what gets kept.
    """
    if path is None or not path.exists():
        return ""
    try:
        with open(path, "rb") as f:
            f.seek(0, os.SEEK_END)
            size = f.tell()
            f.seek(max(0, size - max_bytes))
            data = f.read()
    except OSError as e:
        logger.warning(f"Cannot read process log {path}: {e}")
        return ""
    text = data.decode("utf-8", errors="replace")
    if size > max_bytes:
        return f"[OUTPUT TRUNCATED - showing last {max_bytes} bytes]\n\n" + text
    return text


class ProcessHandle(ABC):
    """Reference to one process inside the execution environment.

    The environment's process table owns the process. A handle never
    destroys it except through an explicit kill().
    """

    def __init__(self, pid: int, command: str, launch_tag: str | None = None):
        self.pid = pid
        self.command = command
        self.launch_tag = launch_tag
        self.port: int | None = None

    @property
    @abstractmethod
    def status(self) -> ProcessStatus:
        """Current lifecycle status."""

    @abstractmethod
    def wait_for_port(self, port: int, timeout: float) -> bool:
        """Wait until the port accepts TCP connections. False on timeout."""

    @abstractmethod
    def kill(self) -> None:
        """Terminate the process. Raises SandboxError if it cannot be killed."""

    @abstractmethod
    def get_logs(self) -> ProcessLogs:
        """Recent captured output."""

    def to_info(self) -> ProcessInfo:
        return ProcessInfo(
            pid=self.pid,
            command=self.command,
            status=self.status,
            launch_tag=self.launch_tag,
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} pid={self.pid} command={self.command!r}>"


class ExecutionEnvironment(ABC):
    """Host capabilities the supervisor depends on."""

    @abstractmethod
    def start(
        self,
        command: str,
        env: dict[str, str] | None = None,
        launch_tag: str | None = None,
    ) -> ProcessHandle:
        """Launch a process. Raises LaunchError on failure."""

    @abstractmethod
    def list_processes(self) -> list[ProcessHandle]:
        """All processes visible to the environment. May raise SandboxError."""

    @abstractmethod
    def set_env_vars(self, env: dict[str, str]) -> None:
        """Make variables available to every future command."""


def _probe_port(host: str, port: int, timeout: float) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


class LocalProcess(ProcessHandle):
    """A host process, either launched by us (popen set) or discovered."""

    POLL_INTERVAL = 0.5
    KILL_GRACE_SECONDS = 5.0

    def __init__(
        self,
        pid: int,
        command: str,
        host: str = "127.0.0.1",
        launch_tag: str | None = None,
        popen: subprocess.Popen | None = None,
        stdout_path: Path | None = None,
        stderr_path: Path | None = None,
        max_log_bytes: int = DEFAULT_MAX_LOG_BYTES,
    ):
        super().__init__(pid, command, launch_tag)
        self.host = host
        self._popen = popen
        self._stdout_path = stdout_path
        self._stderr_path = stderr_path
        self._max_log_bytes = max_log_bytes
        self._ready = False

    @property
    def status(self) -> ProcessStatus:
        if self._popen is not None:
            returncode = self._popen.poll()
            if returncode is None:
                return ProcessStatus.RUNNING if self._ready else ProcessStatus.STARTING
            return ProcessStatus.STOPPED if returncode == 0 else ProcessStatus.FAILED

        try:
            proc_status = psutil.Process(self.pid).status()
        except psutil.NoSuchProcess:
            return ProcessStatus.STOPPED
        except psutil.Error:
            # Exists but not inspectable (e.g. AccessDenied)
            return ProcessStatus.RUNNING
        if proc_status in (psutil.STATUS_ZOMBIE, psutil.STATUS_DEAD):
            return ProcessStatus.STOPPED
        return ProcessStatus.RUNNING

    def wait_for_port(self, port: int, timeout: float) -> bool:
        self.port = port
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            if not self.status.is_alive:
                logger.debug(f"Process {self.pid} exited while waiting for port {port}")
                return False
            if _probe_port(self.host, port, min(1.0, remaining)):
                self._ready = True
                return True
            time.sleep(min(self.POLL_INTERVAL, max(0.0, deadline - time.monotonic())))

    def kill(self) -> None:
        """Terminate the process and its children (SIGTERM, then SIGKILL)."""
        try:
            parent = psutil.Process(self.pid)
            targets = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            self._reap()
            return
        except psutil.Error as e:
            raise SandboxError(f"Cannot inspect process {self.pid}: {e}") from e

        for proc in targets:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass
            except psutil.Error as e:
                raise SandboxError(f"Cannot terminate process {proc.pid}: {e}") from e

        _, alive = psutil.wait_procs(targets, timeout=self.KILL_GRACE_SECONDS)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass
            except psutil.Error as e:
                raise SandboxError(f"Cannot kill process {proc.pid}: {e}") from e
        self._reap()

    def _reap(self) -> None:
        if self._popen is not None:
            try:
                self._popen.wait(timeout=1)
            except subprocess.TimeoutExpired:
                pass

    def get_logs(self) -> ProcessLogs:
        return ProcessLogs(
            stdout=_read_tail(self._stdout_path, self._max_log_bytes),
            stderr=_read_tail(self._stderr_path, self._max_log_bytes),
        )


class LaunchRegistry:
    """JSON file recording the processes this environment launched.

    Entries are keyed by pid and carry the process start time, so a
    recycled pid is never mistaken for the process we launched.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> dict[str, dict[str, Any]]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable launch registry {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def record(self, pid: int, entry: dict[str, Any]) -> None:
        entries = {
            key: value for key, value in self.load().items() if psutil.pid_exists(int(key))
        }
        entries[str(pid)] = entry
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f".{self.path.name}.{uuid.uuid4().hex[:8]}")
        tmp_path.write_text(json.dumps(entries, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)

    def lookup(self, pid: int, create_time: float | None) -> dict[str, Any] | None:
        entry = self.load().get(str(pid))
        if entry is None:
            return None
        recorded = entry.get("create_time")
        if create_time is not None and recorded is not None:
            if abs(float(recorded) - create_time) > 1.0:
                return None
        return entry


class LocalEnvironment(ExecutionEnvironment):
    """Execution environment backed by the local host."""

    def __init__(
        self,
        logs_dir: Path,
        registry_path: Path,
        host: str = "127.0.0.1",
        max_log_bytes: int = DEFAULT_MAX_LOG_BYTES,
    ):
        self.logs_dir = Path(logs_dir)
        self.registry = LaunchRegistry(registry_path)
        self.host = host
        self.max_log_bytes = max_log_bytes

    def start(
        self,
        command: str,
        env: dict[str, str] | None = None,
        launch_tag: str | None = None,
    ) -> LocalProcess:
        args = shlex.split(command)
        if not args:
            raise LaunchError("Empty launch command")

        self.logs_dir.mkdir(parents=True, exist_ok=True)
        stamp = time.strftime("%Y%m%d-%H%M%S") + f"-{uuid.uuid4().hex[:6]}"
        stdout_path = self.logs_dir / f"{stamp}.stdout.log"
        stderr_path = self.logs_dir / f"{stamp}.stderr.log"

        try:
            with open(stdout_path, "ab") as out, open(stderr_path, "ab") as err:
                popen = subprocess.Popen(
                    args,
                    env={**os.environ, **(env or {})},
                    stdin=subprocess.DEVNULL,
                    stdout=out,
                    stderr=err,
                    start_new_session=True,
                )
        except OSError as e:
            raise LaunchError(f"Failed to start '{command}': {e}") from e

        try:
            create_time = psutil.Process(popen.pid).create_time()
        except psutil.Error:
            create_time = None

        try:
            self.registry.record(
                popen.pid,
                {
                    "tag": launch_tag,
                    "command": command,
                    "create_time": create_time,
                    "stdout": str(stdout_path),
                    "stderr": str(stderr_path),
                },
            )
        except OSError as e:
            logger.warning(f"Failed to record launch of pid {popen.pid}: {e}")

        logger.info(f"Started process pid={popen.pid} command={command!r}")
        return LocalProcess(
            pid=popen.pid,
            command=command,
            host=self.host,
            launch_tag=launch_tag,
            popen=popen,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
            max_log_bytes=self.max_log_bytes,
        )

    def list_processes(self) -> list[LocalProcess]:
        own_pid = os.getpid()
        handles: list[LocalProcess] = []
        try:
            for proc in psutil.process_iter(["pid", "cmdline", "create_time"]):
                info = proc.info
                if info["pid"] == own_pid or not info["cmdline"]:
                    continue
                entry = self.registry.lookup(info["pid"], info["create_time"]) or {}
                handles.append(
                    LocalProcess(
                        pid=info["pid"],
                        command=shlex.join(info["cmdline"]),
                        host=self.host,
                        launch_tag=entry.get("tag"),
                        stdout_path=Path(entry["stdout"]) if entry.get("stdout") else None,
                        stderr_path=Path(entry["stderr"]) if entry.get("stderr") else None,
                        max_log_bytes=self.max_log_bytes,
                    )
                )
        except psutil.Error as e:
            raise SandboxError(f"Could not list processes: {e}") from e
        return handles

    def set_env_vars(self, env: dict[str, str]) -> None:
        os.environ.update(env)
