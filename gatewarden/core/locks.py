"""Serialization of supervision cycles.

Two layers: SingleFlight collapses concurrent callers inside one process
into a single in-flight attempt, and SupervisionLock (filelock) keeps
separate processes, e.g. a cron-driven `gatewarden ensure` and an operator
shell, from supervising the same gateway at once.
"""

from __future__ import annotations

import contextlib
import logging
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Generic, TypeVar

from filelock import FileLock
from filelock import Timeout as FileLockTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LockTimeoutError(Exception):
    """Another process held the supervision lock for too long."""

    pass


class SupervisionLock:
    """Inter-process lock file beside the supervisor's local state.

    Raises LockTimeoutError if the lock cannot be acquired in time. A lock
    path that is a symlink is refused and the cycle runs unlocked.
    """

    def __init__(self, lock_path: Path, timeout: float = 300.0):
        self.lock_path = Path(lock_path)
        self.timeout = timeout
        self._filelock: FileLock | None = None
        self.acquired = False

    def __enter__(self) -> SupervisionLock:
        if self.lock_path.is_symlink():
            logger.warning(f"SECURITY: {self.lock_path} is a symlink; lock disabled.")
            return self

        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Cannot create lock directory for {self.lock_path}: {e}")
            return self

        self._filelock = FileLock(str(self.lock_path), timeout=self.timeout)
        try:
            self._filelock.acquire()
        except FileLockTimeout as e:
            raise LockTimeoutError(
                f"Timed out after {self.timeout}s waiting for {self.lock_path}"
            ) from e
        self.acquired = True
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._filelock is not None and self.acquired:
            with contextlib.suppress(Exception):
                self._filelock.release()
            self.acquired = False
        return False


class _Call(Generic[T]):
    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: T | None = None
        self.error: BaseException | None = None


class SingleFlight(Generic[T]):
    """Run at most one call at a time; callers arriving meanwhile share its outcome.

    The first caller (the leader) runs the function. Callers that arrive
    while it is in flight block until it finishes and then receive the same
    return value, or have the same exception raised. The next call after
    completion starts a fresh attempt.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._call: _Call[T] | None = None

    def run(self, fn: Callable[[], T]) -> T:
        with self._lock:
            call = self._call
            leader = call is None
            if call is None:
                call = self._call = _Call()

        if not leader:
            call.done.wait()
            if call.error is not None:
                raise call.error
            return call.result  # type: ignore[return-value]

        try:
            call.result = fn()
            return call.result
        except BaseException as e:
            call.error = e
            raise
        finally:
            with self._lock:
                self._call = None
            call.done.set()

    @property
    def in_flight(self) -> bool:
        with self._lock:
            return self._call is not None
