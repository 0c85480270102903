"""Gateway process supervisor.

ensure_running() is the single entry point. Each cycle:

1. Mount the durable store (best effort).
2. Propagate the gateway environment to the execution environment (best effort).
3. Fingerprint the environment snapshot.
4. Look up an existing gateway.
5. Reuse it if the fingerprint marker matches and its port answers; otherwise
   kill it.
6. Write the new fingerprint marker, then launch a fresh gateway.
7. Wait for its port; on timeout fail with the captured output.

Cycles are serialized: concurrent in-process callers share one attempt and
separate processes take turns on a file lock.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from gatewarden.core.config import WardenConfig
from gatewarden.core.fingerprint import (
    FingerprintMarker,
    build_gateway_env,
    compute_fingerprint,
    present_keys,
)
from gatewarden.core.locks import SingleFlight, SupervisionLock
from gatewarden.core.models import ErrorCategory
from gatewarden.core.state import Database, EventType, record_event
from gatewarden.sandbox.environment import (
    ExecutionEnvironment,
    LaunchError,
    ProcessHandle,
    ProcessLogs,
)
from gatewarden.sandbox.mount import MountAdapter, StorageCredentials
from gatewarden.sandbox.registry import GATEWAY_LAUNCH_TAG, find_supervised_process

logger = logging.getLogger(__name__)


class SupervisorError(Exception):
    """Supervision failed; the gateway is not known to be ready."""

    category: ErrorCategory = ErrorCategory.LAUNCH_FAILURE

    def __init__(self, message: str, category: ErrorCategory | None = None):
        super().__init__(message)
        if category is not None:
            self.category = category


class GatewayLaunchError(SupervisorError):
    """The execution environment refused to start the gateway."""

    category = ErrorCategory.LAUNCH_FAILURE


class GatewayStartupError(SupervisorError):
    """The gateway started but its port never became reachable."""

    category = ErrorCategory.READINESS_TIMEOUT

    def __init__(self, message: str, stdout: str = "", stderr: str = ""):
        self.stdout = stdout
        self.stderr = stderr
        detail = stderr.strip() or stdout.strip() or "(no output captured)"
        super().__init__(f"{message}\n{detail}")


class GatewaySupervisor:
    """Find-or-start the gateway and return a handle to a ready process."""

    def __init__(
        self,
        config: WardenConfig,
        environment: ExecutionEnvironment,
        mount_adapter: MountAdapter | None = None,
        db: Database | None = None,
        marker: FingerprintMarker | None = None,
    ):
        self.config = config
        self.environment = environment
        self.mount_adapter = mount_adapter
        self.db = db
        self.marker = marker or FingerprintMarker(config.fingerprint_file)
        self._single_flight: SingleFlight[ProcessHandle] = SingleFlight()

    def ensure_running(
        self,
        credentials: StorageCredentials | None,
        snapshot: Mapping[str, str | None],
    ) -> ProcessHandle:
        """Return a handle to a ready gateway, starting one if needed.

        Raises:
            GatewayLaunchError: the gateway could not be started.
            GatewayStartupError: it started but never became reachable.
            LockTimeoutError: another process held the supervision lock too long.
        """
        return self._single_flight.run(lambda: self._run_locked(credentials, snapshot))

    def _run_locked(
        self,
        credentials: StorageCredentials | None,
        snapshot: Mapping[str, str | None],
    ) -> ProcessHandle:
        with SupervisionLock(self.config.lock_file, timeout=self.config.lock_timeout):
            return self._supervise(credentials, snapshot)

    def _supervise(
        self,
        credentials: StorageCredentials | None,
        snapshot: Mapping[str, str | None],
    ) -> ProcessHandle:
        self._mount(credentials)

        gateway_env = build_gateway_env(snapshot)
        self._propagate_env(gateway_env)

        fingerprint = compute_fingerprint(snapshot)
        logger.debug(f"Environment fingerprint covers {len(present_keys(snapshot))} keys")

        existing = find_supervised_process(self.environment)
        if existing is not None:
            stored = self.marker.read()
            if stored != fingerprint:
                logger.info(
                    f"Environment changed since gateway pid {existing.pid} was launched, restarting"
                )
                self._terminate(existing, reason="environment changed")
            else:
                logger.info(f"Found gateway pid {existing.pid}, checking readiness")
                if existing.wait_for_port(self.config.gateway_port, self.config.startup_timeout):
                    record_event(
                        self.db,
                        EventType.GATEWAY_REUSED,
                        pid=existing.pid,
                        message="Reused running gateway",
                    )
                    return existing
                logger.warning(f"Gateway pid {existing.pid} is not reachable, restarting")
                self._terminate(existing, reason="not reachable")

        return self._launch(fingerprint, gateway_env)

    def _mount(self, credentials: StorageCredentials | None) -> None:
        if self.mount_adapter is None:
            return
        try:
            if not self.mount_adapter.ensure_mounted(credentials):
                logger.info("Durable store not mounted; gateway state will not persist")
        except Exception as e:
            logger.warning(f"Mounting the durable store failed (non-fatal): {e}")

    def _propagate_env(self, gateway_env: dict[str, str]) -> None:
        if not gateway_env:
            return
        try:
            self.environment.set_env_vars(gateway_env)
            logger.debug(f"Propagated gateway variables: {', '.join(sorted(gateway_env))}")
        except Exception as e:
            logger.warning(f"Failed to propagate gateway environment (non-fatal): {e}")

    def _terminate(self, handle: ProcessHandle, reason: str) -> None:
        """Kill a gateway. Failure is logged; a fresh launch follows either way."""
        try:
            handle.kill()
        except Exception as e:
            logger.warning(f"Failed to kill gateway pid {handle.pid}: {e}")
            return
        record_event(
            self.db,
            EventType.GATEWAY_KILLED,
            pid=handle.pid,
            message=f"Killed gateway: {reason}",
        )

    def _launch(self, fingerprint: str, gateway_env: dict[str, str]) -> ProcessHandle:
        # The marker is written first so a crash mid-launch still records intent
        self.marker.write(fingerprint)

        logger.info(f"Starting gateway: {self.config.gateway_command}")
        try:
            handle = self.environment.start(
                self.config.gateway_command,
                env=gateway_env,
                launch_tag=GATEWAY_LAUNCH_TAG,
            )
        except LaunchError as e:
            record_event(self.db, EventType.GATEWAY_FAILED, message=f"Launch failed: {e}")
            raise GatewayLaunchError(f"Failed to start gateway: {e}") from e

        logger.info(f"Gateway started with pid {handle.pid}, waiting for port {self.config.gateway_port}")
        if handle.wait_for_port(self.config.gateway_port, self.config.startup_timeout):
            record_event(
                self.db,
                EventType.GATEWAY_STARTED,
                pid=handle.pid,
                message=f"Gateway ready on port {self.config.gateway_port}",
            )
            return handle

        logs = self._collect_logs(handle)
        logger.error(
            f"Gateway pid {handle.pid} did not open port {self.config.gateway_port} "
            f"within {self.config.startup_timeout}s\nstdout:\n{logs.stdout}\nstderr:\n{logs.stderr}"
        )
        record_event(
            self.db,
            EventType.GATEWAY_FAILED,
            pid=handle.pid,
            message="Gateway did not become ready",
            payload={"timeout": self.config.startup_timeout},
        )
        raise GatewayStartupError(
            f"Gateway failed to start within {self.config.startup_timeout}s",
            stdout=logs.stdout,
            stderr=logs.stderr,
        )

    def _collect_logs(self, handle: ProcessHandle) -> ProcessLogs:
        try:
            return handle.get_logs()
        except Exception as e:
            logger.warning(f"Could not fetch gateway logs: {e}")
            return ProcessLogs()
