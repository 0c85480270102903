"""Data models for gateway supervision and backup sync.

Uses Pydantic for the structured results handed back to callers.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class ProcessStatus(str, Enum):
    """Lifecycle status of a process inside the execution environment."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_alive(self) -> bool:
        return self in (ProcessStatus.STARTING, ProcessStatus.RUNNING)


class ErrorCategory(str, Enum):
    """Classification of supervision and sync failures."""

    CONFIGURATION_MISSING = "configuration_missing"  # Credentials absent, not retryable
    MOUNT_FAILURE = "mount_failure"  # Storage attach failed, retried next cycle
    LAUNCH_FAILURE = "launch_failure"  # Process failed to start
    READINESS_TIMEOUT = "readiness_timeout"  # Started but never reachable
    SYNC_INTEGRITY_FAILURE = "sync_integrity_failure"  # Source failed sanity check
    TRANSFER_FAILURE = "transfer_failure"  # Copy/commit/push failed


class ProcessInfo(BaseModel):
    """Snapshot of one process as reported by the execution environment."""

    pid: int
    command: str
    status: ProcessStatus
    launch_tag: str | None = None


class SyncResult(BaseModel):
    """Outcome of a sync to one backup destination.

    Exactly one of three shapes:
    - success with last_sync (and changeset for repository pushes)
    - success with a note and no changeset (repository no-op)
    - failure with category, error and optional details
    """

    success: bool
    destination: str
    last_sync: str | None = None
    changeset: str | None = None
    note: str | None = None
    category: ErrorCategory | None = None
    error: str | None = None
    details: str | None = None

    @classmethod
    def failed(
        cls,
        destination: str,
        category: ErrorCategory,
        error: str,
        details: str | None = None,
    ) -> "SyncResult":
        return cls(
            success=False,
            destination=destination,
            category=category,
            error=error,
            details=details,
        )


class RestoreReport(BaseModel):
    """Outcome of a boot-time restore from the durable store."""

    restored: bool
    reason: str
    config_layout: str | None = None  # "current", "legacy", "flat"
    targets: list[str] = Field(default_factory=list)
    failed_targets: list[str] = Field(default_factory=list)
    remote_sync: str | None = None
    local_sync: str | None = None
    finished_at: datetime | None = None
