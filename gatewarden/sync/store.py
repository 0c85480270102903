"""Periodic backup of gateway state to the mounted durable store.

Config, workspace and skills are mirrored, then the `.last-sync` marker is
written. The marker is the only proof of a complete backup, so it is
written last and success is judged by reading it back.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path

from gatewarden.core.config import WardenConfig
from gatewarden.core.models import ErrorCategory, SyncResult
from gatewarden.core.state import Database, EventType, record_event
from gatewarden.sandbox.mount import MountAdapter, StorageCredentials
from gatewarden.sync.mirror import Deadline, MirrorStats, TransferTimeout, mirror_tree
from gatewarden.sync.restore import CONFIG_FILE, LEGACY_CONFIG_FILE
from gatewarden.sync.timestamps import MARKER_NAME, parse_timestamp, read_marker, write_marker

logger = logging.getLogger(__name__)

DESTINATION = "store"

# How far a read-back marker may be from now and still count as ours
MARKER_TOLERANCE = timedelta(minutes=5)


class StoreSync:
    """Mirror local state into the durable store."""

    def __init__(
        self,
        config: WardenConfig,
        mount_adapter: MountAdapter,
        db: Database | None = None,
    ):
        self.config = config
        self.mount_adapter = mount_adapter
        self.db = db

    def workspace_excludes(self) -> list[str]:
        excludes = [*self.config.sync_excludes, ".git"]
        try:
            rel = self.config.skills_dir.relative_to(self.config.workspace_dir)
        except ValueError:
            return excludes
        # Skills travel as their own target
        excludes.append("/" + rel.as_posix())
        return excludes

    def check_integrity(self) -> str | None:
        """Return a reason the local state must not be backed up, or None."""
        config_dir = self.config.config_dir
        if not config_dir.is_dir():
            return f"Config directory {config_dir} does not exist"
        if not ((config_dir / CONFIG_FILE).is_file() or (config_dir / LEGACY_CONFIG_FILE).is_file()):
            return f"No {CONFIG_FILE} or {LEGACY_CONFIG_FILE} in {config_dir}"
        return None

    def sync_to_store(self, credentials: StorageCredentials | None) -> SyncResult:
        """Back up config, workspace and skills. Never raises."""
        result = self._sync(credentials)
        if result.success:
            record_event(
                self.db,
                EventType.STORE_SYNC_COMPLETED,
                message=f"Backed up to durable store at {result.last_sync}",
            )
        else:
            logger.error(f"Durable store sync failed: {result.error}")
            record_event(
                self.db,
                EventType.STORE_SYNC_FAILED,
                message=result.error or "",
                payload={"category": result.category.value if result.category else None},
            )
        return result

    def _sync(self, credentials: StorageCredentials | None) -> SyncResult:
        if credentials is None:
            return SyncResult.failed(
                DESTINATION,
                ErrorCategory.CONFIGURATION_MISSING,
                "Durable storage is not configured",
            )

        if not self.mount_adapter.ensure_mounted(credentials):
            return SyncResult.failed(
                DESTINATION,
                ErrorCategory.MOUNT_FAILURE,
                "Durable store is not mounted",
                details=f"Mount point: {self.mount_adapter.mount_path}",
            )

        problem = self.check_integrity()
        if problem is not None:
            # Never overwrite a good backup with an empty or broken config
            return SyncResult.failed(
                DESTINATION,
                ErrorCategory.SYNC_INTEGRITY_FAILURE,
                "Local state failed sanity check, backup aborted",
                details=problem,
            )

        store = self.mount_adapter.mount_path
        excludes = self.config.sync_excludes
        deadline = Deadline(self.config.sync_timeout)
        stats = MirrorStats()
        try:
            stats += mirror_tree(
                self.config.config_dir, store / "openclaw", [*excludes, MARKER_NAME], deadline
            )
            if self.config.workspace_dir.is_dir():
                stats += mirror_tree(
                    self.config.workspace_dir,
                    store / "workspace",
                    self.workspace_excludes(),
                    deadline,
                )
            if self.config.skills_dir.is_dir():
                stats += mirror_tree(self.config.skills_dir, store / "skills", excludes, deadline)
            deadline.check()
        except TransferTimeout as e:
            return SyncResult.failed(DESTINATION, ErrorCategory.TRANSFER_FAILURE, str(e))
        except OSError as e:
            return SyncResult.failed(
                DESTINATION,
                ErrorCategory.TRANSFER_FAILURE,
                "Copying to the durable store failed",
                details=str(e),
            )

        logger.info(
            f"Transferred {stats.copied} files ({stats.skipped} unchanged, {stats.deleted} removed)"
        )
        return self._write_and_verify_marker(store)

    def _write_and_verify_marker(self, store: Path) -> SyncResult:
        marker = store / MARKER_NAME
        try:
            write_marker(marker)
        except OSError as e:
            return SyncResult.failed(
                DESTINATION,
                ErrorCategory.TRANSFER_FAILURE,
                "Could not write sync marker",
                details=str(e),
            )

        written = read_marker(marker)
        moment = parse_timestamp(written)
        if moment is None:
            return SyncResult.failed(
                DESTINATION,
                ErrorCategory.TRANSFER_FAILURE,
                "Sync marker could not be read back",
                details=f"Read {written!r} from {marker}",
            )
        if abs(datetime.now(UTC) - moment) > MARKER_TOLERANCE:
            return SyncResult.failed(
                DESTINATION,
                ErrorCategory.TRANSFER_FAILURE,
                "Sync marker is stale after writing",
                details=f"Read {written!r} from {marker}",
            )

        logger.info(f"Durable store backup complete at {written}")
        return SyncResult(success=True, destination=DESTINATION, last_sync=written)
