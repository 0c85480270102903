"""Boot-time restore of gateway state from the durable store.

Runs once, before the gateway is launched. The remote `.last-sync` marker
certifies a complete backup; local state is overwritten only when that
backup is strictly newer than the last one restored here.

Store layout:
    /openclaw/          config (current)
    /clawdbot/          config (legacy)
    /clawdbot.json      config (very old, flat at the store root)
    /workspace/         workspace, merged into local
    /skills/            skills
    /.last-sync         marker
"""

from __future__ import annotations

import logging
import shutil
from datetime import UTC, datetime
from pathlib import Path

from gatewarden.core.config import WardenConfig
from gatewarden.core.models import RestoreReport
from gatewarden.core.state import Database, EventType, record_event
from gatewarden.sync.mirror import is_populated, merge_tree, mirror_tree
from gatewarden.sync.timestamps import MARKER_NAME, parse_timestamp, read_marker

logger = logging.getLogger(__name__)

CONFIG_FILE = "openclaw.json"
LEGACY_CONFIG_FILE = "clawdbot.json"

LAYOUT_CURRENT = "current"
LAYOUT_LEGACY = "legacy"
LAYOUT_FLAT = "flat"


class Reconciler:
    """Decide whether the durable store is newer than local state, and restore it."""

    def __init__(self, config: WardenConfig, db: Database | None = None):
        self.config = config
        self.db = db

    @property
    def store_root(self) -> Path:
        return self.config.mount_path

    @property
    def remote_marker(self) -> Path:
        return self.store_root / MARKER_NAME

    @property
    def local_marker(self) -> Path:
        return self.config.config_dir / MARKER_NAME

    def should_restore(self) -> bool:
        """True if the durable store holds a backup newer than local state."""
        restore, _ = self._decide()
        return restore

    def _decide(self) -> tuple[bool, str]:
        remote_text = read_marker(self.remote_marker)
        if remote_text is None:
            return False, "no backup marker in durable store"

        remote = parse_timestamp(remote_text)
        if remote is None:
            # An unreadable remote marker does not certify a complete backup
            logger.warning(f"Malformed remote sync marker {remote_text!r}, not restoring")
            return False, "remote sync marker is malformed"

        local_text = read_marker(self.local_marker)
        if local_text is None:
            return True, "no local sync marker"

        local = parse_timestamp(local_text)
        if local is None:
            logger.warning(f"Malformed local sync marker {local_text!r}, not restoring")
            return False, "local sync marker is malformed"

        if remote > local:
            return True, f"backup {remote_text} is newer than local {local_text}"
        return False, f"local state {local_text} is current (backup {remote_text})"

    def detect_config_layout(self) -> tuple[str, Path] | None:
        """Find the config backup in the store, newest layout first."""
        candidates = (
            (LAYOUT_CURRENT, self.store_root / "openclaw", CONFIG_FILE),
            (LAYOUT_LEGACY, self.store_root / "clawdbot", LEGACY_CONFIG_FILE),
            (LAYOUT_FLAT, self.store_root, LEGACY_CONFIG_FILE),
        )
        for layout, directory, filename in candidates:
            if (directory / filename).is_file():
                return layout, directory
        return None

    def restore(self) -> RestoreReport:
        """Restore config, workspace and skills if the store is newer.

        Config and skills are mirrored (local-only files are removed);
        the workspace is merged (local-only files are kept). A target that
        fails is logged and reported; the others still run.
        """
        restore, reason = self._decide()
        remote_text = read_marker(self.remote_marker)
        local_text = read_marker(self.local_marker)

        if not restore:
            logger.info(f"Skipping restore: {reason}")
            record_event(self.db, EventType.RESTORE_SKIPPED, message=reason)
            return RestoreReport(
                restored=False,
                reason=reason,
                remote_sync=remote_text,
                local_sync=local_text,
                finished_at=datetime.now(UTC),
            )

        logger.info(f"Restoring from durable store: {reason}")
        report = RestoreReport(
            restored=False, reason=reason, remote_sync=remote_text, local_sync=local_text
        )

        self._restore_config(report)
        self._restore_target(
            "workspace",
            self.store_root / "workspace",
            self.config.workspace_dir,
            merge=True,
            report=report,
        )
        self._restore_target(
            "skills",
            self.store_root / "skills",
            self.config.skills_dir,
            merge=False,
            report=report,
        )

        if "config" in report.targets and not report.failed_targets:
            self._mark_restored()
        elif report.failed_targets:
            logger.warning(
                f"Restore incomplete ({', '.join(report.failed_targets)} failed), "
                "local sync marker left unchanged so the next boot retries"
            )

        report.restored = bool(report.targets)
        report.finished_at = datetime.now(UTC)
        record_event(
            self.db,
            EventType.RESTORE_COMPLETED,
            message=f"Restored {', '.join(report.targets) or 'nothing'}",
            payload=report.model_dump(mode="json"),
        )
        return report

    def _restore_config(self, report: RestoreReport) -> None:
        found = self.detect_config_layout()
        if found is None:
            logger.warning("Backup marker present but no config backup found")
            return

        layout, source = found
        report.config_layout = layout
        config_dir = self.config.config_dir
        try:
            config_dir.mkdir(parents=True, exist_ok=True)
            if layout == LAYOUT_FLAT:
                # Only the config file itself lives at the store root
                shutil.copy2(source / LEGACY_CONFIG_FILE, config_dir / LEGACY_CONFIG_FILE)
            else:
                mirror_tree(source, config_dir, excludes=[MARKER_NAME])

            if layout != LAYOUT_CURRENT:
                legacy = config_dir / LEGACY_CONFIG_FILE
                current = config_dir / CONFIG_FILE
                if legacy.is_file() and not current.exists():
                    legacy.rename(current)
                    logger.info(f"Migrated legacy {LEGACY_CONFIG_FILE} to {CONFIG_FILE}")
        except OSError as e:
            logger.error(f"Failed to restore config from {source}: {e}")
            report.failed_targets.append("config")
            return

        logger.info(f"Restored config from {layout} backup layout")
        report.targets.append("config")

    def _mark_restored(self) -> None:
        """Record locally which backup the restored state came from."""
        try:
            shutil.copy2(self.remote_marker, self.local_marker)
        except OSError as e:
            logger.error(f"Failed to update local sync marker {self.local_marker}: {e}")

    def _restore_target(
        self,
        name: str,
        source: Path,
        destination: Path,
        merge: bool,
        report: RestoreReport,
    ) -> None:
        if not is_populated(source):
            logger.debug(f"No {name} backup to restore")
            return
        try:
            if merge:
                merge_tree(source, destination)
            else:
                mirror_tree(source, destination)
        except OSError as e:
            logger.error(f"Failed to restore {name} from {source}: {e}")
            report.failed_targets.append(name)
            return
        logger.info(f"Restored {name} from durable store")
        report.targets.append(name)
