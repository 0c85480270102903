"""Tests for backing up to the durable store."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from gatewarden.core.models import ErrorCategory
from gatewarden.core.state import EventType
from gatewarden.sandbox.mount import MountAdapter
from gatewarden.sync.mirror import TransferTimeout
from gatewarden.sync.store import StoreSync
from gatewarden.sync.timestamps import format_timestamp, parse_timestamp


@pytest.fixture
def store_sync(config, mount_adapter, test_db) -> StoreSync:
    return StoreSync(config, mount_adapter, db=test_db)


# =============================================================================
# Failure Classification
# =============================================================================


class TestPreconditions:
    def test_missing_credentials(self, store_sync):
        result = store_sync.sync_to_store(None)
        assert result.success is False
        assert result.category == ErrorCategory.CONFIGURATION_MISSING

    def test_mount_failure(self, store_sync, storage_credentials, mocker):
        mocker.patch.object(store_sync.mount_adapter, "ensure_mounted", return_value=False)
        result = store_sync.sync_to_store(storage_credentials)
        assert result.category == ErrorCategory.MOUNT_FAILURE

    def test_integrity_gate_leaves_marker_unchanged(
        self, config, mounted, store_sync, storage_credentials
    ):
        """No config file locally: nothing written, remote .last-sync untouched."""
        marker = config.mount_path / ".last-sync"
        marker.write_text("2026-01-10T12:00:00+00:00\n")
        config.workspace_dir.mkdir(parents=True)
        (config.workspace_dir / "IDENTITY.md").write_text("fresh sandbox")

        result = store_sync.sync_to_store(storage_credentials)

        assert result.success is False
        assert result.category == ErrorCategory.SYNC_INTEGRITY_FAILURE
        assert marker.read_text() == "2026-01-10T12:00:00+00:00\n"
        assert not (config.mount_path / "workspace").exists()

    def test_failure_event_recorded(self, store_sync, test_db):
        store_sync.sync_to_store(None)
        events = test_db.get_events([EventType.STORE_SYNC_FAILED])
        assert events[0].payload["category"] == "configuration_missing"


# =============================================================================
# Successful Sync
# =============================================================================


class TestSync:
    def test_full_sync(self, local_state, mounted, store_sync, storage_credentials, test_db):
        config = local_state
        result = store_sync.sync_to_store(storage_credentials)

        assert result.success is True, result.error
        store = config.mount_path
        assert (store / "openclaw" / "openclaw.json").exists()
        assert (store / "workspace" / "IDENTITY.md").exists()
        assert (store / "workspace" / "memory" / "2026-01-09.md").exists()
        assert (store / "skills" / "weather" / "SKILL.md").exists()
        assert (store / ".last-sync").read_text().strip() == result.last_sync
        assert test_db.get_events([EventType.STORE_SYNC_COMPLETED])

    def test_excludes(self, local_state, mounted, store_sync, storage_credentials):
        config = local_state
        (config.config_dir / "gateway.lock").write_text("")
        (config.workspace_dir / "debug.log").write_text("")
        (config.workspace_dir / ".git").mkdir()
        (config.workspace_dir / ".git" / "HEAD").write_text("ref: refs/heads/main\n")

        store_sync.sync_to_store(storage_credentials)

        store = config.mount_path
        assert not (store / "openclaw" / "gateway.lock").exists()
        assert not (store / "workspace" / "debug.log").exists()
        assert not (store / "workspace" / "node_modules").exists()
        assert not (store / "workspace" / ".git").exists()
        # Skills travel separately, not inside the workspace copy
        assert not (store / "workspace" / "skills").exists()

    def test_deletion_aware(self, local_state, mounted, store_sync, storage_credentials):
        config = local_state
        store_sync.sync_to_store(storage_credentials)
        (config.workspace_dir / "USER.md").unlink()

        store_sync.sync_to_store(storage_credentials)

        assert not (config.mount_path / "workspace" / "USER.md").exists()

    def test_marker_written_last_and_recent(self, local_state, mounted, store_sync, storage_credentials):
        result = store_sync.sync_to_store(storage_credentials)
        moment = parse_timestamp(result.last_sync)
        assert moment is not None
        assert abs(datetime.now(UTC) - moment) < timedelta(minutes=1)

    def test_marker_written_beside_transferred_data(self, local_state, test_db, storage_credentials):
        """The marker follows the adapter's mount point, not the configured default."""
        other = local_state.mount_path.parent / "other-store"
        other.mkdir()
        local_state.mount_table_path.write_text(f"s3fs {other} fuse.s3fs rw 0 0\n")
        adapter = MountAdapter(other, local_state.mount_table_path)

        result = StoreSync(local_state, adapter, db=test_db).sync_to_store(storage_credentials)

        assert result.success is True, result.error
        assert (other / "openclaw" / "openclaw.json").exists()
        assert (other / ".last-sync").read_text().strip() == result.last_sync
        assert not (local_state.mount_path / ".last-sync").exists()

    def test_legacy_config_passes_integrity_check(self, config, mounted, store_sync, storage_credentials):
        config.config_dir.mkdir(parents=True)
        (config.config_dir / "clawdbot.json").write_text("{}")
        assert store_sync.sync_to_store(storage_credentials).success is True


# =============================================================================
# Transfer Failures
# =============================================================================


class TestTransferFailures:
    def test_timeout_leaves_marker_unchanged(
        self, local_state, mounted, store_sync, storage_credentials, mocker
    ):
        marker = local_state.mount_path / ".last-sync"
        marker.write_text("2026-01-10T12:00:00+00:00\n")
        mocker.patch(
            "gatewarden.sync.store.mirror_tree", side_effect=TransferTimeout("Transfer exceeded 30.0s")
        )

        result = store_sync.sync_to_store(storage_credentials)

        assert result.category == ErrorCategory.TRANSFER_FAILURE
        assert marker.read_text() == "2026-01-10T12:00:00+00:00\n"

    def test_copy_error(self, local_state, mounted, store_sync, storage_credentials, mocker):
        mocker.patch("gatewarden.sync.store.mirror_tree", side_effect=PermissionError("read-only"))
        result = store_sync.sync_to_store(storage_credentials)
        assert result.category == ErrorCategory.TRANSFER_FAILURE
        assert "read-only" in result.details

    def test_partial_transfer_does_not_write_marker(
        self, local_state, mounted, store_sync, storage_credentials, mocker
    ):
        """Config copied, workspace fails: the marker must not certify the backup."""
        from gatewarden.sync import store as store_module

        real = store_module.mirror_tree
        calls = []

        def flaky(source, destination, *args, **kwargs):
            calls.append(destination.name)
            if destination.name == "workspace":
                raise OSError("connection reset")
            return real(source, destination, *args, **kwargs)

        mocker.patch("gatewarden.sync.store.mirror_tree", side_effect=flaky)
        result = store_sync.sync_to_store(storage_credentials)

        assert result.success is False
        assert calls == ["openclaw", "workspace"]
        assert not (local_state.mount_path / ".last-sync").exists()

    def test_stale_read_back_is_failure(
        self, local_state, mounted, store_sync, storage_credentials, mocker
    ):
        stale = format_timestamp(datetime.now(UTC) - timedelta(hours=1))
        mocker.patch("gatewarden.sync.store.read_marker", return_value=stale)
        result = store_sync.sync_to_store(storage_credentials)
        assert result.category == ErrorCategory.TRANSFER_FAILURE
        assert "stale" in result.error

    def test_unreadable_read_back_is_failure(
        self, local_state, mounted, store_sync, storage_credentials, mocker
    ):
        mocker.patch("gatewarden.sync.store.read_marker", return_value=None)
        result = store_sync.sync_to_store(storage_credentials)
        assert result.category == ErrorCategory.TRANSFER_FAILURE
