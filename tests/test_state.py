"""Tests for the SQLite event log."""

from __future__ import annotations

from pathlib import Path

from gatewarden.core.state import Database, Event, EventType, record_event


# =============================================================================
# Event Logging Tests
# =============================================================================


class TestEventLogging:
    """Tests for event log operations."""

    def test_append_and_read(self, test_db):
        event_id = test_db.append_event(
            Event(
                event_type=EventType.GATEWAY_STARTED,
                pid=4242,
                message="Gateway ready on port 18789",
                payload={"port": 18789},
            )
        )
        assert event_id > 0

        events = test_db.get_events()
        assert len(events) == 1
        assert events[0].event_type == EventType.GATEWAY_STARTED
        assert events[0].pid == 4242
        assert events[0].payload == {"port": 18789}
        assert events[0].timestamp.tzinfo is not None

    def test_newest_first(self, test_db):
        for event_type in (EventType.RESTORE_SKIPPED, EventType.GATEWAY_STARTED, EventType.GATEWAY_REUSED):
            test_db.append_event(Event(event_type=event_type))
        types = [e.event_type for e in test_db.get_events()]
        assert types == [EventType.GATEWAY_REUSED, EventType.GATEWAY_STARTED, EventType.RESTORE_SKIPPED]

    def test_filter_by_type(self, test_db):
        test_db.append_event(Event(event_type=EventType.STORE_SYNC_COMPLETED))
        test_db.append_event(Event(event_type=EventType.STORE_SYNC_FAILED, message="not mounted"))
        test_db.append_event(Event(event_type=EventType.REPO_SYNC_FAILED))

        failed = test_db.get_events([EventType.STORE_SYNC_FAILED, EventType.REPO_SYNC_FAILED])
        assert {e.event_type for e in failed} == {
            EventType.STORE_SYNC_FAILED,
            EventType.REPO_SYNC_FAILED,
        }

    def test_limit(self, test_db):
        for _ in range(5):
            test_db.append_event(Event(event_type=EventType.GATEWAY_REUSED))
        assert len(test_db.get_events(limit=2)) == 2

    def test_persists_across_instances(self, tmp_path: Path):
        path = tmp_path / "events.db"
        Database(path).append_event(Event(event_type=EventType.GATEWAY_KILLED, pid=7))
        assert Database(path).get_events()[0].pid == 7


class TestRecordEvent:
    def test_no_database_is_noop(self):
        record_event(None, EventType.GATEWAY_STARTED, pid=1)

    def test_records(self, test_db):
        record_event(test_db, EventType.RESTORE_COMPLETED, message="Restored config")
        assert test_db.get_events()[0].message == "Restored config"

    def test_failure_never_raises(self, test_db, mocker):
        mocker.patch.object(test_db, "append_event", side_effect=OSError("disk full"))
        record_event(test_db, EventType.GATEWAY_FAILED, message="x")
