"""Unit tests for the DynamoDB sync configuration store."""
import pytest
from botocore.exceptions import ClientError

from processor.models import SyncHistoryEntry, SyncProgress
from sync.exceptions import (
    ConcurrencyConflictError,
    NoRunningSyncError,
    SyncCancelledError,
    SyncNotFoundError,
)

NOW = 1746093600000
MINUTE_MS = 60 * 1000


@pytest.fixture
def config(config_store):
    return config_store.create_config(
        'group-1', 'Club Calendar', 'https://calendar.example.com/club.ics', 'user-1', NOW
    )


def begin(config_store, sync_id, started_at=NOW):
    config_store.try_begin_run(
        sync_id, started_at, SyncProgress(phase='fetching'), started_at - 15 * MINUTE_MS
    )


class TestConfigurationCrud:
    """Tests for configuration CRUD."""

    def test_create_and_get(self, config_store, config):
        stored = config_store.get_config(config.sync_id)

        assert stored == config
        assert stored.is_active
        assert stored.last_sync_status == 'idle'
        assert stored.total_syncs == 0

    def test_get_missing(self, config_store):
        assert config_store.get_config('missing') is None

    def test_update_config(self, config_store, config):
        updated = config_store.update_config(
            config.sync_id, {'name': 'Renamed', 'is_active': False, 'ics_url': None}, NOW + 1
        )

        assert updated.name == 'Renamed'
        assert not updated.is_active
        assert updated.ics_url == config.ics_url
        assert updated.updated_at == NOW + 1

    def test_update_ignores_non_editable_fields(self, config_store, config):
        updated = config_store.update_config(config.sync_id, {'group_id': 'group-2'}, NOW + 1)

        assert updated.group_id == 'group-1'

    def test_update_missing_raises(self, config_store):
        with pytest.raises(SyncNotFoundError):
            config_store.update_config('missing', {'name': 'x'}, NOW)

    def test_list_queries(self, config_store, config):
        other = config_store.create_config('group-2', 'Other', 'https://x.example/a.ics', 'u', NOW)
        config_store.update_config(other.sync_id, {'is_active': False}, NOW)

        assert [c.sync_id for c in config_store.list_by_group('group-1')] == [config.sync_id]
        assert [c.sync_id for c in config_store.list_active()] == [config.sync_id]
        assert len(config_store.list_all()) == 2

    def test_delete_config(self, config_store, config):
        config_store.delete_config(config.sync_id)

        assert config_store.get_config(config.sync_id) is None


class TestRunState:
    """Tests for the run guard and run lifecycle."""

    def test_begin_run_marks_running(self, config_store, config):
        begin(config_store, config.sync_id)

        stored = config_store.get_config(config.sync_id)
        assert stored.is_currently_running
        assert stored.current_sync_started_at == NOW
        assert stored.sync_progress.phase == 'fetching'
        assert [c.sync_id for c in config_store.list_running()] == [config.sync_id]

    def test_second_run_conflicts(self, config_store, config):
        """Test a second begin while running is rejected."""
        begin(config_store, config.sync_id)

        with pytest.raises(ConcurrencyConflictError):
            begin(config_store, config.sync_id, NOW + MINUTE_MS)

        assert config_store.get_config(config.sync_id).current_sync_started_at == NOW

    def test_stale_run_is_taken_over(self, config_store, config):
        begin(config_store, config.sync_id)

        begin(config_store, config.sync_id, NOW + 20 * MINUTE_MS)

        assert config_store.get_config(config.sync_id).current_sync_started_at == NOW + 20 * MINUTE_MS

    def test_inactive_config_cannot_start(self, config_store, config):
        config_store.update_config(config.sync_id, {'is_active': False}, NOW)

        with pytest.raises(ConcurrencyConflictError):
            begin(config_store, config.sync_id)

    def test_update_progress(self, config_store, config):
        begin(config_store, config.sync_id)

        config_store.update_progress(
            config.sync_id, NOW,
            SyncProgress(phase='processing', total_events=20, processed_events=10),
            NOW + 1000
        )

        progress = config_store.get_config(config.sync_id).sync_progress
        assert progress.phase == 'processing'
        assert progress.processed_events == 10

    def test_update_progress_after_cancel_raises(self, config_store, config):
        begin(config_store, config.sync_id)
        config_store.cancel_run(config.sync_id, NOW + 1000)

        with pytest.raises(SyncCancelledError):
            config_store.update_progress(config.sync_id, NOW, SyncProgress(phase='processing'))

        stored = config_store.get_config(config.sync_id)
        assert stored.last_sync_status == 'cancelled'
        assert stored.sync_progress is None

    def test_cancel_without_running_sync(self, config_store, config):
        with pytest.raises(NoRunningSyncError):
            config_store.cancel_run(config.sync_id, NOW)

    def test_complete_success_updates_statistics(self, config_store, config):
        """Test the average covers successful runs only."""
        begin(config_store, config.sync_id)
        config_store.complete_error(config.sync_id, NOW, NOW + 500, 'boom', 500)
        begin(config_store, config.sync_id, NOW + 1000)
        config_store.complete_success(
            config.sync_id, NOW + 1000, NOW + 3000, SyncProgress(phase='completed'), 2000
        )
        begin(config_store, config.sync_id, NOW + 4000)
        config_store.complete_success(
            config.sync_id, NOW + 4000, NOW + 8000, SyncProgress(phase='completed'), 4000
        )

        stored = config_store.get_config(config.sync_id)
        assert stored.last_sync_status == 'success'
        assert stored.last_sync_error is None
        assert stored.last_sync_at == NOW + 8000
        assert stored.sync_progress is None
        assert stored.current_sync_started_at is None
        assert stored.total_syncs == 3
        assert stored.successful_syncs == 2
        assert stored.failed_syncs == 1
        assert stored.avg_sync_duration_ms == 3000
        assert stored.success_rate == 67

    def test_complete_error(self, config_store, config):
        begin(config_store, config.sync_id)

        config_store.complete_error(
            config.sync_id, NOW, NOW + 500, 'Failed to fetch ICS: 404', 500
        )

        stored = config_store.get_config(config.sync_id)
        assert stored.last_sync_status == 'error'
        assert stored.last_sync_error == 'Failed to fetch ICS: 404'
        assert not stored.is_currently_running
        assert stored.failed_syncs == 1

    def test_complete_success_after_cancel_raises(self, config_store, config):
        begin(config_store, config.sync_id)
        config_store.cancel_run(config.sync_id, NOW + 10)

        with pytest.raises(SyncCancelledError):
            config_store.complete_success(
                config.sync_id, NOW, NOW + 20, SyncProgress(phase='completed'), 20
            )

        assert config_store.get_config(config.sync_id).total_syncs == 0

    def test_complete_error_after_cancel_raises(self, config_store, config):
        """Test a failure after cancellation does not overwrite the cancelled state."""
        begin(config_store, config.sync_id)
        config_store.cancel_run(config.sync_id, NOW + 10)

        with pytest.raises(SyncCancelledError):
            config_store.complete_error(config.sync_id, NOW, NOW + 20, 'boom', 20)

        stored = config_store.get_config(config.sync_id)
        assert stored.last_sync_status == 'cancelled'
        assert stored.total_syncs == 0
        assert stored.failed_syncs == 0

    def test_replaced_run_cannot_write(self, config_store, config):
        """Test a cancelled run's late writes are rejected once a new run started."""
        begin(config_store, config.sync_id)
        config_store.cancel_run(config.sync_id, NOW + 10)
        begin(config_store, config.sync_id, NOW + 1000)

        with pytest.raises(SyncCancelledError):
            config_store.update_progress(config.sync_id, NOW, SyncProgress(phase='processing'))
        with pytest.raises(SyncCancelledError):
            config_store.complete_success(
                config.sync_id, NOW, NOW + 2000, SyncProgress(phase='completed'), 2000
            )
        with pytest.raises(SyncCancelledError):
            config_store.complete_error(config.sync_id, NOW, NOW + 2000, 'boom', 2000)

        stored = config_store.get_config(config.sync_id)
        assert stored.is_currently_running
        assert stored.current_sync_started_at == NOW + 1000
        assert stored.sync_progress.phase == 'fetching'
        assert stored.total_syncs == 0

    def test_stale_run_cannot_write_after_takeover(self, config_store, config):
        begin(config_store, config.sync_id)
        begin(config_store, config.sync_id, NOW + 20 * MINUTE_MS)

        with pytest.raises(SyncCancelledError):
            config_store.update_progress(config.sync_id, NOW, SyncProgress(phase='cleanup'))

        assert config_store.get_config(config.sync_id).sync_progress.phase == 'fetching'


class TestHistory:
    """Tests for sync history."""

    def make_entry(self, sync_id, started_at, status='success'):
        return SyncHistoryEntry(
            calendar_sync_id=sync_id,
            sync_started_at=started_at,
            sync_completed_at=started_at + 100,
            status=status,
            progress=SyncProgress(phase='completed', created_events=3),
            duration_ms=100,
            metadata={'fetch_time': 40}
        )

    def test_list_history_newest_first(self, config_store):
        for started_at in (NOW, NOW + 1000, NOW + 2000):
            config_store.append_history(self.make_entry('sync-1', started_at))

        history = config_store.list_history('sync-1', limit=2)

        assert [entry.sync_started_at for entry in history] == [NOW + 2000, NOW + 1000]
        assert history[0].progress.created_events == 3
        assert history[0].metadata == {'fetch_time': 40}

    def test_history_is_append_only(self, config_store):
        config_store.append_history(self.make_entry('sync-1', NOW))

        with pytest.raises(ClientError):
            config_store.append_history(self.make_entry('sync-1', NOW, status='error'))

        assert config_store.list_history('sync-1')[0].status == 'success'

    def test_list_recent_history_across_configs(self, config_store):
        config_store.append_history(self.make_entry('sync-1', NOW))
        config_store.append_history(self.make_entry('sync-2', NOW + 5000, status='error'))

        recent = config_store.list_recent_history(limit=1)

        assert len(recent) == 1
        assert recent[0].calendar_sync_id == 'sync-2'


class TestStatsSummary:
    """Tests for aggregated statistics."""

    def test_stats_summary(self, config_store, config):
        other = config_store.create_config('group-2', 'Other', 'https://x.example/a.ics', 'u', NOW)
        begin(config_store, config.sync_id)
        config_store.complete_success(
            config.sync_id, NOW, NOW + 1000, SyncProgress(phase='completed'), 1000
        )
        begin(config_store, other.sync_id)

        summary = config_store.stats_summary()
        group_summary = config_store.stats_summary('group-1')

        assert summary['total_calendars'] == 2
        assert summary['active_calendars'] == 2
        assert summary['currently_running'] == 1
        assert summary['total_syncs'] == 1
        assert summary['success_rate'] == 100
        assert summary['avg_sync_duration_ms'] == 1000
        assert group_summary['total_calendars'] == 1
        assert group_summary['currently_running'] == 0
