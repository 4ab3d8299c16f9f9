#tests\test_snapshot_scheduler.py

"""Test the snapshot scheduler."""

import string
from datetime import datetime, timedelta, timezone

import pytest

from delivery_engine.core.errors import SnapshotScheduleError
from delivery_engine.core.models import App, Cluster
from delivery_engine.snapshot_scheduler.scheduler import (
    SnapshotScheduler,
    new_snapshot_id,
    next_occurrence,
)

from conftest import APP_ID, APP_SLUG, CLUSTER_ID, DEPLOY_TOKEN

HOURLY = "0 * * * *"
NOON = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock(NOON)


@pytest.fixture
def scheduler(store, backups, clock):
    return SnapshotScheduler(store=store, backups=backups, clock=clock)


@pytest.fixture
def scheduled_app(store):
    store.add_app(App(id=APP_ID, slug=APP_SLUG, snapshot_schedule=HOURLY, snapshot_ttl="720h"))
    return store.get_app(APP_ID)


@pytest.fixture
def scheduled_cluster(store):
    cluster = Cluster(id=CLUSTER_ID, title="Cluster One", slug="cluster-one", snapshot_schedule=HOURLY)
    store.add_cluster(cluster, DEPLOY_TOKEN)
    return cluster


class TestCron:

    def test_next_occurrence(self):
        assert next_occurrence(HOURLY, NOON) == datetime(2026, 1, 1, 13, 0, tzinfo=timezone.utc)

    def test_next_occurrence_is_strictly_after(self):
        """Test a time that matches the schedule yields the following occurrence."""
        assert next_occurrence("*/15 * * * *", NOON) == NOON + timedelta(minutes=15)

    def test_invalid_cron(self):
        with pytest.raises(SnapshotScheduleError):
            next_occurrence("not a cron", NOON)

    def test_snapshot_id(self):
        snapshot_id = new_snapshot_id()

        assert len(snapshot_id) == 32
        assert set(snapshot_id) <= set(string.ascii_lowercase + string.digits)
        assert new_snapshot_id() != snapshot_id


class TestAppSnapshots:
    """Test scheduled app snapshots."""

    def test_no_schedule(self, scheduler, store, backups):
        assert scheduler.handle_app(store.get_app(APP_ID)) is None
        assert store.list_all_scheduled_snapshots(APP_ID) == []

    def test_bootstrap_queues_next(self, scheduler, store, backups, scheduled_app):
        """Test an empty queue gets one pending snapshot and no backup."""
        assert scheduler.handle_app(scheduled_app) is None

        pending = store.list_pending_scheduled_snapshots(APP_ID)
        assert len(pending) == 1
        assert pending[0].scheduled_timestamp == datetime(2026, 1, 1, 13, 0, tzinfo=timezone.utc)
        assert backups.created_backups == []

    def test_not_yet_due(self, scheduler, store, backups, scheduled_app):
        scheduler.handle_app(scheduled_app)

        assert scheduler.handle_app(scheduled_app) is None
        assert len(store.list_pending_scheduled_snapshots(APP_ID)) == 1
        assert backups.created_backups == []

    def test_due_snapshot_creates_backup(self, scheduler, store, backups, clock, scheduled_app):
        """Test a due snapshot is stamped with the backup and the next one is queued."""
        scheduler.handle_app(scheduled_app)
        due = store.list_pending_scheduled_snapshots(APP_ID)[0]

        clock.now = datetime(2026, 1, 1, 13, 0, 30, tzinfo=timezone.utc)
        backup_name = scheduler.handle_app(scheduled_app)

        assert backup_name is not None
        assert backups.created_backups == [(APP_ID, True)]

        rows = {s.id: s for s in store.list_all_scheduled_snapshots(APP_ID)}
        assert rows[due.id].backup_name == backup_name

        pending = store.list_pending_scheduled_snapshots(APP_ID)
        assert len(pending) == 1
        assert pending[0].scheduled_timestamp == datetime(2026, 1, 1, 14, 0, tzinfo=timezone.utc)

    def test_busy_postpones(self, scheduler, store, backups, clock, scheduled_app):
        """Test a running backup postpones the snapshot without losing it."""
        scheduler.handle_app(scheduled_app)
        due = store.list_pending_scheduled_snapshots(APP_ID)[0]
        backups.unfinished_apps.add(APP_ID)

        clock.now = datetime(2026, 1, 1, 13, 5, tzinfo=timezone.utc)
        assert scheduler.handle_app(scheduled_app) is None

        pending = store.list_pending_scheduled_snapshots(APP_ID)
        assert [s.id for s in pending] == [due.id]
        assert backups.created_backups == []

        backups.unfinished_apps.clear()
        assert scheduler.handle_app(scheduled_app) is not None

    def test_duplicates_collapse_to_one(self, scheduler, store, backups, clock, scheduled_app):
        """Test extra pending rows are removed after the earliest one is taken."""
        store.create_scheduled_snapshot("early", APP_ID, datetime(2026, 1, 1, 11, 0, tzinfo=timezone.utc))
        store.create_scheduled_snapshot("late", APP_ID, datetime(2026, 1, 1, 11, 30, tzinfo=timezone.utc))

        backup_name = scheduler.handle_app(scheduled_app)

        assert backups.created_backups == [(APP_ID, True)]
        rows = {s.id: s for s in store.list_all_scheduled_snapshots(APP_ID)}
        assert rows["early"].backup_name == backup_name
        assert "late" not in rows

        pending = store.list_pending_scheduled_snapshots(APP_ID)
        assert len(pending) == 1
        assert pending[0].scheduled_timestamp == datetime(2026, 1, 1, 13, 0, tzinfo=timezone.utc)

    def test_claimed_queue_is_skipped(self, scheduler, store, scheduled_app):
        """Test another holder of the claim keeps this scheduler out."""
        with store.claim_scheduled_snapshots(f"app:{APP_ID}") as claimed:
            assert claimed
            assert scheduler.handle_app(scheduled_app) is None

        assert store.list_all_scheduled_snapshots(APP_ID) == []

    def test_invalid_schedule_raises(self, scheduler, store):
        store.add_app(App(id=APP_ID, slug=APP_SLUG, snapshot_schedule="every day"))

        with pytest.raises(SnapshotScheduleError):
            scheduler.handle_app(store.get_app(APP_ID))

    def test_tick_isolates_bad_apps(self, scheduler, store):
        """Test one invalid schedule does not stop the other apps."""
        store.add_app(App(id="app-bad", slug="bad-app", snapshot_schedule="every day"))
        store.add_app(App(id=APP_ID, slug=APP_SLUG, snapshot_schedule=HOURLY))

        scheduler.app_tick()

        assert len(store.list_pending_scheduled_snapshots(APP_ID)) == 1
        assert store.list_all_scheduled_snapshots("app-bad") == []

    def test_tick_skips_restoring_apps(self, scheduler, store):
        store.add_app(App(id=APP_ID, slug=APP_SLUG, snapshot_schedule=HOURLY, restore_in_progress_name="b"))

        scheduler.app_tick()

        assert store.list_all_scheduled_snapshots(APP_ID) == []

    def test_tick_skips_uninstalled_apps(self, scheduler, store):
        store.add_app(App(id=APP_ID, slug=APP_SLUG, snapshot_schedule=HOURLY, install_state="uninstalled"))

        scheduler.app_tick()

        assert store.list_all_scheduled_snapshots(APP_ID) == []


class TestInstanceSnapshots:
    """Test scheduled instance snapshots."""

    def test_no_schedule(self, scheduler, store):
        scheduler.instance_tick()
        assert store.list_all_scheduled_instance_snapshots(CLUSTER_ID) == []

    def test_bootstrap_then_backup(self, scheduler, store, backups, clock, scheduled_cluster):
        assert scheduler.handle_cluster(scheduled_cluster) is None
        assert len(store.list_pending_scheduled_instance_snapshots(CLUSTER_ID)) == 1

        clock.now = datetime(2026, 1, 1, 13, 1, tzinfo=timezone.utc)
        backup_name = scheduler.handle_cluster(scheduled_cluster)

        assert backup_name is not None
        assert backups.created_instance_backups == [(CLUSTER_ID, True)]
        pending = store.list_pending_scheduled_instance_snapshots(CLUSTER_ID)
        assert len(pending) == 1
        assert pending[0].scheduled_timestamp == datetime(2026, 1, 1, 14, 0, tzinfo=timezone.utc)

    def test_busy_postpones(self, scheduler, store, backups, clock, scheduled_cluster):
        scheduler.handle_cluster(scheduled_cluster)
        backups.unfinished_instance = True

        clock.now = datetime(2026, 1, 1, 13, 1, tzinfo=timezone.utc)
        assert scheduler.handle_cluster(scheduled_cluster) is None
        assert backups.created_instance_backups == []
        assert len(store.list_pending_scheduled_instance_snapshots(CLUSTER_ID)) == 1

    def test_claimed_queue_is_skipped(self, scheduler, store, scheduled_cluster):
        with store.claim_scheduled_snapshots(f"instance:{CLUSTER_ID}"):
            assert scheduler.handle_cluster(scheduled_cluster) is None

        assert store.list_all_scheduled_instance_snapshots(CLUSTER_ID) == []

    def test_app_and_instance_claims_are_independent(self, scheduler, store, scheduled_app, scheduled_cluster):
        """Test an app and a cluster sharing an id do not block each other."""
        with store.claim_scheduled_snapshots(f"app:{APP_ID}"):
            scheduler.handle_cluster(scheduled_cluster)

        assert len(store.list_pending_scheduled_instance_snapshots(CLUSTER_ID)) == 1
