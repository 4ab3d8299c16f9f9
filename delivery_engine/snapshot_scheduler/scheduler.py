# delivery_engine/snapshot_scheduler/scheduler.py
"""Snapshot scheduler - turns cron schedules into scheduled Velero backups."""

import logging
import secrets
import string
from datetime import datetime
from typing import Callable, List, Optional

from croniter import croniter

from delivery_engine.core.backups import BackupSystem
from delivery_engine.core.errors import SnapshotScheduleError
from delivery_engine.core.loop import PeriodicLoop
from delivery_engine.core.models import App, Cluster, utcnow
from delivery_engine.core.store import Store

logger = logging.getLogger(__name__)


_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_snapshot_id() -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(32))


def next_occurrence(cron_expression: str, now: datetime) -> datetime:
    """Next time strictly after now matching a standard cron expression."""
    try:
        return croniter(cron_expression, now).get_next(datetime)
    except (ValueError, KeyError) as e:
        raise SnapshotScheduleError(f"Invalid cron expression {cron_expression!r}: {e}") from e


class SnapshotScheduler:
    """
    Keeps exactly one pending scheduled snapshot per app (and per cluster for
    instance snapshots).

    Each owner's queue is processed inside the store's exclusive claim, so
    several scheduler processes can run at once without double-booking. A
    queue with 0 or 2+ pending rows is repaired to exactly 1.
    """

    def __init__(
        self,
        *,
        store: Store,
        backups: BackupSystem,
        interval: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.backups = backups
        self.clock = clock

        self.loops: List[PeriodicLoop] = [
            PeriodicLoop("snapshot-scheduler-apps", self.app_tick, interval),
            PeriodicLoop("snapshot-scheduler-instances", self.instance_tick, interval),
        ]

    def start(self):
        for loop in self.loops:
            loop.start()

    def stop(self, timeout: Optional[float] = 10.0):
        for loop in self.loops:
            loop.stop(timeout)

    # -------------------------
    # APP SNAPSHOTS
    # -------------------------

    def app_tick(self):
        try:
            apps = self.store.list_installed_apps()
        except Exception as e:
            logger.error(f"[scheduler] Failed to list installed apps for scheduled snapshots: {e}")
            return

        for app in apps:
            if app.restore_in_progress:
                continue
            try:
                self.handle_app(app)
            except Exception as e:
                logger.error(f"[scheduler] [app:{app.id}] Failed to handle scheduled snapshots: {e}", exc_info=True)

    def handle_app(self, app: App) -> Optional[str]:
        """Returns the backup name if a backup was created."""
        if not app.snapshot_schedule:
            return None

        with self.store.claim_scheduled_snapshots(f"app:{app.id}") as claimed:
            if not claimed:
                logger.debug(f"[scheduler] [app:{app.id}] Queue claimed by another scheduler")
                return None

            pending = self.store.list_pending_scheduled_snapshots(app.id)
            if not pending:
                logger.info(
                    f"[scheduler] [app:{app.id}] No pending snapshots scheduled with schedule "
                    f"{app.snapshot_schedule}. Queueing one."
                )
                self._queue_next_app_snapshot(app)
                return None

            next_snapshot = pending[0]
            if next_snapshot.scheduled_timestamp > self.clock():
                logger.debug(f"[scheduler] [app:{app.id}] Not yet time to snapshot")
                return None

            if self.backups.has_unfinished_backup(app.id):
                logger.info(f"[scheduler] [app:{app.id}] Postponing scheduled snapshot because one is in progress")
                return None

            backup_name = self.backups.create_backup(app, scheduled=True)
            self.store.update_scheduled_snapshot(next_snapshot.id, backup_name)
            logger.info(f"[scheduler] [app:{app.id}] ✅ Created backup {backup_name} from scheduled snapshot {next_snapshot.id}")

            if len(pending) > 1:
                self.store.delete_pending_scheduled_snapshots(app.id)

            self._queue_next_app_snapshot(app)
            return backup_name

    def _queue_next_app_snapshot(self, app: App) -> None:
        scheduled = next_occurrence(app.snapshot_schedule, self.clock())
        snapshot_id = new_snapshot_id()
        self.store.create_scheduled_snapshot(snapshot_id, app.id, scheduled)
        logger.info(f"[scheduler] [app:{app.id}] Scheduled next snapshot {snapshot_id} at {scheduled.isoformat()}")

    # -------------------------
    # INSTANCE SNAPSHOTS
    # -------------------------

    def instance_tick(self):
        try:
            clusters = self.store.list_clusters()
        except Exception as e:
            logger.error(f"[scheduler] Failed to list clusters for scheduled instance snapshots: {e}")
            return

        for cluster in clusters:
            try:
                self.handle_cluster(cluster)
            except Exception as e:
                logger.error(
                    f"[scheduler] [cluster:{cluster.id}] Failed to handle scheduled instance snapshots: {e}",
                    exc_info=True,
                )

    def handle_cluster(self, cluster: Cluster) -> Optional[str]:
        if not cluster.snapshot_schedule:
            return None

        with self.store.claim_scheduled_snapshots(f"instance:{cluster.id}") as claimed:
            if not claimed:
                return None

            pending = self.store.list_pending_scheduled_instance_snapshots(cluster.id)
            if not pending:
                logger.info(
                    f"[scheduler] [cluster:{cluster.id}] No pending instance snapshots scheduled with schedule "
                    f"{cluster.snapshot_schedule}. Queueing one."
                )
                self._queue_next_instance_snapshot(cluster)
                return None

            next_snapshot = pending[0]
            if next_snapshot.scheduled_timestamp > self.clock():
                return None

            if self.backups.has_unfinished_instance_backup():
                logger.info(f"[scheduler] [cluster:{cluster.id}] Postponing instance snapshot because one is in progress")
                return None

            backup_name = self.backups.create_instance_backup(cluster, scheduled=True)
            self.store.update_scheduled_instance_snapshot(next_snapshot.id, backup_name)
            logger.info(f"[scheduler] [cluster:{cluster.id}] ✅ Created instance backup {backup_name} from {next_snapshot.id}")

            if len(pending) > 1:
                self.store.delete_pending_scheduled_instance_snapshots(cluster.id)

            self._queue_next_instance_snapshot(cluster)
            return backup_name

    def _queue_next_instance_snapshot(self, cluster: Cluster) -> None:
        scheduled = next_occurrence(cluster.snapshot_schedule, self.clock())
        snapshot_id = new_snapshot_id()
        self.store.create_scheduled_instance_snapshot(snapshot_id, cluster.id, scheduled)
        logger.info(f"[scheduler] [cluster:{cluster.id}] Scheduled next instance snapshot {snapshot_id}")
