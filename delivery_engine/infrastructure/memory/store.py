# delivery_engine/infrastructure/memory/store.py

import copy
import os
from contextlib import contextmanager
from datetime import datetime
from threading import Lock
from typing import Dict, List, Optional, Tuple

from delivery_engine.core.appstatus import AppStatus, ResourceState, build_app_status
from delivery_engine.core.errors import (
    AppNotFound,
    ArchiveUnavailable,
    DownstreamNotFound,
    InvalidDeployToken,
    StoreError,
)
from delivery_engine.core.models import (
    App,
    Cluster,
    Downstream,
    DownstreamVersion,
    DownstreamVersionStatus,
    PendingSupportBundle,
    RegistrySettings,
    ScheduledInstanceSnapshot,
    ScheduledSnapshot,
    UndeployStatus,
    utcnow,
)
from delivery_engine.core.store import Store


class InMemoryStore(Store):
    """
    Store kept in process memory. Used by tests and local runs.

    Returned objects are copies, so callers never mutate stored state by
    accident.
    """

    def __init__(self):
        self._lock = Lock()

        self._apps: Dict[str, App] = {}
        self._clusters: Dict[str, Cluster] = {}
        self._deploy_tokens: Dict[str, str] = {}
        self._downstreams: Dict[Tuple[str, str], Downstream] = {}
        self._versions: Dict[Tuple[str, str, int], DownstreamVersion] = {}
        self._archives: Dict[Tuple[str, int], Dict[str, bytes]] = {}
        self._registry: Dict[str, RegistrySettings] = {}
        self._support_bundles: Dict[str, PendingSupportBundle] = {}
        self._snapshots: Dict[str, ScheduledSnapshot] = {}
        self._instance_snapshots: Dict[str, ScheduledInstanceSnapshot] = {}
        self._app_status: Dict[str, AppStatus] = {}

        self._claims: Dict[str, Lock] = {}

    # -------------------------
    # SEEDING
    # -------------------------

    def add_app(self, app: App) -> App:
        with self._lock:
            self._apps[app.id] = copy.deepcopy(app)
        return app

    def add_cluster(self, cluster: Cluster, deploy_token: str) -> Cluster:
        with self._lock:
            self._clusters[cluster.id] = copy.deepcopy(cluster)
            self._deploy_tokens[deploy_token] = cluster.id
        return cluster

    def add_downstream(self, downstream: Downstream) -> Downstream:
        with self._lock:
            self._downstreams[(downstream.app_id, downstream.cluster_id)] = copy.deepcopy(downstream)
        return downstream

    def add_version(self, version: DownstreamVersion, make_current: bool = True) -> DownstreamVersion:
        with self._lock:
            key = (version.app_id, version.cluster_id, version.sequence)
            self._versions[key] = copy.deepcopy(version)
            downstream = self._downstreams.get((version.app_id, version.cluster_id))
            if make_current and downstream is not None:
                downstream.current_sequence = version.sequence
        return version

    def add_archive(self, app_id: str, sequence: int, files: Dict[str, bytes]) -> None:
        with self._lock:
            self._archives[(app_id, sequence)] = dict(files)

    def set_registry_details(self, app_id: str, registry: RegistrySettings) -> None:
        with self._lock:
            self._registry[app_id] = copy.deepcopy(registry)

    def add_pending_support_bundle(self, bundle: PendingSupportBundle) -> None:
        with self._lock:
            self._support_bundles[bundle.id] = copy.deepcopy(bundle)

    def get_version(self, app_id: str, cluster_id: str, sequence: int) -> Optional[DownstreamVersion]:
        with self._lock:
            version = self._versions.get((app_id, cluster_id, sequence))
            return copy.deepcopy(version)

    def list_all_scheduled_snapshots(self, app_id: str) -> List[ScheduledSnapshot]:
        with self._lock:
            return [copy.deepcopy(s) for s in self._snapshots.values() if s.app_id == app_id]

    def list_all_scheduled_instance_snapshots(self, cluster_id: str) -> List[ScheduledInstanceSnapshot]:
        with self._lock:
            return [copy.deepcopy(s) for s in self._instance_snapshots.values() if s.cluster_id == cluster_id]

    # -------------------------
    # CLUSTERS / APPS
    # -------------------------

    def get_cluster_id_from_deploy_token(self, token: str) -> str:
        cluster_id = self._deploy_tokens.get(token)
        if cluster_id is None:
            raise InvalidDeployToken("Invalid deploy token")
        return cluster_id

    def list_clusters(self) -> List[Cluster]:
        with self._lock:
            return [copy.deepcopy(c) for c in self._clusters.values()]

    def get_app(self, app_id: str) -> App:
        with self._lock:
            app = self._apps.get(app_id)
            if app is None:
                raise AppNotFound(f"App {app_id} not found")
            return copy.deepcopy(app)

    def list_installed_apps(self) -> List[App]:
        with self._lock:
            return [copy.deepcopy(a) for a in self._apps.values() if a.install_state == "installed"]

    def list_apps_for_downstream(self, cluster_id: str) -> List[App]:
        with self._lock:
            app_ids = [app_id for (app_id, c_id) in self._downstreams if c_id == cluster_id]
            return [copy.deepcopy(self._apps[a]) for a in app_ids if a in self._apps]

    def get_registry_details_for_app(self, app_id: str) -> RegistrySettings:
        with self._lock:
            return copy.deepcopy(self._registry.get(app_id, RegistrySettings()))

    # -------------------------
    # DOWNSTREAMS / VERSIONS
    # -------------------------

    def get_downstream(self, cluster_id: str) -> Downstream:
        with self._lock:
            for (_, c_id), downstream in self._downstreams.items():
                if c_id == cluster_id:
                    return copy.deepcopy(downstream)
        raise DownstreamNotFound(f"No downstream for cluster {cluster_id}")

    def list_downstreams_for_app(self, app_id: str) -> List[Downstream]:
        with self._lock:
            return [copy.deepcopy(d) for (a_id, _), d in self._downstreams.items() if a_id == app_id]

    def get_current_version(self, app_id: str, cluster_id: str) -> Optional[DownstreamVersion]:
        with self._lock:
            downstream = self._downstreams.get((app_id, cluster_id))
            if downstream is None or downstream.current_sequence is None:
                return None
            version = self._versions.get((app_id, cluster_id, downstream.current_sequence))
            return copy.deepcopy(version)

    def get_current_parent_sequence(self, app_id: str, cluster_id: str) -> int:
        version = self.get_current_version(app_id, cluster_id)
        if version is None:
            return -1
        return version.parent_sequence

    def get_previously_deployed_sequence(self, app_id: str, cluster_id: str) -> int:
        with self._lock:
            applied = [
                v for (a_id, c_id, _), v in self._versions.items()
                if a_id == app_id and c_id == cluster_id and v.applied_at is not None
            ]
        applied.sort(key=lambda v: v.applied_at, reverse=True)
        if len(applied) < 2:
            return -1
        return applied[1].sequence

    def get_parent_sequence_for_sequence(self, app_id: str, cluster_id: str, sequence: int) -> int:
        with self._lock:
            version = self._versions.get((app_id, cluster_id, sequence))
            return version.parent_sequence if version is not None else -1

    def get_app_version_archive(self, app_id: str, sequence: int, dest_dir: str) -> None:
        with self._lock:
            files = self._archives.get((app_id, sequence))
        if files is None:
            raise ArchiveUnavailable(f"No archive for app {app_id} sequence {sequence}")

        for rel_path, content in files.items():
            path = os.path.join(dest_dir, rel_path)
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as f:
                f.write(content)

    def update_downstream_status(
        self,
        app_id: str,
        cluster_id: str,
        sequence: int,
        status: DownstreamVersionStatus,
        status_info: str = "",
    ) -> None:
        with self._lock:
            version = self._versions.get((app_id, cluster_id, sequence))
            if version is None:
                raise StoreError(f"No version {sequence} for app {app_id} on cluster {cluster_id}")
            version.status = status
            version.status_info = status_info
            if status == DownstreamVersionStatus.DEPLOYED:
                version.applied_at = utcnow()

    def deploy_version(self, app_id: str, sequence: int) -> None:
        with self._lock:
            now = utcnow()
            for (a_id, _), downstream in self._downstreams.items():
                if a_id == app_id:
                    downstream.current_sequence = sequence
            for (a_id, _, seq), version in self._versions.items():
                if a_id == app_id and seq == sequence:
                    version.status = DownstreamVersionStatus.DEPLOYED
                    version.applied_at = now

    # -------------------------
    # SUPPORT BUNDLES
    # -------------------------

    def list_pending_support_bundles_for_app(self, app_id: str) -> List[PendingSupportBundle]:
        with self._lock:
            bundles = [copy.deepcopy(b) for b in self._support_bundles.values() if b.app_id == app_id]
        return sorted(bundles, key=lambda b: b.created_at)

    def clear_pending_support_bundle(self, bundle_id: str) -> None:
        with self._lock:
            self._support_bundles.pop(bundle_id, None)

    # -------------------------
    # SCHEDULED SNAPSHOTS
    # -------------------------

    @contextmanager
    def claim_scheduled_snapshots(self, owner_id: str):
        with self._lock:
            claim = self._claims.setdefault(owner_id, Lock())

        acquired = claim.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                claim.release()

    def list_pending_scheduled_snapshots(self, app_id: str) -> List[ScheduledSnapshot]:
        with self._lock:
            pending = [
                copy.deepcopy(s) for s in self._snapshots.values()
                if s.app_id == app_id and s.is_pending
            ]
        return sorted(pending, key=lambda s: s.scheduled_timestamp)

    def create_scheduled_snapshot(self, snapshot_id: str, app_id: str, scheduled_timestamp: datetime) -> None:
        with self._lock:
            if snapshot_id in self._snapshots:
                raise StoreError(f"Scheduled snapshot {snapshot_id} already exists")
            self._snapshots[snapshot_id] = ScheduledSnapshot(
                id=snapshot_id,
                app_id=app_id,
                scheduled_timestamp=scheduled_timestamp,
            )

    def update_scheduled_snapshot(self, snapshot_id: str, backup_name: str) -> None:
        with self._lock:
            snapshot = self._snapshots.get(snapshot_id)
            if snapshot is None:
                raise StoreError(f"Scheduled snapshot {snapshot_id} not found")
            snapshot.backup_name = backup_name

    def delete_pending_scheduled_snapshots(self, app_id: str) -> None:
        with self._lock:
            for snapshot_id, snapshot in list(self._snapshots.items()):
                if snapshot.app_id == app_id and snapshot.is_pending:
                    del self._snapshots[snapshot_id]

    def list_pending_scheduled_instance_snapshots(self, cluster_id: str) -> List[ScheduledInstanceSnapshot]:
        with self._lock:
            pending = [
                copy.deepcopy(s) for s in self._instance_snapshots.values()
                if s.cluster_id == cluster_id and s.is_pending
            ]
        return sorted(pending, key=lambda s: s.scheduled_timestamp)

    def create_scheduled_instance_snapshot(self, snapshot_id: str, cluster_id: str, scheduled_timestamp: datetime) -> None:
        with self._lock:
            if snapshot_id in self._instance_snapshots:
                raise StoreError(f"Scheduled instance snapshot {snapshot_id} already exists")
            self._instance_snapshots[snapshot_id] = ScheduledInstanceSnapshot(
                id=snapshot_id,
                cluster_id=cluster_id,
                scheduled_timestamp=scheduled_timestamp,
            )

    def update_scheduled_instance_snapshot(self, snapshot_id: str, backup_name: str) -> None:
        with self._lock:
            snapshot = self._instance_snapshots.get(snapshot_id)
            if snapshot is None:
                raise StoreError(f"Scheduled instance snapshot {snapshot_id} not found")
            snapshot.backup_name = backup_name

    def delete_pending_scheduled_instance_snapshots(self, cluster_id: str) -> None:
        with self._lock:
            for snapshot_id, snapshot in list(self._instance_snapshots.items()):
                if snapshot.cluster_id == cluster_id and snapshot.is_pending:
                    del self._instance_snapshots[snapshot_id]

    # -------------------------
    # RESTORE
    # -------------------------

    def set_restore_undeploy_status(self, app_id: str, status: UndeployStatus) -> None:
        with self._lock:
            app = self._apps.get(app_id)
            if app is None:
                raise AppNotFound(f"App {app_id} not found")
            app.restore_undeploy_status = status

    def reset_restore(self, app_id: str) -> None:
        with self._lock:
            app = self._apps.get(app_id)
            if app is None:
                raise AppNotFound(f"App {app_id} not found")
            app.restore_in_progress_name = ""
            app.restore_undeploy_status = UndeployStatus.RESET

    # -------------------------
    # APP STATUS
    # -------------------------

    def set_app_status(
        self,
        app_id: str,
        resource_states: List[ResourceState],
        updated_at: datetime,
        sequence: Optional[int] = None,
    ) -> None:
        status = build_app_status(app_id, resource_states, updated_at, sequence)
        with self._lock:
            self._app_status[app_id] = status

    def get_app_status(self, app_id: str) -> Optional[AppStatus]:
        with self._lock:
            return copy.deepcopy(self._app_status.get(app_id))
