# delivery_engine/core/store.py

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime
from typing import List, Optional

from delivery_engine.core.appstatus import AppStatus, ResourceState
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
)


class Store(ABC):
    """
    Persistence contract required by the reconciliation loops and the
    snapshot scheduler.

    Implementations must tolerate concurrent writers: several loops and
    several control plane instances share one store.
    """

    # -------------------------
    # CLUSTERS / APPS
    # -------------------------

    @abstractmethod
    def get_cluster_id_from_deploy_token(self, token: str) -> str:
        """Raise InvalidDeployToken if no cluster owns the token."""
        raise NotImplementedError

    @abstractmethod
    def list_clusters(self) -> List[Cluster]:
        raise NotImplementedError

    @abstractmethod
    def get_app(self, app_id: str) -> App:
        """Raise AppNotFound if missing."""
        raise NotImplementedError

    @abstractmethod
    def list_installed_apps(self) -> List[App]:
        raise NotImplementedError

    @abstractmethod
    def list_apps_for_downstream(self, cluster_id: str) -> List[App]:
        raise NotImplementedError

    @abstractmethod
    def get_registry_details_for_app(self, app_id: str) -> RegistrySettings:
        raise NotImplementedError

    # -------------------------
    # DOWNSTREAMS / VERSIONS
    # -------------------------

    @abstractmethod
    def get_downstream(self, cluster_id: str) -> Downstream:
        """Raise DownstreamNotFound if the cluster has no downstream."""
        raise NotImplementedError

    @abstractmethod
    def list_downstreams_for_app(self, app_id: str) -> List[Downstream]:
        raise NotImplementedError

    @abstractmethod
    def get_current_version(self, app_id: str, cluster_id: str) -> Optional[DownstreamVersion]:
        """Version the downstream currently points at, or None."""
        raise NotImplementedError

    @abstractmethod
    def get_current_parent_sequence(self, app_id: str, cluster_id: str) -> int:
        """Parent sequence of the current version, -1 if nothing is deployed."""
        raise NotImplementedError

    @abstractmethod
    def get_previously_deployed_sequence(self, app_id: str, cluster_id: str) -> int:
        """Most recent deployed sequence before the current one, -1 if none."""
        raise NotImplementedError

    @abstractmethod
    def get_parent_sequence_for_sequence(self, app_id: str, cluster_id: str, sequence: int) -> int:
        """-1 if the sequence is unknown."""
        raise NotImplementedError

    @abstractmethod
    def get_app_version_archive(self, app_id: str, sequence: int, dest_dir: str) -> None:
        """Extract the rendered archive for (app, sequence) into dest_dir."""
        raise NotImplementedError

    @abstractmethod
    def update_downstream_status(
        self,
        app_id: str,
        cluster_id: str,
        sequence: int,
        status: DownstreamVersionStatus,
        status_info: str = "",
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    def deploy_version(self, app_id: str, sequence: int) -> None:
        """Point every downstream of the app at sequence and mark it deployed."""
        raise NotImplementedError

    # -------------------------
    # SUPPORT BUNDLES
    # -------------------------

    @abstractmethod
    def list_pending_support_bundles_for_app(self, app_id: str) -> List[PendingSupportBundle]:
        raise NotImplementedError

    @abstractmethod
    def clear_pending_support_bundle(self, bundle_id: str) -> None:
        raise NotImplementedError

    # -------------------------
    # SCHEDULED SNAPSHOTS
    # -------------------------

    @abstractmethod
    def claim_scheduled_snapshots(self, owner_id: str) -> AbstractContextManager:
        """
        Exclusive claim over the snapshot queue of one app or cluster.

        The context manager yields True if this caller holds the claim for
        the duration of the block, False if another caller (possibly another
        process) holds it. Callers must skip the owner when False.
        """
        raise NotImplementedError

    @abstractmethod
    def list_pending_scheduled_snapshots(self, app_id: str) -> List[ScheduledSnapshot]:
        """Pending rows ordered by scheduled_timestamp, earliest first."""
        raise NotImplementedError

    @abstractmethod
    def create_scheduled_snapshot(self, snapshot_id: str, app_id: str, scheduled_timestamp: datetime) -> None:
        raise NotImplementedError

    @abstractmethod
    def update_scheduled_snapshot(self, snapshot_id: str, backup_name: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_pending_scheduled_snapshots(self, app_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_pending_scheduled_instance_snapshots(self, cluster_id: str) -> List[ScheduledInstanceSnapshot]:
        raise NotImplementedError

    @abstractmethod
    def create_scheduled_instance_snapshot(self, snapshot_id: str, cluster_id: str, scheduled_timestamp: datetime) -> None:
        raise NotImplementedError

    @abstractmethod
    def update_scheduled_instance_snapshot(self, snapshot_id: str, backup_name: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_pending_scheduled_instance_snapshots(self, cluster_id: str) -> None:
        raise NotImplementedError

    # -------------------------
    # RESTORE
    # -------------------------

    @abstractmethod
    def set_restore_undeploy_status(self, app_id: str, status: UndeployStatus) -> None:
        raise NotImplementedError

    @abstractmethod
    def reset_restore(self, app_id: str) -> None:
        """Clear restore_in_progress_name and the undeploy status."""
        raise NotImplementedError

    # -------------------------
    # APP STATUS
    # -------------------------

    @abstractmethod
    def set_app_status(
        self,
        app_id: str,
        resource_states: List[ResourceState],
        updated_at: datetime,
        sequence: Optional[int] = None,
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_app_status(self, app_id: str) -> Optional[AppStatus]:
        raise NotImplementedError
