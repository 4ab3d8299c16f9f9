#delivery_engine\infrastructure\postgres\store.py

"""PostgreSQL store implementation using SQLAlchemy."""

import hashlib
import io
import logging
import tarfile
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from delivery_engine.core.appstatus import AppStatus, ResourceState, State, build_app_status
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
from delivery_engine.infrastructure.postgres.database import SessionLocal, session_scope
from delivery_engine.infrastructure.postgres.models import (
    AppDownstreamORM,
    AppDownstreamVersionORM,
    AppORM,
    AppStatusORM,
    AppVersionORM,
    ClusterORM,
    PendingSupportBundleORM,
    ScheduledInstanceSnapshotORM,
    ScheduledSnapshotORM,
)

logger = logging.getLogger(__name__)


# ============================================
# Mapping Functions
# ============================================

def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """Some drivers (sqlite) drop tzinfo; stored values are always UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def app_to_domain(orm: AppORM) -> App:
    return App(
        id=orm.id,
        slug=orm.slug,
        name=orm.name,
        current_sequence=orm.current_sequence,
        is_airgap=orm.is_airgap,
        install_state=orm.install_state,
        snapshot_schedule=orm.snapshot_schedule or "",
        snapshot_ttl=orm.snapshot_ttl or "",
        restore_in_progress_name=orm.restore_in_progress_name or "",
        restore_undeploy_status=orm.restore_undeploy_status or UndeployStatus.RESET,
    )


def cluster_to_domain(orm: ClusterORM) -> Cluster:
    return Cluster(
        id=orm.id,
        title=orm.title,
        slug=orm.slug,
        snapshot_schedule=orm.snapshot_schedule or "",
        snapshot_ttl=orm.snapshot_ttl or "",
    )


def downstream_to_domain(orm: AppDownstreamORM) -> Downstream:
    return Downstream(
        app_id=orm.app_id,
        cluster_id=orm.cluster_id,
        name=orm.downstream_name,
        current_sequence=orm.current_sequence,
    )


def version_to_domain(orm: AppDownstreamVersionORM) -> DownstreamVersion:
    return DownstreamVersion(
        app_id=orm.app_id,
        cluster_id=orm.cluster_id,
        sequence=orm.sequence,
        parent_sequence=orm.parent_sequence,
        status=orm.status,
        status_info=orm.status_info or "",
        created_at=_aware(orm.created_at),
        applied_at=_aware(orm.applied_at),
    )


def snapshot_to_domain(orm: ScheduledSnapshotORM) -> ScheduledSnapshot:
    return ScheduledSnapshot(
        id=orm.id,
        app_id=orm.app_id,
        scheduled_timestamp=_aware(orm.scheduled_timestamp),
        backup_name=orm.backup_name,
    )


def instance_snapshot_to_domain(orm: ScheduledInstanceSnapshotORM) -> ScheduledInstanceSnapshot:
    return ScheduledInstanceSnapshot(
        id=orm.id,
        cluster_id=orm.cluster_id,
        scheduled_timestamp=_aware(orm.scheduled_timestamp),
        backup_name=orm.backup_name,
    )


def advisory_lock_key(owner_id: str) -> int:
    """Stable signed 64-bit key for pg advisory locks."""
    digest = hashlib.sha256(owner_id.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


# ============================================
# Store Implementation
# ============================================

class SqlStore(Store):
    """SQLAlchemy implementation with an injectable session factory."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        """
        Args:
            session_factory: SQLAlchemy session factory. If None, uses default production factory.
        """
        self._session_factory = session_factory or SessionLocal

    @contextmanager
    def _session(self, action: str):
        """One session per call. Driver errors surface as StoreError."""
        try:
            with session_scope(self._session_factory) as session:
                yield session
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to {action}: {e}") from e

    # -------------------------
    # CLUSTERS / APPS
    # -------------------------

    def get_cluster_id_from_deploy_token(self, token: str) -> str:
        with self._session("resolve deploy token") as session:
            orm = session.query(ClusterORM).filter(ClusterORM.token == token).first()
            if orm is None:
                raise InvalidDeployToken("Invalid deploy token")
            return orm.id

    def list_clusters(self) -> List[Cluster]:
        with self._session("list clusters") as session:
            return [cluster_to_domain(c) for c in session.query(ClusterORM).order_by(ClusterORM.id).all()]

    def get_app(self, app_id: str) -> App:
        with self._session(f"get app {app_id}") as session:
            orm = session.get(AppORM, app_id)
            if orm is None:
                raise AppNotFound(f"App {app_id} not found")
            return app_to_domain(orm)

    def list_installed_apps(self) -> List[App]:
        with self._session("list installed apps") as session:
            rows = (
                session.query(AppORM)
                .filter(AppORM.install_state == "installed")
                .order_by(AppORM.id)
                .all()
            )
            return [app_to_domain(a) for a in rows]

    def list_apps_for_downstream(self, cluster_id: str) -> List[App]:
        with self._session(f"list apps for cluster {cluster_id}") as session:
            rows = (
                session.query(AppORM)
                .join(AppDownstreamORM, AppDownstreamORM.app_id == AppORM.id)
                .filter(AppDownstreamORM.cluster_id == cluster_id)
                .order_by(AppORM.id)
                .all()
            )
            return [app_to_domain(a) for a in rows]

    def get_registry_details_for_app(self, app_id: str) -> RegistrySettings:
        with self._session(f"get registry details for {app_id}") as session:
            orm = session.get(AppORM, app_id)
            if orm is None:
                raise AppNotFound(f"App {app_id} not found")
            return RegistrySettings(
                hostname=orm.registry_hostname or "",
                username=orm.registry_username or "",
                password=orm.registry_password or "",
                namespace=orm.registry_namespace or "",
                is_readonly=bool(orm.registry_is_readonly),
            )

    # -------------------------
    # DOWNSTREAMS / VERSIONS
    # -------------------------

    def get_downstream(self, cluster_id: str) -> Downstream:
        with self._session(f"get downstream for {cluster_id}") as session:
            orm = (
                session.query(AppDownstreamORM)
                .filter(AppDownstreamORM.cluster_id == cluster_id)
                .first()
            )
            if orm is None:
                raise DownstreamNotFound(f"No downstream for cluster {cluster_id}")
            return downstream_to_domain(orm)

    def list_downstreams_for_app(self, app_id: str) -> List[Downstream]:
        with self._session(f"list downstreams for {app_id}") as session:
            rows = session.query(AppDownstreamORM).filter(AppDownstreamORM.app_id == app_id).all()
            return [downstream_to_domain(d) for d in rows]

    def get_current_version(self, app_id: str, cluster_id: str) -> Optional[DownstreamVersion]:
        with self._session(f"get current version of {app_id}") as session:
            downstream = session.get(AppDownstreamORM, (app_id, cluster_id))
            if downstream is None or downstream.current_sequence is None:
                return None
            orm = session.get(AppDownstreamVersionORM, (app_id, cluster_id, downstream.current_sequence))
            return version_to_domain(orm) if orm is not None else None

    def get_current_parent_sequence(self, app_id: str, cluster_id: str) -> int:
        version = self.get_current_version(app_id, cluster_id)
        if version is None:
            return -1
        return version.parent_sequence

    def get_previously_deployed_sequence(self, app_id: str, cluster_id: str) -> int:
        with self._session(f"get previously deployed sequence of {app_id}") as session:
            rows = (
                session.query(AppDownstreamVersionORM.sequence)
                .filter(
                    AppDownstreamVersionORM.app_id == app_id,
                    AppDownstreamVersionORM.cluster_id == cluster_id,
                    AppDownstreamVersionORM.applied_at.isnot(None),
                )
                .order_by(AppDownstreamVersionORM.applied_at.desc())
                .limit(2)
                .all()
            )
            # Second most recently applied; the first is the current one
            if len(rows) < 2:
                return -1
            return rows[1].sequence

    def get_parent_sequence_for_sequence(self, app_id: str, cluster_id: str, sequence: int) -> int:
        with self._session(f"get parent sequence of {app_id}/{sequence}") as session:
            orm = session.get(AppDownstreamVersionORM, (app_id, cluster_id, sequence))
            return orm.parent_sequence if orm is not None else -1

    def get_app_version_archive(self, app_id: str, sequence: int, dest_dir: str) -> None:
        with self._session(f"get archive of {app_id}/{sequence}") as session:
            orm = session.get(AppVersionORM, (app_id, sequence))
            if orm is None:
                raise ArchiveUnavailable(f"No archive for app {app_id} sequence {sequence}")
            archive = orm.archive

        try:
            with tarfile.open(fileobj=io.BytesIO(archive), mode="r:gz") as tar:
                tar.extractall(dest_dir, filter="data")
        except (tarfile.TarError, OSError) as e:
            raise ArchiveUnavailable(f"Failed to extract archive for app {app_id} sequence {sequence}: {e}") from e

    def put_app_version_archive(self, app_id: str, sequence: int, archive: bytes) -> None:
        with self._session(f"store archive of {app_id}/{sequence}") as session:
            session.merge(AppVersionORM(app_id=app_id, sequence=sequence, archive=archive, created_at=utcnow()))

    def update_downstream_status(
        self,
        app_id: str,
        cluster_id: str,
        sequence: int,
        status: DownstreamVersionStatus,
        status_info: str = "",
    ) -> None:
        with self._session(f"update downstream status of {app_id}/{sequence}") as session:
            orm = (
                session.query(AppDownstreamVersionORM)
                .filter(
                    AppDownstreamVersionORM.app_id == app_id,
                    AppDownstreamVersionORM.cluster_id == cluster_id,
                    AppDownstreamVersionORM.sequence == sequence,
                )
                .with_for_update()
                .first()
            )
            if orm is None:
                raise StoreError(f"No version {sequence} for app {app_id} on cluster {cluster_id}")

            orm.status = status
            orm.status_info = status_info
            if status == DownstreamVersionStatus.DEPLOYED:
                orm.applied_at = utcnow()

        logger.debug(f"[store] [app:{app_id}] sequence {sequence} -> {status.value}")

    def deploy_version(self, app_id: str, sequence: int) -> None:
        with self._session(f"deploy version {app_id}/{sequence}") as session:
            session.query(AppDownstreamORM).filter(
                AppDownstreamORM.app_id == app_id,
            ).update({AppDownstreamORM.current_sequence: sequence}, synchronize_session=False)

            session.query(AppDownstreamVersionORM).filter(
                AppDownstreamVersionORM.app_id == app_id,
                AppDownstreamVersionORM.sequence == sequence,
            ).update(
                {
                    AppDownstreamVersionORM.status: DownstreamVersionStatus.DEPLOYED,
                    AppDownstreamVersionORM.applied_at: utcnow(),
                },
                synchronize_session=False,
            )

    # -------------------------
    # SUPPORT BUNDLES
    # -------------------------

    def list_pending_support_bundles_for_app(self, app_id: str) -> List[PendingSupportBundle]:
        with self._session(f"list pending support bundles for {app_id}") as session:
            rows = (
                session.query(PendingSupportBundleORM)
                .filter(PendingSupportBundleORM.app_id == app_id)
                .order_by(PendingSupportBundleORM.created_at)
                .all()
            )
            return [
                PendingSupportBundle(
                    id=r.id,
                    app_id=r.app_id,
                    cluster_id=r.cluster_id,
                    created_at=_aware(r.created_at),
                )
                for r in rows
            ]

    def clear_pending_support_bundle(self, bundle_id: str) -> None:
        with self._session(f"clear pending support bundle {bundle_id}") as session:
            session.query(PendingSupportBundleORM).filter(
                PendingSupportBundleORM.id == bundle_id,
            ).delete(synchronize_session=False)

    # -------------------------
    # SCHEDULED SNAPSHOTS
    # -------------------------

    @contextmanager
    def claim_scheduled_snapshots(self, owner_id: str):
        """
        Transaction-scoped advisory lock on PostgreSQL. The lock is released
        when the claim transaction ends, including on process death.
        Other dialects have no cross-process lock and always grant the claim.
        """
        session = self._session_factory()
        try:
            if session.get_bind().dialect.name == "postgresql":
                acquired = bool(
                    session.execute(
                        text("SELECT pg_try_advisory_xact_lock(:key)"),
                        {"key": advisory_lock_key(owner_id)},
                    ).scalar()
                )
            else:
                acquired = True
        except SQLAlchemyError as e:
            session.rollback()
            session.close()
            raise StoreError(f"Failed to claim scheduled snapshots for {owner_id}: {e}") from e

        try:
            yield acquired
        finally:
            session.rollback()
            session.close()

    def list_pending_scheduled_snapshots(self, app_id: str) -> List[ScheduledSnapshot]:
        with self._session(f"list pending scheduled snapshots for {app_id}") as session:
            rows = (
                session.query(ScheduledSnapshotORM)
                .filter(
                    ScheduledSnapshotORM.app_id == app_id,
                    ScheduledSnapshotORM.backup_name.is_(None),
                )
                .order_by(ScheduledSnapshotORM.scheduled_timestamp.asc())
                .all()
            )
            return [snapshot_to_domain(r) for r in rows]

    def create_scheduled_snapshot(self, snapshot_id: str, app_id: str, scheduled_timestamp: datetime) -> None:
        with self._session(f"create scheduled snapshot {snapshot_id}") as session:
            session.add(ScheduledSnapshotORM(
                id=snapshot_id,
                app_id=app_id,
                scheduled_timestamp=scheduled_timestamp,
            ))

    def update_scheduled_snapshot(self, snapshot_id: str, backup_name: str) -> None:
        with self._session(f"update scheduled snapshot {snapshot_id}") as session:
            updated = session.query(ScheduledSnapshotORM).filter(
                ScheduledSnapshotORM.id == snapshot_id,
            ).update({ScheduledSnapshotORM.backup_name: backup_name}, synchronize_session=False)
            if updated == 0:
                raise StoreError(f"Scheduled snapshot {snapshot_id} not found")

    def delete_pending_scheduled_snapshots(self, app_id: str) -> None:
        with self._session(f"delete pending scheduled snapshots for {app_id}") as session:
            session.query(ScheduledSnapshotORM).filter(
                ScheduledSnapshotORM.app_id == app_id,
                ScheduledSnapshotORM.backup_name.is_(None),
            ).delete(synchronize_session=False)

    def list_pending_scheduled_instance_snapshots(self, cluster_id: str) -> List[ScheduledInstanceSnapshot]:
        with self._session(f"list pending scheduled instance snapshots for {cluster_id}") as session:
            rows = (
                session.query(ScheduledInstanceSnapshotORM)
                .filter(
                    ScheduledInstanceSnapshotORM.cluster_id == cluster_id,
                    ScheduledInstanceSnapshotORM.backup_name.is_(None),
                )
                .order_by(ScheduledInstanceSnapshotORM.scheduled_timestamp.asc())
                .all()
            )
            return [instance_snapshot_to_domain(r) for r in rows]

    def create_scheduled_instance_snapshot(self, snapshot_id: str, cluster_id: str, scheduled_timestamp: datetime) -> None:
        with self._session(f"create scheduled instance snapshot {snapshot_id}") as session:
            session.add(ScheduledInstanceSnapshotORM(
                id=snapshot_id,
                cluster_id=cluster_id,
                scheduled_timestamp=scheduled_timestamp,
            ))

    def update_scheduled_instance_snapshot(self, snapshot_id: str, backup_name: str) -> None:
        with self._session(f"update scheduled instance snapshot {snapshot_id}") as session:
            updated = session.query(ScheduledInstanceSnapshotORM).filter(
                ScheduledInstanceSnapshotORM.id == snapshot_id,
            ).update({ScheduledInstanceSnapshotORM.backup_name: backup_name}, synchronize_session=False)
            if updated == 0:
                raise StoreError(f"Scheduled instance snapshot {snapshot_id} not found")

    def delete_pending_scheduled_instance_snapshots(self, cluster_id: str) -> None:
        with self._session(f"delete pending scheduled instance snapshots for {cluster_id}") as session:
            session.query(ScheduledInstanceSnapshotORM).filter(
                ScheduledInstanceSnapshotORM.cluster_id == cluster_id,
                ScheduledInstanceSnapshotORM.backup_name.is_(None),
            ).delete(synchronize_session=False)

    # -------------------------
    # RESTORE
    # -------------------------

    def set_restore_undeploy_status(self, app_id: str, status: UndeployStatus) -> None:
        with self._session(f"set restore undeploy status of {app_id}") as session:
            orm = session.query(AppORM).filter(AppORM.id == app_id).with_for_update().first()
            if orm is None:
                raise AppNotFound(f"App {app_id} not found")
            orm.restore_undeploy_status = status

    def reset_restore(self, app_id: str) -> None:
        with self._session(f"reset restore of {app_id}") as session:
            orm = session.query(AppORM).filter(AppORM.id == app_id).with_for_update().first()
            if orm is None:
                raise AppNotFound(f"App {app_id} not found")
            orm.restore_in_progress_name = ""
            orm.restore_undeploy_status = UndeployStatus.RESET

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
        with self._session(f"set app status of {app_id}") as session:
            session.merge(AppStatusORM(
                app_id=app_id,
                resource_states=[
                    {
                        "kind": r.kind,
                        "name": r.name,
                        "namespace": r.namespace,
                        "state": r.state.value,
                    }
                    for r in status.resource_states
                ],
                state=status.state,
                updated_at=status.updated_at,
                sequence=status.sequence,
            ))

    def get_app_status(self, app_id: str) -> Optional[AppStatus]:
        with self._session(f"get app status of {app_id}") as session:
            orm = session.get(AppStatusORM, app_id)
            if orm is None:
                return None
            return AppStatus(
                app_id=orm.app_id,
                resource_states=[
                    ResourceState(
                        kind=r["kind"],
                        name=r["name"],
                        namespace=r["namespace"],
                        state=State(r["state"]),
                    )
                    for r in orm.resource_states or []
                ],
                state=orm.state,
                updated_at=_aware(orm.updated_at),
                sequence=orm.sequence,
            )
