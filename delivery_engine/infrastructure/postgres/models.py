#delivery_engine\infrastructure\postgres\models.py
"""SQLAlchemy ORM models for database tables."""

from sqlalchemy import (
    Column, String, Integer, DateTime, JSON, Enum as SQLEnum, Index, Text, Boolean, LargeBinary
)

from delivery_engine.core.appstatus import State
from delivery_engine.core.models import DownstreamVersionStatus, UndeployStatus, utcnow
from delivery_engine.infrastructure.postgres.database import Base


# ============================================
# APPS / CLUSTERS
# ============================================

class AppORM(Base):
    """Installed applications, including restore markers and registry settings."""

    __tablename__ = "apps"

    id = Column(String(64), primary_key=True)
    slug = Column(String(255), nullable=False, unique=True)
    name = Column(String(255), nullable=False, default="")
    current_sequence = Column(Integer, nullable=False, default=0)
    is_airgap = Column(Boolean, nullable=False, default=False)
    install_state = Column(String(50), nullable=False, default="installed", index=True)

    snapshot_schedule = Column(String(255), nullable=False, default="")
    snapshot_ttl = Column(String(50), nullable=False, default="")

    restore_in_progress_name = Column(String(255), nullable=False, default="")
    restore_undeploy_status = Column(
        SQLEnum(UndeployStatus, name="undeploy_status"),
        nullable=False,
        default=UndeployStatus.RESET,
    )

    registry_hostname = Column(String(255), nullable=False, default="")
    registry_username = Column(String(255), nullable=False, default="")
    registry_password = Column(Text, nullable=False, default="")
    registry_namespace = Column(String(255), nullable=False, default="")
    registry_is_readonly = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class ClusterORM(Base):
    """Target clusters. The deploy token authenticates the cluster's agent."""

    __tablename__ = "clusters"

    id = Column(String(64), primary_key=True)
    title = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False, unique=True)
    token = Column(String(255), nullable=False, unique=True)

    snapshot_schedule = Column(String(255), nullable=False, default="")
    snapshot_ttl = Column(String(50), nullable=False, default="")

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


# ============================================
# DOWNSTREAMS / VERSIONS
# ============================================

class AppDownstreamORM(Base):
    __tablename__ = "app_downstreams"

    app_id = Column(String(64), primary_key=True)
    cluster_id = Column(String(64), primary_key=True, index=True)
    downstream_name = Column(String(255), nullable=False)
    current_sequence = Column(Integer, nullable=True)


class AppDownstreamVersionORM(Base):
    """
    One row per (app, cluster, sequence).

    Indexes:
    - Composite index on (app_id, cluster_id, applied_at) for previously deployed lookups
    """

    __tablename__ = "app_downstream_versions"

    app_id = Column(String(64), primary_key=True)
    cluster_id = Column(String(64), primary_key=True)
    sequence = Column(Integer, primary_key=True)
    parent_sequence = Column(Integer, nullable=False)

    status = Column(
        SQLEnum(DownstreamVersionStatus, name="downstream_version_status"),
        nullable=False,
        default=DownstreamVersionStatus.PENDING,
    )
    status_info = Column(Text, nullable=False, default="")

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    applied_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_downstream_versions_applied", "app_id", "cluster_id", "applied_at"),
    )


class AppVersionORM(Base):
    """Rendered app version archives (tar.gz), keyed by app sequence."""

    __tablename__ = "app_versions"

    app_id = Column(String(64), primary_key=True)
    sequence = Column(Integer, primary_key=True)
    archive = Column(LargeBinary, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


# ============================================
# QUEUES
# ============================================

class PendingSupportBundleORM(Base):
    __tablename__ = "pending_supportbundles"

    id = Column(String(64), primary_key=True)
    app_id = Column(String(64), nullable=False, index=True)
    cluster_id = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class ScheduledSnapshotORM(Base):
    """Single-slot queue of scheduled app snapshots. NULL backup_name = pending."""

    __tablename__ = "scheduled_snapshots"

    id = Column(String(64), primary_key=True)
    app_id = Column(String(64), nullable=False)
    scheduled_timestamp = Column(DateTime(timezone=True), nullable=False)
    backup_name = Column(String(255), nullable=True)

    __table_args__ = (
        Index("idx_scheduled_snapshots_pending", "app_id", "backup_name", "scheduled_timestamp"),
    )


class ScheduledInstanceSnapshotORM(Base):
    __tablename__ = "scheduled_instance_snapshots"

    id = Column(String(64), primary_key=True)
    cluster_id = Column(String(64), nullable=False)
    scheduled_timestamp = Column(DateTime(timezone=True), nullable=False)
    backup_name = Column(String(255), nullable=True)

    __table_args__ = (
        Index("idx_scheduled_instance_snapshots_pending", "cluster_id", "backup_name", "scheduled_timestamp"),
    )


# ============================================
# APP STATUS
# ============================================

class AppStatusORM(Base):
    __tablename__ = "app_status"

    app_id = Column(String(64), primary_key=True)
    resource_states = Column(JSON, nullable=False, default=list)
    state = Column(SQLEnum(State, name="app_state"), nullable=False, default=State.MISSING)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    sequence = Column(Integer, nullable=True)
