"""initial schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


undeploy_status = sa.Enum("RESET", "IN_PROCESS", "COMPLETED", "FAILED", name="undeploy_status")
downstream_version_status = sa.Enum(
    "PENDING", "PENDING_CONFIG", "PENDING_PREFLIGHT", "DEPLOYING", "DEPLOYED", "FAILED", "UNKNOWN",
    name="downstream_version_status",
)
app_state = sa.Enum("MISSING", "UNAVAILABLE", "DEGRADED", "READY", name="app_state")


def upgrade() -> None:
    op.create_table(
        "apps",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("slug", sa.String(length=255), nullable=False, unique=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("current_sequence", sa.Integer(), nullable=False),
        sa.Column("is_airgap", sa.Boolean(), nullable=False),
        sa.Column("install_state", sa.String(length=50), nullable=False),
        sa.Column("snapshot_schedule", sa.String(length=255), nullable=False),
        sa.Column("snapshot_ttl", sa.String(length=50), nullable=False),
        sa.Column("restore_in_progress_name", sa.String(length=255), nullable=False),
        sa.Column("restore_undeploy_status", undeploy_status, nullable=False),
        sa.Column("registry_hostname", sa.String(length=255), nullable=False),
        sa.Column("registry_username", sa.String(length=255), nullable=False),
        sa.Column("registry_password", sa.Text(), nullable=False),
        sa.Column("registry_namespace", sa.String(length=255), nullable=False),
        sa.Column("registry_is_readonly", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_apps_install_state", "apps", ["install_state"])

    op.create_table(
        "clusters",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=False, unique=True),
        sa.Column("token", sa.String(length=255), nullable=False, unique=True),
        sa.Column("snapshot_schedule", sa.String(length=255), nullable=False),
        sa.Column("snapshot_ttl", sa.String(length=50), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "app_downstreams",
        sa.Column("app_id", sa.String(length=64), primary_key=True),
        sa.Column("cluster_id", sa.String(length=64), primary_key=True),
        sa.Column("downstream_name", sa.String(length=255), nullable=False),
        sa.Column("current_sequence", sa.Integer(), nullable=True),
    )
    op.create_index("ix_app_downstreams_cluster_id", "app_downstreams", ["cluster_id"])

    op.create_table(
        "app_downstream_versions",
        sa.Column("app_id", sa.String(length=64), primary_key=True),
        sa.Column("cluster_id", sa.String(length=64), primary_key=True),
        sa.Column("sequence", sa.Integer(), primary_key=True),
        sa.Column("parent_sequence", sa.Integer(), nullable=False),
        sa.Column("status", downstream_version_status, nullable=False),
        sa.Column("status_info", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "idx_downstream_versions_applied",
        "app_downstream_versions",
        ["app_id", "cluster_id", "applied_at"],
    )

    op.create_table(
        "app_versions",
        sa.Column("app_id", sa.String(length=64), primary_key=True),
        sa.Column("sequence", sa.Integer(), primary_key=True),
        sa.Column("archive", sa.LargeBinary(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "pending_supportbundles",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("app_id", sa.String(length=64), nullable=False),
        sa.Column("cluster_id", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_pending_supportbundles_app_id", "pending_supportbundles", ["app_id"])

    op.create_table(
        "scheduled_snapshots",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("app_id", sa.String(length=64), nullable=False),
        sa.Column("scheduled_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("backup_name", sa.String(length=255), nullable=True),
    )
    op.create_index(
        "idx_scheduled_snapshots_pending",
        "scheduled_snapshots",
        ["app_id", "backup_name", "scheduled_timestamp"],
    )

    op.create_table(
        "scheduled_instance_snapshots",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("cluster_id", sa.String(length=64), nullable=False),
        sa.Column("scheduled_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("backup_name", sa.String(length=255), nullable=True),
    )
    op.create_index(
        "idx_scheduled_instance_snapshots_pending",
        "scheduled_instance_snapshots",
        ["cluster_id", "backup_name", "scheduled_timestamp"],
    )

    op.create_table(
        "app_status",
        sa.Column("app_id", sa.String(length=64), primary_key=True),
        sa.Column("resource_states", sa.JSON(), nullable=False),
        sa.Column("state", app_state, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("app_status")
    op.drop_index("idx_scheduled_instance_snapshots_pending", table_name="scheduled_instance_snapshots")
    op.drop_table("scheduled_instance_snapshots")
    op.drop_index("idx_scheduled_snapshots_pending", table_name="scheduled_snapshots")
    op.drop_table("scheduled_snapshots")
    op.drop_index("ix_pending_supportbundles_app_id", table_name="pending_supportbundles")
    op.drop_table("pending_supportbundles")
    op.drop_table("app_versions")
    op.drop_index("idx_downstream_versions_applied", table_name="app_downstream_versions")
    op.drop_table("app_downstream_versions")
    op.drop_index("ix_app_downstreams_cluster_id", table_name="app_downstreams")
    op.drop_table("app_downstreams")
    op.drop_table("clusters")
    op.drop_index("ix_apps_install_state", table_name="apps")
    op.drop_table("apps")

    bind = op.get_bind()
    app_state.drop(bind, checkfirst=True)
    downstream_version_status.drop(bind, checkfirst=True)
    undeploy_status.drop(bind, checkfirst=True)
