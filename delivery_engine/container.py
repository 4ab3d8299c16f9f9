#delivery_engine\container.py

"""Dependency injection container - wires all services together."""

from delivery_engine.config import settings
from delivery_engine.infrastructure.kubernetes.supportbundle import SecretSupportBundlePublisher
from delivery_engine.infrastructure.kubernetes.velero import VeleroBackupSystem
from delivery_engine.infrastructure.postgres.store import SqlStore
from delivery_engine.render.kustomize import KustomizeRenderer
from delivery_engine.snapshot_scheduler.scheduler import SnapshotScheduler
from delivery_engine.socketservice.service import SocketService
from delivery_engine.socketservice.transport import WebSocketTransport


# ============================================
# STORE
# ============================================

store = SqlStore()


# ============================================
# COLLABORATORS
# ============================================

backup_system = VeleroBackupSystem(
    store=store,
    velero_namespace=settings.velero_namespace,
    app_namespace=settings.pod_namespace,
)

renderer = KustomizeRenderer(
    store=store,
    namespace=settings.pod_namespace,
    binary_prefix=settings.kustomize_binary_prefix,
)

support_bundle_publisher = SecretSupportBundlePublisher(namespace=settings.pod_namespace)

transport = WebSocketTransport()


# ============================================
# SERVICES
# ============================================

socket_service = SocketService(
    store=store,
    backups=backup_system,
    renderer=renderer,
    publisher=support_bundle_publisher,
    transport=transport,
    annotate_slug=settings.annotate_slug,
    deploy_interval=settings.deploy_loop_interval_seconds,
    support_bundle_interval=settings.support_bundle_loop_interval_seconds,
    restore_interval=settings.restore_loop_interval_seconds,
)

snapshot_scheduler = SnapshotScheduler(
    store=store,
    backups=backup_system,
    interval=settings.snapshot_scheduler_interval_seconds,
)
