"""Core domain models for apps, downstreams, snapshots and backups."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


# ============================================
# ANNOTATIONS / LABELS
# ============================================

APP_ID_ANNOTATION = "kots.io/app-id"
APP_SEQUENCE_ANNOTATION = "kots.io/app-sequence"
APPS_SEQUENCES_ANNOTATION = "kots.io/apps-sequences"
INSTANCE_ANNOTATION = "kots.io/instance"
SNAPSHOT_TRIGGER_ANNOTATION = "kots.io/snapshot-trigger"
SNAPSHOT_REQUESTED_ANNOTATION = "kots.io/snapshot-requested"
APP_SLUG_LABEL = "kots.io/app-slug"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# ENUMS
# ============================================

class UndeployStatus(Enum):
    """Progress of the undeploy that precedes a restore."""
    RESET = ""
    IN_PROCESS = "in_process"
    COMPLETED = "completed"
    FAILED = "failed"


class DownstreamVersionStatus(Enum):
    """Status of one version promoted to a downstream."""
    PENDING = "pending"
    PENDING_CONFIG = "pending_config"
    PENDING_PREFLIGHT = "pending_preflight"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    FAILED = "failed"
    UNKNOWN = "unknown"


class RestorePhase(Enum):
    """Velero restore phases."""
    NEW = "New"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    PARTIALLY_FAILED = "PartiallyFailed"
    FAILED = "Failed"
    FAILED_VALIDATION = "FailedValidation"
    UNKNOWN = ""

    @classmethod
    def parse(cls, value: Optional[str]) -> "RestorePhase":
        try:
            return cls(value or "")
        except ValueError:
            return cls.UNKNOWN


class BackupTrigger(Enum):
    MANUAL = "manual"
    SCHEDULE = "schedule"


# ============================================
# APPS / CLUSTERS
# ============================================

@dataclass
class App:
    """Installed application."""
    id: str
    slug: str
    name: str = ""
    current_sequence: int = 0
    is_airgap: bool = False
    install_state: str = "installed"

    # Scheduled snapshots
    snapshot_schedule: str = ""
    snapshot_ttl: str = ""

    # Restore
    restore_in_progress_name: str = ""
    restore_undeploy_status: UndeployStatus = UndeployStatus.RESET

    @property
    def restore_in_progress(self) -> bool:
        return self.restore_in_progress_name != ""


@dataclass
class Cluster:
    """Target cluster. Owner of instance-level snapshot schedules."""
    id: str
    title: str
    slug: str
    snapshot_schedule: str = ""
    snapshot_ttl: str = ""


@dataclass
class Downstream:
    """An (app, cluster) targeting relationship."""
    app_id: str
    cluster_id: str
    name: str
    current_sequence: Optional[int] = None


@dataclass
class DownstreamVersion:
    """One version promoted to a downstream."""
    app_id: str
    cluster_id: str
    sequence: int
    parent_sequence: int
    status: DownstreamVersionStatus = DownstreamVersionStatus.PENDING
    status_info: str = ""
    created_at: datetime = field(default_factory=utcnow)
    applied_at: Optional[datetime] = None


@dataclass
class RegistrySettings:
    hostname: str = ""
    username: str = ""
    password: str = ""
    namespace: str = ""
    is_readonly: bool = False


# ============================================
# QUEUES
# ============================================

@dataclass
class PendingSupportBundle:
    id: str
    app_id: str
    cluster_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ScheduledSnapshot:
    """Queue row for app snapshots. backup_name None means pending."""
    id: str
    app_id: str
    scheduled_timestamp: datetime
    backup_name: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.backup_name is None


@dataclass
class ScheduledInstanceSnapshot:
    """Queue row for instance (whole cluster) snapshots."""
    id: str
    cluster_id: str
    scheduled_timestamp: datetime
    backup_name: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.backup_name is None


# ============================================
# BACKUP SYSTEM OBJECTS
# ============================================

@dataclass
class Backup:
    name: str
    annotations: Dict[str, str] = field(default_factory=dict)
    included_namespaces: List[str] = field(default_factory=list)
    label_selector: Dict[str, Any] = field(default_factory=dict)
    phase: str = ""

    @property
    def is_instance(self) -> bool:
        return self.annotations.get(INSTANCE_ANNOTATION) == "true"

    @property
    def is_unfinished(self) -> bool:
        # A freshly created backup has no status yet
        return self.phase in ("", "New", "InProgress")

    def restore_name(self, app_slug: str) -> str:
        """Instance backups are restored one app at a time, under <backup>.<slug>."""
        if self.is_instance:
            return f"{self.name}.{app_slug}"
        return self.name


@dataclass
class Restore:
    name: str
    backup_name: str
    phase: RestorePhase = RestorePhase.UNKNOWN


# ============================================
# RENDERING
# ============================================

@dataclass
class AppKinds:
    """Application metadata loaded from a version archive."""
    kubectl_version: str = ""
    kustomize_version: str = ""
    additional_namespaces: List[str] = field(default_factory=list)
    status_informers: List[str] = field(default_factory=list)
    support_bundle_spec: Optional[Dict[str, Any]] = None
    backup_spec: Optional[Dict[str, Any]] = None


@dataclass
class RenderedVersion:
    manifests: bytes
    kinds: AppKinds
    image_pull_secret: str = ""
