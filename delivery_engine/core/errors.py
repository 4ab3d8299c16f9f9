# delivery_engine/core/errors.py

# -----------------------------
# Base Errors
# -----------------------------

class DeliveryEngineError(Exception):
    """Base class for all control plane errors."""
    pass


# -----------------------------
# Persistence Errors
# -----------------------------

class StoreError(DeliveryEngineError):
    """Store call failed (connection lost, constraint violation, ...)."""
    pass


class AppNotFound(StoreError):
    pass


class ClusterNotFound(StoreError):
    pass


class DownstreamNotFound(StoreError):
    pass


class InvalidDeployToken(StoreError):
    """Deploy token does not belong to any cluster."""
    pass


class ArchiveUnavailable(StoreError):
    """The version archive is missing or cannot be extracted."""
    pass


# -----------------------------
# Render Errors
# -----------------------------

class RenderError(DeliveryEngineError):
    """Manifest, informer or support bundle rendering failed."""
    pass


# -----------------------------
# Backup System Errors
# -----------------------------

class BackupSystemError(DeliveryEngineError):
    pass


class BackupNotFound(BackupSystemError):
    pass


class MissingSequenceAnnotation(BackupSystemError):
    """Backup has no usable app sequence annotation."""
    pass


# -----------------------------
# Agent / Scheduling Errors
# -----------------------------

class AgentNotConnectedError(DeliveryEngineError):
    """No live connection for the requested agent."""
    pass


class SnapshotScheduleError(DeliveryEngineError):
    """Invalid cron expression or snapshot TTL."""
    pass
