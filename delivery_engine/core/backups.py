"""Backup system contract (Velero)."""

from abc import ABC, abstractmethod
from typing import Optional

from delivery_engine.core.models import App, Backup, Cluster, Restore


class BackupSystem(ABC):
    """
    Operations this core needs from the cluster backup engine.

    Restores are only ever observed: the control plane creates the Restore
    object and then polls its phase.
    """

    @abstractmethod
    def has_unfinished_backup(self, app_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def create_backup(self, app: App, scheduled: bool = False) -> str:
        """Create an app backup, return its name."""
        raise NotImplementedError

    @abstractmethod
    def has_unfinished_instance_backup(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    def create_instance_backup(self, cluster: Cluster, scheduled: bool = False) -> str:
        """Create a backup of every app on the cluster, return its name."""
        raise NotImplementedError

    @abstractmethod
    def get_backup(self, name: str) -> Backup:
        """Raise BackupNotFound if missing."""
        raise NotImplementedError

    @abstractmethod
    def get_restore(self, name: str) -> Optional[Restore]:
        """None if no restore with that name exists yet."""
        raise NotImplementedError

    @abstractmethod
    def create_restore(self, backup_name: str, app_slug: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_restore(self, name: str) -> None:
        raise NotImplementedError
