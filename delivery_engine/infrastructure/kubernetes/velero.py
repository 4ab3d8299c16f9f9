# delivery_engine/infrastructure/kubernetes/velero.py
"""Velero backup system over the Kubernetes custom objects API."""

import copy
import json
import logging
import re
import tempfile
from typing import Any, Dict, List, Optional

from kubernetes.client.rest import ApiException

from delivery_engine.core.backups import BackupSystem
from delivery_engine.core.errors import BackupNotFound, BackupSystemError
from delivery_engine.core.models import (
    APP_ID_ANNOTATION,
    APP_SEQUENCE_ANNOTATION,
    APP_SLUG_LABEL,
    APPS_SEQUENCES_ANNOTATION,
    INSTANCE_ANNOTATION,
    SNAPSHOT_REQUESTED_ANNOTATION,
    SNAPSHOT_TRIGGER_ANNOTATION,
    App,
    AppKinds,
    Backup,
    BackupTrigger,
    Cluster,
    Restore,
    RestorePhase,
    utcnow,
)
from delivery_engine.core.store import Store
from delivery_engine.infrastructure.kubernetes.client import custom_objects_api
from delivery_engine.render.kinds import load_app_kinds

logger = logging.getLogger(__name__)


VELERO_GROUP = "velero.io"
VELERO_VERSION = "v1"

BACKUP_LABEL = "kots.io/backup"
BACKUP_LABEL_VALUE = "velero"

# Go duration strings, as accepted by Velero's spec.ttl
_DURATION_RE = re.compile(r"^(\d+(\.\d+)?(ns|us|µs|ms|s|m|h))+$")


def merge_label_selectors(base: Dict[str, Any], extra: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    if not extra:
        return merged

    match_labels = dict(merged.get("matchLabels") or {})
    match_labels.update(extra.get("matchLabels") or {})
    merged["matchLabels"] = match_labels

    expressions = list(merged.get("matchExpressions") or []) + list(extra.get("matchExpressions") or [])
    if expressions:
        merged["matchExpressions"] = expressions
    return merged


def backup_from_object(obj: Dict[str, Any]) -> Backup:
    metadata = obj.get("metadata") or {}
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    return Backup(
        name=metadata.get("name", ""),
        annotations=dict(metadata.get("annotations") or {}),
        included_namespaces=list(spec.get("includedNamespaces") or []),
        label_selector=dict(spec.get("labelSelector") or {}),
        phase=status.get("phase", "") or "",
    )


def restore_from_object(obj: Dict[str, Any]) -> Restore:
    metadata = obj.get("metadata") or {}
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    return Restore(
        name=metadata.get("name", ""),
        backup_name=spec.get("backupName", ""),
        phase=RestorePhase.parse(status.get("phase")),
    )


class VeleroBackupSystem(BackupSystem):
    """
    Creates and observes velero.io/v1 Backup and Restore objects in the
    Velero namespace.
    """

    def __init__(
        self,
        *,
        store: Store,
        velero_namespace: str = "velero",
        app_namespace: str = "default",
        api=None,
    ):
        self.store = store
        self.velero_namespace = velero_namespace
        self.app_namespace = app_namespace
        self._api = api

    @property
    def api(self):
        if self._api is None:
            self._api = custom_objects_api()
        return self._api

    # -------------------------
    # BACKUPS
    # -------------------------

    def list_backups(self) -> List[Backup]:
        try:
            result = self.api.list_namespaced_custom_object(
                VELERO_GROUP, VELERO_VERSION, self.velero_namespace, "backups",
            )
        except ApiException as e:
            raise BackupSystemError(f"Failed to list backups: {e.reason}") from e
        return [backup_from_object(item) for item in result.get("items", [])]

    def has_unfinished_backup(self, app_id: str) -> bool:
        for backup in self.list_backups():
            if backup.annotations.get(APP_ID_ANNOTATION) == app_id and backup.is_unfinished:
                return True
        return False

    def has_unfinished_instance_backup(self) -> bool:
        for backup in self.list_backups():
            if backup.is_instance and backup.is_unfinished:
                return True
        return False

    def create_backup(self, app: App, scheduled: bool = False) -> str:
        downstreams = self.store.list_downstreams_for_app(app.id)
        if not downstreams:
            raise BackupSystemError(f"No downstreams found for app {app.slug}")

        parent_sequence = self.store.get_current_parent_sequence(app.id, downstreams[0].cluster_id)
        if parent_sequence == -1:
            raise BackupSystemError(f"App {app.slug} does not have a deployed version")

        kinds = self._load_kinds(app, parent_sequence)
        if not kinds.backup_spec:
            raise BackupSystemError(f"Application {app.slug} does not have a backup spec")

        body = copy.deepcopy(kinds.backup_spec)
        spec = body.setdefault("spec", {})

        body["apiVersion"] = f"{VELERO_GROUP}/{VELERO_VERSION}"
        body["kind"] = "Backup"
        body["metadata"] = {
            "generateName": f"{app.slug}-",
            "namespace": self.velero_namespace,
            "annotations": {
                SNAPSHOT_TRIGGER_ANNOTATION: self._trigger(scheduled),
                APP_ID_ANNOTATION: app.id,
                APP_SEQUENCE_ANNOTATION: str(parent_sequence),
                SNAPSHOT_REQUESTED_ANNOTATION: self._requested_at(),
            },
        }
        spec["labelSelector"] = merge_label_selectors(
            {"matchLabels": {APP_SLUG_LABEL: app.slug}},
            spec.get("labelSelector"),
        )
        spec["includedNamespaces"] = [self.app_namespace] + list(kinds.additional_namespaces)
        spec["storageLocation"] = "default"
        if app.snapshot_ttl:
            spec["ttl"] = self._validate_ttl(app.snapshot_ttl)

        name = self._create_backup_object(body)
        logger.info(f"[velero] [app:{app.id}] Created backup {name} (sequence {parent_sequence})")
        return name

    def create_instance_backup(self, cluster: Cluster, scheduled: bool = False) -> str:
        apps_sequences: Dict[str, int] = {}
        included_namespaces = [self.app_namespace]
        label_selector: Dict[str, Any] = {"matchLabels": {BACKUP_LABEL: BACKUP_LABEL_VALUE}}

        for app in self.store.list_installed_apps():
            downstreams = self.store.list_downstreams_for_app(app.id)
            if not downstreams:
                logger.error(f"[velero] No downstreams found for app {app.slug}")
                continue

            parent_sequence = self.store.get_current_parent_sequence(app.id, downstreams[0].cluster_id)
            if parent_sequence == -1:
                # Nothing deployed yet
                continue
            apps_sequences[app.slug] = parent_sequence

            kinds = self._load_kinds(app, parent_sequence)
            if not kinds.backup_spec:
                continue

            app_selector = (kinds.backup_spec.get("spec") or {}).get("labelSelector")
            label_selector = merge_label_selectors(label_selector, app_selector)
            included_namespaces.extend(kinds.additional_namespaces)

        body = {
            "apiVersion": f"{VELERO_GROUP}/{VELERO_VERSION}",
            "kind": "Backup",
            "metadata": {
                "generateName": "instance-",
                "namespace": self.velero_namespace,
                "annotations": {
                    SNAPSHOT_TRIGGER_ANNOTATION: self._trigger(scheduled),
                    SNAPSHOT_REQUESTED_ANNOTATION: self._requested_at(),
                    INSTANCE_ANNOTATION: "true",
                    APPS_SEQUENCES_ANNOTATION: json.dumps(apps_sequences, sort_keys=True),
                },
            },
            "spec": {
                "storageLocation": "default",
                "includedNamespaces": included_namespaces,
                "labelSelector": label_selector,
            },
        }
        if cluster.snapshot_ttl:
            body["spec"]["ttl"] = self._validate_ttl(cluster.snapshot_ttl)

        name = self._create_backup_object(body)
        logger.info(f"[velero] [cluster:{cluster.id}] Created instance backup {name} ({len(apps_sequences)} apps)")
        return name

    def get_backup(self, name: str) -> Backup:
        try:
            obj = self.api.get_namespaced_custom_object(
                VELERO_GROUP, VELERO_VERSION, self.velero_namespace, "backups", name,
            )
        except ApiException as e:
            if e.status == 404:
                raise BackupNotFound(f"Backup {name} not found") from e
            raise BackupSystemError(f"Failed to get backup {name}: {e.reason}") from e
        return backup_from_object(obj)

    # -------------------------
    # RESTORES
    # -------------------------

    def get_restore(self, name: str) -> Optional[Restore]:
        try:
            obj = self.api.get_namespaced_custom_object(
                VELERO_GROUP, VELERO_VERSION, self.velero_namespace, "restores", name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise BackupSystemError(f"Failed to get restore {name}: {e.reason}") from e
        return restore_from_object(obj)

    def create_restore(self, backup_name: str, app_slug: str) -> None:
        backup = self.get_backup(backup_name)
        restore_name = backup.restore_name(app_slug)

        spec: Dict[str, Any] = {
            "backupName": backup_name,
            "restorePVs": True,
            "includeClusterResources": True,
        }
        if backup.is_instance:
            # Only this app's resources out of the whole instance backup
            spec["labelSelector"] = {"matchLabels": {APP_SLUG_LABEL: app_slug}}

        body = {
            "apiVersion": f"{VELERO_GROUP}/{VELERO_VERSION}",
            "kind": "Restore",
            "metadata": {"name": restore_name, "namespace": self.velero_namespace},
            "spec": spec,
        }

        # A leftover restore with the same name would shadow the new one
        self.delete_restore(restore_name)

        try:
            self.api.create_namespaced_custom_object(
                VELERO_GROUP, VELERO_VERSION, self.velero_namespace, "restores", body,
            )
        except ApiException as e:
            raise BackupSystemError(f"Failed to create restore {restore_name}: {e.reason}") from e

        logger.info(f"[velero] Created restore {restore_name} from backup {backup_name}")

    def delete_restore(self, name: str) -> None:
        try:
            self.api.delete_namespaced_custom_object(
                VELERO_GROUP, VELERO_VERSION, self.velero_namespace, "restores", name,
            )
        except ApiException as e:
            if e.status == 404:
                return
            raise BackupSystemError(f"Failed to delete restore {name}: {e.reason}") from e

    # ----- helpers -----

    def _create_backup_object(self, body: Dict[str, Any]) -> str:
        try:
            created = self.api.create_namespaced_custom_object(
                VELERO_GROUP, VELERO_VERSION, self.velero_namespace, "backups", body,
            )
        except ApiException as e:
            raise BackupSystemError(f"Failed to create velero backup: {e.reason}") from e
        return created["metadata"]["name"]

    def _load_kinds(self, app: App, sequence: int) -> AppKinds:
        with tempfile.TemporaryDirectory(prefix="backup-") as archive_dir:
            self.store.get_app_version_archive(app.id, sequence, archive_dir)
            return load_app_kinds(archive_dir)

    @staticmethod
    def _trigger(scheduled: bool) -> str:
        return (BackupTrigger.SCHEDULE if scheduled else BackupTrigger.MANUAL).value

    @staticmethod
    def _requested_at() -> str:
        return utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")

    @staticmethod
    def _validate_ttl(ttl: str) -> str:
        if not _DURATION_RE.match(ttl):
            raise BackupSystemError(f"Failed to parse snapshot ttl {ttl!r} as duration")
        return ttl
