# delivery_engine/socketservice/restore.py
"""Restore loop - drives undeploy, Velero restore and finalization per app."""

import copy
import json
import logging
from typing import Callable, Dict, Optional

from delivery_engine.core.backups import BackupSystem
from delivery_engine.core.errors import MissingSequenceAnnotation
from delivery_engine.core.models import (
    APP_SEQUENCE_ANNOTATION,
    APP_SLUG_LABEL,
    APPS_SEQUENCES_ANNOTATION,
    App,
    Backup,
    Restore,
    UndeployStatus,
)
from delivery_engine.core.restore_state_machine import RestoreAction, RestoreStateMachine, Transition
from delivery_engine.core.store import Store
from delivery_engine.render.base import Renderer, SupportBundlePublisher
from delivery_engine.socketservice.deploy import encode_manifests
from delivery_engine.socketservice.events_model import DEPLOY_EVENT, UNDEPLOY_RESULT_CALLBACK, DeployArgs
from delivery_engine.socketservice.registry import ClusterSocket, ConnectionRegistry
from delivery_engine.socketservice.transport import Transport

logger = logging.getLogger(__name__)


def sequence_from_backup(app: App, backup: Backup) -> int:
    """App sequence captured in the backup annotations."""
    annotations = backup.annotations or {}

    if backup.is_instance:
        raw = annotations.get(APPS_SEQUENCES_ANNOTATION, "")
        if not raw:
            raise MissingSequenceAnnotation(f"Instance backup {backup.name} is missing apps sequences annotation")
        try:
            apps_sequences = json.loads(raw)
        except ValueError as e:
            raise MissingSequenceAnnotation(f"Failed to parse apps sequences of {backup.name}: {e}") from e
        if not isinstance(apps_sequences, dict) or app.slug not in apps_sequences:
            raise MissingSequenceAnnotation(f"Instance backup {backup.name} has no sequence for {app.slug}")
        return int(apps_sequences[app.slug])

    raw = annotations.get(APP_SEQUENCE_ANNOTATION, "")
    if not raw:
        raise MissingSequenceAnnotation(f"Backup {backup.name} is missing sequence annotation")
    try:
        return int(raw)
    except ValueError as e:
        raise MissingSequenceAnnotation(f"Failed to parse sequence {raw!r} of {backup.name}") from e


def restore_label_selector(app: App, backup: Backup) -> Dict:
    """
    Backup selector narrowed to this app, so only resources that were both
    backed up and will be restored get removed.
    """
    selector = copy.deepcopy(backup.label_selector) if backup.label_selector else {}
    match_labels = selector.get("matchLabels") or {}
    match_labels[APP_SLUG_LABEL] = app.slug
    selector["matchLabels"] = match_labels
    return selector


class RestoreReconciler:
    """
    Executes the restore state machine for every app with a restore in
    progress. Each action is one handler; the resulting status is written
    after the handler succeeds.
    """

    def __init__(
        self,
        *,
        store: Store,
        backups: BackupSystem,
        renderer: Renderer,
        publisher: SupportBundlePublisher,
        registry: ConnectionRegistry,
        transport: Transport,
        annotate_slug: bool = False,
    ):
        self.store = store
        self.backups = backups
        self.renderer = renderer
        self.publisher = publisher
        self.registry = registry
        self.transport = transport
        self.annotate_slug = annotate_slug
        self.state_machine = RestoreStateMachine()

        self._handlers: Dict[RestoreAction, Callable] = {
            RestoreAction.UNDEPLOY: self._undeploy,
            RestoreAction.WAIT: self._wait,
            RestoreAction.CREATE_RESTORE: self._create_restore,
            RestoreAction.FINALIZE_RESTORE: self._finalize_restore,
            RestoreAction.ABORT_RESTORE: self._abort_restore,
        }

    def tick(self):
        for cluster_socket in self.registry.snapshot():
            try:
                apps = self.store.list_apps_for_downstream(cluster_socket.cluster_id)
            except Exception as e:
                logger.error(f"[restore] Failed to list apps for cluster {cluster_socket.cluster_id}: {e}")
                continue

            for app in apps:
                try:
                    self.process_app(cluster_socket, app)
                except Exception as e:
                    logger.error(f"[restore] [app:{app.id}] Failed to handle restore: {e}", exc_info=True)

    def process_app(self, cluster_socket: ClusterSocket, app: App) -> Optional[RestoreAction]:
        """Returns the action taken, None if the app has no restore in progress."""
        if not app.restore_in_progress:
            return None

        status = app.restore_undeploy_status
        backup = None
        restore = None

        if self.state_machine.needs_restore_lookup(status):
            backup = self.backups.get_backup(app.restore_in_progress_name)
            restore = self.backups.get_restore(backup.restore_name(app.slug))

        transition = self.state_machine.next_transition(status, restore)
        self._handlers[transition.action](cluster_socket, app, backup, restore)
        self._apply(app, status, transition)

        return transition.action

    def _apply(self, app: App, status: UndeployStatus, transition: Transition) -> None:
        if transition.next_status == status:
            return
        if transition.next_status == UndeployStatus.RESET:
            self.store.reset_restore(app.id)
        else:
            self.store.set_restore_undeploy_status(app.id, transition.next_status)

    # ----- handlers -----

    def _wait(self, cluster_socket, app, backup, restore):
        logger.debug(f"[restore] [app:{app.id}] Waiting ({app.restore_undeploy_status.name})")

    def _undeploy(self, cluster_socket: ClusterSocket, app: App, backup, restore):
        cluster_id = cluster_socket.cluster_id
        downstream = self.store.get_downstream(cluster_id)
        version = self.store.get_current_version(app.id, cluster_id)
        backup = self.backups.get_backup(app.restore_in_progress_name)

        kubectl_version = ""
        previous_manifests = b""
        if version is not None:
            rendered = self.renderer.render(app, downstream, version.parent_sequence)
            kubectl_version = rendered.kinds.kubectl_version
            previous_manifests = rendered.manifests

        deploy_args = DeployArgs(
            app_id=app.id,
            app_slug=app.slug,
            kubectl_version=kubectl_version,
            namespace=".",
            manifests="",
            previous_manifests=encode_manifests(previous_manifests),
            result_callback=UNDEPLOY_RESULT_CALLBACK,
            wait=True,
            clear_namespaces=list(backup.included_namespaces),
            clear_pvcs=True,
            annotate_slug=self.annotate_slug,
            is_restore=True,
            restore_label_selector=restore_label_selector(app, backup),
        )
        self.transport.emit(cluster_socket.connection_id, DEPLOY_EVENT, deploy_args.to_payload())

        logger.info(f"[restore] [app:{app.id}] Sent undeploy ahead of restore {app.restore_in_progress_name}")

    def _create_restore(self, cluster_socket, app: App, backup: Backup, restore):
        logger.info(f"[restore] [app:{app.id}] Creating velero restore from snapshot {backup.name}")
        self.backups.create_restore(backup.name, app.slug)

    def _finalize_restore(self, cluster_socket: ClusterSocket, app: App, backup, restore: Restore):
        # The restore may point at a different backup than the app marker
        backup = self.backups.get_backup(restore.backup_name)
        sequence = sequence_from_backup(app, backup)

        logger.info(f"[restore] [app:{app.id}] Restore complete, marking version {sequence} as deployed")

        # Record in both the store and the socket cache so the deploy loop
        # does not push the restored version again. The cache holds parent sequences.
        self.store.deploy_version(app.id, sequence)
        parent_sequence = self.store.get_parent_sequence_for_sequence(app.id, cluster_socket.cluster_id, sequence)
        if parent_sequence == -1:
            parent_sequence = sequence
        self.registry.set_last_deployed_sequence(cluster_socket, app.id, parent_sequence)

        try:
            spec = self.renderer.render_support_bundle_spec(app, sequence)
            self.publisher.publish(app, spec)
        except Exception as e:
            logger.error(f"[restore] [app:{app.id}] Failed to create support bundle spec for sequence {sequence} post restore: {e}")

    def _abort_restore(self, cluster_socket, app: App, backup, restore: Restore):
        logger.warning(f"[restore] [app:{app.id}] Restore {restore.name} ended {restore.phase.value}, resetting app restore")
