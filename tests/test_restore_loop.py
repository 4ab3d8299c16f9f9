#tests\test_restore_loop.py

"""Test the restore loop."""

import base64
import json

import pytest

from delivery_engine.core.errors import MissingSequenceAnnotation
from delivery_engine.core.models import (
    APP_SEQUENCE_ANNOTATION,
    APPS_SEQUENCES_ANNOTATION,
    INSTANCE_ANNOTATION,
    App,
    Backup,
    DownstreamVersionStatus,
    RestorePhase,
    UndeployStatus,
)
from delivery_engine.core.restore_state_machine import RestoreAction
from delivery_engine.socketservice.events_model import DEPLOY_EVENT, UNDEPLOY_RESULT_CALLBACK
from delivery_engine.socketservice.restore import restore_label_selector, sequence_from_backup

from conftest import APP_ID, APP_SLUG, CLUSTER_ID

BACKUP_NAME = "my-app-abc12"
INSTANCE_BACKUP_NAME = "instance-xyz89"


@pytest.fixture
def app_backup(backups):
    return backups.add_backup(Backup(
        name=BACKUP_NAME,
        annotations={APP_SEQUENCE_ANNOTATION: "3"},
        included_namespaces=["default", "extra"],
        label_selector={"matchLabels": {"tier": "web"}},
    ))


@pytest.fixture
def restoring_app(store, app_backup, add_version):
    """App restoring BACKUP_NAME, currently on sequence 5, with sequence 3 known."""
    add_version(3, make_current=False)
    add_version(5)

    def _set(status=UndeployStatus.RESET, backup_name=BACKUP_NAME):
        store.add_app(App(
            id=APP_ID,
            slug=APP_SLUG,
            restore_in_progress_name=backup_name,
            restore_undeploy_status=status,
        ))
        return store.get_app(APP_ID)

    return _set


class TestUndeployPhase:

    def test_reset_sends_undeploy(self, service, transport, store, backups, restoring_app, cluster_socket):
        """Test the undeploy event removes the current manifests ahead of the restore."""
        app = restoring_app(UndeployStatus.RESET)

        action = service.restorer.process_app(cluster_socket, app)

        assert action == RestoreAction.UNDEPLOY
        deploys = transport.events_named(DEPLOY_EVENT)
        assert len(deploys) == 1
        payload = deploys[0].payload
        assert payload["manifests"] == ""
        assert base64.b64decode(payload["previous_manifests"]).decode() == "manifests-my-app-5"
        assert payload["wait"] is True
        assert payload["result_callback"] == UNDEPLOY_RESULT_CALLBACK
        assert payload["clear_namespaces"] == ["default", "extra"]
        assert payload["clear_pvcs"] is True
        assert payload["is_restore"] is True
        assert payload["restore_label_selector"] == {
            "matchLabels": {"tier": "web", "kots.io/app-slug": APP_SLUG},
        }
        assert store.get_app(APP_ID).restore_undeploy_status == UndeployStatus.IN_PROCESS

        # backup selector itself is left untouched
        assert backups.backups[BACKUP_NAME].label_selector == {"matchLabels": {"tier": "web"}}

    def test_in_process_waits(self, service, transport, store, restoring_app, cluster_socket):
        app = restoring_app(UndeployStatus.IN_PROCESS)

        action = service.restorer.process_app(cluster_socket, app)

        assert action == RestoreAction.WAIT
        assert transport.events == []
        assert store.get_app(APP_ID).restore_undeploy_status == UndeployStatus.IN_PROCESS

    def test_failed_is_sticky(self, service, transport, store, restoring_app, cluster_socket):
        """Test a failed undeploy is never retried automatically."""
        app = restoring_app(UndeployStatus.FAILED)

        service.restorer.process_app(cluster_socket, app)
        service.restorer.tick()

        assert transport.events == []
        app = store.get_app(APP_ID)
        assert app.restore_undeploy_status == UndeployStatus.FAILED
        assert app.restore_in_progress_name == BACKUP_NAME

    def test_app_without_restore(self, service, transport, cluster_socket, store):
        assert service.restorer.process_app(cluster_socket, store.get_app(APP_ID)) is None
        assert transport.events == []


class TestRestorePhase:

    def test_creates_restore(self, service, store, backups, restoring_app, cluster_socket):
        app = restoring_app(UndeployStatus.COMPLETED)

        action = service.restorer.process_app(cluster_socket, app)

        assert action == RestoreAction.CREATE_RESTORE
        assert backups.created_restores == [(BACKUP_NAME, APP_SLUG)]
        assert backups.restores[BACKUP_NAME].phase == RestorePhase.NEW
        assert store.get_app(APP_ID).restore_undeploy_status == UndeployStatus.COMPLETED

    def test_waits_while_restore_runs(self, service, backups, restoring_app, cluster_socket):
        app = restoring_app(UndeployStatus.COMPLETED)
        backups.set_restore_phase(BACKUP_NAME, BACKUP_NAME, RestorePhase.IN_PROGRESS)

        action = service.restorer.process_app(cluster_socket, app)

        assert action == RestoreAction.WAIT
        assert backups.created_restores == []

    def test_finalizes_completed_restore(self, service, transport, store, backups, publisher, restoring_app, cluster_socket):
        """Test the backed-up sequence becomes current and the deploy loop leaves it alone."""
        app = restoring_app(UndeployStatus.COMPLETED)
        backups.set_restore_phase(BACKUP_NAME, BACKUP_NAME, RestorePhase.COMPLETED)

        action = service.restorer.process_app(cluster_socket, app)

        assert action == RestoreAction.FINALIZE_RESTORE
        assert store.get_current_version(APP_ID, CLUSTER_ID).sequence == 3
        assert store.get_version(APP_ID, CLUSTER_ID, 3).status == DownstreamVersionStatus.DEPLOYED

        app = store.get_app(APP_ID)
        assert app.restore_in_progress_name == ""
        assert app.restore_undeploy_status == UndeployStatus.RESET
        assert publisher.published == [(APP_ID, b"spec-my-app-3")]

        service.deployer.tick()
        assert transport.events_named(DEPLOY_EVENT) == []

    def test_finalize_caches_parent_sequence(self, service, transport, store, backups, app_backup, add_version, cluster_socket):
        """Test a restored version whose parent differs from its sequence is not sent again."""
        add_version(3, parent_sequence=2, make_current=False)
        add_version(5)
        store.add_app(App(
            id=APP_ID,
            slug=APP_SLUG,
            restore_in_progress_name=BACKUP_NAME,
            restore_undeploy_status=UndeployStatus.COMPLETED,
        ))
        backups.set_restore_phase(BACKUP_NAME, BACKUP_NAME, RestorePhase.COMPLETED)

        service.restorer.process_app(cluster_socket, store.get_app(APP_ID))

        assert service.registry.get_last_deployed_sequence(cluster_socket, APP_ID) == 2

        service.deployer.tick()
        assert transport.events_named(DEPLOY_EVENT) == []

    def test_finalize_survives_support_bundle_failure(self, service, store, backups, renderer, restoring_app, cluster_socket):
        renderer.fail_support_bundle = True
        app = restoring_app(UndeployStatus.COMPLETED)
        backups.set_restore_phase(BACKUP_NAME, BACKUP_NAME, RestorePhase.COMPLETED)

        service.restorer.process_app(cluster_socket, app)

        assert store.get_app(APP_ID).restore_in_progress_name == ""

    @pytest.mark.parametrize("phase", [RestorePhase.FAILED, RestorePhase.PARTIALLY_FAILED])
    def test_aborts_failed_restore(self, service, store, backups, restoring_app, cluster_socket, phase):
        app = restoring_app(UndeployStatus.COMPLETED)
        backups.set_restore_phase(BACKUP_NAME, BACKUP_NAME, phase)

        action = service.restorer.process_app(cluster_socket, app)

        assert action == RestoreAction.ABORT_RESTORE
        app = store.get_app(APP_ID)
        assert app.restore_in_progress_name == ""
        assert app.restore_undeploy_status == UndeployStatus.RESET
        # version is left where it was
        assert store.get_current_version(APP_ID, CLUSTER_ID).sequence == 5

    def test_instance_backup_restore(self, service, store, backups, restoring_app, cluster_socket):
        """Test instance backups restore under <backup>.<slug> with the per-app sequence."""
        backups.add_backup(Backup(
            name=INSTANCE_BACKUP_NAME,
            annotations={
                INSTANCE_ANNOTATION: "true",
                APPS_SEQUENCES_ANNOTATION: json.dumps({APP_SLUG: 3, "other-app": 9}),
            },
        ))
        app = restoring_app(UndeployStatus.COMPLETED, backup_name=INSTANCE_BACKUP_NAME)

        service.restorer.process_app(cluster_socket, app)
        assert f"{INSTANCE_BACKUP_NAME}.{APP_SLUG}" in backups.restores

        backups.set_restore_phase(f"{INSTANCE_BACKUP_NAME}.{APP_SLUG}", INSTANCE_BACKUP_NAME, RestorePhase.COMPLETED)
        service.restorer.process_app(cluster_socket, store.get_app(APP_ID))

        assert store.get_current_version(APP_ID, CLUSTER_ID).sequence == 3

    def test_tick_survives_missing_backup(self, service, store, restoring_app, cluster_socket):
        """Test a restore pointing at a deleted backup is logged and left in place."""
        restoring_app(UndeployStatus.COMPLETED, backup_name="deleted-backup")

        service.restorer.tick()

        assert store.get_app(APP_ID).restore_in_progress_name == "deleted-backup"


class TestBackupHelpers:

    def test_sequence_from_app_backup(self):
        app = App(id=APP_ID, slug=APP_SLUG)
        backup = Backup(name="b", annotations={APP_SEQUENCE_ANNOTATION: "12"})

        assert sequence_from_backup(app, backup) == 12

    def test_sequence_missing(self):
        app = App(id=APP_ID, slug=APP_SLUG)

        with pytest.raises(MissingSequenceAnnotation):
            sequence_from_backup(app, Backup(name="b"))

    def test_sequence_not_a_number(self):
        app = App(id=APP_ID, slug=APP_SLUG)
        backup = Backup(name="b", annotations={APP_SEQUENCE_ANNOTATION: "three"})

        with pytest.raises(MissingSequenceAnnotation):
            sequence_from_backup(app, backup)

    def test_instance_backup_without_app(self):
        app = App(id=APP_ID, slug=APP_SLUG)
        backup = Backup(
            name="instance-1",
            annotations={INSTANCE_ANNOTATION: "true", APPS_SEQUENCES_ANNOTATION: json.dumps({"other-app": 1})},
        )

        with pytest.raises(MissingSequenceAnnotation):
            sequence_from_backup(app, backup)

    def test_label_selector_without_backup_selector(self):
        app = App(id=APP_ID, slug=APP_SLUG)

        selector = restore_label_selector(app, Backup(name="b"))

        assert selector == {"matchLabels": {"kots.io/app-slug": APP_SLUG}}
