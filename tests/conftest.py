#tests\conftest.py

"""Pytest configuration and fixtures."""

import copy
from typing import Dict, List, Set, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from delivery_engine.core.backups import BackupSystem
from delivery_engine.core.errors import BackupNotFound, RenderError
from delivery_engine.core.models import (
    App,
    AppKinds,
    Backup,
    Cluster,
    Downstream,
    DownstreamVersion,
    DownstreamVersionStatus,
    RenderedVersion,
    Restore,
    RestorePhase,
)
from delivery_engine.infrastructure.memory.store import InMemoryStore
from delivery_engine.infrastructure.postgres.database import get_session_factory, init_db
from delivery_engine.infrastructure.postgres.store import SqlStore
from delivery_engine.render.base import Renderer, SupportBundlePublisher
from delivery_engine.socketservice.service import SocketService
from delivery_engine.socketservice.transport import RecordingTransport


CLUSTER_ID = "cluster-1"
APP_ID = "app-1"
APP_SLUG = "my-app"
DEPLOY_TOKEN = "deploy-token"


# ============================================
# FAKE COLLABORATORS
# ============================================

class FakeRenderer(Renderer):
    """Renders b"manifests-<slug>-<sequence>" without touching archives."""

    def __init__(self, namespace: str = "default"):
        super().__init__(namespace=namespace)
        self.kinds = AppKinds(kubectl_version="1.29")
        self.image_pull_secret = ""
        self.fail_sequences: Set[int] = set()
        self.fail_apps: Dict[str, Exception] = {}
        self.fail_support_bundle = False

        self.rendered: List[Tuple[str, int]] = []
        self.support_bundle_renders: List[Tuple[str, int]] = []

    def render(self, app, downstream, sequence):
        self.rendered.append((app.id, sequence))
        if app.id in self.fail_apps:
            raise self.fail_apps[app.id]
        if sequence in self.fail_sequences:
            raise RenderError(f"kustomize build failed for sequence {sequence}")
        return RenderedVersion(
            manifests=f"manifests-{app.slug}-{sequence}".encode(),
            kinds=copy.deepcopy(self.kinds),
            image_pull_secret=self.image_pull_secret,
        )

    def render_support_bundle_spec(self, app, sequence):
        self.support_bundle_renders.append((app.id, sequence))
        if self.fail_support_bundle:
            raise RenderError("support bundle spec failed")
        return f"spec-{app.slug}-{sequence}".encode()


class FakePublisher(SupportBundlePublisher):
    def __init__(self):
        self.published: List[Tuple[str, bytes]] = []

    def publish(self, app, spec):
        self.published.append((app.id, spec))
        return f"secret/default/kotsadm-{app.slug}-supportbundle"


class FakeBackupSystem(BackupSystem):
    """Backups and restores kept in dicts; restores start in phase New."""

    def __init__(self):
        self.backups: Dict[str, Backup] = {}
        self.restores: Dict[str, Restore] = {}
        self.unfinished_apps: Set[str] = set()
        self.unfinished_instance = False

        self.created_backups: List[Tuple[str, bool]] = []
        self.created_instance_backups: List[Tuple[str, bool]] = []
        self.created_restores: List[Tuple[str, str]] = []
        self._counter = 0

    def add_backup(self, backup: Backup) -> Backup:
        self.backups[backup.name] = backup
        return backup

    def set_restore_phase(self, name: str, backup_name: str, phase: RestorePhase) -> None:
        self.restores[name] = Restore(name=name, backup_name=backup_name, phase=phase)

    def has_unfinished_backup(self, app_id):
        return app_id in self.unfinished_apps

    def create_backup(self, app, scheduled=False):
        self._counter += 1
        name = f"{app.slug}-{self._counter}"
        self.backups[name] = Backup(name=name)
        self.created_backups.append((app.id, scheduled))
        return name

    def has_unfinished_instance_backup(self):
        return self.unfinished_instance

    def create_instance_backup(self, cluster, scheduled=False):
        self._counter += 1
        name = f"instance-{self._counter}"
        self.backups[name] = Backup(name=name, annotations={"kots.io/instance": "true"})
        self.created_instance_backups.append((cluster.id, scheduled))
        return name

    def get_backup(self, name):
        if name not in self.backups:
            raise BackupNotFound(f"Backup {name} not found")
        return copy.deepcopy(self.backups[name])

    def get_restore(self, name):
        return copy.deepcopy(self.restores.get(name))

    def create_restore(self, backup_name, app_slug):
        backup = self.get_backup(backup_name)
        name = backup.restore_name(app_slug)
        self.restores[name] = Restore(name=name, backup_name=backup_name, phase=RestorePhase.NEW)
        self.created_restores.append((backup_name, app_slug))

    def delete_restore(self, name):
        self.restores.pop(name, None)


# ============================================
# FIXTURES
# ============================================

@pytest.fixture
def store():
    """Store seeded with one cluster, one app and the downstream linking them."""
    memory_store = InMemoryStore()
    memory_store.add_cluster(Cluster(id=CLUSTER_ID, title="Cluster One", slug="cluster-one"), DEPLOY_TOKEN)
    memory_store.add_app(App(id=APP_ID, slug=APP_SLUG, name="My App"))
    memory_store.add_downstream(Downstream(app_id=APP_ID, cluster_id=CLUSTER_ID, name="this-cluster"))
    return memory_store


@pytest.fixture
def add_version(store):
    """Add a downstream version; parent_sequence defaults to the sequence."""

    def _add(
        sequence,
        parent_sequence=None,
        app_id=APP_ID,
        cluster_id=CLUSTER_ID,
        make_current=True,
        status=DownstreamVersionStatus.PENDING,
        applied_at=None,
    ):
        version = DownstreamVersion(
            app_id=app_id,
            cluster_id=cluster_id,
            sequence=sequence,
            parent_sequence=sequence if parent_sequence is None else parent_sequence,
            status=status,
            applied_at=applied_at,
        )
        return store.add_version(version, make_current=make_current)

    return _add


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def backups():
    return FakeBackupSystem()


@pytest.fixture
def service(store, backups, renderer, publisher, transport):
    """Socket service whose loops are driven by hand."""
    return SocketService(
        store=store,
        backups=backups,
        renderer=renderer,
        publisher=publisher,
        transport=transport,
    )


@pytest.fixture
def cluster_socket(service, transport):
    """Agent of CLUSTER_ID connected as conn-1."""
    transport.connect("conn-1")
    return service.registry.on_connect("conn-1", DEPLOY_TOKEN)


@pytest.fixture
def sql_engine():
    """In-memory SQLite engine shared across threads and sessions."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)

    yield engine

    engine.dispose()


@pytest.fixture
def sql_session_factory(sql_engine):
    return get_session_factory(sql_engine)


@pytest.fixture
def sql_store(sql_session_factory):
    return SqlStore(session_factory=sql_session_factory)
