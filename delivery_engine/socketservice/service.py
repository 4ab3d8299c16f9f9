# delivery_engine/socketservice/service.py
"""Socket service - owns the registry and the three reconciliation loops."""

import logging
from typing import List, Optional

from delivery_engine.core.backups import BackupSystem
from delivery_engine.core.loop import PeriodicLoop
from delivery_engine.core.store import Store
from delivery_engine.render.base import Renderer, SupportBundlePublisher
from delivery_engine.socketservice.deploy import DeployReconciler
from delivery_engine.socketservice.registry import ClusterSocket, ConnectionRegistry
from delivery_engine.socketservice.restore import RestoreReconciler
from delivery_engine.socketservice.supportbundle import SupportBundleDispatcher
from delivery_engine.socketservice.transport import Transport

logger = logging.getLogger(__name__)


class SocketService:
    def __init__(
        self,
        *,
        store: Store,
        backups: BackupSystem,
        renderer: Renderer,
        publisher: SupportBundlePublisher,
        transport: Transport,
        annotate_slug: bool = False,
        deploy_interval: float = 1.0,
        support_bundle_interval: float = 1.0,
        restore_interval: float = 1.0,
    ):
        self.store = store
        self.transport = transport
        self.registry = ConnectionRegistry(store, transport)

        self.deployer = DeployReconciler(
            store=store,
            renderer=renderer,
            registry=self.registry,
            transport=transport,
            annotate_slug=annotate_slug,
        )
        self.support_bundles = SupportBundleDispatcher(
            store=store,
            renderer=renderer,
            publisher=publisher,
            registry=self.registry,
            transport=transport,
        )
        self.restorer = RestoreReconciler(
            store=store,
            backups=backups,
            renderer=renderer,
            publisher=publisher,
            registry=self.registry,
            transport=transport,
            annotate_slug=annotate_slug,
        )

        self.loops: List[PeriodicLoop] = [
            PeriodicLoop("deploy", self.deployer.tick, deploy_interval),
            PeriodicLoop("supportbundle", self.support_bundles.tick, support_bundle_interval),
            PeriodicLoop("restore", self.restorer.tick, restore_interval),
        ]

    def start(self):
        """Start every loop. A loop that cannot start is fatal."""
        for loop in self.loops:
            loop.start()
        logger.info("[socketservice] 🚀 All loops started")

    def stop(self, timeout: Optional[float] = 10.0):
        for loop in self.loops:
            loop.stop(timeout)
        logger.info("[socketservice] All loops stopped")

    def tick_all(self):
        """Run one pass of every loop on the calling thread."""
        for loop in self.loops:
            loop.run_once()

    def redeploy_app_version(
        self,
        app_id: str,
        sequence: int,
        cluster_socket: Optional[ClusterSocket] = None,
    ) -> None:
        self.deployer.redeploy_app_version(app_id, sequence, cluster_socket)
