# delivery_engine/socketservice/supportbundle.py
"""Support bundle loop - asks agents to collect pending support bundles."""

import logging

from delivery_engine.core.models import PendingSupportBundle
from delivery_engine.core.store import Store
from delivery_engine.render.base import Renderer, SupportBundlePublisher
from delivery_engine.socketservice.events_model import SUPPORT_BUNDLE_EVENT, SupportBundleArgs
from delivery_engine.socketservice.registry import ClusterSocket, ConnectionRegistry
from delivery_engine.socketservice.transport import Transport

logger = logging.getLogger(__name__)


class SupportBundleDispatcher:
    """
    Renders and publishes the bundle spec, emits it, then clears the pending
    row. Nothing confirms the agent received the event.
    """

    def __init__(
        self,
        *,
        store: Store,
        renderer: Renderer,
        publisher: SupportBundlePublisher,
        registry: ConnectionRegistry,
        transport: Transport,
    ):
        self.store = store
        self.renderer = renderer
        self.publisher = publisher
        self.registry = registry
        self.transport = transport

    def tick(self):
        for cluster_socket in self.registry.snapshot():
            try:
                apps = self.store.list_apps_for_downstream(cluster_socket.cluster_id)
            except Exception as e:
                logger.error(f"[supportbundle] Failed to list apps for cluster {cluster_socket.cluster_id}: {e}")
                continue

            pending = []
            for app in apps:
                try:
                    pending.extend(self.store.list_pending_support_bundles_for_app(app.id))
                except Exception as e:
                    logger.error(f"[supportbundle] [app:{app.id}] Failed to list pending support bundles: {e}")

            for bundle in pending:
                try:
                    self.dispatch(cluster_socket, bundle)
                except Exception as e:
                    logger.error(
                        f"[supportbundle] Failed to process support bundle {bundle.id} for app {bundle.app_id}: {e}",
                        exc_info=True,
                    )

    def dispatch(self, cluster_socket: ClusterSocket, bundle: PendingSupportBundle) -> str:
        """Returns the URI sent to the agent."""
        app = self.store.get_app(bundle.app_id)

        sequence = self.store.get_current_parent_sequence(app.id, cluster_socket.cluster_id)
        if sequence < 0:
            sequence = 0

        spec = self.renderer.render_support_bundle_spec(app, sequence)
        uri = self.publisher.publish(app, spec)

        self.transport.emit(
            cluster_socket.connection_id,
            SUPPORT_BUNDLE_EVENT,
            SupportBundleArgs(uri=uri).to_payload(),
        )
        self.store.clear_pending_support_bundle(bundle.id)

        logger.info(f"[supportbundle] [app:{app.id}] Sent support bundle request {bundle.id} ({uri})")
        return uri
