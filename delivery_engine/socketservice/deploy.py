# delivery_engine/socketservice/deploy.py
"""Deploy loop - pushes the current downstream version to connected agents."""

import base64
import logging
from typing import Dict, Optional, Tuple

from delivery_engine.core.appstatus import default_ready_state
from delivery_engine.core.backoff import ErrorBackoff
from delivery_engine.core.errors import RenderError
from delivery_engine.core.models import App, DownstreamVersionStatus, utcnow
from delivery_engine.core.store import Store
from delivery_engine.render.base import Renderer
from delivery_engine.socketservice.events_model import (
    APP_INFORMERS_EVENT,
    DEPLOY_EVENT,
    DEPLOY_RESULT_CALLBACK,
    AppInformersArgs,
    DeployArgs,
)
from delivery_engine.socketservice.registry import ClusterSocket, ConnectionRegistry
from delivery_engine.socketservice.transport import Transport

logger = logging.getLogger(__name__)


def encode_manifests(manifests: bytes) -> str:
    return base64.b64encode(manifests).decode("ascii")


class DeployReconciler:
    """
    For each connected cluster and each app it targets, send a deploy event
    when the current version differs from what was last sent on that socket.

    The agent's answer arrives later through the deploy result callback; this
    loop never waits for it.
    """

    def __init__(
        self,
        *,
        store: Store,
        renderer: Renderer,
        registry: ConnectionRegistry,
        transport: Transport,
        annotate_slug: bool = False,
    ):
        self.store = store
        self.renderer = renderer
        self.registry = registry
        self.transport = transport
        self.annotate_slug = annotate_slug

        self._backoffs: Dict[Tuple[str, str], ErrorBackoff] = {}

    def tick(self):
        for cluster_socket in self.registry.snapshot():
            try:
                apps = self.store.list_apps_for_downstream(cluster_socket.cluster_id)
            except Exception as e:
                logger.error(f"[deploy] Failed to list apps for cluster {cluster_socket.cluster_id}: {e}")
                continue

            for app in apps:
                backoff = self._backoff(cluster_socket.cluster_id, app.id)
                try:
                    self.deploy_app(cluster_socket, app)
                    backoff.reset()
                except Exception as e:
                    backoff.on_error(
                        e,
                        lambda err: logger.error(
                            f"[deploy] [app:{app.id}] Failed to process deploy: {err}",
                            exc_info=err,
                        ),
                    )

    def deploy_app(self, cluster_socket: ClusterSocket, app: App) -> bool:
        """Returns True if a deploy event was emitted."""
        if app.restore_in_progress:
            return False

        cluster_id = cluster_socket.cluster_id

        version = self.store.get_current_version(app.id, cluster_id)
        if version is None:
            return False

        cached = self.registry.get_last_deployed_sequence(cluster_socket, app.id)
        if cached is not None and cached == version.parent_sequence:
            return False

        downstream = self.store.get_downstream(cluster_id)

        try:
            current = self.renderer.render(app, downstream, version.parent_sequence)

            previous_manifests = b""
            previous_sequence = self.store.get_previously_deployed_sequence(app.id, cluster_id)
            if previous_sequence != -1:
                previous_parent = self.store.get_parent_sequence_for_sequence(app.id, cluster_id, previous_sequence)
                if previous_parent != -1:
                    previous_manifests = self.renderer.render(app, downstream, previous_parent).manifests
        except RenderError as e:
            logger.error(f"[deploy] [app:{app.id}] Failed to render sequence {version.parent_sequence}: {e}")
            self.store.update_downstream_status(
                app.id,
                cluster_id,
                version.sequence,
                DownstreamVersionStatus.FAILED,
                str(e),
            )
            # Same version is not retried until it changes
            self.registry.set_last_deployed_sequence(cluster_socket, app.id, version.parent_sequence)
            return False

        deploy_args = DeployArgs(
            app_id=app.id,
            app_slug=app.slug,
            kubectl_version=current.kinds.kubectl_version,
            additional_namespaces=list(current.kinds.additional_namespaces),
            image_pull_secret=current.image_pull_secret,
            namespace=".",
            previous_manifests=encode_manifests(previous_manifests),
            manifests=encode_manifests(current.manifests),
            wait=False,
            result_callback=DEPLOY_RESULT_CALLBACK,
            annotate_slug=self.annotate_slug,
        )
        self.transport.emit(cluster_socket.connection_id, DEPLOY_EVENT, deploy_args.to_payload())
        self.registry.set_last_deployed_sequence(cluster_socket, app.id, version.parent_sequence)

        logger.info(f"[deploy] [app:{app.id}] ✅ Sent sequence {version.parent_sequence} to cluster {cluster_id}")

        if current.kinds.status_informers:
            registry_settings = self.store.get_registry_details_for_app(app.id)
            informers = self.renderer.render_informers(
                app,
                current.kinds,
                registry_settings,
                version.parent_sequence,
            )
            informers_args = AppInformersArgs(
                app_id=app.id,
                informers=informers,
                sequence=version.parent_sequence,
            )
            self.transport.emit(cluster_socket.connection_id, APP_INFORMERS_EVENT, informers_args.to_payload())
        else:
            # Nothing to watch, so report the app as ready
            self.store.set_app_status(app.id, default_ready_state(), utcnow(), version.parent_sequence)

        return True

    def redeploy_app_version(
        self,
        app_id: str,
        sequence: int,
        cluster_socket: Optional[ClusterSocket] = None,
    ) -> None:
        """Mark the version deployed and force the next tick to send it again."""
        self.store.deploy_version(app_id, sequence)
        self.registry.forget_deployed_sequence(app_id, cluster_socket)
        logger.info(f"[deploy] [app:{app_id}] Redeploy of sequence {sequence} requested")

    def _backoff(self, cluster_id: str, app_id: str) -> ErrorBackoff:
        key = (cluster_id, app_id)
        if key not in self._backoffs:
            self._backoffs[key] = ErrorBackoff()
        return self._backoffs[key]
