# delivery_engine/render/kustomize.py
"""Render downstream manifests from a stored version archive with kustomize."""

import logging
import os
import subprocess
import tempfile

import yaml

from delivery_engine.core.errors import ArchiveUnavailable, RenderError
from delivery_engine.core.models import App, AppKinds, Downstream, RenderedVersion
from delivery_engine.core.store import Store
from delivery_engine.render.base import Renderer
from delivery_engine.render.kinds import load_app_kinds

logger = logging.getLogger(__name__)


DEFAULT_SUPPORT_BUNDLE_SPEC = {
    "apiVersion": "troubleshoot.sh/v1beta2",
    "kind": "SupportBundle",
    "metadata": {"name": "default"},
    "spec": {
        "collectors": [
            {"clusterInfo": {}},
            {"clusterResources": {}},
        ],
    },
}


class KustomizeRenderer(Renderer):
    """
    Extracts the archive for (app, sequence) into a temp dir and runs
    `kustomize build` on the downstream overlay.
    """

    def __init__(
        self,
        store: Store,
        namespace: str = "default",
        binary_prefix: str = "kustomize",
        timeout_seconds: float = 120.0,
    ):
        super().__init__(namespace=namespace)
        self.store = store
        self.binary_prefix = binary_prefix
        self.timeout_seconds = timeout_seconds

    def render(self, app: App, downstream: Downstream, sequence: int) -> RenderedVersion:
        with tempfile.TemporaryDirectory(prefix="render-") as archive_dir:
            self._extract(app, sequence, archive_dir)
            kinds = load_app_kinds(archive_dir)

            overlay = os.path.join(archive_dir, "overlays", "downstreams", downstream.name)
            if not os.path.isdir(overlay):
                raise RenderError(f"Downstream overlay {downstream.name} not found in sequence {sequence}")

            manifests = self._build(overlay, kinds)
            image_pull_secret = self._read_pull_secret(archive_dir)

        logger.debug(f"[render] [app:{app.id}] Rendered sequence {sequence} ({len(manifests)} bytes)")
        return RenderedVersion(
            manifests=manifests,
            kinds=kinds,
            image_pull_secret=image_pull_secret,
        )

    def render_support_bundle_spec(self, app: App, sequence: int) -> bytes:
        with tempfile.TemporaryDirectory(prefix="supportbundle-") as archive_dir:
            self._extract(app, sequence, archive_dir)
            kinds = load_app_kinds(archive_dir)

        spec = kinds.support_bundle_spec or DEFAULT_SUPPORT_BUNDLE_SPEC
        return yaml.safe_dump(spec, sort_keys=False).encode("utf-8")

    # ----- helpers -----

    def _extract(self, app: App, sequence: int, archive_dir: str) -> None:
        # Other store errors propagate so the caller retries next tick
        try:
            self.store.get_app_version_archive(app.id, sequence, archive_dir)
        except ArchiveUnavailable as e:
            raise RenderError(f"Failed to get archive for sequence {sequence}: {e}") from e

    def _binary(self, kinds: AppKinds) -> str:
        return f"{self.binary_prefix}{kinds.kustomize_version}"

    def _build(self, overlay: str, kinds: AppKinds) -> bytes:
        binary = self._binary(kinds)
        try:
            result = subprocess.run(
                [binary, "build", overlay],
                capture_output=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as e:
            raise RenderError(f"{binary} not found") from e
        except subprocess.TimeoutExpired as e:
            raise RenderError(f"{binary} build timed out after {self.timeout_seconds}s") from e

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise RenderError(f"{binary} build failed: {stderr}")

        return result.stdout

    @staticmethod
    def _read_pull_secret(archive_dir: str) -> str:
        path = os.path.join(archive_dir, "overlays", "midstream", "secret.yaml")
        if not os.path.exists(path):
            return ""
        with open(path, "r", encoding="utf-8") as f:
            return f.read()
