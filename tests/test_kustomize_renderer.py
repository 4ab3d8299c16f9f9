#tests\test_kustomize_renderer.py

"""Test rendering archives with kustomize and publishing support bundle specs."""

import subprocess
from unittest.mock import MagicMock, patch

import pytest
import yaml
from kubernetes.client.rest import ApiException

from delivery_engine.core.errors import RenderError, StoreError
from delivery_engine.core.models import Downstream, DownstreamVersionStatus, RegistrySettings
from delivery_engine.infrastructure.kubernetes.supportbundle import SecretSupportBundlePublisher, spec_uri
from delivery_engine.render.base import render_template
from delivery_engine.render.kustomize import KustomizeRenderer
from delivery_engine.socketservice.events_model import DEPLOY_EVENT
from delivery_engine.socketservice.service import SocketService
from delivery_engine.socketservice.transport import RecordingTransport

from conftest import APP_ID, CLUSTER_ID, DEPLOY_TOKEN

APPLICATION_YAML = b"""apiVersion: kots.io/v1beta1
kind: Application
metadata:
  name: my-app
spec:
  kubectlVersion: "1.29"
  kustomizeVersion: "5"
  statusInformers:
    - deployment/web
    - "{{repl Namespace}}/service/web"
"""

SUPPORT_BUNDLE_YAML = b"""apiVersion: troubleshoot.sh/v1beta2
kind: SupportBundle
metadata:
  name: my-app
spec:
  collectors:
    - logs:
        selector:
          - app=web
"""

DOWNSTREAM = Downstream(app_id=APP_ID, cluster_id=CLUSTER_ID, name="this-cluster")


@pytest.fixture
def renderer(store):
    return KustomizeRenderer(store=store, namespace="apps", binary_prefix="kustomize")


@pytest.fixture
def archive(store):
    files = {
        "upstream/application.yaml": APPLICATION_YAML,
        "overlays/downstreams/this-cluster/kustomization.yaml": b"resources: []\n",
        "overlays/midstream/secret.yaml": b"apiVersion: v1\nkind: Secret\n",
    }
    store.add_archive(APP_ID, 5, files)
    return files


def _completed(returncode=0, stdout=b"", stderr=b""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestKustomizeRender:

    def test_render(self, renderer, store, archive):
        """Test manifests come from kustomize build of the downstream overlay."""
        with patch("delivery_engine.render.kustomize.subprocess.run") as run:
            run.return_value = _completed(stdout=b"kind: Deployment\n")

            rendered = renderer.render(store.get_app(APP_ID), DOWNSTREAM, 5)

        command = run.call_args[0][0]
        assert command[0] == "kustomize5"
        assert command[1] == "build"
        assert command[2].endswith("overlays/downstreams/this-cluster")
        assert rendered.manifests == b"kind: Deployment\n"
        assert rendered.kinds.kubectl_version == "1.29"
        assert rendered.image_pull_secret == "apiVersion: v1\nkind: Secret\n"

    def test_build_failure(self, renderer, store, archive):
        with patch("delivery_engine.render.kustomize.subprocess.run") as run:
            run.return_value = _completed(returncode=1, stderr=b"accumulating resources: missing file")

            with pytest.raises(RenderError) as exc_info:
                renderer.render(store.get_app(APP_ID), DOWNSTREAM, 5)

        assert "missing file" in str(exc_info.value)

    def test_binary_missing(self, renderer, store, archive):
        with patch("delivery_engine.render.kustomize.subprocess.run", side_effect=FileNotFoundError()):
            with pytest.raises(RenderError):
                renderer.render(store.get_app(APP_ID), DOWNSTREAM, 5)

    def test_build_timeout(self, renderer, store, archive):
        timeout = subprocess.TimeoutExpired(cmd="kustomize5", timeout=120)
        with patch("delivery_engine.render.kustomize.subprocess.run", side_effect=timeout):
            with pytest.raises(RenderError):
                renderer.render(store.get_app(APP_ID), DOWNSTREAM, 5)

    def test_missing_overlay(self, renderer, store, archive):
        other = Downstream(app_id=APP_ID, cluster_id=CLUSTER_ID, name="other-cluster")

        with patch("delivery_engine.render.kustomize.subprocess.run") as run:
            with pytest.raises(RenderError):
                renderer.render(store.get_app(APP_ID), other, 5)

        run.assert_not_called()

    def test_missing_archive(self, renderer, store):
        with pytest.raises(RenderError):
            renderer.render(store.get_app(APP_ID), DOWNSTREAM, 42)

    def test_informers(self, renderer, store, archive):
        """Test informers are rendered against the renderer's namespace."""
        with patch("delivery_engine.render.kustomize.subprocess.run") as run:
            run.return_value = _completed(stdout=b"")
            rendered = renderer.render(store.get_app(APP_ID), DOWNSTREAM, 5)

        informers = renderer.render_informers(store.get_app(APP_ID), rendered.kinds, RegistrySettings(), 5)

        assert informers == ["deployment/web", "apps/service/web"]


class TestSupportBundleSpec:

    def test_spec_from_archive(self, renderer, store, archive):
        store.add_archive(APP_ID, 6, {**archive, "upstream/support-bundle.yaml": SUPPORT_BUNDLE_YAML})

        spec = yaml.safe_load(renderer.render_support_bundle_spec(store.get_app(APP_ID), 6))

        assert spec["kind"] == "SupportBundle"
        assert spec["spec"]["collectors"][0]["logs"]["selector"] == ["app=web"]

    def test_default_spec(self, renderer, store, archive):
        """Test apps without a spec still get cluster info collected."""
        spec = yaml.safe_load(renderer.render_support_bundle_spec(store.get_app(APP_ID), 5))

        assert spec["kind"] == "SupportBundle"
        assert {"clusterInfo": {}} in spec["spec"]["collectors"]


class TestRenderTemplate:

    def test_both_spellings(self):
        context = {"Namespace": "apps", "Sequence": "4"}

        assert render_template("{{repl Namespace}}/svc", context) == "apps/svc"
        assert render_template("repl{{ Sequence }}", context) == "4"

    def test_unknown_variable(self):
        with pytest.raises(RenderError):
            render_template("{{repl Nope}}", {})

    def test_plain_text(self):
        assert render_template("deployment/web", {}) == "deployment/web"


class TestSecretPublisher:

    def test_creates_secret(self, store):
        api = MagicMock()
        api.read_namespaced_secret.side_effect = ApiException(status=404, reason="Not Found")
        publisher = SecretSupportBundlePublisher(namespace="apps", api=api)

        uri = publisher.publish(store.get_app(APP_ID), b"kind: SupportBundle\n")

        assert uri == "secret/apps/kotsadm-my-app-supportbundle"
        namespace, secret = api.create_namespaced_secret.call_args[0]
        assert namespace == "apps"
        assert secret.metadata.name == "kotsadm-my-app-supportbundle"
        assert secret.string_data == {"support-bundle-spec": "kind: SupportBundle\n"}
        api.replace_namespaced_secret.assert_not_called()

    def test_replaces_existing_secret(self, store):
        api = MagicMock()
        publisher = SecretSupportBundlePublisher(namespace="apps", api=api)

        publisher.publish(store.get_app(APP_ID), b"kind: SupportBundle\n")

        api.replace_namespaced_secret.assert_called_once()
        api.create_namespaced_secret.assert_not_called()

    def test_read_failure_propagates(self, store):
        api = MagicMock()
        api.read_namespaced_secret.side_effect = ApiException(status=500, reason="Internal Server Error")
        publisher = SecretSupportBundlePublisher(namespace="apps", api=api)

        with pytest.raises(ApiException):
            publisher.publish(store.get_app(APP_ID), b"")

    def test_spec_uri(self):
        assert spec_uri("default", "my-app") == "secret/default/kotsadm-my-app-supportbundle"


class TestArchiveErrors:

    def test_store_outage_is_not_a_render_error(self, renderer, store, archive):
        """Test a store outage reaches the caller as StoreError, not RenderError."""
        with patch.object(store, "get_app_version_archive", side_effect=StoreError("connection refused")):
            with pytest.raises(StoreError) as exc_info:
                renderer.render(store.get_app(APP_ID), DOWNSTREAM, 5)

        assert not isinstance(exc_info.value, RenderError)

    def test_deploy_retried_after_store_outage(self, renderer, store, archive, add_version, backups, publisher):
        """Test the deploy loop sends the version once the store recovers."""
        add_version(5)
        transport = RecordingTransport()
        service = SocketService(
            store=store,
            backups=backups,
            renderer=renderer,
            publisher=publisher,
            transport=transport,
        )
        transport.connect("conn-1")
        service.registry.on_connect("conn-1", DEPLOY_TOKEN)

        with patch("delivery_engine.render.kustomize.subprocess.run") as run:
            run.return_value = _completed(stdout=b"kind: Deployment\n")

            with patch.object(store, "get_app_version_archive", side_effect=StoreError("connection refused")):
                service.deployer.tick()

            assert transport.events_named(DEPLOY_EVENT) == []
            assert store.get_version(APP_ID, CLUSTER_ID, 5).status == DownstreamVersionStatus.PENDING

            service.deployer.tick()

        assert len(transport.events_named(DEPLOY_EVENT)) == 1
