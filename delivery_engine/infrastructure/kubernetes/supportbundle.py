# delivery_engine/infrastructure/kubernetes/supportbundle.py
"""Publishes rendered support bundle specs as Kubernetes secrets."""

import logging

from kubernetes import client
from kubernetes.client.rest import ApiException

from delivery_engine.core.models import APP_SLUG_LABEL, App
from delivery_engine.infrastructure.kubernetes.client import core_v1_api
from delivery_engine.render.base import SupportBundlePublisher

logger = logging.getLogger(__name__)


SPEC_KEY = "support-bundle-spec"


def spec_secret_name(app_slug: str) -> str:
    return f"kotsadm-{app_slug}-supportbundle"


def spec_uri(namespace: str, app_slug: str) -> str:
    return f"secret/{namespace}/{spec_secret_name(app_slug)}"


class SecretSupportBundlePublisher(SupportBundlePublisher):
    """Writes the spec to secret/<namespace>/kotsadm-<slug>-supportbundle."""

    def __init__(self, namespace: str = "default", api=None):
        self.namespace = namespace
        self._api = api

    @property
    def api(self):
        if self._api is None:
            self._api = core_v1_api()
        return self._api

    def publish(self, app: App, spec: bytes) -> str:
        name = spec_secret_name(app.slug)
        secret = client.V1Secret(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=self.namespace,
                labels={APP_SLUG_LABEL: app.slug},
            ),
            string_data={SPEC_KEY: spec.decode("utf-8")},
        )

        try:
            self.api.read_namespaced_secret(name, self.namespace)
            exists = True
        except ApiException as e:
            if e.status != 404:
                raise
            exists = False

        if exists:
            self.api.replace_namespaced_secret(name, self.namespace, secret)
        else:
            self.api.create_namespaced_secret(self.namespace, secret)

        logger.debug(f"[supportbundle] [app:{app.id}] Published spec to {name}")
        return spec_uri(self.namespace, app.slug)
