# delivery_engine/infrastructure/kubernetes/client.py
"""Kubernetes API client loading."""

import logging
import threading
from typing import Optional

from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException

logger = logging.getLogger(__name__)


_api_client: Optional[client.ApiClient] = None
_lock = threading.Lock()


def get_api_client() -> client.ApiClient:
    """
    Shared ApiClient. In-cluster config is preferred; a local kubeconfig is
    used when running outside a pod. Loaded on first use.
    """
    global _api_client

    with _lock:
        if _api_client is None:
            try:
                config.load_incluster_config()
                logger.info("[kubernetes] Using in-cluster config")
            except ConfigException:
                config.load_kube_config()
                logger.info("[kubernetes] Using local kubeconfig")
            _api_client = client.ApiClient()
        return _api_client


def custom_objects_api() -> client.CustomObjectsApi:
    return client.CustomObjectsApi(get_api_client())


def core_v1_api() -> client.CoreV1Api:
    return client.CoreV1Api(get_api_client())
