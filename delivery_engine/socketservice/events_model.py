"""Event payloads sent to cluster agents."""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


DEPLOY_EVENT = "deploy"
APP_INFORMERS_EVENT = "appInformers"
SUPPORT_BUNDLE_EVENT = "supportbundle"

DEPLOY_RESULT_CALLBACK = "/api/v1/deploy/result"
UNDEPLOY_RESULT_CALLBACK = "/api/v1/undeploy/result"


@dataclass
class DeployArgs:
    """
    Apply (or, with empty manifests, remove) an app's manifests.

    Manifests are base64 encoded. The agent deletes whatever is in
    previous_manifests but not in manifests.
    """
    app_id: str
    app_slug: str
    kubectl_version: str = ""
    additional_namespaces: List[str] = field(default_factory=list)
    image_pull_secret: str = ""
    namespace: str = "."
    previous_manifests: str = ""
    manifests: str = ""
    wait: bool = False
    result_callback: str = DEPLOY_RESULT_CALLBACK
    clear_namespaces: List[str] = field(default_factory=list)
    clear_pvcs: bool = False
    annotate_slug: bool = False
    is_restore: bool = False
    restore_label_selector: Optional[Dict[str, Any]] = None

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AppInformersArgs:
    app_id: str
    informers: List[str]
    sequence: int

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SupportBundleArgs:
    uri: str

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)
