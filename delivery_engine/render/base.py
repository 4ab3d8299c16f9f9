"""Renderer and support bundle publisher contracts."""

import logging
import re
from abc import ABC, abstractmethod
from typing import Dict, List

from delivery_engine.core.errors import RenderError
from delivery_engine.core.models import App, AppKinds, Downstream, RegistrySettings, RenderedVersion

logger = logging.getLogger(__name__)


# Both template spellings used in app specs: {{repl Foo}} and repl{{ Foo }}
_TEMPLATE_RE = re.compile(r"\{\{repl\s+(\w+)\s*\}\}|repl\{\{\s*(\w+)\s*\}\}")


def render_template(text: str, context: Dict[str, str]) -> str:
    """Substitute template variables. Unknown variables raise RenderError."""

    def _replace(match):
        name = match.group(1) or match.group(2)
        if name not in context:
            raise RenderError(f"Unknown template variable: {name}")
        return str(context[name])

    return _TEMPLATE_RE.sub(_replace, text)


class Renderer(ABC):
    """Turns a stored app version into manifests the agent can apply."""

    def __init__(self, namespace: str = "default"):
        self.namespace = namespace

    @abstractmethod
    def render(self, app: App, downstream: Downstream, sequence: int) -> RenderedVersion:
        """Raise RenderError if the version cannot be rendered."""
        raise NotImplementedError

    @abstractmethod
    def render_support_bundle_spec(self, app: App, sequence: int) -> bytes:
        raise NotImplementedError

    def render_informers(
        self,
        app: App,
        kinds: AppKinds,
        registry: RegistrySettings,
        sequence: int,
    ) -> List[str]:
        """
        Render the app's status informers.

        An informer that fails to render is logged and skipped, and empty
        results are dropped, so one bad entry never hides the others.
        """
        context = {
            "Namespace": self.namespace,
            "RegistryHost": registry.hostname,
            "RegistryNamespace": registry.namespace,
            "Sequence": str(sequence),
        }

        informers = []
        for informer in kinds.status_informers:
            try:
                rendered = render_template(informer, context).strip()
            except RenderError as e:
                logger.warning(f"[app:{app.id}] Failed to render status informer {informer!r}: {e}")
                continue
            if rendered:
                informers.append(rendered)
        return informers


class SupportBundlePublisher(ABC):
    """Makes a rendered support bundle spec readable by the agent."""

    @abstractmethod
    def publish(self, app: App, spec: bytes) -> str:
        """Store the spec and return its URI."""
        raise NotImplementedError
