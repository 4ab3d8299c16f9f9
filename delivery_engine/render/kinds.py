# delivery_engine/render/kinds.py
"""Load application metadata (kinds) from an extracted version archive."""

import logging
import os
from typing import Any, Dict

import yaml

from delivery_engine.core.models import AppKinds

logger = logging.getLogger(__name__)


def _is_application(doc: Dict[str, Any]) -> bool:
    return doc.get("kind") == "Application" and str(doc.get("apiVersion", "")).startswith("kots.io/")


def _is_support_bundle(doc: Dict[str, Any]) -> bool:
    api_version = str(doc.get("apiVersion", ""))
    if doc.get("kind") == "SupportBundle" and api_version.startswith("troubleshoot.sh/"):
        return True
    # Older troubleshoot group
    return doc.get("kind") == "Collector" and api_version.startswith("troubleshoot.replicated.com/")


def _is_backup(doc: Dict[str, Any]) -> bool:
    return doc.get("kind") == "Backup" and str(doc.get("apiVersion", "")).startswith("velero.io/")


def load_app_kinds(archive_dir: str) -> AppKinds:
    """
    Scan the upstream directory of an archive for the kinds the control
    plane cares about. Files that are not valid YAML are skipped.
    """
    root = os.path.join(archive_dir, "upstream")
    if not os.path.isdir(root):
        root = archive_dir

    kinds = AppKinds()

    for dirpath, _, filenames in os.walk(root):
        for filename in sorted(filenames):
            if not filename.endswith((".yaml", ".yml")):
                continue

            path = os.path.join(dirpath, filename)
            try:
                with open(path, "r", encoding="utf-8") as f:
                    docs = list(yaml.safe_load_all(f))
            except (OSError, yaml.YAMLError) as e:
                logger.debug(f"[kinds] Skipping {path}: {e}")
                continue

            for doc in docs:
                if not isinstance(doc, dict):
                    continue

                if _is_application(doc):
                    spec = doc.get("spec") or {}
                    kinds.kubectl_version = spec.get("kubectlVersion", "") or ""
                    kinds.kustomize_version = spec.get("kustomizeVersion", "") or ""
                    kinds.additional_namespaces = list(spec.get("additionalNamespaces") or [])
                    kinds.status_informers = [str(i) for i in spec.get("statusInformers") or []]
                elif _is_support_bundle(doc):
                    kinds.support_bundle_spec = doc
                elif _is_backup(doc):
                    kinds.backup_spec = doc

    return kinds
