"""
Declared Set Source - Reads the rendered desired state for a scope.

Fetching and rendering the repository happen upstream; a source only turns
rendered manifests into a DeclaredSet at a revision.
"""

import asyncio
import hashlib
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import yaml

from errors import SourceError
from ownership import Scope
from resources import (
    DELETION_ANNOTATION,
    DELETION_DETACH,
    DEPENDS_ON_ANNOTATION,
    LOCAL_CONFIG_ANNOTATION,
    MANAGEMENT_ANNOTATION,
    DeclaredResource,
    DeclaredSet,
    Lifecycle,
    Management,
    ResourceID,
    parse_depends_on,
    strip_server_fields,
)
from validation import manifest_errors

logger = logging.getLogger(__name__)

MANIFEST_EXTENSIONS = (".yaml", ".yml", ".json")
REVISION_FILE = ".revision"

# Kinds that are never namespaced; everything else in a namespace scope
# defaults to the scope's namespace.
CLUSTER_SCOPED_KINDS = frozenset(
    {
        ("", "Namespace"),
        ("", "Node"),
        ("", "PersistentVolume"),
        ("apiextensions.k8s.io", "CustomResourceDefinition"),
        ("rbac.authorization.k8s.io", "ClusterRole"),
        ("rbac.authorization.k8s.io", "ClusterRoleBinding"),
        ("storage.k8s.io", "StorageClass"),
        ("admissionregistration.k8s.io", "MutatingWebhookConfiguration"),
        ("admissionregistration.k8s.io", "ValidatingWebhookConfiguration"),
    }
)


class DeclaredSetSource(ABC):
    """Produces the declared set for one scope."""

    @abstractmethod
    async def read(self) -> DeclaredSet:
        """
        Read the current declared set.

        Raises:
            SourceError: If the desired state cannot be read or parsed
        """
        pass


def _management(annotations: Dict[str, str]) -> Management:
    if annotations.get(LOCAL_CONFIG_ANNOTATION, "").lower() == "true":
        return Management.LOCAL_CONFIG
    value = annotations.get(MANAGEMENT_ANNOTATION, "enabled").lower()
    if value == "disabled":
        return Management.DISABLED
    if value != "enabled":
        raise ValueError(f"invalid {MANAGEMENT_ANNOTATION} value {value!r}")
    return Management.ENABLED


def _lifecycle(annotations: Dict[str, str]) -> Lifecycle:
    if annotations.get(DELETION_ANNOTATION) == DELETION_DETACH:
        return Lifecycle.PREVENT_DELETION
    return Lifecycle.NORMAL


def parse_document(
    document: Dict[str, Any], scope: Optional[Scope] = None, origin: str = ""
) -> DeclaredResource:
    """
    Turn one manifest into a DeclaredResource.

    Raises:
        SourceError: If the manifest is malformed
    """
    problems = manifest_errors(document)
    if problems:
        raise SourceError(f"{origin}: invalid manifest: " + "; ".join(problems))

    payload = strip_server_fields(document)
    metadata = payload["metadata"]
    group = payload["apiVersion"].rpartition("/")[0]
    if (
        scope is not None
        and not scope.is_root
        and not metadata.get("namespace")
        and (group, payload["kind"]) not in CLUSTER_SCOPED_KINDS
    ):
        metadata["namespace"] = scope.namespace

    resource_id = ResourceID.from_object(payload)
    annotations = metadata.get("annotations") or {}
    try:
        depends_on = parse_depends_on(annotations.get(DEPENDS_ON_ANNOTATION, ""))
        management = _management(annotations)
    except ValueError as e:
        raise SourceError(f"{origin}: {resource_id}: {e}", [resource_id]) from e

    return DeclaredResource(
        id=resource_id,
        payload=payload,
        depends_on=frozenset(depends_on),
        lifecycle=_lifecycle(annotations),
        management=management,
    )


def _expand(document: Any) -> List[Any]:
    """Flatten ``kind: List`` documents into their items."""
    if isinstance(document, dict) and document.get("kind") == "List" and "items" in document:
        return list(document.get("items") or [])
    return [document]


class DirectorySource(DeclaredSetSource):
    """Reads rendered manifests from a directory tree."""

    def __init__(self, path: str, scope: Optional[Scope] = None):
        self.path = path
        self.scope = scope

    def _files(self) -> List[str]:
        found = []
        for root, dirs, files in os.walk(self.path):
            dirs[:] = sorted(d for d in dirs if not d.startswith("."))
            for name in sorted(files):
                if name.startswith(".") or not name.endswith(MANIFEST_EXTENSIONS):
                    continue
                found.append(os.path.join(root, name))
        return found

    def _load(self, file_path: str) -> Tuple[bytes, List[Any]]:
        with open(file_path, "rb") as f:
            content = f.read()
        if file_path.endswith(".json"):
            documents = [json.loads(content)]
        else:
            documents = list(yaml.safe_load_all(content))
        return content, documents

    def _revision(self, digest) -> str:
        revision_path = os.path.join(self.path, REVISION_FILE)
        if os.path.isfile(revision_path):
            with open(revision_path, "r") as f:
                revision = f.read().strip()
            if revision:
                return revision
        return digest.hexdigest()[:12]

    def _read_sync(self) -> DeclaredSet:
        if not os.path.isdir(self.path):
            raise SourceError(f"source directory {self.path} does not exist")

        digest = hashlib.sha256()
        resources = []
        for file_path in self._files():
            relative = os.path.relpath(file_path, self.path)
            try:
                content, documents = self._load(file_path)
            except (OSError, ValueError, yaml.YAMLError) as e:
                raise SourceError(f"failed to read {relative}: {e}") from e
            digest.update(relative.encode("utf-8"))
            digest.update(content)
            for index, document in enumerate(documents):
                for item in _expand(document):
                    if item is None:
                        continue
                    resources.append(
                        parse_document(item, self.scope, f"{relative}[{index}]")
                    )

        declared_set = DeclaredSet(self._revision(digest), resources)
        logger.info(
            f"Read {len(declared_set)} resources from {self.path} "
            f"at revision {declared_set.revision}"
        )
        return declared_set

    async def read(self) -> DeclaredSet:
        return await asyncio.to_thread(self._read_sync)
