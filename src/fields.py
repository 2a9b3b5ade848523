"""
Declared Fields - Field-level fingerprint of what a scope declared.

The fingerprint records exactly which fields a scope set on an object, so a
later cycle can clear fields it stopped declaring without overwriting
fields owned by the platform (auto-assigned ports, defaulted values,
other controllers' labels). It is encoded in the structured-merge
``fieldsV1`` shape, e.g. ``{"f:spec":{"f:replicas":{}}}``.

Maps are recursed into; lists and scalars are atomic leaves. An empty map
declares nothing, since the API server may drop it.
"""

import copy
import json
import logging
from typing import Any, Dict, FrozenSet, Iterable, List, Set, Tuple

from resources import SERVER_METADATA_FIELDS, STAMP_ANNOTATIONS, STAMP_LABELS

logger = logging.getLogger(__name__)

Path = Tuple[str, ...]

# Top-level keys that identify an object rather than declare its content.
_IDENTITY_KEYS = {"apiVersion", "kind", "status"}
_IDENTITY_METADATA = {"name", "namespace"} | set(SERVER_METADATA_FIELDS)

_MISSING = object()


def declared_field_paths(payload: Dict[str, Any]) -> FrozenSet[Path]:
    """Return the set of leaf field paths declared by ``payload``."""
    paths: Set[Path] = set()
    for key, value in payload.items():
        if key in _IDENTITY_KEYS:
            continue
        if key == "metadata":
            _metadata_paths(value or {}, paths)
        else:
            _walk((key,), value, paths)
    return frozenset(paths)


def _metadata_paths(metadata: Dict[str, Any], paths: Set[Path]) -> None:
    for key, value in metadata.items():
        if key in _IDENTITY_METADATA:
            continue
        if key in ("labels", "annotations"):
            skip = STAMP_LABELS if key == "labels" else STAMP_ANNOTATIONS
            for sub_key in (value or {}):
                if sub_key not in skip:
                    paths.add(("metadata", key, sub_key))
        else:
            paths.add(("metadata", key))


def _walk(prefix: Path, value: Any, paths: Set[Path]) -> None:
    if isinstance(value, dict):
        for key, sub in value.items():
            _walk(prefix + (key,), sub, paths)
    else:
        paths.add(prefix)


def encode_fields(paths: Iterable[Path]) -> str:
    """Encode paths as compact, sorted fieldsV1 JSON."""
    tree: Dict[str, Any] = {}
    for path in paths:
        node = tree
        for part in path:
            node = node.setdefault(f"f:{part}", {})
    return json.dumps(tree, sort_keys=True, separators=(",", ":"))


def decode_fields(text: str) -> FrozenSet[Path]:
    """Decode fieldsV1 JSON into paths. Malformed input yields no paths."""
    if not text:
        return frozenset()
    try:
        tree = json.loads(text)
    except (TypeError, ValueError):
        logger.warning("Ignoring malformed declared-fields fingerprint")
        return frozenset()
    if not isinstance(tree, dict):
        return frozenset()
    paths: Set[Path] = set()
    _decode_node((), tree, paths)
    return frozenset(paths)


def _decode_node(prefix: Path, node: Dict[str, Any], paths: Set[Path]) -> None:
    if not node:
        if prefix:
            paths.add(prefix)
        return
    for key, child in node.items():
        if not key.startswith("f:") or not isinstance(child, dict):
            continue
        _decode_node(prefix + (key[2:],), child, paths)


def get_path(obj: Dict[str, Any], path: Path) -> Any:
    """Return the value at ``path`` or a sentinel when absent."""
    node: Any = obj
    for part in path:
        if not isinstance(node, dict) or part not in node:
            return _MISSING
        node = node[part]
    return node


def _set_path(obj: Dict[str, Any], path: Path, value: Any) -> None:
    node = obj
    for part in path[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[path[-1]] = copy.deepcopy(value)


def _remove_path(obj: Dict[str, Any], path: Path) -> None:
    parents: List[Tuple[Dict[str, Any], str]] = []
    node: Any = obj
    for part in path[:-1]:
        if not isinstance(node, dict) or part not in node:
            return
        parents.append((node, part))
        node = node[part]
    if not isinstance(node, dict) or path[-1] not in node:
        return
    del node[path[-1]]
    # Drop containers emptied by the removal, but never metadata itself.
    for parent, key in reversed(parents):
        child = parent[key]
        if isinstance(child, dict) and not child and not (
            parent is obj and key == "metadata"
        ):
            del parent[key]
        else:
            break


def _is_prefix(prefix: Path, path: Path) -> bool:
    return len(prefix) < len(path) and path[: len(prefix)] == prefix


def merge(
    live: Dict[str, Any],
    payload: Dict[str, Any],
    previous_paths: Iterable[Path] = (),
) -> Dict[str, Any]:
    """
    Compute the field-scoped merge of a declaration onto a live object.

    Sets every field currently declared and clears fields that were declared
    previously but are no longer, leaving all other live fields untouched.

    Args:
        live: The object as it exists on the cluster
        payload: The declared object
        previous_paths: Paths recorded in the live declared-fields fingerprint

    Returns:
        A new object dict; ``live`` is not modified.
    """
    result = copy.deepcopy(live)
    current = declared_field_paths(payload)

    for path in set(previous_paths) - current:
        if any(_is_prefix(path, c) or _is_prefix(c, path) for c in current):
            continue
        _remove_path(result, path)

    for path in sorted(current):
        _set_path(result, path, get_path(payload, path))

    if payload.get("apiVersion"):
        result["apiVersion"] = payload["apiVersion"]
    return result


def drifted_paths(live: Dict[str, Any], payload: Dict[str, Any]) -> List[Path]:
    """Return declared paths whose live value differs from the declaration."""
    return sorted(
        path
        for path in declared_field_paths(payload)
        if get_path(live, path) != get_path(payload, path)
    )


def format_path(path: Path) -> str:
    return ".".join(path)
