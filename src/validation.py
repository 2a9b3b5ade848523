"""
Manifest Validation - JSON Schema checks on declared documents.

Every document read from the source must look like a Kubernetes object
before it is turned into a DeclaredResource.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from jsonschema import Draft7Validator

logger = logging.getLogger(__name__)

_NAME_PATTERN = r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$"

MANIFEST_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["apiVersion", "kind", "metadata"],
    "properties": {
        "apiVersion": {"type": "string", "pattern": r"^([a-z0-9.-]+/)?v[0-9a-z]+$"},
        "kind": {"type": "string", "pattern": r"^[A-Z][A-Za-z0-9]*$"},
        "metadata": {
            "type": "object",
            "required": ["name"],
            "properties": {
                "name": {"type": "string", "minLength": 1, "maxLength": 253},
                "namespace": {"type": "string", "pattern": _NAME_PATTERN, "maxLength": 63},
                "labels": {
                    "type": "object",
                    "additionalProperties": {"type": "string"},
                },
                "annotations": {
                    "type": "object",
                    "additionalProperties": {"type": "string"},
                },
            },
        },
    },
}

_validator = Draft7Validator(MANIFEST_SCHEMA)


def manifest_errors(document: Any) -> List[str]:
    """Return every schema violation in ``document``, path first."""
    messages = []
    for error in sorted(_validator.iter_errors(document), key=lambda e: list(e.absolute_path)):
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        messages.append(f"{path}: {error.message}")
    return messages


def validate_manifest(document: Any) -> Tuple[bool, Optional[str]]:
    """
    Validate one manifest document.

    Args:
        document: A parsed YAML/JSON document

    Returns:
        Tuple of (is_valid, error_message)
    """
    messages = manifest_errors(document)
    if not messages:
        return True, None
    return False, "; ".join(messages)
