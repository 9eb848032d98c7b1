"""
Claim metadata templating for StorageClass parameters and mount options.

Two template dialects are supported:

* ``${.pvc.name}``, ``${.pvc.namespace}``, ``${.pvc.labels.<key>}``,
  ``${.pvc.annotations.<key>}``, ``${.pv.name}``, ``${.node.name}`` and
  ``${.node.labels.<key>}`` for ordinary parameters and mount options.
* ``${pv.name}``, ``${pvc.name}``, ``${pvc.namespace}`` and
  ``${pvc.annotations['<key>']}`` for CSI secret-reference parameters.

Unknown references are left untouched.
"""

import re
from typing import Dict, Optional

from kubernetes import client

_PARSER_PATTERN = re.compile(r"\$\{\.(pvc|pv|node)\.(name|namespace|labels|annotations)(?:\.([^}]+))?\}", re.IGNORECASE)
_SECRET_PATTERN = re.compile(r"\$\{([^}]+)\}")
_SECRET_ANNOTATION = re.compile(r"^pvc\.annotations\['([^']+)'\]$")


class ClaimMeta:
    """Metadata of a claim (and its selected node) used to fill templates."""

    def __init__(
        self,
        name: str,
        namespace: str,
        labels: Optional[Dict[str, str]] = None,
        annotations: Optional[Dict[str, str]] = None,
        node_name: str = "",
        node_labels: Optional[Dict[str, str]] = None,
    ):
        self.name = name
        self.namespace = namespace
        self.labels = labels or {}
        self.annotations = annotations or {}
        self.node_name = node_name
        self.node_labels = node_labels or {}

    @classmethod
    def from_claim(
        cls, pvc: client.V1PersistentVolumeClaim, node: Optional[client.V1Node] = None
    ) -> "ClaimMeta":
        meta = pvc.metadata
        node_name = ""
        node_labels = {}
        if node is not None and node.metadata is not None:
            node_name = node.metadata.name or ""
            node_labels = node.metadata.labels or {}
        return cls(
            name=meta.name or "",
            namespace=meta.namespace or "",
            labels=meta.labels,
            annotations=meta.annotations,
            node_name=node_name,
            node_labels=node_labels,
        )

    def string_parser(self, value: str, pv_name: str = "") -> str:
        """Resolve ``${.pvc.*}``, ``${.pv.*}`` and ``${.node.*}`` references."""

        def _replace(match):
            kind, field, key = match.group(1).lower(), match.group(2).lower(), match.group(3)
            if kind == "pvc":
                if field == "name" and key is None:
                    return self.name
                if field == "namespace" and key is None:
                    return self.namespace
                if field == "labels" and key:
                    return self.labels.get(key, "")
                if field == "annotations" and key:
                    return self.annotations.get(key, "")
            elif kind == "pv":
                if field == "name" and key is None and pv_name:
                    return pv_name
            elif kind == "node":
                if field == "name" and key is None:
                    return self.node_name
                if field == "labels" and key:
                    return self.node_labels.get(key, "")
            return match.group(0)

        return _PARSER_PATTERN.sub(_replace, value)

    def resolve_secret(self, value: str, pv_name: str) -> str:
        """Resolve secret-reference templates such as ``${pvc.namespace}``."""

        def _replace(match):
            key = match.group(1)
            if key == "pv.name":
                return pv_name
            if key == "pvc.name":
                return self.name
            if key == "pvc.namespace":
                return self.namespace
            annotation = _SECRET_ANNOTATION.match(key)
            if annotation and annotation.group(1) in self.annotations:
                return self.annotations[annotation.group(1)]
            return match.group(0)

        return _SECRET_PATTERN.sub(_replace, value)
