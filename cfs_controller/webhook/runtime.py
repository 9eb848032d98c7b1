"""
Workload runtime class selection.

A pod runs under one trust domain. VM is the baseline; a single volume that
requires TEE lifts the whole pod to TEE.
"""

import logging
from typing import Any, Dict, Iterable

from cfs_controller.config import RUNTIME_ANNOTATION, ControllerConfig
from cfs_controller.exceptions import UnsupportedRuntimeClass
from cfs_controller.k8s.descriptor import RuntimeDomain

LOG = logging.getLogger(__name__)


def expected_runtime(domains: Iterable[RuntimeDomain]) -> RuntimeDomain:
    for domain in domains:
        if domain == RuntimeDomain.TEE:
            return RuntimeDomain.TEE
    return RuntimeDomain.VM


def runtime_domain_of(config: ControllerConfig, runtime_class: str) -> RuntimeDomain:
    if runtime_class in config.tee_runtime_class_names:
        return RuntimeDomain.TEE
    if runtime_class in config.vm_runtime_class_names:
        return RuntimeDomain.VM
    raise UnsupportedRuntimeClass(runtime_class=runtime_class)


def _default_class(config: ControllerConfig, domain: RuntimeDomain) -> str:
    names = config.tee_runtime_class_names if domain == RuntimeDomain.TEE else config.vm_runtime_class_names
    if not names:
        raise UnsupportedRuntimeClass(runtime_class=f"<none configured for {domain.value}>")
    return names[0]


def get_runtime_class(config: ControllerConfig, pod: Dict[str, Any], expected: RuntimeDomain) -> str:
    """
    Pick the runtime class for `pod`.

    A class requested by the pod is kept when it is at least as trusted as
    `expected`; a VM class on a pod that needs TEE is replaced by the default
    TEE class. Pods without a class get the default class of `expected`.

    Raises:
        UnsupportedRuntimeClass: The pod requests an unknown runtime class
    """
    requested = pod.get("spec", {}).get("runtimeClassName")
    if not requested:
        return _default_class(config, expected)

    domain = runtime_domain_of(config, requested)
    if domain == RuntimeDomain.VM and expected == RuntimeDomain.TEE:
        escalated = _default_class(config, RuntimeDomain.TEE)
        LOG.info("Escalating runtime class %s to %s", requested, escalated)
        return escalated
    return requested


def inject_runtime_class(config: ControllerConfig, pod: Dict[str, Any], runtime_class: str) -> None:
    """Set the runtime class and its trust domain annotation on `pod`."""
    domain = runtime_domain_of(config, runtime_class)
    pod.setdefault("spec", {})["runtimeClassName"] = runtime_class
    metadata = pod.setdefault("metadata", {})
    annotations = metadata.get("annotations") or {}
    annotations[RUNTIME_ANNOTATION] = domain.value
    metadata["annotations"] = annotations
