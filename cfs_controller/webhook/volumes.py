"""Resolve the CFS volumes a pod references."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from kubernetes import client

from cfs_controller.config import PROVISIONER_CR_NAME, ControllerConfig
from cfs_controller.exceptions import InvalidArgument
from cfs_controller.k8s.client import KubeClient
from cfs_controller.k8s.descriptor import FilesystemDescriptor, RuntimeDomain

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class FilesystemInfo:
    """What a pod needs to know about the filesystem behind one volume."""

    name: str
    owner_address: str
    runtime: RuntimeDomain
    service: str
    descriptor: FilesystemDescriptor

    @classmethod
    def from_descriptor(cls, descriptor: FilesystemDescriptor) -> "FilesystemInfo":
        return cls(
            name=descriptor.name,
            owner_address=descriptor.owner_address,
            runtime=descriptor.runtime,
            service=descriptor.spec.metadata.service,
            descriptor=descriptor,
        )


@dataclass
class PVPair:
    pv: client.V1PersistentVolume
    pvc: client.V1PersistentVolumeClaim
    volume_name: str
    filesystem: FilesystemInfo


class VolumeResolver:
    def __init__(self, config: ControllerConfig, kube: KubeClient):
        self.config = config
        self.kube = kube

    def _descriptor_name(self, pv: client.V1PersistentVolume, pvc: client.V1PersistentVolumeClaim) -> str:
        name = (pv.spec.csi.volume_attributes or {}).get(PROVISIONER_CR_NAME, "")
        if name or not pvc.spec.storage_class_name:
            return name
        sc = self.kube.get_storage_class(pvc.spec.storage_class_name)
        return (sc.parameters or {}).get(PROVISIONER_CR_NAME, "")

    def _provisioned_by_driver(self, pvc: client.V1PersistentVolumeClaim) -> bool:
        if not pvc.spec.storage_class_name:
            return False
        sc = self.kube.get_storage_class(pvc.spec.storage_class_name)
        return sc.provisioner == self.config.driver_name

    def get_volumes(self, pod: Dict[str, Any]) -> Tuple[bool, List[PVPair]]:
        """
        Find the pod volumes backed by this driver.

        Returns:
            (used, pairs) where `used` tells whether any volume qualified

        Raises:
            InvalidArgument: A claim of this driver is unbound or a volume has no descriptor
            ResourceNotFound, KubernetesAPIError: Lookup failed
        """
        namespace = pod.get("metadata", {}).get("namespace", "")
        pairs = []
        for volume in pod.get("spec", {}).get("volumes") or []:
            source = volume.get("persistentVolumeClaim")
            if not source:
                continue
            pvc = self.kube.get_persistent_volume_claim(source["claimName"], namespace)
            if not pvc.spec.volume_name:
                if not self._provisioned_by_driver(pvc):
                    LOG.debug("Skip unbound claim %s/%s of another driver", namespace, pvc.metadata.name)
                    continue
                raise InvalidArgument(details=f"pvc {namespace}/{pvc.metadata.name} is not bound")
            pv = self.kube.get_persistent_volume(pvc.spec.volume_name)
            if pv.spec.csi is None or pv.spec.csi.driver != self.config.driver_name:
                continue

            descriptor_name = self._descriptor_name(pv, pvc)
            if not descriptor_name:
                raise InvalidArgument(details=f"pv {pv.metadata.name} does not reference a filesystem descriptor")
            descriptor = self.kube.get_filesystem_descriptor(descriptor_name)
            pairs.append(
                PVPair(
                    pv=pv,
                    pvc=pvc,
                    volume_name=volume["name"],
                    filesystem=FilesystemInfo.from_descriptor(descriptor),
                )
            )
        LOG.debug("Pod %s uses %d CFS volume(s)", pod.get("metadata", {}).get("name"), len(pairs))
        return bool(pairs), pairs
