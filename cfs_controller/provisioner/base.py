"""Provisioner and controller service interfaces."""

import abc
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from kubernetes import client

from cfs_controller.exceptions import InvalidArgument, Unimplemented
from cfs_controller.k8s.client import KubeClient

LOG = logging.getLogger(__name__)

SUPPORTED_ACCESS_MODES = ("ReadWriteOnce", "ReadOnlyMany", "ReadWriteMany", "ReadWriteOncePod")


@dataclass(frozen=True)
class CapacityRange:
    required_bytes: int = 0
    limit_bytes: int = 0


@dataclass(frozen=True)
class VolumeCapability:
    access_mode: str = "ReadWriteMany"
    mount_flags: Tuple[str, ...] = ()
    fs_type: str = ""


@dataclass(frozen=True)
class ExpandResult:
    capacity_bytes: int
    node_expansion_required: bool = False


@dataclass(frozen=True)
class ValidationResult:
    confirmed: bool
    message: str = ""
    capabilities: Tuple[VolumeCapability, ...] = field(default_factory=tuple)


class ProvisionerService(abc.ABC):
    """Dynamic provisioning contract driven by the external provisioning controller."""

    @abc.abstractmethod
    def provision(self, options) -> Tuple[client.V1PersistentVolume, object]:
        """Create the PersistentVolume for a claim."""

    @abc.abstractmethod
    def delete(self, volume: client.V1PersistentVolume) -> None:
        """Release the storage behind a PersistentVolume."""


class ControllerService(abc.ABC):
    """CSI controller contract."""

    @abc.abstractmethod
    def get_capabilities(self) -> List[str]:
        pass

    @abc.abstractmethod
    def validate_volume_capabilities(
        self, volume_id: str, capabilities: Sequence[VolumeCapability]
    ) -> ValidationResult:
        pass

    @abc.abstractmethod
    def create_volume(self, name: str, capacity_range: Optional[CapacityRange] = None, parameters=None):
        pass

    @abc.abstractmethod
    def delete_volume(self, volume_id: str) -> None:
        pass

    @abc.abstractmethod
    def expand_volume(
        self,
        volume_id: str,
        capacity_range: Optional[CapacityRange],
        volume_capability: Optional[VolumeCapability],
    ) -> ExpandResult:
        pass


class BaseControllerService(ControllerService):
    """Controller behaviour shared by every filesystem flavour."""

    capabilities = ["CREATE_DELETE_VOLUME", "EXPAND_VOLUME"]

    def __init__(self, kube: KubeClient):
        self.kube = kube

    def get_capabilities(self) -> List[str]:
        return list(self.capabilities)

    def validate_volume_capabilities(self, volume_id, capabilities):
        if not volume_id:
            raise InvalidArgument(details="Volume ID not provided")
        if not capabilities:
            raise InvalidArgument(details="Volume capabilities not provided")

        # raises ResourceNotFound for unknown volumes
        self.kube.get_persistent_volume(volume_id)

        for capability in capabilities:
            if capability.access_mode not in SUPPORTED_ACCESS_MODES:
                return ValidationResult(
                    confirmed=False, message=f"access mode {capability.access_mode} is not supported"
                )
        return ValidationResult(confirmed=True, capabilities=tuple(capabilities))

    def create_volume(self, name, capacity_range=None, parameters=None):
        raise Unimplemented(operation="CreateVolume")

    def delete_volume(self, volume_id):
        raise Unimplemented(operation="DeleteVolume")

    def expand_volume(self, volume_id, capacity_range, volume_capability):
        raise Unimplemented(operation="ControllerExpandVolume")
