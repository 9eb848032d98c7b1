"""CSI controller service for CFS volumes."""

import logging
from typing import Optional

from cfs_controller import config as cfg
from cfs_controller.exceptions import (
    CfsException,
    InternalError,
    InvalidArgument,
    ResourceNotFound,
    Unimplemented,
)
from cfs_controller.k8s.client import KubeClient
from cfs_controller.mgmt.client import FilesystemManagerClient
from cfs_controller.mgmt.credentials import CredentialChecker, FsAction
from cfs_controller.provisioner.base import (
    CapacityRange,
    ControllerService,
    ExpandResult,
    VolumeCapability,
)

LOG = logging.getLogger(__name__)


class CfsControllerService(ControllerService):
    """Controller service that expands volumes through the filesystem manager.

    Capability queries are forwarded to `base`; static create and delete are
    not supported, volumes only come from the dynamic provisioner.
    """

    def __init__(
        self,
        base: ControllerService,
        kube: KubeClient,
        credentials: CredentialChecker,
        fs_manager: FilesystemManagerClient,
    ):
        self.base = base
        self.kube = kube
        self.credentials = credentials
        self.fs_manager = fs_manager

    def get_capabilities(self):
        return self.base.get_capabilities()

    def validate_volume_capabilities(self, volume_id, capabilities):
        return self.base.validate_volume_capabilities(volume_id, capabilities)

    def create_volume(self, name, capacity_range=None, parameters=None):
        LOG.debug("CreateVolume called for %s", name)
        raise Unimplemented(operation="CreateVolume")

    def delete_volume(self, volume_id):
        LOG.debug("DeleteVolume called for %s", volume_id)
        raise Unimplemented(operation="DeleteVolume")

    def expand_volume(
        self,
        volume_id: str,
        capacity_range: Optional[CapacityRange],
        volume_capability: Optional[VolumeCapability],
    ) -> ExpandResult:
        """Grow a volume.

        Args:
            volume_id: PV name
            capacity_range: Requested size and optional upper bound
            volume_capability: Capability of the published volume

        Returns:
            ExpandResult with the accepted size; no node side expansion

        Raises:
            InvalidArgument: Missing or inconsistent arguments, unknown PV,
                claim or descriptor
            PermissionDenied: The claim may not update the filesystem
            InternalError: The filesystem manager rejected the update
        """
        LOG.debug("ControllerExpandVolume %s: %s", volume_id, capacity_range)
        if not volume_id:
            raise InvalidArgument(details="Volume ID not provided")
        if capacity_range is None:
            raise InvalidArgument(details="Capacity range not provided")

        new_size = capacity_range.required_bytes
        limit = capacity_range.limit_bytes
        if limit > 0 and limit < new_size:
            raise InvalidArgument(details="After round-up, volume size exceeds the limit specified")
        if volume_capability is None:
            raise InvalidArgument(details="Volume capability not provided")

        try:
            pv = self.kube.get_persistent_volume(volume_id)
        except ResourceNotFound as e:
            raise InvalidArgument(details=f"fail to get pv {volume_id}, err: {e}")
        if pv.spec.claim_ref is None or pv.spec.csi is None:
            raise InvalidArgument(details=f"pv {volume_id} has no claimRef or csi")

        claim_name = pv.spec.claim_ref.name
        namespace = pv.spec.claim_ref.namespace
        try:
            pvc = self.kube.get_persistent_volume_claim(claim_name, namespace)
        except ResourceNotFound as e:
            raise InvalidArgument(details=f"fail to get pvc {claim_name} namespace {namespace}, err: {e}")

        credential = self.credentials.check(namespace, pvc.metadata.name, FsAction.UPDATE)

        descriptor_name = (pv.spec.csi.volume_attributes or {}).get(cfg.PROVISIONER_CR_NAME, "")
        try:
            descriptor = self.kube.get_filesystem_descriptor(descriptor_name)
        except ResourceNotFound as e:
            raise InvalidArgument(details=f"fail to get descriptor {descriptor_name!r}, err: {e}")

        try:
            self.fs_manager.update_filesystem(descriptor, credential)
        except CfsException as e:
            LOG.error("Failed to expand %s: %s", volume_id, e)
            raise InternalError(
                details=f"unable to expand volume: fail to update fs {descriptor.name}, "
                f"subpath {pvc.metadata.name}, err: {e}"
            )

        LOG.info("Expanded %s to %d bytes", volume_id, new_size)
        return ExpandResult(capacity_bytes=new_size, node_expansion_required=False)
