"""Subpath based dynamic provisioner."""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from kubernetes import client

from cfs_controller import config as cfg
from cfs_controller.exceptions import InvalidArgument, PermissionDenied, ResourceNotFound
from cfs_controller.k8s.client import KubeClient
from cfs_controller.k8s.meta import ClaimMeta
from cfs_controller.mgmt.client import FilesystemManagerClient
from cfs_controller.mgmt.credentials import CredentialChecker, FsAction
from cfs_controller.provisioner.base import ProvisionerService
from cfs_controller.provisioner.refcount import should_delete_subpath, should_remove_secret_finalizer
from cfs_controller.validators import parse_quantity

LOG = logging.getLogger(__name__)

FS_TYPE = "cfs"
PATH_PATTERN = "pathPattern"
SECRET_FINALIZER = "secretFinalizer"
READ_ONLY_MANY = "ReadOnlyMany"
RECLAIM_DELETE = "Delete"


class ProvisioningState(str, Enum):
    """Result states understood by the provisioning controller."""

    FINISHED = "Finished"


@dataclass
class ProvisionOptions:
    pv_name: str
    pvc: client.V1PersistentVolumeClaim
    storage_class: client.V1StorageClass
    selected_node: Optional[client.V1Node] = None


class ProvisionerMetrics:
    """Counters exported by the provisioner."""

    def __init__(self):
        self._lock = threading.Lock()
        self.provision_errors = 0

    def inc_provision_errors(self) -> None:
        with self._lock:
            self.provision_errors += 1


class CfsProvisioner(ProvisionerService):
    """Creates one PV per claim and removes its subpath once nothing references it."""

    def __init__(
        self,
        config: cfg.ControllerConfig,
        kube: KubeClient,
        credentials: CredentialChecker,
        fs_manager: FilesystemManagerClient,
        metrics: Optional[ProvisionerMetrics] = None,
    ):
        self.config = config
        self.kube = kube
        self.credentials = credentials
        self.fs_manager = fs_manager
        self.metrics = metrics or ProvisionerMetrics()

    def _resolve_parameters(self, meta: ClaimMeta, parameters: Dict[str, str], pv_name: str) -> Dict[str, str]:
        resolved = {}
        for key, value in parameters.items():
            if key.startswith(cfg.CSI_PARAMETER_PREFIX):
                resolved[key] = meta.resolve_secret(value, pv_name)
            else:
                resolved[key] = meta.string_parser(value, pv_name)
        return resolved

    @staticmethod
    def _requested_bytes(pvc: client.V1PersistentVolumeClaim) -> Tuple[str, int]:
        requests = (pvc.spec.resources.requests if pvc.spec.resources else None) or {}
        storage = requests.get("storage")
        if not storage:
            raise InvalidArgument(details=f"claim {pvc.metadata.name} has no storage request")
        return storage, int(parse_quantity(str(storage)))

    def provision(self, options: ProvisionOptions) -> Tuple[client.V1PersistentVolume, ProvisioningState]:
        """
        Build the PV for a claim.

        Args:
            options: Claim, StorageClass and the name the PV must take

        Returns:
            (PersistentVolume, ProvisioningState.FINISHED)

        Raises:
            InvalidArgument: Selector set, ReadOnlyMany without a path pattern,
                or a claim without a storage request
            PermissionDenied: The claim may not create a volume
        """
        pvc = options.pvc
        sc = options.storage_class
        pv_name = options.pv_name
        LOG.debug("Provision %s for claim %s/%s", pv_name, pvc.metadata.namespace, pvc.metadata.name)

        if pvc.spec.selector is not None:
            raise InvalidArgument("claim Selector is not supported")

        meta = ClaimMeta.from_claim(pvc, options.selected_node)
        raw_parameters = sc.parameters or {}
        params = self._resolve_parameters(meta, raw_parameters, pv_name)

        subpath = params.get(PATH_PATTERN) or pv_name
        access_modes = list(pvc.spec.access_modes or [])
        if READ_ONLY_MANY in access_modes:
            if not raw_parameters.get(PATH_PATTERN):
                self.metrics.inc_provision_errors()
                raise InvalidArgument(
                    details="dynamic provisioning isolates data by a subpath named after the PV, "
                    "so ReadOnlyMany requires a pathPattern"
                )
            LOG.warning("Volume %s is read-only, make sure subpath %s exists", pv_name, subpath)

        try:
            self.credentials.check(pvc.metadata.namespace, pvc.metadata.name, FsAction.CREATE)
        except PermissionDenied:
            self.metrics.inc_provision_errors()
            raise

        mount_options: List[str] = []
        for option in sc.mount_options or []:
            parsed = meta.string_parser(option, pv_name)
            mount_options.extend(part.strip() for part in parsed.strip().split(","))

        storage, capacity = self._requested_bytes(pvc)
        volume_attributes = {"subPath": subpath, "capacity": str(capacity)}
        volume_attributes.update(params)

        csi = client.V1CSIPersistentVolumeSource(
            driver=self.config.driver_name,
            volume_handle=pv_name,
            fs_type=FS_TYPE,
            read_only=False,
            volume_attributes=volume_attributes,
        )
        if params.get(cfg.PUBLISH_SECRET_NAME) and params.get(cfg.PUBLISH_SECRET_NAMESPACE):
            csi.node_publish_secret_ref = client.V1SecretReference(
                name=params[cfg.PUBLISH_SECRET_NAME], namespace=params[cfg.PUBLISH_SECRET_NAMESPACE]
            )
        if params.get(cfg.CONTROLLER_EXPAND_SECRET_NAME) and params.get(cfg.CONTROLLER_EXPAND_SECRET_NAMESPACE):
            csi.controller_expand_secret_ref = client.V1SecretReference(
                name=params[cfg.CONTROLLER_EXPAND_SECRET_NAME],
                namespace=params[cfg.CONTROLLER_EXPAND_SECRET_NAMESPACE],
            )

        pv = client.V1PersistentVolume(
            api_version="v1",
            kind="PersistentVolume",
            metadata=client.V1ObjectMeta(name=pv_name),
            spec=client.V1PersistentVolumeSpec(
                capacity={"storage": storage},
                csi=csi,
                access_modes=access_modes,
                persistent_volume_reclaim_policy=sc.reclaim_policy or RECLAIM_DELETE,
                storage_class_name=sc.metadata.name,
                mount_options=mount_options,
                volume_mode=pvc.spec.volume_mode,
            ),
        )
        LOG.info("Provisioned %s with subpath %s", pv_name, subpath)
        return pv, ProvisioningState.FINISHED

    def delete(self, volume: client.V1PersistentVolume) -> None:
        """
        Remove the subpath behind `volume` unless a sibling still uses it.

        Raises:
            InvalidArgument: PV lacks a CSI source, claim reference or descriptor name
            PermissionDenied: The owning claim may not delete
            InternalError, Unavailable: Remote delete failed, retry later
        """
        name = volume.metadata.name
        if volume.spec.persistent_volume_reclaim_policy != RECLAIM_DELETE:
            LOG.debug("Volume %s is retained", name)
            return
        if volume.spec.csi is None:
            raise InvalidArgument(details=f"pv {name} has no csi source")
        attributes = volume.spec.csi.volume_attributes or {}

        if not should_delete_subpath(self.kube.list_persistent_volumes(), volume, attributes.get(PATH_PATTERN)):
            LOG.info("Other volumes still use the subpath of %s, keeping it", name)
            return

        claim = volume.spec.claim_ref
        if claim is None:
            raise InvalidArgument(details=f"pv {name} has no claimRef")
        credential = self.credentials.check(claim.namespace, claim.name, FsAction.DELETE)

        descriptor_name = attributes.get(cfg.PROVISIONER_CR_NAME)
        if not descriptor_name:
            raise InvalidArgument(details=f"pv {name} does not reference a filesystem descriptor")
        try:
            descriptor = self.kube.get_filesystem_descriptor(descriptor_name)
        except ResourceNotFound:
            descriptor = None
            LOG.warning("Descriptor %s of %s is gone, skipping remote delete", descriptor_name, name)

        subpath = attributes.get("subPath", "")
        if descriptor is not None and descriptor.deleting:
            LOG.info("Filesystem %s is being deleted, skipping subpath %s", descriptor_name, subpath)
        elif descriptor is not None:
            LOG.info("Deleting subpath %s of volume %s", subpath, name)
            self.fs_manager.delete_subpath(descriptor, credential, subpath)

        if attributes.get(SECRET_FINALIZER) == cfg.TRUE:
            self._release_secret(volume)

    def _release_secret(self, volume: client.V1PersistentVolume) -> None:
        ref = volume.spec.csi.node_publish_secret_ref
        if ref is None:
            return
        if not should_remove_secret_finalizer(self.kube.list_persistent_volumes(), volume):
            LOG.debug("Secret %s/%s still referenced", ref.namespace, ref.name)
            return
        try:
            secret = self.kube.get_secret(ref.name, ref.namespace)
        except ResourceNotFound:
            LOG.warning("Secret %s/%s already removed", ref.namespace, ref.name)
            return
        finalizers = list(secret.metadata.finalizers or [])
        if cfg.FINALIZER not in finalizers:
            return
        remaining = [f for f in finalizers if f != cfg.FINALIZER]
        LOG.info("Removing finalizer from secret %s/%s", ref.namespace, ref.name)
        self.kube.set_secret_finalizers(ref.name, ref.namespace, remaining)
