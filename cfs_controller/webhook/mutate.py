"""Pod mutation: build the desired pod with one mount sidecar per CFS volume."""

import copy
import dataclasses
import logging
import posixpath
import random
import string
from typing import Any, Dict, List, Optional, Sequence, Set

from kubernetes import client

from cfs_controller.config import INJECT_SIDECAR_DONE, TRUE, ControllerConfig
from cfs_controller.exceptions import CapacityTooSmall, ResourceAlreadyExists, ResourceNotFound, SignerMismatch
from cfs_controller.k8s.client import KubeClient
from cfs_controller.locks import ShardedLock
from cfs_controller.settings import MountSettings, parse_settings
from cfs_controller.validators import parse_quantity
from cfs_controller.webhook import runtime
from cfs_controller.webhook.sidecar import (
    CONF_DIR,
    SidecarBuilder,
    SidecarSpec,
    build_secret,
    deduplicate,
    unique_name,
)
from cfs_controller.webhook.volumes import PVPair

LOG = logging.getLogger(__name__)

GIB = 1024 * 1024 * 1024
INIT_CONTAINER_NAME = "cfs-init"
META_URL_TEMPLATE = (
    "rediss://{service}/1?tls-cert-file=/etc/cfs/conf/certs/client.cert"
    "&tls-key-file=/etc/cfs/conf/certs/client.key"
    "&tls-ca-cert-file=/etc/cfs/conf/certs/ca"
    "&tls-server-name={server_name}"
)


def random_suffix(length: int = 6) -> str:
    return "".join(random.choice(string.ascii_letters) for _ in range(length))


def volume_settings_input(pv: client.V1PersistentVolume):
    """Volume attributes and mount options for `pv`.

    Options are `ro` when ReadOnlyMany is the only access mode, then the PV
    mount options, then the `mountOptions` volume attribute.
    """
    volume_context = dict(pv.spec.csi.volume_attributes or {})
    options = []
    if list(pv.spec.access_modes or []) == ["ReadOnlyMany"]:
        options.append("ro")
    options.extend(pv.spec.mount_options or [])
    if "mountOptions" in volume_context:
        options.extend(volume_context["mountOptions"].split(","))
    return volume_context, options


def capacity_gib(pvc: client.V1PersistentVolumeClaim) -> int:
    """
    Requested storage of `pvc` in whole GiB.

    Raises:
        CapacityTooSmall: Less than 1GiB requested
    """
    requests = (pvc.spec.resources.requests if pvc.spec.resources else None) or {}
    capacity = int(parse_quantity(str(requests.get("storage", "0"))))
    if capacity // GIB <= 0:
        raise CapacityTooSmall(capacity=capacity)
    return capacity // GIB


class SidecarMutator:
    """Computes the mutated pod for a set of PV pairs.

    The input pod is never modified; a failure anywhere leaves nothing
    injected.
    """

    def __init__(self, config: ControllerConfig, kube: KubeClient, locks: Optional[ShardedLock] = None):
        self.config = config
        self.kube = kube
        self.locks = locks or ShardedLock()

    def mutate(self, pod: Dict[str, Any], pairs: Sequence[PVPair]) -> Dict[str, Any]:
        """
        Return a mutated copy of `pod`.

        Raises:
            SignerMismatch: Volumes belong to different owners
            CapacityTooSmall: A claim requests less than 1GiB
            InvalidArgument, UnsupportedRuntimeClass: Settings or runtime class invalid
        """
        signer = self._expected_signer(pod, pairs)
        # everything is validated before the first secret is written
        prepared = []
        for pair in pairs:
            volume_context, options = volume_settings_input(pair.pv)
            settings = parse_settings(None, volume_context, options, self.config)
            prepared.append((settings, capacity_gib(pair.pvc)))
        expected = runtime.expected_runtime(pair.filesystem.runtime for pair in pairs)
        runtime_class = runtime.get_runtime_class(self.config, pod, expected)

        out = copy.deepcopy(pod)
        sidecar_names = []
        for index, (pair, (settings, capacity)) in enumerate(zip(pairs, prepared)):
            out, name = self._mutate_one(out, pair, index, settings, capacity)
            sidecar_names.append(name)

        runtime.inject_runtime_class(self.config, out, runtime_class)
        self._inject_init_container(out, pod, signer, sidecar_names, [p.filesystem.name for p in pairs], runtime_class)
        return out

    @staticmethod
    def _expected_signer(pod: Dict[str, Any], pairs: Sequence[PVPair]) -> str:
        signer = ""
        for pair in pairs:
            owner = pair.filesystem.owner_address
            if not signer:
                signer = owner
            elif signer != owner:
                meta = pod.get("metadata", {})
                LOG.error(
                    "Pod %s/%s mixes filesystems of %s and %s",
                    meta.get("namespace"),
                    meta.get("name") or meta.get("generateName"),
                    signer,
                    owner,
                )
                raise SignerMismatch(expected=signer, actual=owner)
        return signer

    def _mount_path(self, pod: Dict[str, Any]) -> str:
        taken = set()
        for container in pod.get("spec", {}).get("containers") or []:
            taken.update(m.get("mountPath") for m in container.get("volumeMounts") or [])
        while True:
            path = posixpath.join(self.config.pod_mount_base, random_suffix())
            if path not in taken:
                return path

    def _mutate_one(self, pod: Dict[str, Any], pair: PVPair, index: int, settings: MountSettings, capacity: int):
        namespace = pod.get("metadata", {}).get("namespace", "")
        settings = dataclasses.replace(
            settings,
            mount_path=self._mount_path(pod),
            namespace=namespace,
            secret_name=f"{pair.pvc.metadata.name}-secret",
            volume_id=pair.pv.spec.csi.volume_handle,
        )

        self.create_or_update_secret(build_secret(self.config, settings, pair.pvc))

        spec = SidecarBuilder(self.config, settings, capacity).build(pair.volume_name)
        out = copy.deepcopy(pod)
        deduplicate(out, spec, index)

        self._inject_volumes(out, spec, pair)
        self._inject_labels(out, spec.labels)
        self._inject_annotations(out, spec.annotations)
        self._inject_service_account(out, spec.service_account_name)
        out["spec"]["containers"] = [spec.container] + list(out["spec"].get("containers") or [])
        self._inject_meta_url(out, pair)
        self._update_sidecar_image(out)
        self._inject_image_pull_secrets(out)
        LOG.debug("Injected sidecar %s for volume %s", spec.name, pair.volume_name)
        return out, spec.name

    def create_or_update_secret(self, secret: client.V1Secret) -> None:
        """Create the secret, or update it when it already exists."""
        name = secret.metadata.name
        namespace = secret.metadata.namespace
        with self.locks.get(f"{namespace}/{name}"):
            try:
                existing = self.kube.get_secret(name, namespace)
            except ResourceNotFound:
                try:
                    self.kube.create_secret(secret)
                    LOG.info("Created secret %s/%s", namespace, name)
                    return
                except ResourceAlreadyExists:
                    existing = self.kube.get_secret(name, namespace)
            existing.data = secret.data
            existing.metadata.owner_references = secret.metadata.owner_references
            self.kube.replace_secret(existing)
            LOG.info("Updated secret %s/%s", namespace, name)

    @staticmethod
    def _inject_volumes(pod: Dict[str, Any], spec: SidecarSpec, pair: PVPair) -> None:
        pod_spec = pod["spec"]
        volumes = pod_spec.get("volumes") or []
        for i, volume in enumerate(volumes):
            source = volume.get("persistentVolumeClaim")
            if not source or source.get("claimName") != pair.pvc.metadata.name:
                continue
            # the sidecar mounts into this directory; app containers see it through propagation
            volumes[i] = {"name": volume["name"], "emptyDir": {}}
            for container in pod_spec.get("containers") or []:
                for mount in container.get("volumeMounts") or []:
                    if mount.get("name") == volume["name"]:
                        mount["mountPropagation"] = "HostToContainer"
        pod_spec["volumes"] = volumes + spec.volumes

    @staticmethod
    def _inject_labels(pod: Dict[str, Any], extra: Dict[str, str]) -> None:
        metadata = pod.setdefault("metadata", {})
        labels = metadata.get("labels") or {}
        labels.update(extra)
        labels[INJECT_SIDECAR_DONE] = TRUE
        metadata["labels"] = labels

    @staticmethod
    def _inject_annotations(pod: Dict[str, Any], annotations: Dict[str, str]) -> None:
        if not annotations:
            return
        metadata = pod.setdefault("metadata", {})
        merged = metadata.get("annotations") or {}
        merged.update(annotations)
        metadata["annotations"] = merged

    @staticmethod
    def _inject_service_account(pod: Dict[str, Any], name: str) -> None:
        # the workload's own service account wins
        if name and not pod["spec"].get("serviceAccountName"):
            pod["spec"]["serviceAccountName"] = name

    def _inject_meta_url(self, pod: Dict[str, Any], pair: PVPair) -> None:
        service = pair.filesystem.service
        if self.config.test_mode and self.config.test_meta_url:
            service = self.config.test_meta_url
        container = pod["spec"]["containers"][0]
        env = container.get("env") or []
        env.append(
            {"name": "metaurl", "value": META_URL_TEMPLATE.format(service=service, server_name=pair.filesystem.name)}
        )
        container["env"] = env

    def _update_sidecar_image(self, pod: Dict[str, Any]) -> None:
        if self.config.sidecar_image:
            pod["spec"]["containers"][0]["image"] = self.config.sidecar_image

    def _inject_image_pull_secrets(self, pod: Dict[str, Any]) -> None:
        if not self.config.sidecar_image_pull_secrets:
            return
        secrets = pod["spec"].get("imagePullSecrets") or []
        present: Set[str] = {s.get("name") for s in secrets}
        for name in self.config.sidecar_image_pull_secrets:
            if name not in present:
                secrets.append({"name": name})
                present.add(name)
        pod["spec"]["imagePullSecrets"] = secrets

    def _inject_init_container(
        self,
        out: Dict[str, Any],
        original: Dict[str, Any],
        signer: str,
        sidecar_names: List[str],
        filesystem_names: List[str],
        runtime_class: str,
    ) -> None:
        workload_images = [c.get("image", "") for c in original.get("spec", {}).get("containers") or []]
        env = {
            "RESOURCE_SERVER_URL": self.config.resource_server_url,
            "AUTH_EXPIRE_IN_SECONDS": str(self.config.resource_auth_expire_in),
            "SIDECAR_CONTAINER_NAMES": ",".join(sidecar_names),
            "FILESYSTEM_NAMES": ",".join(filesystem_names),
            "SIGNER": signer,
            "WORKLOAD_IMAGES": ",".join(workload_images),
            "RUNTIME_CLASS": runtime_class,
        }
        pod_spec = out["spec"]
        taken = {c["name"] for c in pod_spec.get("containers") or []}
        taken.update(c["name"] for c in pod_spec.get("initContainers") or [])
        init_container = {
            "name": unique_name(INIT_CONTAINER_NAME, taken, 0),
            "image": self.config.init_image,
            "env": [{"name": k, "value": v} for k, v in env.items()],
            "volumeMounts": [],
        }
        conf_mount = self._conf_mount(out, sidecar_names)
        if conf_mount:
            init_container["volumeMounts"].append(conf_mount)
        out["spec"]["initContainers"] = [init_container] + list(out["spec"].get("initContainers") or [])

    @staticmethod
    def _conf_mount(pod: Dict[str, Any], sidecar_names: List[str]) -> Optional[Dict[str, str]]:
        """Mount of the first sidecar's config directory, shared with the init container."""
        if not sidecar_names:
            return None
        for container in pod["spec"].get("containers") or []:
            if container["name"] != sidecar_names[0]:
                continue
            for mount in container.get("volumeMounts") or []:
                if mount.get("mountPath") == CONF_DIR:
                    return {"name": mount["name"], "mountPath": mount["mountPath"]}
        return None
