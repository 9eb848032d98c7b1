"""
Mount sidecar construction.

The sidecar mounts one CFS volume inside the workload pod. Its postStart hook
runs the check-mount script, which waits for the mount, creates the subpath
and applies the quota before the application containers start.
"""

import base64
import copy
import logging
import posixpath
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from jinja2 import Template
from kubernetes import client

from cfs_controller.config import CLEAN_CACHE_ANNOTATION, DELETE_DELAY_ANNOTATION, TRUE, ControllerConfig
from cfs_controller.settings import MountSettings, parse_format_options, strip_format_options
from cfs_controller.validators import escape_bash_str

LOG = logging.getLogger(__name__)

CONTAINER_NAME = "cfs-mount"
CHECK_MOUNT_VOLUME = "cfs-check-mount"
CONF_VOLUME = "cfs-conf"
CONF_DIR = "/etc/cfs/conf"
CLIENT_CONF_VOLUME = "cfs-client-conf"

CHECK_MOUNT_TEMPLATE = """#!/bin/bash
# Managed by cfs-csi-controller
set -o pipefail

mount_path="$1"
for i in $(seq 1 {{ retries }}); do
  if mountpoint -q "$mount_path"; then
    break
  fi
  sleep 1
done
if ! mountpoint -q "$mount_path"; then
  echo "$(date) $mount_path is not mounted after {{ retries }}s"
  exit 1
fi

if [ -n "$subpath" ]; then
  mkdir -p "$mount_path/$subpath"
fi

if [ -n "$quotaPath" ] && [ "$capacity" -gt 0 ]; then
  if [ "$community" = "ce" ]; then
    {{ cli_path }} quota set "$metaurl" --path "$quotaPath" --capacity "$capacity"
  else
    {{ cli_path }} quota set "$name" --path "$quotaPath" --capacity "$capacity"
  fi
fi
echo "$(date) $mount_path is ready"
"""


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def render_check_mount_script(config: ControllerConfig, retries: int = 60) -> str:
    template = Template(CHECK_MOUNT_TEMPLATE)
    return template.render(retries=retries, cli_path=config.ce_cli_path)


def build_secret(
    config: ControllerConfig, settings: MountSettings, pvc: client.V1PersistentVolumeClaim
) -> client.V1Secret:
    """Per-claim secret with the check-mount script and credentials, owned by the claim."""
    script = render_check_mount_script(config)
    data = {config.check_mount_script_name: _b64(script)}
    data.update((key, _b64(value)) for key, value in settings.credentials().items())
    owner = client.V1OwnerReference(
        api_version="v1",
        kind="PersistentVolumeClaim",
        name=pvc.metadata.name,
        uid=pvc.metadata.uid,
        block_owner_deletion=True,
        controller=True,
    )
    return client.V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=client.V1ObjectMeta(
            name=settings.secret_name,
            namespace=settings.namespace,
            owner_references=[owner],
        ),
        data=data,
    )


@dataclass
class SidecarSpec:
    container: Dict[str, Any]
    volumes: List[Dict[str, Any]] = field(default_factory=list)
    annotations: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    service_account_name: str = ""
    # mounts of `volumes`; the mount of the pod's own volume is not included
    generated_mounts: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.container["name"]


def _quota_path(settings: MountSettings) -> str:
    subdir = ""
    for option in settings.options:
        pair = option.split("=")
        if len(pair) == 2 and pair[0] == "subdir":
            subdir = posixpath.join("/", pair[1])
    return posixpath.join(subdir, settings.subpath) if subdir else settings.subpath


def _overwrite_subdir(options: List[str], subpath: str) -> List[str]:
    if not subpath:
        return options
    kept = [o for o in options if not o.startswith("subdir=")]
    kept.append(f"subdir={subpath}")
    return kept


class SidecarBuilder:
    """Builds the sidecar container and volumes for one mount."""

    def __init__(self, config: ControllerConfig, settings: MountSettings, capacity_gib: int):
        self.config = config
        self.settings = settings
        self.capacity_gib = capacity_gib

    def post_start_command(self) -> List[str]:
        s = self.settings
        shell = "bash"
        template = "time subpath={} name={} capacity={} community={} quotaPath={} {} {} >> /proc/1/fd/1"
        if self.config.test_mode:
            template = 'echo "' + template + '"'
            shell = "sh"
        command = template.format(
            escape_bash_str(s.subpath),
            escape_bash_str(s.name),
            self.capacity_gib,
            "ce" if s.is_ce else "ee",
            escape_bash_str(_quota_path(s)),
            self.config.check_mount_script_path,
            escape_bash_str(s.mount_path),
        )
        return [shell, "-c", command]

    def mount_command(self) -> str:
        s = self.settings
        options = _overwrite_subdir(list(s.options), s.subpath)
        if "foreground" not in options:
            options.append("foreground")
        option_str = ",".join(o for o in options if o)
        mount_path = escape_bash_str(s.mount_path)
        if s.is_ce:
            mount = f"exec {self.config.ce_mount_path} ${{metaurl}} {mount_path} -o {option_str}"
            return "\n".join([f"mkdir -p {mount_path}", mount])
        mount = f"exec {self.config.ee_mount_path} {escape_bash_str(s.name)} {mount_path} -o {option_str}"
        return "\n".join([f"mkdir -p {mount_path}", self.auth_command(), mount])

    def auth_command(self) -> str:
        """
        Enterprise auth command.

        Credentials are referenced as `${key}` and resolved from the sidecar
        environment, so they never appear in the pod spec.
        """
        s = self.settings
        credentials = s.credentials()
        parsed = parse_format_options(s.format_options) + sorted(credentials.items())
        flags = strip_format_options(parsed, list(credentials))
        return " ".join([self.config.ce_cli_path, "auth", escape_bash_str(s.name)] + flags)

    def _cache_volumes(self):
        s = self.settings
        volumes, mounts = [], []
        for i, cache in enumerate(s.cache_pvcs):
            name = f"cachedir-pvc-{i}"
            volumes.append({"name": name, "persistentVolumeClaim": {"claimName": cache.pvc_name}})
            mounts.append({"name": name, "mountPath": cache.path})
        if s.cache_empty_dir is not None:
            empty_dir = {}
            if s.cache_empty_dir.medium:
                empty_dir["medium"] = s.cache_empty_dir.medium
            if s.cache_empty_dir.size_limit:
                empty_dir["sizeLimit"] = s.cache_empty_dir.size_limit
            volumes.append({"name": "cachedir-empty-dir", "emptyDir": empty_dir})
            mounts.append({"name": "cachedir-empty-dir", "mountPath": s.cache_empty_dir.path})
        for i, cache in enumerate(s.cache_inline_volumes):
            name = f"cachedir-inline-volume-{i}"
            volumes.append({"name": name, "csi": copy.deepcopy(cache.csi)})
            mounts.append({"name": name, "mountPath": cache.path})
        for i, path in enumerate(s.cache_dirs):
            name = f"cachedir-{i}"
            volumes.append({"name": name, "hostPath": {"path": path, "type": "DirectoryOrCreate"}})
            mounts.append({"name": name, "mountPath": path})
        for i, path in enumerate(s.host_path):
            name = f"hostpath-{i}"
            volumes.append({"name": name, "hostPath": {"path": path}})
            mounts.append({"name": name, "mountPath": path})
        return volumes, mounts

    def _sidecar_volumes(self):
        volumes = [
            {
                "name": CHECK_MOUNT_VOLUME,
                "secret": {"secretName": self.settings.secret_name, "defaultMode": 0o755},
            },
            {"name": CONF_VOLUME, "emptyDir": {"medium": "Memory"}},
        ]
        mounts = [
            {
                "name": CHECK_MOUNT_VOLUME,
                "mountPath": self.config.check_mount_script_path,
                "subPath": self.config.check_mount_script_name,
            },
            {"name": CONF_VOLUME, "mountPath": CONF_DIR},
        ]
        if self.settings.client_conf_path:
            volumes.append({"name": CLIENT_CONF_VOLUME, "emptyDir": {}})
            mounts.append({"name": CLIENT_CONF_VOLUME, "mountPath": self.settings.client_conf_path})
        return volumes, mounts

    def _annotations(self) -> Dict[str, str]:
        s = self.settings
        annotations = dict(s.mount_pod_annotations)
        if s.deleted_delay:
            annotations[DELETE_DELAY_ANNOTATION] = s.deleted_delay
        if s.clean_cache:
            annotations[CLEAN_CACHE_ANNOTATION] = TRUE
        return annotations

    def _env(self) -> List[Dict[str, Any]]:
        s = self.settings
        env = [{"name": key, "value": value} for key, value in sorted(s.envs.items())]
        for key in sorted(s.credentials()):
            env.append({"name": key, "valueFrom": {"secretKeyRef": {"name": s.secret_name, "key": key}}})
        return env

    def build(self, volume_name: Optional[str]) -> SidecarSpec:
        """
        Build the sidecar for the pod volume `volume_name`.

        Returns:
            SidecarSpec; the container mounts `volume_name` at the settings'
            mount path with bidirectional propagation
        """
        s = self.settings
        cache_volumes, cache_mounts = self._cache_volumes()
        volumes, mounts = self._sidecar_volumes()
        generated_mounts = mounts + cache_mounts
        volume_mounts = list(generated_mounts)
        if volume_name:
            volume_mounts.append(
                {"name": volume_name, "mountPath": s.mount_path, "mountPropagation": "Bidirectional"}
            )

        env = self._env()
        mount_path = escape_bash_str(s.mount_path)
        container = {
            "name": CONTAINER_NAME,
            "image": s.image,
            "command": ["sh", "-c", self.mount_command()],
            "env": env,
            "resources": copy.deepcopy(s.resources),
            "securityContext": {"privileged": True, "runAsUser": 0},
            "lifecycle": {
                "postStart": {"exec": {"command": self.post_start_command()}},
                "preStop": {"exec": {"command": ["sh", "-c", f"umount {mount_path} -l && rmdir {mount_path}"]}},
            },
            "volumeMounts": volume_mounts,
        }
        LOG.debug("Built sidecar for %s mounted at %s", volume_name, s.mount_path)
        return SidecarSpec(
            container=container,
            volumes=volumes + cache_volumes,
            annotations=self._annotations(),
            labels=dict(s.mount_pod_labels),
            service_account_name=s.service_account_name,
            generated_mounts=generated_mounts,
        )


def unique_name(name: str, taken: Set[str], index: int) -> str:
    """`name`, or `name-<index>` (counting up from `index`) when taken."""
    if name not in taken:
        return name
    candidate = f"{name}-{index}"
    suffix = index
    while candidate in taken:
        suffix += 1
        candidate = f"{name}-{suffix}"
    return candidate


def deduplicate(pod: Dict[str, Any], spec: SidecarSpec, index: int) -> None:
    """
    Rename the sidecar container and its generated volumes so none collide
    with what `pod` already holds. Volume mounts follow their volumes.
    """
    pod_spec = pod.get("spec", {})
    containers = {c["name"] for c in pod_spec.get("containers") or []}
    containers.update(c["name"] for c in pod_spec.get("initContainers") or [])
    spec.container["name"] = unique_name(spec.container["name"], containers, index)

    taken = {v["name"] for v in pod_spec.get("volumes") or []}
    renamed = {}
    for volume in spec.volumes:
        if volume["name"] in taken:
            new_name = unique_name(f"{spec.container['name']}-{volume['name']}", taken, index)
            renamed[volume["name"]] = new_name
            volume["name"] = new_name
        taken.add(volume["name"])
    for mount in spec.generated_mounts:
        if mount["name"] in renamed:
            mount["name"] = renamed[mount["name"]]
