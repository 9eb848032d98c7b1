"""
Configuration loader for the CFS CSI controller.

Static configuration is read once at startup and handed to every component
constructor. Values come from an optional INI file (`CFS_CONFIG_PATH` or
`/etc/cfs-csi/controller.conf`, section `[controller]`) and are overridden by
`CFS_*` environment variables.
"""

from __future__ import annotations

import configparser
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple

from cfs_controller.validators import parse_duration

LOG = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("/etc/cfs-csi/controller.conf")

DEFAULT_AUTH_EXPIRE_IN_SECONDS = 3600
MIN_AUTH_EXPIRE_IN_SECONDS = 60

# CSI secret / CR parameter keys
PROVISIONER_SECRET_NAME = "csi.storage.k8s.io/provisioner-secret-name"
PROVISIONER_SECRET_NAMESPACE = "csi.storage.k8s.io/provisioner-secret-namespace"
PUBLISH_SECRET_NAME = "csi.storage.k8s.io/node-publish-secret-name"
PUBLISH_SECRET_NAMESPACE = "csi.storage.k8s.io/node-publish-secret-namespace"
CONTROLLER_EXPAND_SECRET_NAME = "csi.storage.k8s.io/controller-expand-secret-name"
CONTROLLER_EXPAND_SECRET_NAMESPACE = "csi.storage.k8s.io/controller-expand-secret-namespace"
CSI_PARAMETER_PREFIX = "csi.storage.k8s.io/"
PROVISIONER_CR_NAME = "csi.storage.cfs.io/provisioner-cr-name"

CFS_DOMAIN = "confidentialfilesystems.com"
FINALIZER = "cfs." + CFS_DOMAIN + "/finalizer"
INJECT_SIDECAR_DONE = "done.sidecar." + CFS_DOMAIN + "/inject"
INJECT_SIDECAR_DISABLE = "disable.sidecar." + CFS_DOMAIN + "/inject"
RUNTIME_ANNOTATION = CFS_DOMAIN + "/runtime"
OWNER_ANNOTATION = CFS_DOMAIN + "/owner"
TRUE = "true"

# pod annotations carried over from mount settings
DELETE_DELAY_ANNOTATION = "cfs-delete-delay"
CLEAN_CACHE_ANNOTATION = "cfs-clean-cache"


@dataclass(frozen=True)
class ControllerConfig:
    driver_name: str = "csi.cfs.confidentialfilesystems.com"
    webhook: bool = True

    # images
    ce_mount_image: str = "confidentialfilesystems/mount:ce-nightly"
    ee_mount_image: str = "confidentialfilesystems/mount:ee-nightly"
    sidecar_image: str = ""
    init_image: str = "docker.io/library/busybox:latest"
    sidecar_image_pull_secrets: Tuple[str, ...] = ()

    # mount layout
    pod_mount_base: str = "/cfs"
    mount_labels: str = ""
    client_conf_path: str = "/root/.cfs"
    ce_mount_path: str = "/bin/mount.cfs"
    ee_mount_path: str = "/sbin/mount.cfs"
    ce_cli_path: str = "/usr/local/bin/cfs"
    check_mount_script_dir: str = "/usr/local/bin"

    # mount container resource defaults
    default_cpu_limit: str = "1000m"
    default_memory_limit: str = "1Gi"
    default_cpu_request: str = "100m"
    default_memory_request: str = "100Mi"

    # workload runtime classes
    tee_runtime_class_names: Tuple[str, ...] = ("kata-cc",)
    vm_runtime_class_names: Tuple[str, ...] = ("kata-qemu",)

    # remote services
    resource_server_url: str = "https://cfs-resource-server.cfs-system.svc:8443"
    fs_manager_port: int = 8090
    server_common_name: str = "cfs-fs-manager"
    resource_auth_expire_in: int = DEFAULT_AUTH_EXPIRE_IN_SECONDS

    # timeouts (seconds)
    request_timeout: int = 30
    fs_manager_timeout: int = 30
    resource_server_timeout: int = 30

    # webhook server
    api_host: str = "0.0.0.0"
    api_port: int = 9443
    tls_cert_file: Optional[str] = None
    tls_key_file: Optional[str] = None

    # test mode
    test_mode: bool = False
    test_meta_url: str = ""

    @property
    def check_mount_script_name(self) -> str:
        return "check_mount.sh"

    @property
    def check_mount_script_path(self) -> str:
        return f"{self.check_mount_script_dir.rstrip('/')}/{self.check_mount_script_name}"


def _config_path() -> Path:
    env = os.environ.get("CFS_CONFIG_PATH")
    if env:
        return Path(env)
    return DEFAULT_CONFIG_PATH


def _read_ini(path: Path) -> configparser.ConfigParser:
    parser = configparser.ConfigParser()
    if path.exists():
        parser.read(path, encoding="utf-8")
    return parser


def parse_auth_expire_in(raw: str) -> int:
    """
    Parse the resource authorization lifetime.

    Empty, unparsable, or too short values fall back to the default lifetime.
    """
    if not raw:
        return DEFAULT_AUTH_EXPIRE_IN_SECONDS
    try:
        seconds = int(parse_duration(raw))
    except ValueError:
        LOG.warning("Cannot parse resource auth expiry %r, using default", raw)
        return DEFAULT_AUTH_EXPIRE_IN_SECONDS
    if seconds < MIN_AUTH_EXPIRE_IN_SECONDS:
        return DEFAULT_AUTH_EXPIRE_IN_SECONDS
    return seconds


def load_config(environ: Optional[Mapping[str, str]] = None) -> ControllerConfig:
    """
    Load config from:
    - `CFS_CONFIG_PATH` or `/etc/cfs-csi/controller.conf` (section `[controller]`)
    - `CFS_<KEY>` environment variables, which take precedence

    Missing files are not an error; defaults are returned.
    """
    env = os.environ if environ is None else environ
    parser = _read_ini(_config_path())
    section = parser["controller"] if parser.has_section("controller") else {}
    defaults = ControllerConfig()

    def _get(key: str, default: str) -> str:
        raw = env.get(f"CFS_{key.upper()}")
        if raw is not None:
            return raw.strip()
        if isinstance(section, dict):
            return str(section.get(key, default)).strip()
        return str(section.get(key, fallback=default)).strip()

    def _get_int(key: str, default: int) -> int:
        raw = _get(key, str(default))
        try:
            return int(raw)
        except ValueError:
            LOG.error("Fail to parse %s=%r, using %d", key, raw, default)
            return default

    def _get_bool(key: str, default: bool) -> bool:
        raw = _get(key, str(default)).lower()
        return raw in ("1", "true", "yes", "on")

    def _get_list(key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
        raw = _get(key, ",".join(default))
        return tuple(item.strip() for item in raw.split(",") if item.strip())

    def _get_optional(key: str) -> Optional[str]:
        raw = _get(key, "")
        return raw or None

    return ControllerConfig(
        driver_name=_get("driver_name", defaults.driver_name),
        webhook=_get_bool("webhook", defaults.webhook),
        ce_mount_image=_get("ce_mount_image", defaults.ce_mount_image),
        ee_mount_image=_get("ee_mount_image", defaults.ee_mount_image),
        sidecar_image=_get("sidecar_image", defaults.sidecar_image),
        init_image=_get("init_image", defaults.init_image),
        sidecar_image_pull_secrets=_get_list("sidecar_image_pull_secrets", defaults.sidecar_image_pull_secrets),
        pod_mount_base=_get("pod_mount_base", defaults.pod_mount_base),
        mount_labels=_get("mount_labels", defaults.mount_labels),
        client_conf_path=_get("client_conf_path", defaults.client_conf_path),
        ce_mount_path=_get("ce_mount_path", defaults.ce_mount_path),
        ee_mount_path=_get("ee_mount_path", defaults.ee_mount_path),
        ce_cli_path=_get("ce_cli_path", defaults.ce_cli_path),
        check_mount_script_dir=_get("check_mount_script_dir", defaults.check_mount_script_dir),
        default_cpu_limit=_get("default_cpu_limit", defaults.default_cpu_limit),
        default_memory_limit=_get("default_memory_limit", defaults.default_memory_limit),
        default_cpu_request=_get("default_cpu_request", defaults.default_cpu_request),
        default_memory_request=_get("default_memory_request", defaults.default_memory_request),
        tee_runtime_class_names=_get_list("tee_runtime_class_names", defaults.tee_runtime_class_names),
        vm_runtime_class_names=_get_list("vm_runtime_class_names", defaults.vm_runtime_class_names),
        resource_server_url=_get("resource_server_url", defaults.resource_server_url),
        fs_manager_port=_get_int("fs_manager_port", defaults.fs_manager_port),
        server_common_name=_get("server_common_name", defaults.server_common_name),
        resource_auth_expire_in=parse_auth_expire_in(_get("resource_auth_expire_in", "")),
        request_timeout=_get_int("request_timeout", defaults.request_timeout),
        fs_manager_timeout=_get_int("fs_manager_timeout", defaults.fs_manager_timeout),
        resource_server_timeout=_get_int("resource_server_timeout", defaults.resource_server_timeout),
        api_host=_get("api_host", defaults.api_host),
        api_port=_get_int("api_port", defaults.api_port),
        tls_cert_file=_get_optional("tls_cert_file"),
        tls_key_file=_get_optional("tls_key_file"),
        test_mode=_get_bool("test", defaults.test_mode),
        test_meta_url=_get("test_meta_url", defaults.test_meta_url),
    )
