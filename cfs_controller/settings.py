"""
Mount settings resolution.

`parse_settings` turns the raw secret map, the PV volume attributes and the
PV mount options into one immutable `MountSettings` record that the sidecar
builder consumes.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from cfs_controller.config import ControllerConfig
from cfs_controller.exceptions import InvalidArgument
from cfs_controller.validators import escape_bash_str, parse_duration, parse_quantity, parse_yaml_or_json

LOG = logging.getLogger(__name__)

# volume attribute keys
CACHE_PVC_KEY = "cfs/mount-cache-pvc"
CACHE_EMPTY_DIR_KEY = "cfs/mount-cache-emptydir"
CACHE_INLINE_VOLUME_KEY = "cfs/mount-cache-inline-volume"
CPU_LIMIT_KEY = "cfs/mount-cpu-limit"
MEMORY_LIMIT_KEY = "cfs/mount-memory-limit"
CPU_REQUEST_KEY = "cfs/mount-cpu-request"
MEMORY_REQUEST_KEY = "cfs/mount-memory-request"
LABELS_KEY = "cfs/mount-labels"
ANNOTATIONS_KEY = "cfs/mount-annotations"
SERVICE_ACCOUNT_KEY = "cfs/mount-service-account"
IMAGE_KEY = "cfs/mount-image"
DELETE_DELAY_KEY = "cfs/mount-delete-delay"
CLEAN_CACHE_KEY = "cfs/clean-cache"
HOST_PATH_KEY = "cfs/host-path"
SUBPATH_KEY = "subPath"

DEFAULT_CACHE_DIR = "/var/cfsCache"
CACHE_DIR_OPTION = "cache-dir"


@dataclass(frozen=True)
class CachePVC:
    pvc_name: str
    path: str


@dataclass(frozen=True)
class CacheEmptyDir:
    medium: str
    path: str
    size_limit: str = ""


@dataclass(frozen=True)
class CacheInlineVolume:
    csi: Dict[str, object]
    path: str


@dataclass(frozen=True)
class MountSettings:
    """Resolved configuration of one filesystem mount."""

    name: str = ""
    storage: str = ""
    meta_url: str = ""
    source: str = ""
    is_ce: bool = False

    cache_pvcs: Tuple[CachePVC, ...] = ()
    cache_empty_dir: Optional[CacheEmptyDir] = None
    cache_inline_volumes: Tuple[CacheInlineVolume, ...] = ()
    cache_dirs: Tuple[str, ...] = ()
    client_conf_path: str = ""

    format_options: str = ""
    secret_key: str = ""
    secret_key2: str = ""
    token: str = ""
    passphrase: str = ""
    envs: Dict[str, str] = field(default_factory=dict)
    configs: Dict[str, str] = field(default_factory=dict)

    resources: Dict[str, Dict[str, str]] = field(default_factory=dict)
    mount_pod_labels: Dict[str, str] = field(default_factory=dict)
    mount_pod_annotations: Dict[str, str] = field(default_factory=dict)
    deleted_delay: str = ""
    clean_cache: bool = False
    host_path: Tuple[str, ...] = ()
    service_account_name: str = ""
    image: str = ""

    options: Tuple[str, ...] = ()
    subpath: str = ""
    mount_path: str = ""
    secret_name: str = ""
    namespace: str = ""
    volume_id: str = ""

    def credentials(self) -> Dict[str, str]:
        """Non-empty credentials keyed by their secret key name."""
        values = {
            "token": self.token,
            "secretkey": self.secret_key,
            "secretkey2": self.secret_key2,
            "passphrase": self.passphrase,
        }
        return {key: value for key, value in values.items() if value}


def parse_resources(
    config: ControllerConfig,
    cpu_limit: str = "",
    memory_limit: str = "",
    cpu_request: str = "",
    memory_request: str = "",
) -> Dict[str, Dict[str, str]]:
    """
    Build container resources from optional overrides.

    Overrides must be valid quantities. A value that is zero or negative
    removes the key so the cluster default applies.
    """
    limits = {"cpu": config.default_cpu_limit, "memory": config.default_memory_limit}
    requests = {"cpu": config.default_cpu_request, "memory": config.default_memory_request}

    for target, key, raw in (
        (limits, "cpu", cpu_limit),
        (limits, "memory", memory_limit),
        (requests, "cpu", cpu_request),
        (requests, "memory", memory_request),
    ):
        raw = (raw or "").strip()
        if not raw:
            continue
        if parse_quantity(raw) <= 0:
            target.pop(key, None)
        else:
            target[key] = raw
    return {"limits": limits, "requests": requests}


def _split_cache_dir_option(options: List[str]) -> Tuple[List[str], List[str]]:
    """Remove the first `cache-dir=` option, returning (options, dirs)."""
    for i, option in enumerate(options):
        if not option.startswith(CACHE_DIR_OPTION):
            continue
        pair = option.split("=")
        if len(pair) != 2:
            continue
        return options[:i] + options[i + 1:], pair[1].strip().split(":")
    return options, []


def _parse_inline_volumes(raw: str) -> List[Dict[str, object]]:
    try:
        volumes = json.loads(raw)
    except ValueError as e:
        raise InvalidArgument(details=f"parse cache inline volume error: {e}")
    if not isinstance(volumes, list) or not all(isinstance(v, dict) for v in volumes):
        raise InvalidArgument(details="parse cache inline volume error: expected a list of CSI volume sources")
    return volumes


def parse_settings(
    secrets: Optional[Mapping[str, str]],
    volume_context: Optional[Mapping[str, str]],
    options: Optional[Sequence[str]],
    config: ControllerConfig,
) -> MountSettings:
    """
    Resolve mount settings.

    Args:
        secrets: Filesystem secret data, or None when no secret is referenced
        volume_context: PV volume attributes
        options: Mount options
        config: Controller configuration

    Returns:
        MountSettings

    Raises:
        InvalidArgument: Missing name, malformed map, quantity or duration
    """
    ctx = dict(volume_context or {})
    opts = list(options or [])
    values = {}

    if secrets is None:
        values["is_ce"] = True
    else:
        if not secrets.get("name"):
            raise InvalidArgument(details="Empty name")
        values["name"] = secrets["name"]
        values["storage"] = secrets.get("storage", "")
        values["format_options"] = secrets.get("format-options", "")
        values["token"] = secrets.get("token", "")
        values["passphrase"] = secrets.get("passphrase", "")
        values["secret_key"] = secrets.get("secretkey") or secrets.get("secret-key", "")
        values["secret_key2"] = secrets.get("secretkey2") or secrets.get("secret-key2", "")
        if secrets.get("configs"):
            values["configs"] = parse_yaml_or_json(secrets["configs"])
        if secrets.get("envs"):
            values["envs"] = parse_yaml_or_json(secrets["envs"])

    # cache locations, in precedence order
    dirs = []
    cache_pvcs = []
    raw_pvcs = ctx.get(CACHE_PVC_KEY, "").strip()
    if raw_pvcs:
        for i, pvc in enumerate(raw_pvcs.split(",")):
            if not pvc:
                continue
            path = f"/var/cfsCache-{i}"
            cache_pvcs.append(CachePVC(pvc_name=pvc.strip(), path=path))
            dirs.append(path)

    if CACHE_EMPTY_DIR_KEY in ctx:
        path = "/var/cfsCache-emptyDir"
        dirs.append(path)
        parts = ctx[CACHE_EMPTY_DIR_KEY].strip().split(":")
        medium, size_limit = "", ""
        if len(parts) == 1:
            medium = parts[0].strip()
        elif len(parts) == 2:
            medium, size_limit = parts[0].strip(), parts[1].strip()
        if size_limit:
            parse_quantity(size_limit)
        values["cache_empty_dir"] = CacheEmptyDir(medium=medium, path=path, size_limit=size_limit)

    cache_inline_volumes = []
    if CACHE_INLINE_VOLUME_KEY in ctx:
        for i, volume in enumerate(_parse_inline_volumes(ctx[CACHE_INLINE_VOLUME_KEY])):
            path = f"/var/cfsCache-inlineVolume-{i}"
            dirs.append(path)
            cache_inline_volumes.append(CacheInlineVolume(csi=volume, path=path))

    opts, host_dirs = _split_cache_dir_option(opts)
    dirs.extend(host_dirs)
    if dirs:
        opts.append(f"{CACHE_DIR_OPTION}={':'.join(dirs)}")
    else:
        host_dirs = [DEFAULT_CACHE_DIR]

    values["source"] = values.get("name", "")
    if secrets is not None and "metaurl" in secrets:
        source = secrets["metaurl"]
        values["meta_url"] = source
        values["is_ce"] = True
        if "://" not in source:
            source = "redis://" + source
        values["source"] = source
    values.setdefault("is_ce", False)

    values["image"] = config.ce_mount_image if values["is_ce"] else config.ee_mount_image
    if ctx.get(IMAGE_KEY):
        values["image"] = ctx[IMAGE_KEY]

    values["resources"] = parse_resources(
        config,
        ctx.get(CPU_LIMIT_KEY, ""),
        ctx.get(MEMORY_LIMIT_KEY, ""),
        ctx.get(CPU_REQUEST_KEY, ""),
        ctx.get(MEMORY_REQUEST_KEY, ""),
    )

    delay = ctx.get(DELETE_DELAY_KEY, "")
    if delay:
        try:
            parse_duration(delay)
        except ValueError:
            raise InvalidArgument(details=f"can't parse delay time {delay}")
        values["deleted_delay"] = delay

    labels = parse_yaml_or_json(config.mount_labels) if config.mount_labels else {}
    if ctx.get(LABELS_KEY):
        labels.update(parse_yaml_or_json(ctx[LABELS_KEY]))
    if ctx.get(ANNOTATIONS_KEY):
        values["mount_pod_annotations"] = parse_yaml_or_json(ctx[ANNOTATIONS_KEY])

    if ctx.get(HOST_PATH_KEY):
        values["host_path"] = tuple(p.strip() for p in ctx[HOST_PATH_KEY].split(",") if p.strip())

    settings = MountSettings(
        cache_pvcs=tuple(cache_pvcs),
        cache_inline_volumes=tuple(cache_inline_volumes),
        cache_dirs=tuple(d for d in host_dirs if d != "memory"),
        client_conf_path=config.client_conf_path,
        mount_pod_labels=labels,
        clean_cache=ctx.get(CLEAN_CACHE_KEY) == "true",
        service_account_name=ctx.get(SERVICE_ACCOUNT_KEY, ""),
        subpath=ctx.get(SUBPATH_KEY, ""),
        options=tuple(opts),
        **values,
    )
    LOG.debug("Resolved mount settings for %r: image=%s options=%s", settings.name, settings.image, settings.options)
    return settings


# Format options (`a=b,c`) as passed to the format / auth command


def parse_format_options(format_options: str) -> List[Tuple[str, str]]:
    """
    Split `k=v,k2,k3=v3` into key/value pairs.

    Raises:
        InvalidArgument: A key is given with an empty value (`k=`)
    """
    parsed = []
    for option in format_options.split(","):
        pair = option.strip().split("=", 1)
        if len(pair) == 2 and pair[1] == "":
            raise InvalidArgument(details=f"invalid format options: {format_options}")
        key = pair[0].strip()
        if not key:
            continue
        value = pair[1].strip() if len(pair) == 2 else ""
        parsed.append((key, value))
    return parsed


def represent_format_options(parsed: Sequence[Tuple[str, str]]) -> List[str]:
    """Render pairs as shell-escaped `--key=value` flags."""
    rendered = []
    for key, value in parsed:
        option = escape_bash_str(key)
        if value:
            option = f"{option}={escape_bash_str(value)}"
        rendered.append("--" + option)
    return rendered


def strip_format_options(parsed: Sequence[Tuple[str, str]], stripped_keys: Sequence[str]) -> List[str]:
    """Like `represent_format_options`, with secret values replaced by `${key}`."""
    stripped = set(stripped_keys)
    rendered = []
    for key, value in parsed:
        if value and key in stripped:
            rendered.append(f"--{escape_bash_str(key)}=${{{key}}}")
        else:
            rendered.extend(represent_format_options([(key, value)]))
    return rendered
