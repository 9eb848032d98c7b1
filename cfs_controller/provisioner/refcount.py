"""
Reference counting over live PersistentVolumes.

Several PVs can point at one subpath (a static `pathPattern`) or one
node-publish secret. The backing object may only go away once no other live
PV of the same kind still references it.
"""

from typing import Iterable, Optional

from kubernetes import client

SUBPATH_ATTRIBUTE = "subPath"


def _attributes(volume: client.V1PersistentVolume) -> dict:
    csi = volume.spec.csi if volume.spec else None
    if csi is None:
        return {}
    return csi.volume_attributes or {}


def _is_sibling(candidate: client.V1PersistentVolume, volume: client.V1PersistentVolume) -> bool:
    """True for a live PV other than `volume`."""
    if candidate.metadata.name == volume.metadata.name:
        return False
    return candidate.metadata.deletion_timestamp is None


def should_delete_subpath(
    volumes: Iterable[client.V1PersistentVolume],
    volume: client.V1PersistentVolume,
    path_pattern: Optional[str],
) -> bool:
    """
    Decide whether the subpath of `volume` can be removed.

    Without a path pattern every PV owns its own subpath. Otherwise any live
    sibling of the same StorageClass with the same subpath keeps it alive.
    """
    if not path_pattern:
        return True

    subpath = _attributes(volume).get(SUBPATH_ATTRIBUTE, "")
    storage_class = volume.spec.storage_class_name
    for candidate in volumes:
        if not _is_sibling(candidate, volume):
            continue
        if candidate.spec.storage_class_name != storage_class:
            continue
        if _attributes(candidate).get(SUBPATH_ATTRIBUTE, "") == subpath:
            return False
    return True


def should_remove_secret_finalizer(
    volumes: Iterable[client.V1PersistentVolume], volume: client.V1PersistentVolume
) -> bool:
    """True when no live sibling references the node-publish secret of `volume`."""
    ref = volume.spec.csi.node_publish_secret_ref if volume.spec.csi else None
    if ref is None:
        return False

    for candidate in volumes:
        if not _is_sibling(candidate, volume) or candidate.spec.csi is None:
            continue
        other = candidate.spec.csi.node_publish_secret_ref
        if other is not None and other.name == ref.name and other.namespace == ref.namespace:
            return False
    return True
