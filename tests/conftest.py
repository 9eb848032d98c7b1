"""
Pytest configuration and fixtures.
"""

import shutil
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from kubernetes import client

from cfs_controller.config import OWNER_ANNOTATION, PROVISIONER_CR_NAME, RUNTIME_ANNOTATION, ControllerConfig
from cfs_controller.k8s.descriptor import FilesystemDescriptor

DRIVER = "csi.cfs.confidentialfilesystems.com"


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    temp_path = tempfile.mkdtemp()
    yield Path(temp_path)
    shutil.rmtree(temp_path)


@pytest.fixture
def config():
    """Default controller configuration."""
    return ControllerConfig()


@pytest.fixture
def mock_kube():
    """KubeClient double; every call returns a MagicMock unless configured."""
    return MagicMock()


def make_pv(
    name="pv-1",
    subpath=None,
    storage_class="sc-cfs",
    attributes=None,
    deleting=False,
    reclaim_policy="Delete",
    claim=("default", "data"),
    access_modes=("ReadWriteMany",),
    mount_options=None,
    publish_secret=None,
    driver=DRIVER,
):
    """Build a CSI PersistentVolume."""
    volume_attributes = {"subPath": subpath or name, PROVISIONER_CR_NAME: "fs-demo"}
    volume_attributes.update(attributes or {})
    csi = None
    if driver:
        csi = client.V1CSIPersistentVolumeSource(
            driver=driver,
            volume_handle=name,
            volume_attributes=volume_attributes,
        )
        if publish_secret:
            csi.node_publish_secret_ref = client.V1SecretReference(name=publish_secret[1], namespace=publish_secret[0])
    claim_ref = None
    if claim:
        claim_ref = client.V1ObjectReference(namespace=claim[0], name=claim[1])
    return client.V1PersistentVolume(
        metadata=client.V1ObjectMeta(
            name=name,
            deletion_timestamp="2026-01-01T00:00:00Z" if deleting else None,
        ),
        spec=client.V1PersistentVolumeSpec(
            csi=csi,
            storage_class_name=storage_class,
            persistent_volume_reclaim_policy=reclaim_policy,
            claim_ref=claim_ref,
            access_modes=list(access_modes),
            mount_options=mount_options,
        ),
    )


def make_pvc(
    name="data",
    namespace="default",
    storage="10Gi",
    volume_name="pv-1",
    access_modes=("ReadWriteMany",),
    storage_class="sc-cfs",
    labels=None,
    annotations=None,
    selector=None,
):
    """Build a PersistentVolumeClaim with a storage request."""
    return client.V1PersistentVolumeClaim(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            uid=f"uid-{name}",
            labels=labels,
            annotations=annotations,
        ),
        spec=client.V1PersistentVolumeClaimSpec(
            access_modes=list(access_modes),
            resources=client.V1ResourceRequirements(requests={"storage": storage}),
            storage_class_name=storage_class,
            volume_name=volume_name,
            selector=selector,
        ),
    )


def make_descriptor(name="fs-demo", owner="0xabc", runtime="vm", service="10.0.0.7:6379", phase="CreateFinished"):
    """Build a filesystem descriptor as returned by the API server."""
    return FilesystemDescriptor.model_validate(
        {
            "metadata": {
                "name": name,
                "annotations": {OWNER_ANNOTATION: owner, RUNTIME_ANNOTATION: runtime},
            },
            "spec": {
                "filesystem": {"name": name, "storageClass": "sc-cfs"},
                "metadata": {"persistentVolumeClaim": "data", "service": service},
            },
            "status": {"phase": phase},
        }
    )


def make_pod(name="app", namespace="default", claims=(("data", "data"),), labels=None, runtime_class=None):
    """Build a pod dict mounting each (volume name, claim name) pair."""
    spec = {
        "containers": [
            {
                "name": "app",
                "image": "nginx:1.25",
                "volumeMounts": [{"name": volume, "mountPath": f"/mnt/{volume}"} for volume, _ in claims],
            }
        ],
        "volumes": [{"name": volume, "persistentVolumeClaim": {"claimName": claim}} for volume, claim in claims],
    }
    if runtime_class:
        spec["runtimeClassName"] = runtime_class
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": name, "namespace": namespace, "labels": labels or {}},
        "spec": spec,
    }
