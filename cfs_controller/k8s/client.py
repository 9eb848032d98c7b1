"""Kubernetes API access used by the provisioner and the admission webhook."""

import logging
from typing import Any, Dict, List, Optional

from kubernetes import client, config as kube_config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from cfs_controller.exceptions import KubernetesAPIError, ResourceAlreadyExists, ResourceNotFound
from cfs_controller.k8s import descriptor

LOG = logging.getLogger(__name__)


def load_kube_config() -> None:
    """Load in-cluster credentials, falling back to the local kubeconfig."""
    try:
        kube_config.load_incluster_config()
    except kube_config.ConfigException:
        LOG.info("Not running in cluster, loading kubeconfig")
        kube_config.load_kube_config()


class KubeClient:
    """Thin wrapper over the kubernetes client.

    Maps `ApiException` and urllib3 transport errors onto the controller
    exception hierarchy so callers only deal with `ResourceNotFound`,
    `ResourceAlreadyExists` and `KubernetesAPIError`.
    """

    def __init__(self, api_client: Optional[client.ApiClient] = None, timeout: int = 30):
        self.api_client = api_client or client.ApiClient()
        self.core = client.CoreV1Api(self.api_client)
        self.storage = client.StorageV1Api(self.api_client)
        self.apps = client.AppsV1Api(self.api_client)
        self.custom = client.CustomObjectsApi(self.api_client)
        self.timeout = timeout

    def _call(self, kind: str, name: str, func, *args, **kwargs):
        try:
            return func(*args, _request_timeout=self.timeout, **kwargs)
        except ApiException as e:
            if e.status == 404:
                LOG.debug("%s %s not found", kind, name)
                raise ResourceNotFound(kind=kind, name=name)
            if e.status == 409:
                raise ResourceAlreadyExists(kind=kind, name=name)
            LOG.error("Kubernetes API error on %s %s: %s %s", kind, name, e.status, e.reason)
            raise KubernetesAPIError(details=f"{kind} {name}: {e.status} {e.reason}")
        except HTTPError as e:
            LOG.error("Kubernetes API unreachable on %s %s: %s", kind, name, e)
            raise KubernetesAPIError(details=f"{kind} {name}: {e}")

    # Volumes

    def get_persistent_volume(self, name: str) -> client.V1PersistentVolume:
        return self._call("PersistentVolume", name, self.core.read_persistent_volume, name)

    def list_persistent_volumes(self) -> List[client.V1PersistentVolume]:
        return self._call("PersistentVolume", "*", self.core.list_persistent_volume).items

    def get_persistent_volume_claim(self, name: str, namespace: str) -> client.V1PersistentVolumeClaim:
        return self._call(
            "PersistentVolumeClaim",
            f"{namespace}/{name}",
            self.core.read_namespaced_persistent_volume_claim,
            name,
            namespace,
        )

    def get_storage_class(self, name: str) -> client.V1StorageClass:
        return self._call("StorageClass", name, self.storage.read_storage_class, name)

    # Secrets

    def get_secret(self, name: str, namespace: str) -> client.V1Secret:
        return self._call("Secret", f"{namespace}/{name}", self.core.read_namespaced_secret, name, namespace)

    def create_secret(self, secret: client.V1Secret) -> client.V1Secret:
        namespace = secret.metadata.namespace
        return self._call(
            "Secret",
            f"{namespace}/{secret.metadata.name}",
            self.core.create_namespaced_secret,
            namespace,
            secret,
        )

    def replace_secret(self, secret: client.V1Secret) -> client.V1Secret:
        namespace = secret.metadata.namespace
        name = secret.metadata.name
        return self._call("Secret", f"{namespace}/{name}", self.core.replace_namespaced_secret, name, namespace, secret)

    def set_secret_finalizers(self, name: str, namespace: str, finalizers: List[str]) -> client.V1Secret:
        body = {"metadata": {"finalizers": finalizers}}
        return self._call("Secret", f"{namespace}/{name}", self.core.patch_namespaced_secret, name, namespace, body)

    # Workload owners

    def get_replica_set(self, name: str, namespace: str) -> client.V1ReplicaSet:
        return self._call("ReplicaSet", f"{namespace}/{name}", self.apps.read_namespaced_replica_set, name, namespace)

    # Events

    def create_event(self, namespace: str, event: Dict[str, Any]) -> Any:
        name = event.get("metadata", {}).get("name", "")
        return self._call("Event", f"{namespace}/{name}", self.core.create_namespaced_event, namespace, event)

    # Filesystem descriptors

    def get_filesystem_descriptor(self, name: str) -> descriptor.FilesystemDescriptor:
        raw = self._call(
            descriptor.PLURAL,
            name,
            self.custom.get_cluster_custom_object,
            descriptor.GROUP,
            descriptor.VERSION,
            descriptor.PLURAL,
            name,
        )
        return descriptor.FilesystemDescriptor.model_validate(raw)
