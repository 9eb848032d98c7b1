"""Kubernetes events for failed injections."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from cfs_controller.exceptions import CfsException
from cfs_controller.k8s.client import KubeClient

LOG = logging.getLogger(__name__)

COMPONENT = "cfs-sidecar-webhook"


class EventRecorder:
    def __init__(self, kube: KubeClient, component: str = COMPONENT):
        self.kube = kube
        self.component = component

    def _target(self, pod: Dict[str, Any]) -> Dict[str, str]:
        """Object the event is reported against: the pod's first owner, or the pod.

        A ReplicaSet owner is followed to its Deployment.
        """
        metadata = pod.get("metadata", {})
        namespace = metadata.get("namespace", "")
        owners = metadata.get("ownerReferences") or []
        if not owners:
            return {
                "apiVersion": "v1",
                "kind": "Pod",
                "name": metadata.get("name") or metadata.get("generateName", ""),
                "namespace": namespace,
                "uid": metadata.get("uid", ""),
            }

        owner = owners[0]
        target = {
            "apiVersion": owner.get("apiVersion", ""),
            "kind": owner.get("kind", ""),
            "name": owner.get("name", ""),
            "namespace": namespace,
            "uid": owner.get("uid", ""),
        }
        if owner.get("kind") == "ReplicaSet":
            try:
                rs = self.kube.get_replica_set(owner["name"], namespace)
            except CfsException as e:
                LOG.debug("Cannot resolve owner of replicaset %s/%s: %s", namespace, owner.get("name"), e)
                return target
            for rs_owner in rs.metadata.owner_references or []:
                if rs_owner.kind == "Deployment":
                    return {
                        "apiVersion": rs_owner.api_version,
                        "kind": rs_owner.kind,
                        "name": rs_owner.name,
                        "namespace": namespace,
                        "uid": rs_owner.uid,
                    }
        return target

    def warning(self, pod: Dict[str, Any], reason: str, message: str) -> None:
        """Record a warning event. Failures are logged, never raised."""
        try:
            target = self._target(pod)
            now = datetime.now(timezone.utc).isoformat()
            event = {
                "apiVersion": "v1",
                "kind": "Event",
                "metadata": {"generateName": f"{target['name']}.", "namespace": target["namespace"]},
                "involvedObject": target,
                "reason": reason,
                "message": message,
                "type": "Warning",
                "source": {"component": self.component},
                "firstTimestamp": now,
                "lastTimestamp": now,
                "count": 1,
            }
            self.kube.create_event(target["namespace"], event)
        except Exception:
            LOG.exception("Failed to record %s event", reason)
