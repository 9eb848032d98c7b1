"""
Unit tests for injection event recording.
"""

import pytest
from kubernetes import client

from cfs_controller.exceptions import KubernetesAPIError, ResourceNotFound
from cfs_controller.webhook.events import COMPONENT, EventRecorder

from conftest import make_pod


@pytest.fixture
def recorder(mock_kube):
    return EventRecorder(mock_kube)


def _event(mock_kube):
    namespace, event = mock_kube.create_event.call_args[0]
    return namespace, event


class TestEventRecorder:
    """Tests for EventRecorder."""

    @pytest.mark.unit
    def test_event_on_pod(self, recorder, mock_kube):
        pod = make_pod()
        pod["metadata"]["uid"] = "pod-uid"

        recorder.warning(pod, "Injecting", "Failed to inject sidecar container: boom")

        namespace, event = _event(mock_kube)
        assert namespace == "default"
        assert event["type"] == "Warning"
        assert event["reason"] == "Injecting"
        assert event["message"] == "Failed to inject sidecar container: boom"
        assert event["source"] == {"component": COMPONENT}
        assert event["involvedObject"]["kind"] == "Pod"
        assert event["involvedObject"]["name"] == "app"
        assert event["metadata"]["generateName"] == "app."

    @pytest.mark.unit
    def test_replica_set_resolved_to_deployment(self, recorder, mock_kube):
        pod = make_pod()
        pod["metadata"]["ownerReferences"] = [
            {"apiVersion": "apps/v1", "kind": "ReplicaSet", "name": "web-5d4f", "uid": "rs-uid"}
        ]
        mock_kube.get_replica_set.return_value = client.V1ReplicaSet(
            metadata=client.V1ObjectMeta(
                name="web-5d4f",
                owner_references=[
                    client.V1OwnerReference(api_version="apps/v1", kind="Deployment", name="web", uid="dep-uid")
                ],
            )
        )

        recorder.warning(pod, "Injecting", "failed")

        _, event = _event(mock_kube)
        assert event["involvedObject"] == {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "name": "web",
            "namespace": "default",
            "uid": "dep-uid",
        }

    @pytest.mark.unit
    def test_unresolvable_replica_set(self, recorder, mock_kube):
        pod = make_pod()
        pod["metadata"]["ownerReferences"] = [
            {"apiVersion": "apps/v1", "kind": "ReplicaSet", "name": "web-5d4f", "uid": "rs-uid"}
        ]
        mock_kube.get_replica_set.side_effect = ResourceNotFound(kind="ReplicaSet", name="default/web-5d4f")

        recorder.warning(pod, "Injecting", "failed")

        _, event = _event(mock_kube)
        assert event["involvedObject"]["kind"] == "ReplicaSet"

    @pytest.mark.unit
    def test_failure_is_not_raised(self, recorder, mock_kube):
        mock_kube.create_event.side_effect = KubernetesAPIError(details="forbidden")
        recorder.warning(make_pod(), "Injecting", "failed")
