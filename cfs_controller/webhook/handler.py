"""AdmissionReview handling for pod sidecar injection."""

import base64
import copy
import json
import logging
from typing import Any, Dict

import jsonpatch

from cfs_controller.config import INJECT_SIDECAR_DISABLE, INJECT_SIDECAR_DONE, TRUE
from cfs_controller.exceptions import CfsException
from cfs_controller.webhook.events import EventRecorder
from cfs_controller.webhook.mutate import SidecarMutator
from cfs_controller.webhook.volumes import VolumeResolver

LOG = logging.getLogger(__name__)

ADMISSION_REVIEW = {"apiVersion": "admission.k8s.io/v1", "kind": "AdmissionReview"}
EVENT_REASON = "Injecting"


def allowed(uid: str, message: str = "") -> Dict[str, Any]:
    return {"uid": uid, "allowed": True, "status": {"code": 200, "message": message}}


def errored(uid: str, code: int, message: str) -> Dict[str, Any]:
    return {"uid": uid, "allowed": False, "status": {"code": code, "message": message}}


def patched(uid: str, operations) -> Dict[str, Any]:
    response = {"uid": uid, "allowed": True}
    if operations:
        response["patchType"] = "JSONPatch"
        response["patch"] = base64.b64encode(json.dumps(operations).encode("utf-8")).decode("utf-8")
    return response


class SidecarHandler:
    """Turns an AdmissionReview for a pod into an AdmissionReview response."""

    def __init__(self, resolver: VolumeResolver, mutator: SidecarMutator, recorder: EventRecorder):
        self.resolver = resolver
        self.mutator = mutator
        self.recorder = recorder

    def _record_failure(self, pod: Dict[str, Any], name: str, error: str) -> None:
        if name:
            self.recorder.warning(pod, EVENT_REASON, f"Failed to inject sidecar container: {error}")

    def handle(self, review: Dict[str, Any]) -> Dict[str, Any]:
        request = review.get("request") or {}
        try:
            response = self._handle(request)
        except Exception as e:
            LOG.exception("Unexpected error handling admission request %s", request.get("uid", ""))
            response = errored(request.get("uid", ""), 500, f"internal error: {e}")
        return {**ADMISSION_REVIEW, "response": response}

    def _handle(self, request: Dict[str, Any]) -> Dict[str, Any]:
        uid = request.get("uid", "")
        raw = request.get("object")
        if not isinstance(raw, dict):
            LOG.error("Unable to decode pod from admission request %s", uid)
            return errored(uid, 400, "unable to decode pod from request")

        pod = copy.deepcopy(raw)
        metadata = pod.setdefault("metadata", {})
        if not metadata.get("namespace") and request.get("namespace"):
            metadata["namespace"] = request["namespace"]
        name = metadata.get("name") or metadata.get("generateName", "")
        namespace = metadata.get("namespace", "")

        labels = metadata.get("labels") or {}
        if labels.get(INJECT_SIDECAR_DONE) == TRUE:
            LOG.info("Skip pod %s/%s: injection is done", namespace, name)
            return allowed(uid, "skip mutating the pod because injection is done")
        if labels.get(INJECT_SIDECAR_DISABLE) == TRUE:
            LOG.info("Skip pod %s/%s: injection is disabled", namespace, name)
            return allowed(uid, "skip mutating the pod because injection is disabled")

        try:
            used, pairs = self.resolver.get_volumes(pod)
        except CfsException as e:
            LOG.error("Get pv from pod %s/%s: %s", namespace, name, e)
            return errored(uid, 400, "could not get pv from pod")
        if not used:
            LOG.info("Skip pod %s/%s: no CFS volume", namespace, name)
            return allowed(uid, "skip mutating the pod because it doesn't use CFS volume")

        LOG.info("Injecting CFS sidecar into pod %s/%s", namespace, name)
        try:
            out = self.mutator.mutate(pod, pairs)
        except CfsException as e:
            error = f"mutate err: {e}"
            self._record_failure(pod, name, error)
            return errored(uid, 400, error)

        if not raw.get("metadata", {}).get("namespace"):
            out.get("metadata", {}).pop("namespace", None)
        try:
            operations = jsonpatch.make_patch(raw, out).patch
            json.dumps(operations)
        except (TypeError, ValueError) as e:
            LOG.error("Unable to marshal pod %s/%s: %s", namespace, name, e)
            self._record_failure(pod, name, "unable to marshal pod")
            return errored(uid, 500, "unable to marshal pod")
        LOG.debug("Patch for pod %s/%s: %s", namespace, name, operations)
        return patched(uid, operations)
