"""
FastAPI application serving the sidecar injection webhook.
"""

import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from cfs_controller import __version__
from cfs_controller.config import ControllerConfig
from cfs_controller.k8s.client import KubeClient
from cfs_controller.locks import ShardedLock
from cfs_controller.webhook.events import EventRecorder
from cfs_controller.webhook.handler import SidecarHandler
from cfs_controller.webhook.mutate import SidecarMutator
from cfs_controller.webhook.volumes import VolumeResolver

logger = logging.getLogger(__name__)

SIDECAR_PATH = "/cfs/inject-v1-pod"


class AdmissionReview(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    api_version: str = Field("admission.k8s.io/v1", alias="apiVersion")
    kind: str = "AdmissionReview"
    request: Optional[Dict[str, Any]] = None


def build_handler(config: ControllerConfig, kube: KubeClient) -> SidecarHandler:
    return SidecarHandler(
        VolumeResolver(config, kube),
        SidecarMutator(config, kube, ShardedLock()),
        EventRecorder(kube),
    )


def create_app(handler: SidecarHandler) -> FastAPI:
    app = FastAPI(title="CFS sidecar webhook", version=__version__)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler."""
        request_id = str(uuid.uuid4())
        logger.exception("Unhandled error (request_id=%s, path=%s)", request_id, request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "request_id": request_id,
                "status": "error",
                "error": {"code": "INTERNAL_ERROR", "message": "Internal server error", "details": {}},
            },
        )

    @app.post(SIDECAR_PATH)
    def inject_sidecar(review: AdmissionReview) -> Dict[str, Any]:
        """
        Mutate a pod: AdmissionReview v1 in, AdmissionReview v1 out.
        """
        return handler.handle(review.model_dump(by_alias=True))

    @app.get("/healthz")
    def healthz() -> Dict[str, str]:
        return {"status": "ok"}

    logger.info("Registered webhook handler path %s for sidecar", SIDECAR_PATH)
    return app
