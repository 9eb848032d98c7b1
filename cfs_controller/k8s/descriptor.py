"""
Pydantic models for the filesystem descriptor custom resource (`cfspecs`).
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from cfs_controller.config import OWNER_ANNOTATION, RUNTIME_ANNOTATION

GROUP = "confidentialfilesystems.com"
VERSION = "v1"
PLURAL = "cfspecs"


class DescriptorPhase(str, Enum):
    """Lifecycle phase of a filesystem descriptor."""

    CREATE_UNFINISHED = "CreateUnfinished"
    CREATE_FINISHED = "CreateFinished"
    DELETE_UNFINISHED = "DeleteUnfinished"
    DELETE_FINISHED = "DeleteFinished"


class RuntimeDomain(str, Enum):
    """Trust domain a workload runs under."""

    TEE = "tee"
    VM = "vm"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class DescriptorFilesystem(_CamelModel):
    name: str = ""
    action: str = ""
    storage_class: str = Field("", alias="storageClass")


class DescriptorMetadata(_CamelModel):
    persistent_volume_claim: str = Field("", alias="persistentVolumeClaim")
    service: str = ""


class DescriptorStorage(_CamelModel):
    type: str = ""
    capacity: str = ""
    access: str = ""


class DescriptorSpec(_CamelModel):
    filesystem: DescriptorFilesystem = Field(default_factory=DescriptorFilesystem)
    metadata: DescriptorMetadata = Field(default_factory=DescriptorMetadata)
    storage: DescriptorStorage = Field(default_factory=DescriptorStorage)


class DescriptorStatus(_CamelModel):
    phase: Optional[DescriptorPhase] = None
    reason: str = ""
    last_update_time: Optional[datetime] = Field(None, alias="lastUpdateTime")
    create_time: Optional[datetime] = Field(None, alias="createTime")


class ObjectMeta(_CamelModel):
    name: str = ""
    annotations: Dict[str, str] = Field(default_factory=dict)
    labels: Dict[str, str] = Field(default_factory=dict)


class FilesystemDescriptor(_CamelModel):
    """Remote filesystem identity, endpoint and lifecycle phase."""

    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: DescriptorSpec = Field(default_factory=DescriptorSpec)
    status: DescriptorStatus = Field(default_factory=DescriptorStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def owner_address(self) -> str:
        return self.metadata.annotations.get(OWNER_ANNOTATION, "")

    @property
    def runtime(self) -> RuntimeDomain:
        raw = self.metadata.annotations.get(RUNTIME_ANNOTATION, "").strip().lower()
        if raw == RuntimeDomain.TEE.value:
            return RuntimeDomain.TEE
        return RuntimeDomain.VM

    @property
    def create_finished(self) -> bool:
        return self.status.phase == DescriptorPhase.CREATE_FINISHED

    @property
    def deleting(self) -> bool:
        return self.status.phase in (DescriptorPhase.DELETE_UNFINISHED, DescriptorPhase.DELETE_FINISHED)

    @property
    def service_host(self) -> str:
        """Host part of `spec.metadata.service` (`host:port`)."""
        service = self.spec.metadata.service
        if ":" in service:
            return service[: service.rindex(":")]
        return service
