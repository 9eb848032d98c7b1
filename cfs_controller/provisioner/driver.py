"""Driver composition: identity, controller and provisioner services."""

import logging
from typing import Dict, Optional

from cfs_controller import __version__
from cfs_controller.config import ControllerConfig
from cfs_controller.k8s.client import KubeClient
from cfs_controller.mgmt.client import FilesystemManagerClient
from cfs_controller.mgmt.credentials import ResourceServerClient
from cfs_controller.provisioner.base import BaseControllerService
from cfs_controller.provisioner.controller import CfsControllerService
from cfs_controller.provisioner.provisioner import CfsProvisioner

LOG = logging.getLogger(__name__)


class CfsDriver:
    def __init__(self, config: ControllerConfig, controller: CfsControllerService, provisioner: CfsProvisioner):
        self.config = config
        self.controller = controller
        self.provisioner = provisioner

    @classmethod
    def build(cls, config: ControllerConfig, kube: Optional[KubeClient] = None) -> "CfsDriver":
        """Wire the driver against the live cluster and resource server."""
        kube = kube or KubeClient(timeout=config.request_timeout)
        resource_server = ResourceServerClient(config)
        fs_manager = FilesystemManagerClient(config, resource_server)
        controller = CfsControllerService(BaseControllerService(kube), kube, resource_server, fs_manager)
        provisioner = CfsProvisioner(config, kube, resource_server, fs_manager)
        LOG.info("Driver %s version %s", config.driver_name, __version__)
        return cls(config, controller, provisioner)

    def get_plugin_info(self) -> Dict[str, str]:
        return {"name": self.config.driver_name, "vendor_version": __version__}
