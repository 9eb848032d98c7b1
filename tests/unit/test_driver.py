"""
Unit tests for driver composition.
"""

import pytest

from cfs_controller import __version__
from cfs_controller.mgmt.client import FilesystemManagerClient
from cfs_controller.mgmt.credentials import ResourceServerClient
from cfs_controller.provisioner.base import BaseControllerService
from cfs_controller.provisioner.controller import CfsControllerService
from cfs_controller.provisioner.driver import CfsDriver
from cfs_controller.provisioner.provisioner import CfsProvisioner


@pytest.mark.unit
def test_build_wires_services(config, mock_kube):
    driver = CfsDriver.build(config, kube=mock_kube)

    assert isinstance(driver.controller, CfsControllerService)
    assert isinstance(driver.controller.base, BaseControllerService)
    assert isinstance(driver.controller.credentials, ResourceServerClient)
    assert isinstance(driver.controller.fs_manager, FilesystemManagerClient)
    assert isinstance(driver.provisioner, CfsProvisioner)
    assert driver.provisioner.kube is mock_kube
    assert driver.provisioner.credentials is driver.controller.credentials
    assert driver.controller.fs_manager.issuer is driver.controller.credentials


@pytest.mark.unit
def test_plugin_info(config, mock_kube):
    info = CfsDriver.build(config, kube=mock_kube).get_plugin_info()
    assert info == {"name": config.driver_name, "vendor_version": __version__}


@pytest.mark.unit
def test_capabilities_forwarded(config, mock_kube):
    driver = CfsDriver.build(config, kube=mock_kube)
    assert driver.controller.get_capabilities() == ["CREATE_DELETE_VOLUME", "EXPAND_VOLUME"]
