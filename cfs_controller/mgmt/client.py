"""REST client for the remote filesystem manager."""

import logging
import os
import tempfile
from typing import Any, Callable, Dict, Optional

import requests
from requests.adapters import HTTPAdapter

from cfs_controller.config import ControllerConfig
from cfs_controller.exceptions import (
    FilesystemManagerError,
    ManagerConnectionError,
    ManagerTimeout,
)
from cfs_controller.k8s.descriptor import FilesystemDescriptor
from cfs_controller.mgmt.credentials import CertificateIssuer, ClientCertificates, Credential

LOG = logging.getLogger(__name__)

UPDATE_PATH = "/v1/mgmt/filesystem"
DELETE_PATH = "/v1/mgmt/filesystem/subpath"
SERVICE_NAME = "filesystem manager"


class ServerNameAdapter(HTTPAdapter):
    """HTTPAdapter that sends SNI for, and verifies the certificate against,
    a fixed server name instead of the host in the URL."""

    def __init__(self, server_hostname: str, **kwargs):
        self.server_hostname = server_hostname
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        kwargs["server_hostname"] = self.server_hostname
        kwargs["assert_hostname"] = self.server_hostname
        super().init_poolmanager(*args, **kwargs)


class FilesystemManagerClient:
    """Client of the per-filesystem manager API.

    Every call fetches client certificates for the filesystem owner from the
    issuer, so no TLS material outlives a single request.
    """

    def __init__(
        self,
        config: ControllerConfig,
        issuer: CertificateIssuer,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ):
        self.port = config.fs_manager_port
        self.server_common_name = config.server_common_name
        self.timeout = config.fs_manager_timeout
        self.issuer = issuer
        self.session_factory = session_factory

    def service_url(self, descriptor: FilesystemDescriptor) -> str:
        return f"https://{descriptor.service_host}:{self.port}"

    def _new_session(self, certs: ClientCertificates, workdir: str) -> requests.Session:
        paths = {}
        for name in ("ca", "cert", "key"):
            path = os.path.join(workdir, f"{name}.pem")
            with open(path, "w", encoding="utf-8") as fh:
                fh.write(getattr(certs, name))
            paths[name] = path

        session = self.session_factory()
        session.cert = (paths["cert"], paths["key"])
        session.verify = paths["ca"]
        session.mount("https://", ServerNameAdapter(self.server_common_name))
        return session

    def _make_request(
        self,
        method: str,
        path: str,
        descriptor: FilesystemDescriptor,
        owner: str,
        json_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Make an mTLS request to the manager serving `descriptor`.

        Raises:
            ManagerConnectionError: Connection failed
            ManagerTimeout: Request timed out
            FilesystemManagerError: API returned an error
        """
        url = self.service_url(descriptor) + path
        certs = self.issuer.get_client_certs(owner)

        LOG.debug("Making %s request to %s for filesystem %s", method, url, descriptor.spec.filesystem.name)
        with tempfile.TemporaryDirectory(prefix="cfs-certs-") as workdir:
            session = self._new_session(certs, workdir)
            try:
                response = session.request(method=method, url=url, json=json_data, timeout=self.timeout)
            except requests.exceptions.Timeout:
                LOG.error("Request timeout after %ss: %s", self.timeout, url)
                raise ManagerTimeout(service=SERVICE_NAME, timeout=self.timeout)
            except requests.exceptions.ConnectionError as e:
                LOG.error("Connection error: %s, %s", url, e)
                raise ManagerConnectionError(service=SERVICE_NAME, details=str(e))
            except requests.exceptions.RequestException as e:
                LOG.error("Request exception: %s, %s", url, e)
                raise FilesystemManagerError(details=str(e))
            finally:
                session.close()

        LOG.debug("Response status: %s", response.status_code)
        if response.status_code >= 400:
            try:
                error_data = response.json()
                error_msg = f"code {error_data.get('code')}: {error_data.get('message')}"
            except ValueError:
                error_msg = response.text
            LOG.error("API error: HTTP %s, %s", response.status_code, error_msg)
            raise FilesystemManagerError(details=f"HTTP {response.status_code}: {error_msg}")

    def update_filesystem(self, descriptor: FilesystemDescriptor, credential: Credential) -> None:
        """Apply the current claim state (e.g. a new size) to the filesystem."""
        body = {"name": descriptor.spec.filesystem.name, "action": credential.action}
        self._make_request("PUT", UPDATE_PATH, descriptor, credential.owner, json_data=body)
        LOG.info("Updated filesystem %s", descriptor.spec.filesystem.name)

    def delete_subpath(self, descriptor: FilesystemDescriptor, credential: Credential, subpath: str) -> None:
        """Remove one subpath and its data from the filesystem."""
        body = {"name": descriptor.spec.filesystem.name, "action": credential.action, "subpath": subpath}
        self._make_request("DELETE", DELETE_PATH, descriptor, credential.owner, json_data=body)
        LOG.info("Deleted subpath %s of filesystem %s", subpath, descriptor.spec.filesystem.name)
