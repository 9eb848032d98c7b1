"""Credential gate and client certificate issuance.

Both concerns are served by the resource server: it decides whether the
caller may perform an action on a claim, and hands out the short-lived mTLS
material used to talk to a filesystem owner's manager endpoint.
"""

import abc
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from cfs_controller.config import ControllerConfig
from cfs_controller.exceptions import (
    InternalError,
    ManagerConnectionError,
    ManagerTimeout,
    PermissionDenied,
)

LOG = logging.getLogger(__name__)

SERVICE_NAME = "resource server"


class FsAction(str, Enum):
    """Operations the credential gate authorizes."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class Credential:
    """Outcome of a successful credential check."""

    owner: str
    action: str


@dataclass(frozen=True)
class ClientCertificates:
    """PEM encoded mTLS material for one filesystem owner."""

    ca: str
    cert: str
    key: str


class CredentialChecker(abc.ABC):
    @abc.abstractmethod
    def check(self, namespace: str, name: str, action: FsAction) -> Credential:
        """Authorize `action` on claim `namespace/name`.

        Raises:
            PermissionDenied: The claim may not perform the action
        """


class CertificateIssuer(abc.ABC):
    @abc.abstractmethod
    def get_client_certs(self, owner: str) -> ClientCertificates:
        """Return client certificates scoped to `owner`."""


class ResourceServerClient(CredentialChecker, CertificateIssuer):
    """requests based client of the resource server."""

    def __init__(self, config: ControllerConfig, session: Optional[requests.Session] = None, retry_count: int = 3):
        self.base_url = config.resource_server_url.rstrip("/")
        self.timeout = config.resource_server_timeout

        if session is None:
            session = requests.Session()
            # Claims are POSTed but carry no side effects, so they are retried too
            retry_strategy = Retry(
                total=retry_count,
                backoff_factor=1,
                status_forcelist=[429, 500, 502, 503, 504],
                allowed_methods=["GET", "POST"],
            )
            adapter = HTTPAdapter(max_retries=retry_strategy)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        self.session = session

    def _request(self, method: str, path: str, action: str, json_data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = self.base_url + path
        LOG.debug("Making %s request to %s", method, url)
        try:
            response = self.session.request(method=method, url=url, json=json_data, timeout=self.timeout)
        except requests.exceptions.Timeout:
            LOG.error("Request timeout after %ss: %s", self.timeout, path)
            raise ManagerTimeout(service=SERVICE_NAME, timeout=self.timeout)
        except requests.exceptions.ConnectionError as e:
            LOG.error("Connection error: %s, %s", path, e)
            raise ManagerConnectionError(service=SERVICE_NAME, details=str(e))
        except requests.exceptions.RequestException as e:
            raise InternalError(details=f"{SERVICE_NAME} request failed: {e}")

        if response.status_code in (401, 403):
            raise PermissionDenied(action=action, details=response.text.strip() or f"HTTP {response.status_code}")
        if response.status_code >= 400:
            LOG.error("%s error: HTTP %s, %s", SERVICE_NAME, response.status_code, response.text)
            raise InternalError(details=f"{SERVICE_NAME} HTTP {response.status_code}: {response.text}")
        try:
            return response.json()
        except ValueError:
            raise InternalError(details=f"{SERVICE_NAME} returned a non-JSON body")

    def check(self, namespace: str, name: str, action: FsAction) -> Credential:
        action = FsAction(action)
        body = {"namespace": namespace, "name": name, "action": action.value}
        data = self._request("POST", "/v1/auth/claims", action.value, json_data=body)
        owner = data.get("owner")
        if not owner:
            raise PermissionDenied(action=action.value, details=f"no owner granted for {namespace}/{name}")
        LOG.debug("Claim %s/%s granted %s for owner %s", namespace, name, action.value, owner)
        return Credential(owner=owner, action=data.get("action") or action.value)

    def get_client_certs(self, owner: str) -> ClientCertificates:
        data = self._request("GET", f"/v1/certs/{owner}", "get client certs")
        try:
            return ClientCertificates(ca=data["ca"], cert=data["cert"], key=data["key"])
        except KeyError as e:
            raise InternalError(details=f"client certs of {owner} missing {e}")
