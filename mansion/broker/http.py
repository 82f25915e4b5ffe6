"""HTTP implementation of the broker client.

Talks JSON to the broker REST endpoints. Each reference shares the client's
``requests.Session`` so connection pooling and retry policy apply to every
call made on behalf of one account.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional, Union

import requests
import urllib3
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .base import (
    AuthenticationError,
    BrokerClient,
    BrokerError,
    FileSystemRef,
    QuotaExceededError,
    SnapshotRef,
    TooManyVirtualMachinesError,
    VirtualMachineConfigurationError,
    VirtualMachineRef,
)
from .spec import HardwareSpec, VirtualMachineSpec, VirtualMachineState, VmStateId

log = logging.getLogger(__name__)

# Seconds to wait for a VM to reach 'running' after boot
BOOT_TIMEOUT = 60


def _join(url: str, rel: str) -> str:
    if url.endswith("/"):
        return url + rel
    return url + "/" + rel


class _Remote:
    """Shared HTTP plumbing for broker references."""

    def __init__(self, client: "HttpBrokerClient"):
        self._client = client

    def _post(self, url: str, json: Optional[Dict[str, Any]] = None) -> requests.Response:
        session = self._client.get_session()
        try:
            resp = session.post(url, json=json, timeout=self._client.timeout)
        except requests.RequestException as e:
            raise BrokerError(f"Failed to call {url}: {e}", e)
        self._client.verify_response(resp, url)
        return resp

    def _get_json(self, url: str) -> Dict[str, Any]:
        session = self._client.get_session()
        try:
            resp = session.get(url, timeout=self._client.timeout)
        except requests.RequestException as e:
            raise BrokerError(f"Failed to call {url}: {e}", e)
        self._client.verify_response(resp, url)
        try:
            body = resp.json()
        except ValueError as e:
            raise BrokerError(f"Malformed response from {url}", e)
        if not isinstance(body, dict):
            raise BrokerError(f"Malformed response from {url}")
        return body


class HttpSnapshotRef(_Remote, SnapshotRef):
    def __init__(self, client: "HttpBrokerClient", url: str):
        _Remote.__init__(self, client)
        SnapshotRef.__init__(self, url)

    def dispose(self) -> None:
        self._post(_join(self.url, "dispose"))


class HttpFileSystemRef(_Remote, FileSystemRef):
    def __init__(self, client: "HttpBrokerClient", url: str):
        _Remote.__init__(self, client)
        FileSystemRef.__init__(self, url)

    def snapshot(self) -> SnapshotRef:
        resp = self._post(_join(self.url, "snapshot"))
        location = resp.headers.get("Location")
        if not location:
            raise BrokerError(f"No snapshot location returned by {self.url}")
        return HttpSnapshotRef(self._client, location)


class HttpVirtualMachineRef(_Remote, VirtualMachineRef):
    def __init__(self, client: "HttpBrokerClient", url: str):
        _Remote.__init__(self, client)
        VirtualMachineRef.__init__(self, url)

    def setup(self, spec: VirtualMachineSpec) -> None:
        url = _join(self.url, "setup")
        try:
            self._post(url, json=spec.to_dict())
        except BrokerError as e:
            if e.status_code in (400, 422):
                raise VirtualMachineConfigurationError(str(e), e, e.status_code)
            raise

    def boot_sync(self) -> None:
        self._post(_join(self.url, "boot"))

        for _ in range(BOOT_TIMEOUT):
            self._client.sleep(1)
            state = self.get_state()
            if state.state == VmStateId.BOOTING:
                continue
            if state.state == VmStateId.RUNNING:
                return
            if state.state == VmStateId.ERROR:
                raise BrokerError(f"Virtual machine failed to boot: {state.raw}")
            raise BrokerError(f"Unexpected state while booting {self.url}: {state.state.value}")

        raise BrokerError(f"Time out: VM is taking forever to boot {self.url}")

    def renew(self) -> None:
        self._post(_join(self.url, "renew"))

    def dispose(self) -> None:
        self._post(_join(self.url, "dispose"))

    def get_state(self) -> VirtualMachineState:
        return VirtualMachineState.from_dict(self._get_json(_join(self.url, ".")))

    def set_memo(self, memo: Dict[str, Any]) -> None:
        self._post(_join(self.url, "memo"), json=memo)


class HttpBrokerClient(BrokerClient):
    """Broker client for one account.

    Args:
        url: Broker root URL; mansion types live under ``{url}/{type}/``.
        token: Bearer token of the account.
        timeout: Per-request timeout in seconds.
        verify: TLS verification flag or CA bundle path.
        session: Pre-built session (tests).
    """

    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        timeout: int = 30,
        verify: Union[bool, str] = True,
        session: Optional[requests.Session] = None,
        sleep=time.sleep,
    ):
        self.url = url
        self.token = token
        self.timeout = timeout
        self._verify = verify
        self._session = session
        self.sleep = sleep

        if verify is False:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def get_session(self) -> requests.Session:
        """Get or create a requests session with retry configuration."""
        if self._session is None:
            session = requests.Session()
            retry = Retry(
                total=4,
                connect=4,
                read=4,
                backoff_factor=0.5,
                status_forcelist=(429, 500, 502, 503, 504),
                allowed_methods=("GET", "HEAD"),
            )
            adapter = HTTPAdapter(
                max_retries=retry,
                pool_connections=5,
                pool_maxsize=10,
            )
            session.mount("https://", adapter)
            session.mount("http://", adapter)
            session.verify = self._verify
            session.headers.update({"User-Agent": "mansion-provisioner/1.0"})
            if self.token:
                session.headers.update({"Authorization": f"Bearer {self.token}"})
            self._session = session
        return self._session

    def close(self) -> None:
        """Close the session and release resources."""
        if self._session is not None:
            self._session.close()
            self._session = None

    def verify_response(self, resp: requests.Response, url: str) -> None:
        """Map non-2xx responses to broker errors."""
        if resp.status_code // 100 == 2:
            return
        body = self._error_body(resp)
        message = body.get("message") or f"Failed to call {url} : {resp.status_code} {resp.reason}"

        if resp.status_code == 401:
            raise AuthenticationError(message, status_code=resp.status_code)
        if resp.status_code == 409 and body.get("error") == "too-many-vms":
            raise TooManyVirtualMachinesError(message, body.get("vmType"), body.get("hardwareSize"))
        if resp.status_code == 409 and body.get("error") == "quota":
            raise QuotaExceededError(message, body.get("vmType"), body.get("hardwareSize"))

        raise BrokerError(message, status_code=resp.status_code)

    @staticmethod
    def _error_body(resp: requests.Response) -> Dict[str, Any]:
        try:
            body = resp.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def create_virtual_machine(self, mansion_type: str, hardware: HardwareSpec) -> VirtualMachineRef:
        url = _join(_join(self.url, mansion_type), "createVirtualMachine")
        session = self.get_session()
        try:
            resp = session.post(url, json=hardware.to_dict(), timeout=self.timeout)
        except requests.RequestException as e:
            raise BrokerError(f"Failed to call {url}: {e}", e)
        self.verify_response(resp, url)
        location = resp.headers.get("Location")
        if not location:
            raise BrokerError(f"No virtual machine location returned by {url}")
        log.debug("Allocated %s", location)
        return HttpVirtualMachineRef(self, location)

    def file_system(self, url: str) -> FileSystemRef:
        return HttpFileSystemRef(self, url)

    def snapshot(self, url: str) -> SnapshotRef:
        return HttpSnapshotRef(self, url)
