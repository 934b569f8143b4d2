"""Hypervisor client: the capability the controllers drive, and its Proxmox VE implementation."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from reconciler.constants import USER_AGENT
from reconciler.exceptions import HypervisorError, NodeDoesNotExist, ReconcilerError, VMDoesNotExist
from reconciler.models import CloneConfig, VMConfig, VMStatus, Volume
from reconciler.utils import log

_VM_MISSING_RE = re.compile(r"configuration file .* does not exist|vm \d+ does not exist|no such vm", re.IGNORECASE)
_NODE_MISSING_RE = re.compile(
    r"no such node|hostname lookup '[^']*' failed|node '[^']*' does not exist",
    re.IGNORECASE,
)


class HypervisorClient(ABC):
    """Imperative VM and storage operations addressed by (node, id).

    Methods return the hypervisor task id where the API reports one. Failures
    raise ``HypervisorError``; ``VMDoesNotExist`` and ``NodeDoesNotExist``
    mark a missing target.
    """

    @abstractmethod
    def create_vm(self, node: str, vmid: int, config: VMConfig) -> Optional[str]:
        pass

    @abstractmethod
    def create_vm_template(self, node: str, vmid: int, disk: str = "") -> Optional[str]:
        """Convert a VM into a template. There is no way back."""
        pass

    @abstractmethod
    def start_vm(self, node: str, vmid: int) -> Optional[str]:
        pass

    @abstractmethod
    def stop_vm(self, node: str, vmid: int) -> Optional[str]:
        pass

    @abstractmethod
    def delete_vm(self, node: str, vmid: int) -> Optional[str]:
        pass

    @abstractmethod
    def clone_vm(self, node: str, source_id: int, new_id: int, config: CloneConfig) -> Optional[str]:
        pass

    @abstractmethod
    def update_vm(self, node: str, vmid: int, config: VMConfig, reboot: bool = False) -> Optional[str]:
        pass

    @abstractmethod
    def get_vm_config(self, node: str, vmid: int) -> Dict[str, Any]:
        pass

    @abstractmethod
    def get_vm_current_status(self, node: str, vmid: int) -> VMStatus:
        pass

    @abstractmethod
    def create_volume(self, node: str, storage_name: str, vmid: int, filename: str, size: str) -> Optional[str]:
        pass

    @abstractmethod
    def get_storage_volumes(self, node: str, storage_name: str) -> List[Volume]:
        pass

    @abstractmethod
    def delete_volume(self, node: str, storage_name: str, volume_id: str) -> Optional[str]:
        pass


class ProxmoxClient(HypervisorClient):
    """Proxmox VE ``/api2/json`` over a ``requests`` session."""

    def __init__(
        self,
        host: str,
        port: int = 8006,
        username: Optional[str] = None,
        password: Optional[str] = None,
        token_id: Optional[str] = None,
        token_secret: Optional[str] = None,
        verify_ssl: bool = True,
        timeout: int = 30,
    ) -> None:
        if not host:
            raise ReconcilerError("Proxmox host is required")
        if not (token_id and token_secret) and not (username and password):
            raise ReconcilerError("Either an API token or username/password is required")
        base = host.rstrip("/")
        if not base.startswith(("http://", "https://")):
            base = f"https://{base}:{port}"
        self.base_url = f"{base}/api2/json"
        self.username = username
        self.password = password
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers["User-Agent"] = USER_AGENT
        self._authenticated = False
        if token_id and token_secret:
            self.session.headers["Authorization"] = f"PVEAPIToken={token_id}={token_secret}"
            self._authenticated = True
        log("INFO", f"Proxmox client configured for URL: {self.base_url}")

    def close(self) -> None:
        self.session.close()

    def _login(self) -> None:
        log("DEBUG", f"Requesting ticket for {self.username}")
        try:
            resp = self.session.post(
                f"{self.base_url}/access/ticket",
                data={"username": self.username, "password": self.password},
                timeout=self.timeout,
                verify=self.verify_ssl,
            )
        except requests.RequestException as exc:
            raise HypervisorError(f"login request failed: {exc}", operation="login")
        if resp.status_code >= 400:
            raise HypervisorError(
                f"authentication failed: {resp.status_code} {resp.reason}",
                operation="login",
                status_code=resp.status_code,
            )
        data = resp.json().get("data") or {}
        ticket = data.get("ticket")
        if not ticket:
            raise HypervisorError("authentication failed: no ticket returned", operation="login")
        self.session.cookies.set("PVEAuthCookie", ticket)
        self.session.headers["CSRFPreventionToken"] = data.get("CSRFPreventionToken", "")
        self._authenticated = True

    @staticmethod
    def _error_message(resp: requests.Response) -> str:
        message = resp.reason or ""
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            errors = payload.get("errors")
            if isinstance(errors, dict) and errors:
                details = "; ".join(f"{key}: {str(value).strip()}" for key, value in sorted(errors.items()))
                message = f"{message} ({details})" if message else details
            elif isinstance(payload.get("message"), str):
                message = payload["message"].strip()
        return message or f"HTTP {resp.status_code}"

    def _classify(self, resp: requests.Response, operation: str, node: str, vmid: Optional[object]) -> HypervisorError:
        message = self._error_message(resp)
        if _NODE_MISSING_RE.search(message):
            error_cls = NodeDoesNotExist
        elif _VM_MISSING_RE.search(message):
            error_cls = VMDoesNotExist
        else:
            error_cls = HypervisorError
        return error_cls(message, operation=operation, node=node, vmid=vmid, status_code=resp.status_code)

    def _request(
        self,
        method: str,
        path: str,
        operation: str,
        node: str,
        vmid: Optional[object] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        if not self._authenticated:
            self._login()
        url = f"{self.base_url}{path}"
        log("DEBUG", f"{method} {path} {params or ''}".rstrip())
        kwargs: Dict[str, Any] = {"timeout": self.timeout, "verify": self.verify_ssl}
        if method in ("GET", "DELETE"):
            kwargs["params"] = params
        else:
            kwargs["data"] = params
        try:
            resp = self.session.request(method, url, **kwargs)
        except requests.RequestException as exc:
            raise HypervisorError(f"request failed: {exc}", operation=operation, node=node, vmid=vmid)
        if resp.status_code >= 400:
            raise self._classify(resp, operation, node, vmid)
        if not resp.content:
            return None
        try:
            return resp.json().get("data")
        except ValueError:
            raise HypervisorError(
                "response is not valid JSON",
                operation=operation,
                node=node,
                vmid=vmid,
                status_code=resp.status_code,
            )

    @staticmethod
    def _qemu(node: str, vmid: int) -> str:
        return f"/nodes/{quote(node, safe='')}/qemu/{vmid}"

    @staticmethod
    def _content(node: str, storage_name: str) -> str:
        return f"/nodes/{quote(node, safe='')}/storage/{quote(storage_name, safe='')}/content"

    def create_vm(self, node: str, vmid: int, config: VMConfig) -> Optional[str]:
        params = {"vmid": vmid, **config.to_params()}
        return self._request("POST", f"/nodes/{quote(node, safe='')}/qemu", "create VM", node, vmid, params)

    def create_vm_template(self, node: str, vmid: int, disk: str = "") -> Optional[str]:
        params = {"disk": disk} if disk else None
        return self._request("POST", f"{self._qemu(node, vmid)}/template", "create template", node, vmid, params)

    def start_vm(self, node: str, vmid: int) -> Optional[str]:
        return self._request("POST", f"{self._qemu(node, vmid)}/status/start", "start VM", node, vmid)

    def stop_vm(self, node: str, vmid: int) -> Optional[str]:
        return self._request("POST", f"{self._qemu(node, vmid)}/status/stop", "stop VM", node, vmid)

    def delete_vm(self, node: str, vmid: int) -> Optional[str]:
        return self._request("DELETE", self._qemu(node, vmid), "delete VM", node, vmid)

    def clone_vm(self, node: str, source_id: int, new_id: int, config: CloneConfig) -> Optional[str]:
        params = {"newid": new_id, **config.to_params()}
        return self._request("POST", f"{self._qemu(node, source_id)}/clone", "clone VM", node, source_id, params)

    def update_vm(self, node: str, vmid: int, config: VMConfig, reboot: bool = False) -> Optional[str]:
        # PUT applies the change synchronously, POST would queue a task.
        result = self._request("PUT", f"{self._qemu(node, vmid)}/config", "update VM", node, vmid, config.to_params())
        if reboot:
            return self._request("POST", f"{self._qemu(node, vmid)}/status/reboot", "reboot VM", node, vmid)
        return result

    def get_vm_config(self, node: str, vmid: int) -> Dict[str, Any]:
        return self._request("GET", f"{self._qemu(node, vmid)}/config", "get VM config", node, vmid) or {}

    def get_vm_current_status(self, node: str, vmid: int) -> VMStatus:
        payload = self._request("GET", f"{self._qemu(node, vmid)}/status/current", "get VM status", node, vmid)
        return VMStatus.from_payload(payload or {})

    def create_volume(self, node: str, storage_name: str, vmid: int, filename: str, size: str) -> Optional[str]:
        params = {"vmid": vmid, "filename": filename, "size": size}
        return self._request("POST", self._content(node, storage_name), "create volume", node, vmid, params)

    def get_storage_volumes(self, node: str, storage_name: str) -> List[Volume]:
        payload = self._request("GET", self._content(node, storage_name), "list volumes", node) or []
        return [Volume.from_payload(item) for item in payload]

    def delete_volume(self, node: str, storage_name: str, volume_id: str) -> Optional[str]:
        path = f"{self._content(node, storage_name)}/{quote(volume_id, safe='')}"
        return self._request("DELETE", path, "delete volume", node, volume_id)
