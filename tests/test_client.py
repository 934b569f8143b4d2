"""Tests for reconciler.client module."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import requests

from reconciler.client import ProxmoxClient
from reconciler.exceptions import HypervisorError, NodeDoesNotExist, ReconcilerError, VMDoesNotExist
from reconciler.models import CloneConfig, VMConfig

BASE = "https://pve.example.com:8006/api2/json"


def _response(status_code=200, payload=None, reason="OK"):
    resp = MagicMock()
    resp.status_code = status_code
    resp.reason = reason
    resp.content = b"{}" if payload is not None else b""
    resp.json.return_value = payload
    return resp


@pytest.fixture
def session():
    with patch("reconciler.client.requests.Session") as mock_cls:
        fake = MagicMock()
        fake.headers = {}
        mock_cls.return_value = fake
        yield fake


@pytest.fixture
def token_client(session):
    return ProxmoxClient("pve.example.com", token_id="root@pam!ci", token_secret="uuid")


class TestConstruction:
    def test_requires_host(self, session):
        with pytest.raises(ReconcilerError):
            ProxmoxClient("", token_id="a", token_secret="b")

    def test_requires_credentials(self, session):
        with pytest.raises(ReconcilerError):
            ProxmoxClient("pve.example.com", username="root@pam")

    def test_token_header(self, token_client, session):
        assert token_client.base_url == BASE
        assert session.headers["Authorization"] == "PVEAPIToken=root@pam!ci=uuid"
        assert "User-Agent" in session.headers

    def test_explicit_scheme_keeps_url(self, session):
        client = ProxmoxClient("http://localhost:9999/", token_id="a", token_secret="b")
        assert client.base_url == "http://localhost:9999/api2/json"

    def test_close(self, token_client, session):
        token_client.close()
        session.close.assert_called_once_with()


class TestLogin:
    def test_ticket_login_before_first_request(self, session):
        session.post.return_value = _response(
            payload={"data": {"ticket": "PVE:root@pam:ABC", "CSRFPreventionToken": "csrf"}}
        )
        session.request.return_value = _response(payload={"data": {"name": "web"}})
        client = ProxmoxClient("pve.example.com", username="root@pam", password="secret")

        assert client.get_vm_config("pve1", 100) == {"name": "web"}
        session.post.assert_called_once()
        assert session.post.call_args[0][0] == f"{BASE}/access/ticket"
        session.cookies.set.assert_called_once_with("PVEAuthCookie", "PVE:root@pam:ABC")
        assert session.headers["CSRFPreventionToken"] == "csrf"

    def test_bad_credentials(self, session):
        session.post.return_value = _response(401, payload={}, reason="authentication failure")
        client = ProxmoxClient("pve.example.com", username="root@pam", password="wrong")
        with pytest.raises(HypervisorError) as exc:
            client.start_vm("pve1", 100)
        assert exc.value.operation == "login"
        assert exc.value.status_code == 401
        session.request.assert_not_called()


class TestEndpoints:
    def test_create_vm(self, token_client, session):
        session.request.return_value = _response(payload={"data": "UPID:pve1:create"})
        task = token_client.create_vm("pve1", 100, VMConfig(cores=2, memory=2048))
        assert task == "UPID:pve1:create"
        session.request.assert_called_once_with(
            "POST",
            f"{BASE}/nodes/pve1/qemu",
            timeout=30,
            verify=True,
            data={"vmid": 100, "cores": 2, "memory": 2048},
        )

    def test_clone_vm(self, token_client, session):
        session.request.return_value = _response(payload={"data": "UPID"})
        token_client.clone_vm("pve1", 100, 200, CloneConfig(full=True))
        method, url = session.request.call_args[0]
        assert method == "POST"
        assert url == f"{BASE}/nodes/pve1/qemu/100/clone"
        assert session.request.call_args[1]["data"] == {"newid": 200, "full": 1}

    def test_update_vm_without_reboot(self, token_client, session):
        session.request.return_value = _response(payload={"data": None})
        token_client.update_vm("pve1", 100, VMConfig(cores=4))
        session.request.assert_called_once()
        method, url = session.request.call_args[0]
        assert (method, url) == ("PUT", f"{BASE}/nodes/pve1/qemu/100/config")

    def test_update_vm_with_reboot(self, token_client, session):
        session.request.return_value = _response(payload={"data": None})
        token_client.update_vm("pve1", 100, VMConfig(cores=4), reboot=True)
        urls = [c[0][1] for c in session.request.call_args_list]
        assert urls == [f"{BASE}/nodes/pve1/qemu/100/config", f"{BASE}/nodes/pve1/qemu/100/status/reboot"]

    def test_lifecycle_paths(self, token_client, session):
        session.request.return_value = _response(payload={"data": "UPID"})
        token_client.create_vm_template("pve1", 100)
        token_client.start_vm("pve1", 100)
        token_client.stop_vm("pve1", 100)
        token_client.delete_vm("pve1", 100)
        calls = [c[0] for c in session.request.call_args_list]
        assert calls == [
            ("POST", f"{BASE}/nodes/pve1/qemu/100/template"),
            ("POST", f"{BASE}/nodes/pve1/qemu/100/status/start"),
            ("POST", f"{BASE}/nodes/pve1/qemu/100/status/stop"),
            ("DELETE", f"{BASE}/nodes/pve1/qemu/100"),
        ]

    def test_current_status(self, token_client, session):
        session.request.return_value = _response(payload={"data": {"status": "running", "lock": "backup"}})
        status = token_client.get_vm_current_status("pve1", 100)
        assert status.status == "running"
        assert status.lock == "backup"

    def test_storage_volumes(self, token_client, session):
        session.request.return_value = _response(
            payload={"data": [{"volid": "local:100/disk.raw", "vmid": "100", "size": 10, "format": "raw"}]}
        )
        volumes = token_client.get_storage_volumes("pve1", "local")
        assert volumes[0].volid == "local:100/disk.raw"
        assert volumes[0].vmid == 100
        assert session.request.call_args[0][1] == f"{BASE}/nodes/pve1/storage/local/content"

    def test_delete_volume_quotes_id(self, token_client, session):
        session.request.return_value = _response(payload={"data": None})
        token_client.delete_volume("pve1", "local", "local:100/disk.raw")
        url = session.request.call_args[0][1]
        assert url == f"{BASE}/nodes/pve1/storage/local/content/local%3A100%2Fdisk.raw"


class TestErrors:
    def test_missing_vm(self, token_client, session):
        session.request.return_value = _response(
            500, payload={"data": None}, reason="Configuration file 'nodes/pve1/qemu-server/100.conf' does not exist"
        )
        with pytest.raises(VMDoesNotExist) as exc:
            token_client.get_vm_config("pve1", 100)
        assert exc.value.operation == "get VM config"
        assert exc.value.vmid == 100

    def test_missing_node(self, token_client, session):
        session.request.return_value = _response(
            595, payload={"data": None}, reason="hostname lookup 'pve9' failed - failed to get address info"
        )
        with pytest.raises(NodeDoesNotExist):
            token_client.get_vm_config("pve9", 100)

    def test_parameter_errors_are_reported(self, token_client, session):
        session.request.return_value = _response(
            400,
            payload={"data": None, "errors": {"net0": "invalid format - unknown model"}},
            reason="Parameter verification failed.",
        )
        with pytest.raises(HypervisorError) as exc:
            token_client.update_vm("pve1", 100, VMConfig(cores=1))
        assert type(exc.value) is HypervisorError
        assert "net0: invalid format - unknown model" in str(exc.value)
        assert exc.value.status_code == 400

    def test_transport_error(self, token_client, session):
        session.request.side_effect = requests.ConnectionError("connection refused")
        with pytest.raises(HypervisorError) as exc:
            token_client.stop_vm("pve1", 100)
        assert "connection refused" in str(exc.value)
        assert exc.value.operation == "stop VM"
