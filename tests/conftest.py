"""Shared test fixtures: a fake hypervisor client and declared resources."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from reconciler.client import HypervisorClient
from reconciler.models import VMStatus
from reconciler.resource import ResourceData
from reconciler.vm import VMController
from reconciler.volume import VolumeController


@pytest.fixture
def client() -> MagicMock:
    """A HypervisorClient double; every call is recorded in ``mock_calls``."""
    fake = MagicMock(spec=HypervisorClient)
    fake.get_vm_config.return_value = {"name": "web", "cores": 2, "memory": 2048}
    fake.get_vm_current_status.return_value = VMStatus(status="stopped")
    fake.get_storage_volumes.return_value = []
    return fake


@pytest.fixture
def controller(client) -> VMController:
    return VMController(client, clone_timeout=5, stop_timeout=5, poll_interval=0)


@pytest.fixture
def volume_controller(client) -> VolumeController:
    return VolumeController(client)


@pytest.fixture
def vm_data():
    """Build a VM ResourceData from keyword attributes."""

    def _make(resource_id: str = "", **attributes) -> ResourceData:
        attributes.setdefault("node", "pve1")
        attributes.setdefault("vm_id", 100)
        return ResourceData("vm", attributes, resource_id=resource_id)

    return _make


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


# All environment variables that parse_env() reads.
_PARSE_ENV_VARS = [
    "PROXMOX_HOST",
    "PROXMOX_PORT",
    "PROXMOX_USERNAME",
    "PROXMOX_PASSWORD",
    "PROXMOX_TOKEN_ID",
    "PROXMOX_TOKEN_SECRET",
    "PROXMOX_VERIFY_SSL",
    "PROXMOX_REQUEST_TIMEOUT",
    "CLONE_TIMEOUT",
    "STOP_TIMEOUT",
    "POLL_INTERVAL",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Clear all environment variables that parse_env() reads, then set a host and credentials."""
    for key in _PARSE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("PROXMOX_HOST", "pve.example.com")
    monkeypatch.setenv("PROXMOX_USERNAME", "root@pam")
    monkeypatch.setenv("PROXMOX_PASSWORD", "secret")
