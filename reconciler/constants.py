"""Global constants for proxmox-reconciler."""

from __future__ import annotations

import os
from pathlib import Path

DEFAULT_MANIFEST_PATH = Path("resources.yaml")
DEFAULT_STATE_PATH = Path("reconciler-state.yaml")

TRUTHY = {"1", "true", "yes", "on"}

DEFAULT_API_PORT = "8006"
DEFAULT_REQUEST_TIMEOUT = "30"
USER_AGENT = "proxmox-reconciler/1.0"

# Waits on asynchronous hypervisor work, in seconds.
DEFAULT_CLONE_TIMEOUT = "300"
DEFAULT_STOP_TIMEOUT = "120"
DEFAULT_POLL_INTERVAL = "2"

STATUS_RUNNING = "running"

# Device categories as declared, mapped to the Proxmox option prefix.
DEVICE_CATEGORIES = {
    "ide_device": "ide",
    "network_device": "net",
    "serial_device": "serial",
    "virtio_device": "virtio",
}

# Proxmox slot limits per option prefix (ide0-3, net0-31, serial0-3, virtio0-15).
MAX_SLOTS = {
    "ide": 4,
    "net": 32,
    "serial": 4,
    "virtio": 16,
}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in {"1", "true", "yes", "on"}

_SENSITIVE_FIELDS = {"password", "token_secret"}
