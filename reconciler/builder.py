"""Build VM configurations from declared attributes."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Optional

from reconciler.constants import DEVICE_CATEGORIES
from reconciler.devices import parse_device
from reconciler.exceptions import DuplicateSlot, InvalidSourceId, InvalidValue, MissingField, UnsupportedField
from reconciler.models import CloneConfig, Device, VMConfig
from reconciler.resource import ResourceData
from reconciler.utils import log


def _positive_int(data: ResourceData, key: str) -> Optional[int]:
    if not data.get_ok(key)[1]:
        return None
    number = data.require_int(key)
    if number <= 0:
        raise InvalidValue(f"{data.kind}: '{key}' must be > 0 (got {number})")
    return number


def _optional_str(data: ResourceData, key: str) -> Optional[str]:
    value, ok = data.get_ok(key)
    return str(value) if ok else None


def _optional_bool(data: ResourceData, key: str) -> Optional[bool]:
    value, ok = data.get_ok(key)
    if not ok:
        return None
    if not isinstance(value, bool):
        raise InvalidValue(f"{data.kind}: '{key}' must be a boolean (got {value!r})")
    return value


def declared_flag(data: ResourceData, key: str) -> bool:
    """A create-time switch such as ``template``; undeclared means off."""
    return bool(_optional_bool(data, key))


def build_devices(category: str, blocks: Iterable[Any]) -> Dict[int, Device]:
    """Build one category's slot map; the first bad block aborts the whole map."""
    if isinstance(blocks, dict):
        blocks = [blocks]
    devices: Dict[int, Device] = {}
    for fields in blocks:
        device = parse_device(category, fields)
        if device.number in devices:
            raise DuplicateSlot(category, device.number)
        log("DEBUG", f"{DEVICE_CATEGORIES[category]}{device.number}: {device.option_value()}")
        devices[device.number] = device
    return devices


def _declared_devices(data: ResourceData, category: str) -> Optional[Dict[int, Device]]:
    blocks, ok = data.get_ok(category)
    if not ok:
        return None
    return build_devices(category, blocks)


def build_vm_config(data: ResourceData) -> VMConfig:
    """Full configuration: every declared scalar and device category."""
    return VMConfig(
        args=_optional_str(data, "args"),
        cores=_positive_int(data, "cores"),
        memory=_positive_int(data, "memory"),
        name=_optional_str(data, "name"),
        smbios1=_optional_str(data, "smbios1"),
        start_at_boot=_optional_bool(data, "start_at_boot"),
        ide_devices=_declared_devices(data, "ide_device"),
        network_devices=_declared_devices(data, "network_device"),
        serial_devices=_declared_devices(data, "serial_device"),
        virtio_devices=_declared_devices(data, "virtio_device"),
    )


def build_update_config(data: ResourceData) -> VMConfig:
    """Only the fields a clone does not carry over: network devices, cores and memory."""
    return VMConfig(
        cores=_positive_int(data, "cores"),
        memory=_positive_int(data, "memory"),
        network_devices=_declared_devices(data, "network_device"),
    )


CLONE_FIELDS = {"source_id", "full"}


def parse_source_id(clone: Mapping[str, Any]) -> int:
    if "source_id" not in clone or clone["source_id"] in (None, ""):
        raise MissingField("source_id", "clone")
    raw = clone["source_id"]
    if isinstance(raw, bool):
        raise InvalidSourceId(raw)
    try:
        source_id = int(str(raw).strip())
    except ValueError:
        raise InvalidSourceId(raw)
    if source_id < 0:
        raise InvalidSourceId(raw)
    return source_id


def clone_block(data: ResourceData) -> Mapping[str, Any]:
    clone = data.get("clone", {})
    if not isinstance(clone, Mapping):
        raise InvalidValue(f"clone must be a mapping (got {type(clone).__name__})")
    for key in clone:
        if key not in CLONE_FIELDS:
            raise UnsupportedField(str(key), "clone")
    return clone


def build_clone_config(data: ResourceData) -> CloneConfig:
    clone = clone_block(data)
    config = CloneConfig(name=_optional_str(data, "name"))
    if "full" in clone:
        config.full = True
    return config
