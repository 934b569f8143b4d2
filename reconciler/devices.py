"""Device blocks: declared key/value fields -> validated device variants."""

from __future__ import annotations

from typing import Any, Callable, Dict, Mapping, Optional

from reconciler.constants import DEVICE_CATEGORIES, MAX_SLOTS, TRUTHY
from reconciler.exceptions import InvalidValue, MissingField, UnsupportedField
from reconciler.models import (
    CacheMode,
    Device,
    IDEDevice,
    MediaType,
    NetworkCardModel,
    NetworkDevice,
    SerialDevice,
    VirtIODevice,
    VolumeFormat,
)

_FALSY = {"0", "false", "no", "off"}


class _Block:
    """Typed accessors over one declared device block."""

    def __init__(self, category: str, fields: Mapping[str, Any]) -> None:
        self.category = category
        self.fields = fields

    def _raw(self, key: str) -> Any:
        value = self.fields.get(key)
        # Unset optional strings arrive as "" from most hosts.
        if value is None or value == "":
            return None
        return value

    def required_str(self, key: str) -> str:
        value = self._raw(key)
        if value is None:
            raise MissingField(key, self.category)
        return str(value)

    def optional_str(self, key: str) -> Optional[str]:
        value = self._raw(key)
        return None if value is None else str(value)

    def optional_int(self, key: str, min_val: int = 0) -> Optional[int]:
        value = self._raw(key)
        if value is None:
            return None
        if isinstance(value, bool):
            raise InvalidValue(f"{self.category}: '{key}' must be an integer (got {value!r})")
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise InvalidValue(f"{self.category}: '{key}' must be an integer (got {value!r})")
        if number < min_val:
            raise InvalidValue(f"{self.category}: '{key}' must be >= {min_val} (got {number})")
        return number

    def optional_float(self, key: str) -> Optional[float]:
        value = self._raw(key)
        if value is None:
            return None
        if isinstance(value, bool):
            raise InvalidValue(f"{self.category}: '{key}' must be a number (got {value!r})")
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise InvalidValue(f"{self.category}: '{key}' must be a number (got {value!r})")
        if number < 0:
            raise InvalidValue(f"{self.category}: '{key}' must be >= 0 (got {value})")
        return number

    def optional_bool(self, key: str) -> Optional[bool]:
        value = self._raw(key)
        if value is None:
            return None
        if isinstance(value, bool):
            return value
        token = str(value).strip().lower()
        if token in TRUTHY:
            return True
        if token in _FALSY:
            return False
        raise InvalidValue(f"{self.category}: '{key}' must be a boolean (got {value!r})")

    def slot(self) -> int:
        if self._raw("number") is None:
            raise MissingField("number", self.category)
        number = self.optional_int("number")
        assert number is not None
        limit = MAX_SLOTS[DEVICE_CATEGORIES[self.category]]
        if number >= limit:
            raise InvalidValue(f"{self.category}: slot number must be < {limit} (got {number})")
        return number


def _parse_ide(block: _Block) -> IDEDevice:
    media_raw = block.optional_str("media")
    return IDEDevice(
        number=block.slot(),
        file=block.required_str("file"),
        media=MediaType.from_string(media_raw, "media") if media_raw is not None else None,
        size=block.optional_str("size"),
    )


def _parse_network(block: _Block) -> NetworkDevice:
    number = block.slot()
    model = NetworkCardModel.from_string(block.required_str("model"), "model")
    return NetworkDevice(
        number=number,
        model=model,
        bridge=block.optional_str("bridge"),
        macaddr=block.optional_str("macaddr"),
        firewall=block.optional_bool("firewall"),
        link_down=block.optional_bool("link_down"),
        queues=block.optional_int("queues"),
        rate=block.optional_float("rate"),
        tag=block.optional_int("tag", min_val=1),
        trunks=block.optional_str("trunks"),
    )


def _parse_serial(block: _Block) -> SerialDevice:
    return SerialDevice(number=block.slot(), value=block.required_str("device"))


def _parse_virtio(block: _Block) -> VirtIODevice:
    cache_raw = block.optional_str("cache")
    format_raw = block.optional_str("format")
    return VirtIODevice(
        number=block.slot(),
        file=block.required_str("file"),
        size=block.optional_str("size"),
        cache=CacheMode.from_string(cache_raw, "cache") if cache_raw is not None else None,
        backup=block.optional_bool("backup"),
        format=VolumeFormat.from_string(format_raw, "format") if format_raw is not None else None,
        iothread=block.optional_bool("iothread"),
        snapshot=block.optional_bool("snapshot"),
    )


_PARSERS: Dict[str, Callable[[_Block], Device]] = {
    "ide_device": _parse_ide,
    "network_device": _parse_network,
    "serial_device": _parse_serial,
    "virtio_device": _parse_virtio,
}

SUPPORTED_FIELDS = {
    "ide_device": {"number", "file", "media", "size"},
    "network_device": {
        "number",
        "model",
        "bridge",
        "macaddr",
        "firewall",
        "link_down",
        "queues",
        "rate",
        "tag",
        "trunks",
    },
    "serial_device": {"number", "device"},
    "virtio_device": {"number", "file", "cache", "format", "backup", "iothread", "size", "snapshot"},
}


def parse_device(category: str, fields: Mapping[str, Any]) -> Device:
    """Build one device of ``category`` from a declared block."""
    parser = _PARSERS.get(category)
    if parser is None:
        raise InvalidValue(f"Unknown device category '{category}'")
    if not isinstance(fields, Mapping):
        raise InvalidValue(f"{category}: each block must be a mapping (got {type(fields).__name__})")
    for key in fields:
        if key not in SUPPORTED_FIELDS[category]:
            raise UnsupportedField(str(key), category)
    return parser(_Block(category, fields))
