"""Data models for proxmox-reconciler."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Union

from reconciler.exceptions import InvalidEnumValue, ValidationError


class _OptionEnum(str, Enum):
    """Closed set of tokens accepted by a Proxmox option."""

    @classmethod
    def from_string(cls, value: object, field_name: str) -> "_OptionEnum":
        if isinstance(value, str):
            token = value.strip().lower()
            for member in cls:
                if member.value == token:
                    return member
        raise InvalidEnumValue(field_name, value, [member.value for member in cls])


class MediaType(_OptionEnum):
    CDROM = "cdrom"
    DISK = "disk"


class NetworkCardModel(_OptionEnum):
    E1000 = "e1000"
    E1000_82540EM = "e1000-82540em"
    E1000_82544GC = "e1000-82544gc"
    E1000_82545EM = "e1000-82545em"
    E1000E = "e1000e"
    I82551 = "i82551"
    I82557B = "i82557b"
    I82559ER = "i82559er"
    NE2K_ISA = "ne2k_isa"
    NE2K_PCI = "ne2k_pci"
    PCNET = "pcnet"
    RTL8139 = "rtl8139"
    VIRTIO = "virtio"
    VMXNET3 = "vmxnet3"


class CacheMode(_OptionEnum):
    NONE = "none"
    WRITEBACK = "writeback"
    WRITETHROUGH = "writethrough"
    DIRECTSYNC = "directsync"
    UNSAFE = "unsafe"


class VolumeFormat(_OptionEnum):
    RAW = "raw"
    COW = "cow"
    QCOW = "qcow"
    QED = "qed"
    QCOW2 = "qcow2"
    VMDK = "vmdk"
    CLOOP = "cloop"


def _flag(value: bool) -> str:
    return "1" if value else "0"


def _decimal(value: float) -> str:
    """Plain decimal notation without trailing zeros (never exponent form)."""
    return format(value, "f").rstrip("0").rstrip(".") or "0"


def _join(head: str, options: List[str]) -> str:
    return ",".join([head] + options)


@dataclass
class IDEDevice:
    number: int
    file: str
    media: Optional[MediaType] = None
    size: Optional[str] = None

    def option_value(self) -> str:
        options = []
        if self.media is not None:
            options.append(f"media={self.media.value}")
        if self.size is not None:
            options.append(f"size={self.size}")
        return _join(self.file, options)


@dataclass
class NetworkDevice:
    number: int
    model: NetworkCardModel
    bridge: Optional[str] = None
    macaddr: Optional[str] = None  # None lets the hypervisor assign one
    firewall: Optional[bool] = None
    link_down: Optional[bool] = None
    queues: Optional[int] = None
    rate: Optional[float] = None
    tag: Optional[int] = None
    trunks: Optional[str] = None

    def option_value(self) -> str:
        head = self.model.value if self.macaddr is None else f"{self.model.value}={self.macaddr}"
        options = []
        if self.bridge is not None:
            options.append(f"bridge={self.bridge}")
        if self.firewall is not None:
            options.append(f"firewall={_flag(self.firewall)}")
        if self.link_down is not None:
            options.append(f"link_down={_flag(self.link_down)}")
        if self.queues is not None:
            options.append(f"queues={self.queues}")
        if self.rate is not None:
            options.append(f"rate={_decimal(self.rate)}")
        if self.tag is not None:
            options.append(f"tag={self.tag}")
        if self.trunks is not None:
            options.append(f"trunks={self.trunks}")
        return _join(head, options)


@dataclass
class SerialDevice:
    number: int
    value: str

    def option_value(self) -> str:
        return self.value


@dataclass
class VirtIODevice:
    number: int
    file: str
    size: Optional[str] = None
    cache: Optional[CacheMode] = None
    backup: Optional[bool] = None
    format: Optional[VolumeFormat] = None
    iothread: Optional[bool] = None
    snapshot: Optional[bool] = None

    def option_value(self) -> str:
        options = []
        if self.cache is not None:
            options.append(f"cache={self.cache.value}")
        if self.format is not None:
            options.append(f"format={self.format.value}")
        if self.backup is not None:
            options.append(f"backup={_flag(self.backup)}")
        if self.iothread is not None:
            options.append(f"iothread={_flag(self.iothread)}")
        if self.size is not None:
            options.append(f"size={self.size}")
        if self.snapshot is not None:
            options.append(f"snapshot={_flag(self.snapshot)}")
        return _join(self.file, options)


Device = Union[IDEDevice, NetworkDevice, SerialDevice, VirtIODevice]


@dataclass
class VMConfig:
    """Desired or observed guest configuration. ``None`` means not declared."""

    args: Optional[str] = None
    cores: Optional[int] = None
    memory: Optional[int] = None
    name: Optional[str] = None
    smbios1: Optional[str] = None
    start_at_boot: Optional[bool] = None
    ide_devices: Optional[Dict[int, IDEDevice]] = None
    network_devices: Optional[Dict[int, NetworkDevice]] = None
    serial_devices: Optional[Dict[int, SerialDevice]] = None
    virtio_devices: Optional[Dict[int, VirtIODevice]] = None

    def is_empty(self) -> bool:
        return self.to_params() == {}

    def to_params(self) -> Dict[str, Any]:
        """Render the declared fields as Proxmox API parameters."""
        params: Dict[str, Any] = {}
        if self.args is not None:
            params["args"] = self.args
        if self.cores is not None:
            params["cores"] = self.cores
        if self.memory is not None:
            params["memory"] = self.memory
        if self.name is not None:
            params["name"] = self.name
        if self.smbios1 is not None:
            params["smbios1"] = self.smbios1
        if self.start_at_boot is not None:
            params["onboot"] = int(self.start_at_boot)
        for prefix, devices in (
            ("ide", self.ide_devices),
            ("net", self.network_devices),
            ("serial", self.serial_devices),
            ("virtio", self.virtio_devices),
        ):
            for number, device in sorted((devices or {}).items()):
                params[f"{prefix}{number}"] = device.option_value()
        return params

    @classmethod
    def from_params(cls, params: Dict[str, Any]) -> "VMConfig":
        """Read the scalar fields back from a live ``config`` payload."""

        def _int(key: str) -> Optional[int]:
            raw = params.get(key)
            if raw is None:
                return None
            try:
                return int(raw)
            except (TypeError, ValueError):
                return None

        onboot = params.get("onboot")
        return cls(
            args=params.get("args"),
            cores=_int("cores"),
            memory=_int("memory"),
            name=params.get("name"),
            smbios1=params.get("smbios1"),
            start_at_boot=None if onboot is None else str(onboot) == "1",
        )


@dataclass
class CloneConfig:
    name: Optional[str] = None
    full: Optional[bool] = None

    def to_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if self.name is not None:
            params["name"] = self.name
        if self.full is not None:
            params["full"] = int(self.full)
        return params


@dataclass
class VMStatus:
    status: str
    name: Optional[str] = None
    lock: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "VMStatus":
        return cls(
            status=str(payload.get("status", "unknown")),
            name=payload.get("name"),
            lock=payload.get("lock"),
            raw=dict(payload),
        )


class VolumeId(NamedTuple):
    storage_name: str
    vmid: int
    filename: str

    def __str__(self) -> str:
        return f"{self.storage_name}:{self.vmid}/{self.filename}"

    @classmethod
    def parse(cls, raw: str) -> "VolumeId":
        storage_name, sep, rest = raw.partition(":")
        vmid_raw, slash, filename = rest.partition("/")
        if not sep or not slash or not storage_name or not filename:
            raise ValidationError(f"Invalid volume id '{raw}': expected <storage>:<vmid>/<filename>")
        try:
            vmid = int(vmid_raw)
        except ValueError:
            raise ValidationError(f"Invalid volume id '{raw}': vmid must be an integer")
        return cls(storage_name=storage_name, vmid=vmid, filename=filename)


@dataclass
class Volume:
    volid: str
    vmid: Optional[int] = None
    size: Optional[int] = None
    format: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Volume":
        vmid = payload.get("vmid")
        size = payload.get("size")
        return cls(
            volid=str(payload.get("volid", "")),
            vmid=int(vmid) if vmid is not None else None,
            size=int(size) if size is not None else None,
            format=payload.get("format"),
        )


@dataclass
class Settings:
    host: str
    port: int
    username: Optional[str]
    password: Optional[str]
    token_id: Optional[str]
    token_secret: Optional[str]
    verify_ssl: bool
    request_timeout: int
    clone_timeout: int
    stop_timeout: int
    poll_interval: int


@dataclass
class ResourceSpec:
    """One entry of a manifest: a named resource and its declared attributes."""

    name: str
    kind: str  # "vm" or "volume"
    attributes: Dict[str, Any]
