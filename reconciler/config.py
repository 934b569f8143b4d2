"""Configuration loading: environment settings, resource manifests and state files."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from reconciler.constants import (
    DEFAULT_API_PORT,
    DEFAULT_CLONE_TIMEOUT,
    DEFAULT_MANIFEST_PATH,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_STATE_PATH,
    DEFAULT_STOP_TIMEOUT,
)
from reconciler.exceptions import ReconcilerError
from reconciler.models import ResourceSpec, Settings
from reconciler.utils import get_env, get_env_bool, log, parse_int_env

RESOURCE_KINDS = {"vm", "volume"}


def _optional_env(name: str) -> Optional[str]:
    raw = get_env(name)
    if raw is None:
        return None
    return raw.strip() or None


def parse_env(require_credentials: bool = True) -> Settings:
    host = (get_env("PROXMOX_HOST") or "").strip()
    if require_credentials and not host:
        raise ReconcilerError("PROXMOX_HOST is required (e.g. pve.example.com or https://pve.example.com:8006)")

    port = parse_int_env("PROXMOX_PORT", DEFAULT_API_PORT, min_val=1, max_val=65535)
    username = _optional_env("PROXMOX_USERNAME")
    password = get_env("PROXMOX_PASSWORD")
    token_id = _optional_env("PROXMOX_TOKEN_ID")
    token_secret = _optional_env("PROXMOX_TOKEN_SECRET")

    if bool(token_id) != bool(token_secret):
        raise ReconcilerError("Set both PROXMOX_TOKEN_ID and PROXMOX_TOKEN_SECRET, or neither.")
    if require_credentials and not token_id:
        if not username or not password:
            raise ReconcilerError(
                "Proxmox credentials missing: set PROXMOX_TOKEN_ID/PROXMOX_TOKEN_SECRET "
                "or PROXMOX_USERNAME/PROXMOX_PASSWORD"
            )
        if "@" not in username:
            log("WARN", f"PROXMOX_USERNAME '{username}' has no realm; Proxmox expects user@realm (e.g. root@pam)")

    verify_ssl = get_env_bool("PROXMOX_VERIFY_SSL", True)
    if not verify_ssl:
        log("WARN", "PROXMOX_VERIFY_SSL=0: TLS certificates will not be verified")

    return Settings(
        host=host,
        port=port,
        username=username,
        password=password,
        token_id=token_id,
        token_secret=token_secret,
        verify_ssl=verify_ssl,
        request_timeout=parse_int_env("PROXMOX_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT),
        clone_timeout=parse_int_env("CLONE_TIMEOUT", DEFAULT_CLONE_TIMEOUT),
        stop_timeout=parse_int_env("STOP_TIMEOUT", DEFAULT_STOP_TIMEOUT),
        poll_interval=parse_int_env("POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
    )


def _read_yaml(path: Path) -> Any:
    try:
        return yaml.safe_load(path.read_text())
    except OSError as exc:
        raise ReconcilerError(f"Cannot read {path}: {exc}")
    except yaml.YAMLError as exc:
        raise ReconcilerError(f"{path} contains invalid YAML: {exc}")


def load_manifest(path: Optional[Path] = None) -> List[ResourceSpec]:
    """Read declared resources, in file order.

    ::

        resources:
          web:
            type: vm
            node: pve1
            vm_id: 100
    """
    if path is None:
        path = DEFAULT_MANIFEST_PATH
    if not path.exists():
        raise ReconcilerError(f"Manifest missing: {path}")
    data = _read_yaml(path) or {}
    if not isinstance(data, dict):
        raise ReconcilerError(f"{path}: top level must be a mapping")
    resources = data.get("resources") or {}
    if not isinstance(resources, dict):
        raise ReconcilerError(f"{path}: 'resources' must be a mapping of name -> attributes")

    specs: List[ResourceSpec] = []
    for name, entry in resources.items():
        if not isinstance(entry, dict):
            raise ReconcilerError(f"[{name}] entry is not a mapping")
        attributes = dict(entry)
        kind = str(attributes.pop("type", "vm")).strip().lower()
        if kind not in RESOURCE_KINDS:
            raise ReconcilerError(f"[{name}] unknown type '{kind}'. Supported: {', '.join(sorted(RESOURCE_KINDS))}")
        specs.append(ResourceSpec(name=str(name), kind=kind, attributes=attributes))
    return specs


def load_state(path: Optional[Path] = None) -> Dict[str, Dict[str, Any]]:
    """Persisted identifiers and reflected attributes, keyed by resource name."""
    if path is None:
        path = DEFAULT_STATE_PATH
    if not path.exists():
        return {}
    data = _read_yaml(path) or {}
    resources = data.get("resources") if isinstance(data, dict) else None
    if not isinstance(resources, dict):
        raise ReconcilerError(f"{path}: 'resources' must be a mapping")
    return resources


def save_state(state: Dict[str, Dict[str, Any]], path: Optional[Path] = None) -> None:
    if path is None:
        path = DEFAULT_STATE_PATH
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_text(yaml.safe_dump({"resources": state}, sort_keys=True))
    tmp_path.replace(path)
    log("DEBUG", f"State written to {path}")
