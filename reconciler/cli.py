"""CLI entry points for proxmox-reconciler."""

from __future__ import annotations

import argparse
import dataclasses
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from reconciler.builder import build_clone_config, build_vm_config, clone_block, parse_source_id
from reconciler.client import ProxmoxClient
from reconciler.config import load_manifest, load_state, parse_env, save_state
from reconciler.constants import _SENSITIVE_FIELDS, DEFAULT_MANIFEST_PATH, DEFAULT_STATE_PATH
from reconciler.exceptions import OperationCancelled, ReconcilerError, WaitTimeout
from reconciler.models import ResourceSpec, Settings
from reconciler.resource import ResourceData
from reconciler.utils import log
from reconciler.vm import VMController
from reconciler.volume import VolumeController

Controller = Union[VMController, VolumeController]

# Attributes whose change cannot be applied in place.
VM_FORCE_NEW = ("node", "vm_id", "template", "start_after_create")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_RETRYABLE = 75  # EX_TEMPFAIL
EXIT_CANCELLED = 130


class Reconciler:
    """Minimal host: drives controllers from a manifest and keeps a state file."""

    def __init__(self, vm: VMController, volume: VolumeController, state: Dict[str, Dict[str, Any]], state_path: Path):
        self.controllers: Dict[str, Controller] = {"vm": vm, "volume": volume}
        self.state = state
        self.state_path = state_path

    def _data_from_state(self, name: str) -> ResourceData:
        entry = self.state[name]
        return ResourceData(entry.get("type", "vm"), entry.get("declared", {}), resource_id=str(entry.get("id", "")))

    def _record(
        self,
        name: str,
        kind: str,
        data: ResourceData,
        declared: Dict[str, Any],
        tainted: bool = False,
    ) -> None:
        if data.exists:
            entry = {"type": kind, "id": data.id, "declared": declared, "reflected": data.reflected}
            if tainted:
                entry["tainted"] = True
            self.state[name] = entry
        else:
            self.state.pop(name, None)
        save_state(self.state, self.state_path)

    def _needs_replace(self, spec: ResourceSpec, previous: Dict[str, Any]) -> bool:
        if spec.kind == "volume":
            return previous != spec.attributes
        return any(previous.get(key) != spec.attributes.get(key) for key in VM_FORCE_NEW)

    def apply_one(self, spec: ResourceSpec) -> str:
        controller = self.controllers[spec.kind]
        declared = dict(spec.attributes)
        entry = self.state.get(spec.name, {})
        previous = entry.get("declared", {})
        tainted = bool(entry.get("tainted"))
        data = ResourceData(spec.kind, spec.attributes)
        recorded = previous
        try:
            if entry.get("id"):
                # Read at the recorded address, not the newly declared one.
                data = self._data_from_state(spec.name)
                controller.read(data)

            if not data.exists:
                outcome = "created"
            elif tainted:
                log("WARN", f"[{spec.name}] previous create did not finish; replacing")
                outcome = "replaced"
            elif previous == declared:
                return "unchanged"
            elif self._needs_replace(spec, previous):
                log("INFO", f"[{spec.name}] change forces replacement")
                outcome = "replaced"
            else:
                # Update from the declared values, not the ones reflected by the read.
                data = ResourceData(spec.kind, spec.attributes, resource_id=data.id)
                controller.update(data)
                recorded = declared
                return "updated"

            if data.exists:
                controller.delete(data)
            # Once create sets the id the entry must address the new resource,
            # and stays tainted until every create step has finished.
            data = ResourceData(spec.kind, spec.attributes)
            recorded, tainted = declared, True
            controller.create(data)
            tainted = False
            return outcome
        finally:
            self._record(spec.name, spec.kind, data, recorded, tainted)

    def apply(self, specs: List[ResourceSpec]) -> None:
        wanted = {spec.name for spec in specs}
        for name in [name for name in reversed(list(self.state)) if name not in wanted]:
            self.destroy_one(name)
        for spec in specs:
            outcome = self.apply_one(spec)
            log("SUCCESS" if outcome != "unchanged" else "INFO", f"[{spec.name}] {outcome}")

    def refresh(self) -> None:
        for name in list(self.state):
            entry = self.state[name]
            data = self._data_from_state(name)
            self.controllers[data.kind].read(data)
            if not data.exists:
                log("WARN", f"[{name}] no longer exists")
            self._record(name, data.kind, data, entry.get("declared", {}), bool(entry.get("tainted")))

    def destroy_one(self, name: str) -> None:
        entry = self.state[name]
        data = self._data_from_state(name)
        try:
            self.controllers[data.kind].delete(data)
        finally:
            self._record(name, data.kind, data, entry.get("declared", {}), bool(entry.get("tainted")))
        log("SUCCESS", f"[{name}] destroyed")

    def destroy(self) -> None:
        for name in reversed(list(self.state)):
            self.destroy_one(name)

    def import_resource(self, spec: ResourceSpec, identifier: str) -> None:
        if spec.name in self.state:
            raise ReconcilerError(f"[{spec.name}] is already managed (id {self.state[spec.name].get('id')})")
        data = ResourceData(spec.kind, spec.attributes)
        self.controllers[spec.kind].import_state(data, identifier)
        if not data.exists:
            raise ReconcilerError(f"[{spec.name}] nothing found for id '{identifier}'")
        self._record(spec.name, spec.kind, data, dict(spec.attributes))
        log("SUCCESS", f"[{spec.name}] imported as {data.id}")


def show_config(specs: List[ResourceSpec]) -> None:
    """Print the configuration each VM resource would send, without contacting the API."""
    for spec in specs:
        print(f"{spec.name} ({spec.kind}):")
        data = ResourceData(spec.kind, spec.attributes)
        if spec.kind == "vm":
            params = build_vm_config(data).to_params()
            if data.get_ok("clone")[1]:
                source_id = parse_source_id(clone_block(data))
                print(f"  clone from {source_id}: {build_clone_config(data).to_params()}")
        else:
            params = dict(spec.attributes)
        for key, value in sorted(params.items()):
            if key in _SENSITIVE_FIELDS:
                value = "********"
            print(f"  {key}: {value}")


def show_settings(settings: Settings) -> None:
    for field in dataclasses.fields(settings):
        value = getattr(settings, field.name)
        if field.name in _SENSITIVE_FIELDS and value:
            value = "********"
        print(f"  {field.name}: {value}")


def dry_run(specs: List[ResourceSpec], state: Dict[str, Dict[str, Any]]) -> None:
    """Validate every resource and print the action apply would take."""
    wanted = {spec.name for spec in specs}
    for name in state:
        if name not in wanted:
            log("INFO", f"[{name}] would be destroyed")
    for spec in specs:
        data = ResourceData(spec.kind, spec.attributes)
        if spec.kind == "vm":
            build_vm_config(data)
            if data.get_ok("clone")[1]:
                parse_source_id(clone_block(data))
        entry = state.get(spec.name)
        if entry is None:
            action = "create"
        elif entry.get("tainted"):
            action = "replace"
        elif entry.get("declared", {}) == spec.attributes:
            action = "keep"
        else:
            action = "update or replace"
        log("INFO", f"[{spec.name}] would {action}")
    log("INFO", "=== Dry-run complete (no API calls made) ===")


@contextmanager
def cancellation(timeout: Optional[float]) -> Iterator[threading.Event]:
    """Cancel on SIGINT/SIGTERM or once ``timeout`` seconds have passed."""
    cancel = threading.Event()

    def _request_cancel(signum, frame):
        log("WARN", f"Signal {signum} received; cancelling")
        cancel.set()

    prev_sigint = signal.signal(signal.SIGINT, _request_cancel)
    prev_sigterm = signal.signal(signal.SIGTERM, _request_cancel)
    timer: Optional[threading.Timer] = None
    if timeout is not None:
        timer = threading.Timer(timeout, cancel.set)
        timer.daemon = True
        timer.start()
    try:
        yield cancel
    finally:
        if timer is not None:
            timer.cancel()
        signal.signal(signal.SIGINT, prev_sigint)
        signal.signal(signal.SIGTERM, prev_sigterm)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reconcile declared Proxmox VMs and volumes")
    parser.add_argument("--manifest", type=Path, default=DEFAULT_MANIFEST_PATH, help="Declared resources (YAML)")
    parser.add_argument("--state", type=Path, default=DEFAULT_STATE_PATH, help="Persisted identifiers (YAML)")
    parser.add_argument("--timeout", type=float, default=None, help="Cancel the run after this many seconds")
    parser.add_argument("--show-config", action="store_true", help="Show resolved configuration and exit")
    parser.add_argument("--dry-run", action="store_true", help="Validate the manifest and show planned actions")

    sub = parser.add_subparsers(dest="command")
    sub.add_parser("apply", help="Create, update or replace resources to match the manifest")
    sub.add_parser("refresh", help="Re-read live state of managed resources")
    sub.add_parser("destroy", help="Delete every managed resource")
    import_parser = sub.add_parser("import", help="Adopt an existing resource")
    import_parser.add_argument("name", help="Resource name in the manifest")
    import_parser.add_argument("identifier", help="<node>/<vmid> for VMs, <storage>:<vmid>/<filename> for volumes")
    return parser


def run(reconciler: Reconciler, command: str, specs: List[ResourceSpec], args: argparse.Namespace) -> None:
    if command == "apply":
        reconciler.apply(specs)
    elif command == "refresh":
        reconciler.refresh()
    elif command == "destroy":
        reconciler.destroy()
    elif command == "import":
        matches = [spec for spec in specs if spec.name == args.name]
        if not matches:
            raise ReconcilerError(f"Resource '{args.name}' is not declared in {args.manifest}")
        reconciler.import_resource(matches[0], args.identifier)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    needs_manifest = args.show_config or args.dry_run or args.command in ("apply", "import")

    try:
        specs = load_manifest(args.manifest) if needs_manifest else []
        state = load_state(args.state)
        if args.show_config:
            log("INFO", "=== Connection ===")
            show_settings(parse_env(require_credentials=False))
            log("INFO", "=== Resources ===")
            show_config(specs)
            return EXIT_OK
        if args.dry_run:
            dry_run(specs, state)
            return EXIT_OK
        if args.command is None:
            parser.print_help()
            return EXIT_ERROR
        settings = parse_env()
        client = ProxmoxClient(
            host=settings.host,
            port=settings.port,
            username=settings.username,
            password=settings.password,
            token_id=settings.token_id,
            token_secret=settings.token_secret,
            verify_ssl=settings.verify_ssl,
            timeout=settings.request_timeout,
        )
    except ReconcilerError as exc:
        log("ERROR", str(exc))
        return EXIT_ERROR

    log("INFO", f"Clone timeout: {settings.clone_timeout}s | Stop timeout: {settings.stop_timeout}s")
    try:
        with cancellation(args.timeout) as cancel:
            reconciler = Reconciler(
                VMController.from_settings(client, settings, cancel=cancel),
                VolumeController(client, cancel=cancel),
                state,
                args.state,
            )
            run(reconciler, args.command, specs, args)
        return EXIT_OK
    except OperationCancelled as exc:
        log("ERROR", str(exc))
        return EXIT_CANCELLED
    except WaitTimeout as exc:
        log("ERROR", f"{exc} (safe to retry)")
        return EXIT_RETRYABLE
    except ReconcilerError as exc:
        log("ERROR", str(exc))
        return EXIT_ERROR
    finally:
        client.close()
