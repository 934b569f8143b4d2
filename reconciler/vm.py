"""VM lifecycle: create, clone, template, start, read, update and gated delete."""

from __future__ import annotations

import threading
from typing import Optional, Tuple

from reconciler.builder import (
    build_clone_config,
    build_update_config,
    build_vm_config,
    clone_block,
    declared_flag,
    parse_source_id,
)
from reconciler.client import HypervisorClient
from reconciler.constants import DEFAULT_CLONE_TIMEOUT, DEFAULT_POLL_INTERVAL, DEFAULT_STOP_TIMEOUT, STATUS_RUNNING
from reconciler.exceptions import (
    CloneTimeout,
    InvalidValue,
    MissingField,
    NodeDoesNotExist,
    StopTimeout,
    VMDoesNotExist,
)
from reconciler.models import Settings, VMConfig
from reconciler.resource import ResourceData
from reconciler.utils import check_cancelled, log, operation_context, poll_until


class VMController:
    """Drives one VM resource through its lifecycle against a hypervisor client.

    The client is passed in rather than looked up so the controller can be run
    against a fake. ``cancel`` is the host's cancellation signal; it is checked
    before every hypervisor call and inside both wait loops.
    """

    # Live fields copied back into the resource on read.
    REFLECTED_FIELDS = ("name", "cores", "memory")

    def __init__(
        self,
        client: HypervisorClient,
        clone_timeout: float = float(DEFAULT_CLONE_TIMEOUT),
        stop_timeout: float = float(DEFAULT_STOP_TIMEOUT),
        poll_interval: float = float(DEFAULT_POLL_INTERVAL),
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self.client = client
        self.clone_timeout = clone_timeout
        self.stop_timeout = stop_timeout
        self.poll_interval = poll_interval
        self.cancel = cancel

    @classmethod
    def from_settings(
        cls,
        client: HypervisorClient,
        settings: Settings,
        cancel: Optional[threading.Event] = None,
    ) -> "VMController":
        return cls(
            client,
            clone_timeout=settings.clone_timeout,
            stop_timeout=settings.stop_timeout,
            poll_interval=settings.poll_interval,
            cancel=cancel,
        )

    @staticmethod
    def address(data: ResourceData) -> Tuple[str, int]:
        """(node, vmid): the persisted id once there is one, else the declared ``vm_id``."""
        node = str(data.require("node"))
        if data.id:
            try:
                return node, int(data.id)
            except ValueError:
                raise InvalidValue(f"Persisted VM id '{data.id}' is not an integer")
        if not data.get_ok("vm_id")[1]:
            raise MissingField("vm_id", data.kind)
        return node, data.require_int("vm_id")

    def _checkpoint(self, what: str) -> None:
        check_cancelled(self.cancel, what)

    def create(self, data: ResourceData) -> None:
        if data.get_ok("clone")[1]:
            self.clone_create(data)
            return

        node, vmid = self.address(data)
        with operation_context("create", node, vmid):
            config = build_vm_config(data)
            template = declared_flag(data, "template")
            start = declared_flag(data, "start_after_create")

            self._checkpoint("creating VM")
            log("DEBUG", f"Creating VM {vmid} on {node}: {config.to_params()}")
            self.client.create_vm(node, vmid, config)
            data.set_id(str(vmid))
            log("INFO", f"VM with ID {data.id} created on {node}")

            self._after_create(node, vmid, template, start)
        self.read(data)

    def clone_create(self, data: ResourceData) -> None:
        node, new_id = self.address(data)
        with operation_context("clone", node, new_id):
            # Everything that can be rejected is rejected before the clone is issued.
            source_id = parse_source_id(clone_block(data))
            clone_config = build_clone_config(data)
            update_config = build_update_config(data)
            template = declared_flag(data, "template")
            start = declared_flag(data, "start_after_create")

            self._checkpoint("cloning VM")
            log("DEBUG", f"Cloning VM {source_id} -> {new_id} on {node}")
            self.client.clone_vm(node, source_id, new_id, clone_config)
            data.set_id(str(new_id))
            log("INFO", f"VM with ID {data.id} cloned from {source_id}")

            self.wait_for_clone(node, new_id)

            if not update_config.is_empty():
                self._checkpoint("updating cloned VM")
                log("DEBUG", f"Patching cloned VM {new_id}: {update_config.to_params()}")
                self.client.update_vm(node, new_id, update_config, reboot=False)

            self._after_create(node, new_id, template, start)
        self.read(data)

    def _after_create(self, node: str, vmid: int, template: bool, start: bool) -> None:
        # Template conversion is one-way and happens before any start.
        if template:
            self._checkpoint("converting VM to template")
            self.client.create_vm_template(node, vmid)
            log("INFO", f"VM template from ID {vmid} created")
        if start:
            self._checkpoint("starting VM")
            self.client.start_vm(node, vmid)
            log("INFO", f"VM {vmid} started")

    def wait_for_clone(self, node: str, vmid: int) -> None:
        """Block until the cloned VM is addressable and no longer locked by the clone task."""

        def _ready() -> bool:
            try:
                config = self.client.get_vm_config(node, vmid)
            except VMDoesNotExist:
                return False
            lock = config.get("lock")
            if lock:
                log("DEBUG", f"VM {vmid} still locked ({lock})")
                return False
            return True

        poll_until(
            _ready,
            timeout=self.clone_timeout,
            interval=self.poll_interval,
            what=f"waiting for clone {vmid} on {node}",
            cancel=self.cancel,
            timeout_error=CloneTimeout,
        )

    def read(self, data: ResourceData) -> None:
        node, vmid = self.address(data)
        with operation_context("read", node, vmid):
            self._checkpoint("reading VM")
            log("DEBUG", f"Fetching VMConfig for node {node}, vmID {vmid}")
            try:
                payload = self.client.get_vm_config(node, vmid)
            except (VMDoesNotExist, NodeDoesNotExist) as exc:
                log("WARN", f"{exc}; dropping VM {vmid} from state")
                data.set_id("")
                return

            live = VMConfig.from_params(payload)
            for key in self.REFLECTED_FIELDS:
                value = getattr(live, key)
                if value is not None:
                    data.set(key, value)

    def update(self, data: ResourceData) -> None:
        node, vmid = self.address(data)
        with operation_context("update", node, vmid):
            config = build_vm_config(data)
            self._checkpoint("updating VM")
            log("DEBUG", f"Updating VM {vmid} on {node}: {config.to_params()}")
            self.client.update_vm(node, vmid, config, reboot=False)
        self.read(data)

    def delete(self, data: ResourceData) -> None:
        node, vmid = self.address(data)
        with operation_context("delete", node, vmid):
            self._checkpoint("checking VM status")
            status = self.client.get_vm_current_status(node, vmid)
            if status.status == STATUS_RUNNING:
                log("INFO", f"VM {vmid} is running; stopping before delete")
                self._checkpoint("stopping VM")
                self.client.stop_vm(node, vmid)
                self.wait_for_stop(node, vmid)

            self._checkpoint("deleting VM")
            self.client.delete_vm(node, vmid)
            data.set_id("")
            log("INFO", f"VM {vmid} deleted from {node}")

    def wait_for_stop(self, node: str, vmid: int) -> None:
        def _stopped() -> bool:
            status = self.client.get_vm_current_status(node, vmid)
            return status.status != STATUS_RUNNING

        poll_until(
            _stopped,
            timeout=self.stop_timeout,
            interval=self.poll_interval,
            what=f"waiting for VM {vmid} on {node} to stop",
            cancel=self.cancel,
            timeout_error=StopTimeout,
        )

    def import_state(self, data: ResourceData, identifier: str) -> None:
        """Adopt an existing VM given ``<node>/<vmid>`` or a bare ``<vmid>``."""
        node, sep, vmid_raw = identifier.rpartition("/")
        if sep:
            data.attributes["node"] = node
        try:
            vmid = int(vmid_raw)
        except ValueError:
            raise InvalidValue(f"Cannot import VM '{identifier}': expected <node>/<vmid> or <vmid>")
        data.attributes["vm_id"] = vmid
        data.set_id(str(vmid))
        self.read(data)
