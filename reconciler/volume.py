"""Storage volume lifecycle: create, read and delete by composite id."""

from __future__ import annotations

import threading
from typing import Optional, Tuple

from reconciler.client import HypervisorClient
from reconciler.exceptions import ImmutableResource
from reconciler.models import VolumeId
from reconciler.resource import ResourceData
from reconciler.utils import check_cancelled, log, operation_context


class VolumeController:
    # Every attribute forces replacement; there is no update call.
    FORCE_NEW = ("node", "storage_name", "vm_id", "filename", "size")

    def __init__(self, client: HypervisorClient, cancel: Optional[threading.Event] = None) -> None:
        self.client = client
        self.cancel = cancel

    @staticmethod
    def _location(data: ResourceData) -> Tuple[str, str]:
        """(node, storage) from declared attributes, falling back to the persisted id."""
        node = str(data.require("node"))
        storage_name, ok = data.get_ok("storage_name")
        if not ok and data.id:
            storage_name = VolumeId.parse(data.id).storage_name
        elif not ok:
            storage_name = data.require("storage_name")
        return node, str(storage_name)

    def create(self, data: ResourceData) -> None:
        node = str(data.require("node"))
        storage_name = str(data.require("storage_name"))
        vmid = data.require_int("vm_id")
        filename = str(data.require("filename"))
        size = str(data.require("size"))
        volume_id = VolumeId(storage_name=storage_name, vmid=vmid, filename=filename)

        with operation_context("create volume", node, str(volume_id)):
            check_cancelled(self.cancel, "creating volume")
            self.client.create_volume(node, storage_name, vmid, filename, size)
            data.set_id(str(volume_id))
            log("INFO", f"Volume ID: {data.id}")
        self.read(data)

    def read(self, data: ResourceData) -> None:
        node, storage_name = self._location(data)
        with operation_context("read volume", node, data.id):
            check_cancelled(self.cancel, "listing volumes")
            volumes = self.client.get_storage_volumes(node, storage_name)
            for volume in volumes:
                if volume.volid == data.id:
                    data.set("node", node)
                    data.set("storage_name", storage_name)
                    if volume.vmid is not None:
                        data.set("vm_id", volume.vmid)
                    if volume.size is not None:
                        data.set("size_bytes", volume.size)
                    return
            log("WARN", f"Volume with id {data.id} not found on {node}/{storage_name}; dropping from state")
            data.set_id("")

    def update(self, data: ResourceData) -> None:
        raise ImmutableResource(
            f"Volumes cannot be changed in place ({', '.join(self.FORCE_NEW)} force replacement)",
            operation="update volume",
            node=data.get("node"),
            vmid=data.id or None,
        )

    def delete(self, data: ResourceData) -> None:
        node, storage_name = self._location(data)
        with operation_context("delete volume", node, data.id):
            check_cancelled(self.cancel, "deleting volume")
            self.client.delete_volume(node, storage_name, data.id)
            log("INFO", f"Volume {data.id} deleted")
            data.set_id("")

    def import_state(self, data: ResourceData, identifier: str) -> None:
        """Adopt an existing volume from its ``<storage>:<vmid>/<filename>`` id."""
        volume_id = VolumeId.parse(identifier)
        data.attributes["storage_name"] = volume_id.storage_name
        data.attributes["vm_id"] = volume_id.vmid
        data.attributes["filename"] = volume_id.filename
        data.set_id(str(volume_id))
        self.read(data)
