"""Custom exceptions for proxmox-reconciler."""

from __future__ import annotations

from typing import Iterable, Optional


class ReconcilerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors.

    Carries the operation and the (node, vmid) address it happened on, so a
    failure in the middle of clone->update or stop->delete can be traced back.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        node: Optional[str] = None,
        vmid: Optional[object] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.node = node
        self.vmid = vmid

    def bind(self, operation: str, node: Optional[str], vmid: Optional[object]) -> "ReconcilerError":
        """Attach call context unless a more specific one is already set."""
        if self.operation is None:
            self.operation = operation
        if self.node is None:
            self.node = node
        if self.vmid is None:
            self.vmid = vmid
        return self

    def __str__(self) -> str:
        if self.operation is None:
            return self.message
        address = []
        if self.node is not None:
            address.append(f"node={self.node}")
        if self.vmid is not None:
            address.append(f"id={self.vmid}")
        where = f" ({', '.join(address)})" if address else ""
        return f"{self.operation}{where}: {self.message}"


# Validation errors: fatal, never retried.


class ValidationError(ReconcilerError):
    """Declared attributes cannot be turned into a configuration."""


class MissingField(ValidationError):
    def __init__(self, field: str, category: str) -> None:
        super().__init__(f"{category}: required field '{field}' is missing")
        self.field = field
        self.category = category


class InvalidEnumValue(ValidationError):
    def __init__(self, field: str, value: object, valid: Iterable[str]) -> None:
        self.field = field
        self.value = value
        self.valid = sorted(valid)
        super().__init__(f"Invalid {field} '{value}'. Supported: {', '.join(self.valid)}")


class DuplicateSlot(ValidationError):
    def __init__(self, category: str, number: int) -> None:
        super().__init__(f"{category}: slot number {number} is declared more than once")
        self.category = category
        self.number = number


class InvalidSourceId(ValidationError):
    def __init__(self, value: object) -> None:
        super().__init__(f"clone source_id must be an integer (got '{value}')")
        self.value = value


class InvalidValue(ValidationError):
    """A declared value has the right type but is out of range."""


class UnsupportedField(ValidationError):
    def __init__(self, field: str, category: str) -> None:
        super().__init__(f"{category}: field '{field}' is not supported")
        self.field = field
        self.category = category


class ImmutableResource(ValidationError):
    """The resource has no in-place update; changes force replacement."""


# Errors reported by the hypervisor API.


class HypervisorError(ReconcilerError):
    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        node: Optional[str] = None,
        vmid: Optional[object] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, operation=operation, node=node, vmid=vmid)
        self.status_code = status_code


class VMDoesNotExist(HypervisorError):
    """The addressed VM is not known to the node."""


class NodeDoesNotExist(HypervisorError):
    """The addressed node is not part of the cluster."""


# Waits on asynchronous hypervisor work.


class WaitTimeout(ReconcilerError):
    """The hypervisor did not reach the expected state in time. Safe to retry the whole call."""

    retryable = True


class CloneTimeout(WaitTimeout):
    pass


class StopTimeout(WaitTimeout):
    pass


class OperationCancelled(ReconcilerError):
    """The host cancelled the call or its deadline passed."""
