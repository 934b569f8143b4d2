"""Utility functions for proxmox-reconciler."""

from __future__ import annotations

import os
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from reconciler.constants import _LOG_VERBOSE, TRUTHY
from reconciler.exceptions import OperationCancelled, ReconcilerError, WaitTimeout


def log(level: str, message: str) -> None:
    """Print one coloured, level-tagged line. DEBUG lines need LOG_VERBOSE."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ReconcilerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ReconcilerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ReconcilerError(f"{name} must be <= {max_val} (got {value})")
    return value


def check_cancelled(cancel: Optional[threading.Event], what: str) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled(f"cancelled while {what}")


def poll_until(
    predicate: Callable[[], bool],
    timeout: float,
    interval: float,
    what: str,
    cancel: Optional[threading.Event] = None,
    timeout_error: Callable[[str], WaitTimeout] = WaitTimeout,
) -> None:
    """Poll ``predicate`` until it returns True.

    Raises ``timeout_error`` once ``timeout`` seconds pass and
    ``OperationCancelled`` as soon as ``cancel`` is set. Exceptions raised by
    the predicate propagate unchanged.
    """
    deadline = time.monotonic() + timeout
    attempt = 0
    while True:
        check_cancelled(cancel, what)
        attempt += 1
        if predicate():
            log("DEBUG", f"Done {what} after {attempt} attempt(s)")
            return
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise timeout_error(f"timed out after {timeout:g}s {what}")
        delay = min(interval, remaining)
        if cancel is not None:
            if cancel.wait(delay):
                raise OperationCancelled(f"cancelled while {what}")
        else:
            time.sleep(delay)


@contextmanager
def operation_context(operation: str, node: Optional[str], vmid: Optional[object]) -> Iterator[None]:
    """Tag any ReconcilerError raised inside with the operation and address."""
    try:
        yield
    except ReconcilerError as exc:
        exc.bind(operation, node, vmid)
        raise
