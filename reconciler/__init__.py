"""proxmox-reconciler package."""

__all__ = [
    "builder",
    "cli",
    "client",
    "config",
    "constants",
    "devices",
    "exceptions",
    "models",
    "resource",
    "utils",
    "vm",
    "volume",
]
