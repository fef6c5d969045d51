"""qemu-vm-manager package."""

__all__ = [
    "cli",
    "config",
    "constants",
    "exceptions",
    "image",
    "models",
    "process",
    "store",
    "utils",
    "vm",
]
