"""Global constants and path configuration for qemu-vm-manager."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_STORE_ROOT = Path.home() / "vms"
DEFAULT_CATALOG_PATH = Path(__file__).resolve().parent / "os_catalog.yaml"
TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

# Artifact naming inside the store root
CONFIG_SUFFIX = ".conf"
IMAGE_SUFFIX = ".qcow2"
SEED_SUFFIX = "-seed.iso"
LOG_SUFFIX = ".log"
PART_SUFFIX = ".part"

# Operator input rules
NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
USERNAME_RE = re.compile(r"^[a-z_][a-z0-9_-]*$")
NUMBER_RE = re.compile(r"^[0-9]+$")
DISK_SIZE_RE = re.compile(r"^[0-9]+[GgMm]$")

DEFAULT_PORT_MIN = 1024
DEFAULT_PORT_MAX = 65535
GUEST_SSH_PORT = 22

DEFAULT_DISK_SIZE = "20G"
DEFAULT_MEMORY_MB = "2048"
DEFAULT_CPUS = "2"
DEFAULT_SSH_PORT = "2222"

# Seconds
DEFAULT_LAUNCH_GRACE = 2
DEFAULT_STOP_GRACE = 3
KILL_GRACE = 1.0

# Record layout, in file order
CONFIG_KEYS = (
    "VM_NAME",
    "OS_TYPE",
    "CODENAME",
    "IMG_URL",
    "HOSTNAME",
    "USERNAME",
    "PASSWORD",
    "DISK_SIZE",
    "MEMORY",
    "CPUS",
    "SSH_PORT",
    "GUI_MODE",
    "PORT_FORWARDS",
    "IMG_FILE",
    "SEED_FILE",
    "CREATED",
)

# Fields whose change invalidates the cloud-init seed
SEED_FIELDS = {"hostname", "username", "password"}
EDITABLE_FIELDS = {
    "hostname",
    "username",
    "password",
    "ssh_port",
    "gui_mode",
    "port_forwards",
    "memory_mb",
    "cpus",
}

STATE_RUNNING = "running"
STATE_STOPPED = "stopped"
