"""Data models for qemu-vm-manager."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, NamedTuple, Optional

from vmmanager.constants import (
    DEFAULT_CPUS,
    DEFAULT_DISK_SIZE,
    DEFAULT_MEMORY_MB,
    DEFAULT_SSH_PORT,
)


class PortForward(NamedTuple):
    host_port: int
    guest_port: int


@dataclass
class OSImage:
    """One entry of the OS catalog."""

    key: str
    name: str
    os_type: str
    codename: str
    url: str
    default_hostname: str
    default_username: str
    default_password: str


@dataclass
class VMConfig:
    vm_name: str
    os_type: str
    codename: str
    image_url: str
    hostname: str
    username: str
    password: str
    disk_size: str
    memory_mb: int
    cpus: int
    ssh_port: int
    gui_mode: bool
    port_forwards: List[PortForward]
    image_file: Path
    seed_file: Path
    created: str

    def host_ports(self) -> List[int]:
        return [self.ssh_port] + [pf.host_port for pf in self.port_forwards]


@dataclass
class CreateRequest:
    """Raw operator input for a new VM; values are validated by the orchestrator."""

    os_image: OSImage
    vm_name: str
    hostname: str = ""
    username: str = ""
    password: str = ""
    disk_size: str = DEFAULT_DISK_SIZE
    memory_mb: str = DEFAULT_MEMORY_MB
    cpus: str = DEFAULT_CPUS
    ssh_port: str = DEFAULT_SSH_PORT
    gui_mode: bool = False
    port_forwards: str = ""


@dataclass
class ProcessStats:
    pid: int
    cpu_percent: float
    memory_percent: float
    rss_bytes: int
    vms_bytes: int
    image_bytes: Optional[int]
    cmdline: List[str] = field(default_factory=list)


@dataclass
class VMInfo:
    config: VMConfig
    state: str
    pids: List[int] = field(default_factory=list)


@dataclass
class PerformanceReport:
    config: VMConfig
    state: str
    stats: Optional[ProcessStats] = None
