"""Settings, OS catalog loading and operator input validation for qemu-vm-manager."""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmmanager.constants import (
    DEFAULT_CATALOG_PATH,
    DEFAULT_LAUNCH_GRACE,
    DEFAULT_PORT_MAX,
    DEFAULT_PORT_MIN,
    DEFAULT_STOP_GRACE,
    DEFAULT_STORE_ROOT,
    DISK_SIZE_RE,
    IMAGE_SUFFIX,
    NAME_RE,
    NUMBER_RE,
    SEED_SUFFIX,
    TRUTHY,
    USERNAME_RE,
)
from vmmanager.exceptions import ManagerError, StorageError, ValidationError
from vmmanager.models import CreateRequest, OSImage, PortForward, VMConfig
from vmmanager.utils import ensure_directory, get_env, get_env_bool, parse_int_env


@dataclass
class Settings:
    store_root: Path
    qemu_binary: str = "qemu-system-x86_64"
    qemu_img: str = "qemu-img"
    cloud_localds: str = "cloud-localds"
    port_min: int = DEFAULT_PORT_MIN
    port_max: int = DEFAULT_PORT_MAX
    launch_grace: int = DEFAULT_LAUNCH_GRACE
    stop_grace: int = DEFAULT_STOP_GRACE
    catalog_path: Path = DEFAULT_CATALOG_PATH
    require_kvm: bool = False

    def required_tools(self) -> List[str]:
        return [self.qemu_binary, self.qemu_img, self.cloud_localds]


def parse_settings() -> Settings:
    store_raw = (get_env("VM_DIR") or "").strip()
    store_root = Path(store_raw).expanduser().resolve() if store_raw else DEFAULT_STORE_ROOT
    port_min = parse_int_env("PORT_MIN", str(DEFAULT_PORT_MIN), min_val=1, max_val=65535)
    port_max = parse_int_env("PORT_MAX", str(DEFAULT_PORT_MAX), min_val=1, max_val=65535)
    if port_min > port_max:
        raise ManagerError(f"PORT_MIN ({port_min}) must not exceed PORT_MAX ({port_max})")
    catalog_raw = (get_env("OS_CATALOG") or "").strip()
    settings = Settings(
        store_root=store_root,
        qemu_binary=(get_env("QEMU_BINARY") or "qemu-system-x86_64").strip(),
        qemu_img=(get_env("QEMU_IMG") or "qemu-img").strip(),
        cloud_localds=(get_env("CLOUD_LOCALDS") or "cloud-localds").strip(),
        port_min=port_min,
        port_max=port_max,
        launch_grace=parse_int_env("LAUNCH_GRACE", str(DEFAULT_LAUNCH_GRACE), min_val=0),
        stop_grace=parse_int_env("STOP_GRACE", str(DEFAULT_STOP_GRACE), min_val=0),
        catalog_path=Path(catalog_raw).expanduser() if catalog_raw else DEFAULT_CATALOG_PATH,
        require_kvm=get_env_bool("REQUIRE_KVM", False),
    )
    try:
        ensure_directory(settings.store_root)
    except OSError as exc:
        raise StorageError(f"Cannot create store directory {settings.store_root}: {exc}") from exc
    return settings


def load_os_catalog(config_path: Optional[Path] = None) -> Dict[str, OSImage]:
    if config_path is None:
        config_path = DEFAULT_CATALOG_PATH
    if not config_path.exists():
        raise ManagerError(f"OS catalog missing: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ManagerError(f"OS catalog {config_path} contains invalid YAML: {exc}")
    distros = data.get("distributions", {})
    catalog: Dict[str, OSImage] = {}
    for key, info in distros.items():
        try:
            catalog[key] = OSImage(
                key=key,
                name=info.get("name", key),
                os_type=info["os_type"],
                codename=str(info["codename"]),
                url=info["url"],
                default_hostname=info.get("hostname", key),
                default_username=info.get("user", "user"),
                default_password=str(info.get("password", "")),
            )
        except (KeyError, AttributeError) as exc:
            raise ManagerError(f"OS catalog entry '{key}' is incomplete: missing {exc}")
    return catalog


def artifact_paths(store_root: Path, vm_name: str) -> Tuple[Path, Path]:
    return store_root / f"{vm_name}{IMAGE_SUFFIX}", store_root / f"{vm_name}{SEED_SUFFIX}"


def validate_name(value: str, label: str = "VM name") -> str:
    if not NAME_RE.match(value):
        raise ValidationError(f"{label} can only contain letters, numbers, hyphens, and underscores (got '{value}')")
    return value


def validate_username(value: str) -> str:
    if not USERNAME_RE.match(value):
        raise ValidationError(
            "Username must start with a lowercase letter or underscore, and contain only "
            f"lowercase letters, numbers, hyphens, and underscores (got '{value}')"
        )
    return value


def validate_password(value: str) -> str:
    if not value:
        raise ValidationError("Password cannot be empty")
    if any(ord(char) < 32 or ord(char) == 127 for char in value):
        raise ValidationError("Password cannot contain control characters such as newlines or tabs")
    return value


def validate_number(value: Union[str, int], label: str) -> int:
    raw = str(value).strip()
    if not NUMBER_RE.match(raw):
        raise ValidationError(f"{label} must be a number (got '{value}')")
    return int(raw)


def validate_disk_size(value: str) -> str:
    raw = value.strip()
    if not DISK_SIZE_RE.match(raw):
        raise ValidationError(f"Disk size must be a number with unit M or G, e.g. 20G or 512M (got '{value}')")
    return raw.upper()


def validate_port(value: Union[str, int], settings: Settings, label: str = "Host port") -> int:
    raw = str(value).strip()
    if not NUMBER_RE.match(raw):
        raise ValidationError(f"{label} must be a number (got '{value}')")
    port = int(raw)
    if port < settings.port_min or port > settings.port_max:
        raise ValidationError(
            f"{label} {port} out of range; use {settings.port_min}-{settings.port_max}"
        )
    return port


def parse_bool(value: Union[str, bool]) -> bool:
    if isinstance(value, bool):
        return value
    raw = value.strip().lower()
    if raw in TRUTHY or raw == "y":
        return True
    if raw in {"0", "false", "no", "off", "n", ""}:
        return False
    raise ValidationError(f"Expected yes/no (got '{value}')")


def parse_port_forwards(raw: str, settings: Settings) -> List[PortForward]:
    """Parse ``8080:80,8443:443`` into PortForward pairs."""
    forwards: List[PortForward] = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        parts = entry.split(":")
        if len(parts) != 2:
            raise ValidationError(f"Invalid port forward '{entry}': expected format host_port:guest_port")
        host_port = validate_port(parts[0], settings, label=f"Port forward '{entry}' host port")
        guest_raw = parts[1].strip()
        if not NUMBER_RE.match(guest_raw) or not (1 <= int(guest_raw) <= 65535):
            raise ValidationError(f"Invalid port forward '{entry}': guest port must be 1-65535")
        forwards.append(PortForward(host_port=host_port, guest_port=int(guest_raw)))
    return forwards


def format_port_forwards(forwards: List[PortForward]) -> str:
    return ",".join(f"{pf.host_port}:{pf.guest_port}" for pf in forwards)


def check_port_conflicts(ssh_port: int, forwards: List[PortForward]) -> None:
    active_ports = {"SSH port": ssh_port}
    for pf in forwards:
        active_ports[f"port forward {pf.host_port}:{pf.guest_port}"] = pf.host_port

    seen: Dict[int, str] = {}
    for label, port in active_ports.items():
        if port in seen:
            raise ValidationError(
                f"Port conflict: {label} uses {port}, already taken by {seen[port]}. Each forward needs a unique host port."
            )
        seen[port] = label


def build_vm_config(request: CreateRequest, settings: Settings) -> VMConfig:
    """Validate a CreateRequest field by field and return the resulting VMConfig.

    Empty hostname/username/password fall back to the VM name and the OS
    catalog defaults, matching the interactive wizard.
    """
    os_image = request.os_image
    vm_name = validate_name(request.vm_name.strip())
    hostname = validate_name(request.hostname.strip() or vm_name, label="Hostname")
    username = validate_username(request.username.strip() or os_image.default_username)
    password = validate_password(request.password or os_image.default_password)
    disk_size = validate_disk_size(request.disk_size)
    memory_mb = validate_number(request.memory_mb, "Memory")
    cpus = validate_number(request.cpus, "CPU count")
    ssh_port = validate_port(request.ssh_port, settings, label="SSH port")
    forwards = parse_port_forwards(request.port_forwards, settings)
    check_port_conflicts(ssh_port, forwards)
    image_file, seed_file = artifact_paths(settings.store_root, vm_name)

    return VMConfig(
        vm_name=vm_name,
        os_type=os_image.os_type,
        codename=os_image.codename,
        image_url=os_image.url,
        hostname=hostname,
        username=username,
        password=password,
        disk_size=disk_size,
        memory_mb=memory_mb,
        cpus=cpus,
        ssh_port=ssh_port,
        gui_mode=parse_bool(request.gui_mode),
        port_forwards=forwards,
        image_file=image_file,
        seed_file=seed_file,
        created=time.strftime("%a %b %d %H:%M:%S %Z %Y"),
    )
