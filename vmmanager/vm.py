"""VM lifecycle management for qemu-vm-manager."""

from __future__ import annotations

import dataclasses
import time
from typing import Dict, List, Optional, Tuple, Union

from vmmanager.config import (
    Settings,
    build_vm_config,
    check_port_conflicts,
    parse_bool,
    parse_port_forwards,
    validate_disk_size,
    validate_name,
    validate_number,
    validate_password,
    validate_port,
    validate_username,
)
from vmmanager.constants import EDITABLE_FIELDS, SEED_FIELDS, STATE_RUNNING, STATE_STOPPED
from vmmanager.exceptions import (
    DeleteError,
    DuplicateIdentityError,
    ImageFetchError,
    LaunchError,
    ManagerError,
    NotFoundError,
    PartialDeleteError,
    ValidationError,
    VMBusyError,
)
from vmmanager.image import ImagePreparer
from vmmanager.models import CreateRequest, PerformanceReport, VMConfig, VMInfo
from vmmanager.process import ProcessController
from vmmanager.store import ConfigStore
from vmmanager.utils import log, parse_size_to_bytes, port_in_use, tail_file


class LifecycleOrchestrator:
    """Coordinates the config store, image preparer and process controller.

    Every operation takes a VM identity (or a request) and works on an
    explicit VMConfig value loaded from the store; there is no notion of a
    "current" VM between calls.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[ConfigStore] = None,
        preparer: Optional[ImagePreparer] = None,
        controller: Optional[ProcessController] = None,
    ) -> None:
        self.settings = settings
        self.store = store or ConfigStore(settings.store_root)
        self.preparer = preparer or ImagePreparer(settings)
        self.controller = controller or ProcessController(settings)

    # -- queries -------------------------------------------------------

    def state_of(self, config: VMConfig) -> str:
        return STATE_RUNNING if self.controller.is_running(config) else STATE_STOPPED

    def list_vms(self) -> List[Tuple[str, str]]:
        return [(name, self.state_of(self.store.load(name))) for name in self.store.list()]

    def resolve(self, selector: str) -> str:
        """Map a VM name or 1-based index from ``list_vms`` to a VM identity."""
        names = self.store.list()
        selector = selector.strip()
        if selector in names:
            return selector
        if selector.isdigit():
            idx = int(selector)
            if 1 <= idx <= len(names):
                return names[idx - 1]
            raise NotFoundError(f"Invalid VM number {idx}; choose 1-{len(names)}" if names else "No VMs created yet")
        raise NotFoundError(f"VM '{selector}' not found")

    def show_info(self, identity: str) -> VMInfo:
        config = self.store.load(identity)
        pids = self.controller.find_pids(config)
        return VMInfo(config=config, state=STATE_RUNNING if pids else STATE_STOPPED, pids=pids)

    def show_performance(self, identity: str) -> PerformanceReport:
        config = self.store.load(identity)
        state = self.state_of(config)
        stats = self.controller.resource_usage(config) if state == STATE_RUNNING else None
        return PerformanceReport(config=config, state=state, stats=stats)

    # -- port bookkeeping ----------------------------------------------

    def _claimed_ports(self, exclude: Optional[str] = None) -> Dict[int, str]:
        claimed: Dict[int, str] = {}
        for name in self.store.list():
            if name == exclude:
                continue
            for port in self.store.load(name).host_ports():
                claimed[port] = name
        return claimed

    def _check_ports_available(self, ports: List[int], exclude: Optional[str] = None) -> None:
        claimed = self._claimed_ports(exclude)
        for port in ports:
            owner = claimed.get(port)
            if owner is not None:
                raise ValidationError(f"Port {port} is already claimed by VM '{owner}'")
            if port_in_use(port):
                raise ValidationError(f"Port {port} is already in use by another process")

    # -- mutations -----------------------------------------------------

    def create_vm(self, request: CreateRequest) -> VMConfig:
        config = build_vm_config(request, self.settings)
        if self.store.exists(config.vm_name):
            raise DuplicateIdentityError(f"VM with name '{config.vm_name}' already exists")
        self._check_ports_available(config.host_ports())

        log("INFO", f"Creating VM '{config.vm_name}' ({config.os_type} {config.codename})")
        self.preparer.prepare(config)
        self.store.save(config)
        return config

    def start_vm(self, identity: str) -> VMConfig:
        config = self.store.load(identity)
        if self.controller.is_running(config):
            pids = ", ".join(str(pid) for pid in self.controller.find_pids(config))
            raise VMBusyError(f"VM '{identity}' is already running (PID: {pids})")
        if not config.image_file.exists():
            raise ImageFetchError(f"VM image file not found: {config.image_file}. Cannot start '{identity}'.")
        if not config.seed_file.exists():
            log("WARN", "Seed file not found, recreating...")
            self.preparer.prepare(config)

        log("INFO", f"Starting VM: {identity}")
        log("INFO", f"Connection Info: ssh -p {config.ssh_port} {config.username}@localhost")
        for pf in config.port_forwards:
            log("INFO", f"Forwarding Host:{pf.host_port} to Guest:{pf.guest_port}")
        self.controller.start(config)

        time.sleep(self.settings.launch_grace)
        if not self.controller.is_running(config):
            code = self.controller.exit_code(config)
            detail = tail_file(self.controller.log_path(config))
            message = f"VM '{identity}' exited during startup"
            if code is not None:
                message += f" (code {code})"
            if detail:
                message += f":\n{detail}"
            raise LaunchError(message)
        pids = ", ".join(str(pid) for pid in self.controller.find_pids(config))
        log("SUCCESS", f"VM {identity} started successfully (PID: {pids}).")
        return config

    def stop_vm(self, identity: str) -> bool:
        config = self.store.load(identity)
        if not self.controller.stop(config):
            log("INFO", f"VM {identity} is not running.")
            return False
        log("SUCCESS", f"VM {identity} stopped successfully.")
        return True

    def _apply_change(self, field: str, value: Union[str, bool, int]) -> object:
        raw = value if isinstance(value, bool) else str(value)
        if field == "hostname":
            return validate_name(str(raw).strip(), label="Hostname")
        if field == "username":
            return validate_username(str(raw).strip())
        if field == "password":
            return validate_password(str(raw))
        if field == "ssh_port":
            return validate_port(raw, self.settings, label="SSH port")
        if field == "gui_mode":
            return parse_bool(raw)
        if field == "port_forwards":
            return parse_port_forwards(str(raw), self.settings)
        if field == "memory_mb":
            return validate_number(raw, "Memory")
        if field == "cpus":
            return validate_number(raw, "CPU count")
        raise ValidationError(f"Field '{field}' cannot be edited")

    def edit_vm(self, identity: str, changes: Dict[str, Union[str, bool, int]]) -> VMConfig:
        """Apply validated field changes and persist them.

        A changed hostname, username or password regenerates the seed
        before the record is saved, so the seed on disk never lags the
        stored credentials. If that fails the old record stays in place.
        """
        if "disk_size" in changes:
            raise ValidationError("Disk size cannot be edited; use resize instead")
        unknown = sorted(set(changes) - EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown or read-only fields: {', '.join(unknown)}")

        current = self.store.load(identity)
        updates = {field: self._apply_change(field, value) for field, value in changes.items()}
        updated = dataclasses.replace(current, **updates)
        check_port_conflicts(updated.ssh_port, updated.port_forwards)

        changed = {field for field in updates if getattr(current, field) != getattr(updated, field)}
        if not changed:
            log("INFO", f"No changes for VM '{identity}'")
            return current

        new_ports = [port for port in updated.host_ports() if port not in current.host_ports()]
        self._check_ports_available(new_ports, exclude=identity)

        if changed & SEED_FIELDS:
            log("INFO", "Updating cloud-init configuration...")
            self.preparer.prepare(updated)
        self.store.save(updated)
        if self.controller.is_running(updated):
            log("WARN", f"VM '{identity}' is running; stop and start it for the changes to take effect")
        return updated

    def delete_vm(self, identity: str) -> None:
        config = self.store.load(identity)
        if self.controller.is_running(config):
            raise VMBusyError(f"VM '{identity}' is running. Please stop it first.")

        try:
            self.preparer.remove_artifacts(config)
            self.controller.log_path(config).unlink(missing_ok=True)
        except OSError as exc:
            raise DeleteError(
                f"Failed to remove artifacts of VM '{identity}': {exc}. Configuration kept; retry delete.",
                phase="artifacts",
            ) from exc
        try:
            self.store.delete(identity)
        except ManagerError as exc:
            raise PartialDeleteError(
                f"Artifacts of VM '{identity}' were removed but its configuration could not be: {exc}",
                phase="record",
            ) from exc
        log("SUCCESS", f"VM '{identity}' has been deleted.")

    def resize_disk(self, identity: str, new_size: str) -> VMConfig:
        config = self.store.load(identity)
        if self.controller.is_running(config):
            raise VMBusyError(f"VM '{identity}' is running. Please stop it before resizing the disk.")
        size = validate_disk_size(new_size)
        requested = parse_size_to_bytes(size)
        current = parse_size_to_bytes(config.disk_size)
        if requested < current:
            raise ValidationError(
                f"New disk size {size} is smaller than the current {config.disk_size}; shrinking is not supported"
            )
        if requested == current:
            log("INFO", "New disk size is the same as current size. No changes made.")
            return config

        self.preparer.resize(config, size)
        updated = dataclasses.replace(config, disk_size=size)
        self.store.save(updated)
        log("SUCCESS", f"Disk image file resized successfully to {size}")
        log(
            "WARN",
            "The guest grows its root filesystem on first boot only; on an existing guest run "
            "'sudo growpart /dev/vda 1' and 'sudo resize2fs /dev/vda1' (or equivalent).",
        )
        return updated
