"""CLI entry points for qemu-vm-manager."""

from __future__ import annotations

import argparse
import getpass
from typing import Callable, Dict, List, Optional

from vmmanager.config import Settings, format_port_forwards, load_os_catalog, parse_settings
from vmmanager.exceptions import ManagerError, StorageError, ValidationError
from vmmanager.models import CreateRequest, OSImage, PerformanceReport, VMInfo
from vmmanager.utils import check_dependencies, format_bytes, has_controlling_tty, log
from vmmanager.vm import LifecycleOrchestrator

_MUTATING_COMMANDS = {"create", "start", "edit", "resize", "menu"}

_EDIT_MENU = [
    ("hostname", "Hostname"),
    ("username", "Username"),
    ("password", "Password"),
    ("ssh_port", "SSH Port (Host->Guest 22)"),
    ("gui_mode", "GUI Mode"),
    ("port_forwards", "Port Forwards"),
    ("memory_mb", "Memory (MB)"),
    ("cpus", "CPU Count"),
]


def prompt(message: str, default: Optional[str] = None, secret: bool = False) -> str:
    suffix = f" (default: {default})" if default not in (None, "") else ""
    text = f"\033[0;36m[INPUT]\033[0m {message}{suffix}: "
    value = getpass.getpass(text) if secret else input(text)
    value = value.strip() if not secret else value
    return value or (default or "")


def confirm(message: str, default: bool = False) -> bool:
    hint = "Y/n" if default else "y/N"
    answer = prompt(f"{message} ({hint})").lower()
    if not answer:
        return default
    return answer in {"y", "yes"}


def _print_block(title: str, lines: List[str]) -> None:
    width = max([len(title)] + [len(line) for line in lines]) + 2
    print()
    log("INFO", title)
    print("=" * width)
    for line in lines:
        print(line)
    print("=" * width)
    print(flush=True)


def print_vm_list(orchestrator: LifecycleOrchestrator) -> int:
    vms = orchestrator.list_vms()
    if not vms:
        log("INFO", "No VMs created yet.")
        return 0
    log("INFO", "VM List:")
    for idx, (name, state) in enumerate(vms, start=1):
        print(f"  {idx:2d}) {name:<20} ({state.capitalize()})")
    return len(vms)


def print_catalog(catalog: Dict[str, OSImage]) -> None:
    if not catalog:
        log("WARN", "No OS images found in catalog")
        return
    max_key = max(len(k) for k in catalog)
    for key in sorted(catalog):
        info = catalog[key]
        print(f"  {key:<{max_key}}  {info.name}  (user={info.default_username})")


def print_info(info: VMInfo) -> None:
    cfg = info.config
    status = info.state.capitalize()
    if info.pids:
        status += f" (PID: {', '.join(str(p) for p in info.pids)})"
    _print_block(
        f"VM Information: {cfg.vm_name}",
        [
            f"Status: {status}",
            f"OS: {cfg.os_type} ({cfg.codename})",
            f"Hostname: {cfg.hostname}",
            f"Username: {cfg.username}",
            f"Password (sensitive, stored in clear text): {cfg.password}",
            f"SSH Port (Host->Guest 22): {cfg.ssh_port}",
            f"Memory: {cfg.memory_mb} MB",
            f"CPUs: {cfg.cpus}",
            f"Disk: {cfg.disk_size}",
            f"GUI Mode: {'true' if cfg.gui_mode else 'false'}",
            f"Port Forwards: {format_port_forwards(cfg.port_forwards) or 'None'}",
            f"Created: {cfg.created}",
            f"Image File: {cfg.image_file}",
            f"Seed File: {cfg.seed_file}",
        ],
    )


def print_performance(report: PerformanceReport) -> None:
    cfg = report.config
    stats = report.stats
    if stats is None:
        lines = [
            f"VM {cfg.vm_name} is not running.",
            "Configuration Summary:",
            f"  Memory: {cfg.memory_mb} MB | CPUs: {cfg.cpus} | Disk: {cfg.disk_size}",
        ]
    else:
        lines = [
            f"QEMU Process Stats (PID: {stats.pid}):",
            f"  CPU: {stats.cpu_percent:.1f}% | MEM: {stats.memory_percent:.1f}%",
            f"  RSS: {format_bytes(stats.rss_bytes)} | VSZ: {format_bytes(stats.vms_bytes)}",
            f"Disk File Size: {format_bytes(stats.image_bytes)} ({cfg.image_file})",
        ]
    _print_block(f"Performance metrics for VM: {cfg.vm_name}", lines)


def _retry(ask: Callable[[], object]) -> object:
    """Re-prompt until the answer validates."""
    while True:
        try:
            return ask()
        except ValidationError as exc:
            log("ERROR", str(exc))


def prompt_create_request(catalog: Dict[str, OSImage]) -> CreateRequest:
    keys = sorted(catalog)
    log("INFO", "Select an OS image to set up:")
    for idx, key in enumerate(keys, start=1):
        print(f"  {idx}) {catalog[key].name}")

    def _choose_os() -> OSImage:
        choice = prompt(f"Enter your choice (1-{len(keys)})")
        if choice.isdigit() and 1 <= int(choice) <= len(keys):
            return catalog[keys[int(choice) - 1]]
        raise ValidationError("Invalid selection. Try again.")

    os_image = _retry(_choose_os)
    assert isinstance(os_image, OSImage)
    vm_name = prompt("Enter VM name", os_image.default_hostname)
    return CreateRequest(
        os_image=os_image,
        vm_name=vm_name,
        hostname=prompt("Enter hostname", vm_name),
        username=prompt("Enter username", os_image.default_username),
        password=prompt("Enter password (input hidden, Enter for default)", secret=True) or os_image.default_password,
        disk_size=prompt("Disk size", "20G"),
        memory_mb=prompt("Memory in MB", "2048"),
        cpus=prompt("Number of CPUs", "2"),
        ssh_port=prompt("SSH Host Port", "2222"),
        gui_mode=confirm("Enable GUI mode?"),
        port_forwards=prompt("Additional port forwards (e.g., 8080:80, Enter for none)"),
    )


def prompt_edit(orchestrator: LifecycleOrchestrator, identity: str) -> None:
    while True:
        cfg = orchestrator.store.load(identity)
        print("What would you like to edit?")
        for idx, (field, label) in enumerate(_EDIT_MENU, start=1):
            if field == "password":
                print(f"  {idx}) {label}")
                continue
            current = getattr(cfg, field)
            if field == "port_forwards":
                current = format_port_forwards(current) or "None"
            print(f"  {idx}) {label} (Current: {current})")
        print("  0) Done editing")
        choice = prompt("Enter your choice")
        if choice == "0":
            return
        if not choice.isdigit() or not 1 <= int(choice) <= len(_EDIT_MENU):
            log("ERROR", "Invalid selection. Please choose a number from the menu.")
            continue
        field, label = _EDIT_MENU[int(choice) - 1]
        value = prompt(f"Enter new {label}", secret=field == "password")
        if not value:
            continue
        try:
            orchestrator.edit_vm(identity, {field: value})
            log("SUCCESS", "Configuration updated. Stop and start the VM for settings to take effect.")
        except StorageError:
            raise
        except ManagerError as exc:
            log("ERROR", str(exc))


def run_menu(orchestrator: LifecycleOrchestrator, catalog: Dict[str, OSImage]) -> int:
    actions: Dict[str, Callable[[str], object]] = {
        "2": orchestrator.start_vm,
        "3": orchestrator.stop_vm,
        "4": lambda name: print_info(orchestrator.show_info(name)),
        "5": lambda name: prompt_edit(orchestrator, name),
        "6": lambda name: _delete(orchestrator, name, assume_yes=False),
        "7": lambda name: orchestrator.resize_disk(name, prompt("Enter new disk size (e.g., 50G)")),
        "8": lambda name: print_performance(orchestrator.show_performance(name)),
    }
    while True:
        vm_count = print_vm_list(orchestrator)
        print("Main Menu Options:")
        print("  1) Create a new VM")
        if vm_count:
            print("  2) Start a VM")
            print("  3) Stop a VM")
            print("  4) Show VM Info")
            print("  5) Edit VM Configuration")
            print("  6) Delete a VM")
            print("  7) Resize VM Disk Image")
            print("  8) Show VM Performance")
        print("  0) Exit")
        choice = prompt("Enter your choice")
        try:
            if choice == "0":
                log("INFO", "Exiting VM Manager. Goodbye!")
                return 0
            if choice == "1":
                _retry(lambda: orchestrator.create_vm(prompt_create_request(catalog)))
            elif choice in actions and vm_count:
                name = orchestrator.resolve(prompt(f"Enter VM number (1-{vm_count})"))
                actions[choice](name)
            else:
                log("ERROR", "Invalid option.")
        except StorageError:
            raise
        except ManagerError as exc:
            log("ERROR", str(exc))


def _delete(orchestrator: LifecycleOrchestrator, name: str, assume_yes: bool) -> bool:
    if not assume_yes:
        log("WARN", f"This will permanently delete VM '{name}' and all its data!")
        if not confirm("Are you sure?"):
            log("INFO", "Deletion cancelled.")
            return False
    orchestrator.delete_vm(name)
    return True


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="QEMU/cloud-init virtual machine manager")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("list", help="List VMs and their state")
    sub.add_parser("os-list", help="List OS images available for new VMs")
    sub.add_parser("menu", help="Interactive menu")

    create = sub.add_parser("create", help="Create a new VM")
    create.add_argument("--os", dest="os_key", default="ubuntu-2204", help="OS catalog key (see os-list)")
    create.add_argument("--name", help="VM name (default: the OS default hostname)")
    create.add_argument("--hostname", default="")
    create.add_argument("--username", default="")
    create.add_argument("--password", default="", help="Guest password (default: the OS default)")
    create.add_argument("--disk-size", default="20G")
    create.add_argument("--memory", default="2048", help="Memory in MB")
    create.add_argument("--cpus", default="2")
    create.add_argument("--ssh-port", default="2222")
    create.add_argument("--gui", action="store_true", help="Graphical display instead of headless")
    create.add_argument(
        "--forward",
        action="append",
        default=[],
        metavar="HOST:GUEST",
        help="Additional TCP port forward (repeatable)",
    )

    for name, help_text in (
        ("start", "Start a VM"),
        ("stop", "Stop a VM"),
        ("info", "Show VM configuration and state"),
        ("performance", "Show VM process metrics"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("vm", help="VM name or list index")

    edit = sub.add_parser("edit", help="Edit VM configuration")
    edit.add_argument("vm", help="VM name or list index")
    edit.add_argument("--hostname")
    edit.add_argument("--username")
    edit.add_argument("--password")
    edit.add_argument("--ssh-port", dest="ssh_port")
    edit.add_argument("--gui", dest="gui_mode", choices=["yes", "no"])
    edit.add_argument("--forwards", dest="port_forwards", help="Replace port forwards, e.g. 8080:80,8443:443")
    edit.add_argument("--memory", dest="memory_mb")
    edit.add_argument("--cpus")

    delete = sub.add_parser("delete", help="Delete a stopped VM and its disk")
    delete.add_argument("vm", help="VM name or list index")
    delete.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")

    resize = sub.add_parser("resize", help="Grow a stopped VM's disk image")
    resize.add_argument("vm", help="VM name or list index")
    resize.add_argument("size", help="New size, e.g. 50G")
    return parser


def _dispatch(args: argparse.Namespace, settings: Settings) -> int:
    orchestrator = LifecycleOrchestrator(settings)
    command = args.command or "menu"

    if command == "os-list":
        print_catalog(load_os_catalog(settings.catalog_path))
        return 0
    if command == "list":
        print_vm_list(orchestrator)
        return 0

    if command in _MUTATING_COMMANDS:
        check_dependencies(settings.required_tools())

    if command == "menu":
        if not has_controlling_tty():
            log("ERROR", "The interactive menu needs a terminal; use the subcommands instead (see --help)")
            return 1
        return run_menu(orchestrator, load_os_catalog(settings.catalog_path))

    if command == "create":
        catalog = load_os_catalog(settings.catalog_path)
        if args.os_key not in catalog:
            raise ValidationError(f"Unknown OS '{args.os_key}'. Available: {', '.join(sorted(catalog))}")
        os_image = catalog[args.os_key]
        request = CreateRequest(
            os_image=os_image,
            vm_name=args.name or os_image.default_hostname,
            hostname=args.hostname,
            username=args.username,
            password=args.password,
            disk_size=args.disk_size,
            memory_mb=args.memory,
            cpus=args.cpus,
            ssh_port=args.ssh_port,
            gui_mode=args.gui,
            port_forwards=",".join(args.forward),
        )
        cfg = orchestrator.create_vm(request)
        log("SUCCESS", f"VM '{cfg.vm_name}' created. Start it with: vmmanager start {cfg.vm_name}")
        return 0

    name = orchestrator.resolve(args.vm)
    if command == "start":
        cfg = orchestrator.start_vm(name)
        log("INFO", f"Run 'ssh -p {cfg.ssh_port} {cfg.username}@localhost' to connect.")
        log("INFO", f"Password (sensitive): {cfg.password}")
    elif command == "stop":
        orchestrator.stop_vm(name)
    elif command == "info":
        print_info(orchestrator.show_info(name))
    elif command == "performance":
        print_performance(orchestrator.show_performance(name))
    elif command == "edit":
        changes = {
            field: getattr(args, field)
            for field, _ in _EDIT_MENU
            if getattr(args, field, None) is not None
        }
        if not changes:
            log("WARN", "Nothing to change; pass at least one option (see --help)")
            return 1
        orchestrator.edit_vm(name, changes)
    elif command == "delete":
        if not _delete(orchestrator, name, assume_yes=args.yes):
            return 1
    elif command == "resize":
        orchestrator.resize_disk(name, args.size)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = parse_settings()
        return _dispatch(args, settings)
    except StorageError as exc:
        log("ERROR", f"Store failure, aborting: {exc}")
        return 2
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        print()
        log("WARN", "Interrupted")
        return 130
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        log("ERROR", "This is likely a bug.")
        import traceback

        traceback.print_exc()
        return 1
