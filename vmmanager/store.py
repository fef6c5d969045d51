"""Persistent per-VM configuration records for qemu-vm-manager.

Each VM is one ``{store_root}/{identity}.conf`` file of ``KEY="value"``
lines, quoted so the file can still be sourced by a POSIX shell. The store
knows nothing about artifacts; removing those is the caller's job.

Only one manager instance may operate on a store root at a time; there is
no locking between concurrent writers.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List

from vmmanager.config import artifact_paths, format_port_forwards
from vmmanager.constants import CONFIG_KEYS, CONFIG_SUFFIX, NAME_RE
from vmmanager.exceptions import NotFoundError, StorageError
from vmmanager.models import PortForward, VMConfig
from vmmanager.utils import ensure_directory, log


def _quote(value: str) -> str:
    if "\n" in value or "\r" in value:
        raise ValueError("values cannot contain line breaks")
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("$", "\\$").replace("`", "\\`")
    return f'"{escaped}"'


def serialize_config(config: VMConfig) -> str:
    values = {
        "VM_NAME": config.vm_name,
        "OS_TYPE": config.os_type,
        "CODENAME": config.codename,
        "IMG_URL": config.image_url,
        "HOSTNAME": config.hostname,
        "USERNAME": config.username,
        "PASSWORD": config.password,
        "DISK_SIZE": config.disk_size,
        "MEMORY": str(config.memory_mb),
        "CPUS": str(config.cpus),
        "SSH_PORT": str(config.ssh_port),
        "GUI_MODE": "true" if config.gui_mode else "false",
        "PORT_FORWARDS": format_port_forwards(config.port_forwards),
        "IMG_FILE": str(config.image_file),
        "SEED_FILE": str(config.seed_file),
        "CREATED": config.created,
    }
    return "".join(f"{key}={_quote(values[key])}\n" for key in CONFIG_KEYS)


def _unquote(raw: str) -> str:
    if len(raw) < 2 or not (raw.startswith('"') and raw.endswith('"')):
        raise ValueError(f"value must be double-quoted: {raw}")
    body = raw[1:-1]
    out = []
    idx = 0
    while idx < len(body):
        char = body[idx]
        if char == "\\" and idx + 1 < len(body) and body[idx + 1] in '\\"$`':
            out.append(body[idx + 1])
            idx += 2
            continue
        if char == '"':
            raise ValueError(f"unescaped quote in value: {raw}")
        out.append(char)
        idx += 1
    return "".join(out)


def parse_record(text: str) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for lineno, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = stripped.partition("=")
        if not sep or not key.isidentifier():
            raise ValueError(f"line {lineno}: expected KEY=\"value\"")
        try:
            values[key] = _unquote(value)
        except ValueError as exc:
            raise ValueError(f"line {lineno}: {exc}")
    return values


class ConfigStore:
    """One configuration record per VM identity, under a single directory."""

    def __init__(self, root: Path) -> None:
        self.root = root
        try:
            ensure_directory(self.root)
        except OSError as exc:
            raise StorageError(f"Cannot create store directory {self.root}: {exc}") from exc

    def path_for(self, identity: str) -> Path:
        return self.root / f"{identity}{CONFIG_SUFFIX}"

    def list(self) -> List[str]:
        try:
            names = [p.name[: -len(CONFIG_SUFFIX)] for p in self.root.glob(f"*{CONFIG_SUFFIX}") if p.is_file()]
        except OSError as exc:
            raise StorageError(f"Cannot scan store {self.root}: {exc}") from exc
        return sorted(name for name in names if NAME_RE.match(name))

    def exists(self, identity: str) -> bool:
        return self.path_for(identity).is_file()

    def load(self, identity: str) -> VMConfig:
        path = self.path_for(identity)
        if not path.is_file():
            raise NotFoundError(f"Configuration for VM '{identity}' not found at {path}")
        try:
            raw = parse_record(path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise StorageError(f"Cannot read configuration for VM '{identity}': {exc}") from exc
        except ValueError as exc:
            raise StorageError(f"Malformed configuration for VM '{identity}' ({path}): {exc}") from exc
        return self._from_record(identity, raw, path)

    def save(self, config: VMConfig) -> None:
        path = self.path_for(config.vm_name)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            text = serialize_config(config)
        except ValueError as exc:
            raise StorageError(f"Cannot write configuration for VM '{config.vm_name}': {exc}") from exc
        try:
            tmp_path.write_text(text, encoding="utf-8")
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(f"Cannot write configuration for VM '{config.vm_name}' to {path}: {exc}") from exc
        log("SUCCESS", f"Configuration saved to {path}")

    def delete(self, identity: str) -> None:
        path = self.path_for(identity)
        if not path.is_file():
            raise NotFoundError(f"Configuration for VM '{identity}' not found at {path}")
        try:
            path.unlink()
        except OSError as exc:
            raise StorageError(f"Cannot remove configuration for VM '{identity}': {exc}") from exc

    def _from_record(self, identity: str, raw: Dict[str, str], path: Path) -> VMConfig:
        missing = [key for key in CONFIG_KEYS if key not in raw]
        if missing:
            raise StorageError(f"Configuration {path} is missing keys: {', '.join(missing)}")
        if raw["VM_NAME"] != identity:
            raise StorageError(f"Configuration {path} declares VM_NAME='{raw['VM_NAME']}', expected '{identity}'")

        image_file, seed_file = artifact_paths(self.root, identity)
        if raw["IMG_FILE"] != str(image_file) or raw["SEED_FILE"] != str(seed_file):
            log("WARN", f"Artifact paths in {path} do not match the store layout; using {image_file} and {seed_file}")

        try:
            forwards = []
            for entry in raw["PORT_FORWARDS"].split(","):
                entry = entry.strip()
                if entry:
                    host, guest = entry.split(":")
                    forwards.append(PortForward(host_port=int(host), guest_port=int(guest)))
            return VMConfig(
                vm_name=identity,
                os_type=raw["OS_TYPE"],
                codename=raw["CODENAME"],
                image_url=raw["IMG_URL"],
                hostname=raw["HOSTNAME"],
                username=raw["USERNAME"],
                password=raw["PASSWORD"],
                disk_size=raw["DISK_SIZE"],
                memory_mb=int(raw["MEMORY"]),
                cpus=int(raw["CPUS"]),
                ssh_port=int(raw["SSH_PORT"]),
                gui_mode=raw["GUI_MODE"].lower() == "true",
                port_forwards=forwards,
                image_file=image_file,
                seed_file=seed_file,
                created=raw["CREATED"],
            )
        except ValueError as exc:
            raise StorageError(f"Configuration {path} has an invalid value: {exc}") from exc
