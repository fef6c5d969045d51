"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from vmmanager.config import Settings
from vmmanager.models import OSImage, PortForward, VMConfig


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings rooted in a per-test store directory."""
    root = tmp_path / "vms"
    root.mkdir()
    return Settings(store_root=root, launch_grace=0, stop_grace=0)


@pytest.fixture
def os_image() -> OSImage:
    return OSImage(
        key="ubuntu-2204",
        name="Ubuntu 22.04",
        os_type="ubuntu",
        codename="jammy",
        url="https://example.com/jammy.img",
        default_hostname="ubuntu22",
        default_username="ubuntu",
        default_password="ubuntu",
    )


def make_vm_config(store_root: Path, name: str = "web1", **overrides) -> VMConfig:
    values = dict(
        vm_name=name,
        os_type="ubuntu",
        codename="jammy",
        image_url="https://example.com/jammy.img",
        hostname=name,
        username="ubuntu",
        password="ubuntu",
        disk_size="20G",
        memory_mb=2048,
        cpus=2,
        ssh_port=2222,
        gui_mode=False,
        port_forwards=[],
        image_file=store_root / f"{name}.qcow2",
        seed_file=store_root / f"{name}-seed.iso",
        created="Mon Jan 01 00:00:00 UTC 2024",
    )
    values.update(overrides)
    return VMConfig(**values)


@pytest.fixture
def default_vm_config(settings) -> VMConfig:
    """Return a VMConfig for 'web1' stored under the test store root."""
    return make_vm_config(settings.store_root, port_forwards=[PortForward(8080, 80)])


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


# All environment variables that parse_settings() reads
_SETTINGS_ENV_VARS = [
    "VM_DIR",
    "QEMU_BINARY",
    "QEMU_IMG",
    "CLOUD_LOCALDS",
    "PORT_MIN",
    "PORT_MAX",
    "LAUNCH_GRACE",
    "STOP_GRACE",
    "OS_CATALOG",
    "REQUIRE_KVM",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Clear every settings variable and point VM_DIR at a temporary store."""
    for key in _SETTINGS_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("VM_DIR", str(tmp_path / "store"))


@pytest.fixture
def make_config(settings):
    """Factory for VMConfig values stored under the test store root."""

    def _make(name: str = "web1", **overrides) -> VMConfig:
        return make_vm_config(settings.store_root, name, **overrides)

    return _make
