"""Hypervisor process control for qemu-vm-manager."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Dict, List, Optional

try:
    import psutil  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("psutil is required but not installed") from exc

from vmmanager.config import Settings
from vmmanager.constants import GUEST_SSH_PORT, KILL_GRACE, LOG_SUFFIX
from vmmanager.exceptions import LaunchError, StopError
from vmmanager.models import ProcessStats, VMConfig
from vmmanager.utils import kvm_available, log


class ProcessController:
    """Launch, find and stop the QEMU process that belongs to a VM.

    PIDs of processes launched in this session are kept in an in-memory
    registry. When no live handle is known, typically after the manager
    was restarted, processes are rediscovered by matching their command
    line against the VM's image path.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._handles: Dict[str, subprocess.Popen] = {}

    def log_path(self, config: VMConfig) -> Path:
        return config.image_file.parent / f"{config.vm_name}{LOG_SUFFIX}"

    def build_command(self, config: VMConfig) -> List[str]:
        cmd = [self.settings.qemu_binary]
        if kvm_available():
            cmd += ["-enable-kvm", "-cpu", "host"]
        elif self.settings.require_kvm:
            raise LaunchError("/dev/kvm is not available and REQUIRE_KVM is set; refusing to start in software emulation")
        else:
            log("WARN", "/dev/kvm not available; running in software emulation mode (TCG), expect slow guests")
            cmd += ["-cpu", "max"]
        cmd += [
            "-name",
            config.vm_name,
            "-m",
            str(config.memory_mb),
            "-smp",
            str(config.cpus),
            "-drive",
            f"file={config.image_file},format=qcow2,if=virtio",
            "-drive",
            f"file={config.seed_file},format=raw,if=virtio",
            "-boot",
            "order=c",
            "-device",
            "virtio-net-pci,netdev=n0",
            "-netdev",
            f"user,id=n0,hostfwd=tcp::{config.ssh_port}-:{GUEST_SSH_PORT}",
        ]
        for idx, pf in enumerate(config.port_forwards, start=1):
            cmd += [
                "-device",
                f"virtio-net-pci,netdev=n{idx}",
                "-netdev",
                f"user,id=n{idx},hostfwd=tcp::{pf.host_port}-:{pf.guest_port}",
            ]
        if config.gui_mode:
            cmd += ["-vga", "virtio", "-display", "gtk,gl=on"]
        else:
            cmd += ["-nographic"]
        cmd += [
            "-device",
            "virtio-balloon-pci",
            "-object",
            "rng-random,filename=/dev/urandom,id=rng0",
            "-device",
            "virtio-rng-pci,rng=rng0",
        ]
        return cmd

    def _matches(self, config: VMConfig, cmdline: List[str]) -> bool:
        if not cmdline:
            return False
        binary = os.path.basename(self.settings.qemu_binary)
        if os.path.basename(cmdline[0]) != binary:
            return False
        # The trailing comma keeps "web1.qcow2" from matching "web1.qcow2.bak"
        needle = f"file={config.image_file},"
        return any(needle in arg for arg in cmdline[1:])

    def _live_handle(self, config: VMConfig) -> Optional[subprocess.Popen]:
        proc = self._handles.get(config.vm_name)
        if proc is None:
            return None
        if proc.poll() is not None:
            del self._handles[config.vm_name]
            return None
        return proc

    def _discover(self, config: VMConfig) -> List[psutil.Process]:
        found: List[psutil.Process] = []
        for proc in psutil.process_iter(["pid", "cmdline"]):
            try:
                cmdline = proc.info.get("cmdline") or []
                if self._matches(config, cmdline) and proc.status() != psutil.STATUS_ZOMBIE:
                    found.append(proc)
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        return found

    def _processes(self, config: VMConfig, full_scan: bool = False) -> List[psutil.Process]:
        """Processes of this VM; the registry handle alone suffices unless ``full_scan``."""
        found: List[psutil.Process] = []
        handle = self._live_handle(config)
        if handle is not None:
            try:
                found.append(psutil.Process(handle.pid))
            except psutil.NoSuchProcess:
                self._handles.pop(config.vm_name, None)
        if found and not full_scan:
            return found
        known = {proc.pid for proc in found}
        found += [proc for proc in self._discover(config) if proc.pid not in known]
        return found

    def find_pids(self, config: VMConfig) -> List[int]:
        return [proc.pid for proc in self._processes(config)]

    def is_running(self, config: VMConfig) -> bool:
        return bool(self._processes(config))

    def start(self, config: VMConfig) -> int:
        """Launch the hypervisor detached from this process and return its PID.

        Liveness is not confirmed here; callers wait a grace period and
        check ``is_running`` before reporting success.
        """
        cmd = self.build_command(config)
        log_path = self.log_path(config)
        log("DEBUG", f"Running: {' '.join(cmd)}")
        try:
            # One log per boot
            with open(log_path, "wb") as log_file:
                proc = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as exc:
            raise LaunchError(f"Cannot execute {self.settings.qemu_binary} for VM '{config.vm_name}': {exc}") from exc
        if proc.poll() is not None:
            raise LaunchError(
                f"{self.settings.qemu_binary} exited immediately for VM '{config.vm_name}' "
                f"(code {proc.returncode}); see {log_path}"
            )
        self._handles[config.vm_name] = proc
        log("INFO", f"QEMU process launched for VM '{config.vm_name}' (PID {proc.pid})")
        return proc.pid

    def exit_code(self, config: VMConfig) -> Optional[int]:
        """Exit code of a process launched this session that has already exited."""
        proc = self._handles.get(config.vm_name)
        if proc is None:
            return None
        return proc.poll()

    def stop(self, config: VMConfig) -> bool:
        """Terminate every matching process. Returns False if nothing was running."""
        procs = self._processes(config, full_scan=True)
        if not procs:
            return False
        pids = ", ".join(str(p.pid) for p in procs)
        log("INFO", f"Stopping VM '{config.vm_name}' (PID: {pids})")
        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                continue
        _, alive = psutil.wait_procs(procs, timeout=self.settings.stop_grace)
        if alive:
            log("WARN", f"VM '{config.vm_name}' did not stop gracefully, forcing termination (SIGKILL)...")
            for proc in alive:
                try:
                    proc.kill()
                except psutil.NoSuchProcess:
                    continue
            _, alive = psutil.wait_procs(alive, timeout=KILL_GRACE)
        self._reap(config)
        if alive:
            survivors = ", ".join(str(p.pid) for p in alive)
            raise StopError(f"Failed to stop VM '{config.vm_name}': PID {survivors} survived SIGKILL")
        return True

    def _reap(self, config: VMConfig) -> None:
        proc = self._handles.pop(config.vm_name, None)
        if proc is not None:
            try:
                proc.wait(timeout=KILL_GRACE)
            except subprocess.TimeoutExpired:
                log("DEBUG", f"PID {proc.pid} not reaped yet")

    def resource_usage(self, config: VMConfig) -> Optional[ProcessStats]:
        """CPU/memory figures for the VM's main process, or None if stopped."""
        try:
            procs = self._processes(config)
        except psutil.Error as exc:
            log("DEBUG", f"Process scan failed: {exc}")
            return None
        if not procs:
            return None
        proc = procs[0]
        try:
            image_bytes: Optional[int] = config.image_file.stat().st_size
        except OSError:
            image_bytes = None
        try:
            cpu_percent = proc.cpu_percent(interval=0.5)
            with proc.oneshot():
                mem = proc.memory_info()
                return ProcessStats(
                    pid=proc.pid,
                    cpu_percent=cpu_percent,
                    memory_percent=proc.memory_percent(),
                    rss_bytes=mem.rss,
                    vms_bytes=mem.vms,
                    image_bytes=image_bytes,
                    cmdline=proc.cmdline(),
                )
        except (psutil.NoSuchProcess, psutil.AccessDenied) as exc:
            log("WARN", f"Could not read process stats for VM '{config.vm_name}': {exc}")
            return ProcessStats(
                pid=proc.pid,
                cpu_percent=0.0,
                memory_percent=0.0,
                rss_bytes=0,
                vms_bytes=0,
                image_bytes=image_bytes,
            )
