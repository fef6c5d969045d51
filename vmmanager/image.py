"""Disk image and cloud-init seed preparation for qemu-vm-manager."""

from __future__ import annotations

import hashlib
import json
import os
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmmanager.config import Settings
from vmmanager.constants import PART_SUFFIX
from vmmanager.exceptions import ImageFetchError, ResizeError, SeedGenerationError
from vmmanager.models import VMConfig
from vmmanager.utils import download_file, ensure_directory, hash_password, log, parse_size_to_bytes, run


def _sibling(path: Path, suffix: str) -> Path:
    return path.with_name(path.name + suffix)


def _describe_failure(exc: Exception) -> str:
    if isinstance(exc, subprocess.CalledProcessError):
        detail = (exc.stderr or exc.stdout or "").strip()
        return detail or f"exit status {exc.returncode}"
    return str(exc)


class ImagePreparer:
    """Materialise a VM's disk image and seed ISO at their fixed store paths.

    Every step can be re-run safely: an existing image is never re-fetched,
    a resize only ever grows the disk, and temporaries left behind by an
    interrupted run are discarded before new ones are written.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def prepare(self, config: VMConfig) -> Tuple[Path, Path]:
        log("INFO", f"Preparing image and seed for VM '{config.vm_name}'...")
        ensure_directory(config.image_file.parent)
        self.ensure_image(config)
        try:
            self.resize(config, config.disk_size)
        except ResizeError as exc:
            log("WARN", f"{exc}. Proceeding with current image size.")
        self.generate_seed(config)
        log("SUCCESS", f"VM '{config.vm_name}' image and seed prepared successfully.")
        return config.image_file, config.seed_file

    # -- image ---------------------------------------------------------

    def _image_temporaries(self, image: Path) -> List[Path]:
        return [
            _sibling(image, PART_SUFFIX),
            _sibling(image, ".converted" + PART_SUFFIX),
            _sibling(image, ".overlay" + PART_SUFFIX),
            _sibling(image, ".resized" + PART_SUFFIX),
        ]

    def _discard_stale(self, paths: List[Path]) -> None:
        for path in paths:
            if path.exists():
                log("WARN", f"Removing leftover temporary file {path}")
                path.unlink(missing_ok=True)

    def ensure_image(self, config: VMConfig) -> bool:
        """Fetch the base image unless it is already in place. Returns True if fetched."""
        image = config.image_file
        self._discard_stale(self._image_temporaries(image))
        if image.exists():
            log("INFO", f"Base image file already exists ({image}). Skipping download.")
            return False

        part = _sibling(image, PART_SUFFIX)
        converted = _sibling(image, ".converted" + PART_SUFFIX)
        try:
            download_file(config.image_url, part, label="Downloading base image")
            fmt = self.image_format(part)
            if fmt is None:
                raise ImageFetchError(f"Downloaded file from {config.image_url} is not a recognisable disk image")
            source = part
            if fmt != "qcow2":
                log("INFO", f"Converting {fmt} image to qcow2...")
                try:
                    run(
                        [self.settings.qemu_img, "convert", "-f", fmt, "-O", "qcow2", str(part), str(converted)],
                        capture_output=True,
                    )
                except (subprocess.CalledProcessError, OSError) as exc:
                    raise ImageFetchError(f"Failed to convert image for VM '{config.vm_name}': {_describe_failure(exc)}")
                source = converted
            os.replace(source, image)
        except OSError as exc:
            raise ImageFetchError(f"Failed to place image for VM '{config.vm_name}': {exc}") from exc
        finally:
            for tmp in (part, converted):
                tmp.unlink(missing_ok=True)
        log("SUCCESS", f"Image ready at {image}")
        return True

    def _image_info(self, path: Path) -> Optional[Dict[str, object]]:
        try:
            result = run(
                [self.settings.qemu_img, "info", "--output=json", str(path)],
                check=False,
                capture_output=True,
            )
        except OSError:
            return None
        if result.returncode != 0:
            return None
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError:
            return None

    def image_format(self, path: Path) -> Optional[str]:
        info = self._image_info(path)
        if info is None:
            return None
        fmt = info.get("format")
        return str(fmt) if fmt else None

    def virtual_size(self, path: Path) -> Optional[int]:
        info = self._image_info(path)
        if info is None:
            return None
        size = info.get("virtual-size")
        return int(size) if isinstance(size, int) else None

    # -- resize --------------------------------------------------------

    def resize(self, config: VMConfig, new_size: str) -> None:
        """Grow the image to ``new_size``; never shrinks.

        Falls back to a backing-file overlay flattened over the original
        when ``qemu-img resize`` refuses. Raises ResizeError only if both
        strategies fail.
        """
        image = config.image_file
        if not image.exists():
            raise ResizeError(f"Cannot resize VM '{config.vm_name}': image {image} does not exist")
        requested = parse_size_to_bytes(new_size)
        current = self.virtual_size(image)
        if current is not None and current >= requested:
            log("INFO", f"Image already {current // (1024**2)}M (>= {new_size}); skip resize")
            return

        log("INFO", f"Resizing disk image to {new_size}...")
        try:
            run([self.settings.qemu_img, "resize", "-f", "qcow2", str(image), new_size], capture_output=True)
            log("SUCCESS", f"Disk image resized to {new_size}")
            return
        except (subprocess.CalledProcessError, OSError) as exc:
            direct_error = _describe_failure(exc)
            log("WARN", f"In-place resize failed ({direct_error}); trying overlay")

        try:
            self._resize_via_overlay(image, new_size)
        except (subprocess.CalledProcessError, OSError) as exc:
            raise ResizeError(
                f"Failed to resize disk for VM '{config.vm_name}' to {new_size}: "
                f"resize: {direct_error}; overlay: {_describe_failure(exc)}"
            )
        log("SUCCESS", f"Disk image resized to {new_size} via overlay")

    def _resize_via_overlay(self, image: Path, new_size: str) -> None:
        overlay = _sibling(image, ".overlay" + PART_SUFFIX)
        flattened = _sibling(image, ".resized" + PART_SUFFIX)
        try:
            run(
                [
                    self.settings.qemu_img,
                    "create",
                    "-f",
                    "qcow2",
                    "-b",
                    str(image),
                    "-F",
                    "qcow2",
                    str(overlay),
                    new_size,
                ],
                capture_output=True,
            )
            run(
                [self.settings.qemu_img, "convert", "-O", "qcow2", str(overlay), str(flattened)],
                capture_output=True,
            )
            os.replace(flattened, image)
        finally:
            overlay.unlink(missing_ok=True)
            flattened.unlink(missing_ok=True)

    # -- seed ----------------------------------------------------------

    def render_user_data(self, config: VMConfig) -> str:
        user_cfg: Dict[str, object] = {
            "hostname": config.hostname,
            "ssh_pwauth": True,
            "disable_root": False,
            "users": [
                {
                    "name": config.username,
                    "sudo": "ALL=(ALL) NOPASSWD:ALL",
                    "shell": "/bin/bash",
                    "lock_passwd": False,
                    "passwd": hash_password(config.password),
                }
            ],
            "chpasswd": {
                "expire": False,
                "users": [
                    {"name": "root", "password": config.password, "type": "text"},
                    {"name": config.username, "password": config.password, "type": "text"},
                ],
            },
            # Grow the root partition on first boot
            "growpart": {"mode": "auto", "devices": ["/"]},
        }
        return "#cloud-config\n" + yaml.safe_dump(user_cfg, sort_keys=False, default_flow_style=False)

    def render_meta_data(self, config: VMConfig) -> str:
        # A new instance-id makes cloud-init re-apply users after an edit
        digest = hashlib.sha256(
            f"{config.hostname}\0{config.username}\0{config.password}".encode("utf-8")
        ).hexdigest()[:8]
        meta_cfg = {
            "instance-id": f"iid-{config.vm_name}-{digest}",
            "local-hostname": config.hostname,
        }
        return yaml.safe_dump(meta_cfg, sort_keys=False, default_flow_style=False)

    def generate_seed(self, config: VMConfig) -> Path:
        log("INFO", "Creating cloud-init seed image...")
        seed = config.seed_file
        part = _sibling(seed, PART_SUFFIX)
        self._discard_stale([part])
        with tempfile.TemporaryDirectory(prefix=f"{config.vm_name}-cloud-init-") as tmpdir:
            tmp = Path(tmpdir)
            user_data = tmp / "user-data"
            meta_data = tmp / "meta-data"
            user_data.write_text(self.render_user_data(config), encoding="utf-8")
            meta_data.write_text(self.render_meta_data(config), encoding="utf-8")
            try:
                run([self.settings.cloud_localds, str(part), str(user_data), str(meta_data)], capture_output=True)
                os.replace(part, seed)
            except (subprocess.CalledProcessError, OSError) as exc:
                raise SeedGenerationError(
                    f"Failed to create cloud-init seed for VM '{config.vm_name}': {_describe_failure(exc)}"
                )
            finally:
                part.unlink(missing_ok=True)
        return seed

    # -- removal -------------------------------------------------------

    def remove_artifacts(self, config: VMConfig) -> List[Path]:
        """Delete image, seed and any temporaries. Missing files are ignored."""
        removed: List[Path] = []
        candidates = [config.image_file, config.seed_file, _sibling(config.seed_file, PART_SUFFIX)]
        candidates += self._image_temporaries(config.image_file)
        for path in candidates:
            if path.exists():
                path.unlink()
                removed.append(path)
        return removed
