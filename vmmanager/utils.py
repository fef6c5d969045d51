"""Utility functions for qemu-vm-manager."""

from __future__ import annotations

import errno
import os
import shutil
import socket
import subprocess
import sys
import time
from pathlib import Path
from typing import List, Optional
from http.client import HTTPException
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from vmmanager.constants import _LOG_VERBOSE, TRUTHY
from vmmanager.exceptions import DependencyError, ImageFetchError, ManagerError


def log(level: str, message: str) -> None:
    """Lightweight structured logging with coloured level prefixes."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "INPUT": "\033[0;36m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ManagerError(f"{name} must be <= {max_val} (got {value})")
    return value


def parse_size_to_bytes(size: str) -> int:
    """Convert '20G' / '512M' (qemu-img notation) to bytes."""
    raw = size.strip()
    units = {"K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}
    suffix = raw[-1:].upper()
    if suffix in units:
        return int(raw[:-1]) * units[suffix]
    return int(raw)


def format_bytes(value: Optional[int]) -> str:
    if value is None:
        return "unknown"
    amount = float(value)
    for unit in ("B", "K", "M", "G"):
        if amount < 1024:
            return f"{amount:.1f}{unit}"
        amount /= 1024
    return f"{amount:.1f}T"


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Download ``url`` into ``destination`` with a progress bar.

    The caller owns ``destination``; on any failure it is left for the caller
    to discard. Raises ImageFetchError when the source is unreachable or the
    body is shorter than (or inconsistent with) the advertised Content-Length.
    """
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": "qemu-vm-manager/1.0"})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise ImageFetchError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise ImageFetchError(f"Failed to download {url}: {exc.reason}")
    except (OSError, HTTPException) as exc:
        raise ImageFetchError(f"Failed to download {url}: {exc!r}") from exc

    total = response.headers.get("Content-Length")
    try:
        total_bytes = int(total) if total else None
    except ValueError:
        response.close()
        raise ImageFetchError(f"Invalid Content-Length from {url}: {total!r}")
    downloaded = 0
    start_time = time.time()

    try:
        with open(destination, "wb") as out:
            chunk_size = 1024 * 256  # 256 KiB
            while True:
                chunk = response.read(chunk_size)
                if not chunk:
                    break
                out.write(chunk)
                downloaded += len(chunk)

                elapsed = time.time() - start_time
                speed = downloaded / elapsed if elapsed > 0 else 0
                downloaded_mb = downloaded / (1024 * 1024)

                if total_bytes:
                    total_mb = total_bytes / (1024 * 1024)
                    pct = downloaded * 100 / total_bytes
                    bar_len = 30
                    filled = int(bar_len * downloaded / total_bytes)
                    bar = "#" * filled + "-" * (bar_len - filled)
                    print(
                        f"\r  [{bar}] {pct:5.1f}% {downloaded_mb:.1f}/{total_mb:.1f} MiB "
                        f"({speed / (1024 * 1024):.1f} MiB/s)",
                        end="", flush=True,
                    )
                else:
                    print(
                        f"\r  {downloaded_mb:.1f} MiB downloaded "
                        f"({speed / (1024 * 1024):.1f} MiB/s)",
                        end="", flush=True,
                    )
            print(flush=True)  # newline after progress
    except (OSError, HTTPException) as exc:
        raise ImageFetchError(f"Transfer of {url} failed: {exc!r}") from exc
    finally:
        response.close()

    if total_bytes is not None and downloaded != total_bytes:
        raise ImageFetchError(
            f"Incomplete download of {url}: got {downloaded} of {total_bytes} bytes"
        )
    if downloaded == 0:
        raise ImageFetchError(f"Empty response body from {url}")
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDWR)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def has_controlling_tty() -> bool:
    """Return True if both stdin and stdout are attached to a TTY."""
    for stream in (sys.stdin, sys.stdout):
        try:
            if not stream.isatty():
                return False
        except (AttributeError, ValueError):
            return False
    return True


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def hash_password(password: str) -> str:
    """Generate a bcrypt hash for cloud-init."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def port_in_use(port: int) -> bool:
    """Best-effort check: True if something on the host already listens on ``port``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind(("", port))
        except OSError as exc:
            return exc.errno in {errno.EADDRINUSE, errno.EACCES}
    return False


def check_dependencies(tools: List[str]) -> None:
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        raise DependencyError(
            f"Missing essential dependencies: {', '.join(missing)}\n"
            "  Install them first (Debian/Ubuntu: sudo apt install qemu-system-x86 qemu-utils cloud-image-utils)"
        )


def tail_file(path: Path, lines: int = 10) -> str:
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""
    return "\n".join(content.splitlines()[-lines:])


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
