"""Utility functions for vmware-vm-bootstrap."""

from __future__ import annotations

import hashlib
import ipaddress
import os
import socket
import subprocess
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from vmbootstrap import constants
from vmbootstrap.constants import DOWNLOAD_CHUNK_SIZE, USER_AGENT
from vmbootstrap.exceptions import (
    BootstrapError,
    CancelledError,
    CommandError,
    DownloadFailedError,
)

COMMAND_POLL_SECONDS = 0.5


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    if level == "DEBUG" and not constants._LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def set_verbose(enabled: bool) -> None:
    constants._LOG_VERBOSE = enabled


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def hash_password(password: str) -> str:
    """Generate a bcrypt hash for cloud-init."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def netmask_to_cidr(netmask: str) -> int:
    """Convert a dotted netmask such as 255.255.255.0 to a prefix length."""
    try:
        # Dotted quad only; prefix strings and hostmasks are rejected.
        mask = int(ipaddress.IPv4Address(netmask))
    except ValueError:
        raise BootstrapError(f"invalid netmask: {netmask}")
    inverted = ~mask & 0xFFFFFFFF
    if inverted & (inverted + 1):
        raise BootstrapError(f"invalid netmask: {netmask}")
    return 32 - inverted.bit_length()


def cidr_to_netmask(cidr: int) -> str:
    if cidr < 0 or cidr > 32:
        raise BootstrapError(f"invalid CIDR: {cidr} (must be 0-32)")
    return str(ipaddress.IPv4Network(f"0.0.0.0/{cidr}").netmask)


def validate_ipv4(address: str) -> None:
    try:
        ipaddress.IPv4Address(address)
    except ValueError:
        raise BootstrapError(f"invalid IPv4 address: {address}")


def validate_network_config(ip: str, netmask: str, gateway: str, dns: List[str]) -> None:
    try:
        validate_ipv4(ip)
    except BootstrapError as exc:
        raise BootstrapError(f"invalid IP: {exc}")
    netmask_to_cidr(netmask)
    try:
        validate_ipv4(gateway)
    except BootstrapError as exc:
        raise BootstrapError(f"invalid gateway: {exc}")
    for idx, server in enumerate(dns, start=1):
        try:
            validate_ipv4(server)
        except BootstrapError as exc:
            raise BootstrapError(f"invalid DNS server {idx}: {exc}")


def is_port_open(host: str, port: int, timeout: float) -> bool:
    """Return True if a TCP connection to host:port succeeds within timeout."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def datastore_path(datastore: str, relative: str) -> str:
    """Return the hypervisor-side path ``[datastore] relative``."""
    return f"[{datastore}] {relative.lstrip('/')}"


def wait_or_cancel(cancel: Optional[threading.Event], seconds: float) -> None:
    """Sleep for ``seconds`` unless ``cancel`` is set first."""
    if cancel is None:
        if seconds > 0:
            time.sleep(seconds)
        return
    if cancel.wait(max(seconds, 0)):
        raise CancelledError("operation cancelled")


def check_cancelled(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise CancelledError("operation cancelled")


class Heartbeat:
    """Log the elapsed time of a long-running step at a fixed cadence."""

    def __init__(self, label: str, interval: float):
        self.label = label
        self.interval = interval
        self._done = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._start = 0.0

    def __enter__(self) -> "Heartbeat":
        self._start = time.monotonic()
        if self.interval > 0:
            self._thread = threading.Thread(target=self._run, name=f"heartbeat-{self.label}", daemon=True)
            self._thread.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._done.set()
        if self._thread is not None:
            self._thread.join()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._start

    def _run(self) -> None:
        while not self._done.wait(self.interval):
            log("INFO", f"{self.label}... {int(self.elapsed)}s elapsed")


def run_command(
    cmd: List[str],
    env: Optional[Dict[str, str]] = None,
    cancel: Optional[threading.Event] = None,
    heartbeat: Optional[str] = None,
    heartbeat_interval: float = 0,
) -> str:
    """Run an external tool, returning stdout.

    A non-zero exit status and termination by a signal both raise
    :class:`CommandError` with the captured stderr. Setting ``cancel`` kills
    the child and raises :class:`CancelledError`.
    """
    log("DEBUG", f"Running: {' '.join(cmd)}")
    try:
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            env=env,
        )
    except OSError as exc:
        raise CommandError(cmd, None, str(exc)) from exc

    with Heartbeat(heartbeat or cmd[0], heartbeat_interval if heartbeat else 0):
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=COMMAND_POLL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    proc.kill()
                    proc.communicate()
                    raise CancelledError(f"{cmd[0]} cancelled")

    if proc.returncode != 0:
        raise CommandError(cmd, proc.returncode, stderr or stdout or "")
    return stdout or ""


def download_file(
    url: str,
    destination: Path,
    label: str = "Downloading",
    timeout: float = 1800.0,
    progress_interval: float = 15.0,
    cancel: Optional[threading.Event] = None,
) -> int:
    """Stream ``url`` into ``destination`` and return the number of bytes written.

    The body is written to ``<destination>.part`` and renamed into place once
    complete, so an interrupted download never leaves a truncated file at the
    final path.
    """
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": USER_AGENT})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise DownloadFailedError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise DownloadFailedError(f"Failed to download {url}: {exc.reason}")

    status = getattr(response, "status", 200)
    if status != 200:
        response.close()
        raise DownloadFailedError(f"Failed to download {url}: unexpected status {status}")

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    start_time = time.monotonic()
    last_report = start_time

    tmp_path = destination.with_name(destination.name + ".part")
    try:
        with response, tmp_path.open("wb") as tmp:
            while True:
                check_cancelled(cancel)
                now = time.monotonic()
                if now - start_time > timeout:
                    raise DownloadFailedError(f"Download of {url} exceeded {int(timeout)}s")
                try:
                    chunk = response.read(DOWNLOAD_CHUNK_SIZE)
                except OSError as exc:
                    raise DownloadFailedError(f"Failed to download {url}: {exc}")
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)

                if progress_interval > 0 and now - last_report >= progress_interval:
                    last_report = now
                    downloaded_mb = downloaded / (1024 * 1024)
                    if total_bytes:
                        pct = downloaded * 100 / total_bytes
                        log("INFO", f"  {pct:5.1f}% {downloaded_mb:.1f}/{total_bytes / (1024 * 1024):.1f} MiB")
                    else:
                        log("INFO", f"  {downloaded_mb:.1f} MiB downloaded")
        tmp_path.replace(destination)
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise

    elapsed = time.monotonic() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")
    return downloaded
