"""Talos Linux variant: fetch the metal ISO, upload it and boot from it."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Optional

from vmbootstrap.cdrom import CDROMManager
from vmbootstrap.constants import TALOS_FACTORY_URL, TALOS_RELEASE_URL
from vmbootstrap.creator import VMCreator
from vmbootstrap.datastore import DatastoreTransfer
from vmbootstrap.exceptions import BootstrapError, CancelledError, ConfigInvalidError, UploadFailedError
from vmbootstrap.models import Timeouts
from vmbootstrap.utils import datastore_path, download_file, ensure_directory, log


def normalize_version(version: str) -> str:
    version = version.strip()
    if version and not version.startswith("v"):
        return "v" + version
    return version


def talos_iso_url(version: str, schematic_id: str = "") -> str:
    schematic_id = schematic_id.strip()
    if schematic_id:
        return TALOS_FACTORY_URL.format(schematic=schematic_id, version=version)
    return TALOS_RELEASE_URL.format(version=version)


def talos_cache_filename(version: str, schematic_id: str = "") -> str:
    base = "talos-" + version.lstrip("v")
    schematic_id = schematic_id.strip()
    if schematic_id:
        base += "-sch-" + schematic_id[:12]
    return base + ".iso"


class TalosProvisioner:
    def __init__(self, cache_dir: Path, timeouts: Timeouts, cancel: Optional[threading.Event] = None):
        self.cache_dir = cache_dir / "talos"
        self.timeouts = timeouts
        self.cancel = cancel

    def download_iso(self, version: str, schematic_id: str = "") -> Path:
        version = normalize_version(version)
        if not version:
            raise ConfigInvalidError("talos version is required")
        ensure_directory(self.cache_dir)
        local_path = self.cache_dir / talos_cache_filename(version, schematic_id)
        if local_path.exists():
            log("INFO", f"Using cached Talos ISO: {local_path}")
            return local_path
        download_file(
            talos_iso_url(version, schematic_id),
            local_path,
            label=f"Downloading Talos {version}",
            timeout=self.timeouts.download,
            progress_interval=self.timeouts.upload_progress,
            cancel=self.cancel,
        )
        return local_path

    def provision_and_boot(
        self,
        vm: Any,
        version: str,
        schematic_id: str,
        datastore: Any,
        transfer: DatastoreTransfer,
        cdrom: CDROMManager,
        creator: VMCreator,
    ) -> str:
        """Upload and mount the Talos ISO, then power the VM on. Returns the upload path."""
        iso_path = self.download_iso(version, schematic_id)
        upload_path = f"ISO/talos/{iso_path.name}"
        try:
            transfer.upload_to_datastore(datastore, iso_path, upload_path)
        except CancelledError:
            raise
        except BootstrapError as exc:
            raise UploadFailedError(f"failed to upload Talos ISO: {exc}")

        cdrom.mount_single(vm, datastore_path(datastore.name, upload_path), "Talos")
        creator.power_on(vm)
        try:
            cdrom.ensure_connected_after_boot(vm)
        except CancelledError:
            raise
        except BootstrapError as exc:
            log("WARN", f"CD-ROM post-boot check failed (continuing): {exc}")
        return upload_path
