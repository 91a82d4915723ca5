"""Installer ISO cache and NoCloud seed image creation."""

from __future__ import annotations

import io
import threading
from pathlib import Path
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse

import pycdlib
from pycdlib.pycdlibexception import PyCdlibException

from vmbootstrap.config import get_release
from vmbootstrap.exceptions import BootstrapError, ChecksumMismatchError
from vmbootstrap.models import ISOSettings, Timeouts, UbuntuRelease
from vmbootstrap.modifier import ISOModifier
from vmbootstrap.utils import download_file, ensure_directory, log, sha256_file

# (ISO9660 name, Rock Ridge name) for each seed file.
_NOCLOUD_FILES = (
    ("/USERDATA.;1", "user-data"),
    ("/METADATA.;1", "meta-data"),
    ("/NETWORKC.;1", "network-config"),
)


def cache_filename(url: str) -> str:
    name = Path(urlparse(url).path).name
    if not name:
        raise BootstrapError(f"cannot derive a file name from {url}")
    return name


class ISOManager:
    """Fetches, rewrites and synthesizes the ISO images a bootstrap needs."""

    def __init__(
        self,
        settings: ISOSettings,
        timeouts: Timeouts,
        cancel: Optional[threading.Event] = None,
        releases: Optional[Dict[str, UbuntuRelease]] = None,
    ):
        self.settings = settings
        self.timeouts = timeouts
        self.cancel = cancel
        self.releases = releases
        self.modifier = ISOModifier(settings, timeouts, cancel)

    @property
    def cache_dir(self) -> Path:
        return self.settings.cache_dir

    def download_ubuntu(self, version: str) -> Path:
        """Return a verified local copy of the Ubuntu installer for ``version``."""
        release = get_release(version, self.releases)
        ensure_directory(self.cache_dir)
        local_path = self.cache_dir / cache_filename(release.url)

        if local_path.exists():
            if not release.checksum:
                log("INFO", f"Using cached Ubuntu {version} ISO (no checksum to verify): {local_path}")
                return local_path
            log("INFO", f"Verifying cached Ubuntu {version} ISO...")
            actual = sha256_file(local_path)
            if actual == release.checksum:
                log("INFO", f"Using cached Ubuntu {version} ISO: {local_path}")
                return local_path
            log("WARN", f"Cached ISO {local_path.name} is corrupt (sha256 {actual}); re-downloading")
            local_path.unlink()

        download_file(
            release.url,
            local_path,
            label=f"Downloading Ubuntu {version}",
            timeout=self.timeouts.download,
            progress_interval=self.timeouts.upload_progress,
            cancel=self.cancel,
        )

        if release.checksum:
            actual = sha256_file(local_path)
            if actual != release.checksum:
                local_path.unlink(missing_ok=True)
                raise ChecksumMismatchError(str(local_path), release.checksum, actual)
            log("SUCCESS", f"Checksum verified for {local_path.name}")
        return local_path

    def modify_ubuntu_iso(self, iso_path: Path) -> Tuple[Path, bool]:
        return self.modifier.modify(iso_path)

    def nocloud_path(self, vm_name: str) -> Path:
        return self.cache_dir / f"nocloud-{vm_name}.iso"

    def create_nocloud_iso(self, user_data: str, meta_data: str, network_config: str, vm_name: str) -> Path:
        """Write a CIDATA-labelled seed image holding the three cloud-init documents."""
        ensure_directory(self.cache_dir)
        output = self.nocloud_path(vm_name)
        payloads = (user_data, meta_data, network_config)

        iso = pycdlib.PyCdlib()
        iso.new(vol_ident=self.settings.nocloud_volume_id, rock_ridge="1.09")
        try:
            for (iso_name, rr_name), text in zip(_NOCLOUD_FILES, payloads):
                data = text.encode("utf-8")
                iso.add_fp(io.BytesIO(data), len(data), iso_name, rr_name=rr_name)
            output.unlink(missing_ok=True)
            iso.write(str(output))
        except (PyCdlibException, OSError) as exc:
            raise BootstrapError(f"failed to create NoCloud ISO for {vm_name}: {exc}")
        finally:
            iso.close()
        log("INFO", f"NoCloud seed written: {output}")
        return output
