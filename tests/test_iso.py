"""Tests for vmbootstrap.iso module."""

from __future__ import annotations

import hashlib
import io
from pathlib import Path
from typing import List
from unittest.mock import patch

import pycdlib
import pytest

from vmbootstrap.exceptions import BootstrapError, ChecksumMismatchError, UnsupportedVersionError
from vmbootstrap.iso import ISOManager, cache_filename
from vmbootstrap.models import UbuntuRelease

GOOD = b"genuine installer image"
URL = "https://releases.example.com/24.04/ubuntu-24.04-live-server-amd64.iso"


class FakeDownloader:
    """Writes a scripted body per call to the requested destination."""

    def __init__(self, *bodies: bytes):
        self.bodies: List[bytes] = list(bodies)
        self.calls = 0

    def __call__(self, url, destination: Path, **kwargs):
        body = self.bodies[min(self.calls, len(self.bodies) - 1)]
        self.calls += 1
        destination.write_bytes(body)
        return len(body)


def _manager(iso_settings, fast_timeouts, checksum: str = "") -> ISOManager:
    releases = {"24.04": UbuntuRelease("24.04", URL, checksum)}
    return ISOManager(iso_settings, fast_timeouts, releases=releases)


def test_cache_filename():
    assert cache_filename(URL) == "ubuntu-24.04-live-server-amd64.iso"
    with pytest.raises(BootstrapError):
        cache_filename("https://example.com/")


class TestDownloadUbuntu:
    def test_unknown_version(self, iso_settings, fast_timeouts):
        with pytest.raises(UnsupportedVersionError):
            _manager(iso_settings, fast_timeouts).download_ubuntu("20.04")

    def test_downloads_and_verifies(self, iso_settings, fast_timeouts):
        manager = _manager(iso_settings, fast_timeouts, hashlib.sha256(GOOD).hexdigest())
        downloader = FakeDownloader(GOOD)
        with patch("vmbootstrap.iso.download_file", side_effect=downloader):
            path = manager.download_ubuntu("24.04")
        assert path == iso_settings.cache_dir / "ubuntu-24.04-live-server-amd64.iso"
        assert path.read_bytes() == GOOD
        assert downloader.calls == 1

    def test_valid_cache_is_reused(self, iso_settings, fast_timeouts):
        manager = _manager(iso_settings, fast_timeouts, hashlib.sha256(GOOD).hexdigest())
        iso_settings.cache_dir.mkdir(parents=True)
        (iso_settings.cache_dir / "ubuntu-24.04-live-server-amd64.iso").write_bytes(GOOD)
        with patch("vmbootstrap.iso.download_file") as mock_download:
            manager.download_ubuntu("24.04")
        mock_download.assert_not_called()

    def test_corrupt_cache_is_replaced(self, iso_settings, fast_timeouts):
        manager = _manager(iso_settings, fast_timeouts, hashlib.sha256(GOOD).hexdigest())
        iso_settings.cache_dir.mkdir(parents=True)
        cached = iso_settings.cache_dir / "ubuntu-24.04-live-server-amd64.iso"
        cached.write_bytes(b"truncated")
        downloader = FakeDownloader(GOOD)
        with patch("vmbootstrap.iso.download_file", side_effect=downloader):
            path = manager.download_ubuntu("24.04")
        assert downloader.calls == 1
        assert path.read_bytes() == GOOD

    def test_corrupt_download_is_deleted(self, iso_settings, fast_timeouts):
        manager = _manager(iso_settings, fast_timeouts, hashlib.sha256(GOOD).hexdigest())
        with patch("vmbootstrap.iso.download_file", side_effect=FakeDownloader(b"tampered")):
            with pytest.raises(ChecksumMismatchError) as exc:
                manager.download_ubuntu("24.04")
        assert exc.value.expected == hashlib.sha256(GOOD).hexdigest()
        assert exc.value.actual == hashlib.sha256(b"tampered").hexdigest()
        assert not (iso_settings.cache_dir / "ubuntu-24.04-live-server-amd64.iso").exists()

    def test_retry_after_corrupt_download_fetches_again(self, iso_settings, fast_timeouts):
        manager = _manager(iso_settings, fast_timeouts, hashlib.sha256(GOOD).hexdigest())
        downloader = FakeDownloader(b"tampered", GOOD)
        with patch("vmbootstrap.iso.download_file", side_effect=downloader):
            with pytest.raises(ChecksumMismatchError):
                manager.download_ubuntu("24.04")
            path = manager.download_ubuntu("24.04")
        assert downloader.calls == 2
        assert path.read_bytes() == GOOD

    def test_cache_trusted_without_checksum(self, iso_settings, fast_timeouts):
        manager = _manager(iso_settings, fast_timeouts, "")
        iso_settings.cache_dir.mkdir(parents=True)
        (iso_settings.cache_dir / "ubuntu-24.04-live-server-amd64.iso").write_bytes(b"anything")
        with patch("vmbootstrap.iso.download_file") as mock_download:
            path = manager.download_ubuntu("24.04")
        mock_download.assert_not_called()
        assert path.read_bytes() == b"anything"


class TestNoCloudISO:
    def _read(self, iso: pycdlib.PyCdlib, rr_path: str) -> str:
        out = io.BytesIO()
        iso.get_file_from_iso_fp(out, rr_path=rr_path)
        return out.getvalue().decode("utf-8")

    def test_seed_contents(self, iso_settings, fast_timeouts):
        manager = _manager(iso_settings, fast_timeouts)
        path = manager.create_nocloud_iso("#cloud-config\n", "instance-id: x\n", "version: 2\n", "web01")
        assert path == iso_settings.cache_dir / "nocloud-web01.iso"

        iso = pycdlib.PyCdlib()
        iso.open(str(path))
        try:
            assert iso.pvd.volume_identifier.rstrip() == b"CIDATA"
            assert self._read(iso, "/user-data") == "#cloud-config\n"
            assert self._read(iso, "/meta-data") == "instance-id: x\n"
            assert self._read(iso, "/network-config") == "version: 2\n"
        finally:
            iso.close()

    def test_overwrites_previous_seed(self, iso_settings, fast_timeouts):
        manager = _manager(iso_settings, fast_timeouts)
        manager.create_nocloud_iso("a", "b", "c", "web01")
        path = manager.create_nocloud_iso("#cloud-config\nnew\n", "b", "c", "web01")
        iso = pycdlib.PyCdlib()
        iso.open(str(path))
        try:
            assert self._read(iso, "/user-data") == "#cloud-config\nnew\n"
        finally:
            iso.close()
