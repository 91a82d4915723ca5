"""Tests for vmbootstrap.modifier module."""

from __future__ import annotations

import json
import os
import stat
from pathlib import Path
from typing import List
from unittest.mock import patch

import pytest

from vmbootstrap.constants import MODIFIER_VERSION
from vmbootstrap.exceptions import CommandError, ExtractFailedError, NoBootConfigError, RepackFailedError
from vmbootstrap.modifier import (
    ISOModifier,
    find_boot_images,
    make_tree_writable,
    modify_boot_config,
    patch_boot_config,
    repack_command,
)

GRUB_CFG = """set timeout=30

loadfont unicode

menuentry "Try or Install Ubuntu Server" {
\tset gfxpayload=keep
\tlinux\t/casper/vmlinuz  ---
\tinitrd\t/casper/initrd
}
menuentry "Ubuntu Server with the HWE kernel" {
\tlinux\t/casper/hwe-vmlinuz quiet
\tinitrd\t/casper/hwe-initrd
}
"""

ISOLINUX_CFG = """default live
timeout 300
label live
  menu label ^Install Ubuntu Server
  kernel /casper/vmlinuz
  append   initrd=/casper/initrd quiet  ---
label safe
  append initrd=/casper/initrd nomodeset
"""


class TestPatchBootConfig:
    def test_grub_timeout_shortened(self):
        patched = patch_boot_config(GRUB_CFG, 5)
        assert "set timeout=5" in patched
        assert "timeout=30" not in patched

    def test_wait_forever_timeout_replaced(self):
        patched = patch_boot_config("set timeout=-1\n" + GRUB_CFG.replace("set timeout=30", "timeout=-1"), 5)
        assert "-1" not in patched
        assert patched.count("set timeout=5") == 1
        assert "\ntimeout=5\n" in patched

    def test_default_entry_prepended_when_missing(self):
        assert patch_boot_config(GRUB_CFG, 5).startswith("set default=0\n")

    def test_existing_default_rewritten(self):
        patched = patch_boot_config('set default="2"\n' + GRUB_CFG, 5)
        assert patched.count("set default=0") == 1
        assert 'set default="2"' not in patched

    def test_autoinstall_inserted_before_separator(self):
        patched = patch_boot_config(GRUB_CFG, 5)
        assert "\tlinux\t/casper/vmlinuz  autoinstall ds=nocloud ---" in patched

    def test_autoinstall_appended_without_separator(self):
        patched = patch_boot_config(GRUB_CFG, 5)
        assert "\tlinux\t/casper/hwe-vmlinuz autoinstall ds=nocloud quiet" in patched

    def test_initrd_lines_untouched(self):
        patched = patch_boot_config(GRUB_CFG, 5)
        assert "\tinitrd\t/casper/initrd\n" in patched

    def test_isolinux_append_lines(self):
        patched = patch_boot_config(ISOLINUX_CFG, 5)
        assert "  append   initrd=/casper/initrd quiet  autoinstall ds=nocloud ---" in patched
        assert "  append autoinstall ds=nocloud initrd=/casper/initrd nomodeset" in patched
        assert "timeout 5" in patched

    def test_idempotent(self):
        once = patch_boot_config(GRUB_CFG, 5)
        assert patch_boot_config(once, 5) == once
        once = patch_boot_config(ISOLINUX_CFG, 5)
        assert patch_boot_config(once, 5) == once

    def test_every_kernel_line_has_autoinstall_once(self):
        patched = patch_boot_config(patch_boot_config(GRUB_CFG, 5), 5)
        kernel_lines = [line for line in patched.splitlines() if line.strip().startswith("linux")]
        assert len(kernel_lines) == 2
        assert all(line.count("autoinstall") == 1 for line in kernel_lines)

    def test_modify_boot_config_reports_change(self, tmp_path):
        path = tmp_path / "grub.cfg"
        path.write_text(GRUB_CFG)
        assert modify_boot_config(path, 5) is True
        assert modify_boot_config(path, 5) is False


class TestTreeHelpers:
    def test_make_tree_writable(self, tmp_path):
        sub = tmp_path / "tree" / "boot"
        sub.mkdir(parents=True)
        target = sub / "grub.cfg"
        target.write_text("x")
        target.chmod(0o444)
        sub.chmod(0o555)
        make_tree_writable(tmp_path / "tree")
        assert os.stat(target).st_mode & stat.S_IWUSR
        assert os.stat(sub).st_mode & stat.S_IWUSR

    def test_find_boot_images_empty_tree(self, tmp_path):
        with pytest.raises(NoBootConfigError, match="no BIOS boot image"):
            find_boot_images(tmp_path)

    def test_find_boot_images_isolinux(self, tmp_path):
        (tmp_path / "isolinux").mkdir()
        (tmp_path / "isolinux" / "isolinux.bin").write_bytes(b"\0")
        assert find_boot_images(tmp_path) == ("isolinux/isolinux.bin", "isolinux/boot.cat", None)

    def test_repack_command_hybrid(self, tmp_path):
        _write_boot_images(tmp_path, uefi=True)
        cmd = repack_command(tmp_path, tmp_path / "out.iso", "UBUNTU_AUTOINSTALL")
        assert cmd[0] == "genisoimage"
        assert cmd[cmd.index("-V") + 1] == "UBUNTU_AUTOINSTALL"
        assert cmd[cmd.index("-b") + 1] == "boot/grub/i386-pc/eltorito.img"
        assert cmd[cmd.index("-e") + 1] == "boot/grub/efi.img"
        assert cmd[-1] == str(tmp_path)

    def test_repack_command_bios_only_warns(self, tmp_path):
        _write_boot_images(tmp_path, uefi=False)
        with patch("vmbootstrap.modifier.log") as mock_log:
            cmd = repack_command(tmp_path, tmp_path / "out.iso", "VOL")
        assert "-eltorito-alt-boot" not in cmd
        mock_log.assert_called_once_with("WARN", "No UEFI boot image found; building a BIOS-only ISO")


def _write_boot_images(tree: Path, uefi: bool = True) -> None:
    (tree / "boot" / "grub" / "i386-pc").mkdir(parents=True, exist_ok=True)
    (tree / "boot" / "grub" / "i386-pc" / "eltorito.img").write_bytes(b"\0")
    if uefi:
        (tree / "boot" / "grub" / "efi.img").write_bytes(b"\0")


class FakeTools:
    """Stands in for xorriso and genisoimage."""

    def __init__(self, boot_configs: bool = True):
        self.calls: List[List[str]] = []
        self.boot_configs = boot_configs
        self.repacked_grub = ""

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        if cmd[0] == "xorriso":
            dest = Path(cmd[-1])
            _write_boot_images(dest)
            if self.boot_configs:
                (dest / "boot" / "grub" / "grub.cfg").write_text(GRUB_CFG)
                (dest / "boot" / "grub" / "grub.cfg").chmod(0o444)
        elif cmd[0] == "genisoimage":
            tree = Path(cmd[-1])
            self.repacked_grub = (tree / "boot" / "grub" / "grub.cfg").read_text()
            Path(cmd[cmd.index("-o") + 1]).write_bytes(b"modified iso")
        return ""


@pytest.fixture
def source_iso(tmp_path):
    path = tmp_path / "ubuntu-24.04.2-live-server-amd64.iso"
    path.write_bytes(b"original iso")
    return path


class TestISOModifier:
    def test_modified_path_and_meta_path(self, iso_settings, fast_timeouts, source_iso):
        modifier = ISOModifier(iso_settings, fast_timeouts)
        modified = modifier.modified_path(source_iso)
        assert modified.name == "ubuntu-24.04.2-live-server-amd64-autoinstall.iso"
        assert modifier.meta_path(modified).name == modified.name + ".meta.json"

    def test_builds_patched_iso(self, iso_settings, fast_timeouts, source_iso):
        tools = FakeTools()
        modifier = ISOModifier(iso_settings, fast_timeouts)
        with patch("vmbootstrap.modifier.run_command", side_effect=tools):
            modified, rebuilt = modifier.modify(source_iso)

        assert rebuilt is True
        assert modified.read_bytes() == b"modified iso"
        assert [c[0] for c in tools.calls] == ["xorriso", "genisoimage"]
        assert "autoinstall ds=nocloud ---" in tools.repacked_grub
        assert not (source_iso.parent / "extract").exists()

        meta = json.loads(modifier.meta_path(modified).read_text())
        assert meta["version"] == MODIFIER_VERSION
        assert meta["source_path"] == str(source_iso.resolve())
        assert meta["source_size"] == len(b"original iso")

    def test_cached_iso_skips_tools(self, iso_settings, fast_timeouts, source_iso):
        modifier = ISOModifier(iso_settings, fast_timeouts)
        with patch("vmbootstrap.modifier.run_command", side_effect=FakeTools()):
            modifier.modify(source_iso)

        with patch("vmbootstrap.modifier.run_command") as mock_run:
            modified, rebuilt = modifier.modify(source_iso)
        assert rebuilt is False
        assert modified.exists()
        mock_run.assert_not_called()

    def test_changed_source_rebuilds(self, iso_settings, fast_timeouts, source_iso):
        modifier = ISOModifier(iso_settings, fast_timeouts)
        with patch("vmbootstrap.modifier.run_command", side_effect=FakeTools()):
            modifier.modify(source_iso)
        source_iso.write_bytes(b"a newer point release")

        tools = FakeTools()
        with patch("vmbootstrap.modifier.run_command", side_effect=tools):
            _, rebuilt = modifier.modify(source_iso)
        assert rebuilt is True
        assert len(tools.calls) == 2

    def test_stale_rules_version_rebuilds(self, iso_settings, fast_timeouts, source_iso):
        modifier = ISOModifier(iso_settings, fast_timeouts)
        with patch("vmbootstrap.modifier.run_command", side_effect=FakeTools()):
            modified, _ = modifier.modify(source_iso)
        meta_file = modifier.meta_path(modified)
        meta = json.loads(meta_file.read_text())
        meta["version"] = MODIFIER_VERSION - 1
        meta_file.write_text(json.dumps(meta))
        assert modifier.is_cached(source_iso, modified) is False

    def test_extract_failure(self, iso_settings, fast_timeouts, source_iso):
        modifier = ISOModifier(iso_settings, fast_timeouts)
        error = CommandError(["xorriso"], 5, "libburn: cannot open")
        with patch("vmbootstrap.modifier.run_command", side_effect=error):
            with pytest.raises(ExtractFailedError, match="cannot open"):
                modifier.modify(source_iso)
        assert not (source_iso.parent / "extract").exists()

    def test_no_boot_config(self, iso_settings, fast_timeouts, source_iso):
        modifier = ISOModifier(iso_settings, fast_timeouts)
        with patch("vmbootstrap.modifier.run_command", side_effect=FakeTools(boot_configs=False)):
            with pytest.raises(NoBootConfigError):
                modifier.modify(source_iso)
        assert not modifier.modified_path(source_iso).exists()

    def test_repack_failure_removes_output(self, iso_settings, fast_timeouts, source_iso):
        modifier = ISOModifier(iso_settings, fast_timeouts)
        tools = FakeTools()

        def _run(cmd, **kwargs):
            if cmd[0] == "genisoimage":
                Path(cmd[cmd.index("-o") + 1]).write_bytes(b"partial")
                raise CommandError(cmd, -9, "")
            return tools(cmd, **kwargs)

        with patch("vmbootstrap.modifier.run_command", side_effect=_run):
            with pytest.raises(RepackFailedError):
                modifier.modify(source_iso)
        assert not modifier.modified_path(source_iso).exists()
        assert not modifier.meta_path(modifier.modified_path(source_iso)).exists()
