"""Rewrites an Ubuntu live-server ISO so it boots straight into autoinstall.

The ISO is extracted with xorriso, every boot loader config is patched to
pass ``autoinstall ds=nocloud`` on the kernel command line, and the tree is
repacked with genisoimage keeping both BIOS and UEFI El Torito entries.

A ``.meta.json`` sidecar next to the rewritten ISO records the identity of
the source file (path, size, mtime) and the rewrite rules version, so the
expensive extract/repack cycle only runs when one of them changes.
"""

from __future__ import annotations

import json
import os
import shutil
import stat
import threading
from pathlib import Path
from typing import List, Optional, Tuple

from vmbootstrap.constants import (
    APPEND_LINE_RE,
    AUTOINSTALL_ARGS,
    BIOS_BOOT_IMAGES,
    BOOT_CONFIG_FILES,
    GRUB_DEFAULT_RE,
    GRUB_TIMEOUT_RE,
    KERNEL_LINE_RE,
    MODIFIED_META_SUFFIX,
    MODIFIER_VERSION,
    UEFI_BOOT_IMAGES,
)
from vmbootstrap.exceptions import (
    CommandError,
    ExtractFailedError,
    NoBootConfigError,
    RepackFailedError,
)
from vmbootstrap.models import ISOSettings, ModifiedISOMeta, Timeouts
from vmbootstrap.utils import log, run_command


def _insert_autoinstall(params: str, prefix: str) -> str:
    if "---" in params:
        return params.replace("---", f"{AUTOINSTALL_ARGS} ---", 1)
    return prefix + params


def patch_boot_config(content: str, grub_timeout: int) -> str:
    """Return ``content`` with timeouts shortened and autoinstall enabled."""
    content = GRUB_TIMEOUT_RE.sub(lambda m: f"{m.group(1)}{m.group(2)}{m.group(3)}{grub_timeout}", content)

    if GRUB_DEFAULT_RE.search(content):
        content = GRUB_DEFAULT_RE.sub("set default=0", content)
    else:
        content = "set default=0\n" + content

    def _kernel(match) -> str:
        line = match.group(0)
        if "autoinstall" in line:
            return line
        return match.group(1) + _insert_autoinstall(match.group(2), f" {AUTOINSTALL_ARGS}")

    def _append(match) -> str:
        line = match.group(0)
        if "autoinstall" in line:
            return line
        return match.group(1) + _insert_autoinstall(match.group(2), f"{AUTOINSTALL_ARGS} ")

    content = KERNEL_LINE_RE.sub(_kernel, content)
    content = APPEND_LINE_RE.sub(_append, content)
    return content


def modify_boot_config(path: Path, grub_timeout: int) -> bool:
    """Patch one boot config in place; return True if the file changed."""
    original = path.read_text()
    patched = patch_boot_config(original, grub_timeout)
    if patched == original:
        return False
    path.write_text(patched)
    return True


def make_tree_writable(root: Path) -> None:
    """Add owner-write to every entry; ISO extracts come out read-only."""
    for dirpath, dirnames, filenames in os.walk(root):
        for name in [dirpath] + [os.path.join(dirpath, n) for n in dirnames + filenames]:
            try:
                mode = os.lstat(name).st_mode
                if not stat.S_ISLNK(mode):
                    os.chmod(name, mode | stat.S_IWUSR)
            except OSError:
                continue


def remove_tree(root: Path) -> None:
    if not root.exists():
        return
    make_tree_writable(root)
    shutil.rmtree(root)


def find_boot_images(tree: Path) -> Tuple[str, str, Optional[str]]:
    """Return (bios image, boot catalog, uefi image or None), paths relative to ``tree``."""
    bios = next(((img, cat) for img, cat in BIOS_BOOT_IMAGES if (tree / img).is_file()), None)
    if bios is None:
        raise NoBootConfigError(
            "no BIOS boot image found (looked for " + ", ".join(img for img, _ in BIOS_BOOT_IMAGES) + ")"
        )
    uefi = next((img for img in UEFI_BOOT_IMAGES if (tree / img).is_file()), None)
    return bios[0], bios[1], uefi


def repack_command(tree: Path, output: Path, volume_id: str) -> List[str]:
    bios_image, catalog, uefi_image = find_boot_images(tree)
    cmd = [
        "genisoimage",
        "-r",
        "-V", volume_id,
        "-J",
        "-joliet-long",
        "-o", str(output),
        "-b", bios_image,
        "-c", catalog,
        "-no-emul-boot",
        "-boot-load-size", "4",
        "-boot-info-table",
    ]
    if uefi_image:
        cmd += ["-eltorito-alt-boot", "-e", uefi_image, "-no-emul-boot"]
    else:
        log("WARN", "No UEFI boot image found; building a BIOS-only ISO")
    cmd.append(str(tree))
    return cmd


class ISOModifier:
    def __init__(self, settings: ISOSettings, timeouts: Timeouts, cancel: Optional[threading.Event] = None):
        self.settings = settings
        self.timeouts = timeouts
        self.cancel = cancel

    def modified_path(self, iso_path: Path) -> Path:
        return iso_path.with_name(f"{iso_path.stem}{self.settings.modified_suffix}.iso")

    @staticmethod
    def meta_path(modified_path: Path) -> Path:
        return modified_path.with_name(modified_path.name + MODIFIED_META_SUFFIX)

    @staticmethod
    def source_identity(iso_path: Path) -> ModifiedISOMeta:
        st = iso_path.stat()
        return ModifiedISOMeta(
            version=MODIFIER_VERSION,
            source_path=str(iso_path.resolve()),
            source_size=st.st_size,
            source_mtime=int(st.st_mtime),
        )

    def is_cached(self, iso_path: Path, modified_path: Path) -> bool:
        meta_file = self.meta_path(modified_path)
        if not modified_path.exists() or not meta_file.exists():
            return False
        try:
            recorded = json.loads(meta_file.read_text())
        except (OSError, ValueError):
            return False
        return recorded == self.source_identity(iso_path).to_dict()

    def modify(self, iso_path: Path) -> Tuple[Path, bool]:
        """Return (modified ISO path, True if it was rebuilt)."""
        modified = self.modified_path(iso_path)
        if self.is_cached(iso_path, modified):
            log("INFO", f"Using cached autoinstall ISO: {modified}")
            return modified, False

        log("INFO", f"Building autoinstall ISO from {iso_path.name}")
        extract_dir = iso_path.parent / self.settings.extract_dir_name
        remove_tree(extract_dir)
        extract_dir.mkdir(parents=True)
        try:
            self.extract(iso_path, extract_dir)
            make_tree_writable(extract_dir)
            self.patch_tree(extract_dir)
            self.repack(extract_dir, modified)
        finally:
            remove_tree(extract_dir)

        self.meta_path(modified).write_text(json.dumps(self.source_identity(iso_path).to_dict(), indent=2))
        log("SUCCESS", f"Autoinstall ISO ready: {modified}")
        return modified, True

    def extract(self, iso_path: Path, dest: Path) -> None:
        cmd = ["xorriso", "-osirrox", "on", "-indev", str(iso_path), "-extract", "/", str(dest)]
        try:
            run_command(
                cmd,
                cancel=self.cancel,
                heartbeat=f"Extracting {iso_path.name}",
                heartbeat_interval=self.timeouts.extract_progress,
            )
        except CommandError as exc:
            raise ExtractFailedError(f"failed to extract {iso_path.name}: {exc}")

    def patch_tree(self, tree: Path) -> int:
        """Patch every boot config present; return how many were processed."""
        processed = 0
        for rel in BOOT_CONFIG_FILES:
            path = tree / rel
            if not path.exists():
                continue
            try:
                changed = modify_boot_config(path, self.settings.grub_timeout_seconds)
            except (OSError, UnicodeDecodeError) as exc:
                log("WARN", f"Failed to patch {rel}: {exc}")
                continue
            processed += 1
            log("INFO", f"Patched {rel}" if changed else f"{rel} already configured")
        if processed == 0:
            raise NoBootConfigError("no boot configuration could be modified (" + ", ".join(BOOT_CONFIG_FILES) + ")")
        return processed

    def repack(self, tree: Path, output: Path) -> None:
        cmd = repack_command(tree, output, self.settings.ubuntu_volume_id)
        try:
            run_command(cmd, cancel=self.cancel)
        except CommandError as exc:
            output.unlink(missing_ok=True)
            raise RepackFailedError(f"failed to build {output.name}: {exc}")
