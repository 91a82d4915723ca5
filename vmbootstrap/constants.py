"""Global constants and path configuration for vmware-vm-bootstrap."""

from __future__ import annotations

import os
import re
from pathlib import Path

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULTS_PATH = PACKAGE_DIR / "defaults.yaml"
RELEASES_PATH = PACKAGE_DIR / "ubuntu-releases.yaml"

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

USER_AGENT = "vmware-vm-bootstrap/1.0"

SUPPORTED_PROFILES = ("ubuntu", "talos")
SUPPORTED_FIRMWARE = ("bios", "efi")

MIN_DISK_SIZE_GB = 10
MIN_MEMORY_MB = 512

# Bump when the boot config rewrite rules change so cached ISOs are rebuilt.
MODIFIER_VERSION = 2

UPLOADED_HASH_SUFFIX = ".uploaded.sha256"
MODIFIED_META_SUFFIX = ".meta.json"

# Boot loader configs patched for autoinstall, in order.
BOOT_CONFIG_FILES = (
    "boot/grub/grub.cfg",
    "boot/grub/loopback.cfg",
    "isolinux/txt.cfg",
)

# (boot image, boot catalog) probed in order.
BIOS_BOOT_IMAGES = (
    ("boot/grub/i386-pc/eltorito.img", "boot.catalog"),
    ("isolinux/isolinux.bin", "isolinux/boot.cat"),
)

UEFI_BOOT_IMAGES = (
    "boot/grub/efi.img",
    "EFI/ubuntu/grubx64.efi",
    "EFI/boot/bootx64.efi",
)

AUTOINSTALL_ARGS = "autoinstall ds=nocloud"

GRUB_TIMEOUT_RE = re.compile(r"(^|\s)(timeout|set timeout)(\s*=?\s*)(-?\d+)", re.MULTILINE)
GRUB_DEFAULT_RE = re.compile(r"set default=[\"']?\d+[\"']?")
KERNEL_LINE_RE = re.compile(r"^([ \t]*(?:linux|linuxefi)[ \t]+\S+)(.*)$", re.MULTILINE)
APPEND_LINE_RE = re.compile(r"^([ \t]*append[ \t]+)(.*)$", re.MULTILINE)

# SATA controller created when a VM has none.
SATA_CONTROLLER_KEY = 15000
SATA_MAX_UNITS = 30

SCSI_CONTROLLER_KEY = 1000
SCSI_RESERVED_UNIT = 7

SSH_PORT = 22

TASK_POLL_SECONDS = 1.0
DOWNLOAD_CHUNK_SIZE = 1024 * 256  # 256 KiB

INSTALL_STATS_FILE = "install-stats.json"
INSTALL_STATS_MAX_SAMPLES = 30

TALOS_FACTORY_URL = "https://factory.talos.dev/image/{schematic}/{version}/metal-amd64.iso"
TALOS_RELEASE_URL = "https://github.com/siderolabs/talos/releases/download/{version}/metal-amd64.iso"

_SENSITIVE_FIELDS = {"vcenter_password", "password", "password_hash"}
