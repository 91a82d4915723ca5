"""Data models for vmware-vm-bootstrap."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, List, NamedTuple, Optional


class UbuntuRelease(NamedTuple):
    version: str
    url: str
    checksum: str  # hex SHA-256, empty when unknown


@dataclass
class Timeouts:
    """Timeouts and retry counts, all durations in seconds."""

    installation: float = 3600.0
    polling: float = 10.0
    hostname_checks: int = 3
    service_startup: float = 30.0
    ssh_retries: int = 30
    ssh_connect: float = 5.0
    ssh_retry_delay: float = 10.0
    hardware_init: float = 10.0
    download: float = 1800.0
    upload_progress: float = 15.0
    extract_progress: float = 10.0


@dataclass
class ISOSettings:
    cache_dir: Path
    nocloud_volume_id: str = "CIDATA"
    grub_timeout_seconds: int = 5
    modified_suffix: str = "-autoinstall"
    extract_dir_name: str = "extract"
    ubuntu_volume_id: str = "UBUNTU_AUTOINSTALL"


@dataclass
class CloudInitDefaults:
    locale: str = "en_US.UTF-8"
    timezone: str = "UTC"
    keyboard_layout: str = "us"
    swap_size_gb: int = 4
    packages: List[str] = field(default_factory=list)
    user_groups: str = "sudo"
    user_shell: str = "/bin/bash"


@dataclass
class LibDefaults:
    vcenter_port: int
    firmware: str
    guest_os: str
    network_interface: str
    cloudinit: CloudInitDefaults
    timeouts: Timeouts
    iso: ISOSettings


@dataclass
class VCenterCredentials:
    host: str
    username: str
    password: str = field(repr=False)
    port: int = 443
    insecure: bool = False

    @property
    def sdk_url(self) -> str:
        return f"https://{self.host}/sdk"

    def govc_env(self) -> dict:
        return {
            "GOVC_URL": self.sdk_url,
            "GOVC_USERNAME": self.username,
            "GOVC_PASSWORD": self.password,
            "GOVC_INSECURE": "true" if self.insecure else "false",
        }


@dataclass
class VMConfig:
    # vCenter connection
    vcenter_host: str = ""
    vcenter_username: str = ""
    vcenter_password: str = ""
    vcenter_port: int = 0
    vcenter_insecure: bool = False
    # Hardware
    name: str = ""
    cpus: int = 2
    memory_mb: int = 4096
    disk_size_gb: int = 40
    data_disk_size_gb: Optional[int] = None
    data_disk_mount_path: str = ""
    firmware: str = ""
    # Network
    network_name: str = ""
    network_interface: str = ""
    ip_address: str = ""
    netmask: str = ""
    gateway: str = ""
    dns: List[str] = field(default_factory=list)
    # Placement
    datacenter: str = ""
    folder: str = ""
    resource_pool: str = ""
    datastore: str = ""
    iso_datastore: str = ""
    # OS and user
    profile: str = ""  # "ubuntu" or "talos"
    os_version: str = ""
    talos_schematic_id: str = ""
    username: str = ""
    ssh_public_keys: List[str] = field(default_factory=list)
    password: str = ""
    password_hash: str = ""
    allow_password_ssh: bool = False
    timezone: str = ""
    locale: str = ""
    swap_size_gb: Optional[int] = None
    # Behaviour
    skip_ssh_verify: bool = False
    skip_cleanup_on_error: bool = False

    @property
    def effective_iso_datastore(self) -> str:
        return self.iso_datastore or self.datastore

    def credentials(self) -> VCenterCredentials:
        return VCenterCredentials(
            host=self.vcenter_host,
            username=self.vcenter_username,
            password=self.vcenter_password,
            port=self.vcenter_port or 443,
            insecure=self.vcenter_insecure,
        )


@dataclass
class VMHandle:
    """A bootstrapped VM; a key for later lifecycle operations."""

    name: str
    ip_address: str
    managed_object: Any = field(repr=False)
    hostname: str = ""
    ssh_ready: bool = False
    credentials: Optional[VCenterCredentials] = field(default=None, repr=False)

    def as_dict(self) -> dict:
        moid = getattr(self.managed_object, "_moId", None)
        return {
            "name": self.name,
            "ip_address": self.ip_address,
            "hostname": self.hostname,
            "ssh_ready": self.ssh_ready,
            "managed_object": moid,
        }


class InstallPhase(Enum):
    WAIT_START = "wait-start"
    INSTALLING = "installing"
    REBOOTING = "rebooting"
    VERIFYING = "verifying"


class GuestReading(NamedTuple):
    tools_running: bool
    hostname: str


@dataclass
class ModifiedISOMeta:
    """Source identity recorded beside a rewritten installer ISO."""

    version: int
    source_path: str
    source_size: int
    source_mtime: int

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "source_path": self.source_path,
            "source_size": self.source_size,
            "source_mtime": self.source_mtime,
        }
