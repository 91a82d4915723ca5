"""Configuration loading, defaulting and validation for vmware-vm-bootstrap."""

from __future__ import annotations

import dataclasses
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmbootstrap.constants import (
    DEFAULTS_PATH,
    MIN_DISK_SIZE_GB,
    MIN_MEMORY_MB,
    RELEASES_PATH,
    SUPPORTED_FIRMWARE,
    SUPPORTED_PROFILES,
)
from vmbootstrap.exceptions import BootstrapError, ConfigInvalidError, UnsupportedVersionError
from vmbootstrap.models import (
    CloudInitDefaults,
    ISOSettings,
    LibDefaults,
    Timeouts,
    UbuntuRelease,
    VMConfig,
)
from vmbootstrap.utils import get_env, validate_network_config


def _read_yaml(path: Path) -> Dict[str, Any]:
    data = yaml.safe_load(path.read_text())
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path.name}: top level must be a mapping")
    return data


def load_defaults(path: Path = DEFAULTS_PATH) -> LibDefaults:
    data = _read_yaml(path)
    vcenter = data.get("vcenter") or {}
    vm = data.get("vm") or {}
    network = data.get("network") or {}
    ci = data.get("cloudinit") or {}
    t = data.get("timeouts") or {}
    iso = data.get("iso") or {}

    cache_dir = get_env("VMBOOTSTRAP_CACHE_DIR") or iso.get("cache_dir", "/tmp/vmbootstrap-cache")

    return LibDefaults(
        vcenter_port=int(vcenter.get("port", 443)),
        firmware=vm.get("firmware", "bios"),
        guest_os=vm.get("guest_os", "ubuntu64Guest"),
        network_interface=network.get("interface", "ens192"),
        cloudinit=CloudInitDefaults(
            locale=ci.get("locale", "en_US.UTF-8"),
            timezone=ci.get("timezone", "UTC"),
            keyboard_layout=ci.get("keyboard_layout", "us"),
            swap_size_gb=int(ci.get("swap_size_gb", 4)),
            packages=list(ci.get("packages") or []),
            user_groups=ci.get("user_groups", "sudo"),
            user_shell=ci.get("user_shell", "/bin/bash"),
        ),
        timeouts=Timeouts(
            installation=float(t.get("installation_minutes", 60)) * 60,
            polling=float(t.get("polling_seconds", 10)),
            hostname_checks=int(t.get("hostname_checks", 3)),
            service_startup=float(t.get("service_startup_seconds", 30)),
            ssh_retries=int(t.get("ssh_retries", 30)),
            ssh_connect=float(t.get("ssh_connect_seconds", 5)),
            ssh_retry_delay=float(t.get("ssh_retry_delay_seconds", 10)),
            hardware_init=float(t.get("hardware_init_seconds", 10)),
            download=float(t.get("download_minutes", 30)) * 60,
            upload_progress=float(t.get("upload_progress_seconds", 15)),
            extract_progress=float(t.get("extract_progress_seconds", 10)),
        ),
        iso=ISOSettings(
            cache_dir=Path(cache_dir).expanduser(),
            nocloud_volume_id=iso.get("nocloud_volume_id", "CIDATA"),
            grub_timeout_seconds=int(iso.get("grub_timeout_seconds", 5)),
            modified_suffix=iso.get("ubuntu_modified_suffix", "-autoinstall"),
            extract_dir_name=iso.get("extract_dir_name", "extract"),
            ubuntu_volume_id=iso.get("ubuntu_volume_id", "UBUNTU_AUTOINSTALL"),
        ),
    )


def load_releases(path: Path = RELEASES_PATH) -> Dict[str, UbuntuRelease]:
    data = _read_yaml(path)
    releases: Dict[str, UbuntuRelease] = {}
    for version, info in (data.get("releases") or {}).items():
        info = info or {}
        if not info.get("url"):
            raise ValueError(f"{path.name}: release {version} has no url")
        releases[str(version)] = UbuntuRelease(
            version=str(version),
            url=info["url"],
            checksum=(info.get("checksum") or "").strip().lower(),
        )
    return releases


try:
    DEFAULTS = load_defaults()
    UBUNTU_RELEASES = load_releases()
except (OSError, ValueError, TypeError, yaml.YAMLError) as exc:  # pragma: no cover
    raise SystemExit(f"vmware-vm-bootstrap: invalid embedded configuration: {exc}") from exc


def get_release(version: str, releases: Optional[Dict[str, UbuntuRelease]] = None) -> UbuntuRelease:
    if releases is None:
        releases = UBUNTU_RELEASES
    if version not in releases:
        available = ", ".join(sorted(releases))
        raise UnsupportedVersionError(f"unsupported Ubuntu version '{version}' (supported: {available})")
    return releases[version]


def set_defaults(cfg: VMConfig, defaults: Optional[LibDefaults] = None) -> VMConfig:
    """Fill optional fields of ``cfg`` in place from the library defaults."""
    d = defaults or DEFAULTS
    if not cfg.profile:
        cfg.profile = "ubuntu"
    if not cfg.vcenter_port:
        cfg.vcenter_port = d.vcenter_port
    if not cfg.timezone:
        cfg.timezone = d.cloudinit.timezone
    if not cfg.locale:
        cfg.locale = d.cloudinit.locale
    if not cfg.firmware:
        cfg.firmware = d.firmware
    if not cfg.network_interface:
        cfg.network_interface = d.network_interface
    return cfg


def validate(cfg: VMConfig) -> None:
    """Raise :class:`ConfigInvalidError` describing the first invalid field."""
    if not cfg.vcenter_host:
        raise ConfigInvalidError("vcenter host is required")
    if not cfg.vcenter_username:
        raise ConfigInvalidError("vcenter username is required")
    if not cfg.vcenter_password:
        raise ConfigInvalidError("vcenter password is required")
    if not cfg.name:
        raise ConfigInvalidError("name is required")
    if not cfg.username:
        raise ConfigInvalidError("username is required")
    if not cfg.ssh_public_keys and not cfg.password and not cfg.password_hash:
        raise ConfigInvalidError("at least one of ssh_public_keys, password, or password_hash is required")
    if cfg.allow_password_ssh and not cfg.password and not cfg.password_hash:
        raise ConfigInvalidError("allow_password_ssh requires password or password_hash")
    if not cfg.ip_address:
        raise ConfigInvalidError("ip_address is required")
    if not cfg.netmask:
        raise ConfigInvalidError("netmask is required")
    if not cfg.gateway:
        raise ConfigInvalidError("gateway is required")
    if not cfg.dns:
        raise ConfigInvalidError("at least one DNS server is required")
    if cfg.cpus < 1:
        raise ConfigInvalidError(f"cpus must be at least 1 (got {cfg.cpus})")
    if cfg.memory_mb < MIN_MEMORY_MB:
        raise ConfigInvalidError(f"memory_mb must be at least {MIN_MEMORY_MB} (got {cfg.memory_mb})")
    if cfg.disk_size_gb < MIN_DISK_SIZE_GB:
        raise ConfigInvalidError(f"disk_size_gb must be at least {MIN_DISK_SIZE_GB} (got {cfg.disk_size_gb})")
    if cfg.data_disk_size_gb is not None:
        if cfg.data_disk_size_gb < 1:
            raise ConfigInvalidError(f"data_disk_size_gb must be positive (got {cfg.data_disk_size_gb})")
        if not cfg.data_disk_mount_path:
            raise ConfigInvalidError("data_disk_mount_path is required when data_disk_size_gb is set")
    profile = cfg.profile or "ubuntu"
    if profile not in SUPPORTED_PROFILES:
        raise ConfigInvalidError(f"unsupported profile '{profile}' (supported: {', '.join(SUPPORTED_PROFILES)})")
    if not cfg.os_version:
        raise ConfigInvalidError("os_version is required")
    if cfg.firmware and cfg.firmware not in SUPPORTED_FIRMWARE:
        raise ConfigInvalidError(f"unsupported firmware '{cfg.firmware}' (supported: bios, efi)")
    if not cfg.datacenter:
        raise ConfigInvalidError("datacenter is required")
    if not cfg.datastore:
        raise ConfigInvalidError("datastore is required")
    if not cfg.network_name:
        raise ConfigInvalidError("network_name is required")
    try:
        validate_network_config(cfg.ip_address, cfg.netmask, cfg.gateway, cfg.dns)
    except BootstrapError as exc:
        raise ConfigInvalidError(str(exc))


# Environment variables that fill secrets left empty in the config file.
_ENV_OVERRIDES = {
    "vcenter_host": "VCENTER_HOST",
    "vcenter_username": "VCENTER_USERNAME",
    "vcenter_password": "VCENTER_PASSWORD",
    "password": "VM_PASSWORD",
}


def load_vm_config(config_path: Path) -> VMConfig:
    """Build a :class:`VMConfig` from a YAML file with ``vcenter:`` and ``vm:`` sections."""
    if not config_path.exists():
        raise ConfigInvalidError(f"Config file missing: {config_path}")
    try:
        data = _read_yaml(config_path)
    except (yaml.YAMLError, ValueError) as exc:
        raise ConfigInvalidError(f"Invalid config file {config_path}: {exc}")

    values: Dict[str, Any] = {}
    vcenter = data.get("vcenter") or {}
    for key in ("host", "username", "password", "port", "insecure"):
        if key in vcenter:
            values[f"vcenter_{key}"] = vcenter[key]

    known = {f.name for f in dataclasses.fields(VMConfig)}
    for key, value in (data.get("vm") or {}).items():
        if key not in known:
            available = "\n    ".join(sorted(known))
            raise ConfigInvalidError(
                f"Unknown vm setting '{key}'.\n"
                f"  Available settings:\n"
                f"    {available}"
            )
        values[key] = value

    for field_name, env_name in _ENV_OVERRIDES.items():
        if not values.get(field_name):
            env_value = get_env(env_name)
            if env_value:
                values[field_name] = env_value

    for list_field in ("dns", "ssh_public_keys"):
        raw = values.get(list_field)
        if isinstance(raw, str):
            values[list_field] = [item.strip() for item in raw.split(",") if item.strip()]
    if "os_version" in values:
        values["os_version"] = str(values["os_version"])

    try:
        return VMConfig(**values)
    except TypeError as exc:
        raise ConfigInvalidError(f"Invalid config file {config_path}: {exc}")
