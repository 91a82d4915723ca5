"""Cloud-init document generation for Ubuntu autoinstall."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmbootstrap.exceptions import BootstrapError


@dataclass
class UserDataInput:
    hostname: str
    username: str
    password_hash: str
    ip_address: str
    cidr: int
    gateway: str
    dns: List[str]
    ssh_public_keys: List[str] = field(default_factory=list)
    allow_password_ssh: bool = False
    locale: str = "en_US.UTF-8"
    timezone: str = "UTC"
    keyboard_layout: str = "us"
    swap_size_gb: int = 4
    packages: List[str] = field(default_factory=list)
    user_groups: str = "sudo"
    user_shell: str = "/bin/bash"
    interface_name: str = "ens192"
    data_disk_mount_path: str = ""


def _dump(data: Dict[str, Any]) -> str:
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)


def validate_yaml(content: str, label: str) -> None:
    try:
        yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise BootstrapError(f"generated {label} is invalid YAML: {exc}")


def _netplan(interface: str, ip_address: str, cidr: int, gateway: str, dns: List[str]) -> Dict[str, Any]:
    return {
        "version": 2,
        "ethernets": {
            interface: {
                "dhcp4": False,
                "addresses": [f"{ip_address}/{cidr}"],
                "routes": [{"to": "default", "via": gateway}],
                "nameservers": {"addresses": list(dns)},
            }
        },
    }


def _storage(swap_size_gb: int) -> Dict[str, Any]:
    return {
        "layout": {"name": "lvm", "match": {"size": "largest"}},
        "swap": {"size": f"{swap_size_gb}G" if swap_size_gb > 0 else 0},
    }


def _data_disk_commands(mount_path: str) -> List[str]:
    return [
        "curtin in-target -- mkfs.ext4 -F -L data /dev/sdb",
        f"curtin in-target -- mkdir -p {mount_path}",
        f"curtin in-target -- sh -c 'echo \"LABEL=data {mount_path} ext4 defaults,nofail 0 2\" >> /etc/fstab'",
    ]


class CloudInitGenerator:
    """Renders the user-data, meta-data and network-config documents."""

    def generate_user_data(self, data: UserDataInput) -> str:
        late_commands = [
            "curtin in-target -- systemctl enable open-vm-tools",
            f"curtin in-target -- usermod -aG {data.user_groups} -s {data.user_shell} {data.username}",
        ]
        if data.data_disk_mount_path:
            late_commands += _data_disk_commands(data.data_disk_mount_path)

        autoinstall: Dict[str, Any] = {
            "version": 1,
            "locale": data.locale,
            "keyboard": {"layout": data.keyboard_layout},
            "network": _netplan(data.interface_name, data.ip_address, data.cidr, data.gateway, data.dns),
            "identity": {
                "hostname": data.hostname,
                "username": data.username,
                "password": data.password_hash,
            },
            "ssh": {
                "install-server": True,
                "allow-pw": data.allow_password_ssh,
                "authorized-keys": list(data.ssh_public_keys),
            },
            "storage": _storage(data.swap_size_gb),
            "packages": list(data.packages),
            "late-commands": late_commands,
            "user-data": {"timezone": data.timezone},
        }
        content = "#cloud-config\n" + _dump({"autoinstall": autoinstall})
        validate_yaml(content, "user-data")
        return content

    def generate_meta_data(self, instance_id: str, hostname: str) -> str:
        content = _dump({"instance-id": instance_id, "local-hostname": hostname})
        validate_yaml(content, "meta-data")
        return content

    def generate_network_config(
        self, interface: str, ip_address: str, cidr: int, gateway: str, dns: List[str]
    ) -> str:
        content = _dump(_netplan(interface, ip_address, cidr, gateway, dns))
        validate_yaml(content, "network-config")
        return content
