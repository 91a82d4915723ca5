"""vmware-vm-bootstrap package."""

__all__ = [
    "bootstrap",
    "cdrom",
    "cli",
    "cloudinit",
    "config",
    "constants",
    "creator",
    "datastore",
    "exceptions",
    "install_stats",
    "iso",
    "lifecycle",
    "models",
    "modifier",
    "monitor",
    "talos",
    "utils",
    "vcenter",
]
