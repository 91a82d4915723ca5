"""CD-ROM device management: SATA placement, ISO mounts and connection state."""

from __future__ import annotations

import threading
from typing import Any, List, Optional

from pyVmomi import vim

from vmbootstrap.constants import SATA_CONTROLLER_KEY, SATA_MAX_UNITS
from vmbootstrap.exceptions import HypervisorError, MountFailedError
from vmbootstrap.models import Timeouts
from vmbootstrap.utils import log, wait_or_cancel
from vmbootstrap.vcenter import VCenterClient

_DeviceSpec = vim.vm.device.VirtualDeviceSpec


def _connect_info() -> Any:
    return vim.vm.device.VirtualDevice.ConnectInfo(
        startConnected=True,
        allowGuestControl=True,
        connected=True,
    )


def is_connected(device: Any) -> bool:
    return bool(device.connectable is not None and device.connectable.connected)


def next_free_unit(devices: List[Any], controller_key: int) -> Optional[int]:
    """Return the lowest unused unit number on a SATA controller, or None if full."""
    used = {d.unitNumber for d in devices if d.controllerKey == controller_key}
    for unit in range(SATA_MAX_UNITS):
        if unit not in used:
            return unit
    return None


class CDROMManager:
    def __init__(self, client: VCenterClient, timeouts: Timeouts, cancel: Optional[threading.Event] = None):
        self.client = client
        self.timeouts = timeouts
        self.cancel = cancel

    def cdroms(self, vm: Any) -> List[Any]:
        return [d for d in self.client.get_devices(vm) if isinstance(d, vim.vm.device.VirtualCdrom)]

    def remove_all_cdroms(self, vm: Any) -> None:
        changes = [
            _DeviceSpec(operation=_DeviceSpec.Operation.remove, device=device)
            for device in self.cdroms(vm)
        ]
        if not changes:
            log("DEBUG", f"No CD-ROM devices on {vm.name}")
            return
        self.client.reconfigure(vm, changes, f"remove {len(changes)} CD-ROM(s)")
        log("INFO", f"Removed {len(changes)} CD-ROM device(s) from {vm.name}")

    def mount_isos(self, vm: Any, ubuntu_path: str, nocloud_path: str) -> None:
        """Replace any CD-ROMs with the installer and the NoCloud seed, both connected."""
        try:
            self.remove_all_cdroms(vm)
        except HypervisorError as exc:
            raise MountFailedError(f"failed to remove existing CD-ROMs: {exc}")
        self.mount_single(vm, ubuntu_path, "Ubuntu")
        self.mount_single(vm, nocloud_path, "NoCloud")
        try:
            self.connect_all_cdroms(vm)
        except HypervisorError as exc:
            raise MountFailedError(f"failed to connect CD-ROMs: {exc}")

    def _sata_controller(self, devices: List[Any]) -> Optional[Any]:
        return next((d for d in devices if isinstance(d, vim.vm.device.VirtualSATAController)), None)

    def _ensure_sata_controller(self, vm: Any) -> Any:
        devices = self.client.get_devices(vm)
        controller = self._sata_controller(devices)
        if controller is not None:
            return controller
        log("INFO", f"Adding SATA controller to {vm.name}")
        ahci = vim.vm.device.VirtualAHCIController(key=SATA_CONTROLLER_KEY, busNumber=0)
        self.client.reconfigure(
            vm,
            [_DeviceSpec(operation=_DeviceSpec.Operation.add, device=ahci)],
            "add SATA controller",
        )
        controller = self._sata_controller(self.client.get_devices(vm))
        if controller is None:
            raise MountFailedError(f"SATA controller not found on {vm.name} after adding it")
        return controller

    def mount_single(self, vm: Any, iso_datastore_path: str, label: str) -> None:
        """Attach one ISO-backed CD-ROM to the VM's SATA controller."""
        try:
            controller = self._ensure_sata_controller(vm)
            unit = next_free_unit(self.client.get_devices(vm), controller.key)
            if unit is None:
                raise MountFailedError(f"no free SATA unit for {label} ISO on {vm.name}")
            cdrom = vim.vm.device.VirtualCdrom(
                key=-(300 + unit),
                controllerKey=controller.key,
                unitNumber=unit,
                backing=vim.vm.device.VirtualCdrom.IsoBackingInfo(fileName=iso_datastore_path),
                connectable=_connect_info(),
            )
            self.client.reconfigure(
                vm,
                [_DeviceSpec(operation=_DeviceSpec.Operation.add, device=cdrom)],
                f"mount {label} ISO",
            )
        except HypervisorError as exc:
            raise MountFailedError(f"failed to mount {label} ISO {iso_datastore_path}: {exc}")
        log("INFO", f"Mounted {label} ISO {iso_datastore_path} (SATA {controller.busNumber}:{unit})")

    def connect_all_cdroms(self, vm: Any) -> None:
        changes = []
        for device in self.cdroms(vm):
            device.connectable = _connect_info()
            changes.append(_DeviceSpec(operation=_DeviceSpec.Operation.edit, device=device))
        if changes:
            self.client.reconfigure(vm, changes, "connect CD-ROMs")

    def ensure_connected_after_boot(self, vm: Any) -> None:
        """Power-cycle the VM once if a CD-ROM came up disconnected after power-on."""
        wait_or_cancel(self.cancel, self.timeouts.hardware_init)
        disconnected = [d for d in self.cdroms(vm) if not is_connected(d)]
        if not disconnected:
            log("DEBUG", "All CD-ROMs connected after boot")
            return

        log("WARN", f"{len(disconnected)} CD-ROM(s) disconnected after boot; power-cycling {vm.name}")
        self.client.power_off(vm)
        self.connect_all_cdroms(vm)
        self.client.power_on(vm)
        wait_or_cancel(self.cancel, self.timeouts.hardware_init)

        still = [d for d in self.cdroms(vm) if not is_connected(d)]
        if still:
            log("WARN", f"{len(still)} CD-ROM(s) still disconnected after power cycle; continuing")
        else:
            log("INFO", "All CD-ROMs connected after power cycle")
