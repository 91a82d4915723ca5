"""VM hardware specification and creation."""

from __future__ import annotations

from typing import Any, List

from pyVmomi import vim

from vmbootstrap.constants import SCSI_CONTROLLER_KEY, SCSI_RESERVED_UNIT
from vmbootstrap.models import VMConfig
from vmbootstrap.utils import log
from vmbootstrap.vcenter import VCenterClient

_DeviceSpec = vim.vm.device.VirtualDeviceSpec


def _scsi_controller_spec() -> Any:
    controller = vim.vm.device.ParaVirtualSCSIController(
        key=SCSI_CONTROLLER_KEY,
        busNumber=0,
        sharedBus=vim.vm.device.VirtualSCSIController.Sharing.noSharing,
    )
    return _DeviceSpec(operation=_DeviceSpec.Operation.add, device=controller)


def _disk_spec(size_gb: int, unit_number: int) -> Any:
    if unit_number == SCSI_RESERVED_UNIT:
        raise ValueError("SCSI unit 7 is reserved for the controller")
    backing = vim.vm.device.VirtualDisk.FlatVer2BackingInfo(
        diskMode="persistent",
        thinProvisioned=True,
        fileName="",
    )
    disk = vim.vm.device.VirtualDisk(
        key=-(100 + unit_number),
        controllerKey=SCSI_CONTROLLER_KEY,
        unitNumber=unit_number,
        capacityInKB=size_gb * 1024 * 1024,
        backing=backing,
    )
    return _DeviceSpec(
        operation=_DeviceSpec.Operation.add,
        fileOperation=_DeviceSpec.FileOperation.create,
        device=disk,
    )


def _nic_spec(network: Any) -> Any:
    if isinstance(network, vim.dvs.DistributedVirtualPortgroup):
        backing = vim.vm.device.VirtualEthernetCard.DistributedVirtualPortBackingInfo(
            port=vim.dvs.PortConnection(
                portgroupKey=network.key,
                switchUuid=network.config.distributedVirtualSwitch.uuid,
            )
        )
    else:
        backing = vim.vm.device.VirtualEthernetCard.NetworkBackingInfo(deviceName=network.name)
    nic = vim.vm.device.VirtualVmxnet3(
        key=-200,
        backing=backing,
        connectable=vim.vm.device.VirtualDevice.ConnectInfo(
            startConnected=True,
            connected=True,
            allowGuestControl=True,
        ),
    )
    return _DeviceSpec(operation=_DeviceSpec.Operation.add, device=nic)


class VMCreator:
    """Builds the hardware spec for a new VM and drives its power lifecycle."""

    def __init__(self, client: VCenterClient, guest_os: str = "ubuntu64Guest"):
        self.client = client
        self.guest_os = guest_os

    def create_spec(self, cfg: VMConfig, datastore_name: str, network: Any) -> Any:
        devices: List[Any] = [_scsi_controller_spec(), _disk_spec(cfg.disk_size_gb, 0)]
        if cfg.data_disk_size_gb:
            devices.append(_disk_spec(cfg.data_disk_size_gb, 1))
        devices.append(_nic_spec(network))
        guest_id = self.guest_os if cfg.profile != "talos" else "otherLinux64Guest"
        return vim.vm.ConfigSpec(
            name=cfg.name,
            numCPUs=cfg.cpus,
            memoryMB=cfg.memory_mb,
            guestId=guest_id,
            firmware=cfg.firmware or "bios",
            files=vim.vm.FileInfo(vmPathName=f"[{datastore_name}]"),
            deviceChange=devices,
        )

    def create(self, folder: Any, pool: Any, spec: Any) -> Any:
        log("INFO", f"Creating VM {spec.name} ({spec.numCPUs} vCPU, {spec.memoryMB} MB)")
        vm = self.client.create_vm(folder, pool, spec)
        log("SUCCESS", f"VM {spec.name} created")
        return vm

    def power_on(self, vm: Any) -> None:
        log("INFO", f"Powering on {vm.name}")
        self.client.power_on(vm)

    def power_off(self, vm: Any) -> None:
        log("INFO", f"Powering off {vm.name}")
        self.client.power_off(vm)

    def delete(self, vm: Any) -> None:
        log("INFO", f"Deleting VM {vm.name}")
        self.client.destroy(vm)
