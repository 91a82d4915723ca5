"""Shared test fixtures and an in-memory vCenter for VM, device and guest simulation."""

from __future__ import annotations

import dataclasses
from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest
from pyVmomi import vim

from vmbootstrap.config import DEFAULTS
from vmbootstrap.models import (
    GuestReading,
    ISOSettings,
    LibDefaults,
    Timeouts,
    VCenterCredentials,
    VMConfig,
)
from vmbootstrap.vcenter import VCenterClient


class FakeTask:
    def __init__(self, result=None, error=None):
        state = "success" if error is None else "error"
        self.info = SimpleNamespace(state=state, result=result, error=error)


class FakeVM:
    """A VM whose reconfigure tasks apply device changes to an in-memory list."""

    def __init__(self, name: str, devices: Optional[List] = None, inventory: Optional[Dict] = None):
        self.name = name
        self._moId = f"vm-{name}"
        self.config = SimpleNamespace(hardware=SimpleNamespace(device=[]))
        self.runtime = SimpleNamespace(powerState="poweredOff")
        self.inventory = inventory if inventory is not None else {}
        self.power_log: List[str] = []
        self.reconfigure_count = 0
        self.destroyed = False
        # Number of CD-ROMs to report disconnected after the next power-on.
        self.disconnect_on_power_on = 0
        # Scripted guest readings; the last one repeats once exhausted.
        self.guest_script: List[Optional[GuestReading]] = []
        self._next_key = 2000
        for device in devices or []:
            self._add(device)

    @property
    def devices(self) -> List:
        return self.config.hardware.device

    def cdroms(self) -> List:
        return [d for d in self.devices if isinstance(d, vim.vm.device.VirtualCdrom)]

    def _add(self, device) -> None:
        if not device.key or device.key < 0:
            device.key = self._next_key
            self._next_key += 1
        self.devices.append(device)

    @property
    def guest(self):
        if not self.guest_script:
            return None
        reading = self.guest_script.pop(0) if len(self.guest_script) > 1 else self.guest_script[0]
        if reading is None:
            return None
        return SimpleNamespace(
            toolsRunningStatus="guestToolsRunning" if reading.tools_running else "guestToolsNotRunning",
            hostName=reading.hostname,
        )

    def ReconfigVM_Task(self, spec):
        self.reconfigure_count += 1
        for change in spec.deviceChange:
            device = change.device
            if change.operation == "add":
                self._add(device)
            elif change.operation == "remove":
                self.config.hardware.device = [d for d in self.devices if d.key != device.key]
            elif change.operation == "edit":
                self.config.hardware.device = [device if d.key == device.key else d for d in self.devices]
        return FakeTask()

    def PowerOnVM_Task(self):
        self.runtime.powerState = "poweredOn"
        self.power_log.append("on")
        if self.disconnect_on_power_on:
            for device in self.cdroms()[: self.disconnect_on_power_on]:
                device.connectable.connected = False
            self.disconnect_on_power_on = 0
        return FakeTask()

    def PowerOffVM_Task(self):
        self.runtime.powerState = "poweredOff"
        self.power_log.append("off")
        return FakeTask()

    def Destroy_Task(self):
        self.destroyed = True
        self.inventory.pop(self.name, None)
        return FakeTask()


class FakeFolder:
    def __init__(self, inventory: Dict, on_create=None):
        self.inventory = inventory
        self.on_create = on_create

    def CreateVM_Task(self, config, pool):
        vm = FakeVM(config.name, [c.device for c in config.deviceChange], self.inventory)
        self.inventory[config.name] = vm
        if self.on_create is not None:
            self.on_create(vm)
        return FakeTask(result=vm)


class FakeVCenter(VCenterClient):
    """VCenterClient with inventory lookups served from memory.

    Task waits, reconfigures, power operations and guest reads run through the
    real client code against :class:`FakeVM` objects.
    """

    def __init__(self, credentials: Optional[VCenterCredentials] = None, cancel=None):
        super().__init__(credentials or VCenterCredentials("vc.example.com", "admin", "secret"), cancel)
        self.vms: Dict[str, FakeVM] = {}
        self.folder = FakeFolder(self.vms, self._prepare_vm)
        # Applied to every VM created through the folder.
        self.guest_script: List[Optional[GuestReading]] = []
        self.disconnect_on_power_on = 0
        self.connected = False
        self.connect_calls = 0

    def connect(self):
        self.connected = True
        self.connect_calls += 1
        return self

    def disconnect(self):
        self.connected = False

    def _prepare_vm(self, vm: FakeVM) -> None:
        vm.guest_script = list(self.guest_script)
        vm.disconnect_on_power_on = self.disconnect_on_power_on

    def find_vm(self, datacenter, name):
        return self.vms.get(name)

    def find_folder(self, datacenter, path):
        return self.folder

    def find_resource_pool(self, datacenter, path):
        return SimpleNamespace(name=path or "Resources")

    def find_datastore(self, datacenter, name):
        return SimpleNamespace(name=name)

    def find_network(self, datacenter, name):
        return SimpleNamespace(name=name)


def make_cdrom(unit: int, connected: bool = True, controller_key: int = 15000):
    return vim.vm.device.VirtualCdrom(
        key=3000 + unit,
        controllerKey=controller_key,
        unitNumber=unit,
        backing=vim.vm.device.VirtualCdrom.IsoBackingInfo(fileName=f"[ds1] ISO/disk{unit}.iso"),
        connectable=vim.vm.device.VirtualDevice.ConnectInfo(
            connected=connected, startConnected=True, allowGuestControl=True
        ),
    )


def make_sata(key: int = 15000):
    return vim.vm.device.VirtualAHCIController(key=key, busNumber=0)


@pytest.fixture
def fast_timeouts() -> Timeouts:
    return Timeouts(
        installation=60.0,
        polling=0,
        hostname_checks=3,
        service_startup=0,
        ssh_retries=2,
        ssh_connect=0.1,
        ssh_retry_delay=0,
        hardware_init=0,
        download=60.0,
        upload_progress=0,
        extract_progress=0,
    )


@pytest.fixture
def iso_settings(tmp_path) -> ISOSettings:
    return ISOSettings(cache_dir=tmp_path / "cache")


@pytest.fixture
def test_defaults(fast_timeouts, iso_settings) -> LibDefaults:
    return dataclasses.replace(DEFAULTS, timeouts=fast_timeouts, iso=iso_settings)


@pytest.fixture
def fake_vcenter() -> FakeVCenter:
    return FakeVCenter()


@pytest.fixture
def default_vm_config() -> VMConfig:
    """Return a valid VMConfig for an Ubuntu 24.04 node."""
    return VMConfig(
        vcenter_host="vc.example.com",
        vcenter_username="administrator@vsphere.local",
        vcenter_password="secret",
        name="web01",
        cpus=2,
        memory_mb=4096,
        disk_size_gb=40,
        network_name="VM Network",
        ip_address="192.168.1.10",
        netmask="255.255.255.0",
        gateway="192.168.1.1",
        dns=["8.8.8.8", "1.1.1.1"],
        datacenter="DC1",
        datastore="ds1",
        profile="ubuntu",
        os_version="24.04",
        username="sysadmin",
        ssh_public_keys=["ssh-ed25519 AAAAC3Nza test@example"],
    )


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set
